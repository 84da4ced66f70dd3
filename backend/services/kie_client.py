"""
Kie.ai Job Client

Thin async wrapper around the Kie.ai jobs API:
- createTask: submit a generation job, returns a task id
- recordInfo: read the current task state

Every response uses the envelope {code, msg, data}. A submission that is
not accepted raises SubmissionError. A poll that cannot be read (transport
error, non-2xx, bad body) raises PollError, which callers treat as transient.

Required Environment Variables:
- KIE_API_KEY
"""

import os
import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx

from credit_wallet.config import (
    KIE_API_BASE,
    KIE_REQUEST_TIMEOUT_SECONDS,
    GENERATION_MODEL,
    GENERATION_OUTPUT,
)

logger = logging.getLogger(__name__)


class SubmissionError(Exception):
    """The provider did not accept the job."""
    pass


class PollError(Exception):
    """A status read failed; the job may still be running."""
    pass


@dataclass
class TaskStatus:
    """Snapshot of a provider task."""
    state: Optional[str]
    result_json: Optional[str] = None
    fail_msg: Optional[str] = None


class KieClient:
    """Kie.ai jobs API client."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_base: str = KIE_API_BASE,
        timeout: float = KIE_REQUEST_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self._api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def api_key(self) -> str:
        return self._api_key or os.environ.get("KIE_API_KEY", "")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            timeout=self.timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

    async def submit(self, prompt: str, image_urls: List[str]) -> str:
        """
        Submit a generation job.

        Returns:
            Provider task id

        Raises:
            SubmissionError if the job was not accepted
        """
        body = {
            "model": GENERATION_MODEL,
            "input": {
                "prompt": prompt,
                "image_input": list(image_urls),
                **GENERATION_OUTPUT,
            },
        }

        try:
            async with self._client() as client:
                response = await client.post("/api/v1/jobs/createTask", json=body)
        except httpx.HTTPError as e:
            logger.error(f"Kie createTask request failed: {e}")
            raise SubmissionError(f"Could not reach image provider: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        payload = data.get("data")
        task_id = payload.get("taskId") if isinstance(payload, dict) else None
        if response.status_code != 200 or data.get("code") != 200 or not task_id:
            logger.error(f"Kie createTask rejected ({response.status_code}): {response.text}")
            raise SubmissionError(data.get("msg") or f"Error creating task (HTTP {response.status_code})")

        logger.info(f"Kie task created: {task_id}")
        return task_id

    async def poll(self, task_id: str) -> TaskStatus:
        """
        Read the current state of a task.

        Raises:
            PollError on transport errors, non-2xx responses or unreadable bodies
        """
        try:
            async with self._client() as client:
                response = await client.get("/api/v1/jobs/recordInfo", params={"taskId": task_id})
        except httpx.HTTPError as e:
            raise PollError(f"Status request failed: {e}") from e

        if not response.is_success:
            raise PollError(f"Status request returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise PollError("Status response is not JSON") from e

        record = data.get("data") if isinstance(data, dict) else None
        if not isinstance(record, dict):
            raise PollError("Status response has no data")

        return TaskStatus(
            state=record.get("state"),
            result_json=record.get("resultJson"),
            fail_msg=record.get("failMsg"),
        )
