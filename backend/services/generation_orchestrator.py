"""
Generation Job Orchestrator

Runs one thumbnail generation per request:

    checking_credits -> submitting -> polling -> succeeded -> charged
                                             -> failed
                                             -> timed_out
                                             -> cancelled
    checking_credits -> insufficient_credits

Credits are checked before submission (advisory) and debited only after the
provider reports success. The debit is keyed by the provider task id, so a
given task is charged at most once. If the balance no longer covers the cost
at that point, the result is still returned and a billing anomaly is recorded.

Cancelling the task running generate() (e.g. on client disconnect) stops
polling and skips billing. Once the debit has started it runs to completion,
so the balance and its transaction entry are always written together.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set

from credit_wallet.config import (
    GENERATION_CREDIT_COST,
    GENERATION_POLL_INTERVAL_SECONDS,
    GENERATION_MAX_POLL_ATTEMPTS,
    ERROR_CODES,
)
from credit_wallet.ledger import CreditLedger, InsufficientCreditsError
from services.kie_client import KieClient, PollError

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    CHECKING_CREDITS = "checking_credits"
    SUBMITTING = "submitting"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    CHARGED = "charged"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    INSUFFICIENT_CREDITS = "insufficient_credits"


class GenerationFailed(Exception):
    """The provider reported a failure or returned no usable result."""
    pass


class GenerationTimedOut(Exception):
    """The poll budget ran out before the task finished."""

    def __init__(self, task_id: str, attempts: int):
        self.task_id = task_id
        self.attempts = attempts
        super().__init__(ERROR_CODES["GENERATION_TIMEOUT"])


@dataclass
class BillingAnomaly:
    """A generation that succeeded but could not be charged."""
    user_id: str
    task_id: str
    amount: int
    available: int
    detected_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class GenerationJob:
    user_id: str
    prompt: str
    image_urls: List[str]
    state: JobState = JobState.CHECKING_CREDITS
    task_id: Optional[str] = None
    attempts: int = 0
    result_url: Optional[str] = None

    def transition(self, state: JobState):
        logger.info(f"Job for user {self.user_id} task={self.task_id}: {self.state.value} -> {state.value}")
        self.state = state


@dataclass
class GenerationResult:
    url: str
    task_id: str
    credits_charged: int
    credits_remaining: Optional[int]
    charged: bool = True
    anomaly: Optional[BillingAnomaly] = None


def parse_result_url(result_json: Optional[str]) -> str:
    """
    First URL of the provider's JSON-encoded result payload.

    Raises:
        GenerationFailed if the payload is missing, malformed or has no URLs
    """
    if not result_json:
        raise GenerationFailed("Image not found in response")

    try:
        result = json.loads(result_json)
    except (TypeError, ValueError) as e:
        raise GenerationFailed("Malformed result from image provider") from e

    urls = result.get("resultUrls") if isinstance(result, dict) else None
    if not urls or not isinstance(urls, list) or not urls[0]:
        raise GenerationFailed("Image not found in response")
    return urls[0]


class GenerationOrchestrator:
    """Submit, poll and charge for thumbnail generations."""

    def __init__(
        self,
        ledger: CreditLedger,
        client: KieClient,
        cost: int = GENERATION_CREDIT_COST,
        poll_interval: float = GENERATION_POLL_INTERVAL_SECONDS,
        max_attempts: int = GENERATION_MAX_POLL_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.ledger = ledger
        self.client = client
        self.cost = cost
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._pending_charges: Set[asyncio.Future] = set()

    async def generate(self, user_id: str, prompt: str, image_urls: List[str]) -> GenerationResult:
        """
        Run one generation end to end.

        Raises:
            InsufficientCreditsError: balance below cost before submission
            SubmissionError: provider rejected the job
            GenerationFailed: provider failed or returned no image
            GenerationTimedOut: poll budget exhausted
            asyncio.CancelledError: caller cancelled (nothing is charged unless the debit already started)
        """
        job = GenerationJob(user_id=user_id, prompt=prompt, image_urls=list(image_urls))

        credits, _ = await self.ledger.get_balance(user_id)
        if credits < self.cost:
            job.transition(JobState.INSUFFICIENT_CREDITS)
            raise InsufficientCreditsError(user_id, self.cost, credits)

        job.transition(JobState.SUBMITTING)
        try:
            job.task_id = await self.client.submit(prompt, job.image_urls)

            job.result_url = await self._wait_for_result(job)
            job.transition(JobState.SUCCEEDED)
        except asyncio.CancelledError:
            job.transition(JobState.CANCELLED)
            logger.info(f"Generation cancelled for user {user_id} task={job.task_id}, not charged")
            raise
        except GenerationTimedOut:
            job.transition(JobState.TIMED_OUT)
            raise
        except Exception:
            job.transition(JobState.FAILED)
            raise

        charge = asyncio.ensure_future(self._charge(job))
        try:
            return await asyncio.shield(charge)
        except asyncio.CancelledError:
            logger.info(f"Caller went away while charging task {job.task_id}, finishing the charge")
            self._pending_charges.add(charge)
            charge.add_done_callback(self._pending_charges.discard)
            raise

    async def _wait_for_result(self, job: GenerationJob) -> str:
        job.transition(JobState.POLLING)

        while job.attempts < self.max_attempts:
            job.attempts += 1
            await self._sleep(self.poll_interval)

            try:
                status = await self.client.poll(job.task_id)
            except PollError as e:
                logger.warning(f"Poll {job.attempts}/{self.max_attempts} for task {job.task_id} failed: {e}")
                continue

            if status.state == "success":
                return parse_result_url(status.result_json)

            if status.state == "fail":
                message = status.fail_msg or "Unknown error"
                logger.error(f"Task {job.task_id} failed: {message}")
                raise GenerationFailed(f"Generation failed: {message}")

        logger.error(f"Task {job.task_id} timed out after {job.attempts} attempts")
        raise GenerationTimedOut(job.task_id, job.attempts)

    async def _charge(self, job: GenerationJob) -> GenerationResult:
        try:
            remaining = await self.ledger.debit(
                user_id=job.user_id,
                amount=self.cost,
                reason="thumbnail_generation",
                reference=f"kie_task:{job.task_id}",
                details={"task_id": job.task_id},
            )
        except InsufficientCreditsError as e:
            anomaly = BillingAnomaly(
                user_id=job.user_id,
                task_id=job.task_id,
                amount=self.cost,
                available=e.available,
            )
            logger.error(
                f"BILLING ANOMALY: task {job.task_id} succeeded but user {job.user_id} "
                f"has {e.available} credits (cost {self.cost}), result delivered uncharged"
            )
            await self.ledger.record_anomaly(
                user_id=job.user_id,
                task_id=job.task_id,
                amount=self.cost,
                reason="insufficient_credits_after_success",
                result_url=job.result_url,
                details={"available": e.available},
            )
            return GenerationResult(
                url=job.result_url,
                task_id=job.task_id,
                credits_charged=0,
                credits_remaining=e.available,
                charged=False,
                anomaly=anomaly,
            )

        job.transition(JobState.CHARGED)
        return GenerationResult(
            url=job.result_url,
            task_id=job.task_id,
            credits_charged=self.cost,
            credits_remaining=remaining,
        )
