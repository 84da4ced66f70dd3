"""
Thumbnail Generation Routes

POST /api/generate-thumbnail holds the request open while the job runs
(up to poll interval x max attempts). If the client disconnects first, the
job is cancelled and nothing is charged.
"""
import asyncio
import logging
from typing import Any, Awaitable

from fastapi import APIRouter, Depends, HTTPException, Request

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from utils.auth import get_current_user
from credit_wallet.config import ERROR_CODES
from credit_wallet.ledger import CreditLedger, InsufficientCreditsError
from credit_wallet.routes import get_ledger
from credit_wallet.models import GenerateThumbnailRequest, GenerateThumbnailResponse
from services.kie_client import KieClient, SubmissionError
from services.generation_orchestrator import (
    GenerationOrchestrator,
    GenerationFailed,
    GenerationTimedOut,
)

logger = logging.getLogger(__name__)

generation_router = APIRouter(tags=["Generation"])

DISCONNECT_CHECK_SECONDS = 1.0


class ClientDisconnected(Exception):
    pass


def get_orchestrator(ledger: CreditLedger = Depends(get_ledger)) -> GenerationOrchestrator:
    return GenerationOrchestrator(ledger, KieClient())


async def run_until_disconnect(request: Request, job: Awaitable[Any], check_interval: float = DISCONNECT_CHECK_SECONDS):
    """
    Await a job, cancelling it if the client goes away.

    Raises:
        ClientDisconnected if the job was cancelled because of a disconnect
    """
    task = asyncio.ensure_future(job)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=check_interval)
            if done:
                return task.result()

            if await request.is_disconnected():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                raise ClientDisconnected()
    finally:
        if not task.done():
            task.cancel()


@generation_router.post("/generate-thumbnail", response_model=GenerateThumbnailResponse)
async def generate_thumbnail(
    body: GenerateThumbnailRequest,
    request: Request,
    user: dict = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator)
):
    """
    Generate a thumbnail from a prompt and reference images.

    Credits are charged only after the image is ready.
    """
    await ledger.ensure_account(user["id"], user.get("email"))

    try:
        result = await run_until_disconnect(
            request,
            orchestrator.generate(user["id"], body.prompt, body.image_urls)
        )
    except ClientDisconnected:
        logger.info(f"Client disconnected during generation for user {user['id']}, job cancelled")
        raise HTTPException(status_code=499, detail="Client closed request")
    except InsufficientCreditsError as e:
        raise HTTPException(status_code=402, detail=e.to_dict())
    except GenerationTimedOut as e:
        raise HTTPException(status_code=504, detail=str(e))
    except GenerationFailed as e:
        raise HTTPException(status_code=500, detail=str(e) or ERROR_CODES["GENERATION_FAILED"])
    except SubmissionError as e:
        raise HTTPException(status_code=500, detail=str(e) or ERROR_CODES["SUBMISSION_FAILED"])

    return GenerateThumbnailResponse(
        url=result.url,
        task_id=result.task_id,
        credits_charged=result.credits_charged,
        credits_remaining=result.credits_remaining,
    )
