"""Transcription job dispatch (Redis/RQ or inline asyncio) and stalled-job recovery."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Set

from redis import Redis
from rq import Queue
from rq.job import Job
from sqlalchemy import func, select

from config import settings
from database import async_session_maker
from models.media_asset import MediaAsset
from services import media_store
from services.errors import InvalidTransition
from services.events import TranscriptEventBus

logger = logging.getLogger(__name__)

TRANSCRIPTION_QUEUE_NAME = "transcription_jobs"
STALLED_ERROR_MESSAGE = "Transcription was interrupted. Resubmit the media to try again."

_inline_tasks: Set[asyncio.Task] = set()


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_transcription_queue() -> Queue:
    """Return the configured transcription queue."""
    return Queue(
        name=TRANSCRIPTION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=3600,
    )


def enqueue_transcription_job(asset_id: str) -> Job:
    """
    Enqueue a transcription job. No automatic retry: a failed asset is
    resubmitted explicitly by the caller.
    """
    queue = get_transcription_queue()
    return queue.enqueue(
        "services.transcription_job.process_transcription_job",
        asset_id,
        job_id=f"transcription:{asset_id}",
        job_timeout=3600,
        result_ttl=86400,
        failure_ttl=86400,
    )


def start_inline_job(asset_id: str, event_bus: Optional[TranscriptEventBus] = None) -> asyncio.Task:
    """Run the job as a detached task in the current event loop."""
    from services.transcription_job import run_transcription_job

    task = asyncio.create_task(run_transcription_job(asset_id, event_bus=event_bus))
    _inline_tasks.add(task)
    task.add_done_callback(_inline_tasks.discard)
    return task


def dispatch_transcription(asset_id: str, event_bus: Optional[TranscriptEventBus] = None) -> str:
    """Hand the asset to the configured backend. Returns a queue job id."""
    if settings.JOB_BACKEND == "inline":
        start_inline_job(asset_id, event_bus=event_bus)
        return f"inline:{asset_id}"
    return enqueue_transcription_job(asset_id).id


async def mark_dispatch_failed(asset_id: str, exc: Exception) -> None:
    """Fail an asset whose job could not be queued, so it never stays pending."""
    try:
        await media_store.transition(asset_id, media_store.PENDING, media_store.PROCESSING)
        await media_store.transition(
            asset_id,
            media_store.PROCESSING,
            media_store.FAILED,
            processing_error=f"queue_unavailable: {exc}",
        )
    except InvalidTransition:
        logger.info("Asset %s was claimed despite queue error", asset_id)


async def recover_stalled_transcriptions(max_age_minutes: Optional[int] = None) -> int:
    """Mark assets claimed longer ago than the cutoff and still processing as failed."""
    age = max(int(max_age_minutes if max_age_minutes is not None else settings.STALLED_JOB_MAX_AGE_MINUTES), 1)
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=age)
    async with async_session_maker() as db:
        result = await db.execute(
            select(MediaAsset.id).where(
                MediaAsset.status == media_store.PROCESSING,
                func.coalesce(MediaAsset.processing_started_at, MediaAsset.created_at) < cutoff,
            )
        )
        asset_ids = list(result.scalars().all())

    recovered = 0
    for asset_id in asset_ids:
        try:
            await media_store.transition(
                asset_id,
                media_store.PROCESSING,
                media_store.FAILED,
                processing_error=STALLED_ERROR_MESSAGE,
            )
            recovered += 1
        except InvalidTransition:
            continue
    return recovered
