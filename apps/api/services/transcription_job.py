"""End-to-end transcription of one media asset, executed by the RQ worker or inline."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Tuple

from config import settings
from database import async_session_maker
from models.media_asset import MediaAsset
from multimodal.audio import AudioChunk, chunk, extract_audio, probe_duration
from multimodal.models import TranscriptionResult, TranscriptSegment
from multimodal.video import download_audio
from services import media_store
from services.errors import InvalidTransition, NoCaptionsAvailable, NotFoundError, PreprocessingFailed, ProviderError
from services.events import ASSET_COMPLETED, ASSET_FAILED, PipelineEvent, TranscriptEventBus, build_event_bus
from services.segments import normalize_segments, overall_confidence
from services.storage import job_workspace, touch_workspace
from services.transcript_store import build_transcript, save_transcript
from services.transcription import (
    TranscriptionProvider,
    build_audio_provider,
    build_caption_provider,
    normalize_language_hint,
)

logger = logging.getLogger(__name__)


class JobStage(str, Enum):
    CLAIMED = "claimed"
    PREPROCESSING = "preprocessing"
    TRANSCRIBING = "transcribing"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class JobOutcome:
    asset_id: str
    stage: JobStage
    transcript_id: Optional[str] = None
    error: Optional[str] = None
    chunk_count: int = 0


@dataclass
class _Transcribed:
    result: TranscriptionResult
    duration: Optional[float]
    chunk_count: int


@lru_cache(maxsize=1)
def default_audio_provider() -> TranscriptionProvider:
    provider = build_audio_provider()
    logger.info("Transcription provider selected: %s", provider.name)
    return provider


@lru_cache(maxsize=1)
def default_caption_provider() -> TranscriptionProvider:
    return build_caption_provider()


def _diagnostic(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or exc.__class__.__name__


async def _prepare_chunks(
    path: Optional[str],
    kind: str,
    workspace: Path,
    max_chunk_seconds: float,
) -> Tuple[List[AudioChunk], float]:
    if not path or not Path(path).exists():
        raise PreprocessingFailed("Stored media file is missing.")
    audio_path = await asyncio.to_thread(extract_audio, path, kind, str(workspace))
    duration = await asyncio.to_thread(probe_duration, audio_path)
    chunks = await asyncio.to_thread(chunk, audio_path, max_chunk_seconds, str(workspace), duration)
    return chunks, duration


def _offset_segments(segments: List[TranscriptSegment], piece: AudioChunk, text: str) -> List[TranscriptSegment]:
    limit = piece.offset + piece.duration if piece.duration > 0 else None
    if not segments and text.strip():
        end = limit if limit is not None else piece.offset + 1.0
        return [TranscriptSegment(start=piece.offset, end=end, text=text)]

    shifted: List[TranscriptSegment] = []
    for segment in segments:
        start = segment.start + piece.offset
        end = segment.end + piece.offset
        if limit is not None:
            start = min(start, limit)
            end = min(end, limit)
        shifted.append(segment.model_copy(update={"start": start, "end": end}))
    return shifted


async def transcribe_chunks(
    provider: TranscriptionProvider,
    chunks: List[AudioChunk],
    language_hint: Optional[str],
) -> TranscriptionResult:
    """
    Transcribe chunks strictly in order, shifting each chunk's timestamps by
    its offset. Any chunk failure aborts the whole attempt.
    """
    segments: List[TranscriptSegment] = []
    texts: List[str] = []
    detected: Optional[str] = None
    for position, piece in enumerate(chunks):
        logger.info("Transcribing chunk %d/%d (offset %.1fs)", position + 1, len(chunks), piece.offset)
        result = await provider.transcribe(piece.path, language_hint)
        segments.extend(_offset_segments(result.segments, piece, result.text))
        if result.text:
            texts.append(result.text)
        if detected is None and result.language and result.language != "auto":
            detected = result.language

    return TranscriptionResult(
        text=" ".join(texts),
        language=detected or "auto",
        segments=segments,
        confidence=overall_confidence(segments),
        source=provider.name,
    )


async def _transcribe_audio_file(
    path: Optional[str],
    kind: str,
    workspace: Path,
    provider: TranscriptionProvider,
    language_hint: Optional[str],
    max_chunk_seconds: float,
) -> _Transcribed:
    chunks, duration = await _prepare_chunks(path, kind, workspace, max_chunk_seconds)
    result = await transcribe_chunks(provider, chunks, language_hint)
    return _Transcribed(result=result, duration=duration or None, chunk_count=len(chunks))


async def _transcribe_url(
    asset: MediaAsset,
    workspace: Path,
    audio_provider: TranscriptionProvider,
    caption_provider: TranscriptionProvider,
    max_chunk_seconds: float,
) -> _Transcribed:
    try:
        result = await caption_provider.transcribe(asset.source_url, asset.language_hint)
        duration = max((seg.end for seg in result.segments), default=0.0)
        return _Transcribed(result=result, duration=duration or None, chunk_count=0)
    except NoCaptionsAvailable:
        if not settings.ALLOW_MEDIA_DOWNLOAD:
            raise
        logger.info("No captions for asset %s; downloading audio instead", asset.id)

    downloaded = await asyncio.to_thread(download_audio, asset.source_url, str(workspace / "source.m4a"))
    return await _transcribe_audio_file(
        downloaded, "audio", workspace, audio_provider, asset.language_hint, max_chunk_seconds
    )


async def _keep_workspace_alive(workspace: Path, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        await asyncio.to_thread(touch_workspace, workspace)


async def _publish(bus: TranscriptEventBus, event: PipelineEvent) -> None:
    try:
        await bus.publish(event)
    except Exception as exc:
        logger.warning("Could not publish %s for asset %s: %s", event.type, event.asset_id, exc)


async def run_transcription_job(
    asset_id: str,
    *,
    audio_provider: Optional[TranscriptionProvider] = None,
    caption_provider: Optional[TranscriptionProvider] = None,
    event_bus: Optional[TranscriptEventBus] = None,
    max_chunk_seconds: Optional[float] = None,
) -> JobOutcome:
    """
    claimed -> preprocessing -> transcribing -> persisting -> done | failed.

    Losing the pending -> processing claim means another worker owns the asset;
    the job then returns SKIPPED without touching it.
    """
    try:
        await media_store.transition(asset_id, media_store.PENDING, media_store.PROCESSING)
    except InvalidTransition as exc:
        logger.info("Transcription job %s skipped: %s", asset_id, exc)
        return JobOutcome(asset_id=asset_id, stage=JobStage.SKIPPED)
    except NotFoundError:
        logger.warning("Transcription job %s skipped: asset not found", asset_id)
        return JobOutcome(asset_id=asset_id, stage=JobStage.SKIPPED)

    bus = event_bus or build_event_bus()
    threshold = float(max_chunk_seconds or settings.MAX_CHUNK_SECONDS)
    stage = JobStage.CLAIMED
    owner_id: Optional[str] = None
    chunk_count = 0
    try:
        asset = await media_store.get_asset(asset_id)
        owner_id = asset.owner_id
        with job_workspace(asset_id[:8]) as workspace:
            heartbeat = asyncio.create_task(
                _keep_workspace_alive(workspace, max(float(settings.WORKSPACE_HEARTBEAT_SECONDS), 0.01))
            )
            try:
                if asset.source_url:
                    stage = JobStage.TRANSCRIBING
                    transcribed = await _transcribe_url(
                        asset,
                        workspace,
                        audio_provider or default_audio_provider(),
                        caption_provider or default_caption_provider(),
                        threshold,
                    )
                else:
                    provider = audio_provider or default_audio_provider()
                    stage = JobStage.PREPROCESSING
                    chunks, duration = await _prepare_chunks(asset.storage_path, asset.kind, workspace, threshold)
                    chunk_count = len(chunks)
                    stage = JobStage.TRANSCRIBING
                    result = await transcribe_chunks(provider, chunks, asset.language_hint)
                    transcribed = _Transcribed(result=result, duration=duration or None, chunk_count=chunk_count)
            finally:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass
        chunk_count = transcribed.chunk_count

        stage = JobStage.PERSISTING
        result = transcribed.result
        segments = normalize_segments(
            result.segments,
            min_duration=settings.MIN_SEGMENT_SECONDS,
            max_duration=settings.MAX_SEGMENT_SECONDS,
        )
        if not segments:
            raise ProviderError("Transcription produced no text.")

        hint = normalize_language_hint(asset.language_hint)
        detected = result.language if result.language and result.language != "auto" else None
        transcript = build_transcript(
            media_asset_id=asset.id,
            owner_id=asset.owner_id,
            segments=segments,
            language=hint or detected or "auto",
            detected_language=detected,
            confidence=result.confidence if result.confidence is not None else overall_confidence(segments),
            source=result.source,
        )
        async with async_session_maker() as db:
            await save_transcript(transcript, db=db)
            await media_store.transition(
                asset_id,
                media_store.PROCESSING,
                media_store.COMPLETED,
                db=db,
                transcript_id=transcript.id,
                detected_language=detected,
                duration_seconds=transcribed.duration,
                transcript_source=result.source,
            )
            await db.commit()
    except Exception as exc:
        message = _diagnostic(exc)
        logger.exception("Transcription job %s failed during %s: %s", asset_id, stage.value, message)
        try:
            await media_store.transition(
                asset_id,
                media_store.PROCESSING,
                media_store.FAILED,
                processing_error=message,
            )
        except (InvalidTransition, NotFoundError) as guard_exc:
            logger.warning("Could not mark asset %s failed: %s", asset_id, guard_exc)
            return JobOutcome(asset_id=asset_id, stage=JobStage.FAILED, error=message, chunk_count=chunk_count)
        await _publish(bus, PipelineEvent(type=ASSET_FAILED, asset_id=asset_id, owner_id=owner_id, detail=message))
        return JobOutcome(asset_id=asset_id, stage=JobStage.FAILED, error=message, chunk_count=chunk_count)

    logger.info("Transcription job %s completed (transcript %s, %d chunks)", asset_id, transcript.id, chunk_count)
    await _publish(
        bus,
        PipelineEvent(type=ASSET_COMPLETED, asset_id=asset_id, transcript_id=transcript.id, owner_id=owner_id),
    )
    return JobOutcome(asset_id=asset_id, stage=JobStage.DONE, transcript_id=transcript.id, chunk_count=chunk_count)


def process_transcription_job(asset_id: str) -> None:
    """RQ worker entrypoint for transcription jobs."""
    asyncio.run(run_transcription_job(asset_id))
