"""Durable media asset records and their status state machine."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database import async_session_maker
from models.analysis_insight import AnalysisInsight
from models.media_asset import MediaAsset
from models.study_material import StudyMaterial
from models.transcript import Transcript
from models.transcript_edit import TranscriptEdit
from services.errors import InvalidTransition, NotFoundError, ValidationError
from services.storage import delete_file

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = {
    "audio/mpeg",
    "audio/mp3",
    "audio/wav",
    "audio/x-wav",
    "audio/wave",
    "audio/ogg",
    "audio/webm",
    "audio/m4a",
    "audio/x-m4a",
    "audio/mp4",
    "audio/flac",
    "audio/aac",
    "video/mp4",
    "video/webm",
    "video/ogg",
    "video/quicktime",
}
URL_MIME_TYPE = "text/uri-list"
MEDIA_KINDS = ("audio", "video", "recording")

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
TERMINAL_STATUSES = (COMPLETED, FAILED)
ALLOWED_TRANSITIONS = {
    PENDING: {PROCESSING},
    PROCESSING: {COMPLETED, FAILED},
}
TRANSITION_FIELDS = {
    "processing_error",
    "transcript_id",
    "detected_language",
    "duration_seconds",
    "transcript_source",
}


@dataclass
class NewMediaAsset:
    original_filename: str
    mime_type: str
    kind: Optional[str] = None
    file_size_bytes: Optional[int] = None
    storage_path: Optional[str] = None
    source_url: Optional[str] = None
    language_hint: str = "auto"
    retry_of_id: Optional[str] = None


def infer_kind(mime_type: str) -> str:
    return "video" if (mime_type or "").lower().startswith("video/") else "audio"


def normalize_mime_type(mime_type: Optional[str]) -> str:
    return (mime_type or "").split(";", 1)[0].strip().lower()


def validate_new_asset(metadata: NewMediaAsset) -> NewMediaAsset:
    """Raise ValidationError for submissions that must never reach a job."""
    metadata.mime_type = normalize_mime_type(metadata.mime_type)
    metadata.language_hint = (metadata.language_hint or "auto").strip().lower() or "auto"
    if metadata.kind is not None and metadata.kind not in MEDIA_KINDS:
        raise ValidationError(f"kind must be one of {', '.join(MEDIA_KINDS)}.")

    if metadata.source_url:
        if not metadata.source_url.startswith(("http://", "https://")):
            raise ValidationError("source_url must be an absolute http(s) URL.")
        metadata.mime_type = URL_MIME_TYPE
        metadata.kind = metadata.kind or "video"
        return metadata

    if not metadata.storage_path:
        raise ValidationError("A stored file or a source URL is required.")
    if metadata.file_size_bytes is None or int(metadata.file_size_bytes) <= 0:
        raise ValidationError("File is empty.")
    if metadata.mime_type not in ALLOWED_MIME_TYPES:
        raise ValidationError(f"Unsupported media type '{metadata.mime_type or 'unknown'}'.")
    metadata.kind = metadata.kind or infer_kind(metadata.mime_type)
    return metadata


def _visible_to(query, owner_id: Optional[str]):
    if owner_id is None:
        return query.where(MediaAsset.owner_id.is_(None))
    return query.where(MediaAsset.owner_id == owner_id)


async def create_asset(metadata: NewMediaAsset, owner_id: Optional[str] = None) -> str:
    """Insert a validated asset in `pending`. Returns the new asset id."""
    validate_new_asset(metadata)
    async with async_session_maker() as db:
        asset = MediaAsset(
            owner_id=owner_id,
            original_filename=metadata.original_filename,
            kind=metadata.kind,
            source_url=metadata.source_url,
            storage_path=metadata.storage_path,
            file_size_bytes=metadata.file_size_bytes,
            mime_type=metadata.mime_type,
            language_hint=metadata.language_hint,
            status=PENDING,
            retry_of_id=metadata.retry_of_id,
        )
        db.add(asset)
        await db.commit()
        logger.info("Media asset %s created (%s, %s)", asset.id, asset.kind, asset.mime_type)
        return asset.id


async def get_asset(
    asset_id: str,
    *,
    owner_id: Optional[str] = None,
    scoped: bool = False,
    db: Optional[AsyncSession] = None,
) -> MediaAsset:
    query = select(MediaAsset).where(MediaAsset.id == asset_id)
    if scoped:
        query = _visible_to(query, owner_id)
    if db is not None:
        asset = (await db.execute(query)).scalar_one_or_none()
    else:
        async with async_session_maker() as session:
            asset = (await session.execute(query)).scalar_one_or_none()
    if asset is None:
        raise NotFoundError(f"Media asset {asset_id} not found.")
    return asset


async def list_assets(owner_id: Optional[str], *, limit: int = 50, offset: int = 0) -> List[MediaAsset]:
    async with async_session_maker() as db:
        query = _visible_to(select(MediaAsset), owner_id)
        result = await db.execute(
            query.order_by(MediaAsset.created_at.desc()).offset(max(offset, 0)).limit(max(min(limit, 200), 1))
        )
        return list(result.scalars().all())


def _transition_values(asset_id: str, from_status: str, to_status: str, fields: dict) -> dict:
    if to_status not in ALLOWED_TRANSITIONS.get(from_status, set()):
        raise ValueError(f"Transition {from_status} -> {to_status} is not allowed.")
    unknown = set(fields) - TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Unsupported transition fields: {', '.join(sorted(unknown))}")
    if to_status == COMPLETED and not fields.get("transcript_id"):
        raise ValueError(f"Completing asset {asset_id} requires a transcript_id.")
    if to_status == FAILED:
        if fields.get("transcript_id"):
            raise ValueError("A failed asset cannot reference a transcript.")
        fields = {**fields, "processing_error": str(fields.get("processing_error") or "Processing failed.")[:2000]}

    values: dict[str, Any] = {"status": to_status, **fields}
    if to_status == PROCESSING:
        values["processing_started_at"] = datetime.now(timezone.utc)
    if to_status in TERMINAL_STATUSES:
        values["completed_at"] = datetime.now(timezone.utc)
    return values


async def _apply_transition(db: AsyncSession, asset_id: str, from_status: str, values: dict) -> None:
    result = await db.execute(
        update(MediaAsset)
        .where(MediaAsset.id == asset_id, MediaAsset.status == from_status)
        .values(**values)
    )
    if result.rowcount == 1:
        return
    current = (await db.execute(select(MediaAsset.status).where(MediaAsset.id == asset_id))).scalar_one_or_none()
    if current is None:
        raise NotFoundError(f"Media asset {asset_id} not found.")
    raise InvalidTransition(asset_id, from_status, current)


async def transition(
    asset_id: str,
    from_status: str,
    to_status: str,
    *,
    db: Optional[AsyncSession] = None,
    **fields: Any,
) -> None:
    """
    Atomic compare-and-set on asset status.

    Raises InvalidTransition when the stored status is not `from_status`. When
    `db` is supplied the caller owns the commit, so the status change can land
    in the same transaction as other writes.
    """
    values = _transition_values(asset_id, from_status, to_status, dict(fields))
    if db is not None:
        await _apply_transition(db, asset_id, from_status, values)
        return
    async with async_session_maker() as session:
        try:
            await _apply_transition(session, asset_id, from_status, values)
        except Exception:
            await session.rollback()
            raise
        await session.commit()
    logger.info("Media asset %s: %s -> %s", asset_id, from_status, to_status)


async def create_retry(asset_id: str, *, owner_id: Optional[str] = None, scoped: bool = False) -> str:
    """Resubmit a failed asset as a fresh `pending` asset sharing the same media."""
    source = await get_asset(asset_id, owner_id=owner_id, scoped=scoped)
    if source.status != FAILED:
        raise InvalidTransition(asset_id, FAILED, source.status)
    metadata = NewMediaAsset(
        original_filename=source.original_filename,
        mime_type=source.mime_type,
        kind=source.kind,
        file_size_bytes=source.file_size_bytes,
        storage_path=source.storage_path,
        source_url=source.source_url,
        language_hint=source.language_hint,
        retry_of_id=source.id,
    )
    return await create_asset(metadata, owner_id=source.owner_id)


async def delete_asset(asset_id: str, *, owner_id: Optional[str] = None, scoped: bool = False) -> None:
    """Delete an asset, its transcript and derived records, then its stored file."""
    async with async_session_maker() as db:
        asset = await get_asset(asset_id, owner_id=owner_id, scoped=scoped, db=db)
        storage_path = asset.storage_path

        transcript_ids = list(
            (await db.execute(select(Transcript.id).where(Transcript.media_asset_id == asset_id))).scalars().all()
        )
        if transcript_ids:
            await db.execute(delete(AnalysisInsight).where(AnalysisInsight.transcript_id.in_(transcript_ids)))
            await db.execute(delete(StudyMaterial).where(StudyMaterial.transcript_id.in_(transcript_ids)))
            await db.execute(delete(TranscriptEdit).where(TranscriptEdit.transcript_id.in_(transcript_ids)))
            await db.execute(delete(Transcript).where(Transcript.id.in_(transcript_ids)))
        await db.execute(delete(MediaAsset).where(MediaAsset.id == asset_id))

        shared = 0
        if storage_path:
            shared = (
                await db.execute(select(func.count()).select_from(MediaAsset).where(MediaAsset.storage_path == storage_path))
            ).scalar_one()
        await db.commit()

    if storage_path and not shared:
        delete_file(storage_path)
    logger.info("Media asset %s deleted (%d transcripts)", asset_id, len(transcript_ids))
