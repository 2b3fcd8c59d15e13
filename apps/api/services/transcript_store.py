"""Versioned transcript persistence, editing, search and export."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database import async_session_maker
from models.media_asset import MediaAsset
from models.transcript import Transcript
from models.transcript_edit import TranscriptEdit
from multimodal.models import TranscriptSegment
from services import transcript_export
from services.errors import NotFoundError, ValidationError
from services.segments import clean_text, join_segment_text

logger = logging.getLogger(__name__)

MAX_EDIT_ATTEMPTS = 3


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def load_segments(transcript: Transcript) -> List[TranscriptSegment]:
    return [TranscriptSegment.model_validate(item) for item in (transcript.segments or [])]


def dump_segments(segments: List[TranscriptSegment]) -> List[Dict[str, Any]]:
    return [segment.model_dump() for segment in segments]


def build_transcript(
    *,
    media_asset_id: str,
    owner_id: Optional[str],
    segments: List[TranscriptSegment],
    language: str,
    detected_language: Optional[str] = None,
    confidence: Optional[float] = None,
    source: Optional[str] = None,
) -> Transcript:
    """Assemble an unsaved transcript whose full text is the joined segment text."""
    return Transcript(
        media_asset_id=media_asset_id,
        owner_id=owner_id,
        full_text=join_segment_text(segments),
        language=language or "auto",
        detected_language=detected_language,
        confidence=confidence,
        source=source,
        segments=dump_segments(segments),
        version=1,
        edit_history=[],
        export_formats={fmt: {"generated": False, "last_generated": None} for fmt in transcript_export.EXPORT_FORMATS},
    )


async def save_transcript(transcript: Transcript, db: Optional[AsyncSession] = None) -> str:
    """Persist a transcript. With `db`, the caller owns the commit."""
    if db is not None:
        db.add(transcript)
        await db.flush()
        return transcript.id
    async with async_session_maker() as session:
        session.add(transcript)
        await session.commit()
        return transcript.id


def _visible_to(query, owner_id: Optional[str]):
    if owner_id is None:
        return query.where(Transcript.owner_id.is_(None))
    return query.where(Transcript.owner_id == owner_id)


async def get_transcript(
    transcript_id: str,
    *,
    owner_id: Optional[str] = None,
    scoped: bool = False,
) -> Transcript:
    query = select(Transcript).where(Transcript.id == transcript_id)
    if scoped:
        query = _visible_to(query, owner_id)
    async with async_session_maker() as db:
        transcript = (await db.execute(query)).scalar_one_or_none()
    if transcript is None:
        raise NotFoundError(f"Transcript {transcript_id} not found.")
    return transcript


def _find_segment(segments: List[TranscriptSegment], segment_index: int, transcript_id: str) -> TranscriptSegment:
    for segment in segments:
        if segment.index == segment_index:
            return segment
    raise NotFoundError(f"Segment {segment_index} not found in transcript {transcript_id}.")


async def edit_segment(
    transcript_id: str,
    segment_index: int,
    new_text: str,
    *,
    edited_by: Optional[str] = None,
    owner_id: Optional[str] = None,
    scoped: bool = False,
) -> Transcript:
    """
    Replace one segment's text.

    The first edit keeps the pre-edit text in `original_text`; every call bumps
    `version` by one and appends one history entry. The write is guarded on the
    version that was read, so concurrent edits cannot lose each other.
    """
    text = clean_text(new_text)
    if not text:
        raise ValidationError("Segment text cannot be empty.")

    for _ in range(MAX_EDIT_ATTEMPTS):
        transcript = await get_transcript(transcript_id, owner_id=owner_id, scoped=scoped)
        segments = load_segments(transcript)
        segment = _find_segment(segments, segment_index, transcript_id)

        old_text = segment.text
        if not segment.is_edited:
            segment.original_text = old_text
        segment.text = text
        segment.is_edited = True
        segment.edited_at = _now_iso()

        next_version = int(transcript.version or 1) + 1
        history = list(transcript.edit_history or [])
        history.append(
            {
                "version": next_version,
                "edited_by": edited_by,
                "edited_at": segment.edited_at,
                "changes": f"Edited segment {segment_index}",
            }
        )

        async with async_session_maker() as db:
            result = await db.execute(
                update(Transcript)
                .where(Transcript.id == transcript_id, Transcript.version == transcript.version)
                .values(
                    segments=dump_segments(segments),
                    full_text=join_segment_text(segments),
                    version=next_version,
                    edit_history=history,
                )
            )
            if result.rowcount != 1:
                await db.rollback()
                logger.info("Transcript %s changed during edit; retrying", transcript_id)
                continue
            db.add(
                TranscriptEdit(
                    transcript_id=transcript_id,
                    segment_index=segment_index,
                    edited_by=edited_by,
                    old_text=old_text,
                    new_text=text,
                    version=next_version,
                )
            )
            await db.commit()
        return await get_transcript(transcript_id)

    raise ValidationError(f"Transcript {transcript_id} is being edited concurrently; retry the edit.")


async def set_highlight(
    transcript_id: str,
    segment_index: int,
    is_highlighted: bool,
    *,
    color: Optional[str] = None,
    note: Optional[str] = None,
    owner_id: Optional[str] = None,
    scoped: bool = False,
) -> Transcript:
    async with async_session_maker() as db:
        query = select(Transcript).where(Transcript.id == transcript_id)
        if scoped:
            query = _visible_to(query, owner_id)
        transcript = (await db.execute(query)).scalar_one_or_none()
        if transcript is None:
            raise NotFoundError(f"Transcript {transcript_id} not found.")
        segments = load_segments(transcript)
        segment = _find_segment(segments, segment_index, transcript_id)
        segment.is_highlighted = bool(is_highlighted)
        if is_highlighted:
            segment.highlight_color = color or segment.highlight_color or "yellow"
            segment.highlight_note = note if note is not None else segment.highlight_note
        else:
            segment.highlight_note = None
        transcript.segments = dump_segments(segments)
        await db.commit()
        await db.refresh(transcript)
        return transcript


async def search_segments(
    transcript_id: str,
    query: str,
    *,
    owner_id: Optional[str] = None,
    scoped: bool = False,
) -> List[TranscriptSegment]:
    """Case-insensitive substring match over segment text."""
    needle = (query or "").strip().lower()
    if not needle:
        raise ValidationError("Search query cannot be empty.")
    transcript = await get_transcript(transcript_id, owner_id=owner_id, scoped=scoped)
    return [segment for segment in load_segments(transcript) if needle in segment.text.lower()]


async def get_highlights(
    transcript_id: str,
    *,
    owner_id: Optional[str] = None,
    scoped: bool = False,
) -> List[TranscriptSegment]:
    transcript = await get_transcript(transcript_id, owner_id=owner_id, scoped=scoped)
    return [segment for segment in load_segments(transcript) if segment.is_highlighted]


async def get_edit_log(transcript_id: str) -> List[TranscriptEdit]:
    async with async_session_maker() as db:
        result = await db.execute(
            select(TranscriptEdit)
            .where(TranscriptEdit.transcript_id == transcript_id)
            .order_by(TranscriptEdit.version.asc())
        )
        return list(result.scalars().all())


async def render_transcript(
    transcript_id: str,
    fmt: str,
    *,
    highlights_only: bool = False,
    owner_id: Optional[str] = None,
    scoped: bool = False,
) -> transcript_export.RenderedTranscript:
    """Render an export and record its last-generated time."""
    if fmt not in transcript_export.EXPORT_FORMATS:
        raise ValidationError(
            f"Unsupported export format '{fmt}'. Use one of: {', '.join(transcript_export.EXPORT_FORMATS)}."
        )
    transcript = await get_transcript(transcript_id, owner_id=owner_id, scoped=scoped)
    async with async_session_maker() as db:
        original_filename = (
            await db.execute(select(MediaAsset.original_filename).where(MediaAsset.id == transcript.media_asset_id))
        ).scalar_one_or_none()

    generated_at = datetime.now(timezone.utc)
    rendered = transcript_export.render(
        fmt,
        load_segments(transcript),
        original_filename=original_filename,
        full_text=transcript.full_text,
        language=transcript.language,
        version=int(transcript.version or 1),
        generated_at=generated_at,
        highlights_only=highlights_only,
    )

    formats = dict(transcript.export_formats or {})
    formats[fmt] = {"generated": True, "last_generated": generated_at.isoformat()}
    async with async_session_maker() as db:
        await db.execute(update(Transcript).where(Transcript.id == transcript_id).values(export_formats=formats))
        await db.commit()
    return rendered
