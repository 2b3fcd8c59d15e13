"""Transcript read, edit, highlight, search and export router."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field

from models.transcript import Transcript
from multimodal.models import TranscriptSegment
from routers.auth_scope import get_caller, owner_of
from routers.event_bus import get_event_bus
from services import transcript_store
from services.caller_identity import Caller
from services.events import TRANSCRIPT_EDITED, TRANSCRIPT_HIGHLIGHTED, PipelineEvent, TranscriptEventBus

router = APIRouter()


class SegmentEditRequest(BaseModel):
    text: str = Field(min_length=1, max_length=5000)


class HighlightRequest(BaseModel):
    is_highlighted: bool = True
    color: Optional[str] = Field(default=None, max_length=20)
    note: Optional[str] = Field(default=None, max_length=1000)


class TranscriptResponse(BaseModel):
    transcript_id: str
    media_asset_id: str
    full_text: str
    language: str
    detected_language: Optional[str] = None
    confidence: Optional[float] = None
    source: Optional[str] = None
    version: int
    segments: List[TranscriptSegment]
    edit_history: List[Dict[str, Any]] = []
    export_formats: Dict[str, Any] = {}
    created_at: Optional[str] = None


class SegmentListResponse(BaseModel):
    transcript_id: str
    count: int
    segments: List[TranscriptSegment]


class EditLogEntry(BaseModel):
    segment_index: int
    version: int
    edited_by: Optional[str] = None
    old_text: str
    new_text: str
    created_at: Optional[str] = None


class EditLogResponse(BaseModel):
    transcript_id: str
    version: int
    edit_history: List[Dict[str, Any]]
    edits: List[EditLogEntry]


def _serialize_transcript(transcript: Transcript) -> TranscriptResponse:
    return TranscriptResponse(
        transcript_id=transcript.id,
        media_asset_id=transcript.media_asset_id,
        full_text=transcript.full_text or "",
        language=transcript.language,
        detected_language=transcript.detected_language,
        confidence=transcript.confidence,
        source=transcript.source,
        version=int(transcript.version or 1),
        segments=transcript_store.load_segments(transcript),
        edit_history=list(transcript.edit_history or []),
        export_formats=dict(transcript.export_formats or {}),
        created_at=transcript.created_at.isoformat() if transcript.created_at else None,
    )


@router.get("/{transcript_id}", response_model=TranscriptResponse)
async def get_transcript(transcript_id: str, caller: Optional[Caller] = Depends(get_caller)):
    transcript = await transcript_store.get_transcript(transcript_id, owner_id=owner_of(caller), scoped=True)
    return _serialize_transcript(transcript)


@router.patch("/{transcript_id}/segments/{segment_index}", response_model=TranscriptResponse)
async def edit_transcript_segment(
    transcript_id: str,
    segment_index: int,
    request: SegmentEditRequest,
    caller: Optional[Caller] = Depends(get_caller),
    bus: TranscriptEventBus = Depends(get_event_bus),
):
    """Replace the text of one segment; bumps the transcript version."""
    owner_id = owner_of(caller)
    transcript = await transcript_store.edit_segment(
        transcript_id,
        segment_index,
        request.text,
        edited_by=owner_id,
        owner_id=owner_id,
        scoped=True,
    )
    await bus.publish(
        PipelineEvent(
            type=TRANSCRIPT_EDITED,
            asset_id=transcript.media_asset_id,
            transcript_id=transcript.id,
            owner_id=owner_id,
            detail={"segment_index": segment_index, "version": transcript.version},
        )
    )
    return _serialize_transcript(transcript)


@router.put("/{transcript_id}/segments/{segment_index}/highlight", response_model=TranscriptResponse)
async def highlight_transcript_segment(
    transcript_id: str,
    segment_index: int,
    request: HighlightRequest,
    caller: Optional[Caller] = Depends(get_caller),
    bus: TranscriptEventBus = Depends(get_event_bus),
):
    owner_id = owner_of(caller)
    transcript = await transcript_store.set_highlight(
        transcript_id,
        segment_index,
        request.is_highlighted,
        color=request.color,
        note=request.note,
        owner_id=owner_id,
        scoped=True,
    )
    await bus.publish(
        PipelineEvent(
            type=TRANSCRIPT_HIGHLIGHTED,
            asset_id=transcript.media_asset_id,
            transcript_id=transcript.id,
            owner_id=owner_id,
            detail={"segment_index": segment_index, "is_highlighted": request.is_highlighted},
        )
    )
    return _serialize_transcript(transcript)


@router.get("/{transcript_id}/highlights", response_model=SegmentListResponse)
async def list_highlights(transcript_id: str, caller: Optional[Caller] = Depends(get_caller)):
    segments = await transcript_store.get_highlights(transcript_id, owner_id=owner_of(caller), scoped=True)
    return SegmentListResponse(transcript_id=transcript_id, count=len(segments), segments=segments)


@router.get("/{transcript_id}/search", response_model=SegmentListResponse)
async def search_transcript(
    transcript_id: str,
    q: str = Query(..., max_length=200),
    caller: Optional[Caller] = Depends(get_caller),
):
    """Case-insensitive text search across segments."""
    segments = await transcript_store.search_segments(transcript_id, q, owner_id=owner_of(caller), scoped=True)
    return SegmentListResponse(transcript_id=transcript_id, count=len(segments), segments=segments)


@router.get("/{transcript_id}/history", response_model=EditLogResponse)
async def get_transcript_history(transcript_id: str, caller: Optional[Caller] = Depends(get_caller)):
    transcript = await transcript_store.get_transcript(transcript_id, owner_id=owner_of(caller), scoped=True)
    edits = await transcript_store.get_edit_log(transcript_id)
    return EditLogResponse(
        transcript_id=transcript.id,
        version=int(transcript.version or 1),
        edit_history=list(transcript.edit_history or []),
        edits=[
            EditLogEntry(
                segment_index=edit.segment_index,
                version=edit.version,
                edited_by=edit.edited_by,
                old_text=edit.old_text,
                new_text=edit.new_text,
                created_at=edit.created_at.isoformat() if edit.created_at else None,
            )
            for edit in edits
        ],
    )


@router.get("/{transcript_id}/export/{fmt}")
async def export_transcript(
    transcript_id: str,
    fmt: str,
    highlights_only: bool = Query(False),
    caller: Optional[Caller] = Depends(get_caller),
):
    """Download the transcript as srt, vtt, txt or tsv."""
    rendered = await transcript_store.render_transcript(
        transcript_id,
        fmt.lower(),
        highlights_only=highlights_only,
        owner_id=owner_of(caller),
        scoped=True,
    )
    return Response(
        content=rendered.content,
        media_type=rendered.content_type,
        headers={"Content-Disposition": f'attachment; filename="{rendered.filename}"'},
    )
