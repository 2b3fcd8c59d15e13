"""Media submission, status and lifecycle router."""

from __future__ import annotations

from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from pydantic import BaseModel, Field

from models.media_asset import MediaAsset
from multimodal.video import extract_video_id
from routers.auth_scope import get_caller, owner_of
from routers.event_bus import get_event_bus
from routers.rate_limit import submission_quota
from services import media_store
from services.caller_identity import Caller
from services.events import ASSET_DELETED, PipelineEvent, TranscriptEventBus
from services.job_queue import dispatch_transcription, mark_dispatch_failed
from services.storage import UploadTooLarge, delete_file, sanitize_filename, save_upload

router = APIRouter()


class SubmitUrlRequest(BaseModel):
    url: str = Field(min_length=8, max_length=2000)
    language: str = Field(default="auto", max_length=12)
    title: Optional[str] = Field(default=None, max_length=300)


class AssetStatusResponse(BaseModel):
    asset_id: str
    status: str
    transcript_id: Optional[str] = None
    error: Optional[str] = None


class MediaAssetResponse(AssetStatusResponse):
    original_filename: str
    kind: str
    mime_type: str
    file_size_bytes: Optional[int] = None
    source_url: Optional[str] = None
    language_hint: str
    detected_language: Optional[str] = None
    duration_seconds: Optional[float] = None
    transcript_source: Optional[str] = None
    retry_of_id: Optional[str] = None
    queue_job_id: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


def _serialize_asset(asset: MediaAsset, queue_job_id: Optional[str] = None) -> MediaAssetResponse:
    return MediaAssetResponse(
        asset_id=asset.id,
        status=asset.status,
        transcript_id=asset.transcript_id,
        error=asset.processing_error,
        original_filename=asset.original_filename,
        kind=asset.kind,
        mime_type=asset.mime_type,
        file_size_bytes=asset.file_size_bytes,
        source_url=asset.source_url,
        language_hint=asset.language_hint,
        detected_language=asset.detected_language,
        duration_seconds=asset.duration_seconds,
        transcript_source=asset.transcript_source,
        retry_of_id=asset.retry_of_id,
        queue_job_id=queue_job_id,
        created_at=asset.created_at.isoformat() if asset.created_at else None,
        completed_at=asset.completed_at.isoformat() if asset.completed_at else None,
    )


async def _dispatch(asset_id: str, bus: TranscriptEventBus) -> str:
    try:
        return dispatch_transcription(asset_id, event_bus=bus)
    except Exception as exc:
        await mark_dispatch_failed(asset_id, exc)
        raise HTTPException(
            status_code=503,
            detail="Transcription queue unavailable. Check Redis/worker availability and retry.",
        ) from exc


@router.post("/upload", response_model=MediaAssetResponse, status_code=201)
async def upload_media(
    file: UploadFile = File(...),
    kind: Optional[Literal["audio", "video", "recording"]] = Form(None),
    language: str = Form("auto"),
    _quota: None = Depends(submission_quota("media_upload")),
    caller: Optional[Caller] = Depends(get_caller),
    bus: TranscriptEventBus = Depends(get_event_bus),
):
    """Upload an audio/video file (or a recording) and queue it for transcription."""
    owner_id = owner_of(caller)
    mime_type = media_store.normalize_mime_type(file.content_type)
    if mime_type not in media_store.ALLOWED_MIME_TYPES:
        await file.close()
        raise HTTPException(status_code=422, detail=f"Unsupported media type '{mime_type or 'unknown'}'.")

    try:
        stored_path, size = await save_upload(file, owner_id)
    except UploadTooLarge as exc:
        raise HTTPException(status_code=413, detail=str(exc)) from exc

    metadata = media_store.NewMediaAsset(
        original_filename=sanitize_filename(file.filename),
        mime_type=mime_type,
        kind=kind,
        file_size_bytes=size,
        storage_path=str(stored_path),
        language_hint=language,
    )
    try:
        asset_id = await media_store.create_asset(metadata, owner_id=owner_id)
    except Exception:
        delete_file(str(stored_path))
        raise

    queue_job_id = await _dispatch(asset_id, bus)
    asset = await media_store.get_asset(asset_id)
    return _serialize_asset(asset, queue_job_id)


@router.post("/url", response_model=MediaAssetResponse, status_code=201)
async def submit_media_url(
    request: SubmitUrlRequest,
    _quota: None = Depends(submission_quota("media_url")),
    caller: Optional[Caller] = Depends(get_caller),
    bus: TranscriptEventBus = Depends(get_event_bus),
):
    """Queue a YouTube link; captions are used when the video has them."""
    url = request.url.strip()
    video_id = extract_video_id(url)
    if not video_id:
        raise HTTPException(status_code=422, detail="Could not find a YouTube video id in the URL.")
    if not url.startswith(("http://", "https://")):
        url = f"https://www.youtube.com/watch?v={video_id}"

    metadata = media_store.NewMediaAsset(
        original_filename=sanitize_filename(request.title or f"youtube_{video_id}", default=f"youtube_{video_id}"),
        mime_type=media_store.URL_MIME_TYPE,
        kind="video",
        source_url=url,
        language_hint=request.language,
    )
    asset_id = await media_store.create_asset(metadata, owner_id=owner_of(caller))
    queue_job_id = await _dispatch(asset_id, bus)
    asset = await media_store.get_asset(asset_id)
    return _serialize_asset(asset, queue_job_id)


@router.get("", response_model=List[MediaAssetResponse])
async def list_media(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    caller: Optional[Caller] = Depends(get_caller),
):
    """List the caller's assets, newest first."""
    assets = await media_store.list_assets(owner_of(caller), limit=limit, offset=offset)
    return [_serialize_asset(asset) for asset in assets]


@router.get("/{asset_id}/status", response_model=AssetStatusResponse)
async def get_media_status(asset_id: str, caller: Optional[Caller] = Depends(get_caller)):
    """Poll target: status, transcript id once completed, error once failed."""
    asset = await media_store.get_asset(asset_id, owner_id=owner_of(caller), scoped=True)
    return AssetStatusResponse(
        asset_id=asset.id,
        status=asset.status,
        transcript_id=asset.transcript_id,
        error=asset.processing_error,
    )


@router.get("/{asset_id}", response_model=MediaAssetResponse)
async def get_media(asset_id: str, caller: Optional[Caller] = Depends(get_caller)):
    asset = await media_store.get_asset(asset_id, owner_id=owner_of(caller), scoped=True)
    return _serialize_asset(asset)


@router.post("/{asset_id}/retry", response_model=MediaAssetResponse, status_code=201)
async def retry_media(
    asset_id: str,
    _quota: None = Depends(submission_quota("media_retry")),
    caller: Optional[Caller] = Depends(get_caller),
    bus: TranscriptEventBus = Depends(get_event_bus),
):
    """Resubmit a failed asset. Only failed assets can be retried."""
    new_asset_id = await media_store.create_retry(asset_id, owner_id=owner_of(caller), scoped=True)
    queue_job_id = await _dispatch(new_asset_id, bus)
    asset = await media_store.get_asset(new_asset_id)
    return _serialize_asset(asset, queue_job_id)


@router.delete("/{asset_id}", status_code=204)
async def delete_media(
    asset_id: str,
    caller: Optional[Caller] = Depends(get_caller),
    bus: TranscriptEventBus = Depends(get_event_bus),
):
    """Delete an asset together with its transcript, study materials and stored file."""
    owner_id = owner_of(caller)
    asset = await media_store.get_asset(asset_id, owner_id=owner_id, scoped=True)
    transcript_id = asset.transcript_id
    await media_store.delete_asset(asset_id, owner_id=owner_id, scoped=True)
    await bus.publish(
        PipelineEvent(type=ASSET_DELETED, asset_id=asset_id, transcript_id=transcript_id, owner_id=owner_id)
    )
