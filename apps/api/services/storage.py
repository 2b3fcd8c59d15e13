"""Upload storage and per-job scratch workspaces."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, Optional

from fastapi import UploadFile

from config import settings

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "job_"
HEARTBEAT_FILE = ".heartbeat"


class UploadTooLarge(Exception):
    def __init__(self, limit_bytes: int):
        self.limit_bytes = limit_bytes
        super().__init__(f"File too large. Max upload size is {limit_bytes // (1024 * 1024)}MB.")


def sanitize_filename(filename: Optional[str], default: str = "upload.bin") -> str:
    base = os.path.basename(filename or default)
    safe = "".join(ch if ch.isalnum() or ch in ("-", "_", ".") else "_" for ch in base)
    return safe or default


async def save_upload(file: UploadFile, owner_id: Optional[str]) -> tuple[Path, int]:
    """Stream an upload to disk. Returns (path, size_in_bytes)."""
    original_filename = sanitize_filename(file.filename)
    owner_dir = Path(settings.MEDIA_UPLOAD_DIR) / (owner_id or "anonymous")
    owner_dir.mkdir(parents=True, exist_ok=True)
    destination = owner_dir / f"{uuid.uuid4()}_{original_filename}"

    limit = int(settings.MAX_UPLOAD_BYTES)
    total_size = 0
    try:
        with destination.open("wb") as out:
            while True:
                chunk = await file.read(1024 * 1024)
                if not chunk:
                    break
                total_size += len(chunk)
                if total_size > limit:
                    out.close()
                    destination.unlink(missing_ok=True)
                    raise UploadTooLarge(limit)
                out.write(chunk)
    finally:
        await file.close()
    return destination, total_size


def delete_file(path: Optional[str]) -> bool:
    """Best-effort removal of a stored media file. Failures are logged, not raised."""
    if not path:
        return False
    try:
        Path(path).unlink(missing_ok=True)
        return True
    except OSError as exc:
        logger.warning("Could not delete media file %s: %s", path, exc)
        return False


@contextmanager
def job_workspace(label: str) -> Iterator[Path]:
    """Scratch directory for one job invocation, removed on every exit path."""
    root = Path(settings.MEDIA_TEMP_DIR)
    root.mkdir(parents=True, exist_ok=True)
    workspace = Path(tempfile.mkdtemp(prefix=f"{WORKSPACE_PREFIX}{label}_", dir=str(root)))
    try:
        touch_workspace(workspace)
        yield workspace
    finally:
        shutil.rmtree(workspace, ignore_errors=True)


def touch_workspace(workspace: Path) -> None:
    """Mark a workspace as still in use so the stale sweep leaves it alone."""
    try:
        (workspace / HEARTBEAT_FILE).touch()
    except OSError as exc:
        logger.warning("Could not refresh heartbeat for %s: %s", workspace, exc)


def _last_activity(path: Path) -> float:
    mtime = path.stat().st_mtime
    heartbeat = path / HEARTBEAT_FILE
    if path.is_dir() and heartbeat.exists():
        mtime = max(mtime, heartbeat.stat().st_mtime)
    return mtime


def cleanup_stale_workspaces(max_age_minutes: Optional[int] = None) -> int:
    """
    Remove scratch workspaces left behind by crashed jobs. A workspace counts
    as active while its heartbeat file is newer than the cutoff.
    """
    age = max(int(max_age_minutes if max_age_minutes is not None else settings.TEMP_FILE_MAX_AGE_MINUTES), 1)
    root = Path(settings.MEDIA_TEMP_DIR)
    if not root.exists():
        return 0

    cutoff = datetime.now(timezone.utc) - timedelta(minutes=age)
    removed = 0
    for path in root.iterdir():
        try:
            mtime = datetime.fromtimestamp(_last_activity(path), tz=timezone.utc)
            if mtime >= cutoff:
                continue
            if path.is_dir():
                shutil.rmtree(path, ignore_errors=True)
            else:
                path.unlink(missing_ok=True)
            removed += 1
        except OSError as exc:
            logger.warning("Could not cleanup stale temp path %s: %s", path, exc)
    return removed
