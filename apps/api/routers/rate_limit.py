"""Fixed-window submission quotas (Redis, with an in-process fallback)."""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import Depends, HTTPException, Request
import redis.asyncio as redis

from config import settings
from routers.auth_scope import get_caller
from services.caller_identity import Caller


# key -> (count, window_resets_at)
_fallback_windows: Dict[str, Tuple[int, float]] = {}
_fallback_lock = asyncio.Lock()


def _quota_subject(request: Request, caller: Optional[Caller]) -> str:
    """Quota per owner when identified, per client address otherwise."""
    if caller is not None:
        return f"owner:{caller.owner_id}"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    if request.client and request.client.host:
        return f"ip:{request.client.host}"
    return "ip:unknown"


async def _count_in_fallback(key: str, window_seconds: int) -> int:
    now = time.time()
    async with _fallback_lock:
        count, resets_at = _fallback_windows.get(key, (0, now + window_seconds))
        if now >= resets_at:
            count, resets_at = 0, now + window_seconds
        count += 1
        _fallback_windows[key] = (count, resets_at)
        return count


async def _count_in_redis(key: str, window_seconds: int) -> int:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True, socket_connect_timeout=1)
    try:
        count = await client.incr(key)
        if count == 1:
            await client.expire(key, window_seconds)
    finally:
        await client.aclose()
    return int(count)


def submission_quota(action: str, limit: Optional[int] = None, window_seconds: Optional[int] = None) -> Callable:
    """FastAPI dependency rejecting callers over `limit` submissions per window."""
    max_requests = int(limit or settings.SUBMISSION_RATE_LIMIT)
    window = int(window_seconds or settings.SUBMISSION_RATE_WINDOW_SECONDS)

    async def _enforce(request: Request, caller: Optional[Caller] = Depends(get_caller)) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return
        key = f"studyscribe:quota:{action}:{_quota_subject(request, caller)}"
        try:
            count = await _count_in_redis(key, window)
        except Exception:
            count = await _count_in_fallback(key, window)
        if count > max_requests:
            raise HTTPException(
                status_code=429,
                detail=f"Too many {action} requests. Try again in a few minutes.",
            )

    return _enforce
