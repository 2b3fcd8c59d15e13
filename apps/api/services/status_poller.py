"""Bounded status polling for callers that wait on a transcription job."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

TERMINAL_STATUSES = ("completed", "failed")

StatusFetcher = Callable[[], Awaitable[Dict[str, Any]]]


@dataclass
class PollOutcome:
    status: Optional[str]
    attempts: int
    timed_out: bool
    payload: Optional[Dict[str, Any]] = None


async def poll_until_terminal(
    fetch_status: StatusFetcher,
    *,
    interval_seconds: float = 5.0,
    max_attempts: int = 60,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PollOutcome:
    """
    Call `fetch_status` until it reports a terminal status or `max_attempts`
    is used up. Running out of attempts is reported as `timed_out`, not as a
    failure: the asset keeps processing and can be queried again later.
    """
    payload: Optional[Dict[str, Any]] = None
    attempts = max(int(max_attempts), 1)
    for attempt in range(1, attempts + 1):
        payload = await fetch_status()
        status = (payload or {}).get("status")
        if status in TERMINAL_STATUSES:
            return PollOutcome(status=status, attempts=attempt, timed_out=False, payload=payload)
        if attempt < attempts:
            await sleep(interval_seconds)
    return PollOutcome(
        status=(payload or {}).get("status"),
        attempts=attempts,
        timed_out=True,
        payload=payload,
    )
