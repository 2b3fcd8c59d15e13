"""Publish/subscribe channel for transcript and asset lifecycle events."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from redis import Redis

from config import settings

logger = logging.getLogger(__name__)

EVENTS_CHANNEL = "transcript_events"

ASSET_COMPLETED = "asset.completed"
ASSET_FAILED = "asset.failed"
ASSET_DELETED = "asset.deleted"
TRANSCRIPT_EDITED = "transcript.edited"
TRANSCRIPT_HIGHLIGHTED = "transcript.highlighted"


@dataclass(frozen=True)
class PipelineEvent:
    type: str
    asset_id: Optional[str] = None
    transcript_id: Optional[str] = None
    owner_id: Optional[str] = None
    detail: Any = None
    at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


Listener = Callable[[PipelineEvent], Union[None, Awaitable[None]]]


class TranscriptEventBus:
    """
    In-process fan-out to independent subscribers.

    `subscribe` returns a callable that removes the listener. Listener errors
    are logged and never reach the publisher. When `redis_url` is set, events
    are also published to the `transcript_events` channel so other processes
    (API replicas, RQ workers) see them.
    """

    def __init__(self, redis_url: Optional[str] = None) -> None:
        self._listeners: List[Listener] = []
        self._redis_url = redis_url

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)

    async def publish(self, event: PipelineEvent) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                logger.error("Event listener failed for %s: %s", event.type, exc)
        if self._redis_url:
            await self._publish_remote(event)

    async def _publish_remote(self, event: PipelineEvent) -> None:
        def _send() -> None:
            client = Redis.from_url(self._redis_url, socket_connect_timeout=2, socket_timeout=2)
            try:
                client.publish(EVENTS_CHANNEL, json.dumps(event.to_dict()))
            finally:
                client.close()

        try:
            await asyncio.to_thread(_send)
        except Exception as exc:
            logger.warning("Could not publish %s to redis: %s", event.type, exc)


def build_event_bus() -> TranscriptEventBus:
    return TranscriptEventBus(redis_url=settings.REDIS_URL if settings.JOB_BACKEND == "rq" else None)
