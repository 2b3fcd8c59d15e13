"""Dependency exposing the application's pipeline event bus."""

from fastapi import Request

from services.events import TranscriptEventBus, build_event_bus


def get_event_bus(request: Request) -> TranscriptEventBus:
    bus = getattr(request.app.state, "event_bus", None)
    if bus is None:
        bus = build_event_bus()
        request.app.state.event_bus = bus
    return bus
