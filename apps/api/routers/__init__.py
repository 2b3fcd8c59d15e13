"""Routers package."""

from . import (
    health,
    media,
    transcripts,
    study,
)
