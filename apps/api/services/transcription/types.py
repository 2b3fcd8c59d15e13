"""Transcription provider contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Literal, Optional

from multimodal.models import TranscriptionResult


ProviderName = Literal["remote", "openai", "local_cli", "captions"]


def normalize_language_hint(language_hint: Optional[str]) -> Optional[str]:
    """Return an ISO code, or None for "auto"/empty hints."""
    value = (language_hint or "").strip().lower()
    if not value or value == "auto":
        return None
    return value


class TranscriptionProvider(ABC):
    """Common capability every backend implements."""

    name: ProviderName
    # Caption fetch works from the media reference itself and skips preprocessing.
    requires_audio: bool = True

    @abstractmethod
    async def transcribe(self, media_ref: str, language_hint: Optional[str] = None) -> TranscriptionResult:
        raise NotImplementedError

    async def is_available(self) -> bool:
        return True
