"""Public transcription provider utilities."""

from services.transcription.providers import (
    CaptionFetchProvider,
    LocalCLIProvider,
    OpenAIWhisperProvider,
    RemoteServiceProvider,
    build_audio_provider,
    build_caption_provider,
)
from services.transcription.types import ProviderName, TranscriptionProvider, normalize_language_hint

__all__ = [
    "CaptionFetchProvider",
    "LocalCLIProvider",
    "OpenAIWhisperProvider",
    "ProviderName",
    "RemoteServiceProvider",
    "TranscriptionProvider",
    "build_audio_provider",
    "build_caption_provider",
    "normalize_language_hint",
]
