"""Pipeline error taxonomy."""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for media pipeline failures."""


class ValidationError(PipelineError):
    """Malformed submission rejected before any job starts."""


class NotFoundError(PipelineError):
    """Requested asset or transcript does not exist (or is not visible to the caller)."""


class InvalidTransition(PipelineError):
    """Atomic status guard tripped: the asset is not in the expected state."""

    def __init__(self, asset_id: str, expected: str, actual: Optional[str]):
        self.asset_id = asset_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Asset {asset_id} is '{actual}', expected '{expected}'.")


class PreprocessingFailed(PipelineError):
    """Audio extraction, probing or chunking failed."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class UnsupportedMedia(PreprocessingFailed):
    """No decoder is available for the input."""


class TranscriptionProviderError(PipelineError):
    """Base class for provider-layer failures."""


class ProviderUnavailable(TranscriptionProviderError):
    """Provider failed its liveness check."""


class ProviderError(TranscriptionProviderError):
    """Provider responded but could not produce a transcript."""


class ToolNotInstalled(TranscriptionProviderError):
    """Local transcription executable is missing."""


class NoCaptionsAvailable(TranscriptionProviderError):
    """No caption track exists for the requested video."""
