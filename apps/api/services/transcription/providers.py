"""Transcription backends and configuration-driven selection."""

from __future__ import annotations

import asyncio
import html
import json
import logging
import shutil
import subprocess
import tempfile
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import httpx
from openai import OpenAI, OpenAIError
from youtube_transcript_api import CouldNotRetrieveTranscript, NoTranscriptFound, YouTubeTranscriptApi

from config import settings
from multimodal.models import TranscriptionResult, TranscriptSegment
from multimodal.video import extract_video_id
from services.errors import NoCaptionsAvailable, ProviderError, ProviderUnavailable, ToolNotInstalled
from services.segments import clean_text
from services.transcription.types import TranscriptionProvider, normalize_language_hint

logger = logging.getLogger(__name__)

CAPTION_CONFIDENCE = {"subtitles": 1.0, "auto-captions": 0.85}


def _field(item: Any, key: str, default: Any = None) -> Any:
    if isinstance(item, dict):
        return item.get(key, default)
    return getattr(item, key, default)


def _coerce_segments(items: Iterable[Any]) -> List[TranscriptSegment]:
    """Build segments from dicts or SDK objects exposing start/end/text."""
    segments: List[TranscriptSegment] = []
    for item in items or []:
        try:
            start = float(_field(item, "start", 0.0) or 0.0)
            end = float(_field(item, "end", 0.0) or 0.0)
        except (TypeError, ValueError):
            continue
        confidence = _field(item, "confidence")
        no_speech_prob = _field(item, "no_speech_prob")
        if confidence is None and no_speech_prob is not None:
            confidence = 1.0 - float(no_speech_prob)
        segments.append(
            TranscriptSegment(
                start=start,
                end=end,
                text=str(_field(item, "text", "") or ""),
                confidence=float(confidence) if confidence is not None else None,
            )
        )
    return segments


def _mean_confidence(segments: List[TranscriptSegment]) -> Optional[float]:
    values = [seg.confidence for seg in segments if seg.confidence is not None]
    return sum(values) / len(values) if values else None


class RemoteServiceProvider(TranscriptionProvider):
    """Hosted transcription endpoint: GET /health, then multipart POST /transcribe."""

    name = "remote"

    def __init__(
        self,
        base_url: str,
        *,
        health_timeout: float = 5.0,
        transcribe_timeout: float = 600.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.health_timeout = health_timeout
        self.transcribe_timeout = transcribe_timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport)

    async def _check_health(self, client: httpx.AsyncClient) -> None:
        try:
            response = await client.get(f"{self.base_url}/health", timeout=self.health_timeout)
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(f"Transcription service unreachable at {self.base_url}: {exc}") from exc
        if response.status_code != 200:
            raise ProviderUnavailable(
                f"Transcription service health check failed with HTTP {response.status_code}."
            )

    async def is_available(self) -> bool:
        async with self._client() as client:
            try:
                await self._check_health(client)
            except ProviderUnavailable:
                return False
        return True

    async def transcribe(self, media_ref: str, language_hint: Optional[str] = None) -> TranscriptionResult:
        language = normalize_language_hint(language_hint)
        data = {"language": language} if language else {}
        path = Path(media_ref)
        async with self._client() as client:
            await self._check_health(client)
            try:
                with path.open("rb") as audio_file:
                    response = await client.post(
                        f"{self.base_url}/transcribe",
                        files={"file": (path.name, audio_file, "application/octet-stream")},
                        data=data,
                        timeout=self.transcribe_timeout,
                    )
            except httpx.TimeoutException as exc:
                raise ProviderError(
                    f"Transcription service timed out after {int(self.transcribe_timeout)}s."
                ) from exc
            except httpx.HTTPError as exc:
                raise ProviderError(f"Transcription request failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.status_code >= 400 or not payload.get("success", False):
            message = payload.get("error") or response.text or f"HTTP {response.status_code}"
            raise ProviderError(f"Transcription service error: {message}")

        segments = _coerce_segments(payload.get("segments") or [])
        return TranscriptionResult(
            text=clean_text(payload.get("text", "")),
            language=payload.get("language") or language or "auto",
            segments=segments,
            confidence=payload.get("confidence", _mean_confidence(segments)),
            source=self.name,
        )


class OpenAIWhisperProvider(TranscriptionProvider):
    """OpenAI hosted Whisper (verbose_json, segment timestamps)."""

    name = "openai"

    def __init__(self, api_key: str, model: str = "whisper-1", timeout: float = 600.0) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    def _transcribe_sync(self, audio_path: str, language: Optional[str]) -> Any:
        client = OpenAI(api_key=self.api_key, timeout=self.timeout)
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "response_format": "verbose_json",
            "timestamp_granularities": ["segment"],
        }
        if language:
            kwargs["language"] = language
        with open(audio_path, "rb") as audio_file:
            return client.audio.transcriptions.create(file=audio_file, **kwargs)

    async def transcribe(self, media_ref: str, language_hint: Optional[str] = None) -> TranscriptionResult:
        language = normalize_language_hint(language_hint)
        try:
            response = await asyncio.to_thread(self._transcribe_sync, media_ref, language)
        except OpenAIError as exc:
            raise ProviderError(f"OpenAI transcription failed: {exc}") from exc

        segments = _coerce_segments(getattr(response, "segments", None) or [])
        return TranscriptionResult(
            text=clean_text(getattr(response, "text", "") or ""),
            language=language or getattr(response, "language", None) or "auto",
            segments=segments,
            confidence=_mean_confidence(segments),
            source=self.name,
        )


@lru_cache(maxsize=8)
def probe_cli(executable: str) -> bool:
    """Return True when the transcription CLI is installed. Cached per process."""
    resolved = shutil.which(executable)
    if not resolved:
        return False
    try:
        completed = subprocess.run(
            [resolved, "--help"],
            capture_output=True,
            text=True,
            timeout=30,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning("Transcription CLI probe failed for %s: %s", executable, exc)
        return False
    return completed.returncode == 0


class LocalCLIProvider(TranscriptionProvider):
    """Runs the `whisper` command line tool and reads its JSON output."""

    name = "local_cli"

    def __init__(self, executable: str = "whisper", model: str = "base", timeout: int = 1800) -> None:
        self.executable = executable
        self.model = model
        self.timeout = timeout
        self.installed = probe_cli(executable)

    async def is_available(self) -> bool:
        return self.installed

    def _run_sync(self, audio_path: str, language: Optional[str]) -> Dict[str, Any]:
        with tempfile.TemporaryDirectory(prefix="whisper_out_") as output_dir:
            command = [
                self.executable,
                audio_path,
                "--model", self.model,
                "--output_dir", output_dir,
                "--output_format", "json",
            ]
            if language:
                command.extend(["--language", language])
            try:
                completed = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout)
            except FileNotFoundError as exc:
                raise ToolNotInstalled(f"{self.executable} is not installed.") from exc
            except subprocess.TimeoutExpired as exc:
                raise ProviderError(f"{self.executable} timed out after {self.timeout}s.") from exc
            if completed.returncode != 0:
                detail = (completed.stderr or completed.stdout or "").strip()[-500:]
                raise ProviderError(f"{self.executable} exited with code {completed.returncode}: {detail}")

            output_path = Path(output_dir) / f"{Path(audio_path).stem}.json"
            try:
                return json.loads(output_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                raise ProviderError(f"Could not parse {self.executable} output: {exc}") from exc

    async def transcribe(self, media_ref: str, language_hint: Optional[str] = None) -> TranscriptionResult:
        if not self.installed:
            raise ToolNotInstalled(
                f"{self.executable} is not installed. Install openai-whisper or configure "
                "TRANSCRIPTION_SERVICE_URL."
            )
        language = normalize_language_hint(language_hint)
        payload = await asyncio.to_thread(self._run_sync, media_ref, language)

        segments = _coerce_segments(payload.get("segments") or [])
        return TranscriptionResult(
            text=clean_text(payload.get("text", "")),
            language=language or payload.get("language") or "auto",
            segments=segments,
            confidence=_mean_confidence(segments),
            source=self.name,
        )


class CaptionFetchProvider(TranscriptionProvider):
    """Pulls existing YouTube captions; no audio is decoded."""

    name = "captions"
    requires_audio = False

    def __init__(self, api: Optional[YouTubeTranscriptApi] = None, timeout: float = 30.0) -> None:
        self._api = api
        self.timeout = timeout

    @property
    def api(self) -> YouTubeTranscriptApi:
        if self._api is None:
            self._api = YouTubeTranscriptApi()
        return self._api

    def _fetch_preferred(self, video_id: str, language: str) -> List[Any]:
        return list(self.api.fetch(video_id, languages=[language]))

    def _fetch_default(self, video_id: str) -> tuple[List[Any], Optional[str], bool]:
        for track in self.api.list(video_id):
            return list(track.fetch()), getattr(track, "language_code", None), bool(getattr(track, "is_generated", True))
        raise NoCaptionsAvailable(f"No caption tracks exist for video {video_id}.")

    async def _call(self, func, *args):
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderError(f"Caption fetch timed out after {int(self.timeout)}s.") from exc

    @staticmethod
    def _to_segments(snippets: List[Any], confidence: float) -> List[TranscriptSegment]:
        segments: List[TranscriptSegment] = []
        for snippet in snippets:
            if isinstance(snippet, dict):
                text, start, duration = snippet.get("text", ""), snippet.get("start", 0), snippet.get("duration", 0)
            else:
                text, start, duration = snippet.text, snippet.start, snippet.duration
            start = float(start or 0.0)
            segments.append(
                TranscriptSegment(
                    start=start,
                    end=start + float(duration or 0.0),
                    text=html.unescape(str(text or "")),
                    confidence=confidence,
                )
            )
        return segments

    async def transcribe(self, media_ref: str, language_hint: Optional[str] = None) -> TranscriptionResult:
        video_id = extract_video_id(media_ref)
        if not video_id:
            raise NoCaptionsAvailable(f"Could not extract a YouTube video id from {media_ref!r}.")
        language = normalize_language_hint(language_hint)

        snippets: List[Any] = []
        source = "subtitles"
        resolved_language = language or "auto"
        if language:
            try:
                snippets = await self._call(self._fetch_preferred, video_id, language)
            except NoTranscriptFound:
                logger.info("No %s captions for %s; retrying without a language constraint", language, video_id)
                snippets = []
            except CouldNotRetrieveTranscript as exc:
                raise NoCaptionsAvailable(f"Captions unavailable for video {video_id}: {exc}") from exc

        if not snippets:
            try:
                snippets, track_language, generated = await self._call(self._fetch_default, video_id)
            except CouldNotRetrieveTranscript as exc:
                raise NoCaptionsAvailable(f"Captions unavailable for video {video_id}: {exc}") from exc
            # A retry after the preferred language failed is reported as auto-captions.
            source = "auto-captions" if (language or generated) else "subtitles"
            resolved_language = track_language or "auto"

        segments = self._to_segments(snippets, CAPTION_CONFIDENCE[source])
        if not segments:
            raise NoCaptionsAvailable(f"Caption track for video {video_id} is empty.")
        return TranscriptionResult(
            text=clean_text(" ".join(seg.text for seg in segments)),
            language=resolved_language,
            segments=segments,
            confidence=CAPTION_CONFIDENCE[source],
            source=source,
        )


def build_audio_provider() -> TranscriptionProvider:
    """Select the audio backend from configuration: remote URL, then OpenAI, then local CLI."""
    if (settings.TRANSCRIPTION_SERVICE_URL or "").strip():
        return RemoteServiceProvider(
            settings.TRANSCRIPTION_SERVICE_URL.strip(),
            health_timeout=settings.REMOTE_HEALTH_TIMEOUT_SECONDS,
            transcribe_timeout=settings.REMOTE_TRANSCRIBE_TIMEOUT_SECONDS,
        )
    if settings.USE_OPENAI_WHISPER and (settings.OPENAI_API_KEY or "").strip():
        return OpenAIWhisperProvider(
            settings.OPENAI_API_KEY.strip(),
            model=settings.OPENAI_WHISPER_MODEL,
            timeout=settings.REMOTE_TRANSCRIBE_TIMEOUT_SECONDS,
        )
    return LocalCLIProvider(
        executable=settings.WHISPER_CLI_PATH,
        model=settings.WHISPER_MODEL,
        timeout=settings.LOCAL_CLI_TIMEOUT_SECONDS,
    )


def build_caption_provider() -> CaptionFetchProvider:
    return CaptionFetchProvider(timeout=settings.CAPTION_FETCH_TIMEOUT_SECONDS)
