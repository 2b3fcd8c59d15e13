import asyncio
import os
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import func, select

from config import settings
from models.transcript import Transcript
from multimodal.models import TranscriptionResult, TranscriptSegment
from services import media_store
from services.errors import NoCaptionsAvailable, ProviderError
from services.events import ASSET_COMPLETED, ASSET_FAILED
from services.storage import HEARTBEAT_FILE, cleanup_stale_workspaces
from services.transcript_store import get_transcript, load_segments
from services.transcription import TranscriptionProvider
from services.transcription_job import JobStage, run_transcription_job


class FakeAudioProvider(TranscriptionProvider):
    name = "remote"

    def __init__(self, respond=None, fail_on_call=None, language="en"):
        self.calls = []
        self.respond = respond or (lambda call: [(0.0, 5.0, f"part {call}")])
        self.fail_on_call = fail_on_call
        self.language = language

    async def transcribe(self, media_ref, language_hint=None):
        self.calls.append((media_ref, language_hint))
        call = len(self.calls) - 1
        if self.fail_on_call == call:
            raise ProviderError("remote model crashed")
        segments = [TranscriptSegment(start=s, end=e, text=t) for s, e, t in self.respond(call)]
        return TranscriptionResult(
            text=" ".join(seg.text for seg in segments),
            language=self.language,
            segments=segments,
            source=self.name,
        )


class FakeCaptionProvider(TranscriptionProvider):
    name = "captions"
    requires_audio = False

    def __init__(self, result=None):
        self.result = result
        self.calls = []

    async def transcribe(self, media_ref, language_hint=None):
        self.calls.append((media_ref, language_hint))
        if self.result is None:
            raise NoCaptionsAvailable("no captions")
        return self.result


async def _create_file_asset(tmp_path, filename, mime_type, language="en", kind=None):
    path = tmp_path / filename
    path.write_bytes(b"fake-media")
    return await media_store.create_asset(
        media_store.NewMediaAsset(
            original_filename=filename,
            mime_type=mime_type,
            kind=kind,
            file_size_bytes=path.stat().st_size,
            storage_path=str(path),
            language_hint=language,
        )
    )


async def _create_url_asset(language="en"):
    return await media_store.create_asset(
        media_store.NewMediaAsset(
            original_filename="youtube_dQw4w9WgXcQ",
            mime_type=media_store.URL_MIME_TYPE,
            source_url="https://www.youtube.com/watch?v=dQw4w9WgXcQ",
            language_hint=language,
        )
    )


def _collect(bus):
    events = []
    bus.subscribe(events.append)
    return events


async def _transcript_count(session_maker):
    async with session_maker() as db:
        return (await db.execute(select(func.count()).select_from(Transcript))).scalar_one()


def _leftover_workspaces(work_root: Path):
    if not work_root.exists():
        return []
    return [path for path in work_root.iterdir() if path.name.startswith("job_")]


@pytest.mark.asyncio
async def test_short_audio_single_chunk_completes(session_maker, media_dirs, tmp_path, event_bus):
    _, work_root = media_dirs
    events = _collect(event_bus)
    asset_id = await _create_file_asset(tmp_path, "lecture.wav", "audio/wav", language="en")
    provider = FakeAudioProvider(
        respond=lambda call: [(0.0, 5.0, "Welcome to the lecture"), (5.0, 12.0, "Today we cover cells")]
    )

    with patch("services.transcription_job.probe_duration", return_value=180.0):
        outcome = await run_transcription_job(asset_id, audio_provider=provider, event_bus=event_bus)

    assert outcome.stage == JobStage.DONE
    assert outcome.chunk_count == 1
    assert provider.calls == [(str(tmp_path / "lecture.wav"), "en")]

    asset = await media_store.get_asset(asset_id)
    assert asset.status == media_store.COMPLETED
    assert asset.transcript_id == outcome.transcript_id
    assert asset.duration_seconds == 180.0
    assert asset.transcript_source == "remote"
    assert asset.processing_error is None

    transcript = await get_transcript(outcome.transcript_id)
    assert transcript.language == "en"
    assert transcript.version == 1
    assert transcript.full_text == "Welcome to the lecture Today we cover cells"
    assert [seg.index for seg in load_segments(transcript)] == [0, 1]

    assert [event.type for event in events] == [ASSET_COMPLETED]
    assert events[0].transcript_id == outcome.transcript_id
    assert _leftover_workspaces(work_root) == []


@pytest.mark.asyncio
async def test_long_video_is_chunked_with_offset_timestamps(session_maker, media_dirs, tmp_path, event_bus):
    _, work_root = media_dirs
    asset_id = await _create_file_asset(tmp_path, "seminar.mp4", "video/mp4", language="auto")
    provider = FakeAudioProvider(
        respond=lambda call: [(0.0, 20.0, f"chunk {call} opening"), (480.0, 500.0, f"chunk {call} closing")]
    )
    extracted = []

    def fake_extract(path, kind, output_dir):
        target = Path(output_dir) / "seminar_audio.wav"
        target.write_bytes(b"wav")
        extracted.append((path, kind))
        return str(target)

    with (
        patch("services.transcription_job.extract_audio", side_effect=fake_extract),
        patch("services.transcription_job.probe_duration", return_value=1500.0),
        patch("multimodal.audio.ffmpeg.input", MagicMock()),
    ):
        outcome = await run_transcription_job(
            asset_id, audio_provider=provider, event_bus=event_bus, max_chunk_seconds=600
        )

    assert outcome.stage == JobStage.DONE
    assert outcome.chunk_count == 3
    assert extracted == [(str(tmp_path / "seminar.mp4"), "video")]
    assert [Path(path).name for path, _ in provider.calls] == [
        "seminar_audio_chunk_000.wav",
        "seminar_audio_chunk_001.wav",
        "seminar_audio_chunk_002.wav",
    ]

    transcript = await get_transcript(outcome.transcript_id)
    segments = load_segments(transcript)
    assert [seg.start for seg in segments] == [0.0, 480.0, 500.0, 980.0, 1000.0, 1480.0]
    assert segments[-1].end == 1500.0
    for previous, current in zip(segments, segments[1:]):
        assert previous.end <= current.start
    assert transcript.language == "en"
    assert transcript.detected_language == "en"
    assert _leftover_workspaces(work_root) == []


@pytest.mark.asyncio
async def test_second_claim_is_skipped(session_maker, tmp_path, event_bus):
    asset_id = await _create_file_asset(tmp_path, "lecture.wav", "audio/wav")
    provider = FakeAudioProvider()

    with patch("services.transcription_job.probe_duration", return_value=30.0):
        first = await run_transcription_job(asset_id, audio_provider=provider, event_bus=event_bus)
        second = await run_transcription_job(asset_id, audio_provider=provider, event_bus=event_bus)

    assert first.stage == JobStage.DONE
    assert second.stage == JobStage.SKIPPED
    assert len(provider.calls) == 1
    assert await _transcript_count(session_maker) == 1


@pytest.mark.asyncio
async def test_concurrent_jobs_for_one_asset_transcribe_once(session_maker, tmp_path, event_bus):
    asset_id = await _create_file_asset(tmp_path, "lecture.wav", "audio/wav")
    provider = FakeAudioProvider()

    with patch("services.transcription_job.probe_duration", return_value=30.0):
        outcomes = await asyncio.gather(
            run_transcription_job(asset_id, audio_provider=provider, event_bus=event_bus),
            run_transcription_job(asset_id, audio_provider=provider, event_bus=event_bus),
        )

    assert sorted(outcome.stage.value for outcome in outcomes) == ["done", "skipped"]
    assert len(provider.calls) == 1
    assert await _transcript_count(session_maker) == 1


@pytest.mark.asyncio
async def test_missing_asset_is_skipped(session_maker, event_bus):
    outcome = await run_transcription_job("does-not-exist", audio_provider=FakeAudioProvider(), event_bus=event_bus)
    assert outcome.stage == JobStage.SKIPPED


@pytest.mark.asyncio
async def test_chunk_failure_fails_whole_job(session_maker, media_dirs, tmp_path, event_bus):
    _, work_root = media_dirs
    events = _collect(event_bus)
    asset_id = await _create_file_asset(tmp_path, "seminar.mp3", "audio/mpeg")
    provider = FakeAudioProvider(fail_on_call=1)

    with (
        patch("services.transcription_job.probe_duration", return_value=1300.0),
        patch("multimodal.audio.ffmpeg.input", MagicMock()),
    ):
        outcome = await run_transcription_job(
            asset_id, audio_provider=provider, event_bus=event_bus, max_chunk_seconds=600
        )

    assert outcome.stage == JobStage.FAILED
    assert "remote model crashed" in outcome.error
    assert len(provider.calls) == 2

    asset = await media_store.get_asset(asset_id)
    assert asset.status == media_store.FAILED
    assert "remote model crashed" in asset.processing_error
    assert asset.transcript_id is None
    assert await _transcript_count(session_maker) == 0
    assert [event.type for event in events] == [ASSET_FAILED]
    assert _leftover_workspaces(work_root) == []


@pytest.mark.asyncio
async def test_empty_transcription_fails(session_maker, tmp_path, event_bus):
    asset_id = await _create_file_asset(tmp_path, "silence.wav", "audio/wav")
    provider = FakeAudioProvider(respond=lambda call: [])

    with patch("services.transcription_job.probe_duration", return_value=10.0):
        outcome = await run_transcription_job(asset_id, audio_provider=provider, event_bus=event_bus)

    assert outcome.stage == JobStage.FAILED
    asset = await media_store.get_asset(asset_id)
    assert asset.processing_error == "Transcription produced no text."


@pytest.mark.asyncio
async def test_missing_stored_file_fails_in_preprocessing(session_maker, tmp_path, event_bus):
    asset_id = await _create_file_asset(tmp_path, "gone.wav", "audio/wav")
    (tmp_path / "gone.wav").unlink()
    provider = FakeAudioProvider()

    outcome = await run_transcription_job(asset_id, audio_provider=provider, event_bus=event_bus)

    assert outcome.stage == JobStage.FAILED
    assert provider.calls == []
    assert (await media_store.get_asset(asset_id)).processing_error == "Stored media file is missing."


@pytest.mark.asyncio
async def test_url_asset_uses_captions(session_maker, event_bus):
    asset_id = await _create_url_asset(language="en")
    captions = FakeCaptionProvider(
        TranscriptionResult(
            text="hello class today we talk about photosynthesis",
            language="en",
            segments=[
                TranscriptSegment(start=0.0, end=4.0, text="hello class", confidence=1.0),
                TranscriptSegment(start=4.0, end=9.0, text="today we talk about photosynthesis", confidence=1.0),
            ],
            confidence=1.0,
            source="subtitles",
        )
    )
    audio = FakeAudioProvider()

    outcome = await run_transcription_job(
        asset_id, audio_provider=audio, caption_provider=captions, event_bus=event_bus
    )

    assert outcome.stage == JobStage.DONE
    assert audio.calls == []
    assert captions.calls == [("https://www.youtube.com/watch?v=dQw4w9WgXcQ", "en")]
    asset = await media_store.get_asset(asset_id)
    assert asset.transcript_source == "subtitles"
    assert asset.duration_seconds == 9.0
    transcript = await get_transcript(outcome.transcript_id)
    assert transcript.confidence == 1.0


@pytest.mark.asyncio
async def test_url_without_captions_fails_when_download_disabled(session_maker, event_bus):
    asset_id = await _create_url_asset()

    with patch.object(settings, "ALLOW_MEDIA_DOWNLOAD", False):
        outcome = await run_transcription_job(
            asset_id, audio_provider=FakeAudioProvider(), caption_provider=FakeCaptionProvider(), event_bus=event_bus
        )

    assert outcome.stage == JobStage.FAILED
    assert (await media_store.get_asset(asset_id)).processing_error == "no captions"


@pytest.mark.asyncio
async def test_url_without_captions_downloads_audio_when_allowed(session_maker, event_bus):
    asset_id = await _create_url_asset()
    audio = FakeAudioProvider()

    def fake_download(url, output_path):
        Path(output_path).write_bytes(b"m4a")
        return output_path

    with (
        patch.object(settings, "ALLOW_MEDIA_DOWNLOAD", True),
        patch("services.transcription_job.download_audio", side_effect=fake_download),
        patch("services.transcription_job.probe_duration", return_value=60.0),
    ):
        outcome = await run_transcription_job(
            asset_id, audio_provider=audio, caption_provider=FakeCaptionProvider(), event_bus=event_bus
        )

    assert outcome.stage == JobStage.DONE
    assert len(audio.calls) == 1
    assert Path(audio.calls[0][0]).name == "source.m4a"
    assert (await media_store.get_asset(asset_id)).transcript_source == "remote"


class GatedAudioProvider(FakeAudioProvider):
    """Holds every transcribe call until `release` is set."""

    def __init__(self, work_root):
        super().__init__()
        self.work_root = work_root
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.workspace_seen_after_release = None

    async def transcribe(self, media_ref, language_hint=None):
        self.entered.set()
        await self.release.wait()
        self.workspace_seen_after_release = _leftover_workspaces(self.work_root)
        return await super().transcribe(media_ref, language_hint)


def _age(path: Path, seconds: float):
    old = time.time() - seconds
    os.utime(path, (old, old))


@pytest.mark.asyncio
async def test_other_jobs_leave_a_running_workspace_alone(session_maker, media_dirs, tmp_path, event_bus):
    _, work_root = media_dirs
    slow_id = await _create_file_asset(tmp_path, "slow.wav", "audio/wav")
    quick_id = await _create_file_asset(tmp_path, "quick.wav", "audio/wav")
    gated = GatedAudioProvider(work_root)

    with patch("services.transcription_job.probe_duration", return_value=60.0):
        slow_job = asyncio.create_task(run_transcription_job(slow_id, audio_provider=gated, event_bus=event_bus))
        await asyncio.wait_for(gated.entered.wait(), timeout=5)

        [workspace] = _leftover_workspaces(work_root)
        _age(workspace / HEARTBEAT_FILE, 2 * 3600)
        _age(workspace, 2 * 3600)

        quick = await run_transcription_job(quick_id, audio_provider=FakeAudioProvider(), event_bus=event_bus)
        assert quick.stage == JobStage.DONE
        assert workspace.exists()

        gated.release.set()
        slow = await asyncio.wait_for(slow_job, timeout=5)

    assert slow.stage == JobStage.DONE
    assert gated.workspace_seen_after_release == [workspace]
    assert (await media_store.get_asset(slow_id)).status == media_store.COMPLETED
    assert _leftover_workspaces(work_root) == []


@pytest.mark.asyncio
async def test_running_job_refreshes_workspace_heartbeat(session_maker, media_dirs, tmp_path, event_bus):
    _, work_root = media_dirs
    asset_id = await _create_file_asset(tmp_path, "lecture.wav", "audio/wav")
    gated = GatedAudioProvider(work_root)

    with patch("services.transcription_job.probe_duration", return_value=60.0), patch.object(
        settings, "WORKSPACE_HEARTBEAT_SECONDS", 0.01
    ):
        job = asyncio.create_task(run_transcription_job(asset_id, audio_provider=gated, event_bus=event_bus))
        await asyncio.wait_for(gated.entered.wait(), timeout=5)

        [workspace] = _leftover_workspaces(work_root)
        heartbeat = workspace / HEARTBEAT_FILE
        _age(heartbeat, 2 * 3600)
        _age(workspace, 2 * 3600)
        stale_before = heartbeat.stat().st_mtime
        for _ in range(200):
            await asyncio.sleep(0.01)
            if heartbeat.stat().st_mtime > stale_before:
                break

        assert heartbeat.stat().st_mtime > stale_before
        assert cleanup_stale_workspaces(max_age_minutes=60) == 0
        assert workspace.exists()

        gated.release.set()
        outcome = await asyncio.wait_for(job, timeout=5)

    assert outcome.stage == JobStage.DONE
    assert _leftover_workspaces(work_root) == []
