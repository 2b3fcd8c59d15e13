import math
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import ffmpeg

from services.errors import PreprocessingFailed, UnsupportedMedia

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = {".mp4", ".avi", ".mov", ".mkv", ".webm", ".flv", ".wmv", ".m4v"}
AUDIO_EXTENSIONS = {".mp3", ".wav", ".m4a", ".flac", ".ogg", ".wma", ".aac", ".opus"}
# Containers every transcription backend decodes directly.
COMPATIBLE_AUDIO_EXTENSIONS = {".mp3", ".wav", ".m4a", ".flac", ".ogg", ".opus"}
TARGET_SAMPLE_RATE = 16000

_NO_DECODER_MARKERS = (
    "could not find codec",
    "decoder",
    "invalid data found",
    "no such filter",
    "does not contain any stream",
    "output file #0 does not contain any stream",
)


@dataclass(frozen=True)
class AudioChunk:
    path: str
    offset: float      # seconds from the start of the full recording
    duration: float


def is_video_file(path: str) -> bool:
    return Path(path).suffix.lower() in VIDEO_EXTENSIONS


def is_audio_file(path: str) -> bool:
    return Path(path).suffix.lower() in AUDIO_EXTENSIONS


def _stderr_text(error: ffmpeg.Error) -> str:
    return error.stderr.decode(errors="replace") if error.stderr else str(error)


def _raise_decode_failure(action: str, source: str, error: Exception) -> None:
    if isinstance(error, FileNotFoundError):
        raise UnsupportedMedia("ffmpeg is not installed; cannot decode media.", cause=error) from error
    stderr = _stderr_text(error) if isinstance(error, ffmpeg.Error) else str(error)
    logger.error("Error %s %s: %s", action, source, stderr)
    lowered = stderr.lower()
    if any(marker in lowered for marker in _NO_DECODER_MARKERS):
        raise UnsupportedMedia(f"No decoder available for {Path(source).name}.", cause=error) from error
    raise PreprocessingFailed(f"Failed {action} {Path(source).name}: {stderr.strip()[-300:]}", cause=error) from error


def probe_duration(path: str) -> float:
    """
    Probe media metadata and return duration in seconds.
    Returns 0.0 when the duration cannot be determined.
    """
    try:
        probe = ffmpeg.probe(path)
        fmt = probe.get("format", {})
        duration = float(fmt.get("duration", 0.0) or 0.0)
        if duration <= 0:
            for stream in probe.get("streams", []):
                if stream.get("codec_type") in ("audio", "video"):
                    duration = float(stream.get("duration", 0.0) or 0.0)
                    if duration > 0:
                        break
        return max(0.0, duration)
    except Exception as e:
        logger.warning(f"Could not probe media duration for {path}: {e}")
        return 0.0


def _to_wav(source_path: str, output_path: str) -> str:
    # ffmpeg -i input -vn -acodec pcm_s16le -ar 16000 -ac 1 output.wav
    (
        ffmpeg
        .input(source_path)
        .output(output_path, vn=None, acodec="pcm_s16le", ar=TARGET_SAMPLE_RATE, ac=1)
        .overwrite_output()
        .run(quiet=True)
    )
    return output_path


def extract_audio(path: str, source_kind: str, output_dir: str) -> str:
    """
    Return a path to transcribable audio for `path`.

    Video inputs are demuxed to 16 kHz mono PCM WAV inside `output_dir`.
    Audio already in a compatible container is returned unchanged; other
    audio containers are re-encoded the same way as video.
    """
    suffix = Path(path).suffix.lower()
    needs_decode = source_kind == "video" or suffix in VIDEO_EXTENSIONS
    if not needs_decode and suffix in COMPATIBLE_AUDIO_EXTENSIONS:
        return path

    output_path = str(Path(output_dir) / f"{Path(path).stem}_audio.wav")
    try:
        return _to_wav(path, output_path)
    except (ffmpeg.Error, FileNotFoundError) as e:
        _raise_decode_failure("extracting audio from", path, e)


def chunk(
    path: str,
    max_chunk_seconds: float,
    output_dir: str,
    duration: Optional[float] = None,
) -> List[AudioChunk]:
    """
    Split audio longer than `max_chunk_seconds` into sequential WAV chunks.

    n = ceil(total / max_chunk_seconds) chunks of total / n seconds each; the
    last one absorbs rounding. An input at or under the threshold (or with
    unknown duration) comes back as a single chunk pointing at the input.
    """
    if max_chunk_seconds <= 0:
        raise ValueError("max_chunk_seconds must be positive")
    total = probe_duration(path) if duration is None else max(float(duration), 0.0)
    if total <= max_chunk_seconds:
        return [AudioChunk(path=path, offset=0.0, duration=total)]

    count = math.ceil(total / max_chunk_seconds)
    nominal = total / count
    stem = Path(path).stem
    chunks: List[AudioChunk] = []
    for index in range(count):
        offset = index * nominal
        length = nominal if index < count - 1 else total - offset
        output_path = str(Path(output_dir) / f"{stem}_chunk_{index:03d}.wav")
        try:
            (
                ffmpeg
                .input(path, ss=offset, t=length)
                .output(output_path, acodec="pcm_s16le", ar=TARGET_SAMPLE_RATE, ac=1)
                .overwrite_output()
                .run(quiet=True)
            )
        except (ffmpeg.Error, FileNotFoundError) as e:
            _raise_decode_failure("chunking", path, e)
        chunks.append(AudioChunk(path=output_path, offset=offset, duration=length))

    logger.info("Split %s (%.1fs) into %d chunks of ~%.1fs", path, total, count, nominal)
    return chunks
