"""Pure transcript renderers (SRT, WebVTT, plain text, TSV)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from multimodal.models import TranscriptSegment


@dataclass(frozen=True)
class ExportFormat:
    extension: str
    content_type: str


EXPORT_FORMATS: Dict[str, ExportFormat] = {
    "srt": ExportFormat(extension="srt", content_type="application/x-subrip"),
    "vtt": ExportFormat(extension="vtt", content_type="text/vtt"),
    "txt": ExportFormat(extension="txt", content_type="text/plain"),
    "tsv": ExportFormat(extension="tsv", content_type="text/tab-separated-values"),
}
RULE = "=" * 50


@dataclass(frozen=True)
class RenderedTranscript:
    content: str
    content_type: str
    filename: str


def _split_ms(seconds: float) -> tuple[int, int, int, int]:
    total_ms = max(int(round(float(seconds) * 1000)), 0)
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, millis = divmod(rem, 1000)
    return hours, minutes, secs, millis


def format_timestamp(seconds: float, separator: str = ",") -> str:
    """HH:MM:SS,mmm (SRT) or HH:MM:SS.mmm with separator='.' (WebVTT)."""
    hours, minutes, secs, millis = _split_ms(seconds)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}{separator}{millis:03d}"


def format_clock(seconds: float) -> str:
    """MM:SS, or HH:MM:SS past the first hour."""
    hours, minutes, secs, _ = _split_ms(seconds)
    if hours:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def _cues(segments: List[TranscriptSegment], separator: str) -> str:
    blocks = []
    for position, segment in enumerate(segments, start=1):
        start = format_timestamp(segment.start, separator)
        end = format_timestamp(segment.end, separator)
        blocks.append(f"{position}\n{start} --> {end}\n{segment.text}\n\n")
    return "".join(blocks)


def render_srt(segments: List[TranscriptSegment]) -> str:
    return _cues(segments, ",")


def render_vtt(segments: List[TranscriptSegment]) -> str:
    return "WEBVTT\n\n" + _cues(segments, ".")


def render_txt(
    segments: List[TranscriptSegment],
    *,
    full_text: str = "",
    language: str = "auto",
    version: int = 1,
    generated_at: Optional[datetime] = None,
    highlights_only: bool = False,
) -> str:
    lines: List[str] = []
    if highlights_only:
        lines.extend(["Highlighted Segments", RULE, ""])
        for segment in segments:
            lines.append(f"[{format_clock(segment.start)} - {format_clock(segment.end)}]")
            lines.append(segment.text)
            if segment.highlight_note:
                lines.append(f"Note: {segment.highlight_note}")
            lines.append("")
        return "\n".join(lines) + "\n"

    stamp = (generated_at or datetime.now(timezone.utc)).isoformat()
    lines.extend(
        [
            "Transcript",
            f"Language: {language}",
            f"Generated: {stamp}",
            f"Version: {version}",
            RULE,
            "",
            "Full Text:",
            full_text,
            "",
            RULE,
            "",
            "Timestamped Segments:",
            "",
        ]
    )
    for segment in segments:
        lines.append(f"[{format_clock(segment.start)} - {format_clock(segment.end)}]")
        lines.append(segment.text)
        if segment.is_highlighted:
            note = f" - {segment.highlight_note}" if segment.highlight_note else ""
            lines.append(f"★ HIGHLIGHTED{note}")
        if segment.is_edited:
            lines.append("(edited)")
        lines.append("")
    return "\n".join(lines) + "\n"


def _tsv_cell(value: Optional[str]) -> str:
    return " ".join((value or "").replace("\t", " ").splitlines())


def render_tsv(segments: List[TranscriptSegment]) -> str:
    rows = ["Start\tEnd\tText\tHighlighted\tEdited\tNote"]
    for segment in segments:
        rows.append(
            "\t".join(
                [
                    f"{segment.start:.3f}",
                    f"{segment.end:.3f}",
                    _tsv_cell(segment.text),
                    "Yes" if segment.is_highlighted else "No",
                    "Yes" if segment.is_edited else "No",
                    _tsv_cell(segment.highlight_note),
                ]
            )
        )
    return "\n".join(rows) + "\n"


RENDERERS: Dict[str, Callable[..., str]] = {
    "srt": render_srt,
    "vtt": render_vtt,
    "txt": render_txt,
    "tsv": render_tsv,
}


def export_filename(original_filename: Optional[str], fmt: str, highlights_only: bool = False) -> str:
    stem = Path(original_filename or "transcript").stem or "transcript"
    suffix = "_highlights" if highlights_only else ""
    return f"{stem}{suffix}.{EXPORT_FORMATS[fmt].extension}"


def render(
    fmt: str,
    segments: List[TranscriptSegment],
    *,
    original_filename: Optional[str] = None,
    full_text: str = "",
    language: str = "auto",
    version: int = 1,
    generated_at: Optional[datetime] = None,
    highlights_only: bool = False,
) -> RenderedTranscript:
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unsupported export format '{fmt}'.")
    selected = [seg for seg in segments if seg.is_highlighted] if highlights_only else list(segments)
    if fmt == "txt":
        content = render_txt(
            selected,
            full_text=full_text,
            language=language,
            version=version,
            generated_at=generated_at,
            highlights_only=highlights_only,
        )
    else:
        content = RENDERERS[fmt](selected)
    return RenderedTranscript(
        content=content,
        content_type=EXPORT_FORMATS[fmt].content_type,
        filename=export_filename(original_filename, fmt, highlights_only),
    )
