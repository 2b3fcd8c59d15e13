"""Provider-agnostic transcript segment normalization."""

from __future__ import annotations

import math
import re
from typing import Iterable, List, Optional

from multimodal.models import TranscriptSegment


_WHITESPACE = re.compile(r"\s+")


def clean_text(text: str) -> str:
    """Collapse runs of whitespace and trim."""
    return _WHITESPACE.sub(" ", text or "").strip()


def _average(values: Iterable[Optional[float]]) -> Optional[float]:
    present = [float(v) for v in values if v is not None]
    if not present:
        return None
    return sum(present) / len(present)


def _reindex(segments: List[TranscriptSegment]) -> List[TranscriptSegment]:
    for position, segment in enumerate(segments):
        segment.index = position
    return segments


def _drop_invalid(segments: Iterable[TranscriptSegment]) -> List[TranscriptSegment]:
    kept: List[TranscriptSegment] = []
    for segment in segments:
        text = clean_text(segment.text)
        if not text:
            continue
        if segment.start < 0 or segment.end <= segment.start:
            continue
        kept.append(segment.model_copy(update={"text": text}))
    return kept


def _trim_overlaps(segments: List[TranscriptSegment]) -> List[TranscriptSegment]:
    trimmed: List[TranscriptSegment] = []
    for segment in segments:
        if trimmed:
            previous = trimmed[-1]
            if segment.start <= previous.start:
                # Same start: fold into the previous span.
                previous.text = f"{previous.text} {segment.text}"
                previous.end = max(previous.end, segment.end)
                previous.confidence = _average([previous.confidence, segment.confidence])
                continue
            if previous.end > segment.start:
                previous.end = segment.start
        trimmed.append(segment)
    return trimmed


def merge_short_segments(
    segments: List[TranscriptSegment],
    min_duration: float,
) -> List[TranscriptSegment]:
    """Merge segments shorter than `min_duration` into the following one."""
    if min_duration <= 0:
        return _reindex(list(segments))
    merged: List[TranscriptSegment] = []
    pending: Optional[TranscriptSegment] = None
    for segment in segments:
        if pending is not None:
            segment = segment.model_copy(
                update={
                    "start": pending.start,
                    "text": f"{pending.text} {segment.text}",
                    "confidence": _average([pending.confidence, segment.confidence]),
                }
            )
            pending = None
        if segment.end - segment.start < min_duration:
            pending = segment
            continue
        merged.append(segment)
    if pending is not None:
        if merged:
            last = merged[-1]
            last.text = f"{last.text} {pending.text}"
            last.end = pending.end
            last.confidence = _average([last.confidence, pending.confidence])
        else:
            merged.append(pending)
    return _reindex(merged)


def split_long_segments(
    segments: List[TranscriptSegment],
    max_duration: float,
) -> List[TranscriptSegment]:
    """Split segments longer than `max_duration` into equal time slices, words spread evenly."""
    if max_duration <= 0:
        return _reindex(list(segments))
    result: List[TranscriptSegment] = []
    for segment in segments:
        duration = segment.end - segment.start
        words = segment.text.split()
        if duration <= max_duration or len(words) < 2:
            result.append(segment)
            continue
        pieces = min(math.ceil(duration / max_duration), len(words))
        # pieces <= len(words), so every group gets at least one word
        bounds = [position * len(words) // pieces for position in range(pieces + 1)]
        for position in range(pieces):
            start = segment.start + duration * position / pieces
            end = segment.end if position == pieces - 1 else segment.start + duration * (position + 1) / pieces
            group = words[bounds[position]:bounds[position + 1]]
            result.append(
                segment.model_copy(update={"start": start, "end": end, "text": " ".join(group)})
            )
    return _reindex(result)


def normalize_segments(
    segments: Iterable[TranscriptSegment],
    *,
    min_duration: float = 2.0,
    max_duration: float = 30.0,
) -> List[TranscriptSegment]:
    """
    Sort by start, drop empty or inverted spans, remove overlaps, merge
    fragments shorter than `min_duration` and split spans longer than
    `max_duration`. Indices are reassigned 0..n-1.
    """
    ordered = sorted(_drop_invalid(segments), key=lambda seg: (seg.start, seg.end))
    ordered = _drop_invalid(_trim_overlaps(ordered))
    ordered = merge_short_segments(ordered, min_duration)
    return split_long_segments(ordered, max_duration)


def join_segment_text(segments: Iterable[TranscriptSegment]) -> str:
    return " ".join(clean_text(segment.text) for segment in segments if clean_text(segment.text))


def overall_confidence(segments: Iterable[TranscriptSegment]) -> Optional[float]:
    return _average(segment.confidence for segment in segments)
