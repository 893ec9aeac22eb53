from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable

Span = tuple[datetime, datetime]


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and a_end > b_start


def overlaps_any(start: datetime, end: datetime, spans: Iterable[Span]) -> bool:
    return any(overlaps(start, end, span_start, span_end) for span_start, span_end in spans)


def merge_spans(spans: Iterable[Span]) -> list[Span]:
    """Sorted union of ``spans``; empty or inverted spans are ignored."""
    ordered = sorted((start, end) for start, end in spans if start < end)
    merged: list[Span] = []
    for start, end in ordered:
        if merged and start <= merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
            continue
        merged.append((start, end))
    return merged


def subtract_spans(
    start: datetime,
    end: datetime,
    blockers: Iterable[Span],
    min_length: timedelta = timedelta(0),
) -> list[Span]:
    """Parts of ``[start, end)`` not covered by ``blockers``.

    Gaps shorter than ``min_length`` are dropped. An inverted interval has no gaps.
    """
    if start >= end:
        return []
    gaps: list[Span] = []
    cursor = start
    for block_start, block_end in merge_spans(blockers):
        if block_end <= cursor:
            continue
        if block_start >= end:
            break
        if block_start > cursor:
            gaps.append((cursor, block_start))
        cursor = max(cursor, block_end)
        if cursor >= end:
            break
    if cursor < end:
        gaps.append((cursor, end))
    return [(gap_start, gap_end) for gap_start, gap_end in gaps if gap_end - gap_start >= min_length]
