"""Range arithmetic — locating phrases, merging spans, masking text.

All offsets are character offsets into the full response text and all
ranges are half-open ``[start, end)``.
"""

from __future__ import annotations
import re
from collections.abc import Iterable
from dataclasses import replace

from .types import PiiRange

# Adjacent detections closer than this are fused (absorbs ", " or ". ")
DEFAULT_MERGE_GAP = 3

DEFAULT_MASK_CHAR = "█"


def merge_ranges(ranges: Iterable[PiiRange], *, gap: int = DEFAULT_MERGE_GAP) -> list[PiiRange]:
    """Merge overlapping or near-adjacent ranges into a sorted cover set.

    Two ranges are fused when ``current.start <= last.end + gap``.  Inputs
    are never mutated; merging an already merged list returns an equal list.
    """
    ordered = sorted(ranges, key=lambda r: r.start)
    if not ordered:
        return []

    merged: list[PiiRange] = [ordered[0]]
    for current in ordered[1:]:
        last = merged[-1]
        if current.start <= last.end + gap:
            if current.end > last.end:
                merged[-1] = replace(last, end=current.end)
        else:
            merged.append(current)
    return merged


def find_all_occurrences(text: str, substring: str) -> list[int]:
    """Return every case-insensitive start offset of ``substring`` in ``text``.

    Overlapping matches count: ``find_all_occurrences("aaa", "aa") == [0, 1]``.
    """
    if not substring:
        return []
    # Lookahead gives overlapping hits; IGNORECASE folds per character so
    # offsets always index the original text.
    pattern = re.compile(f"(?={re.escape(substring)})", re.IGNORECASE)
    return [m.start() for m in pattern.finditer(text)]


def normalize_ranges(text: str, ranges: Iterable[PiiRange]) -> list[PiiRange]:
    """Clamp ranges to ``text``, drop empty / non-PII ones, merge touching spans."""
    if not text:
        return []
    size = len(text)
    clamped: list[PiiRange] = []
    for r in ranges:
        if not r.is_pii:
            continue
        start = max(0, min(r.start, size))
        end = max(0, min(r.end, size))
        if start < end:
            clamped.append(PiiRange(start, end, True))
    return merge_ranges(clamped, gap=0)


def mask_text(
    text: str,
    ranges: Iterable[PiiRange],
    *,
    mask_char: str = DEFAULT_MASK_CHAR,
) -> str:
    """Replace every PII span with ``mask_char`` (length-preserving)."""
    parts: list[str] = []
    cursor = 0
    for r in normalize_ranges(text, ranges):
        parts.append(text[cursor:r.start])
        parts.append(mask_char * (r.end - r.start))
        cursor = r.end
    parts.append(text[cursor:])
    return "".join(parts)
