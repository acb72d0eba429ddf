"""Regex oracle — offline detection of structured PII.

No model, no network: catches the deterministic stuff (emails, phones,
card numbers, account numbers, ID numbers, API keys).  Names and
addresses need the LLM or Presidio backends.
"""

from __future__ import annotations
import re

from .types import PiiCategory, PiiItem

# Each pattern: (category, compiled_regex, capture group to report)
_PATTERNS: list[tuple[PiiCategory, re.Pattern[str], int]] = [
    ("email", re.compile(
        r"\b[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}\b"
    ), 0),

    # Card numbers — validated with Luhn below
    ("credit_card", re.compile(
        r"\b(?:\d[ \-]?){12,18}\d\b"
    ), 0),

    # IBAN-style account numbers
    ("account_number", re.compile(
        r"\b[A-Z]{2}\d{2}(?:\s?[A-Z0-9]{4}){2,7}(?:\s?[A-Z0-9]{1,4})?\b"
    ), 0),

    # SSN-style national id numbers
    ("id_number", re.compile(
        r"\b\d{3}[\s\-]\d{2}[\s\-]\d{4}\b"
    ), 0),

    # International and domestic phone formats
    ("phone", re.compile(
        r"(?<![\w+])"
        r"(?:\+\d{1,3}[\s\-.]?)?"
        r"(?:\(?\d{2,4}\)?[\s\-.]?)"
        r"\d{3,4}[\s\-.]?\d{3,4}"
        r"(?!\d)"
    ), 0),

    # Secrets after key=/token:/bearer
    ("api_key", re.compile(
        r"(?:api[_\-]?key|secret|token|password|bearer)\s*[:=]?\s*['\"]?([a-zA-Z0-9\-_\.]{20,})['\"]?",
        re.IGNORECASE,
    ), 1),

    # Well-known vendor key prefixes
    ("api_key", re.compile(
        r"\b(?:sk|pk|rk)[-_](?:live|test|proj)?[-_]?[a-zA-Z0-9]{16,}\b"
    ), 0),
]


def scan_regex(text: str) -> list[PiiItem]:
    """Run all patterns against text.  Returns one item per distinct phrase."""
    spans: list[tuple[int, int, PiiCategory]] = []
    for category, pattern, group in _PATTERNS:
        for m in pattern.finditer(text):
            phrase = m.group(group)
            if category == "credit_card" and not _luhn_check(re.sub(r"\D", "", phrase)):
                continue
            spans.append((m.start(group), m.end(group), category))

    items: list[PiiItem] = []
    seen: set[str] = set()
    for start, end, category in _deduplicate(spans):
        phrase = text[start:end]
        if phrase.lower() in seen:
            continue
        seen.add(phrase.lower())
        items.append(PiiItem(text=phrase, category=category))
    return items


def _deduplicate(spans: list[tuple[int, int, PiiCategory]]) -> list[tuple[int, int, PiiCategory]]:
    """Drop overlapping spans.  Spans arrive in pattern order, so earlier patterns win."""
    taken: list[tuple[int, int, PiiCategory]] = []
    for span in spans:
        start, end, _ = span
        if not any(start < e and end > s for s, e, _ in taken):
            taken.append(span)
    return sorted(taken, key=lambda s: s[0])


def _luhn_check(num: str) -> bool:
    """Luhn checksum for card numbers."""
    if not num.isdigit() or not (13 <= len(num) <= 19):
        return False
    total = 0
    alternate = False
    for ch in reversed(num):
        n = int(ch)
        if alternate:
            n *= 2
            if n > 9:
                n -= 9
        total += n
        alternate = not alternate
    return total % 10 == 0
