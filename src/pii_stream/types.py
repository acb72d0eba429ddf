"""Core types."""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Literal, get_args


PiiCategory = Literal[
    "name",
    "phone",
    "email",
    "address",
    "id_number",
    "account_number",
    "credit_card",
    "api_key",
    "other_pii",
]

CATEGORIES: tuple[str, ...] = get_args(PiiCategory)


def coerce_category(value: Any) -> PiiCategory:
    """Map an oracle-supplied category onto a known one ("other_pii" fallback)."""
    if isinstance(value, str):
        key = value.strip().lower().replace("-", "_").replace(" ", "_")
        if key in CATEGORIES:
            return key  # type: ignore[return-value]
    return "other_pii"


@dataclass(frozen=True, slots=True)
class PiiRange:
    """A half-open ``[start, end)`` span of the full response text."""
    start: int
    end: int
    is_pii: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"start": self.start, "end": self.end, "isPii": self.is_pii}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PiiRange":
        return cls(
            start=int(data["start"]),
            end=int(data["end"]),
            is_pii=bool(data.get("isPii", True)),
        )


@dataclass(frozen=True, slots=True)
class PiiItem:
    """A phrase flagged by a classifier."""
    text: str
    category: PiiCategory


@dataclass(slots=True)
class StoredMessage:
    """A persisted chat message."""
    id: str
    conversation_id: str
    role: str                                   # "user" | "assistant" | "system"
    content: str
    pii_ranges: list[PiiRange] = field(default_factory=list)
    user_id: str | None = None
    created_at: str = ""


@dataclass(slots=True)
class Conversation:
    """A persisted conversation header."""
    id: str
    user_id: str | None
    title: str
    created_at: str = ""
    updated_at: str = ""


def ranges_to_wire(ranges: list[PiiRange]) -> list[dict[str, Any]]:
    return [r.to_dict() for r in ranges]


def pii_event(ranges: list[PiiRange]) -> dict[str, Any]:
    """Build the downstream ``data-pii`` event carrying the full range set."""
    return {
        "type": "data-pii",
        "id": "pii-chunks",
        "data": {"chunks": ranges_to_wire(ranges)},
    }
