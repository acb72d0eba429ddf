"""Message stores — where finished responses and their PII ranges end up.

The interposer only needs ``save_message``; the rest of the protocol
serves the CLI and sidecar.
"""

from __future__ import annotations
import uuid
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

from .types import Conversation, PiiRange, StoredMessage

DEFAULT_TITLE = "New Conversation"
_TITLE_LIMIT = 50


def make_title(first_user_message: str) -> str:
    """Conversation title from the first user message (50 chars + ellipsis)."""
    title = first_user_message[:_TITLE_LIMIT]
    return title + ("..." if len(first_user_message) > _TITLE_LIMIT else "")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@runtime_checkable
class MessageStore(Protocol):
    """Persistence boundary for chat messages."""

    def create_conversation(self, user_id: str | None, title: str = DEFAULT_TITLE) -> str: ...

    def save_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        pii_ranges: list[PiiRange] | None = None,
        *,
        user_id: str | None = None,
    ) -> StoredMessage: ...

    def list_messages(self, conversation_id: str) -> list[StoredMessage]: ...

    def list_conversations(self, user_id: str | None = None) -> list[Conversation]: ...

    def update_title(self, conversation_id: str, first_user_message: str) -> None: ...

    def delete_conversation(self, conversation_id: str) -> None: ...


class MemoryMessageStore:
    """In-process store.  One per process; nothing survives a restart."""

    __slots__ = ("_conversations", "_messages")

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[StoredMessage]] = {}

    def create_conversation(self, user_id: str | None, title: str = DEFAULT_TITLE) -> str:
        now = _now()
        conv = Conversation(id=str(uuid.uuid4()), user_id=user_id, title=title,
                            created_at=now, updated_at=now)
        self._conversations[conv.id] = conv
        self._messages[conv.id] = []
        return conv.id

    def save_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        pii_ranges: list[PiiRange] | None = None,
        *,
        user_id: str | None = None,
    ) -> StoredMessage:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            raise KeyError(f"unknown conversation {conversation_id!r}")
        message = StoredMessage(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
            pii_ranges=list(pii_ranges or []),
            user_id=user_id,
            created_at=_now(),
        )
        self._messages[conversation_id].append(message)
        conv.updated_at = message.created_at
        return message

    def list_messages(self, conversation_id: str) -> list[StoredMessage]:
        return list(self._messages.get(conversation_id, []))

    def list_conversations(self, user_id: str | None = None) -> list[Conversation]:
        convs = [c for c in self._conversations.values() if user_id is None or c.user_id == user_id]
        return sorted(convs, key=lambda c: c.updated_at, reverse=True)

    def update_title(self, conversation_id: str, first_user_message: str) -> None:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            return
        if conv.title == DEFAULT_TITLE and first_user_message:
            conv.title = make_title(first_user_message)
        conv.updated_at = _now()

    def delete_conversation(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)
        self._messages.pop(conversation_id, None)

    @property
    def size(self) -> int:
        return sum(len(m) for m in self._messages.values())
