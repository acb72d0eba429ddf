"""Persistent message store backed by SQLite — survives process restarts.

Drop-in replacement for MemoryMessageStore when you need durability.

Usage:
    store = SqliteMessageStore(db_path="~/.pii-stream/messages.db")
    conv_id = store.create_conversation("user-1")
    store.save_message(conv_id, "assistant", text, ranges)
"""

from __future__ import annotations
import json
import sqlite3
import uuid
from pathlib import Path

from .store import DEFAULT_TITLE, _now, make_title
from .types import Conversation, PiiRange, StoredMessage, ranges_to_wire


_SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    title TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS chat_messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    user_id TEXT,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    metadata TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON chat_messages(conversation_id, created_at);
"""


class SqliteMessageStore:
    """Persistent conversation/message store."""

    __slots__ = ("_db",)

    def __init__(self, *, db_path: str | Path = "messages.db") -> None:
        if str(db_path) != ":memory:":
            db_path = Path(db_path).expanduser()
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(str(db_path), check_same_thread=False)
        self._db.execute("PRAGMA foreign_keys = ON")
        self._db.executescript(_SCHEMA)

    def create_conversation(self, user_id: str | None, title: str = DEFAULT_TITLE) -> str:
        conv_id = str(uuid.uuid4())
        now = _now()
        self._db.execute(
            "INSERT INTO conversations (id, user_id, title, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (conv_id, user_id, title, now, now),
        )
        self._db.commit()
        return conv_id

    def save_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        pii_ranges: list[PiiRange] | None = None,
        *,
        user_id: str | None = None,
    ) -> StoredMessage:
        ranges = list(pii_ranges or [])
        # Metadata only when there is something to record
        metadata = json.dumps({"piiRanges": ranges_to_wire(ranges)}) if ranges else None
        message = StoredMessage(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
            pii_ranges=ranges,
            user_id=user_id,
            created_at=_now(),
        )
        try:
            self._db.execute(
                "INSERT INTO chat_messages "
                "(id, conversation_id, user_id, role, content, metadata, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (message.id, conversation_id, user_id, role, content, metadata,
                 message.created_at),
            )
        except sqlite3.IntegrityError as exc:
            raise KeyError(f"unknown conversation {conversation_id!r}") from exc
        self._db.execute(
            "UPDATE conversations SET updated_at = ? WHERE id = ?",
            (message.created_at, conversation_id),
        )
        self._db.commit()
        return message

    def list_messages(self, conversation_id: str) -> list[StoredMessage]:
        rows = self._db.execute(
            "SELECT id, conversation_id, user_id, role, content, metadata, created_at "
            "FROM chat_messages WHERE conversation_id = ? ORDER BY created_at, rowid",
            (conversation_id,),
        ).fetchall()
        return [
            StoredMessage(
                id=mid,
                conversation_id=cid,
                role=role,
                content=content,
                pii_ranges=_load_ranges(metadata),
                user_id=uid,
                created_at=created,
            )
            for mid, cid, uid, role, content, metadata, created in rows
        ]

    def list_conversations(self, user_id: str | None = None) -> list[Conversation]:
        sql = "SELECT id, user_id, title, created_at, updated_at FROM conversations"
        params: tuple = ()
        if user_id is not None:
            sql += " WHERE user_id = ?"
            params = (user_id,)
        rows = self._db.execute(sql + " ORDER BY updated_at DESC", params).fetchall()
        return [Conversation(*row) for row in rows]

    def update_title(self, conversation_id: str, first_user_message: str) -> None:
        row = self._db.execute(
            "SELECT title FROM conversations WHERE id = ?", (conversation_id,),
        ).fetchone()
        if row is None:
            return
        title = row[0]
        if title == DEFAULT_TITLE and first_user_message:
            title = make_title(first_user_message)
        self._db.execute(
            "UPDATE conversations SET title = ?, updated_at = ? WHERE id = ?",
            (title, _now(), conversation_id),
        )
        self._db.commit()

    def delete_conversation(self, conversation_id: str) -> None:
        self._db.execute("DELETE FROM chat_messages WHERE conversation_id = ?", (conversation_id,))
        self._db.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        self._db.commit()

    def close(self) -> None:
        self._db.close()


def _load_ranges(metadata: str | None) -> list[PiiRange]:
    if not metadata:
        return []
    return [PiiRange.from_dict(r) for r in json.loads(metadata).get("piiRanges", [])]
