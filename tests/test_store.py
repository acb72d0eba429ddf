"""Tests for the in-memory and SQLite message stores."""

import json

import pytest

from pii_stream.store import DEFAULT_TITLE, MemoryMessageStore, MessageStore, make_title
from pii_stream.store_sqlite import SqliteMessageStore
from pii_stream.types import PiiRange


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield MemoryMessageStore()
    else:
        s = SqliteMessageStore(db_path=tmp_path / "messages.db")
        yield s
        s.close()


def test_store_satisfies_protocol(store):
    assert isinstance(store, MessageStore)


def test_save_and_list_roundtrip(store):
    conv = store.create_conversation("user-1")
    store.save_message(conv, "user", "hi", user_id="user-1")
    store.save_message(conv, "assistant", "Mail a@b.com", [PiiRange(5, 12)], user_id="user-1")
    messages = store.list_messages(conv)
    assert [m.role for m in messages] == ["user", "assistant"]
    assert messages[0].pii_ranges == []
    assert messages[1].pii_ranges == [PiiRange(5, 12)]
    assert messages[1].user_id == "user-1"


def test_unknown_conversation_raises(store):
    with pytest.raises(KeyError):
        store.save_message("nope", "assistant", "text")


def test_title_from_first_message(store):
    conv = store.create_conversation("u")
    store.update_title(conv, "x" * 60)
    [c] = store.list_conversations("u")
    assert c.title == "x" * 50 + "..."
    # Only the default title is replaced
    store.update_title(conv, "something else")
    assert store.list_conversations("u")[0].title == "x" * 50 + "..."


def test_list_conversations_filters_by_user(store):
    a = store.create_conversation("alice")
    store.create_conversation("bob")
    assert [c.id for c in store.list_conversations("alice")] == [a]
    assert len(store.list_conversations()) == 2
    assert store.list_conversations("alice")[0].title == DEFAULT_TITLE


def test_delete_conversation(store):
    conv = store.create_conversation(None)
    store.save_message(conv, "assistant", "bye")
    store.delete_conversation(conv)
    assert store.list_messages(conv) == []
    assert store.list_conversations() == []


def test_make_title_short_message():
    assert make_title("hello") == "hello"


# ── SQLite specifics ─────────────────────────────────────────────────

def test_sqlite_metadata_only_when_ranges(tmp_path):
    store = SqliteMessageStore(db_path=tmp_path / "m.db")
    conv = store.create_conversation(None)
    store.save_message(conv, "assistant", "clean")
    store.save_message(conv, "assistant", "a@b.com", [PiiRange(0, 7)])
    rows = store._db.execute(
        "SELECT metadata FROM chat_messages ORDER BY rowid"
    ).fetchall()
    assert rows[0][0] is None
    assert json.loads(rows[1][0]) == {"piiRanges": [{"start": 0, "end": 7, "isPii": True}]}
    store.close()


def test_sqlite_survives_reopen(tmp_path):
    path = tmp_path / "m.db"
    store = SqliteMessageStore(db_path=path)
    conv = store.create_conversation("u")
    store.save_message(conv, "assistant", "Ivan", [PiiRange(0, 4)])
    store.close()

    reopened = SqliteMessageStore(db_path=path)
    [message] = reopened.list_messages(conv)
    assert message.content == "Ivan"
    assert message.pii_ranges == [PiiRange(0, 4)]
    reopened.close()


def test_sqlite_in_memory():
    store = SqliteMessageStore(db_path=":memory:")
    conv = store.create_conversation(None)
    store.save_message(conv, "user", "hello")
    assert len(store.list_messages(conv)) == 1
    store.close()
