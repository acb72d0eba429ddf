"""Tests for the stream interposer — forwarding, interleaving, deferred finish."""

import asyncio
import threading

import pytest

from conftest import GatedOracle, StubOracle, collect, events_from
from pii_stream.buffer import PiiBufferConfig
from pii_stream.classifier import ClassifierAdapter
from pii_stream.interposer import PassthroughInterposer, StreamInterposer
from pii_stream.store import MemoryMessageStore


def deltas(*parts):
    return [{"type": "text-delta", "delta": p} for p in parts]


FINISH = {"type": "finish", "finishReason": "stop"}


class TrackingStream:
    """Async iterator that remembers whether it was closed."""

    def __init__(self, events, error=None):
        self._events = list(events)
        self._error = error
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        await asyncio.sleep(0)
        if self._events:
            return self._events.pop(0)
        if self._error is not None:
            raise self._error
        raise StopAsyncIteration

    async def aclose(self):
        self.closed = True


class FailingCloseStream(TrackingStream):
    async def aclose(self):
        self.closed = True
        raise RuntimeError("close failed")


class ThreadRecordingStore(MemoryMessageStore):
    """Remembers which thread wrote the last message."""

    thread_id = None

    def save_message(self, *args, **kwargs):
        self.thread_id = threading.get_ident()
        return super().save_message(*args, **kwargs)


# ── Ordering ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_finish_is_last_after_pii_events():
    oracle = StubOracle([("ivan@example.com", "email")])
    interposer = StreamInterposer(ClassifierAdapter(oracle))
    parts = ("Hi, I am Ivan. ", "Write to ivan@example.com", " any time.")
    events = await collect(interposer.run(events_from(deltas(*parts) + [FINISH])))

    types = [e["type"] for e in events]
    assert types[:3] == ["text-delta"] * 3
    assert [e["delta"] for e in events[:3]] == list(parts)
    assert "data-pii" in types[3:-1]
    assert types[-1] == "finish"
    assert events[-1] is FINISH

    full = "".join(parts)
    chunks = [e for e in events if e["type"] == "data-pii"][-1]["data"]["chunks"]
    assert [full[c["start"]:c["end"]] for c in chunks] == ["ivan@example.com"]
    assert all(c["isPii"] for c in chunks)


@pytest.mark.asyncio
async def test_other_events_pass_through_unchanged():
    upstream = [
        {"type": "start", "messageId": "m1"},
        {"type": "text-start", "id": "t1"},
        *deltas("Nothing to see here."),
        {"type": "text-end", "id": "t1"},
        FINISH,
    ]
    interposer = StreamInterposer(ClassifierAdapter(StubOracle()))
    events = await collect(interposer.run(events_from(upstream)))
    assert events == upstream


@pytest.mark.asyncio
async def test_pii_events_grow_monotonically():
    oracle = StubOracle([("alice@x.io", "email"), ("bob@y.io", "email")])
    interposer = StreamInterposer(ClassifierAdapter(oracle))
    text = ("filler " * 30 + "alice@x.io. ") + ("filler " * 30 + "bob@y.io.")
    parts = [text[i:i + 10] for i in range(0, len(text), 10)]
    events = await collect(interposer.run(events_from(deltas(*parts) + [FINISH])))

    pii = [e["data"]["chunks"] for e in events if e["type"] == "data-pii"]
    assert [len(c) for c in pii] == sorted(len(c) for c in pii)
    assert pii[-1] == [r.to_dict() for r in interposer.last_ranges]
    assert [text[r.start:r.end] for r in interposer.last_ranges] == ["alice@x.io", "bob@y.io"]
    assert events[-1] is FINISH


@pytest.mark.asyncio
async def test_slow_classifier_does_not_block_forwarding():
    gate = asyncio.Event()
    oracle = GatedOracle([("a@b.com", "email")], gates={"a@b.com": gate})
    interposer = StreamInterposer(
        ClassifierAdapter(oracle), config=PiiBufferConfig(min_buffer_size=10, max_buffer_size=20),
    )
    parts = ("Mail a@b.com now. ", "More text follows ", "and ends here.")
    agen = interposer.run(events_from(deltas(*parts) + [FINISH]))

    forwarded = []
    for _ in parts:
        event = await asyncio.wait_for(agen.__anext__(), timeout=1)
        forwarded.append(event["delta"])
    assert forwarded == list(parts)

    gate.set()
    rest = await collect(agen)
    assert rest[-1] is FINISH
    assert any(e["type"] == "data-pii" for e in rest)


# ── Persistence ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_persists_before_finish():
    store = MemoryMessageStore()
    conv_id = store.create_conversation("user-1")
    oracle = StubOracle([("a@b.com", "email")])
    interposer = StreamInterposer(ClassifierAdapter(oracle), store=store)

    async for event in interposer.run(
        events_from(deltas("My email ", "is a@b.com.") + [FINISH]),
        conversation_id=conv_id, user_id="user-1",
    ):
        if event["type"] == "finish":
            assert store.size == 1

    [message] = store.list_messages(conv_id)
    assert message.role == "assistant"
    assert message.content == "My email is a@b.com."
    assert message.user_id == "user-1"
    assert [message.content[r.start:r.end] for r in message.pii_ranges] == ["a@b.com"]


@pytest.mark.asyncio
async def test_store_write_runs_off_the_event_loop():
    store = ThreadRecordingStore()
    conv_id = store.create_conversation(None)
    interposer = StreamInterposer(ClassifierAdapter(StubOracle()), store=store)
    await collect(interposer.run(events_from(deltas("hello") + [FINISH]), conversation_id=conv_id))
    assert store.size == 1
    assert store.thread_id is not None
    assert store.thread_id != threading.get_ident()


@pytest.mark.asyncio
async def test_no_conversation_means_no_persistence():
    store = MemoryMessageStore()
    interposer = StreamInterposer(ClassifierAdapter(StubOracle()), store=store)
    await collect(interposer.run(events_from(deltas("hello") + [FINISH])))
    assert store.size == 0
    assert interposer.last_text == "hello"


@pytest.mark.asyncio
async def test_missing_finish_still_drains_and_persists():
    store = MemoryMessageStore()
    conv_id = store.create_conversation(None)
    oracle = StubOracle([("a@b.com", "email")])
    interposer = StreamInterposer(ClassifierAdapter(oracle), store=store)
    events = await collect(interposer.run(events_from(deltas("Mail a@b.com")), conversation_id=conv_id))
    assert [e["type"] for e in events] == ["text-delta", "data-pii"]
    assert len(store.list_messages(conv_id)[0].pii_ranges) == 1


@pytest.mark.asyncio
async def test_persistence_failure_propagates_and_withholds_finish():
    store = MemoryMessageStore()
    interposer = StreamInterposer(ClassifierAdapter(StubOracle()), store=store)
    seen = []
    with pytest.raises(KeyError):
        async for event in interposer.run(
            events_from(deltas("hello") + [FINISH]), conversation_id="missing",
        ):
            seen.append(event["type"])
    assert "finish" not in seen


# ── Failures & cleanup ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_upstream_error_propagates_after_cleanup():
    stream = TrackingStream(deltas("partial "), error=ConnectionResetError("upstream died"))
    interposer = StreamInterposer(ClassifierAdapter(StubOracle()))
    seen = []
    with pytest.raises(ConnectionResetError):
        async for event in interposer.run(stream):
            seen.append(event)
    assert seen == deltas("partial ")
    assert stream.closed


@pytest.mark.asyncio
async def test_upstream_closed_on_normal_completion():
    stream = TrackingStream(deltas("done.") + [FINISH])
    interposer = StreamInterposer(ClassifierAdapter(StubOracle()))
    await collect(interposer.run(stream))
    assert stream.closed


@pytest.mark.asyncio
async def test_consumer_abandoning_stream_closes_upstream():
    stream = TrackingStream(deltas("a", "b", "c", "d") + [FINISH])
    interposer = StreamInterposer(ClassifierAdapter(StubOracle()))
    agen = interposer.run(stream)
    first = await agen.__anext__()
    assert first["delta"] == "a"
    await agen.aclose()
    assert stream.closed


@pytest.mark.asyncio
async def test_classifier_outage_keeps_stream_flowing():
    oracle = StubOracle(error=TimeoutError("slow"))
    interposer = StreamInterposer(ClassifierAdapter(oracle))
    events = await collect(interposer.run(events_from(deltas("Call +1 555 0100.") + [FINISH])))
    assert [e["type"] for e in events] == ["text-delta", "finish"]
    assert interposer.last_ranges == []


@pytest.mark.asyncio
async def test_close_failure_reaches_consumer():
    stream = FailingCloseStream(deltas("Hi there.") + [FINISH])
    interposer = StreamInterposer(ClassifierAdapter(StubOracle()))
    seen = []

    async def consume():
        async for event in interposer.run(stream):
            seen.append(event["type"])

    with pytest.raises(RuntimeError, match="close failed"):
        await asyncio.wait_for(consume(), timeout=2)
    assert seen == ["text-delta", "finish"]
    assert stream.closed


@pytest.mark.asyncio
async def test_upstream_error_wins_over_close_failure():
    stream = FailingCloseStream(deltas("partial "), error=ConnectionResetError("upstream died"))
    interposer = StreamInterposer(ClassifierAdapter(StubOracle()))
    with pytest.raises(ConnectionResetError):
        await asyncio.wait_for(collect(interposer.run(stream)), timeout=2)
    assert stream.closed


@pytest.mark.asyncio
async def test_upstream_error_cancels_inflight_analysis():
    gate = asyncio.Event()
    oracle = GatedOracle([("a@b.com", "email")], gates={"a@b.com": gate})
    interposer = StreamInterposer(
        ClassifierAdapter(oracle), config=PiiBufferConfig(min_buffer_size=10, max_buffer_size=20),
    )
    stream = TrackingStream(deltas("Mail a@b.com now. "), error=ConnectionError("upstream died"))

    with pytest.raises(ConnectionError):
        await collect(interposer.run(stream))

    leftover = [
        task for task in asyncio.all_tasks()
        if "_process_chunk" in task.get_coro().__qualname__
    ]
    assert leftover == []
    assert oracle.calls == []
    assert stream.closed


@pytest.mark.asyncio
async def test_concurrent_run_is_rejected():
    interposer = StreamInterposer(ClassifierAdapter(StubOracle()))
    first = interposer.run(events_from(deltas("one ", "two") + [FINISH]))
    assert (await first.__anext__())["delta"] == "one "

    with pytest.raises(RuntimeError):
        await collect(interposer.run(events_from(deltas("three") + [FINISH])))

    rest = await collect(first)
    assert rest[-1] is FINISH
    assert interposer.last_text == "one two"

    await collect(interposer.run(events_from(deltas("again") + [FINISH])))
    assert interposer.last_text == "again"


# ── Passthrough ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_passthrough_forwards_everything():
    upstream = deltas("a@b.com ", "is here") + [FINISH]
    interposer = PassthroughInterposer()
    events = await collect(interposer.run(events_from(upstream)))
    assert events == upstream
    assert interposer.last_text == "a@b.com is here"
    assert interposer.last_ranges == []
