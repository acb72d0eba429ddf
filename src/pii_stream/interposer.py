"""Stream interposer — sits between the generation stream and the client.

Every upstream event is forwarded as-is and in order.  Text deltas are
also fed to a :class:`StreamingPiiBuffer`; whenever the detected range
set grows a ``data-pii`` event is slipped into the output.  The ``finish``
event is held back until detection has drained and the message has been
persisted, so a client never sees "done" before the redaction data.

Usage:
    interposer = StreamInterposer(ClassifierAdapter(OpenAIOracle(...)), store=store)
    async for event in interposer.run(upstream, conversation_id=conv_id):
        await send_to_client(event)
"""

from __future__ import annotations
import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from .buffer import PiiBufferConfig, StreamingPiiBuffer
from .classifier import ClassifierAdapter
from .store import MessageStore
from .types import PiiRange, pii_event

logger = logging.getLogger(__name__)

Event = dict[str, Any]

# Queue sentinel: the producer has nothing more to say
_DONE = object()


class _Failure:
    __slots__ = ("exc",)

    def __init__(self, exc: BaseException) -> None:
        self.exc = exc


class StreamInterposer:
    """Forwards a stream of events while detecting PII in its text deltas.

    One instance handles one response at a time: ``last_text`` and
    ``last_ranges`` describe the most recent run, so concurrent responses
    each need their own interposer.
    """

    def __init__(
        self,
        classifier: ClassifierAdapter,
        *,
        store: MessageStore | None = None,
        config: PiiBufferConfig | None = None,
    ) -> None:
        self.classifier = classifier
        self.store = store
        self.config = config or PiiBufferConfig()
        self.last_text = ""
        self.last_ranges: list[PiiRange] = []
        self._running = False

    async def run(
        self,
        upstream: AsyncIterable[Event],
        *,
        conversation_id: str | None = None,
        user_id: str | None = None,
    ) -> AsyncIterator[Event]:
        """Yield downstream events for one response.

        Raises:
            RuntimeError: if another run on this interposer is still active.
        """
        if self._running:
            raise RuntimeError("StreamInterposer is already running a response")
        self._running = True
        queue: asyncio.Queue[Any] = asyncio.Queue()
        producer = asyncio.create_task(
            self._pump(upstream, queue, conversation_id=conversation_id, user_id=user_id)
        )
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                if isinstance(item, _Failure):
                    raise item.exc
                yield item
        finally:
            try:
                if not producer.done():
                    producer.cancel()
                try:
                    await producer
                except asyncio.CancelledError:
                    pass
            finally:
                self._running = False

    async def _pump(
        self,
        upstream: AsyncIterable[Event],
        queue: asyncio.Queue[Any],
        *,
        conversation_id: str | None,
        user_id: str | None,
    ) -> None:
        buffer = StreamingPiiBuffer(
            self.classifier,
            on_detected=lambda ranges: queue.put_nowait(pii_event(ranges)),
            config=self.config,
        )
        iterator = aiter(upstream)
        finish_event: Event | None = None
        failure: BaseException | None = None
        try:
            async for event in iterator:
                kind = event.get("type")
                if kind == "finish":
                    finish_event = event
                    continue
                queue.put_nowait(event)
                if kind == "text-delta":
                    buffer.add(event.get("delta") or "")

            ranges = await buffer.finish()
            self.last_text, self.last_ranges = buffer.text, ranges
            logger.debug("Response complete: %d chars, %d PII ranges", len(buffer.text), len(ranges))

            if self.store is not None and conversation_id:
                await asyncio.to_thread(
                    self.store.save_message,
                    conversation_id, "assistant", buffer.text, ranges, user_id=user_id,
                )

            if finish_event is not None:
                queue.put_nowait(finish_event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Upstream stream failed: %s", type(exc).__name__)
            failure = exc
        finally:
            # Failure and _DONE go out together, after cleanup
            try:
                await buffer.cancel()
                await _close(iterator)
            except Exception as exc:
                logger.warning("Closing the upstream stream failed: %s", type(exc).__name__)
                failure = failure or exc
            finally:
                if failure is not None:
                    queue.put_nowait(_Failure(failure))
                queue.put_nowait(_DONE)


class PassthroughInterposer:
    """Forwards events unchanged (used when detection is disabled)."""

    def __init__(self) -> None:
        self.last_text = ""
        self.last_ranges: list[PiiRange] = []

    async def run(
        self,
        upstream: AsyncIterable[Event],
        *,
        conversation_id: str | None = None,
        user_id: str | None = None,
    ) -> AsyncIterator[Event]:
        iterator = aiter(upstream)
        parts: list[str] = []
        try:
            async for event in iterator:
                if event.get("type") == "text-delta":
                    parts.append(event.get("delta") or "")
                yield event
        finally:
            self.last_text = "".join(parts)
            await _close(iterator)


async def _close(iterator: AsyncIterator[Any]) -> None:
    """Release the upstream iterator if it holds resources."""
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        await aclose()
