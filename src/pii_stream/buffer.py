"""Streaming PII buffer — chunks a token stream and detects PII in the background.

Text deltas arrive a few characters at a time.  Classifying each delta
would split phone numbers and names across calls, classifying only at the
end would delay redaction until the response is over.  The buffer holds
text until at least ``min_buffer_size`` characters are pending, then cuts
at the next sentence end (or, failing that, at a word break once
``max_buffer_size`` is reached) and classifies the chunk in a background
task while the stream keeps flowing.

Usage:
    buffer = StreamingPiiBuffer(adapter, on_detected=send_ranges)
    async for delta in deltas:
        buffer.add(delta)            # never blocks on the classifier
    ranges = await buffer.finish()   # drains every pending chunk
"""

from __future__ import annotations
import asyncio
import enum
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from .classifier import ClassifierAdapter
from .errors import BufferClosedError
from .ranges import DEFAULT_MERGE_GAP, find_all_occurrences, merge_ranges
from .types import PiiRange

logger = logging.getLogger(__name__)

_SENTENCE_END = frozenset(".!?\n")

DetectionCallback = Callable[[list[PiiRange]], Awaitable[None] | None]


@dataclass(frozen=True, slots=True)
class PiiBufferConfig:
    """Chunking policy.  The defaults are heuristics, not hard limits."""
    min_buffer_size: int = 200
    max_buffer_size: int = 1200
    merge_gap: int = DEFAULT_MERGE_GAP

    def __post_init__(self) -> None:
        if self.min_buffer_size <= 0:
            raise ValueError("min_buffer_size must be positive")
        if self.max_buffer_size < self.min_buffer_size:
            raise ValueError("max_buffer_size must be >= min_buffer_size")
        if self.merge_gap < 0:
            raise ValueError("merge_gap must be >= 0")


class BufferPhase(enum.Enum):
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"
    DRAINING = "draining"
    DONE = "done"


@dataclass(slots=True)
class BufferState:
    """Mutable state of one in-flight response.  Never shared across responses."""
    full_text: str = ""
    processed_up_to: int = 0
    all_ranges: list[PiiRange] = field(default_factory=list)
    pending_tasks: set[asyncio.Task[None]] = field(default_factory=set)


class StreamingPiiBuffer:
    """Accumulates text deltas and classifies sentence-aligned chunks."""

    __slots__ = ("_classifier", "_on_detected", "_config", "_state", "_phase")

    def __init__(
        self,
        classifier: ClassifierAdapter,
        on_detected: DetectionCallback | None = None,
        config: PiiBufferConfig | None = None,
    ) -> None:
        self._classifier = classifier
        self._on_detected = on_detected
        self._config = config or PiiBufferConfig()
        self._state = BufferState()
        self._phase = BufferPhase.ACCUMULATING

    # ------------------------------------------------------------------
    # Core API
    # ------------------------------------------------------------------

    def add(self, fragment: str) -> None:
        """Append a delta and dispatch any chunks that are now ready.

        Must be called from a running event loop.
        """
        if self._phase in (BufferPhase.DRAINING, BufferPhase.DONE):
            raise BufferClosedError("cannot add text after finish()")
        if not fragment:
            return
        self._state.full_text += fragment
        while self._try_flush():
            pass

    async def finish(self) -> list[PiiRange]:
        """Classify the remaining tail, wait for every chunk, return final ranges."""
        state = self._state
        if self._phase is BufferPhase.DONE:
            return list(state.all_ranges)

        self._phase = BufferPhase.DRAINING
        if state.processed_up_to < len(state.full_text):
            tail = state.full_text[state.processed_up_to:]
            if tail.strip():
                self._dispatch(tail, state.processed_up_to)
            state.processed_up_to = len(state.full_text)

        pending = list(state.pending_tasks)
        if pending:
            results = await asyncio.gather(*pending, return_exceptions=True)
            for result in results:
                if isinstance(result, BaseException):
                    logger.error("PII chunk task failed", exc_info=result)

        self._phase = BufferPhase.DONE
        return list(state.all_ranges)

    async def cancel(self) -> None:
        """Abandon the response: cancel in-flight chunks and wait for them to unwind."""
        pending = list(self._state.pending_tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._phase = BufferPhase.DONE

    # ------------------------------------------------------------------
    # Chunking
    # ------------------------------------------------------------------

    def _try_flush(self) -> bool:
        """Dispatch one chunk if the pending text has a usable boundary."""
        state, cfg = self._state, self._config
        text = state.full_text
        start = state.processed_up_to
        if len(text) - start < cfg.min_buffer_size:
            return False

        search_start = start + cfg.min_buffer_size
        boundary = _find_sentence_boundary(text, search_start)

        if boundary == -1 and len(text) - start >= cfg.max_buffer_size:
            boundary = _find_forced_boundary(text, search_start, start + cfg.max_buffer_size)

        if boundary == -1 or boundary <= start:
            return False

        chunk = text[start:boundary]
        state.processed_up_to = boundary
        self._dispatch(chunk, start)
        return True

    def _dispatch(self, chunk: str, offset: int) -> None:
        logger.debug("Dispatching PII chunk [%d, %d)", offset, offset + len(chunk))
        task = asyncio.get_running_loop().create_task(self._process_chunk(chunk, offset))
        self._state.pending_tasks.add(task)
        task.add_done_callback(self._state.pending_tasks.discard)
        if self._phase is BufferPhase.ACCUMULATING:
            self._phase = BufferPhase.FLUSHING

    async def _process_chunk(self, chunk: str, offset: int) -> None:
        items = await self._classifier.classify(chunk)

        detected: list[PiiRange] = []
        for item in items:
            for pos in find_all_occurrences(chunk, item.text):
                start = offset + pos
                detected.append(PiiRange(start, start + len(item.text)))
        if not detected:
            return

        # No await between reading and replacing all_ranges
        state = self._state
        existing = {(r.start, r.end) for r in state.all_ranges}
        fresh = [r for r in detected if (r.start, r.end) not in existing]
        if not fresh:
            return
        state.all_ranges = merge_ranges(state.all_ranges + fresh, gap=self._config.merge_gap)
        logger.debug("PII ranges updated: %d total", len(state.all_ranges))

        if self._on_detected is not None:
            result = self._on_detected(list(state.all_ranges))
            if inspect.isawaitable(result):
                await result

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def text(self) -> str:
        return self._state.full_text

    @property
    def ranges(self) -> list[PiiRange]:
        return list(self._state.all_ranges)

    @property
    def pending(self) -> int:
        return len(self._state.pending_tasks)

    @property
    def phase(self) -> BufferPhase:
        if self._phase is BufferPhase.FLUSHING and not self._state.pending_tasks:
            return BufferPhase.ACCUMULATING
        return self._phase

    @property
    def state(self) -> BufferState:
        return self._state


def _find_sentence_boundary(text: str, min_pos: int) -> int:
    """Index just past the first ``. ! ? \\n`` at/after min_pos followed by whitespace or EOT."""
    size = len(text)
    for i in range(min_pos, size):
        if text[i] in _SENTENCE_END and (i + 1 >= size or text[i + 1].isspace()):
            return i + 1
    return -1


def _find_forced_boundary(text: str, search_start: int, search_end: int) -> int:
    """Cut after the last whitespace in ``(search_start, search_end]``, else at search_end."""
    for i in range(min(search_end, len(text) - 1), search_start, -1):
        if text[i].isspace():
            return i + 1
    return search_end
