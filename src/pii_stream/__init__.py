"""pii-stream — inline PII detection for streamed LLM responses."""

from .buffer import BufferPhase, BufferState, PiiBufferConfig, StreamingPiiBuffer
from .classifier import ClassifierAdapter, OpenAIOracle, PiiOracle, PresidioOracle, RegexOracle
from .config import create_interposer, load_config, load_from_yaml
from .errors import (
    BufferClosedError,
    ClassifierError,
    GenerationError,
    PiiStreamError,
)
from .interposer import PassthroughInterposer, StreamInterposer
from .ranges import find_all_occurrences, mask_text, merge_ranges, normalize_ranges
from .store import MemoryMessageStore, MessageStore
from .store_sqlite import SqliteMessageStore
from .types import PiiItem, PiiRange

__all__ = [
    "StreamingPiiBuffer", "PiiBufferConfig", "BufferPhase", "BufferState",
    "ClassifierAdapter", "PiiOracle", "OpenAIOracle", "PresidioOracle", "RegexOracle",
    "StreamInterposer", "PassthroughInterposer",
    "merge_ranges", "find_all_occurrences", "normalize_ranges", "mask_text",
    "MessageStore", "MemoryMessageStore", "SqliteMessageStore",
    "create_interposer", "load_config", "load_from_yaml",
    "PiiRange", "PiiItem",
    "PiiStreamError", "ClassifierError", "BufferClosedError", "GenerationError",
]
__version__ = "0.1.0"
