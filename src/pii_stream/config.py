"""YAML/dict config loader for pii-stream.

Supports loading from a YAML file or a plain dict (for embedding in a
larger application config).

Example YAML:

    pii_stream:
      enabled: true
      backend: openai          # "openai", "presidio" or "regex"
      model: gpt-4.1-nano
      base_url: https://api.openai.com/v1
      api_key_env: OPENAI_API_KEY
      timeout_s: 30
      min_buffer_size: 200
      max_buffer_size: 1200
      merge_gap: 3
      allow_list:
        - Harry Potter
      exclusions:
        - Fictional character names
        - Brand names or company names
      store:
        backend: sqlite        # "memory" or "sqlite"
        path: ~/.pii-stream/messages.db
"""

from __future__ import annotations
import os
from pathlib import Path
from typing import Any

from .buffer import PiiBufferConfig
from .classifier import (
    DEFAULT_BASE_URL,
    DEFAULT_EXCLUSIONS,
    DEFAULT_MODEL,
    ClassifierAdapter,
    OpenAIOracle,
    PiiOracle,
    PresidioOracle,
    RegexOracle,
)
from .interposer import PassthroughInterposer, StreamInterposer
from .ranges import DEFAULT_MERGE_GAP
from .store import MemoryMessageStore, MessageStore
from .store_sqlite import SqliteMessageStore

BACKENDS = ("openai", "presidio", "regex")


def load_config(data: dict[str, Any]) -> dict[str, Any]:
    """Normalize a config dict (from YAML or inline)."""
    # Support nested under "pii_stream" key or flat
    if "pii_stream" in data:
        data = data["pii_stream"] or {}

    store = data.get("store") or {}
    backend = data.get("backend", "openai")
    if backend not in BACKENDS:
        raise ValueError(f"unknown backend {backend!r} (expected one of {', '.join(BACKENDS)})")

    return {
        "enabled": data.get("enabled", True),
        "backend": backend,
        "model": data.get("model", DEFAULT_MODEL),
        "base_url": data.get("base_url", DEFAULT_BASE_URL),
        "api_key_env": data.get("api_key_env", "OPENAI_API_KEY"),
        "timeout_s": float(data.get("timeout_s", 30)),
        "language": data.get("language", "en"),
        "score_threshold": float(data.get("score_threshold", 0.35)),
        "entities": data.get("entities"),
        "min_buffer_size": int(data.get("min_buffer_size", 200)),
        "max_buffer_size": int(data.get("max_buffer_size", 1200)),
        "merge_gap": int(data.get("merge_gap", DEFAULT_MERGE_GAP)),
        "allow_list": set(data.get("allow_list") or []),
        "exclusions": list(data.get("exclusions") or DEFAULT_EXCLUSIONS),
        "store_backend": store.get("backend", "memory"),
        "store_path": store.get("path", "messages.db"),
    }


def load_from_yaml(path: str | Path) -> dict[str, Any]:
    """Load config from a YAML file."""
    import yaml  # only needed for file-based config
    with open(path) as f:
        return load_config(yaml.safe_load(f) or {})


def create_oracle(cfg: dict[str, Any]) -> PiiOracle:
    """Build the oracle named by ``cfg["backend"]``."""
    if cfg["backend"] == "presidio":
        return PresidioOracle(
            language=cfg["language"],
            entities=cfg["entities"],
            score_threshold=cfg["score_threshold"],
        )
    if cfg["backend"] == "regex":
        return RegexOracle()
    return OpenAIOracle(
        api_key=os.environ.get(cfg["api_key_env"]),
        model=cfg["model"],
        base_url=cfg["base_url"],
        timeout_s=cfg["timeout_s"],
        exclusions=cfg["exclusions"],
    )


def create_store(cfg: dict[str, Any]) -> MessageStore:
    if cfg["store_backend"] == "sqlite":
        return SqliteMessageStore(db_path=cfg["store_path"])
    return MemoryMessageStore()


def create_interposer(
    config: dict[str, Any],
    *,
    store: MessageStore | None = None,
) -> StreamInterposer | PassthroughInterposer:
    """Create a fully wired interposer from a config dict."""
    cfg = load_config(config) if "store_backend" not in config else config

    if not cfg["enabled"]:
        # Pass-through (no detection)
        return PassthroughInterposer()

    buffer_config = PiiBufferConfig(
        min_buffer_size=cfg["min_buffer_size"],
        max_buffer_size=cfg["max_buffer_size"],
        merge_gap=cfg["merge_gap"],
    )
    adapter = ClassifierAdapter(create_oracle(cfg), allow_list=cfg["allow_list"])
    return StreamInterposer(adapter, store=store, config=buffer_config)
