"""Upstream event sources.

The interposer consumes plain event dicts:

    {"type": "start"}
    {"type": "text-delta", "delta": "Hel"}
    {"type": "finish", "finishReason": "stop"}

``stream_chat_completion`` produces them from an OpenAI-compatible
streaming endpoint; ``fragment_stream`` replays a fixed string, which is
what the CLI and sidecar use to scan text that is already complete.
"""

from __future__ import annotations
import json
from collections.abc import AsyncIterator
from typing import Any

import httpx

from .classifier import DEFAULT_BASE_URL
from .errors import GenerationError

DEFAULT_CHAT_MODEL = "gpt-4.1-mini"


async def fragment_stream(
    text: str,
    size: int = 16,
    *,
    finish_reason: str = "stop",
) -> AsyncIterator[dict[str, Any]]:
    """Yield ``text`` as ``size``-char text deltas followed by a finish event."""
    if size <= 0:
        raise ValueError("size must be positive")
    yield {"type": "start"}
    for i in range(0, len(text), size):
        yield {"type": "text-delta", "delta": text[i:i + size]}
    yield {"type": "finish", "finishReason": finish_reason}


async def stream_chat_completion(
    messages: list[dict[str, Any]],
    *,
    model: str = DEFAULT_CHAT_MODEL,
    base_url: str = DEFAULT_BASE_URL,
    api_key: str | None = None,
    system: str | None = None,
    timeout_s: float = 60.0,
    client: httpx.AsyncClient | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """Stream a chat completion as upstream events.

    Raises:
        GenerationError: on transport errors or an unusable event stream.
    """
    payload_messages = list(messages)
    if system is not None:
        payload_messages.insert(0, {"role": "system", "content": system})
    payload = {"model": model, "messages": payload_messages, "stream": True}
    headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
    url = f"{base_url.rstrip('/')}/chat/completions"

    owned = client is None
    http = client or httpx.AsyncClient(timeout=timeout_s)
    finish_reason: str | None = None
    try:
        async with http.stream("POST", url, json=payload, headers=headers) as response:
            response.raise_for_status()
            yield {"type": "start"}
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except ValueError as exc:
                    raise GenerationError(f"Malformed stream chunk: {data[:80]!r}") from exc
                for choice in chunk.get("choices", []):
                    delta = (choice.get("delta") or {}).get("content")
                    if delta:
                        yield {"type": "text-delta", "delta": delta}
                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]
    except httpx.HTTPError as exc:
        raise GenerationError(f"Generation stream failed: {exc}") from exc
    finally:
        if owned:
            await http.aclose()

    yield {"type": "finish", "finishReason": finish_reason or "stop"}
