"""Classifier adapter — turns a text window into flagged PII phrases.

An *oracle* does the actual judgement (a hosted LLM, Presidio, or plain
regex).  The adapter in front of it is fail-soft: any oracle failure is
logged and reported as "nothing found", because a missed detection is
better than aborting the response stream.

Usage:
    adapter = ClassifierAdapter(OpenAIOracle(api_key="sk-..."))
    items = await adapter.classify("Call Ivan at +1 999 999 999.")
"""

from __future__ import annotations
import asyncio
import json
import logging
from collections.abc import Iterable, Sequence
from typing import Any, Protocol, runtime_checkable

import httpx

from .errors import (
    ClassifierConnectionError,
    ClassifierResponseError,
    ClassifierTimeoutError,
)
from .patterns import scan_regex
from .types import CATEGORIES, PiiItem, coerce_category

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4.1-nano"
DEFAULT_BASE_URL = "https://api.openai.com/v1"

DEFAULT_DETECT = (
    'Personal names (real people\'s names like "Ivan", "John Smith")',
    "Phone numbers",
    "Email addresses",
    "Physical addresses (streets, cities, coordinates)",
    "ID numbers, account numbers, credit card numbers",
    "API keys, passwords and other credentials",
)

DEFAULT_EXCLUSIONS = (
    "Fictional character names (Harry Potter, Hermione, Frodo, etc.)",
    "Famous historical figures used in educational context",
    "Brand names or company names",
)

_PROMPT_TEMPLATE = """You are a PII (Personally Identifiable Information) detector for data protection.

WHAT TO DETECT:
{detect}

WHAT TO EXCLUDE:
{exclude}

Analyze this text and return any PII found. Copy each item's text exactly as it appears.

\"\"\"
{text}
\"\"\""""


def build_prompt(
    text: str,
    *,
    detect: Sequence[str] = DEFAULT_DETECT,
    exclusions: Sequence[str] = DEFAULT_EXCLUSIONS,
) -> str:
    """Render the detection prompt for one text window."""
    return _PROMPT_TEMPLATE.format(
        detect="\n".join(f"- {line}" for line in detect),
        exclude="\n".join(f"- {line}" for line in exclusions),
        text=text,
    )


def response_schema(categories: Sequence[str] = CATEGORIES) -> dict[str, Any]:
    """JSON schema for the structured ``{"piiItems": [...]}`` answer."""
    return {
        "type": "object",
        "properties": {
            "piiItems": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "text": {"type": "string", "description": "The exact PII text found"},
                        "type": {"type": "string", "enum": list(categories),
                                 "description": "Type of PII"},
                    },
                    "required": ["text", "type"],
                    "additionalProperties": False,
                },
            },
        },
        "required": ["piiItems"],
        "additionalProperties": False,
    }


@runtime_checkable
class PiiOracle(Protocol):
    """Anything that can flag PII phrases in a text window."""

    async def detect(self, text: str) -> list[PiiItem]: ...


class ClassifierAdapter:
    """Fail-soft front for a :class:`PiiOracle`.

    Blank windows never reach the oracle.  Items with empty text, or whose
    text is on the allow-list (case-insensitive), are dropped.
    """

    def __init__(self, oracle: PiiOracle, *, allow_list: Iterable[str] = ()) -> None:
        self.oracle = oracle
        self.allow_list = {a.lower() for a in allow_list}

    async def classify(self, text: str) -> list[PiiItem]:
        if not text.strip():
            return []
        try:
            items = await self.oracle.detect(text)
        except Exception:
            logger.warning(
                "PII detection failed for a %d-char window; treating as clean",
                len(text), exc_info=True,
            )
            return []
        return [
            item for item in items
            if item.text and item.text.lower() not in self.allow_list
        ]


class OpenAIOracle:
    """Hosted LLM oracle speaking the OpenAI chat completions API.

    Parameters
    ----------
    api_key:
        Bearer token.  May be ``None`` for local OpenAI-compatible servers.
    model:
        Model name; pinned to ``temperature=0`` for repeatable answers.
    base_url:
        API root, e.g. ``http://localhost:11434/v1`` for Ollama.
    timeout_s:
        Per-request timeout in seconds.
    client:
        Optional shared ``httpx.AsyncClient`` (tests inject a mock transport).
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = 30.0,
        categories: Sequence[str] = CATEGORIES,
        exclusions: Sequence[str] = DEFAULT_EXCLUSIONS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.categories = tuple(categories)
        self.exclusions = tuple(exclusions)
        self._client = client

    def _payload(self, text: str) -> dict[str, Any]:
        return {
            "model": self.model,
            "temperature": 0,
            "messages": [
                {"role": "user", "content": build_prompt(text, exclusions=self.exclusions)},
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": "pii_detection",
                    "strict": True,
                    "schema": response_schema(self.categories),
                },
            },
        }

    async def detect(self, text: str) -> list[PiiItem]:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        url = f"{self.base_url}/chat/completions"
        try:
            if self._client is not None:
                response = await self._client.post(
                    url, json=self._payload(text), headers=headers, timeout=self.timeout_s,
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                    response = await client.post(url, json=self._payload(text), headers=headers)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ClassifierTimeoutError(
                f"PII oracle timed out after {self.timeout_s}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise ClassifierConnectionError(f"PII oracle HTTP error: {exc}") from exc

        return parse_completion(response.json())


def parse_completion(data: Any) -> list[PiiItem]:
    """Extract PII items from a chat completions response body."""
    try:
        content = data["choices"][0]["message"]["content"]
        payload = json.loads(content)
        raw_items = payload["piiItems"]
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        raise ClassifierResponseError(f"Malformed PII oracle response: {exc}") from exc
    if not isinstance(raw_items, list):
        raise ClassifierResponseError("piiItems is not a list")

    items: list[PiiItem] = []
    for raw in raw_items:
        if not isinstance(raw, dict) or not isinstance(raw.get("text"), str):
            continue
        items.append(PiiItem(text=raw["text"], category=coerce_category(raw.get("type"))))
    return items


class PresidioOracle:
    """Local NER oracle; the blocking analyzer runs in a worker thread."""

    def __init__(
        self,
        *,
        language: str = "en",
        entities: list[str] | None = None,
        score_threshold: float = 0.35,
    ) -> None:
        self.language = language
        self.entities = entities
        self.score_threshold = score_threshold

    async def detect(self, text: str) -> list[PiiItem]:
        from .presidio_layer import scan_presidio
        return await asyncio.to_thread(
            scan_presidio,
            text,
            language=self.language,
            entities=self.entities,
            score_threshold=self.score_threshold,
        )


class RegexOracle:
    """Pattern-only oracle for structured PII.  Offline and deterministic."""

    async def detect(self, text: str) -> list[PiiItem]:
        return scan_regex(text)
