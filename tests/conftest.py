import asyncio
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from pii_stream.types import PiiItem


class StubOracle:
    """Flags fixed phrases; records every window it was asked about."""

    def __init__(self, phrases=(), *, only_present=True, error=None):
        self.phrases = list(phrases)          # [(text, category), ...]
        self.only_present = only_present
        self.error = error
        self.calls: list[str] = []

    async def detect(self, text):
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return [
            PiiItem(phrase, category)
            for phrase, category in self.phrases
            if not self.only_present or phrase.lower() in text.lower()
        ]


class GatedOracle(StubOracle):
    """StubOracle whose answers wait until the test opens a gate.

    ``gates`` maps a marker substring to an ``asyncio.Event``; a window
    containing the marker blocks until that event is set.
    """

    def __init__(self, phrases=(), gates=None):
        super().__init__(phrases)
        self.gates: dict[str, asyncio.Event] = gates or {}

    async def detect(self, text):
        for marker, gate in self.gates.items():
            if marker in text:
                await gate.wait()
        return await super().detect(text)


async def collect(agen):
    return [event async for event in agen]


async def events_from(items):
    for item in items:
        await asyncio.sleep(0)
        yield item
