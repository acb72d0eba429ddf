"""Exception hierarchy."""

from __future__ import annotations


class PiiStreamError(Exception):
    """Base class for all pii-stream errors."""


class ClassifierError(PiiStreamError):
    """The PII oracle could not produce a usable answer."""


class ClassifierTimeoutError(ClassifierError, TimeoutError):
    """The oracle request exceeded the configured timeout."""


class ClassifierConnectionError(ClassifierError, ConnectionError):
    """The oracle was unreachable or answered with an HTTP error."""


class ClassifierResponseError(ClassifierError):
    """The oracle answered, but not in the expected shape."""


class BufferClosedError(PiiStreamError, RuntimeError):
    """Text was added to a buffer after ``finish()``."""


class GenerationError(PiiStreamError):
    """The upstream generation stream failed."""
