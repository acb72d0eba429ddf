"""HTTP sidecar server for pii-stream.

A lightweight stdlib HTTP server on localhost for callers that are not
written in Python.

Endpoints:
    GET  /health                         — Health check
    POST /detect                         — Detect PII in text (JSON body)
    GET  /messages?conversation_id=...   — Stored messages of a conversation

POST /detect body: {"text": "...", "fragment_size": 16}
Response:         {"chunks": [{"start", "end", "isPii"}...], "masked": "..."}
"""

from __future__ import annotations
import asyncio
import json
import logging
import os
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

from .config import create_interposer, load_config
from .generation import fragment_stream
from .log import setup_logging
from .ranges import mask_text
from .store_sqlite import SqliteMessageStore

logger = logging.getLogger(__name__)

DEFAULT_PORT = int(os.environ.get("PII_STREAM_PORT", "18792"))
DEFAULT_DB = os.environ.get(
    "PII_STREAM_DB",
    str(Path.home() / ".pii-stream" / "messages.db"),
)

# Shared state
_config: dict[str, Any] | None = None
_store: SqliteMessageStore | None = None


def _get_config() -> dict[str, Any]:
    global _config
    if _config is None:
        _config = load_config({"backend": os.environ.get("PII_STREAM_BACKEND", "openai")})
    return _config


def _get_store() -> SqliteMessageStore:
    global _store
    if _store is None:
        _store = SqliteMessageStore(db_path=DEFAULT_DB)
    return _store


def detect_text(text: str, fragment_size: int = 16) -> dict[str, Any]:
    """Run ``text`` through a fresh interposer and return its final ranges."""
    interposer = create_interposer(_get_config())

    async def _run() -> None:
        async for _ in interposer.run(fragment_stream(text, fragment_size)):
            pass

    asyncio.run(_run())
    ranges = interposer.last_ranges
    return {
        "chunks": [r.to_dict() for r in ranges],
        "masked": mask_text(text, ranges),
    }


class PiiStreamHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the pii-stream sidecar."""

    def _read_json(self) -> dict[str, Any]:
        length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(length).decode("utf-8")
        return json.loads(body) if body else {}

    def _respond(self, status: int, data: Any) -> None:
        body = json.dumps(data, ensure_ascii=False).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("%s " + format, self.address_string(), *args)

    def do_GET(self) -> None:
        url = urlparse(self.path)
        if url.path == "/health":
            self._respond(200, {"status": "ok", "backend": _get_config()["backend"]})
        elif url.path == "/messages":
            conv_ids = parse_qs(url.query).get("conversation_id")
            if not conv_ids:
                self._respond(400, {"error": "conversation_id is required"})
                return
            messages = _get_store().list_messages(conv_ids[0])
            self._respond(200, {"messages": [
                {
                    "id": m.id,
                    "role": m.role,
                    "content": m.content,
                    "piiRanges": [r.to_dict() for r in m.pii_ranges],
                }
                for m in messages
            ]})
        else:
            self._respond(404, {"error": "not found"})

    def do_POST(self) -> None:
        try:
            if self.path != "/detect":
                self._respond(404, {"error": "not found"})
                return
            body = self._read_json()
            text = body.get("text", "")
            if not isinstance(text, str):
                self._respond(400, {"error": "text must be a string"})
                return
            self._respond(200, detect_text(text, int(body.get("fragment_size", 16))))
        except (ValueError, TypeError) as e:
            self._respond(400, {"error": str(e)})
        except Exception as e:
            logger.exception("Request failed")
            self._respond(500, {"error": str(e)})


def serve(port: int = DEFAULT_PORT) -> None:
    """Start the pii-stream HTTP sidecar."""
    setup_logging(os.environ.get("PII_STREAM_LOG_LEVEL", "INFO"))
    server = HTTPServer(("127.0.0.1", port), PiiStreamHandler)
    logger.info("pii-stream sidecar listening on http://127.0.0.1:%d (backend: %s)",
                port, _get_config()["backend"])
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        server.shutdown()


if __name__ == "__main__":
    import argparse
    parser = argparse.ArgumentParser(description="pii-stream HTTP sidecar")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    args = parser.parse_args()
    serve(port=args.port)
