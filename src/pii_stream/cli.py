"""CLI interface for pii-stream.

Usage:
    # Stream stdin through the detector, one downstream event per line
    echo 'My email is a@b.com.' | python -m pii_stream.cli --backend regex scan

    # Print the text with detected PII masked
    cat reply.txt | python -m pii_stream.cli scan --mask

    # Ask the model, detect PII in its answer, store the result
    python -m pii_stream.cli chat --conversation-id <id> "Introduce yourself"

    # Inspect stored messages
    python -m pii_stream.cli messages --conversation-id <id>
"""

from __future__ import annotations
import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any

from .config import create_interposer, load_config, load_from_yaml
from .generation import fragment_stream, stream_chat_completion
from .log import setup_logging
from .ranges import mask_text
from .store_sqlite import SqliteMessageStore


DEFAULT_DB = os.environ.get(
    "PII_STREAM_DB",
    str(Path.home() / ".pii-stream" / "messages.db"),
)


def _build_config(args: argparse.Namespace) -> dict[str, Any]:
    cfg = load_from_yaml(args.config) if args.config else load_config({})
    if args.backend:
        cfg = {**cfg, "backend": args.backend}
    return cfg


async def _drain(interposer: Any, upstream: Any, *, conversation_id: str | None = None,
                 emit: bool = True) -> None:
    async for event in interposer.run(upstream, conversation_id=conversation_id):
        if emit:
            json.dump(event, sys.stdout, ensure_ascii=False)
            sys.stdout.write("\n")
            sys.stdout.flush()


def cmd_scan(args: argparse.Namespace) -> None:
    """Run stdin through the detector as if it were a streamed reply."""
    interposer = create_interposer(_build_config(args))
    text = sys.stdin.read()
    asyncio.run(_drain(
        interposer, fragment_stream(text, args.fragment_size), emit=not args.mask,
    ))
    if args.mask:
        sys.stdout.write(mask_text(text, interposer.last_ranges))


def cmd_chat(args: argparse.Namespace) -> None:
    """Send a prompt to the model and stream the checked reply."""
    cfg = _build_config(args)
    store = SqliteMessageStore(db_path=args.db)
    conversation_id = args.conversation_id or store.create_conversation(args.user_id)
    store.save_message(conversation_id, "user", args.prompt, user_id=args.user_id)
    store.update_title(conversation_id, args.prompt)

    upstream = stream_chat_completion(
        [{"role": "user", "content": args.prompt}],
        model=args.model,
        base_url=cfg["base_url"],
        api_key=os.environ.get(cfg["api_key_env"]),
    )
    interposer = create_interposer(cfg, store=store)
    try:
        asyncio.run(_drain(interposer, upstream, conversation_id=conversation_id))
    finally:
        store.close()
    sys.stderr.write(f"conversation {conversation_id}\n")


def cmd_messages(args: argparse.Namespace) -> None:
    """Dump stored messages of a conversation as JSON."""
    store = SqliteMessageStore(db_path=args.db)
    messages = store.list_messages(args.conversation_id)
    json.dump(
        [
            {
                "id": m.id,
                "role": m.role,
                "content": mask_text(m.content, m.pii_ranges) if args.mask else m.content,
                "piiRanges": [r.to_dict() for r in m.pii_ranges],
                "createdAt": m.created_at,
            }
            for m in messages
        ],
        sys.stdout, indent=2, ensure_ascii=False,
    )
    sys.stdout.write("\n")
    store.close()


def cmd_conversations(args: argparse.Namespace) -> None:
    """List conversations, most recently updated first."""
    store = SqliteMessageStore(db_path=args.db)
    convs = store.list_conversations(args.user_id)
    json.dump(
        [{"id": c.id, "title": c.title, "updatedAt": c.updated_at} for c in convs],
        sys.stdout, indent=2, ensure_ascii=False,
    )
    sys.stdout.write("\n")
    store.close()


def cmd_clear(args: argparse.Namespace) -> None:
    """Delete a conversation and its messages."""
    store = SqliteMessageStore(db_path=args.db)
    store.delete_conversation(args.conversation_id)
    sys.stderr.write(f"Cleared conversation {args.conversation_id}\n")
    store.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pii-stream",
        description="Streaming PII detection for LLM responses",
    )
    parser.add_argument("--db", default=DEFAULT_DB, help="SQLite message store path")
    parser.add_argument("--config", default=None, help="YAML config file")
    parser.add_argument("--backend", choices=("openai", "presidio", "regex"), default=None,
                        help="Detection backend (overrides config)")
    parser.add_argument("--log-level", default=os.environ.get("PII_STREAM_LOG_LEVEL", "WARNING"))

    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Stream stdin through the detector")
    scan.add_argument("--fragment-size", type=int, default=16, help="Characters per simulated delta")
    scan.add_argument("--mask", action="store_true", help="Print masked text instead of events")

    chat = sub.add_parser("chat", help="Ask the model and detect PII in the reply")
    chat.add_argument("prompt")
    chat.add_argument("--conversation-id", default=None)
    chat.add_argument("--user-id", default=None)
    chat.add_argument("--model", default="gpt-4.1-mini")

    messages = sub.add_parser("messages", help="Dump a conversation's messages")
    messages.add_argument("--conversation-id", required=True)
    messages.add_argument("--mask", action="store_true", help="Mask stored PII ranges")

    convs = sub.add_parser("conversations", help="List conversations")
    convs.add_argument("--user-id", default=None)

    clear = sub.add_parser("clear", help="Delete a conversation")
    clear.add_argument("--conversation-id", required=True)
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    cmds = {
        "scan": cmd_scan,
        "chat": cmd_chat,
        "messages": cmd_messages,
        "conversations": cmd_conversations,
        "clear": cmd_clear,
    }
    cmds[args.command](args)


if __name__ == "__main__":
    main()
