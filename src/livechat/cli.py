"""Command line entry points: run the desk, chat from a console, or simulate the state machine."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, TextIO

from aiohttp import web

from .client import LiveChatClient
from .config import ChatConfig, DeskConfig
from .desk import create_app
from .identity import CustomerIdentity, IdentityNotReady, load_identity
from .session import (
    ChatState,
    Connected,
    Connecting,
    Disconnected,
    Effect,
    EndChat,
    Inbound,
    InitFailed,
    InitSucceeded,
    Input,
    Notice,
    Reset,
    ResolveFailed,
    ResolveSucceeded,
    SendText,
    Typed,
    TypingIdle,
    transition,
)

logger = logging.getLogger(__name__)


def event_from_dict(data: Dict[str, Any], index: int = 0) -> Input:
    """Translate one JSON object from a simulation script into a state machine input."""

    kind = data.get("type")
    if kind == "connecting":
        return Connecting()
    if kind == "connected":
        return Connected()
    if kind == "disconnected":
        return Disconnected(str(data.get("reason", "")))
    if kind == "init_succeeded":
        return InitSucceeded(str(data["conversationId"]), tuple(data.get("initialMessages") or ()))
    if kind == "init_failed":
        return InitFailed(str(data.get("error", "")))
    if kind == "inbound":
        return Inbound(str(data["t"]), dict(data.get("body") or {}))
    if kind == "send":
        return SendText(str(data.get("text", "")), str(data.get("localId", f"local-{index}")))
    if kind == "typed":
        return Typed()
    if kind == "typing_idle":
        return TypingIdle()
    if kind == "end":
        return EndChat()
    if kind == "resolve_succeeded":
        return ResolveSucceeded(str(data["conversationId"]))
    if kind == "resolve_failed":
        return ResolveFailed(str(data["conversationId"]), str(data.get("error", "")))
    if kind == "reset":
        return Reset()
    raise ValueError(f"unsupported event type: {kind}")


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return {key: _jsonable(item) for key, item in asdict(value).items()}
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def effect_to_dict(effect: Effect) -> Dict[str, Any]:
    return {"effect": type(effect).__name__, **_jsonable(effect)}


def simulate(events: Iterable[Dict[str, Any]], identity: CustomerIdentity | None, output: TextIO) -> ChatState:
    """Run scripted inputs through the state machine, writing effects as JSON lines."""

    state = ChatState()
    for index, raw in enumerate(events):
        state, effects = transition(state, event_from_dict(raw, index), identity)
        for effect in effects:
            output.write(json.dumps(effect_to_dict(effect)) + "\n")
    output.write(
        json.dumps(
            {
                "state": {
                    "phase": state.phase.value,
                    "conversationId": state.conversation_id,
                    "connection": state.connection.value,
                    "messages": len(state.messages),
                    "agentTyping": state.agent_typing,
                }
            }
        )
        + "\n"
    )
    return state


def _load_events(handle: TextIO) -> List[Dict[str, Any]]:
    content = handle.read()
    if not content.strip():
        return []
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None
    if parsed is None:
        return [json.loads(line) for line in content.splitlines() if line.strip()]
    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _identity_from_args(args: argparse.Namespace) -> CustomerIdentity:
    if args.identity:
        return load_identity(args.identity)
    if args.user_id is None or not args.name:
        raise IdentityNotReady("pass --identity or both --user-id and --name")
    return CustomerIdentity(user_id=args.user_id, name=args.name, email=args.email or "", phone=args.phone)


def _config_from_args(args: argparse.Namespace) -> ChatConfig:
    config = ChatConfig.from_env()
    if args.base_url:
        config.base_url = args.base_url
    if args.typing_idle is not None:
        config.typing_idle_s = args.typing_idle
    return config


def _render_notice(notice: Notice, output: TextIO) -> None:
    output.write(f"* {notice.kind} {notice.detail}".rstrip() + "\n")


async def _chat_console(client: LiveChatClient, lines: TextIO) -> None:
    loop = asyncio.get_running_loop()
    await client.open()
    while True:
        line = await loop.run_in_executor(None, lines.readline)
        if not line:
            break
        text = line.rstrip("\n")
        if text == "/quit":
            break
        if text == "/end":
            await client.end_chat()
            continue
        await client.send_message(text)


def _run_chat(args: argparse.Namespace, output: TextIO) -> int:
    try:
        identity = _identity_from_args(args)
    except IdentityNotReady as exc:
        output.write(f"error: {exc}\n")
        return 2
    config = _config_from_args(args)
    logger.info("chatting with %s as customer %s", config.base_url, identity.user_id)
    seen = {"count": 0}

    def on_change(state: ChatState) -> None:
        for message in state.messages[seen["count"] :]:
            if message.is_remote:
                output.write(f"[{message.display_time}] agent: {message.text}\n")
        seen["count"] = len(state.messages)
        output.flush()

    async def run() -> None:
        client = LiveChatClient(
            identity,
            config,
            on_change=on_change,
            on_notice=lambda notice: _render_notice(notice, output),
        )
        try:
            await _chat_console(client, sys.stdin)
        finally:
            await client.close()

    asyncio.run(run())
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    app = create_app(DeskConfig(ping_interval_s=args.ping_interval))
    web.run_app(app, host=args.host, port=args.port)
    return 0


def _run_simulate(args: argparse.Namespace, output: TextIO) -> int:
    identity = None
    if args.user_id is not None and args.name:
        identity = CustomerIdentity(user_id=args.user_id, name=args.name)
    try:
        events = _load_events(args.file or sys.stdin)
    finally:
        if args.file is not None:
            args.file.close()
    simulate(events, identity, output)
    return 0


def _user_id(raw: str) -> int | str:
    return int(raw) if raw.isdigit() else raw


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Live support chat")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the in-memory support desk")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=5000, help="Port to bind")
    serve_parser.add_argument("--ping-interval", type=int, default=30, help="Seconds between heartbeat pings")

    chat_parser = subparsers.add_parser("chat", help="Chat with support from the console")
    chat_parser.add_argument("--base-url", default=None, help="Desk base URL (default: LIVECHAT_BASE_URL)")
    chat_parser.add_argument("--identity", default=None, help="Path to a JSON identity profile")
    chat_parser.add_argument("--user-id", type=_user_id, default=None)
    chat_parser.add_argument("--name", default=None)
    chat_parser.add_argument("--email", default=None)
    chat_parser.add_argument("--phone", default=None)
    chat_parser.add_argument("--typing-idle", type=float, default=None, help="Seconds before stop_typing is sent")

    simulate_parser = subparsers.add_parser("simulate", help="Run scripted inputs through the session state machine")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON events file; defaults to stdin",
    )
    simulate_parser.add_argument("--user-id", type=_user_id, default=None)
    simulate_parser.add_argument("--name", default=None)
    return parser


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    stream = output or sys.stdout

    if args.command == "serve":
        return _run_serve(args)
    if args.command == "chat":
        return _run_chat(args, stream)
    return _run_simulate(args, stream)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
