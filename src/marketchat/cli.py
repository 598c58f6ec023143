"""Command line entry points: the development server and a frame-driven simulation."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Iterable, TextIO

from aiohttp import web

from .backend import AuthUser
from .client import MessagingClient
from .config import SyncConfig
from .errors import AccountRestricted, BackendError
from .local import DEFAULT_PUBLIC_URL_BASE, Datastore, LocalBackend
from .notifications import HeadlessPlatform
from .policy import OwnerPolicy
from .server import create_app

logger = logging.getLogger(__name__)


class Simulation:
    """Several signed-in clients over one in-memory datastore."""

    def __init__(self, output: TextIO, config: SyncConfig | None = None) -> None:
        self.output = output
        self.config = config or SyncConfig(reconcile_interval_seconds=0)
        self.datastore = Datastore.in_memory(
            policy=OwnerPolicy(), public_url_base=self.config.public_url_base or DEFAULT_PUBLIC_URL_BASE
        )
        self.clients: Dict[str, MessagingClient] = {}
        self.backends: Dict[str, LocalBackend] = {}

    def emit(self, message: dict[str, Any]) -> None:
        self.output.write(json.dumps(message, sort_keys=True) + "\n")

    def client(self, user_id: str) -> MessagingClient:
        client = self.clients.get(user_id)
        if client is None:
            raise ValueError(f"user {user_id} is not signed in")
        return client

    async def settle(self) -> None:
        for client in list(self.clients.values()):
            await client.settle()
        for client in list(self.clients.values()):
            await client.settle()

    async def sign_in(self, frame: dict[str, Any]) -> None:
        user_id = frame["user_id"]
        backend = self.backends.get(user_id)
        if backend is None:
            backend = LocalBackend(self.datastore)
            self.backends[user_id] = backend
            client = MessagingClient(backend, config=self.config, platform=HeadlessPlatform())
            self.clients[user_id] = client
            await client.start()
        backend.sign_in(AuthUser(id=user_id, email=frame.get("email"), metadata=frame.get("metadata") or {}))

    async def sign_out(self, frame: dict[str, Any]) -> None:
        user_id = frame["user_id"]
        client = self.clients.pop(user_id, None)
        backend = self.backends.pop(user_id, None)
        if backend is not None:
            backend.sign_out()
        if client is not None:
            await client.close()

    def state(self, user_id: str) -> dict[str, Any]:
        client = self.client(user_id)
        conversation = client.conversation
        messages = []
        if conversation is not None:
            messages = [
                {"id": m.id, "from": m.sender_id, "to": m.recipient_id, "content": m.content, "is_read": m.is_read}
                for m in conversation.messages
            ]
        return {
            "t": "state",
            "user_id": user_id,
            "unread": client.unread.unread_counts,
            "total": client.unread.total_unread_count,
            "archived": client.archive.archived_ids,
            "conversation": conversation.counterpart_id if conversation is not None else None,
            "messages": messages,
            "notices": [notice.title for notice in client.notices.history],
        }

    async def apply(self, frame: dict[str, Any]) -> None:
        frame_type = frame.get("t")
        if frame_type == "sign_in":
            await self.sign_in(frame)
        elif frame_type == "sign_out":
            await self.sign_out(frame)
        elif frame_type == "send":
            await self.client(frame["from"]).send_message(frame["to"], frame.get("content"))
        elif frame_type == "open":
            await self.client(frame["user_id"]).open_conversation(frame["with"])
        elif frame_type == "close":
            await self.client(frame["user_id"]).close_conversation()
        elif frame_type == "read":
            conversation = self.client(frame["user_id"]).conversation
            if conversation is None:
                raise ValueError("no open conversation")
            await conversation.mark_as_read()
        elif frame_type == "archive":
            await self.client(frame["user_id"]).archive.archive(frame["with"])
        elif frame_type == "unarchive":
            await self.client(frame["user_id"]).archive.unarchive(frame["with"])
        elif frame_type == "state":
            await self.settle()
            self.emit(self.state(frame["user_id"]))
            return
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")
        await self.settle()

    async def run(self, frames: Iterable[dict]) -> None:
        try:
            for frame in frames:
                try:
                    await self.apply(frame)
                except (BackendError, AccountRestricted) as exc:
                    code = getattr(exc, "code", "restricted")
                    self.emit({"t": "error", "frame": frame.get("t"), "code": code, "message": str(exc)})
                except (KeyError, ValueError) as exc:
                    self.emit({"t": "error", "frame": frame.get("t"), "code": "invalid_frame", "message": str(exc)})
        finally:
            for client in list(self.clients.values()):
                await client.close()
            self.datastore.close()


def simulate(frames: Iterable[dict], output: TextIO, config: SyncConfig | None = None) -> None:
    """Run JSON frames against an in-memory datastore and write state lines."""

    asyncio.run(Simulation(output, config).run(frames))


def _load_frames(handle: TextIO) -> Iterable[dict]:
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


def _run_simulation(args: argparse.Namespace, output: TextIO, config: SyncConfig) -> int:
    handle = args.file or sys.stdin
    try:
        frames = _load_frames(handle)
    finally:
        if handle is not sys.stdin:
            handle.close()
    simulate(frames, output, config)
    return 0


def _run_serve(args: argparse.Namespace, config: SyncConfig) -> int:
    public_url_base = config.public_url_base or f"http://{args.host}:{args.port}/v1/storage"
    app = create_app(ping_interval_s=args.ping_interval, db_path=args.db, public_url_base=public_url_base)
    logger.info("serving on %s:%s (db=%s)", args.host, args.port, args.db or "memory")
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]
    config = SyncConfig.from_env()

    parser = argparse.ArgumentParser(description="Marketplace messaging sync tools")
    parser.add_argument("--log-level", default="WARNING", help="Logging level, e.g. INFO or DEBUG")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay JSON frames against an in-memory datastore")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp development server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=config.ping_interval_s,
        help="Seconds between heartbeat pings",
    )
    serve_parser.add_argument("--db", type=str, default=config.db_path, help="Path to SQLite database for durability")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout, config)
    return _run_serve(args, config)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
