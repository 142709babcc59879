"""gramX command line: run the websocket gateway or replay frames offline."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import replace
from typing import Iterable, TextIO

from aiohttp import web

from .collaborators import EchoCompletion, PasswordAuthenticator, TrustedAuthenticator
from .config import GatewayConfig, load_config_from_env
from .connection import Connection, ConnectionState
from .logging_utils import setup_logging
from .messages import InMemoryMessageStore
from .router import EventRouter
from .ws_transport import create_app_from_config


async def _simulate(frames: Iterable[dict], output: TextIO, *, bot_user_id: str | None = None) -> None:
    router = EventRouter(
        store=InMemoryMessageStore(),
        auth=TrustedAuthenticator(),
        completion=EchoCompletion() if bot_user_id else None,
        bot_user_id=bot_user_id,
    )
    connections: dict[str, Connection] = {}

    def connection_for(name: str) -> Connection:
        connection = connections.get(name)
        if connection is None or connection.state is ConnectionState.CLOSED:
            def _write(frame: dict, conn_name: str = name) -> None:
                output.write(json.dumps({"conn": conn_name, "frame": frame}, ensure_ascii=False) + "\n")

            connection = router.connect(_write)
            connections[name] = connection
        return connection

    for frame in frames:
        name = frame.get("conn")
        if not isinstance(name, str) or not name:
            raise ValueError("every frame needs a conn name")
        connection = connection_for(name)
        if frame.get("t") == "disconnect":
            router.disconnect(connection)
            continue
        await router.handle(connection, {"v": 1, "t": frame.get("t"), "id": frame.get("id"), "body": frame.get("body")})


def simulate(frames: Iterable[dict], output: TextIO, *, bot_user_id: str | None = None) -> None:
    """Run frames through an in-memory router and write every outbound frame as NDJSON."""

    asyncio.run(_simulate(frames, output, bot_user_id=bot_user_id))


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _load_password_auth(handle: TextIO) -> PasswordAuthenticator:
    users = json.load(handle)
    if not isinstance(users, dict):
        raise ValueError("users file must map usernames to passwords")
    auth = PasswordAuthenticator()
    for username, password in users.items():
        auth.register(username, password)
    return auth


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output, bot_user_id=args.bot_user)
    return 0


def _config_from_args(args: argparse.Namespace) -> GatewayConfig:
    config = load_config_from_env()
    overrides = {
        "host": args.host,
        "port": args.port,
        "db_path": args.db,
        "ping_interval_s": args.ping_interval,
        "bot_user_id": args.bot_user,
        "log_level": args.log_level.upper() if args.log_level else None,
    }
    return replace(config, **{key: value for key, value in overrides.items() if value is not None})


def _run_serve(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    setup_logging(config.log_level, json_lines=config.log_json)
    auth = _load_password_auth(args.users_file) if args.users_file else TrustedAuthenticator()
    app = create_app_from_config(config, auth=auth)
    web.run_app(app, host=config.host, port=config.port, print=None)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(prog="gramx", description="gramX chat gateway")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay JSON frames through an in-memory router")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )
    simulate_parser.add_argument("--bot-user", default=None, help="User id answered by the echo completion")

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp gateway server")
    serve_parser.add_argument("--host", default=None, help="Host to bind (GRAMX_HOST)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind (GRAMX_PORT)")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=None,
        help="Seconds between heartbeat pings (GRAMX_PING_INTERVAL_S)",
    )
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")
    serve_parser.add_argument("--bot-user", default=None, help="User id answered by the completion backend")
    serve_parser.add_argument(
        "--users-file",
        type=argparse.FileType("r"),
        default=None,
        help="JSON object of username -> password; enables password login",
    )
    serve_parser.add_argument("--log-level", default=None, help="Root log level (GRAMX_LOG_LEVEL)")

    args = parser.parse_args(argv)

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
