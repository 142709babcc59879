from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiohttp import WSMsgType, web

from .collaborators import EchoCompletion, HTTPCompletion, InMemoryBlobStore, TrustedAuthenticator
from .config import GatewayConfig
from .errors import NotFound
from .frames import PROTOCOL_VERSION, _error_frame
from .logging_utils import connection_id_ctx
from .messages import InMemoryMessageStore
from .router import EventRouter
from .sqlite_backend import SQLiteBackend
from .sqlite_messages import SQLiteMessageStore


logger = logging.getLogger(__name__)

OUTBOUND_QUEUE_SIZE = 1000


class Runtime:
    def __init__(self, *, router: EventRouter, backend: SQLiteBackend | None = None) -> None:
        self.router = router
        self.backend = backend


RUNTIME_KEY = web.AppKey("runtime", Runtime)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_blob(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    blobs = runtime.router.blobs
    if not isinstance(blobs, InMemoryBlobStore):
        raise web.HTTPNotFound()
    try:
        content_type, data = blobs.fetch(f"blob://{request.match_info['digest']}")
    except NotFound:
        raise web.HTTPNotFound()
    return web.Response(body=data, content_type=content_type)


def create_app(
    *,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    db_path: str | None = None,
    auth=None,
    blobs=None,
    completion=None,
    bot_user_id: str | None = None,
    history_page_size: int = 200,
    max_body_chars: int = 4000,
) -> web.Application:
    backend: SQLiteBackend | None = None
    if db_path is not None:
        backend = SQLiteBackend(db_path)
        store = SQLiteMessageStore(backend)
    else:
        store = InMemoryMessageStore()

    if bot_user_id is not None and completion is None:
        completion = EchoCompletion()
    router = EventRouter(
        store=store,
        auth=auth or TrustedAuthenticator(),
        blobs=blobs if blobs is not None else InMemoryBlobStore(),
        completion=completion,
        bot_user_id=bot_user_id,
        history_page_size=history_page_size,
        max_body_chars=max_body_chars,
    )
    app = web.Application()
    app[RUNTIME_KEY] = Runtime(router=router, backend=backend)
    app[WS_CONFIG_KEY] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/blobs/{digest}", handle_blob)
    app.router.add_get("/v1/ws", websocket_handler)
    if backend is not None:
        async def close_db(_: web.Application) -> None:
            backend.close()

        app.on_cleanup.append(close_db)

    close_completion = getattr(completion, "close", None)
    if close_completion is not None:
        async def close_completion_client(_: web.Application) -> None:
            await close_completion()

        app.on_cleanup.append(close_completion_client)
    return app


def create_app_from_config(config: GatewayConfig, *, auth=None) -> web.Application:
    completion = None
    if config.bot_user_id is not None and config.completion_url is not None:
        completion = HTTPCompletion(
            config.completion_url,
            config.completion_model,
            api_key=config.completion_api_key,
        )
    return create_app(
        ping_interval_s=config.ping_interval_s,
        ping_miss_limit=config.ping_miss_limit,
        max_msg_size=config.max_msg_size,
        db_path=config.db_path,
        auth=auth,
        completion=completion,
        bot_user_id=config.bot_user_id,
        history_page_size=config.history_page_size,
        max_body_chars=config.max_body_chars,
    )


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    ws_config: dict[str, Any] = request.app[WS_CONFIG_KEY]
    router = runtime.router

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    last_activity = asyncio.get_running_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=OUTBOUND_QUEUE_SIZE)
    closed = False
    close_tasks: set[asyncio.Task] = set()

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_running_loop().time()
        missed_heartbeats = 0

    def enqueue_frame(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("outbound queue full, closing", extra={"connection_id": connection.connection_id})
            task = asyncio.create_task(close_with_error("backpressure"))
            close_tasks.add(task)
            task.add_done_callback(close_tasks.discard)

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                if ws.closed:
                    continue
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                now = asyncio.get_running_loop().time()
                if now - last_activity >= ws_config["ping_interval_s"]:
                    enqueue_frame({"v": PROTOCOL_VERSION, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    connection = router.connect(enqueue_frame)
    ctx_token = connection_id_ctx.set(connection.connection_id)
    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())
    logger.info("connection opened", extra={"remote": request.remote})

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    enqueue_frame(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict):
                    enqueue_frame(_error_frame("invalid_request", "frame must be an object"))
                    continue

                mark_activity()
                if frame.get("v") != PROTOCOL_VERSION:
                    enqueue_frame(_error_frame("invalid_request", "unsupported version", request_id=frame.get("id")))
                    continue

                frame_type = frame.get("t")
                if frame_type == "ping":
                    enqueue_frame({"v": PROTOCOL_VERSION, "t": "pong", "id": frame.get("id")})
                elif frame_type == "pong":
                    continue
                else:
                    # an event already in flight finishes even if the socket drops meanwhile
                    await asyncio.shield(router.handle(connection, frame))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        router.disconnect(connection)
        heartbeat_task.cancel()
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, *close_tasks, return_exceptions=True)
        logger.info("connection finished", extra={"user_id": connection.user_id})
        connection_id_ctx.reset(ctx_token)

    return ws
