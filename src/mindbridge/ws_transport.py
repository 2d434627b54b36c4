from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Type

from aiohttp import WSMsgType, web

from .circles import SQLiteCircleStore
from .community import CommunityService
from .config import ServerConfig
from .conversations import ConversationAggregator
from .dispatch import Dispatcher
from .entries import SQLiteEntryStore
from .errors import Conflict, InvalidRequest, MindBridgeError, NotFound, TransientStoreError, Unauthorized
from .messages import SQLiteMessageStore
from .models import _now_ms
from .notifications import SQLiteNotificationStore
from .policy import Policy
from .posts import SQLitePostStore
from .presence import Connection, PresenceRegistry
from .profiles import SQLiteProfileStore
from .questions import SQLiteQuestionStore
from .sqlite_backend import SQLiteBackend
from .visibility import VisibilityResolver


logger = logging.getLogger(__name__)


class Runtime:
    """Everything a request handler needs, wired once per application."""

    def __init__(
        self,
        *,
        backend: SQLiteBackend,
        presence: PresenceRegistry,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.backend = backend
        self.presence = presence
        self.profiles = SQLiteProfileStore(backend, now_func=now_func)
        self.entries = SQLiteEntryStore(backend, now_func=now_func)
        self.circles = SQLiteCircleStore(backend, now_func=now_func)
        self.posts = SQLitePostStore(backend, now_func=now_func)
        self.questions = SQLiteQuestionStore(backend, now_func=now_func)
        self.messages = SQLiteMessageStore(backend, now_func=now_func)
        self.notifications = SQLiteNotificationStore(backend, now_func=now_func)
        self.dispatcher = Dispatcher(presence, self.notifications)
        self.resolver = VisibilityResolver(self.circles, self.entries)
        self.policy = Policy(self.circles, self.resolver)
        self.conversations = ConversationAggregator(self.messages, self.profiles)
        self.community = CommunityService(
            profiles=self.profiles,
            entries=self.entries,
            circles=self.circles,
            posts=self.posts,
            questions=self.questions,
            messages=self.messages,
            resolver=self.resolver,
            policy=self.policy,
            dispatcher=self.dispatcher,
        )


RUNTIME_KEY = web.AppKey("runtime", Runtime)
CONFIG_KEY = web.AppKey("config", ServerConfig)

_ERROR_STATUS: Dict[Type[MindBridgeError], int] = {
    InvalidRequest: 400,
    Unauthorized: 403,
    NotFound: 404,
    Conflict: 409,
    TransientStoreError: 503,
}


def error_response(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _status_for(exc: MindBridgeError) -> int:
    for exc_type, status in _ERROR_STATUS.items():
        if isinstance(exc, exc_type):
            return status
    return 500


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except MindBridgeError as exc:
        status = _status_for(exc)
        if status >= 500:
            logger.warning("%s %s failed: %s", request.method, request.path, exc)
        return error_response(exc.code, str(exc), status)
    except ValueError as exc:
        return error_response(InvalidRequest.code, str(exc), 400)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def create_app(
    config: ServerConfig | None = None,
    *,
    presence: PresenceRegistry | None = None,
    now_func: Callable[[], int] = _now_ms,
) -> web.Application:
    from .http_routes import register_routes

    config = config or ServerConfig()
    backend = SQLiteBackend(config.db_path)
    if presence is None:
        presence = PresenceRegistry()
    runtime = Runtime(backend=backend, presence=presence, now_func=now_func)

    app = web.Application(middlewares=[error_middleware], client_max_size=config.max_msg_size)
    app[RUNTIME_KEY] = runtime
    app[CONFIG_KEY] = config
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/ws", websocket_handler)
    register_routes(app)

    async def start_presence(_: web.Application) -> None:
        presence.start()

    async def stop_presence(_: web.Application) -> None:
        presence.clear()

    async def close_db(_: web.Application) -> None:
        backend.close()

    app.on_startup.append(start_presence)
    app.on_cleanup.append(stop_presence)
    app.on_cleanup.append(close_db)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


async def _handle_frame(runtime: Runtime, user_id: str, frame_type: str, body: dict) -> dict[str, Any]:
    community = runtime.community
    if frame_type == "message.send":
        message, delivered = await community.send_message(user_id, body.get("receiver_id"), body.get("text"))
        return {"t": "message.sent", "body": {"message": message.to_api_dict(), "delivered": delivered}}
    if frame_type == "notification.send":
        notification = await community.send_notification(
            user_id, body.get("receiver_id"), body.get("type"), body.get("message") or ""
        )
        return {"t": "notification.sent", "body": notification.to_api_dict()}
    raise InvalidRequest("unknown frame type")


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    config = request.app[CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=config.max_msg_size)
    await ws.prepare(request)

    loop = asyncio.get_running_loop()
    last_activity = loop.time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=config.outbound_queue_size)
    connection: Connection | None = None
    closed = False
    closers: set[asyncio.Task] = set()

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = loop.time()
        missed_heartbeats = 0

    def enqueue_event(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            task = asyncio.create_task(close_with_error("backpressure"))
            closers.add(task)
            task.add_done_callback(closers.discard)

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            logger.debug("ws: peer went away with frames still queued")

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(config.ping_interval_s)
                if ws.closed:
                    return
                if loop.time() - last_activity >= config.ping_interval_s:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > config.ping_miss_limit:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except ValueError:
            await ws.close(code=1002, message=b"invalid json")
            return ws

        if payload.get("v") != 1:
            await ws.send_json(_error_frame("invalid_request", "unsupported version", request_id=payload.get("id")))
            await ws.close()
            return ws

        body = payload.get("body") or {}
        if payload.get("t") != "session.start":
            await ws.send_json(
                _error_frame("invalid_request", "first frame must start session", request_id=payload.get("id"))
            )
            await ws.close()
            return ws

        user_id = body.get("user_id")
        if not isinstance(user_id, str) or not user_id:
            await ws.send_json(_error_frame("invalid_request", "user_id required", request_id=payload.get("id")))
            await ws.close()
            return ws
        try:
            profile = await asyncio.to_thread(runtime.profiles.get, user_id)
        except MindBridgeError as exc:
            await ws.send_json(_error_frame(exc.code, str(exc), request_id=payload.get("id")))
            await ws.close()
            return ws
        claimed = body.get("username")
        if claimed is not None and claimed != profile.username:
            await ws.send_json(
                _error_frame("unauthorized", "username does not match user", request_id=payload.get("id"))
            )
            await ws.close()
            return ws
        username = profile.username

        mark_activity()
        connection = Connection(callback=enqueue_event)
        runtime.presence.register(username, user_id, connection)
        # Queued rather than sent directly so no push can overtake it.
        enqueue_event(
            {
                "v": 1,
                "t": "session.ready",
                "id": payload.get("id"),
                "body": {
                    "connection_id": connection.connection_id,
                    "online": runtime.presence.online_user_ids(),
                },
            }
        )

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue_event(_error_frame("invalid_request", "malformed json"))
                    continue

                mark_activity()
                if frame.get("v") != 1:
                    enqueue_event(_error_frame("invalid_request", "unsupported version", request_id=frame.get("id")))
                    continue

                frame_type = frame.get("t")
                if frame_type == "ping":
                    enqueue_event({"v": 1, "t": "pong", "id": frame.get("id")})
                    continue
                if frame_type == "pong":
                    continue
                try:
                    reply = await _handle_frame(runtime, user_id, frame_type, frame.get("body") or {})
                except MindBridgeError as exc:
                    enqueue_event(_error_frame(exc.code, str(exc), request_id=frame.get("id")))
                    continue
                except ValueError as exc:
                    enqueue_event(_error_frame(InvalidRequest.code, str(exc), request_id=frame.get("id")))
                    continue
                reply.update({"v": 1, "id": frame.get("id")})
                enqueue_event(reply)
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        if connection is not None:
            connection.close()
            runtime.presence.remove(connection)
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, *closers, return_exceptions=True)

    return ws
