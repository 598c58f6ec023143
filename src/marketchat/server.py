"""Development server exposing a datastore over HTTP and a realtime websocket."""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from typing import Any, Dict, List

from aiohttp import WSCloseCode, WSMsgType, web

from .backend import AuthUser, RowChange
from .errors import BackendError, Conflict, InvalidRequest, NotFound, PermissionDenied, RowError
from .filters import equality_filter, where_from_wire
from .hub import Subscription
from .local import DEFAULT_PUBLIC_URL_BASE, Datastore
from .policy import OwnerPolicy
from .schema import schema_for

logger = logging.getLogger(__name__)

REST_ACTIONS = ("query", "insert", "upsert", "update", "delete")

_STATUS_BY_ERROR = (
    (InvalidRequest, 400),
    (PermissionDenied, 403),
    (NotFound, 404),
    (Conflict, 409),
)


class SessionRegistry:
    """Development auth: tokens issued by ``/v1/session/start`` name a user."""

    def __init__(self) -> None:
        self._by_token: Dict[str, AuthUser] = {}

    def start(self, user: AuthUser) -> str:
        token = f"at_{secrets.token_urlsafe(16)}"
        self._by_token[token] = user
        return token

    def get(self, token: str) -> AuthUser | None:
        return self._by_token.get(token)


def _user_to_json(user: AuthUser) -> dict[str, Any]:
    return {"id": user.id, "email": user.email, "metadata": dict(user.metadata)}


def _error_response(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _status_for(exc: BackendError) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 500


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except BackendError as exc:
        status = _status_for(exc)
        if status == 500:
            logger.error("%s %s failed: %s", request.method, request.path, exc)
        return _error_response(exc.code, str(exc), status)
    except RowError as exc:
        return _error_response(InvalidRequest.code, str(exc), 400)


def _bearer_token(request: web.Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer ") :].strip() or None
    return request.query.get("access_token") or None


def _authenticate(request: web.Request) -> AuthUser | None:
    """Return the caller, ``None`` when anonymous; an unknown token is rejected."""

    token = _bearer_token(request)
    if token is None:
        return None
    user = request.app["sessions"].get(token)
    if user is None:
        raise web.HTTPUnauthorized(
            text=json.dumps({"code": "unauthorized", "message": "invalid access token"}),
            content_type="application/json",
        )
    return user


async def _json_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError as exc:
        raise InvalidRequest("body must be JSON") from exc
    if not isinstance(body, dict):
        raise InvalidRequest("body must be a JSON object")
    return body


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_session_start(request: web.Request) -> web.Response:
    body = await _json_body(request)
    user_id = body.get("user_id")
    if not isinstance(user_id, str) or not user_id:
        raise InvalidRequest("user_id required")
    metadata = body.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise InvalidRequest("metadata must be an object")
    user = AuthUser(id=user_id, email=body.get("email"), metadata=metadata)
    token = request.app["sessions"].start(user)
    logger.info("session started for %s", user_id)
    return web.json_response({"access_token": token, "user": _user_to_json(user)})


async def handle_session_get(request: web.Request) -> web.Response:
    user = _authenticate(request)
    if user is None:
        raise web.HTTPUnauthorized(
            text=json.dumps({"code": "unauthorized", "message": "access token required"}),
            content_type="application/json",
        )
    return web.json_response({"user": _user_to_json(user)})


def _conflict_columns(raw: Any) -> List[str]:
    if not isinstance(raw, list) or not raw or any(not isinstance(column, str) for column in raw):
        raise InvalidRequest("on_conflict must be a non-empty list of columns")
    return raw


def _optional_int(raw: Any, name: str) -> int | None:
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise InvalidRequest(f"{name} must be an integer")
    return raw


async def handle_rest(request: web.Request) -> web.Response:
    datastore: Datastore = request.app["datastore"]
    table = request.match_info["table"]
    action = request.match_info["action"]
    if action not in REST_ACTIONS:
        raise NotFound(f"unknown action: {action}")
    schema_for(table)
    user = _authenticate(request)
    actor_id = user.id if user is not None else None
    body = await _json_body(request)

    if action == "query":
        order_by = body.get("order_by")
        if order_by is not None and not isinstance(order_by, str):
            raise InvalidRequest("order_by must be a column name")
        rows = datastore.query(
            table,
            where_from_wire(body.get("where")),
            order_by=order_by,
            descending=bool(body.get("descending", False)),
            limit=_optional_int(body.get("limit"), "limit"),
        )
        return web.json_response({"rows": rows})
    if action in ("insert", "upsert"):
        row = body.get("row")
        if not isinstance(row, dict):
            raise InvalidRequest("row must be an object")
        if action == "insert":
            return web.json_response({"row": datastore.insert(actor_id, table, row)}, status=201)
        stored = datastore.upsert(actor_id, table, row, _conflict_columns(body.get("on_conflict")))
        return web.json_response({"row": stored})
    if action == "update":
        patch = body.get("patch")
        if not isinstance(patch, dict):
            raise InvalidRequest("patch must be an object")
        rows = datastore.update(actor_id, table, where_from_wire(body.get("where")), patch)
        return web.json_response({"rows": rows})
    rows = datastore.delete(actor_id, table, where_from_wire(body.get("where")))
    return web.json_response({"rows": rows})


async def handle_storage_put(request: web.Request) -> web.Response:
    datastore: Datastore = request.app["datastore"]
    user = _authenticate(request)
    data = await request.read()
    url = datastore.put_blob(
        user.id if user is not None else None,
        request.match_info["bucket"],
        request.match_info["path"],
        data,
        request.headers.get("Content-Type"),
    )
    return web.json_response({"public_url": url}, status=201)


async def handle_storage_get(request: web.Request) -> web.Response:
    datastore: Datastore = request.app["datastore"]
    blob = datastore.get_blob(request.match_info["bucket"], request.match_info["path"])
    if blob is None:
        raise NotFound("object not found")
    data, content_type = blob
    return web.Response(body=data, content_type=content_type or "application/octet-stream")


def create_app(
    *,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    db_path: str | None = None,
    policy: OwnerPolicy | None = None,
    public_url_base: str | None = None,
    datastore: Datastore | None = None,
) -> web.Application:
    if datastore is None:
        policy = policy or OwnerPolicy()
        base = public_url_base or DEFAULT_PUBLIC_URL_BASE
        if db_path is not None:
            datastore = Datastore.sqlite(db_path, policy=policy, public_url_base=base)
        else:
            datastore = Datastore.in_memory(policy=policy, public_url_base=base)

    app = web.Application(middlewares=[error_middleware], client_max_size=max_msg_size * 8)
    app["datastore"] = datastore
    app["sessions"] = SessionRegistry()
    app["sockets"] = set()
    app["ws_config"] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/session/start", handle_session_start)
    app.router.add_get("/v1/session", handle_session_get)
    app.router.add_post("/v1/rest/{table}/{action}", handle_rest)
    app.router.add_put("/v1/storage/{bucket}/{path:.+}", handle_storage_put)
    app.router.add_get("/v1/storage/{bucket}/{path:.+}", handle_storage_get)
    app.router.add_get("/v1/realtime", realtime_handler)

    async def close_datastore(_: web.Application) -> None:
        datastore.close()

    async def close_sockets(app: web.Application) -> None:
        for ws in list(app["sockets"]):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"server shutdown")

    app.on_shutdown.append(close_sockets)
    app.on_cleanup.append(close_datastore)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


def _change_frame(sub_id: str, change: RowChange) -> dict[str, Any]:
    return {
        "v": 1,
        "t": "change",
        "body": {
            "sub_id": sub_id,
            "kind": change.kind,
            "table": change.table,
            "record": change.record,
            "old_record": change.old_record,
        },
    }


async def realtime_handler(request: web.Request) -> web.WebSocketResponse:
    datastore: Datastore = request.app["datastore"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)
    sockets: set = request.app["sockets"]
    sockets.add(ws)

    last_activity = asyncio.get_running_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=1000)
    subscriptions: Dict[str, Subscription] = {}
    closed = False

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

    def enqueue(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

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
                    enqueue({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    def subscribe(request_id: str | None, body: dict[str, Any]) -> None:
        table = body.get("table")
        if not isinstance(table, str):
            enqueue(_error_frame("invalid_request", "table required", request_id=request_id))
            return
        try:
            schema_for(table)
            filter = equality_filter(where_from_wire(body.get("filter")))
        except BackendError as exc:
            enqueue(_error_frame(exc.code, str(exc), request_id=request_id))
            return
        holder: List[str] = []

        def forward(change: RowChange) -> None:
            enqueue(_change_frame(holder[0], change))

        subscription = datastore.hub.subscribe(table, filter, forward)
        holder.append(subscription.sub_id)
        subscriptions[subscription.sub_id] = subscription
        logger.debug("realtime subscribe %s %s %s", subscription.sub_id, table, filter)
        enqueue({"v": 1, "t": "subscribed", "id": request_id, "body": {"sub_id": subscription.sub_id}})

    def unsubscribe(request_id: str | None, body: dict[str, Any]) -> None:
        subscription = subscriptions.pop(str(body.get("sub_id")), None)
        if subscription is not None:
            datastore.hub.unsubscribe(subscription)
        enqueue({"v": 1, "t": "unsubscribed", "id": request_id, "body": {"sub_id": body.get("sub_id")}})

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                if msg.type == WSMsgType.ERROR:
                    break
                continue
            mark_activity()
            try:
                payload = json.loads(msg.data)
            except ValueError:
                enqueue(_error_frame("invalid_request", "invalid json"))
                continue
            if not isinstance(payload, dict):
                enqueue(_error_frame("invalid_request", "frame must be an object"))
                continue
            if payload.get("v") != 1:
                enqueue(_error_frame("invalid_request", "unsupported version", request_id=payload.get("id")))
                continue
            frame_type = payload.get("t")
            request_id = payload.get("id")
            body = payload.get("body") or {}
            if frame_type == "subscribe":
                subscribe(request_id, body)
            elif frame_type == "unsubscribe":
                unsubscribe(request_id, body)
            elif frame_type == "ping":
                enqueue({"v": 1, "t": "pong", "id": request_id})
            elif frame_type == "pong":
                continue
            else:
                enqueue(_error_frame("invalid_request", f"unknown frame type: {frame_type}", request_id=request_id))
    finally:
        sockets.discard(ws)
        heartbeat_task.cancel()
        for subscription in subscriptions.values():
            datastore.hub.unsubscribe(subscription)
        subscriptions.clear()
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)
    return ws
