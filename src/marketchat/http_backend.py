"""Backend client for the development server (aiohttp HTTP + realtime websocket)."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Callable, Dict, List, Sequence, Tuple

import aiohttp

from .backend import (
    SIGNED_IN,
    SIGNED_OUT,
    AuthSession,
    AuthUser,
    Backend,
    ChangeHandler,
    Row,
    RowChange,
    SessionHandler,
    SessionListeners,
    SubscriptionHandle,
)
from .errors import BackendError, TransientError, error_for_code
from .filters import Where, equality_filter, where_to_wire

logger = logging.getLogger(__name__)


class HttpBackend(Backend):
    def __init__(
        self,
        base_url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = 10.0,
        heartbeat_s: float | None = 20.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = session
        self._owns_http = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._heartbeat_s = heartbeat_s
        self._session: AuthSession | None = None
        self._listeners = SessionListeners()
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._ws_lock = asyncio.Lock()
        self._reader_task: asyncio.Task | None = None
        self._pending: Dict[str, Tuple[asyncio.Future, Callable[[dict], None] | None, Any]] = {}
        self._handlers: Dict[str, Tuple[SubscriptionHandle, ChangeHandler]] = {}
        # Subscriptions whose socket dropped; subscribed again on the next connection.
        self._unbound: List[Tuple[SubscriptionHandle, ChangeHandler]] = []
        self._resume_task: asyncio.Task | None = None
        self._closing = False
        self._request_ids = itertools.count(1)

    def _client(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_http = True
        return self._http

    def _headers(self) -> Dict[str, str]:
        if self._session is None:
            return {}
        return {"Authorization": f"Bearer {self._session.access_token}"}

    async def _request(self, method: str, path: str, *, json: Any = None, data: bytes | None = None,
                       content_type: str | None = None) -> Any:
        headers = self._headers()
        if content_type is not None:
            headers["Content-Type"] = content_type
        try:
            async with self._client().request(
                method, f"{self.base_url}{path}", json=json, data=data, headers=headers
            ) as response:
                if response.status >= 400:
                    raise await self._error_from(response)
                return await response.json()
        except aiohttp.ClientError as exc:
            raise TransientError(f"{method} {path} failed: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise TransientError(f"{method} {path} timed out") from exc

    @staticmethod
    async def _error_from(response: aiohttp.ClientResponse) -> BackendError:
        try:
            body = await response.json(content_type=None)
        except ValueError:
            body = None
        if isinstance(body, dict):
            return error_for_code(body.get("code"), str(body.get("message") or response.reason))
        if response.status >= 500:
            return TransientError(f"server error {response.status}")
        return BackendError(f"request failed with status {response.status}")

    async def _rest(self, table: str, action: str, body: dict[str, Any]) -> Any:
        return await self._request("POST", f"/v1/rest/{table}/{action}", json=body)

    async def query(
        self,
        table: str,
        where: Where = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> List[Row]:
        body = {"where": where_to_wire(where), "order_by": order_by, "descending": descending, "limit": limit}
        return (await self._rest(table, "query", body))["rows"]

    async def insert(self, table: str, row: Row) -> Row:
        return (await self._rest(table, "insert", {"row": row}))["row"]

    async def upsert(self, table: str, row: Row, on_conflict: Sequence[str]) -> Row:
        return (await self._rest(table, "upsert", {"row": row, "on_conflict": list(on_conflict)}))["row"]

    async def update(self, table: str, where: Where, patch: Row) -> List[Row]:
        return (await self._rest(table, "update", {"where": where_to_wire(where), "patch": patch}))["rows"]

    async def delete(self, table: str, where: Where) -> List[Row]:
        return (await self._rest(table, "delete", {"where": where_to_wire(where)}))["rows"]

    async def upload_blob(self, bucket: str, path: str, data: bytes, content_type: str | None = None) -> str:
        body = await self._request(
            "PUT", f"/v1/storage/{bucket}/{path}", data=data, content_type=content_type or "application/octet-stream"
        )
        return body["public_url"]

    async def sign_in(self, user_id: str, *, email: str | None = None, metadata: dict | None = None) -> AuthSession:
        body = await self._request(
            "POST", "/v1/session/start", json={"user_id": user_id, "email": email, "metadata": metadata or {}}
        )
        user = body["user"]
        self._session = AuthSession(
            user=AuthUser(id=user["id"], email=user.get("email"), metadata=user.get("metadata") or {}),
            access_token=body["access_token"],
        )
        self._listeners.emit(SIGNED_IN, self._session)
        return self._session

    def sign_out(self) -> None:
        self._session = None
        self._listeners.emit(SIGNED_OUT, None)

    async def current_session(self) -> AuthSession | None:
        return self._session

    def on_session_change(self, handler: SessionHandler) -> Callable[[], None]:
        return self._listeners.add(handler)

    async def _realtime(self) -> aiohttp.ClientWebSocketResponse:
        async with self._ws_lock:
            ws = self._ws
            if ws is None or ws.closed:
                self._unbind()
                url = f"{self.base_url}/v1/realtime"
                try:
                    ws = await self._client().ws_connect(url, headers=self._headers(), heartbeat=self._heartbeat_s)
                except aiohttp.ClientError as exc:
                    raise TransientError(f"realtime connect failed: {exc}") from exc
                self._ws = ws
                self._reader_task = asyncio.create_task(self._read_frames(ws), name="realtime-reader")
            if self._unbound:
                await self._rebind(ws)
            return ws

    async def _rebind(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Subscribe again, on ``ws``, everything a dropped socket carried."""

        unbound, self._unbound = [entry for entry in self._unbound if entry[0].active], []
        logger.info("restoring %d realtime subscriptions", len(unbound))
        for index, (handle, handler) in enumerate(unbound):

            def register(reply: dict, handle: SubscriptionHandle = handle, handler: ChangeHandler = handler) -> None:
                handle.sub_id = reply["body"]["sub_id"]
                self._handlers[handle.sub_id] = (handle, handler)

            try:
                await self._send_request(ws, "subscribe", {"table": handle.table, "filter": handle.filter}, register)
            except BackendError:
                self._unbound.extend(unbound[index:])
                raise

    async def _resume(self) -> None:
        try:
            await self._realtime()
        except BackendError as exc:
            logger.error(
                "realtime reconnect failed, %d subscriptions wait for the next connection: %s",
                len(self._unbound),
                exc,
            )

    async def _read_frames(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = msg.json()
                    except ValueError:
                        logger.warning("dropping non-JSON realtime frame")
                        continue
                    await self._dispatch(ws, frame)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    break
        finally:
            self._fail_pending(ws, TransientError("realtime connection closed"))
            if ws is self._ws and not self._closing:
                self._unbind()
                if self._unbound:
                    logger.warning("realtime connection lost with %d live subscriptions", len(self._unbound))
                    self._resume_task = asyncio.create_task(self._resume(), name="realtime-resume")

    def _unbind(self) -> None:
        self._unbound.extend(self._handlers.values())
        self._handlers.clear()

    async def _dispatch(self, ws: aiohttp.ClientWebSocketResponse, frame: dict[str, Any]) -> None:
        frame_type = frame.get("t")
        body = frame.get("body") or {}
        if frame_type == "change":
            entry = self._handlers.get(body.get("sub_id"))
            if entry is None:
                return
            handle, handler = entry
            if handle.active:
                handler(RowChange(body["kind"], body["table"], body.get("record"), body.get("old_record")))
        elif frame_type in ("subscribed", "unsubscribed", "error"):
            future, on_reply, _ = self._pending.pop(str(frame.get("id")), (None, None, None))
            if future is not None and not future.done():
                # Registered before later frames on this socket are dispatched.
                if on_reply is not None and frame_type != "error":
                    on_reply(frame)
                future.set_result(frame)
            elif frame_type == "error":
                logger.warning("realtime error: %s", body)
        elif frame_type == "ping":
            await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})

    def _fail_pending(self, ws: aiohttp.ClientWebSocketResponse, exc: BackendError) -> None:
        for request_id, (future, _, sent_on) in list(self._pending.items()):
            if sent_on is not ws:
                continue
            del self._pending[request_id]
            if not future.done():
                future.set_exception(exc)

    async def _send_request(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        frame_type: str,
        body: dict[str, Any],
        on_reply: Callable[[dict], None] | None = None,
    ) -> dict[str, Any]:
        request_id = f"r{next(self._request_ids)}"
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (future, on_reply, ws)
        try:
            await ws.send_json({"v": 1, "t": frame_type, "id": request_id, "body": body})
        except ConnectionResetError as exc:
            self._pending.pop(request_id, None)
            raise TransientError("realtime connection lost") from exc
        try:
            reply = await asyncio.wait_for(future, timeout=self._timeout.total)
        except asyncio.TimeoutError as exc:
            self._pending.pop(request_id, None)
            raise TransientError(f"realtime {frame_type} timed out") from exc
        if reply.get("t") == "error":
            error = reply.get("body") or {}
            raise error_for_code(error.get("code"), str(error.get("message")))
        return reply

    async def _call(
        self, frame_type: str, body: dict[str, Any], *, on_reply: Callable[[dict], None] | None = None
    ) -> dict[str, Any]:
        return await self._send_request(await self._realtime(), frame_type, body, on_reply)

    async def subscribe(self, table: str, where: Where, handler: ChangeHandler) -> SubscriptionHandle:
        filter = equality_filter(where)
        handles: List[SubscriptionHandle] = []

        def register(reply: dict) -> None:
            handle = SubscriptionHandle(sub_id=reply["body"]["sub_id"], table=table, filter=filter)
            self._handlers[handle.sub_id] = (handle, handler)
            handles.append(handle)

        await self._call("subscribe", {"table": table, "filter": filter}, on_reply=register)
        return handles[0]

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        handle.active = False
        self._unbound = [entry for entry in self._unbound if entry[0] is not handle]
        if self._handlers.pop(handle.sub_id, None) is None:
            return
        if self._ws is None or self._ws.closed:
            return
        await self._call("unsubscribe", {"sub_id": handle.sub_id})

    async def close(self) -> None:
        self._closing = True
        for handle, _ in list(self._handlers.values()) + self._unbound:
            handle.active = False
        self._handlers.clear()
        self._unbound = []
        resume, self._resume_task = self._resume_task, None
        if resume is not None:
            resume.cancel()
            await asyncio.gather(resume, return_exceptions=True)
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        reader, self._reader_task = self._reader_task, None
        if reader is not None:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        if self._http is not None and self._owns_http:
            await self._http.close()
        self._http = None
