"""WebSocket client for the WhatsApp protocol bridge.

The bridge is a separate process that speaks the multi-device WhatsApp
protocol.  This module talks to it with JSON frames over a single WebSocket:

* requests ``{"id": n, "method": ..., "params": {...}}``
* responses ``{"id": n, "result": ...}`` or ``{"id": n, "error": {...}}``
* events ``{"event": "connection.update" | "creds.update" | "keys.set", "data": {...}}``

Credentials are owned by the worker and handed to the bridge on ``init``.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import aiohttp

from .exceptions import BridgeError
from .logger import get_logger

# Disconnect status used when the WebSocket itself goes away.
CONNECTION_CLOSED = 428

EventHandler = Callable[[Dict[str, Any]], Optional[Awaitable[None]]]


class MessagingSocketBase:
    """Interface implemented by concrete messaging transports."""

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._handler_tasks: Set[asyncio.Task] = set()

    def on(self, event: str, handler: EventHandler) -> None:
        """Register ``handler`` for ``event``."""
        self._handlers.setdefault(event, []).append(handler)

    def emit(self, event: str, data: Dict[str, Any]) -> None:
        """Invoke handlers in registration order.

        Plain callables run before ``emit`` returns; coroutine handlers are
        scheduled on the running loop.
        """
        for handler in list(self._handlers.get(event, [])):
            result = handler(data)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_tasks.discard)

    async def open(self, auth_state: Dict[str, Any], version: Optional[List[int]] = None) -> None:
        raise NotImplementedError

    async def fetch_latest_version(self) -> Optional[List[int]]:
        raise NotImplementedError

    async def send_message(self, jid: str, content: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def on_whatsapp(self, *jids: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def group_fetch_all_participating(self) -> Dict[str, Dict[str, Any]]:
        raise NotImplementedError

    async def logout(self) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class BridgeSocket(MessagingSocketBase):
    """JSON-RPC over WebSocket implementation backed by :mod:`aiohttp`."""

    def __init__(
        self,
        url: str,
        *,
        request_timeout: float = 30.0,
        browser: Optional[List[str]] = None,
        logger=None,
    ):
        super().__init__()
        self.url = url
        self.request_timeout = request_timeout
        self.browser = browser or ["Mac OS", "Desktop", "10.15.7"]
        self.logger = logger or get_logger("Bridge")
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def _ensure_ws(self) -> None:
        if self.connected:
            return
        self._closing = False
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self.url, heartbeat=30)
        except (aiohttp.ClientError, OSError) as exc:
            await self._session.close()
            self._session = None
            raise BridgeError(f"Cannot reach WhatsApp bridge at {self.url}: {exc}") from exc
        self._reader = asyncio.create_task(self._read_loop(), name="bridge-reader")

    async def open(self, auth_state: Dict[str, Any], version: Optional[List[int]] = None) -> None:
        """Hand the persisted credentials to the bridge and start the session."""
        await self._ensure_ws()
        await self._request(
            "init",
            {
                "creds": auth_state.get("creds") or None,
                "keys": auth_state.get("keys") or {},
                "version": version,
                "browser": self.browser,
            },
        )

    async def fetch_latest_version(self) -> Optional[List[int]]:
        await self._ensure_ws()
        result = await self._request("fetchLatestVersion", {})
        if isinstance(result, dict):
            return result.get("version")
        return result

    async def send_message(self, jid: str, content: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("sendMessage", {"jid": jid, "content": content}) or {}

    async def on_whatsapp(self, *jids: str) -> List[Dict[str, Any]]:
        return await self._request("onWhatsApp", {"jids": list(jids)}) or []

    async def group_fetch_all_participating(self) -> Dict[str, Dict[str, Any]]:
        return await self._request("groupFetchAllParticipating", {}) or {}

    async def logout(self) -> None:
        await self._request("logout", {})

    async def close(self) -> None:
        """Close the WebSocket without emitting a disconnect event."""
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
        if self._session is not None:
            await self._session.close()
        self._ws = None
        self._session = None
        self._reader = None
        self._fail_pending(BridgeError("Bridge connection closed"))

    # ------------------------------------------------------------------ plumbing
    async def _request(self, method: str, params: Dict[str, Any]) -> Any:
        if not self.connected:
            raise BridgeError("Bridge connection is not open", status_code=CONNECTION_CLOSED)
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send_json({"id": request_id, "method": method, "params": params})
            async with asyncio.timeout(self.request_timeout):
                return await future
        except asyncio.TimeoutError as exc:
            raise BridgeError(f"Bridge request '{method}' timed out") from exc
        finally:
            self._pending.pop(request_id, None)

    def _handle_frame(self, frame: Dict[str, Any]) -> None:
        """Route a decoded frame to the waiting request or the event handlers."""
        if "event" in frame:
            self.emit(frame["event"], frame.get("data") or {})
            return
        future = self._pending.get(frame.get("id"))
        if future is None or future.done():
            self.logger.debug("Dropping unsolicited bridge frame %s", frame.get("id"))
            return
        error = frame.get("error")
        if error:
            if isinstance(error, dict):
                future.set_exception(BridgeError(str(error.get("message") or error), error.get("statusCode")))
            else:
                future.set_exception(BridgeError(str(error)))
        else:
            future.set_result(frame.get("result"))

    def _fail_pending(self, exc: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()

    async def _read_loop(self) -> None:
        ws = self._ws
        reason = "bridge connection closed"
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = json.loads(msg.data)
                    except json.JSONDecodeError:
                        self.logger.warning("Ignoring malformed bridge frame")
                        continue
                    self._handle_frame(frame)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    reason = f"bridge connection error: {ws.exception()}"
                    break
        finally:
            self._fail_pending(BridgeError(reason, status_code=CONNECTION_CLOSED))
            if not self._closing:
                self.emit(
                    "connection.update",
                    {
                        "connection": "close",
                        "lastDisconnect": {"error": {"statusCode": CONNECTION_CLOSED, "message": reason}},
                    },
                )
