"""Lifecycle of the single WhatsApp session shared by every sender."""

from __future__ import annotations

import asyncio
import base64
import inspect
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TextIO

import qrcode

from .auth_state import MultiFileAuthState
from .bridge import MessagingSocketBase
from .exceptions import BridgeError, SessionNotReadyError
from .logger import get_logger

LOGGED_OUT = 401
DEFAULT_RECONNECT_DELAY = 5.0

Callback = Callable[[], Optional[Awaitable[None]]]


class SessionManager:
    """Own the connection to the messaging network for the process lifetime."""

    def __init__(
        self,
        socket: MessagingSocketBase,
        auth_state: MultiFileAuthState,
        *,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        qr_image_path: Optional[str] = None,
        qr_output: Optional[TextIO] = None,
        on_open: Optional[Callback] = None,
        on_logged_out: Optional[Callback] = None,
        metrics=None,
        logger=None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.socket = socket
        self.auth_state = auth_state
        self.reconnect_delay = float(reconnect_delay)
        self.qr_image_path = qr_image_path
        self._qr_output = qr_output
        self.on_open = on_open
        self.on_logged_out = on_logged_out
        self.metrics = metrics
        self.logger = logger or get_logger("Session")
        self._sleep = sleep or asyncio.sleep

        self.state = "close"
        self.last_qr: Optional[str] = None
        self.last_disconnect_code: Optional[int] = None
        self._open = asyncio.Event()
        self._reconnect_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._stopped = False

        socket.on("connection.update", self._on_connection_update)
        socket.on("creds.update", self._on_creds_update)
        socket.on("keys.set", self._on_keys_set)

    @property
    def is_open(self) -> bool:
        return self._open.is_set()

    # ----------------------------------------------------------------- lifecycle
    async def connect(self) -> None:
        """Load credentials, negotiate the protocol version and open the session."""
        if self._stopped:
            return
        self.state = "connecting"
        auth = self.auth_state.load()
        if not auth["creds"]:
            self.logger.info("No stored WhatsApp credentials, a QR code will be requested")
        try:
            version = await self.socket.fetch_latest_version()
        except BridgeError as exc:
            self.logger.warning("Could not fetch the latest WhatsApp version: %s", exc)
            version = None
        try:
            await self.socket.open(auth, version)
        except BridgeError as exc:
            self.logger.error("Opening the WhatsApp session failed: %s", exc)
            self.state = "close"
            self._schedule_reconnect()
            return
        self.logger.info("WhatsApp session requested (version=%s)", version or "bridge default")

    async def wait_open(self) -> None:
        """Block until the session is usable."""
        await self._open.wait()

    async def logout(self) -> None:
        """Best-effort logout used at shutdown; errors are only logged."""
        self._stopped = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
        if self.is_open:
            try:
                await self.socket.logout()
            except Exception as exc:
                self.logger.warning("WhatsApp logout failed: %s", exc)
        await self.close()

    async def close(self) -> None:
        self._stopped = True
        self._set_closed()
        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await self.socket.close()

    # -------------------------------------------------------------------- events
    def _on_creds_update(self, update: Dict[str, Any]) -> None:
        # Written before returning so a restart never sees stale keys.
        self.auth_state.update_creds(update)

    def _on_keys_set(self, data: Dict[str, Dict[str, Any]]) -> None:
        self.auth_state.set_keys(data)

    def _on_connection_update(self, update: Dict[str, Any]) -> None:
        qr = update.get("qr")
        if qr:
            self.last_qr = qr
            self.render_qr(qr)

        connection = update.get("connection")
        if connection == "close":
            self._set_closed()
            error = (update.get("lastDisconnect") or {}).get("error") or {}
            status_code = error.get("statusCode")
            self.last_disconnect_code = status_code
            if status_code == LOGGED_OUT:
                self.logger.critical(
                    "WhatsApp session logged out; credentials removed, scan a new QR code after restart"
                )
                self.state = "logged_out"
                self._stopped = True
                self.auth_state.clear()
                self._run_callback(self.on_logged_out)
                return
            self.logger.warning(
                "WhatsApp connection closed (status=%s, reason=%s); reconnecting in %ss",
                status_code,
                error.get("message") or "-",
                self.reconnect_delay,
            )
            self._schedule_reconnect()
        elif connection == "open":
            self.state = "open"
            self.last_qr = None
            self._open.set()
            if self.metrics is not None:
                self.metrics.set_session_open(True)
            self.logger.info("WhatsApp connected")
            self._run_callback(self.on_open)

    def _set_closed(self) -> None:
        self._open.clear()
        if self.state != "logged_out":
            self.state = "close"
        if self.metrics is not None:
            self.metrics.set_session_open(False)

    def _run_callback(self, callback: Optional[Callback]) -> None:
        if callback is None:
            return
        result = callback()
        if inspect.isawaitable(result):
            self._track(asyncio.ensure_future(result))

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _schedule_reconnect(self) -> None:
        if self._stopped:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.ensure_future(self._reconnect_later())
        self._track(self._reconnect_task)

    async def _reconnect_later(self) -> None:
        await self._sleep(self.reconnect_delay)
        if self._stopped:
            return
        # A failed connect() below must be able to schedule the next attempt.
        self._reconnect_task = None
        await self.socket.close()
        await self.connect()

    def render_qr(self, qr: str) -> None:
        """Show the pairing code on the terminal and as an image file."""
        out = self._qr_output or sys.stdout
        code = qrcode.QRCode(border=1)
        code.add_data(qr)
        code.make(fit=True)
        out.write("Scan this QR code with WhatsApp (Linked devices):\n")
        code.print_ascii(out=out, invert=True)
        if self.qr_image_path:
            try:
                code.make_image().save(self.qr_image_path)
            except OSError as exc:
                self.logger.warning("Could not write QR image to %s: %s", self.qr_image_path, exc)
            else:
                self.logger.info("QR code image written to %s", self.qr_image_path)

    # ------------------------------------------------------------------ sending
    def _require_open(self) -> None:
        if not self.is_open:
            raise SessionNotReadyError()

    async def send_message(self, jid: str, content: Dict[str, Any]) -> Dict[str, Any]:
        """Send raw message content; failures propagate to the caller."""
        self._require_open()
        return await self.socket.send_message(jid, content)

    async def send_text(self, jid: str, text: str) -> Dict[str, Any]:
        return await self.send_message(jid, {"text": text})

    async def send_document(
        self,
        jid: str,
        data: bytes,
        *,
        mimetype: str,
        file_name: str,
        caption: str = "",
    ) -> Dict[str, Any]:
        return await self.send_message(
            jid,
            {
                "document": base64.b64encode(data).decode("ascii"),
                "mimetype": mimetype,
                "fileName": file_name,
                "caption": caption,
            },
        )

    async def resolve_existence(self, jid: str) -> bool:
        """Return ``True`` when ``jid`` is a registered WhatsApp account."""
        self._require_open()
        results: List[Dict[str, Any]] = await self.socket.on_whatsapp(jid)
        return any(bool(item.get("exists")) for item in results or [])

    async def fetch_groups(self) -> Dict[str, Dict[str, Any]]:
        """Return every group the session participates in, keyed by group id."""
        self._require_open()
        return await self.socket.group_fetch_all_participating()
