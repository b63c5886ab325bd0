"""Core orchestration logic for the attendance notification worker."""

from __future__ import annotations

import asyncio
import base64
import binascii
import inspect
import math
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from .addressing import DEFAULT_COUNTRY_CODE, is_jid, is_phone_recipient, phone_to_jid
from .auth_state import MultiFileAuthState
from .bridge import CONNECTION_CLOSED, BridgeSocket
from .exceptions import (
    BridgeError,
    GroupNotFoundError,
    JobValidationError,
    RecipientNotRegisteredError,
    SessionNotReadyError,
    TriggerValidationError,
)
from .groups import GroupDirectoryCache
from .logger import get_logger
from .persistence import Persistence
from .prometheus import NotifierMetrics
from .rate_limit import DeliveryPacer, is_rate_limit_error
from .reports import ScheduledReportTrigger
from .session import SessionManager

RECLAIM_REASON = "reset by fail-safe"
MONTHLY_RECAP = "monthly_recap"


def _classify_delivery_error(exc: Exception) -> Tuple[bool, str]:
    """Classify a delivery failure as transient (requeue) or permanent (fail).

    Returns:
        ``(is_transient, reason)`` where ``reason`` is the text stored on the job.
    """
    if isinstance(exc, SessionNotReadyError):
        return True, f"WhatsApp session not connected, will retry: {exc}"
    if isinstance(exc, BridgeError) and exc.status_code == CONNECTION_CLOSED:
        return True, f"WhatsApp connection dropped during send, will retry: {exc}"
    if is_rate_limit_error(exc):
        return True, f"Rate limited by WhatsApp, will retry: {exc}"
    return False, str(exc) or exc.__class__.__name__


class NotificationCore:
    """Coordinate the session, queue consumption, triggers and maintenance."""

    def __init__(
        self,
        *,
        db_path: str | None = "/data/attendance_notifier.db",
        session: SessionManager | None = None,
        bridge_url: str = "ws://127.0.0.1:8765",
        auth_dir: str = "auth_info_baileys",
        qr_image_path: str | None = "qr.png",
        country_code: str = DEFAULT_COUNTRY_CODE,
        logger=None,
        metrics: NotifierMetrics | None = None,
        timezone: str = "Asia/Jakarta",
        poll_interval: float = 2.0,
        min_delay: float = 1.0,
        max_delay: float = 3.0,
        batch_size: int = 100,
        trigger_delay: float = 1.0,
        reclaim_interval: float = 300.0,
        stuck_timeout: int = 300,
        daily_check_interval: float = 300.0,
        monthly_check_interval: float = 3600.0,
        monthly_recap_hour: int = 20,
        miss_refresh_interval: float = 300.0,
        on_logged_out: Optional[Callable[[], Optional[Awaitable[None]]]] = None,
        test_mode: bool = False,
        log_delivery_activity: bool = False,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """Prepare the runtime collaborators; nothing runs until :meth:`start`."""
        self.logger = logger or get_logger()
        self.metrics = metrics or NotifierMetrics()
        self.persistence = Persistence(db_path or ":memory:")
        self._sleep = sleep or asyncio.sleep

        if session is None:
            session = SessionManager(
                BridgeSocket(bridge_url),
                MultiFileAuthState(auth_dir),
                qr_image_path=qr_image_path,
                on_open=self._on_session_open,
                on_logged_out=self._on_session_logged_out,
                metrics=self.metrics,
            )
        self.session = session
        self.groups = GroupDirectoryCache(self.session.fetch_groups, miss_refresh_interval=miss_refresh_interval)
        self.reports = ScheduledReportTrigger(
            self.persistence,
            timezone=timezone,
            recap_hour=monthly_recap_hour,
            metrics=self.metrics,
            sleep=self._sleep,
        )
        self.pacer = DeliveryPacer(min_delay, max_delay, sleep=self._sleep)

        self.country_code = country_code
        self._test_mode = bool(test_mode)
        self._poll_interval = math.inf if self._test_mode else max(0.05, float(poll_interval))
        self._batch_size = max(1, int(batch_size))
        self._trigger_delay = float(trigger_delay)
        self._reclaim_interval = float(reclaim_interval)
        self._stuck_timeout = int(stuck_timeout)
        self._daily_check_interval = float(daily_check_interval)
        self._monthly_check_interval = float(monthly_check_interval)
        self._on_logged_out = on_logged_out
        self._log_delivery_activity = bool(log_delivery_activity)

        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()  # consumer loop
        self._wake_trigger_event = asyncio.Event()  # manual trigger loop
        self._task_consumer: Optional[asyncio.Task] = None
        self._task_triggers: Optional[asyncio.Task] = None
        self._task_reclaim: Optional[asyncio.Task] = None
        self._task_daily: Optional[asyncio.Task] = None
        self._task_monthly: Optional[asyncio.Task] = None

    @staticmethod
    def _utc_now_epoch() -> int:
        return int(time.time())

    async def init(self) -> None:
        await self.persistence.init_db()
        await self._refresh_queue_gauge()

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands."""
        payload = payload or {}
        if cmd == "run now":
            self._wake_event.set()
            self._wake_trigger_event.set()
            return {"ok": True}
        if cmd == "enqueue":
            return await self._handle_enqueue(payload)
        if cmd == "triggerMonthlyRecap":
            trigger_id = await self.persistence.add_manual_trigger(
                trigger_type=payload.get("type", MONTHLY_RECAP),
                year=payload.get("year"),
                month=payload.get("month"),
                target=payload.get("target"),
            )
            self._wake_trigger_event.set()
            return {"ok": True, "id": trigger_id}
        if cmd == "refreshGroups":
            if not self.session.is_open:
                return {"ok": False, "error": "WhatsApp session is not connected"}
            self.groups.invalidate()
            count = await self.groups.refresh()
            return {"ok": True, "groups": count}
        if cmd == "listJobs":
            status = payload.get("status") or None
            jobs = await self.persistence.list_jobs(status=status)
            return {"ok": True, "jobs": jobs}
        if cmd == "status":
            return {
                "ok": True,
                "connection": self.session.state,
                "qr_pending": bool(self.session.last_qr),
                "pending_jobs": await self.persistence.count_jobs("pending"),
                "groups": len(self.groups),
            }
        return {"ok": False, "error": "unknown command"}

    async def _handle_enqueue(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        job = {
            key: payload[key]
            for key in ("recipient", "message", "fileData", "fileMimetype", "fileName")
            if payload.get(key) is not None
        }
        if not str(job.get("recipient") or "").strip():
            return {"ok": False, "error": "missing 'recipient'"}
        if not job.get("message") and not job.get("fileData"):
            return {"ok": False, "error": "missing 'message' or 'fileData'"}
        job_id = await self.persistence.enqueue_job(
            job,
            job_type=payload.get("type") or "",
            metadata=payload.get("metadata") or {},
        )
        await self._refresh_queue_gauge()
        self._wake_event.set()
        return {"ok": True, "id": job_id}

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Prepare storage, start maintenance loops and connect the session."""
        await self.init()
        self._stop.clear()
        self._task_reclaim = asyncio.create_task(self._reclaim_loop(), name="stuck-job-reclaimer")
        if not self._test_mode:
            self._task_daily = asyncio.create_task(self._daily_report_loop(), name="daily-report-loop")
            self._task_monthly = asyncio.create_task(self._monthly_recap_loop(), name="monthly-recap-loop")
            await self.session.connect()

    def _start_consumers(self) -> None:
        """Start the queue consumer and the trigger listener once."""
        if self._stop.is_set():
            return
        if self._task_consumer is None or self._task_consumer.done():
            self._task_consumer = asyncio.create_task(self._consumer_loop(), name="queue-consumer-loop")
        if self._task_triggers is None or self._task_triggers.done():
            self._task_triggers = asyncio.create_task(self._trigger_loop(), name="manual-trigger-loop")

    async def stop(self, *, logout: bool = False) -> None:
        """Stop the background tasks gracefully."""
        self._stop.set()
        self._wake_event.set()
        self._wake_trigger_event.set()
        await asyncio.gather(
            *(
                task
                for task in [
                    self._task_consumer,
                    self._task_triggers,
                    self._task_reclaim,
                    self._task_daily,
                    self._task_monthly,
                ]
                if task
            ),
            return_exceptions=True,
        )
        if logout:
            await self.session.logout()

    async def _on_session_open(self) -> None:
        try:
            self.groups.invalidate()
            await self.groups.refresh()
        except Exception as exc:
            self.logger.exception("Initial group directory refresh failed: %s", exc)
        self._start_consumers()

    async def _on_session_logged_out(self) -> None:
        self._stop.set()
        self._wake_event.set()
        self._wake_trigger_event.set()
        if self._on_logged_out is not None:
            result = self._on_logged_out()
            if inspect.isawaitable(result):
                await result

    # ----------------------------------------------------------- queue consumer
    async def _wait_until_open(self) -> bool:
        """Wait for the session gate, giving up after one poll interval."""
        if self.session.is_open:
            return True
        timeout = None if math.isinf(self._poll_interval) else self._poll_interval
        waiters = {
            asyncio.ensure_future(self.session.wait_open()),
            asyncio.ensure_future(self._stop.wait()),
        }
        _, pending = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        for waiter in pending:
            waiter.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        return self.session.is_open and not self._stop.is_set()

    async def _consumer_loop(self) -> None:
        """Continuously pick pending jobs and attempt delivery."""
        self.logger.debug("Queue consumer loop started")
        while not self._stop.is_set():
            if not await self._wait_until_open():
                continue
            try:
                processed = await self._process_queue_cycle()
            except Exception as exc:
                self.logger.exception("Unhandled error in queue consumer loop: %s", exc)
                processed = False
            if not processed:
                await self._wait_for_wakeup(self._wake_event, self._poll_interval)

    async def _process_queue_cycle(self) -> bool:
        """Drain one batch of pending jobs serially."""
        batch = await self.persistence.fetch_pending_jobs(limit=self._batch_size)
        if not batch:
            await self._refresh_queue_gauge()
            return False
        self.logger.debug("Fetched %d pending jobs", len(batch))
        processed_any = False
        for job in batch:
            if self._stop.is_set() or not self.session.is_open:
                break
            if not await self.persistence.claim_job(job["id"], self._utc_now_epoch()):
                self.logger.debug("Job %s already claimed, skipping", job["id"])
                continue
            await self._deliver_job(job)
            processed_any = True
            await self.pacer.wait()
        await self._refresh_queue_gauge()
        return processed_any

    async def _deliver_job(self, job: Dict[str, Any]) -> None:
        job_id = job["id"]
        payload = job.get("payload") or {}
        kind = "document" if payload.get("fileData") else "text"
        try:
            jid = await self._resolve_destination(payload)
            await self._send_payload(jid, payload)
        except Exception as exc:
            transient, reason = _classify_delivery_error(exc)
            if transient:
                if not await self.persistence.requeue_job(job_id, reason, self._utc_now_epoch()):
                    self._warn_reclaimed(job_id, "requeued")
                    return
                self.metrics.inc_retried("rate_limit" if is_rate_limit_error(exc) else "session")
                self._log_delivery_event(job_id, "requeued", reason)
                return
            if not await self.persistence.mark_failed(job_id, reason, self._utc_now_epoch()):
                self._warn_reclaimed(job_id, "failed")
                return
            self.metrics.inc_failed(kind)
            self.logger.warning("Job %s failed: %s", job_id, reason)
            return
        if not await self.persistence.mark_sent(job_id, self._utc_now_epoch()):
            # Already delivered; the reclaimed copy will be sent a second time.
            self._warn_reclaimed(job_id, "sent")
            return
        self.metrics.inc_sent(kind)
        self._log_delivery_event(job_id, "sent", jid)

    def _warn_reclaimed(self, job_id: str, outcome: str) -> None:
        self.logger.warning(
            "Job %s was reclaimed while in flight; outcome '%s' not recorded", job_id, outcome
        )

    async def _resolve_destination(self, payload: Dict[str, Any]) -> str:
        """Map the job recipient to a network identifier."""
        recipient = str(payload.get("recipient") or "").strip()
        if not recipient:
            raise JobValidationError("Job payload has no recipient")
        if not payload.get("message") and not payload.get("fileData"):
            raise JobValidationError("Job payload has neither message nor fileData")
        if is_jid(recipient):
            return recipient
        if is_phone_recipient(recipient):
            jid = phone_to_jid(recipient, self.country_code)
            if not await self.session.resolve_existence(jid):
                raise RecipientNotRegisteredError(recipient)
            return jid
        group_id = await self.groups.resolve(recipient)
        if not group_id:
            raise GroupNotFoundError(recipient)
        return group_id

    async def _send_payload(self, jid: str, payload: Dict[str, Any]) -> None:
        message = payload.get("message") or ""
        file_data = payload.get("fileData")
        if not file_data:
            await self.session.send_text(jid, message)
            return
        try:
            data = base64.b64decode(file_data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise JobValidationError(f"fileData is not valid base64: {exc}") from exc
        await self.session.send_document(
            jid,
            data,
            mimetype=payload.get("fileMimetype") or "application/octet-stream",
            file_name=payload.get("fileName") or "document",
            caption=message,
        )

    def _log_delivery_event(self, job_id: str, status: str, detail: str) -> None:
        if not self._log_delivery_activity:
            return
        if status == "sent":
            self.logger.info("Delivery succeeded for job %s (to=%s)", job_id, detail)
        else:
            self.logger.info("Delivery %s for job %s: %s", status, job_id, detail)

    # --------------------------------------------------------- manual triggers
    async def _trigger_loop(self) -> None:
        self.logger.debug("Manual trigger loop started")
        while not self._stop.is_set():
            if not await self._wait_until_open():
                continue
            try:
                processed = await self._process_trigger_cycle()
            except Exception as exc:
                self.logger.exception("Unhandled error in manual trigger loop: %s", exc)
                processed = False
            if not processed:
                await self._wait_for_wakeup(self._wake_trigger_event, self._poll_interval)

    async def _process_trigger_cycle(self) -> bool:
        triggers = await self.persistence.fetch_pending_triggers()
        processed_any = False
        for trigger in triggers:
            if self._stop.is_set():
                break
            if not await self.persistence.claim_trigger(trigger["id"]):
                continue
            if processed_any:
                await self._sleep(self._trigger_delay)
            await self._run_trigger(trigger)
            processed_any = True
        return processed_any

    @staticmethod
    def _validate_trigger(trigger: Dict[str, Any]) -> Tuple[int, int, str]:
        if trigger.get("type") != MONTHLY_RECAP:
            raise TriggerValidationError(f"Unsupported trigger type: {trigger.get('type')!r}")
        year, month, target = trigger.get("year"), trigger.get("month"), trigger.get("target")
        if not isinstance(year, int) or isinstance(year, bool):
            raise TriggerValidationError(f"Invalid year: {year!r}")
        if not isinstance(month, int) or isinstance(month, bool) or not 0 <= month <= 11:
            raise TriggerValidationError(f"Invalid month (expected 0-11): {month!r}")
        if not isinstance(target, str) or not target.strip():
            raise TriggerValidationError("Missing target")
        return year, month, target.strip()

    async def _run_trigger(self, trigger: Dict[str, Any]) -> None:
        trigger_id = trigger["id"]
        try:
            year, month, target = self._validate_trigger(trigger)
        except TriggerValidationError as exc:
            self.logger.warning("Manual trigger %s rejected: %s", trigger_id, exc)
            await self.persistence.mark_trigger_failed(trigger_id, str(exc))
            return
        try:
            queued = await self.reports.generate_monthly_recap(year, month, target, force=True)
        except Exception as exc:
            self.logger.exception("Manual trigger %s failed: %s", trigger_id, exc)
            await self.persistence.mark_trigger_failed(trigger_id, str(exc) or exc.__class__.__name__)
            return
        await self.persistence.delete_trigger(trigger_id)
        self._wake_event.set()
        self.logger.info("Manual trigger %s completed, %d recap jobs queued", trigger_id, queued)

    # ------------------------------------------------------------- maintenance
    async def _reclaim_stuck_jobs(self) -> int:
        now_ts = self._utc_now_epoch()
        count = await self.persistence.reset_stuck_jobs(now_ts - self._stuck_timeout, RECLAIM_REASON, now_ts)
        if count:
            self.logger.warning("Reset %d jobs stuck in processing", count)
            self.metrics.inc_reclaimed(count)
            self._wake_event.set()
        return count

    async def _reclaim_loop(self) -> None:
        while not self._stop.is_set():
            await self._wait_for_stop(self._reclaim_interval)
            if self._stop.is_set():
                break
            try:
                await self._reclaim_stuck_jobs()
            except Exception as exc:
                self.logger.exception("Stuck job reclaim failed: %s", exc)

    async def _daily_report_loop(self) -> None:
        while not self._stop.is_set():
            try:
                queued = await self.reports.run_daily_check()
            except Exception as exc:
                self.logger.exception("Daily report check failed: %s", exc)
            else:
                if queued:
                    self._wake_event.set()
            await self._wait_for_stop(self._daily_check_interval)

    async def _monthly_recap_loop(self) -> None:
        while not self._stop.is_set():
            try:
                queued = await self.reports.run_monthly_check()
            except Exception as exc:
                self.logger.exception("Monthly recap check failed: %s", exc)
            else:
                if queued:
                    self._wake_event.set()
            await self._wait_for_stop(self.reports.seconds_until_next_slot(self._monthly_check_interval))

    async def _refresh_queue_gauge(self) -> None:
        """Refresh the metric describing pending jobs."""
        try:
            count = await self.persistence.count_jobs("pending")
        except Exception:
            self.logger.exception("Failed to refresh queue gauge")
            return
        self.metrics.set_pending(count)

    async def _wait_for_stop(self, timeout: float) -> None:
        try:
            async with asyncio.timeout(max(0.0, float(timeout))):
                await self._stop.wait()
        except asyncio.TimeoutError:
            return

    async def _wait_for_wakeup(self, event: asyncio.Event, timeout: float | None) -> None:
        """Pause a loop while allowing external wake-ups via 'run now'."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(float(timeout)):
            await event.wait()
            event.clear()
            return
        timeout = max(0.0, float(timeout))
        if timeout == 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(timeout):
                await event.wait()
        except asyncio.TimeoutError:
            return
        event.clear()
