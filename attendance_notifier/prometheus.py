"""Prometheus metrics exposed by the notification worker."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest


class NotifierMetrics:
    """Wrapper around the Prometheus registry used by the worker."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("atn_sent_total", "Total delivered notifications", ["kind"], registry=self.registry)
        self.failed = Counter("atn_failed_total", "Total failed notifications", ["kind"], registry=self.registry)
        self.retried = Counter("atn_retried_total", "Total notifications returned to the queue", ["reason"], registry=self.registry)
        self.reclaimed = Counter("atn_reclaimed_total", "Total stuck jobs reset to pending", registry=self.registry)
        self.recap_jobs = Counter("atn_recap_jobs_total", "Total recap jobs enqueued", ["schedule"], registry=self.registry)
        self.pending = Gauge("atn_pending_jobs", "Current pending jobs", registry=self.registry)
        self.session_open = Gauge("atn_session_open", "1 when the WhatsApp session is open", registry=self.registry)

    def inc_sent(self, kind: str):
        """Increase the ``sent`` counter; ``kind`` is ``text`` or ``document``."""
        self.sent.labels(kind=kind or "text").inc()

    def inc_failed(self, kind: str):
        self.failed.labels(kind=kind or "text").inc()

    def inc_retried(self, reason: str):
        self.retried.labels(reason=reason or "unknown").inc()

    def inc_reclaimed(self, count: int = 1):
        if count > 0:
            self.reclaimed.inc(count)

    def inc_recap_jobs(self, schedule: str, count: int = 1):
        if count > 0:
            self.recap_jobs.labels(schedule=schedule).inc(count)

    def set_pending(self, value: int):
        """Update the gauge tracking pending jobs."""
        self.pending.set(value)

    def set_session_open(self, is_open: bool):
        self.session_open.set(1 if is_open else 0)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
