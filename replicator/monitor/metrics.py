"""Monitor — periodic sampling of queue depth, occupancy and error rate.

Alerts are discrete events handed to an external sink. They are
edge-triggered per metric: one alert when a metric crosses its threshold,
none while it stays above, and the metric re-arms once it recovers.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog

from replicator.jobs.ledger import JobLedger
from replicator.jobs.models import CANCELLED, JobState, utcnow
from replicator.jobs.worker_pool import WorkerPool

logger = structlog.get_logger()


@dataclass(frozen=True)
class AlertThresholds:
    queue_depth: float = 1000
    error_rate: float = 0.05
    latency_seconds: float = 30.0


@dataclass(frozen=True)
class MetricsSnapshot:
    queue_depth: int = 0
    active_workers: int = 0
    capacity: int = 0
    error_rate: float = 0.0
    avg_latency_seconds: float = 0.0
    finished_jobs: int = 0
    last_sample_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue_depth": self.queue_depth,
            "active_workers": self.active_workers,
            "capacity": self.capacity,
            "error_rate": round(self.error_rate, 4),
            "avg_latency_seconds": round(self.avg_latency_seconds, 3),
            "finished_jobs": self.finished_jobs,
            "last_sample_at": self.last_sample_at.isoformat() if self.last_sample_at else None,
        }


@dataclass(frozen=True)
class Alert:
    metric: str
    value: float
    threshold: float
    severity: str
    raised_at: datetime = field(default_factory=utcnow)

    @property
    def message(self) -> str:
        return f"{self.metric} threshold exceeded: {self.value:g} (threshold: {self.threshold:g})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "system_alert",
            "metric": self.metric,
            "value": self.value,
            "threshold": self.threshold,
            "severity": self.severity,
            "message": self.message,
            "raised_at": self.raised_at.isoformat(),
        }


AlertSink = Callable[[Alert], None]


def alert_severity(value: float, threshold: float) -> str:
    """Grade by relative deviation above the threshold."""
    if threshold <= 0:
        return "critical"
    deviation = (value - threshold) / threshold
    if deviation > 0.5:
        return "critical"
    if deviation > 0.25:
        return "high"
    if deviation > 0.1:
        return "medium"
    return "low"


def log_alert(alert: Alert) -> None:
    logger.warning("alert_raised", **alert.to_dict())


class MetricsAggregator:
    def __init__(
        self,
        ledger: JobLedger,
        pool: WorkerPool | None = None,
        thresholds: AlertThresholds | None = None,
        alert_sink: AlertSink | None = None,
        window_seconds: float = 900.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ledger = ledger
        self.pool = pool
        self.thresholds = thresholds or AlertThresholds()
        self.alert_sink = alert_sink or log_alert
        self.window = timedelta(seconds=window_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._snapshot = MetricsSnapshot()
        self._breached: set[str] = set()
        self._alerts: deque[Alert] = deque(maxlen=100)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # ── Sampling ─────────────────────────────────────────

    def sample(self) -> MetricsSnapshot:
        now = self._clock()
        # Cancellations are user actions, not errors
        finished = [
            j for j in self.ledger.finished_since(now - self.window) if j.error != CANCELLED
        ]
        failed = sum(1 for j in finished if j.state is JobState.FAILED)
        latencies = [
            (j.finished_at - j.started_at).total_seconds()
            for j in finished
            if j.started_at is not None and j.finished_at is not None
        ]
        occupancy = self.pool.occupancy() if self.pool else {"active": 0, "capacity": 0}

        snapshot = MetricsSnapshot(
            queue_depth=self.ledger.queue_depth(),
            active_workers=occupancy["active"],
            capacity=occupancy["capacity"],
            error_rate=failed / len(finished) if finished else 0.0,
            avg_latency_seconds=sum(latencies) / len(latencies) if latencies else 0.0,
            finished_jobs=len(finished),
            last_sample_at=now,
        )
        with self._lock:
            self._snapshot = snapshot
        self._evaluate(snapshot)
        return snapshot

    def snapshot(self) -> MetricsSnapshot:
        """Last sampled values. Never triggers a sample."""
        with self._lock:
            return self._snapshot

    # ── Alerts ───────────────────────────────────────────

    def _evaluate(self, snapshot: MetricsSnapshot) -> None:
        checks = (
            ("queue_depth", float(snapshot.queue_depth), self.thresholds.queue_depth),
            ("error_rate", snapshot.error_rate, self.thresholds.error_rate),
            ("avg_latency_seconds", snapshot.avg_latency_seconds, self.thresholds.latency_seconds),
        )
        raised: list[Alert] = []
        with self._lock:
            for metric, value, threshold in checks:
                if value > threshold:
                    if metric in self._breached:
                        continue
                    self._breached.add(metric)
                    alert = Alert(
                        metric=metric,
                        value=value,
                        threshold=threshold,
                        severity=alert_severity(value, threshold),
                        raised_at=snapshot.last_sample_at or self._clock(),
                    )
                    self._alerts.append(alert)
                    raised.append(alert)
                elif metric in self._breached:
                    self._breached.discard(metric)
                    logger.info("alert_recovered", metric=metric, value=value, threshold=threshold)

        for alert in raised:
            try:
                self.alert_sink(alert)
            except Exception as e:
                logger.error("alert_delivery_failed", metric=alert.metric, error=str(e))

    def alerts(self) -> list[Alert]:
        with self._lock:
            return list(self._alerts)

    def health(self) -> dict[str, Any]:
        """``healthy`` with no breach, ``degraded`` with one, else ``critical``."""
        with self._lock:
            issues = sorted(self._breached)
        if not issues:
            status = "healthy"
        elif len(issues) < 2:
            status = "degraded"
        else:
            status = "critical"
        return {"status": status, "issues": issues}

    # ── Background loop ──────────────────────────────────

    def start(self, interval: float = 60.0) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, args=(interval,), name="metrics-sampler", daemon=True
        )
        self._thread.start()
        logger.info("metrics_sampler_started", interval=interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self, interval: float) -> None:
        while not self._stop.is_set():
            try:
                self.sample()
            except Exception:
                logger.exception("metrics_sample_failed")
            self._stop.wait(interval)
