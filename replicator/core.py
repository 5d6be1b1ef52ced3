"""Studio core — explicit wiring of the processing services.

Nothing here is a process-wide singleton: every ``StudioCore`` owns its own
ledger, transport, pool and monitor, so several can run side by side.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from replicator.config import Settings
from replicator.engine.pipeline import ProcessingEngine
from replicator.jobs.dispatcher import ProgressReport, QueueDispatcher
from replicator.jobs.generations import GenerationRegistry, JsonFileGenerationRegistry
from replicator.jobs.ledger import JobLedger, JsonFileLedger
from replicator.jobs.models import InputRef, JobSettings, Operation
from replicator.jobs.transport import (
    CloudflareQueueTransport,
    InMemoryTransport,
    MessageTransport,
)
from replicator.jobs.worker_pool import WorkerPool
from replicator.monitor.metrics import AlertThresholds, MetricsAggregator, MetricsSnapshot
from replicator.storage.artifacts import ArtifactStore, LocalArtifactStore, RetryingStore

logger = structlog.get_logger()


@dataclass
class StudioCore:
    ledger: JobLedger
    store: ArtifactStore
    transport: MessageTransport
    engine: ProcessingEngine
    generations: GenerationRegistry
    dispatcher: QueueDispatcher
    pool: WorkerPool
    monitor: MetricsAggregator
    metrics_interval: float = 60.0

    # ── Lifecycle ────────────────────────────────────────

    def start(self) -> None:
        self.pool.start()
        self.monitor.start(self.metrics_interval)
        logger.info("core_started", capacity=self.pool.capacity)

    def stop(self) -> None:
        self.monitor.stop()
        self.pool.stop()
        self.transport.close()
        logger.info("core_stopped")

    def __enter__(self) -> StudioCore:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    # ── Operations exposed to callers ────────────────────

    def submit_job(
        self,
        project_id: str,
        operation: Operation | str,
        input: InputRef | dict[str, Any],
        settings: JobSettings | dict[str, Any] | None = None,
    ) -> str:
        return self.dispatcher.submit(project_id, operation, input, settings)

    def get_job_progress(self, project_id: str) -> ProgressReport:
        return self.dispatcher.get_progress(project_id)

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        return self.dispatcher.cancel(job_id)

    def requeue_job(self, job_id: str) -> str:
        return self.dispatcher.requeue_stale(job_id)

    def metrics_snapshot(self) -> MetricsSnapshot:
        return self.monitor.snapshot()

    def scale_workers(self, delta: int) -> dict[str, int]:
        self.pool.scale(delta)
        return self.pool.occupancy()


def build_core(
    settings: Settings,
    store: ArtifactStore | None = None,
    transport: MessageTransport | None = None,
    engine: ProcessingEngine | None = None,
    persistent: bool = True,
) -> StudioCore:
    """Assemble a core from ``Settings``. Any service may be passed in instead."""
    ledger: JobLedger = JsonFileLedger(settings.ledger_path) if persistent else JobLedger()
    store = RetryingStore(
        store or LocalArtifactStore(settings.artifacts_dir),
        max_retries=settings.store_max_retries,
        base_delay=settings.store_backoff_seconds,
        max_delay=settings.store_backoff_max_seconds,
    )
    if transport is None:
        if settings.transport == "cloudflare":
            transport = CloudflareQueueTransport(
                account_id=settings.cloudflare_account_id,
                queue_id=settings.cloudflare_queue_id,
                api_token=settings.cloudflare_api_token,
            )
        else:
            transport = InMemoryTransport()
    engine = engine or ProcessingEngine(cache_size=settings.engine_cache_size)
    generations = (
        JsonFileGenerationRegistry(settings.generations_path) if persistent else GenerationRegistry()
    )

    pool = WorkerPool(
        ledger,
        transport,
        engine,
        store,
        generations,
        min_instances=settings.min_instances,
        max_instances=settings.max_instances,
        initial_instances=settings.initial_instances,
        job_timeout=settings.job_timeout_seconds,
        heartbeat_interval=settings.heartbeat_interval_seconds,
        heartbeat_timeout=settings.heartbeat_timeout_seconds,
        poll_interval=settings.poll_interval_seconds,
    )
    monitor = MetricsAggregator(
        ledger,
        pool,
        AlertThresholds(
            queue_depth=settings.alert_queue_depth,
            error_rate=settings.alert_error_rate,
            latency_seconds=settings.alert_latency_seconds,
        ),
        window_seconds=settings.metrics_window_seconds,
    )
    return StudioCore(
        ledger=ledger,
        store=store,
        transport=transport,
        engine=engine,
        generations=generations,
        dispatcher=QueueDispatcher(ledger, transport, generations),
        pool=pool,
        monitor=monitor,
        metrics_interval=settings.metrics_interval_seconds,
    )
