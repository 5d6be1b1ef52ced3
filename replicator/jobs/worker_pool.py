"""Worker Pool — concurrent slots that claim and execute jobs.

Each slot is a thread. A slot never holds authoritative job state: it claims
through the ledger, runs the engine, and writes exactly one terminal outcome
back to the ledger before going idle again.

Slot loop:
  heartbeat → wait for a signal (or poll the ledger) → claim → fetch input →
  engine (bounded by the job timeout) → store output → complete + generation
"""

from __future__ import annotations

import itertools
import threading
import time
from datetime import datetime, timedelta
from typing import Any

import structlog

from replicator.engine.pipeline import EngineResult, ProcessingEngine
from replicator.errors import (
    JobCancelledError,
    JobTimeoutError,
    ReplicatorError,
    TransportError,
)
from replicator.jobs.generations import GenerationRegistry
from replicator.jobs.ledger import JobLedger
from replicator.jobs.models import CANCELLED, Artifact, Job, JobError, JobState, WorkerSlot, utcnow
from replicator.jobs.transport import MessageTransport
from replicator.storage.artifacts import ArtifactStore

logger = structlog.get_logger()


class WorkerPool:
    """Elastic set of worker slots, capacity clamped to ``[min, max]``."""

    def __init__(
        self,
        ledger: JobLedger,
        transport: MessageTransport,
        engine: ProcessingEngine,
        store: ArtifactStore,
        generations: GenerationRegistry,
        min_instances: int = 1,
        max_instances: int = 10,
        initial_instances: int | None = None,
        job_timeout: float = 600.0,
        heartbeat_interval: float = 5.0,
        heartbeat_timeout: float = 60.0,
        poll_interval: float = 0.5,
    ) -> None:
        if min_instances < 0 or max_instances < max(min_instances, 1):
            raise ValueError(f"Invalid capacity bounds [{min_instances}, {max_instances}]")
        self.ledger = ledger
        self.transport = transport
        self.engine = engine
        self.store = store
        self.generations = generations
        self.min_instances = min_instances
        self.max_instances = max_instances
        self.job_timeout = job_timeout
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.poll_interval = poll_interval

        self._lock = threading.Lock()
        self._slots: dict[str, WorkerSlot] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._ids = itertools.count(1)
        self._stopping = threading.Event()
        self._running = False
        self._capacity = self._clamp(
            initial_instances if initial_instances is not None else min_instances
        )

    # ── Lifecycle ────────────────────────────────────────

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._stopping.clear()
            self._reconcile()
        logger.info("pool_started", capacity=self._capacity)

    def stop(self, timeout: float = 10.0) -> None:
        """Stop every slot. Jobs still running after ``timeout`` stay ``running``."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._stopping.set()
            # Slots still busy after the timeout must not rejoin a later start()
            for slot in self._slots.values():
                slot.retiring = True
            threads = list(self._threads.values())
        deadline = time.monotonic() + timeout
        for thread in threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        abandoned = [t.name for t in threads if t.is_alive()]
        if abandoned:
            logger.warning("pool_stop_abandoned", slots=abandoned)
        logger.info("pool_stopped")

    def __enter__(self) -> WorkerPool:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    # ── Capacity ─────────────────────────────────────────

    @property
    def capacity(self) -> int:
        return self._capacity

    def _clamp(self, n: int) -> int:
        return max(self.min_instances, min(self.max_instances, n))

    def set_capacity(self, n: int) -> int:
        """Set the slot count, clamped to ``[min, max]``. Returns the new capacity."""
        with self._lock:
            previous = self._capacity
            self._capacity = self._clamp(n)
            if self._running:
                self._reconcile()
            capacity = self._capacity
        if capacity != previous:
            logger.info("pool_capacity_changed", previous=previous, capacity=capacity, requested=n)
        return capacity

    def scale(self, delta: int) -> int:
        """External +1/-1 scaling signal."""
        return self.set_capacity(self._capacity + delta)

    def _reconcile(self) -> None:
        """Spawn or retire slots to match capacity. Caller holds the lock."""
        live = [s for s in self._slots.values() if not s.retiring]
        for _ in range(self._capacity - len(live)):
            self._spawn()
        excess = len(live) - self._capacity
        if excess > 0:
            # Idle slots go first; busy ones leave after their current job
            for slot in sorted(live, key=lambda s: not s.idle)[:excess]:
                slot.retiring = True
                logger.info("slot_retiring", slot_id=slot.slot_id, busy=not slot.idle)

    def _spawn(self) -> None:
        slot = WorkerSlot(slot_id=f"slot-{next(self._ids)}")
        thread = threading.Thread(
            target=self._run_slot, args=(slot,), name=slot.slot_id, daemon=True
        )
        self._slots[slot.slot_id] = slot
        self._threads[slot.slot_id] = thread
        thread.start()

    # ── Introspection ────────────────────────────────────

    def occupancy(self) -> dict[str, int]:
        with self._lock:
            live = [s for s in self._slots.values() if not s.retiring]
            active = sum(1 for s in self._slots.values() if not s.idle)
            return {
                "capacity": self._capacity,
                "slots": len(live),
                "active": active,
                "idle": sum(1 for s in live if s.idle),
                "min": self.min_instances,
                "max": self.max_instances,
            }

    def slots(self) -> list[WorkerSlot]:
        with self._lock:
            return [
                WorkerSlot(s.slot_id, s.job_id, s.last_heartbeat, s.retiring)
                for s in self._slots.values()
            ]

    def stale_slots(self, now: datetime | None = None) -> list[WorkerSlot]:
        """Slots whose last heartbeat is older than the heartbeat timeout."""
        cutoff = (now or utcnow()) - timedelta(seconds=self.heartbeat_timeout)
        return [s for s in self.slots() if s.last_heartbeat < cutoff]

    def stale_jobs(self, now: datetime | None = None) -> list[Job]:
        """Running jobs whose slot is stale or no longer exists.

        These are candidates for an operator ``requeue``; nothing here
        resets them automatically.
        """
        healthy = {s.slot_id for s in self.slots()} - {
            s.slot_id for s in self.stale_slots(now)
        }
        return [j for j in self.ledger.jobs(JobState.RUNNING) if j.slot_id not in healthy]

    # ── Slot loop ────────────────────────────────────────

    def _heartbeat(self, slot: WorkerSlot) -> None:
        with self._lock:
            slot.touch()

    def _run_slot(self, slot: WorkerSlot) -> None:
        log = logger.bind(slot_id=slot.slot_id)
        log.debug("slot_started")
        try:
            while not self._stopping.is_set() and not slot.retiring:
                self._heartbeat(slot)
                try:
                    job = self._next_job(slot)
                    if job is not None:
                        self._execute(slot, job)
                except Exception as e:
                    # The slot stays up; whatever it still owns is failed
                    log.exception("slot_error")
                    self._release_owned(slot, str(e) or type(e).__name__, log)
                    self._stopping.wait(self.poll_interval)
        finally:
            with self._lock:
                self._slots.pop(slot.slot_id, None)
                self._threads.pop(slot.slot_id, None)
            log.debug("slot_exited")

    def _release_owned(self, slot: WorkerSlot, reason: str, log: Any) -> None:
        """Best-effort terminal write for running jobs still held by ``slot``."""
        error = JobError(code="internal_error", message=reason)
        try:
            for job in self.ledger.jobs(JobState.RUNNING):
                if job.slot_id == slot.slot_id:
                    self._fail(job, slot, error, log)
        except Exception:
            log.exception("slot_release_failed")

    def _next_job(self, slot: WorkerSlot) -> Job | None:
        try:
            message = self.transport.dequeue(timeout=self.poll_interval)
        except TransportError as e:
            logger.warning("transport_dequeue_failed", slot_id=slot.slot_id, error=str(e))
            self._stopping.wait(self.poll_interval)
            message = None

        if message is not None:
            job_id = message.body.get("job_id")
            job = self.ledger.claim(job_id, slot.slot_id) if job_id else None
            try:
                self.transport.ack(message)
            except TransportError as e:
                logger.warning("transport_ack_failed", message_id=message.id, error=str(e))
            if job is not None:
                return job
            # Duplicate or stale signal: the ledger already moved on
            logger.debug("job_signal_ignored", job_id=job_id, attempts=message.attempts)

        if self._stopping.is_set() or slot.retiring:
            return None
        return self.ledger.claim_next(slot.slot_id)

    def _execute(self, slot: WorkerSlot, job: Job) -> None:
        """Run one claimed job. Always writes a terminal outcome or discards it."""
        with self._lock:
            slot.job_id = job.id
        log = logger.bind(job_id=job.id, project_id=job.project_id, slot_id=slot.slot_id)
        log.info("job_started", operation=job.operation.value)
        started = time.monotonic()
        try:
            output = self._process(slot, job)
        except JobCancelledError:
            self._fail(job, slot, CANCELLED, log)
        except ReplicatorError as e:
            self._fail(job, slot, JobError(code=e.code, message=e.message), log)
        except Exception as e:
            log.exception("job_crashed")
            self._fail(job, slot, JobError(code="internal_error", message=str(e) or type(e).__name__), log)
        else:
            if self.ledger.complete(job.id, output, slot_id=slot.slot_id):
                finished = self.ledger.get(job.id)
                generation = self.generations.create_from_job(finished)
                log.info(
                    "job_completed",
                    output=output.url,
                    generation_id=generation.id,
                    elapsed=round(time.monotonic() - started, 3),
                )
            else:
                log.warning("job_result_discarded")
        finally:
            with self._lock:
                slot.job_id = None
                slot.touch()

    def _fail(self, job: Job, slot: WorkerSlot, error: JobError, log: Any) -> None:
        if self.ledger.fail(job.id, error, slot_id=slot.slot_id):
            log.warning("job_failed", code=error.code, error=error.message)
        else:
            log.warning("job_failure_discarded", code=error.code)

    def _process(self, slot: WorkerSlot, job: Job) -> Artifact:
        data = self.store.get(job.input.artifact_url)
        result = self._run_engine(slot, job, data)
        url = self.store.put(result.data, result.content_type)
        return Artifact(url=url, content_type=result.content_type, size=len(result.data))

    def _run_engine(self, slot: WorkerSlot, job: Job, data: bytes) -> EngineResult:
        """Run the engine in a helper thread bounded by ``job_timeout``.

        The slot keeps heartbeating while it waits. On timeout the helper is
        abandoned: its next progress checkpoint aborts it and any late result
        is dropped.
        """
        abandoned = threading.Event()
        outcome: dict[str, Any] = {}

        def _progress(fraction: float) -> None:
            if abandoned.is_set() or self.ledger.is_cancel_requested(job.id):
                raise JobCancelledError("Cancelled", job_id=job.id)
            self.ledger.report_progress(job.id, fraction)

        def _target() -> None:
            try:
                outcome["result"] = self.engine.run(job.operation, data, job.settings, _progress)
            except Exception as e:
                outcome["error"] = e

        runner = threading.Thread(target=_target, name=f"{slot.slot_id}-engine", daemon=True)
        runner.start()
        deadline = time.monotonic() + self.job_timeout
        while runner.is_alive():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            runner.join(min(self.heartbeat_interval, remaining))
            self._heartbeat(slot)

        if runner.is_alive():
            abandoned.set()
            raise JobTimeoutError(
                f"Processing exceeded {self.job_timeout:g}s", timeout_seconds=self.job_timeout
            )
        if "error" in outcome:
            raise outcome["error"]
        return outcome["result"]
