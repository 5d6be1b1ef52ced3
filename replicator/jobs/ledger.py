"""Job Ledger — the single source of truth for job state.

Every state transition goes through one lock, which makes the claim
(``queued → running``) exclusive across all worker slots and keeps the
one-job-in-flight-per-project invariant atomic with job creation.
Callers always receive copies; nothing outside the ledger holds a live Job.
"""

from __future__ import annotations

import json
import os
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from replicator.errors import ConflictError, InvalidStateError, NotFoundError
from replicator.jobs.models import (
    CANCELLED,
    IN_FLIGHT,
    Artifact,
    Job,
    JobError,
    JobState,
    utcnow,
)

logger = structlog.get_logger()


class JobLedger:
    """In-memory, thread-safe job table."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._jobs: dict[str, Job] = {}
        # project_id -> job id currently queued or running
        self._active: dict[str, str] = {}

    # ── Creation & lookup ────────────────────────────────

    def create(self, job: Job) -> Job:
        """Record a new ``queued`` job, or raise ``ConflictError``."""
        with self._lock:
            current = self._active.get(job.project_id)
            if current is not None:
                raise ConflictError(
                    f"Project {job.project_id} already has job {current} in flight",
                    project_id=job.project_id,
                    job_id=current,
                )
            stored = replace(job, state=JobState.QUEUED)
            self._jobs[stored.id] = stored
            self._active[stored.project_id] = stored.id
            self._on_change()
            return replace(stored)

    def find(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def get(self, job_id: str) -> Job:
        job = self.find(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found", job_id=job_id)
        return job

    def latest_for_project(self, project_id: str) -> Job | None:
        with self._lock:
            active = self._active.get(project_id)
            if active is not None:
                return replace(self._jobs[active])
            latest: Job | None = None
            for job in self._jobs.values():
                if job.project_id == project_id and (
                    latest is None or job.created_at >= latest.created_at
                ):
                    latest = job
            return replace(latest) if latest else None

    def jobs(
        self, state: JobState | None = None, project_id: str | None = None
    ) -> list[Job]:
        with self._lock:
            selected = [
                replace(j)
                for j in self._jobs.values()
                if (state is None or j.state is state)
                and (project_id is None or j.project_id == project_id)
            ]
        return sorted(selected, key=lambda j: j.created_at)

    def queue_depth(self) -> int:
        with self._lock:
            return sum(1 for j in self._jobs.values() if j.state is JobState.QUEUED)

    def finished_since(self, since: datetime) -> list[Job]:
        with self._lock:
            return [
                replace(j)
                for j in self._jobs.values()
                if j.finished_at is not None and j.finished_at >= since
            ]

    # ── Transitions ──────────────────────────────────────

    def claim(self, job_id: str, slot_id: str) -> Job | None:
        """Conditionally move ``queued → running``. Only one caller wins."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state is not JobState.QUEUED:
                return None
            return self._start(job, slot_id)

    def claim_next(self, slot_id: str) -> Job | None:
        """Claim the oldest queued job (FIFO by submission)."""
        with self._lock:
            for job in self._jobs.values():
                if job.state is JobState.QUEUED:
                    return self._start(job, slot_id)
            return None

    def _start(self, job: Job, slot_id: str) -> Job:
        job.state = JobState.RUNNING
        job.slot_id = slot_id
        job.started_at = utcnow()
        job.progress = 0.0
        self._on_change()
        logger.info("job_claimed", job_id=job.id, slot_id=slot_id)
        return replace(job)

    def report_progress(self, job_id: str, fraction: float) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state is not JobState.RUNNING:
                return False
            job.progress = max(job.progress, min(max(fraction, 0.0), 1.0))
            return True

    def complete(self, job_id: str, output: Artifact, slot_id: str | None = None) -> bool:
        """Terminal success. Returns False if another outcome landed first.

        With ``slot_id`` the write only lands if that slot still owns the job,
        so a slot whose job was requeued cannot finish it a second time.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state is not JobState.RUNNING:
                return False
            if slot_id is not None and job.slot_id != slot_id:
                return False
            job.state = JobState.COMPLETED
            job.output = output
            job.progress = 1.0
            self._finish(job)
            return True

    def fail(self, job_id: str, error: JobError, slot_id: str | None = None) -> bool:
        """Terminal failure. Returns False if the job is already terminal."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state not in IN_FLIGHT:
                return False
            if slot_id is not None and job.slot_id != slot_id:
                return False
            job.state = JobState.FAILED
            job.error = error
            self._finish(job)
            return True

    def _finish(self, job: Job) -> None:
        job.finished_at = utcnow()
        if self._active.get(job.project_id) == job.id:
            del self._active[job.project_id]
        self._on_change()

    def cancel(self, job_id: str, allow_running: bool = False) -> Job:
        """Cancel a queued job; optionally flag a running one.

        Running cancellation only sets ``cancel_requested``; the slot decides
        whether the engine stops before finishing.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found", job_id=job_id)
            if job.state is JobState.QUEUED:
                job.state = JobState.FAILED
                job.error = CANCELLED
                self._finish(job)
            elif job.state is JobState.RUNNING and allow_running:
                job.cancel_requested = True
                self._on_change()
            else:
                raise InvalidStateError(
                    f"Job {job_id} cannot be cancelled in state {job.state.value}",
                    job_id=job_id,
                    state=job.state.value,
                )
            return replace(job)

    def is_cancel_requested(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            return bool(job and job.cancel_requested)

    def requeue(self, job_id: str) -> Job:
        """Operator recovery: reset a stale ``running`` job to ``queued``."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found", job_id=job_id)
            if job.state is not JobState.RUNNING:
                raise InvalidStateError(
                    f"Only running jobs can be requeued (state={job.state.value})",
                    job_id=job_id,
                    state=job.state.value,
                )
            job.state = JobState.QUEUED
            job.slot_id = None
            job.started_at = None
            job.progress = 0.0
            job.cancel_requested = False
            self._on_change()
            logger.warning("job_requeued", job_id=job_id, project_id=job.project_id)
            return replace(job)

    # ── Persistence hook ─────────────────────────────────

    def _on_change(self) -> None:
        """Called with the lock held after every mutation."""


class JsonFileLedger(JobLedger):
    """Ledger persisted to a JSON file after every mutation.

    Jobs found ``running`` on load are left running (stale): a crashed slot
    may have produced output, so only an operator requeue resumes them.
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        data: dict[str, Any] = json.loads(self.path.read_text())
        stale = 0
        for raw in data.get("jobs", []):
            job = Job.from_dict(raw)
            self._jobs[job.id] = job
            if job.state in IN_FLIGHT:
                self._active[job.project_id] = job.id
            if job.state is JobState.RUNNING:
                stale += 1
        logger.info("ledger_loaded", path=str(self.path), jobs=len(self._jobs), stale_running=stale)

    def _on_change(self) -> None:
        payload = {"jobs": [j.to_dict() for j in self._jobs.values()]}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, indent=2))
        os.replace(tmp, self.path)
