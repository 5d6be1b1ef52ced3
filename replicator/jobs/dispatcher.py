"""Queue Dispatcher — job submission, progress and cancellation.

Submission writes the job to the ledger first and only then signals the
pool through the transport. The signal is best effort: idle slots also poll
the ledger, so a lost signal delays a job but never strands it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from replicator.engine.export import resolve_format
from replicator.engine.inpaint import validate_regions
from replicator.errors import InvalidInputError, NotFoundError, TransportError
from replicator.jobs.generations import GenerationRegistry
from replicator.jobs.ledger import JobLedger
from replicator.jobs.models import (
    ExportSettings,
    InpaintSettings,
    InputKind,
    InputRef,
    Job,
    JobSettings,
    JobState,
    Operation,
    settings_from_dict,
    utcnow,
)
from replicator.jobs.transport import MessageTransport

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProgressReport:
    """Snapshot returned by ``get_progress``.

    ``percent`` is None for failed jobs; ``eta`` is seconds remaining, only
    known while running with some progress reported.
    """

    job_id: str
    state: JobState
    percent: float | None
    eta: float | None = None
    error: dict[str, str] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "state": self.state.value,
            "percent": self.percent,
            "eta": self.eta,
            "error": self.error,
        }


def _parse_operation(operation: Operation | str) -> Operation:
    try:
        return Operation(operation)
    except ValueError:
        raise InvalidInputError(
            f"Unknown operation: {operation!r}",
            supported=[op.value for op in Operation],
        ) from None


class QueueDispatcher:
    def __init__(
        self,
        ledger: JobLedger,
        transport: MessageTransport,
        generations: GenerationRegistry,
    ) -> None:
        self.ledger = ledger
        self.transport = transport
        self.generations = generations

    # ── Submission ───────────────────────────────────────

    def submit(
        self,
        project_id: str,
        operation: Operation | str,
        input: InputRef | dict[str, Any],
        settings: JobSettings | dict[str, Any] | None = None,
    ) -> str:
        """Create a ``queued`` job and signal the pool. Returns the job id.

        Raises ``ConflictError`` while the project has a job in flight,
        ``NotFoundError`` for a missing or deleted input generation/job, and
        ``InvalidRegionError``/``UnsupportedFormatError``/``InvalidInputError`` for
        bad or mistyped settings.
        """
        if not project_id:
            raise InvalidInputError("project_id is required")
        op = _parse_operation(operation)
        ref = input if isinstance(input, InputRef) else InputRef.from_dict(input)
        snapshot = self._snapshot_settings(op, settings)
        resolved = self._resolve_input(project_id, op, ref)

        job = self.ledger.create(
            Job(project_id=project_id, operation=op, input=resolved, settings=snapshot)
        )
        logger.info(
            "job_submitted",
            job_id=job.id,
            project_id=project_id,
            operation=op.value,
            input_kind=resolved.kind.value,
        )
        self._signal(job.id)
        return job.id

    def _snapshot_settings(
        self, op: Operation, settings: JobSettings | dict[str, Any] | None
    ) -> JobSettings:
        # Always rebuild from a dict so the job never shares state with the caller
        raw = settings.to_dict() if hasattr(settings, "to_dict") else settings
        snapshot = settings_from_dict(op, raw)
        if isinstance(snapshot, InpaintSettings):
            # Bounds against the real duration are checked again by the engine
            validate_regions(snapshot.regions)
        elif isinstance(snapshot, ExportSettings):
            resolve_format(snapshot.format)
        return snapshot

    def _resolve_input(self, project_id: str, op: Operation, ref: InputRef) -> InputRef:
        """Freeze the artifact URL the job will read."""
        if ref.kind is InputKind.UPLOAD:
            if op is Operation.REPROCESS:
                raise InvalidInputError("reprocess needs a generation or job as input")
            return InputRef(kind=ref.kind, ref=ref.ref, artifact_url=ref.ref)

        if ref.kind is InputKind.GENERATION:
            generation = self.generations.find(ref.ref)
            if generation is None or generation.project_id != project_id:
                raise NotFoundError(
                    f"Input generation {ref.ref} not found", generation_id=ref.ref
                )
            return InputRef(kind=ref.kind, ref=ref.ref, artifact_url=generation.output.url)

        source = self.ledger.find(ref.ref)
        if source is None or source.project_id != project_id:
            raise NotFoundError(f"Input job {ref.ref} not found", job_id=ref.ref)
        if source.state is not JobState.COMPLETED or source.output is None:
            raise InvalidInputError(
                f"Input job {ref.ref} has no output (state={source.state.value})",
                job_id=ref.ref,
            )
        return InputRef(kind=ref.kind, ref=ref.ref, artifact_url=source.output.url)

    def _signal(self, job_id: str) -> None:
        try:
            self.transport.enqueue({"job_id": job_id})
        except TransportError as e:
            logger.warning("job_signal_failed", job_id=job_id, error=str(e))

    # ── Progress ─────────────────────────────────────────

    def get_progress(self, project_id: str) -> ProgressReport:
        job = self.ledger.latest_for_project(project_id)
        if job is None:
            raise NotFoundError(f"No jobs for project {project_id}", project_id=project_id)

        if job.state is JobState.QUEUED:
            return ProgressReport(job_id=job.id, state=job.state, percent=0.0)
        if job.state is JobState.COMPLETED:
            return ProgressReport(job_id=job.id, state=job.state, percent=100.0, eta=0.0)
        if job.state is JobState.FAILED:
            return ProgressReport(
                job_id=job.id,
                state=job.state,
                percent=None,
                error=job.error.to_dict() if job.error else None,
            )

        eta = None
        if job.started_at is not None and 0.0 < job.progress < 1.0:
            elapsed = (utcnow() - job.started_at).total_seconds()
            eta = round(elapsed * (1.0 - job.progress) / job.progress, 1)
        return ProgressReport(
            job_id=job.id, state=job.state, percent=round(job.progress * 100, 1), eta=eta
        )

    # ── Cancellation & recovery ──────────────────────────

    def cancel(self, job_id: str) -> dict[str, Any]:
        """Cancel a ``queued`` job. Anything else raises ``InvalidStateError``."""
        job = self.ledger.cancel(job_id)
        logger.info("job_cancelled", job_id=job_id, project_id=job.project_id)
        return {"job_id": job_id, "state": job.state.value, "cancelled": True}

    def request_stop(self, job_id: str) -> dict[str, Any]:
        """Best-effort cancellation that also reaches a ``running`` job.

        A running engine stops at its next progress checkpoint; if it
        completes first, the completion wins.
        """
        job = self.ledger.cancel(job_id, allow_running=True)
        logger.info("job_stop_requested", job_id=job_id, state=job.state.value)
        return {
            "job_id": job_id,
            "state": job.state.value,
            "cancelled": job.state is JobState.FAILED,
            "stop_requested": job.cancel_requested,
        }

    def requeue_stale(self, job_id: str) -> str:
        """Operator action: reset a stale ``running`` job and re-signal it."""
        job = self.ledger.requeue(job_id)
        self._signal(job.id)
        return job.id
