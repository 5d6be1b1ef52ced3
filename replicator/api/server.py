"""REPLICATOR FastAPI server — HTTP boundary over the processing core.

Run with ``replicator-server`` or
``uvicorn --factory replicator.api.server:create_app``. Callers are trusted:
authentication and rate limiting happen in front of this app.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from replicator import __version__
from replicator.config import settings as default_settings
from replicator.core import StudioCore, build_core
from replicator.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ReplicatorError,
    ValidationError,
)


class JobRequest(BaseModel):
    operation: str
    input: dict[str, Any]
    settings: dict[str, Any] = Field(default_factory=dict)


class ScaleRequest(BaseModel):
    action: Literal["up", "down"] | None = None
    capacity: int | None = None


def _status_for(exc: ReplicatorError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (ConflictError, InvalidStateError)):
        return 409
    if isinstance(exc, ValidationError):
        return 422
    return 500


def create_app(core: StudioCore | None = None) -> FastAPI:
    """Build the app around ``core`` (or one built from environment settings).

    The core's pool and monitor run for the lifetime of the app.
    """
    core = core or build_core(default_settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        core.start()
        try:
            yield
        finally:
            core.stop()

    app = FastAPI(
        title="REPLICATOR",
        description="Replicator Studio audio processing core",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.core = core

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ReplicatorError)
    async def replicator_error(_: Request, exc: ReplicatorError) -> JSONResponse:
        return JSONResponse(
            status_code=_status_for(exc),
            content={"detail": exc.message, "error": exc.to_dict()},
        )

    # ── Public routes ──
    @app.get("/health")
    def health() -> dict[str, object]:
        """Health check endpoint."""
        return {"status": "ok", "service": "replicator", "monitor": core.monitor.health()}

    # ── Jobs ──
    @app.post("/api/projects/{project_id}/jobs", status_code=202)
    def submit_job(project_id: str, req: JobRequest) -> dict[str, str]:
        """Queue a process / reprocess / inpaint / export job."""
        job_id = core.submit_job(project_id, req.operation, req.input, req.settings)
        return {"job_id": job_id, "state": "queued"}

    @app.get("/api/projects/{project_id}/progress")
    def get_progress(project_id: str) -> dict[str, Any]:
        """State, percent and ETA of the project's current or latest job."""
        return core.get_job_progress(project_id).to_dict()

    @app.get("/api/jobs/{job_id}")
    def get_job(job_id: str) -> dict[str, Any]:
        return core.ledger.get(job_id).to_dict()

    @app.post("/api/jobs/{job_id}/cancel")
    def cancel_job(job_id: str, force: bool = False) -> dict[str, Any]:
        """Cancel a queued job; ``force`` also signals a running one."""
        if force:
            return core.dispatcher.request_stop(job_id)
        return core.cancel_job(job_id)

    @app.post("/api/jobs/{job_id}/requeue")
    def requeue_job(job_id: str) -> dict[str, str]:
        """Operator recovery for a job stuck on a dead slot."""
        return {"job_id": core.requeue_job(job_id), "state": "queued"}

    # ── Generations ──
    @app.get("/api/projects/{project_id}/generations")
    def list_generations(project_id: str) -> dict[str, Any]:
        items = core.generations.list_for_project(project_id)
        return {"generations": [g.to_dict() for g in items]}

    @app.delete("/api/projects/{project_id}/generations/{generation_id}")
    def delete_generation(project_id: str, generation_id: str) -> dict[str, str]:
        core.generations.delete(generation_id, project_id=project_id)
        return {"deleted": generation_id}

    # ── Artifacts ──
    @app.post("/api/artifacts", status_code=201)
    async def upload_artifact(file: UploadFile = File(...)) -> dict[str, Any]:  # noqa: B008
        """Store a raw upload and return the URL to use as job input."""
        data = await file.read()
        if not data:
            raise ValidationError("Uploaded file is empty")
        content_type = file.content_type or "application/octet-stream"
        url = core.store.put(data, content_type)
        return {"url": url, "content_type": content_type, "size": len(data)}

    # ── Monitoring & scaling ──
    @app.get("/api/monitoring/metrics")
    def get_metrics() -> dict[str, Any]:
        return {
            **core.metrics_snapshot().to_dict(),
            "alerts": [a.to_dict() for a in core.monitor.alerts()],
        }

    @app.get("/api/workers")
    def get_workers() -> dict[str, Any]:
        return {
            **core.pool.occupancy(),
            "workers": [s.to_dict() for s in core.pool.slots()],
            "stale_jobs": [j.id for j in core.pool.stale_jobs()],
        }

    @app.post("/api/workers/scale")
    def scale_workers(req: ScaleRequest) -> dict[str, int]:
        """External scaling signal: ``up``/``down`` by one, or an absolute capacity."""
        if req.capacity is not None:
            core.pool.set_capacity(req.capacity)
            return core.pool.occupancy()
        if req.action is None:
            raise ValidationError("Either action or capacity is required")
        return core.scale_workers(1 if req.action == "up" else -1)

    return app


def main() -> None:
    """Serve the app with uvicorn on the configured host and port."""
    import uvicorn

    uvicorn.run(create_app(), host=default_settings.host, port=default_settings.port)
