"""Generation registry — user-facing pointers to completed job outputs."""

from __future__ import annotations

import json
import os
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any

import structlog

from replicator.errors import NotFoundError
from replicator.jobs.models import Generation, InputKind, Job, Operation

logger = structlog.get_logger()

_SUFFIX = {
    Operation.REPROCESS: "Reprocessed",
    Operation.INPAINT: "Inpainted",
}


class GenerationRegistry:
    """Thread-safe store of generations.

    Deleting a generation only removes the pointer; the job that produced it
    stays in the ledger as an audit record.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, Generation] = {}

    def create_from_job(self, job: Job) -> Generation:
        if job.output is None:
            raise ValueError(f"Job {job.id} has no output")
        parent_id = job.input.ref if job.input.kind is InputKind.GENERATION else None
        with self._lock:
            parent = self._items.get(parent_id) if parent_id else None
            count = sum(1 for g in self._items.values() if g.project_id == job.project_id)
            generation = Generation(
                project_id=job.project_id,
                job_id=job.id,
                name=self._name_for(job, parent, count),
                output=job.output,
                parent_generation_id=parent_id,
            )
            self._items[generation.id] = generation
            self._on_change()
        logger.info(
            "generation_created",
            generation_id=generation.id,
            job_id=job.id,
            project_id=job.project_id,
        )
        return replace(generation)

    @staticmethod
    def _name_for(job: Job, parent: Generation | None, count: int) -> str:
        base = parent.name if parent else f"Processed {count + 1}"
        if job.operation is Operation.EXPORT:
            fmt = getattr(job.settings, "format", "").upper()
            return f"{base} (Export {fmt})"
        suffix = _SUFFIX.get(job.operation)
        return f"{base} ({suffix})" if suffix and parent else base

    def find(self, generation_id: str) -> Generation | None:
        with self._lock:
            generation = self._items.get(generation_id)
            return replace(generation) if generation else None

    def get(self, generation_id: str) -> Generation:
        generation = self.find(generation_id)
        if generation is None:
            raise NotFoundError(
                f"Generation {generation_id} not found", generation_id=generation_id
            )
        return generation

    def list_for_project(self, project_id: str) -> list[Generation]:
        with self._lock:
            items = [replace(g) for g in self._items.values() if g.project_id == project_id]
        return sorted(items, key=lambda g: g.created_at, reverse=True)

    def delete(self, generation_id: str, project_id: str | None = None) -> None:
        with self._lock:
            generation = self._items.get(generation_id)
            if generation is None or (project_id and generation.project_id != project_id):
                raise NotFoundError(
                    f"Generation {generation_id} not found", generation_id=generation_id
                )
            del self._items[generation_id]
            self._on_change()
        logger.info("generation_deleted", generation_id=generation_id)

    # ── Persistence hook ─────────────────────────────────

    def _on_change(self) -> None:
        """Called with the lock held after every mutation."""


class JsonFileGenerationRegistry(GenerationRegistry):
    """Registry persisted to a JSON file next to the job ledger.

    Generations only disappear through ``delete``; a restart reloads them.
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        data: dict[str, Any] = json.loads(self.path.read_text())
        for raw in data.get("generations", []):
            generation = Generation.from_dict(raw)
            self._items[generation.id] = generation
        logger.info("generations_loaded", path=str(self.path), generations=len(self._items))

    def _on_change(self) -> None:
        payload = {"generations": [g.to_dict() for g in self._items.values()]}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, indent=2))
        os.replace(tmp, self.path)
