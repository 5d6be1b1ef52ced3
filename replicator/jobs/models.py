"""Job, Generation and WorkerSlot data model."""

from __future__ import annotations

import copy
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from replicator.errors import InvalidInputError, InvalidRegionError


class Operation(str, Enum):
    PROCESS = "process"
    REPROCESS = "reprocess"
    INPAINT = "inpaint"
    EXPORT = "export"


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


IN_FLIGHT = frozenset({JobState.QUEUED, JobState.RUNNING})
TERMINAL = frozenset({JobState.COMPLETED, JobState.FAILED})


def utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ── Input references & artifacts ─────────────────────────


class InputKind(str, Enum):
    UPLOAD = "upload"
    GENERATION = "generation"
    JOB = "job"


@dataclass(frozen=True)
class InputRef:
    """Reference to the source artifact of a job (never inline bytes).

    ``ref`` is the upload URL, generation id or job id depending on ``kind``.
    ``artifact_url`` is resolved once at submission and then frozen.
    """

    kind: InputKind
    ref: str
    artifact_url: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "ref": self.ref, "artifact_url": self.artifact_url}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InputRef:
        try:
            kind = InputKind(data["kind"])
        except (KeyError, ValueError):
            raise InvalidInputError(f"Invalid input kind: {data.get('kind')!r}") from None
        ref = str(data.get("ref") or "")
        if not ref:
            raise InvalidInputError("Input reference is empty")
        return cls(kind=kind, ref=ref, artifact_url=str(data.get("artifact_url") or ""))


@dataclass(frozen=True)
class Artifact:
    url: str
    content_type: str
    size: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Artifact:
        return cls(url=data["url"], content_type=data["content_type"], size=int(data.get("size", 0)))


@dataclass(frozen=True)
class JobError:
    """Structured, human-readable failure reason."""

    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


CANCELLED = JobError(code="cancelled", message="Cancelled")


# ── Settings snapshots ───────────────────────────────────

@dataclass(frozen=True)
class ProcessSettings:
    """Restoration flags for ``process`` / ``reprocess``."""

    denoise: bool = False
    normalize: bool = False
    remove_clipping: bool = False
    enhance_stereo: bool = False
    remove_background: bool = False
    stereo_width: float = 1.3
    normalize_ceiling_db: float = -1.0
    noise_reduction_db: float = 12.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Region:
    """Inpaint region in seconds."""

    start: float
    end: float

    def to_dict(self) -> dict[str, float]:
        return {"start": self.start, "end": self.end}


@dataclass(frozen=True)
class InpaintSettings:
    regions: tuple[Region, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"regions": [r.to_dict() for r in self.regions]}


@dataclass(frozen=True)
class ExportSettings:
    format: str = "wav"

    def to_dict(self) -> dict[str, Any]:
        return {"format": self.format}


JobSettings = Union[ProcessSettings, InpaintSettings, ExportSettings]


class ProcessSettingsModel(BaseModel):
    """Wire shape of process settings.

    Strict types, so ``"false"`` is rejected rather than read as truthy.
    Accepts snake_case or the web client's camelCase keys; unknown keys are
    ignored.
    """

    model_config = ConfigDict(
        strict=True, extra="ignore", alias_generator=to_camel, populate_by_name=True
    )

    denoise: bool = False
    normalize: bool = False
    remove_clipping: bool = False
    enhance_stereo: bool = False
    remove_background: bool = False
    stereo_width: float = Field(default=1.3, ge=0.0, le=4.0)
    normalize_ceiling_db: float = Field(default=-1.0, le=0.0)
    noise_reduction_db: float = Field(default=12.0, ge=0.0)


def _process_settings(data: dict[str, Any]) -> ProcessSettings:
    try:
        model = ProcessSettingsModel.model_validate(data)
    except pydantic.ValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        fields = ", ".join(err["field"] for err in errors)
        raise InvalidInputError(f"Invalid process settings: {fields}", errors=errors) from None
    return ProcessSettings(**model.model_dump())


def _parse_regions(raw: Any) -> tuple[Region, ...]:
    if not isinstance(raw, (list, tuple)):
        raise InvalidRegionError("regions must be a list of {start, end}")
    regions = []
    for item in raw:
        try:
            regions.append(Region(start=float(item["start"]), end=float(item["end"])))
        except (KeyError, TypeError, ValueError):
            raise InvalidRegionError(f"Malformed region: {item!r}") from None
    return tuple(regions)


def settings_from_dict(operation: Operation, raw: dict[str, Any] | None) -> JobSettings:
    """Build the immutable settings snapshot for ``operation``.

    The caller's dict is deep-copied first so later mutation on their side
    cannot leak into the job. Unknown keys are ignored.
    """
    data = copy.deepcopy(raw or {})
    if operation in (Operation.PROCESS, Operation.REPROCESS):
        return _process_settings(data)
    if operation is Operation.INPAINT:
        return InpaintSettings(regions=_parse_regions(data.get("regions", [])))
    fmt = data.get("format", "wav")
    if isinstance(fmt, dict):
        # Client may send the whole format descriptor
        fmt = fmt.get("id") or fmt.get("extension") or ""
    return ExportSettings(format=str(fmt).lower())


# ── Job ──────────────────────────────────────────────────


@dataclass
class Job:
    """One asynchronous unit of audio processing work."""

    project_id: str
    operation: Operation
    input: InputRef
    settings: JobSettings
    id: str = field(default_factory=_new_id)
    state: JobState = JobState.QUEUED
    output: Artifact | None = None
    error: JobError | None = None
    progress: float = 0.0
    slot_id: str | None = None
    cancel_requested: bool = False
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "operation": self.operation.value,
            "input": self.input.to_dict(),
            "settings": self.settings.to_dict(),
            "state": self.state.value,
            "output": self.output.to_dict() if self.output else None,
            "error": self.error.to_dict() if self.error else None,
            "progress": self.progress,
            "slot_id": self.slot_id,
            "cancel_requested": self.cancel_requested,
            "created_at": _ts(self.created_at),
            "started_at": _ts(self.started_at),
            "finished_at": _ts(self.finished_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        operation = Operation(data["operation"])
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            operation=operation,
            input=InputRef.from_dict(data["input"]),
            settings=settings_from_dict(operation, data.get("settings")),
            state=JobState(data["state"]),
            output=Artifact.from_dict(data["output"]) if data.get("output") else None,
            error=JobError(**data["error"]) if data.get("error") else None,
            progress=float(data.get("progress", 0.0)),
            slot_id=data.get("slot_id"),
            cancel_requested=bool(data.get("cancel_requested", False)),
            created_at=_parse_ts(data["created_at"]) or utcnow(),
            started_at=_parse_ts(data.get("started_at")),
            finished_at=_parse_ts(data.get("finished_at")),
        )


# ── Generation ───────────────────────────────────────────


@dataclass
class Generation:
    """User-visible named result derived from a completed job."""

    project_id: str
    job_id: str
    name: str
    output: Artifact
    parent_generation_id: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "job_id": self.job_id,
            "name": self.name,
            "output": self.output.to_dict(),
            "parent_generation_id": self.parent_generation_id,
            "created_at": _ts(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Generation:
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            job_id=data["job_id"],
            name=data["name"],
            output=Artifact.from_dict(data["output"]),
            parent_generation_id=data.get("parent_generation_id"),
            created_at=_parse_ts(data.get("created_at")) or utcnow(),
        )


# ── Worker slot ──────────────────────────────────────────


@dataclass
class WorkerSlot:
    """Ephemeral, in-memory view of one pool slot."""

    slot_id: str
    job_id: str | None = None
    last_heartbeat: datetime = field(default_factory=utcnow)
    retiring: bool = False

    def touch(self) -> None:
        self.last_heartbeat = utcnow()

    @property
    def idle(self) -> bool:
        return self.job_id is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "job_id": self.job_id,
            "last_heartbeat": _ts(self.last_heartbeat),
            "retiring": self.retiring,
        }
