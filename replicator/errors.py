"""REPLICATOR error taxonomy.

Validation errors are caller mistakes and surface immediately. Runtime
errors are recorded on the failed job as a ``JobError`` with the same code.
"""

from __future__ import annotations

from typing import Any


class ReplicatorError(Exception):
    """Base class for every error raised by the processing core."""

    code = "internal_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


# ── Validation ───────────────────────────────────────────


class ValidationError(ReplicatorError):
    code = "validation_error"


class ConflictError(ValidationError):
    """The project already has a job in flight."""

    code = "conflict"


class InvalidRegionError(ValidationError):
    code = "invalid_region"


class UnsupportedFormatError(ValidationError):
    code = "unsupported_format"


class InvalidInputError(ValidationError):
    code = "invalid_input"


# ── Lookup / state ───────────────────────────────────────


class NotFoundError(ReplicatorError):
    code = "not_found"


class InvalidStateError(ReplicatorError):
    code = "invalid_state"


# ── Runtime ──────────────────────────────────────────────


class ProcessingError(ReplicatorError):
    code = "processing_error"


class JobTimeoutError(ReplicatorError):
    code = "timeout"


class JobCancelledError(ReplicatorError):
    code = "cancelled"


class ArtifactStoreError(ReplicatorError):
    code = "artifact_store_error"


class TransportError(ReplicatorError):
    code = "transport_error"
