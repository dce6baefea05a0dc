# src/core/errors.py - v1
"""Error taxonomy for archive generation.

Every failure that crosses a component boundary is an ArchiveError carrying
a stable ``reason_code`` (used by the trigger/status surfaces), a
``retryable`` hint and the HTTP status the handlers answer with.
"""

from __future__ import annotations

from typing import Any


class ArchiveError(Exception):
    """Base class for all pipeline errors."""

    reason_code: str = "archive_error"
    retryable: bool = False
    http_status: int = 500

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.reason_code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(ArchiveError):
    """Malformed request or worker input. Never retried."""

    reason_code = "validation_error"
    http_status = 400


class NoFilesError(ValidationError):
    """The resolved key set is empty."""

    reason_code = "no_files"


class NotFoundError(ArchiveError):
    """A source object (or multipart session) does not exist."""

    reason_code = "not_found"
    http_status = 404


class TransientIOError(ArchiveError):
    """Connection reset, timeout, throttling or 5xx from a backend."""

    reason_code = "transient_io"
    retryable = True
    http_status = 503


class StorageError(ArchiveError):
    """Non-transient object store failure (access denied, bad request...)."""

    reason_code = "storage_error"


class CapacityExceededError(ArchiveError):
    """Archive would need more parts than the backend allows."""

    reason_code = "capacity_exceeded"


class PartialFailureError(ArchiveError):
    """Too many entries failed to be read during assembly."""

    reason_code = "partial_failure"


class ChunkFailedError(ArchiveError):
    """A chunk worker staged nothing."""

    reason_code = "chunk_failed"


class OrchestrationFailure(ArchiveError):
    """The orchestrator could not start or complete a run."""

    reason_code = "orchestration_failure"
    http_status = 502


class NoErrorToRetry(ArchiveError):
    """Retry requested for an order that is not in ERROR."""

    reason_code = "no_error_to_retry"
    http_status = 400


class StateConflictError(ArchiveError):
    """A conditional state transition saw an unexpected current status."""

    reason_code = "state_conflict"
    http_status = 409
