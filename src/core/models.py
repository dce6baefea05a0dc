# src/core/models.py - v1
"""Core domain models shared by every pipeline component.

Requests and run plans are immutable once built. GenerationState is a
tagged union on ``status`` so it can round-trip through any key/value
metadata store as plain JSON.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

ArchiveKind = Literal["original", "final"]
ARCHIVE_KINDS: tuple[str, ...] = ("original", "final")

RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class _WireModel(BaseModel):
    """Base for models exchanged with the orchestrator (camelCase on the wire)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


# === IDENTITY ===


class OrderKey(_WireModel):
    """Identifies one archive target: (container, order, kind)."""

    container_id: str = Field(min_length=1)
    order_id: str = Field(min_length=1)
    archive_kind: ArchiveKind = "original"

    def __str__(self) -> str:
        return f"{self.container_id}/{self.order_id}/{self.archive_kind}"


class ArchiveRequest(_WireModel):
    """A request to build the archive for one order and kind.

    ``keys`` is None when membership is derived from the metadata index
    (the usual case for final images).
    """

    container_id: str = Field(min_length=1)
    order_id: str = Field(min_length=1)
    archive_kind: ArchiveKind = "original"
    keys: tuple[str, ...] | None = None
    content_hash: str | None = None

    @field_validator("keys")
    @classmethod
    def dedupe_keys(cls, v: tuple[str, ...] | None) -> tuple[str, ...] | None:
        """Keep first occurrence order, drop blanks and duplicates."""
        if v is None:
            return None
        seen: dict[str, None] = {}
        for key in v:
            if key and key not in seen:
                seen[key] = None
        return tuple(seen)

    @property
    def order_key(self) -> OrderKey:
        return OrderKey(
            container_id=self.container_id,
            order_id=self.order_id,
            archive_kind=self.archive_kind,
        )

    @property
    def is_final(self) -> bool:
        return self.archive_kind == "final"


# === RUN ===


class ChunkTask(_WireModel):
    """One worker-sized partition of the key set."""

    chunk_index: int = Field(ge=0)
    assigned_keys: tuple[str, ...]


class RunPlan(_WireModel):
    """One execution of the chunked path."""

    run_id: str
    worker_count: int = Field(ge=1)
    chunks: tuple[ChunkTask, ...]
    content_hash: str | None = None
    files_count: int = Field(ge=0)

    @field_validator("run_id")
    @classmethod
    def validate_run_id(cls, v: str) -> str:
        if not RUN_ID_PATTERN.match(v):
            raise ValueError(f"invalid run id: {v!r}")
        return v


class ChunkJob(_WireModel):
    """Input of a single Chunk Worker invocation."""

    container_id: str = Field(min_length=1)
    order_id: str = Field(min_length=1)
    archive_kind: ArchiveKind = "original"
    run_id: str
    chunk_index: int = Field(ge=0)
    keys: tuple[str, ...]
    worker_count: int | None = None

    @property
    def order_key(self) -> OrderKey:
        return OrderKey(
            container_id=self.container_id,
            order_id=self.order_id,
            archive_kind=self.archive_kind,
        )


class ChunkResult(_WireModel):
    """What a Chunk Worker reports back to the orchestrator."""

    chunk_index: int
    files_staged: int
    bytes_staged: int
    files_missing: int = 0
    files_failed: int = 0
    duration_ms: int = 0


class MergeJob(_WireModel):
    """Input of the Merge Assembler once every chunk settled."""

    container_id: str = Field(min_length=1)
    order_id: str = Field(min_length=1)
    archive_kind: ArchiveKind = "original"
    run_id: str
    worker_count: int = 1
    content_hash: str | None = None
    chunk_results: tuple[ChunkResult, ...] = ()

    @property
    def order_key(self) -> OrderKey:
        return OrderKey(
            container_id=self.container_id,
            order_id=self.order_id,
            archive_kind=self.archive_kind,
        )


class MergeResult(_WireModel):
    """Outcome of a committed archive."""

    archive_key: str
    files_added: int
    files_failed: int = 0
    archive_size_bytes: int
    parts_count: int
    duration_ms: int = 0


# === OBJECT STORE ===


class ObjectInfo(BaseModel):
    """Metadata of one stored object."""

    key: str
    size: int = 0
    etag: str = ""
    last_modified: datetime | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    content_type: str | None = None


class ListPage(BaseModel):
    """One page of a prefix listing."""

    items: list[ObjectInfo] = Field(default_factory=list)
    next_page_token: str | None = None


class CompletedPart(BaseModel):
    """Multipart part receipt."""

    part_number: int = Field(ge=1)
    etag: str


class DeleteReport(BaseModel):
    """Result of a batch delete."""

    deleted: int = 0
    errors: list[str] = Field(default_factory=list)


# === GENERATION STATE ===


class ProgressSnapshot(BaseModel):
    """Periodic progress of a running generation."""

    processed: int = Field(ge=0)
    total: int = Field(ge=0)
    percent: int = Field(ge=0, le=100)

    @classmethod
    def of(cls, processed: int, total: int) -> ProgressSnapshot:
        percent = round(processed * 100 / total) if total else 0
        return cls(processed=processed, total=total, percent=min(percent, 100))


class NotStarted(BaseModel):
    status: Literal["not_started"] = "not_started"


class Generating(BaseModel):
    status: Literal["generating"] = "generating"
    since: datetime
    attempt: int = 1
    run_id: str | None = None
    content_hash: str | None = None
    progress: ProgressSnapshot | None = None


class Ready(BaseModel):
    status: Literal["ready"] = "ready"
    completed_at: datetime
    content_hash: str | None = None


class ErrorState(BaseModel):
    status: Literal["error"] = "error"
    message: str
    attempts: int = 1
    timestamp: datetime
    error_name: str | None = None
    run_id: str | None = None


GenerationState = Annotated[
    Union[NotStarted, Generating, Ready, ErrorState],
    Field(discriminator="status"),
]

_STATE_ADAPTER: TypeAdapter[Any] = TypeAdapter(GenerationState)


def parse_generation_state(data: str | bytes | dict[str, Any] | None) -> Any:
    """Decode a stored state; missing data means NOT_STARTED."""
    if data is None or data == "" or data == b"":
        return NotStarted()
    if isinstance(data, (str, bytes)):
        return _STATE_ADAPTER.validate_json(data)
    return _STATE_ADAPTER.validate_python(data)


def dump_generation_state(state: Any) -> str:
    return state.model_dump_json()


# === SURFACES ===


class TriggerResponse(BaseModel):
    """Response of the trigger surface."""

    status: Literal["generating", "ready"]
    path: Literal["single", "chunked", "idempotent"]
    files_count: int
    run_id: str | None = None
    worker_count: int | None = None
    execution_id: str | None = None


class ErrorInfo(BaseModel):
    message: str
    attempts: int
    can_retry: bool = True
    timestamp: datetime | None = None


class StatusReport(BaseModel):
    """Response of the status query surface."""

    status: Literal["ready", "generating", "not_started", "error"]
    progress: ProgressSnapshot | None = None
    elapsed_seconds: int | None = None
    error: ErrorInfo | None = None
    archive_key: str | None = None
    archive_size_bytes: int | None = None


class SweepReport(BaseModel):
    deleted_count: int = 0
    error_count: int = 0
    errors: list[str] = Field(default_factory=list)


class FailureEvent(BaseModel):
    """Orchestrator-level execution status notification."""

    status: str
    execution_arn: str | None = None
    state_machine_arn: str | None = None
    error: str | None = None
    cause: str | None = None
    input: dict[str, Any] | None = None


class FailureOutcome(BaseModel):
    ok: bool
    reason: str | None = None
    container_id: str | None = None
    order_id: str | None = None
    archive_kind: ArchiveKind | None = None
    run_id: str | None = None
    staged_objects_deleted: int = 0
    uploads_aborted: int = 0
