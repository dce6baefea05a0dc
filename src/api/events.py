# src/api/events.py - v1
"""Boundary decoding of inbound events into typed requests.

Accepted trigger shapes:
    direct dict          {"containerId": ..., "orderId": ..., ...}
    API envelope         {"body": "<json>" | {...}, "isBase64Encoded": bool}

Legacy field names (galleryId, type, selectedKeys, finalFilesHash,
selectedKeysHash) are mapped onto the canonical ones.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any

import pydantic

from chunkzip.core.errors import ValidationError
from chunkzip.core.models import ArchiveRequest, ChunkJob, FailureEvent, MergeJob

_ALIASES: dict[str, tuple[str, ...]] = {
    "containerId": ("containerId", "container_id", "galleryId"),
    "orderId": ("orderId", "order_id"),
    "archiveKind": ("archiveKind", "archive_kind", "type"),
    "keys": ("keys", "selectedKeys"),
    "contentHash": ("contentHash", "content_hash", "finalFilesHash", "selectedKeysHash"),
    "runId": ("runId", "run_id"),
    "chunkIndex": ("chunkIndex", "chunk_index"),
    "workerCount": ("workerCount", "worker_count"),
    "chunkResults": ("chunkResults", "chunk_results"),
}


def _first(payload: dict[str, Any], canonical: str) -> Any:
    for name in _ALIASES[canonical]:
        value = payload.get(name)
        if value is not None:
            return value
    return None


def _canonical(payload: dict[str, Any], fields: tuple[str, ...]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in fields:
        value = _first(payload, name)
        if value is not None:
            out[name] = value
    return out


def _unwrap_body(event: dict[str, Any]) -> dict[str, Any]:
    if "body" not in event:
        return event
    body = event["body"]
    if body is None:
        return {}
    if isinstance(body, dict):
        return body
    if not isinstance(body, (str, bytes)):
        raise ValidationError("Unsupported request body type")
    if event.get("isBase64Encoded"):
        try:
            body = base64.b64decode(body)
        except (binascii.Error, ValueError) as e:
            raise ValidationError("Body is not valid base64") from e
    try:
        decoded = json.loads(body)
    except ValueError as e:
        raise ValidationError("Body is not valid JSON") from e
    if not isinstance(decoded, dict):
        raise ValidationError("Body must be a JSON object")
    return decoded


def _validate(model: type[pydantic.BaseModel], data: dict[str, Any]) -> Any:
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise ValidationError(f"Invalid payload: {', '.join(fields)}", fields=fields) from e


def decode_trigger_event(event: dict[str, Any]) -> ArchiveRequest:
    """Decode a trigger payload into an ArchiveRequest.

    Raises:
        ValidationError: Missing ids, unknown kind or malformed body.
    """
    if not isinstance(event, dict):
        raise ValidationError("Event must be an object")
    payload = _unwrap_body(event)
    data = _canonical(payload, ("containerId", "orderId", "archiveKind", "keys", "contentHash"))
    keys = data.get("keys")
    if keys is not None and not isinstance(keys, list):
        raise ValidationError("keys must be a list")
    return _validate(ArchiveRequest, data)


def decode_chunk_event(payload: dict[str, Any]) -> ChunkJob:
    """Decode one Map iteration input (item fields may be nested under ``chunkItem``)."""
    merged = dict(payload)
    item = payload.get("chunkItem")
    if isinstance(item, dict):
        merged.update(item)
    data = _canonical(
        merged, ("containerId", "orderId", "archiveKind", "runId", "chunkIndex", "keys", "workerCount")
    )
    return _validate(ChunkJob, data)


def decode_merge_event(payload: dict[str, Any]) -> MergeJob:
    data = _canonical(
        payload, ("containerId", "orderId", "archiveKind", "runId", "workerCount", "contentHash", "chunkResults")
    )
    return _validate(MergeJob, data)


def decode_failure_event(event: dict[str, Any]) -> FailureEvent:
    """Decode an execution status-change notification.

    The execution input may be a JSON string; an unparsable input is
    treated as absent so the handler falls back to describing the execution.
    """
    detail = event.get("detail") if isinstance(event.get("detail"), dict) else event
    execution_arn = detail.get("executionArn")
    if not execution_arn:
        resources = event.get("resources") or []
        execution_arn = resources[0] if resources else None

    raw_input = detail.get("input")
    parsed_input: dict[str, Any] | None = None
    if isinstance(raw_input, dict):
        parsed_input = raw_input
    elif isinstance(raw_input, str) and raw_input:
        try:
            candidate = json.loads(raw_input)
        except ValueError:
            candidate = None
        parsed_input = candidate if isinstance(candidate, dict) else None

    return FailureEvent(
        status=str(detail.get("status") or ""),
        execution_arn=execution_arn,
        state_machine_arn=detail.get("stateMachineArn"),
        error=detail.get("error"),
        cause=detail.get("cause"),
        input=parsed_input,
    )
