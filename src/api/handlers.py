# src/api/handlers.py - v1
"""Request/response handlers for the HTTP and event surfaces.

Every handler answers ``{"statusCode", "headers", "body"}`` with a JSON
body. ArchiveErrors map to their ``http_status``; server-side messages
are withheld from 5xx bodies.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from chunkzip.api.events import decode_failure_event, decode_trigger_event
from chunkzip.api.facade import ArchiveService
from chunkzip.core.errors import ArchiveError, ValidationError
from chunkzip.core.models import ARCHIVE_KINDS, OrderKey

logger = logging.getLogger(__name__)

JSON_HEADERS = {"content-type": "application/json"}


def json_response(status_code: int, payload: Any) -> dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": dict(JSON_HEADERS),
        "body": json.dumps(payload, default=str),
    }


def error_response(error: Exception) -> dict[str, Any]:
    """Map an exception to a response; unknown errors become a bare 500."""
    if isinstance(error, ArchiveError):
        status = error.http_status
        payload = error.to_dict()
        if status >= 500:
            payload = {"error": error.reason_code}
        return json_response(status, payload)
    logger.exception("Unhandled error in handler")
    return json_response(500, {"error": "internal_error"})


def _params(event: dict[str, Any]) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for source in ("pathParameters", "queryStringParameters"):
        value = event.get(source)
        if isinstance(value, dict):
            params.update(value)
    return params


def order_key_from_params(event: dict[str, Any]) -> OrderKey:
    """Read container/order/kind from path or query parameters."""
    params = _params(event)
    container_id = params.get("containerId") or params.get("galleryId")
    order_id = params.get("orderId")
    kind = params.get("type") or params.get("archiveKind") or "original"
    if not container_id or not order_id:
        raise ValidationError("containerId and orderId are required")
    if kind not in ARCHIVE_KINDS:
        raise ValidationError(f"Unknown archive kind: {kind}", archive_kind=kind)
    return OrderKey(container_id=container_id, order_id=order_id, archive_kind=kind)


async def handle_trigger(service: ArchiveService, event: dict[str, Any]) -> dict[str, Any]:
    """202 while generating, 200 when already ready."""
    try:
        request = decode_trigger_event(event)
        result = await service.trigger(request)
    except Exception as e:
        return error_response(e)
    status_code = 200 if result.status == "ready" else 202
    return json_response(status_code, result.model_dump(mode="json", exclude_none=True))


async def handle_status(service: ArchiveService, event: dict[str, Any]) -> dict[str, Any]:
    try:
        report = await service.status(order_key_from_params(event))
    except Exception as e:
        return error_response(e)
    return json_response(200, report.model_dump(mode="json", exclude_none=True))


async def handle_retry(service: ArchiveService, event: dict[str, Any]) -> dict[str, Any]:
    try:
        if _params(event):
            order_key = order_key_from_params(event)
            keys = None
        else:
            request = decode_trigger_event(event)
            order_key = request.order_key
            keys = list(request.keys) if request.keys is not None else None
        result = await service.retry(order_key, keys)
    except Exception as e:
        return error_response(e)
    return json_response(202, result.model_dump(mode="json", exclude_none=True))


async def handle_failure_notification(service: ArchiveService, event: dict[str, Any]) -> dict[str, Any]:
    """Execution status-change notification; never fails the caller."""
    try:
        outcome = await service.handle_failure(decode_failure_event(event))
    except ArchiveError as e:
        logger.error("Failure notification not recorded: %s", e.message)
        return {"ok": False, "reason": e.reason_code}
    return outcome.model_dump(mode="json", exclude_none=True)


async def handle_sweep(service: ArchiveService, event: dict[str, Any] | None = None) -> dict[str, Any]:
    report = await service.sweep()
    return report.model_dump(mode="json")
