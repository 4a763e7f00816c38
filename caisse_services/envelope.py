"""
Response envelope.

Every gateway call returns an ``Envelope``: an HTTP-style status code and a
JSON-safe body of the form::

    {"success": true,  "data": ...,  "meta": {"timestamp", "request_id", ...}}
    {"success": false, "error": {"code", "message", "details"?}, "meta": {...}}

Status codes follow the exception type, so a transport adapter only has to
copy ``status_code`` and serialize ``body``.
"""

from __future__ import annotations

import dataclasses
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from caisse_kernel.exceptions import (
    AccessError,
    AuthenticationError,
    BusinessRuleError,
    CaisseKernelError,
    EmptyUpdateError,
    IllegalTransitionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)


# Checked in order with isinstance.
STATUS_BY_ERROR: tuple[tuple[type[Exception], int], ...] = (
    (ValidationError, 400),
    (EmptyUpdateError, 400),
    (AuthenticationError, 401),
    (AccessError, 403),
    (NotFoundError, 404),
    (IllegalTransitionError, 409),
    (BusinessRuleError, 422),
    (PersistenceError, 500),
)

GENERIC_MESSAGE = "Internal server error."


@dataclasses.dataclass(frozen=True)
class Envelope:
    status_code: int
    body: dict[str, Any]

    @property
    def success(self) -> bool:
        return bool(self.body.get("success"))

    @property
    def data(self) -> Any:
        return self.body.get("data")

    @property
    def error(self) -> dict[str, Any] | None:
        return self.body.get("error")

    @property
    def meta(self) -> dict[str, Any]:
        return self.body.get("meta", {})


def to_wire(value: Any) -> Any:
    """Recursively convert DTOs, enums, dates and UUIDs to JSON-safe values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: to_wire(getattr(value, f.name))
            for f in dataclasses.fields(value)
        }
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return {str(key): to_wire(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_wire(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted(to_wire(item) for item in value)
    return value


def status_for(exc: Exception) -> int:
    for error_type, status in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def _meta(request_id: str | None, now: datetime, extra: dict[str, Any]) -> dict[str, Any]:
    meta: dict[str, Any] = {"timestamp": to_wire(now), "request_id": request_id}
    meta.update(to_wire(extra))
    return meta


def success(
    data: Any,
    *,
    request_id: str | None,
    now: datetime,
    status_code: int = 200,
    **meta: Any,
) -> Envelope:
    return Envelope(
        status_code=status_code,
        body={
            "success": True,
            "data": to_wire(data),
            "meta": _meta(request_id, now, meta),
        },
    )


def error_details(exc: Exception) -> Any:
    """Structured remediation data for known error types, else None."""
    if isinstance(exc, ValidationError):
        return exc.details
    if isinstance(exc, IllegalTransitionError):
        return {
            "current": exc.current_status,
            "attempted": exc.attempted_status,
            "allowed": sorted(exc.allowed),
        }
    if isinstance(exc, BusinessRuleError) and exc.context:
        return exc.context
    if isinstance(exc, PersistenceError):
        return {"retryable": exc.retryable}
    return None


def failure(
    exc: Exception,
    *,
    request_id: str | None,
    now: datetime,
    production: bool = False,
) -> Envelope:
    """
    Error envelope for ``exc``.

    Kernel errors keep their code and message.  Anything else is reported
    as INTERNAL_ERROR; in production its message is replaced by a generic
    one so internals do not leak.
    """
    status_code = status_for(exc)
    if isinstance(exc, CaisseKernelError):
        code = exc.code
        message = str(exc)
        if isinstance(exc, PersistenceError) and production:
            message = GENERIC_MESSAGE
    else:
        code = "INTERNAL_ERROR"
        message = GENERIC_MESSAGE if production else str(exc) or type(exc).__name__

    error: dict[str, Any] = {"code": code, "message": message}
    details = error_details(exc)
    if details is not None:
        error["details"] = to_wire(details)

    return Envelope(
        status_code=status_code,
        body={
            "success": False,
            "error": error,
            "meta": _meta(request_id, now, {}),
        },
    )
