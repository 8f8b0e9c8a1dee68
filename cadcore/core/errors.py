# cadcore/core/errors.py
"""
Typed dispatch errors.

Each error maps to a specific HTTP status code and carries the current
authoritative snapshot of the entity (when one exists) so a rejected
caller can resynchronize its view instead of guessing.  The transport
layer catches ``DispatchError`` subtypes and converts them to JSON
responses without embedding business logic in the route handlers.
"""
from __future__ import annotations

from typing import Any


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500
    code: str = "dispatch_error"

    def __init__(
        self,
        detail: str = "Internal error",
        *,
        current: dict[str, Any] | None = None,
    ):
        self.detail = detail
        self.current = current
        super().__init__(detail)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "detail": self.detail}
        if self.current is not None:
            body["current"] = self.current
        return body


class InvalidTransition(DispatchError):
    """The requested status is not reachable from the current status (409).

    Always a caller bug; never retried automatically.
    """

    status_code = 409
    code = "invalid_transition"

    def __init__(
        self,
        entity_type: str,
        from_status: str,
        to_status: str,
        *,
        action: str | None = None,
        current: dict[str, Any] | None = None,
    ):
        self.entity_type = entity_type
        self.from_status = from_status
        self.to_status = to_status
        self.action = action
        if action:
            detail = f"{entity_type}: '{action}' is not permitted while {from_status}"
        else:
            detail = f"{entity_type}: {from_status} -> {to_status} is not allowed"
        super().__init__(detail, current=current)


class AlreadyTerminal(DispatchError):
    """The record is in a terminal status and cannot be acted on (409)."""

    status_code = 409
    code = "already_terminal"

    def __init__(
        self,
        entity_type: str,
        status: str,
        *,
        current: dict[str, Any] | None = None,
    ):
        self.entity_type = entity_type
        self.status = status
        super().__init__(f"{entity_type} is already {status}", current=current)


class AlreadyAcknowledged(DispatchError):
    """Another unit acknowledged the backup request first (409).

    Safe to retry against a different request, not this one.
    """

    status_code = 409
    code = "already_acknowledged"


class UnitUnavailable(DispatchError):
    """The unit is not AVAILABLE, usually because another caller claimed it (409).

    Safe to retry against a different unit, not this one.
    """

    status_code = 409
    code = "unit_unavailable"


class ConcurrentModification(DispatchError):
    """The record kept changing underneath the transition (409).

    Raised only after the configured number of re-reads; the caller
    should reload and decide again.
    """

    status_code = 409
    code = "concurrent_modification"


class NotFound(DispatchError):
    """Unknown id (404)."""

    status_code = 404
    code = "not_found"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} '{entity_id}' not found")


class DispatchValidationError(DispatchError):
    """Invalid command payload (400)."""

    status_code = 400
    code = "validation_error"


class PersistenceUnavailable(DispatchError):
    """The database of record is unreachable or timed out (503).

    Transient: the caller may retry with backoff.  The core never
    retries a write on its own.
    """

    status_code = 503
    code = "persistence_unavailable"


def require_param(params: dict[str, Any], name: str) -> Any:
    """Fetch a mandatory action parameter or raise DispatchValidationError."""
    value = params.get(name)
    if value is None or value == "":
        raise DispatchValidationError(f"'{name}' is required for this action")
    return value
