# cadcore/infra/audit_log.py
"""
Audit logging for dispatch transitions.

Every accepted create/transition is recorded to a dedicated logger named
"audit" (separate from the application log) with the acting identity,
so it can be routed to its own sink via logging configuration.

The actor is an opaque string passed in by the caller; it is recorded
as-is and never authenticated here.
"""
from __future__ import annotations

import logging
from typing import Any

_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    actor: str,
    entity_type: str,
    entity_id: str,
    from_status: str | None = None,
    to_status: str | None = None,
    detail: str = "",
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Record an audit event.

    Args:
        action: Action name (e.g., "call.create", "backup_request.acknowledge")
        actor: Opaque identity of whoever issued the command
        entity_type: Entity family ("unit", "call", ...)
        entity_id: Entity affected
        from_status: Status before the transition (None for creates)
        to_status: Status after the transition
        detail: Human-readable detail
        extra: Additional structured context
    """
    record = {
        "audit_action": action,
        "actor": actor,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "from_status": from_status or "",
        "to_status": to_status or "",
        "detail": detail,
    }
    if extra:
        record.update(extra)

    _audit_logger.info(
        f"AUDIT: {action} {entity_type}={entity_id} "
        f"{from_status or '-'}->{to_status or '-'} actor={actor} {detail}".rstrip(),
        extra=record,
    )
