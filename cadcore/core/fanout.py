# cadcore/core/fanout.py
"""
Notification fanout.

Publishing happens only after a transition has been committed.  Delivery
is at-least-once and advisory: authoritative state is always re-readable
from the entity store, so a transport failure is logged and counted and
never turns an accepted transition into an error.

Usage:
    fanout = NotificationFanout([InMemoryEventFeed(), WebhookFanoutTransport(url)])
    await fanout.publish("CallCreated", "call", call_id, payload, Audience.dispatchers_only(), actor)
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from cadcore.core.domain import Audience, DispatchEvent, utcnow
from cadcore.core.ports import AsyncFanoutTransport
from cadcore.infra.logging_config import get_logger
from cadcore.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


class EventType:
    """Event names published by the dispatch core."""

    UNIT_REGISTERED = "UnitRegistered"
    UNIT_STATUS_CHANGED = "UnitStatusChanged"
    UNIT_LOCATION_UPDATED = "UnitLocationUpdated"

    CALL_CREATED = "CallCreated"
    CALL_UNIT_ASSIGNED = "CallUnitAssigned"
    CALL_UNIT_UNASSIGNED = "CallUnitUnassigned"
    CALL_NOTE_ADDED = "CallNoteAdded"
    CALL_CLOSED = "CallClosed"
    CALL_CANCELLED = "CallCancelled"

    BOLO_ISSUED = "BoloIssued"
    BOLO_UPDATED = "BoloUpdated"
    BOLO_RESOLVED = "BoloResolved"
    BOLO_CANCELLED = "BoloCancelled"
    BOLO_EXPIRED = "BoloExpired"

    BACKUP_REQUESTED = "BackupRequested"
    BACKUP_ACKNOWLEDGED = "BackupAcknowledged"
    BACKUP_ENROUTE = "BackupEnroute"
    BACKUP_ARRIVED = "BackupArrived"
    BACKUP_CANCELLED = "BackupCancelled"

    TACTICAL_ACTIVATED = "TacticalCalloutActivated"
    TACTICAL_PAGE = "TacticalPage"
    TACTICAL_OFFICERS_ASSIGNED = "TacticalOfficersAssigned"
    TACTICAL_ADVANCED = "TacticalCalloutAdvanced"


class NotificationFanout:
    """Broadcasts committed state changes to every configured transport."""

    def __init__(
        self,
        transports: Iterable[AsyncFanoutTransport] = (),
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._transports: list[AsyncFanoutTransport] = list(transports)
        self._clock = clock

    @property
    def transports(self) -> list[AsyncFanoutTransport]:
        return list(self._transports)

    def add_transport(self, transport: AsyncFanoutTransport) -> None:
        self._transports.append(transport)

    async def publish(
        self,
        event_type: str,
        entity_type: str,
        entity_id: str,
        payload: dict[str, Any],
        audience: Optional[Audience] = None,
        actor: str = "system",
    ) -> DispatchEvent:
        event = DispatchEvent(
            id=str(uuid.uuid4()),
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            payload=payload,
            audience=audience or Audience.dispatchers_only(),
            actor=actor,
            occurred_at=self._clock(),
        )

        for transport in self._transports:
            try:
                await transport.publish(event)
            except Exception as exc:
                logger.error(
                    f"Fanout via {transport.name} failed for {event_type} "
                    f"{entity_type}={entity_id}: {type(exc).__name__}: {exc}",
                    extra={
                        "event_type": event_type,
                        "entity_type": entity_type,
                        "entity_id": entity_id,
                    },
                    exc_info=True,
                )
                DispatchMetrics.fanout_failed(transport.name)

        DispatchMetrics.event_published(event_type)
        logger.debug(
            f"Published {event_type} {entity_type}={entity_id} "
            f"to {len(event.audience.unit_ids)} unit(s)"
            f"{' + dispatchers' if event.audience.dispatchers else ''}",
            extra={"event_type": event_type, "entity_type": entity_type, "entity_id": entity_id},
        )
        return event
