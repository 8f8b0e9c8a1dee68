# cadcore/core/bolos.py
"""
BOLORegistry: lookout-alert lifecycle.

ACTIVE -> RESOLVED | CANCELLED, both terminal.

Expiry is lazy.  An ACTIVE BOLO past ``expires_at`` keeps its stored
status until somebody resolves or cancels it, but every read path here
reports it as RESOLVED through ``Bolo.effective_status``.  The optional
sweeper only announces expiry once (``expiry_announced_at``); it never
changes the stored status.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Optional

from cadcore.config import settings
from cadcore.core.domain import (
    Audience,
    Bolo,
    BoloStatus,
    BoloSubject,
    EntityType,
    ListQuery,
    Priority,
    StoredRecord,
    from_iso,
    parse_enum,
    to_iso,
    utcnow,
)
from cadcore.core.errors import AlreadyTerminal, DispatchError, DispatchValidationError
from cadcore.core.fanout import EventType, NotificationFanout
from cadcore.core.ports import AsyncEntityStore, RecordFilter, filter_for
from cadcore.core.state_machine import StateMachine, TransitionTable, stamp
from cadcore.core.units import UnitStatusTracker
from cadcore.infra.logging_config import get_logger

logger = get_logger(__name__)

BOLO_TABLE = TransitionTable.build(
    EntityType.BOLO,
    initial=BoloStatus.ACTIVE,
    pairs=[
        (BoloStatus.ACTIVE, BoloStatus.RESOLVED),
        (BoloStatus.ACTIVE, BoloStatus.CANCELLED),
    ],
    terminal=[BoloStatus.RESOLVED, BoloStatus.CANCELLED],
    hooks=[
        stamp("resolved_at", on=[BoloStatus.RESOLVED]),
        stamp("cancelled_at", on=[BoloStatus.CANCELLED]),
    ],
    touch_field="updated_at",
)

# Fields a dispatcher may edit while the BOLO is ACTIVE.
EDITABLE_FIELDS = frozenset({
    "title",
    "description",
    "priority",
    "person_name",
    "person_description",
    "vehicle_plate",
    "vehicle_model",
    "vehicle_color",
    "expires_at",
})


class _ExpiryAlreadyHandled(DispatchError):
    code = "expiry_already_handled"


class BOLORegistry:
    """Lookout-alert lifecycle with lazy expiry."""

    def __init__(
        self,
        store: AsyncEntityStore,
        fanout: NotificationFanout,
        units: UnitStatusTracker,
        *,
        conflict_retries: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        retries = settings.transition_conflict_retries if conflict_retries is None else conflict_retries
        self._store = store
        self._fanout = fanout
        self._units = units
        self._clock = clock
        self._machine = StateMachine(
            BOLO_TABLE,
            store,
            snapshot=lambda record: Bolo.from_record(record).snapshot(self._clock()),
            conflict_retries=retries,
            clock=clock,
        )

    async def create(
        self,
        subject_type: BoloSubject | str,
        priority: Priority | str | None,
        description: str,
        issued_by: str,
        expires_at: datetime | str | None = None,
        *,
        title: str | None = None,
        person_name: str | None = None,
        person_description: str | None = None,
        vehicle_plate: str | None = None,
        vehicle_model: str | None = None,
        vehicle_color: str | None = None,
    ) -> Bolo:
        """Issue a BOLO; ``issued_by`` is the acting identity."""
        if not (description or "").strip():
            raise DispatchValidationError("description is required")
        now = self._clock()
        bolo = Bolo(
            id=str(uuid.uuid4()),
            subject_type=parse_enum(BoloSubject, subject_type, "subject_type"),
            priority=parse_enum(Priority, priority or Priority.MEDIUM, "priority"),
            description=description.strip(),
            issued_by=issued_by,
            title=title,
            person_name=person_name,
            person_description=person_description,
            vehicle_plate=vehicle_plate.upper() if vehicle_plate else None,
            vehicle_model=vehicle_model,
            vehicle_color=vehicle_color,
            issued_at=now,
            expires_at=_parse_expiry(expires_at),
            updated_at=now,
            updated_by=issued_by,
        )
        record = await self._machine.create(bolo.id, bolo.to_fields(), actor=issued_by)
        bolo = Bolo.from_record(record)
        logger.info(
            f"BOLO issued: {bolo.subject_type.value} ({bolo.priority.value})"
            f"{' expires ' + to_iso(bolo.expires_at) if bolo.expires_at else ''}",
            extra={"actor": issued_by, "entity_type": EntityType.BOLO.value, "entity_id": bolo.id},
        )
        await self._publish(EventType.BOLO_ISSUED, bolo, issued_by)
        return bolo

    async def resolve(self, bolo_id: str, actor: str) -> Bolo:
        result = await self._machine.transition(bolo_id, BoloStatus.RESOLVED, actor=actor, action="resolve")
        bolo = Bolo.from_record(result.after)
        await self._publish(EventType.BOLO_RESOLVED, bolo, actor)
        return bolo

    async def cancel(self, bolo_id: str, actor: str) -> Bolo:
        result = await self._machine.transition(bolo_id, BoloStatus.CANCELLED, actor=actor, action="cancel")
        bolo = Bolo.from_record(result.after)
        await self._publish(EventType.BOLO_CANCELLED, bolo, actor)
        return bolo

    async def update_details(self, bolo_id: str, changes: dict[str, Any], actor: str) -> Bolo:
        """Edit descriptive fields; only while the stored status is ACTIVE."""
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise DispatchValidationError(f"fields not editable: {', '.join(sorted(unknown))}")
        if not changes:
            raise DispatchValidationError("no changes given")
        normalized = dict(changes)
        if "priority" in normalized:
            normalized["priority"] = parse_enum(Priority, normalized["priority"], "priority").value
        if "expires_at" in normalized:
            normalized["expires_at"] = to_iso(_parse_expiry(normalized["expires_at"]))
        if "description" in normalized and not (normalized["description"] or "").strip():
            raise DispatchValidationError("description cannot be empty")
        if normalized.get("vehicle_plate"):
            normalized["vehicle_plate"] = normalized["vehicle_plate"].upper()

        def guard(fields: dict) -> None:
            if BOLO_TABLE.is_terminal(fields["status"]):
                raise AlreadyTerminal(EntityType.BOLO.value, fields["status"])

        def mutate(fields: dict) -> None:
            fields.update(normalized)
            if "expires_at" in normalized:
                # A new expiry deserves a new announcement.
                fields["expiry_announced_at"] = None

        record = await self._machine.amend(
            bolo_id, actor=actor, action="update_details", mutate=mutate, guard=guard,
        )
        bolo = Bolo.from_record(record)
        await self._publish(EventType.BOLO_UPDATED, bolo, actor)
        return bolo

    async def transition(self, bolo_id: str, action: str, actor: str, **params: Any) -> Bolo:
        if action == "resolve":
            return await self.resolve(bolo_id, actor)
        if action == "cancel":
            return await self.cancel(bolo_id, actor)
        if action == "update":
            return await self.update_details(bolo_id, params.get("changes") or {}, actor)
        raise DispatchValidationError(f"unknown bolo action '{action}'")

    # ------------------------------------------------------------------
    # Reads (all apply effective status)
    # ------------------------------------------------------------------

    def snapshot(self, bolo: Bolo) -> dict[str, Any]:
        return bolo.snapshot(self._clock())

    async def get(self, bolo_id: str) -> Bolo:
        return Bolo.from_record(await self._machine.load(bolo_id))

    async def list(self, query: ListQuery | None = None) -> list[Bolo]:
        """
        BOLOs by priority (highest first), newest first within a priority.

        A status filter matches the effective status, so asking for ACTIVE
        never returns an expired BOLO.
        """
        records = await self._store.query(
            EntityType.BOLO.value,
            filter_for(query, time_field="issued_at", statuses=False, departments=False),
        )
        now = self._clock()
        bolos = [Bolo.from_record(r) for r in records]
        if query and query.statuses:
            wanted = set(query.statuses)
            bolos = [b for b in bolos if b.effective_status(now).value in wanted]
        bolos.sort(key=lambda b: b.issued_at.timestamp() if b.issued_at else 0.0, reverse=True)
        bolos.sort(key=lambda b: b.priority.rank, reverse=True)
        if query and query.limit:
            bolos = bolos[: query.limit]
        return bolos

    # ------------------------------------------------------------------
    # Expiry announcements
    # ------------------------------------------------------------------

    async def expired_unannounced(self) -> list[Bolo]:
        records = await self._store.query(
            EntityType.BOLO.value,
            RecordFilter(
                any_of={"status": frozenset({BoloStatus.ACTIVE.value})},
                equals={"expiry_announced_at": None},
            ),
        )
        now = self._clock()
        return [b for b in (Bolo.from_record(r) for r in records) if b.is_expired(now)]

    async def announce_expiry(self, bolo_id: str, actor: str = "system") -> Optional[Bolo]:
        """
        Stamp ``expiry_announced_at`` and publish BoloExpired once.

        Returns None when the BOLO is not (or no longer) an unannounced
        expired ACTIVE record, so repeated sweeps are no-ops.
        """

        def guard(fields: dict) -> None:
            bolo = Bolo.from_record(StoredRecord(EntityType.BOLO.value, bolo_id, 0, fields))
            if fields.get("expiry_announced_at") or not bolo.is_expired(self._clock()):
                raise _ExpiryAlreadyHandled("nothing to announce")

        def mutate(fields: dict) -> None:
            fields["expiry_announced_at"] = to_iso(self._clock())

        try:
            record = await self._machine.amend(
                bolo_id, actor=actor, action="announce_expiry", mutate=mutate, guard=guard,
            )
        except _ExpiryAlreadyHandled:
            return None

        bolo = Bolo.from_record(record)
        await self._fanout.publish(
            EventType.BOLO_EXPIRED, EntityType.BOLO.value, bolo.id,
            bolo.snapshot(self._clock()), Audience.dispatchers_only(), actor,
        )
        return bolo

    async def sweep_expired(self, actor: str = "system") -> int:
        announced = 0
        for bolo in await self.expired_unannounced():
            if await self.announce_expiry(bolo.id, actor) is not None:
                announced += 1
        if announced:
            logger.info(f"Announced expiry of {announced} BOLO(s)")
        return announced

    async def _publish(self, event_type: str, bolo: Bolo, actor: str) -> None:
        audience = Audience.dispatchers_only().with_units(await self._units.on_duty_unit_ids())
        await self._fanout.publish(
            event_type, EntityType.BOLO.value, bolo.id, bolo.snapshot(self._clock()), audience, actor,
        )


def _parse_expiry(value: datetime | str | None) -> Optional[datetime]:
    try:
        return from_iso(value)
    except (TypeError, ValueError) as exc:
        raise DispatchValidationError(f"expires_at is not an ISO-8601 timestamp: {value!r}") from exc
