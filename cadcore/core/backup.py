# cadcore/core/backup.py
"""
BackupRequestCoordinator: cross-unit assistance requests.

    PENDING -> ACKNOWLEDGED -> ENROUTE -> ARRIVED
    PENDING | ACKNOWLEDGED | ENROUTE -> CANCELLED

ARRIVED and CANCELLED are terminal.  Urgency decides who hears about a
new request:

    ROUTINE    dispatchers
    URGENT     dispatchers + AVAILABLE units of the request's department
    EMERGENCY  dispatchers + AVAILABLE units of every department

Acknowledge race: the responder is claimed first (it must be AVAILABLE),
then the request is moved under compare-and-swap.  When two units
acknowledge at once, the loser's re-read finds ACKNOWLEDGED, it gets
AlreadyAcknowledged and its own unit is released again.

Reaching ARRIVED does not touch the linked call.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Iterable

from cadcore.config import settings
from cadcore.core.domain import (
    AssignmentRef,
    Audience,
    BackupRequest,
    BackupStatus,
    BackupUrgency,
    Department,
    EntityType,
    ListQuery,
    UnitStatus,
    parse_enum,
    utcnow,
)
from cadcore.core.errors import (
    AlreadyAcknowledged,
    DispatchError,
    DispatchValidationError,
    NotFound,
    require_param,
)
from cadcore.core.fanout import EventType, NotificationFanout
from cadcore.core.ports import AsyncEntityStore, filter_for
from cadcore.core.state_machine import StateMachine, TransitionTable, stamp
from cadcore.core.units import UnitStatusTracker
from cadcore.infra.logging_config import get_logger
from cadcore.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

BACKUP_TABLE = TransitionTable.build(
    EntityType.BACKUP_REQUEST,
    initial=BackupStatus.PENDING,
    pairs=[
        (BackupStatus.PENDING, BackupStatus.ACKNOWLEDGED),
        (BackupStatus.ACKNOWLEDGED, BackupStatus.ENROUTE),
        (BackupStatus.ENROUTE, BackupStatus.ARRIVED),
        (BackupStatus.PENDING, BackupStatus.CANCELLED),
        (BackupStatus.ACKNOWLEDGED, BackupStatus.CANCELLED),
        (BackupStatus.ENROUTE, BackupStatus.CANCELLED),
    ],
    terminal=[BackupStatus.ARRIVED, BackupStatus.CANCELLED],
    hooks=[
        stamp("responded_at", on=[BackupStatus.ACKNOWLEDGED]),
        stamp("enroute_at", on=[BackupStatus.ENROUTE]),
        stamp("arrived_at", on=[BackupStatus.ARRIVED]),
        stamp("cancelled_at", on=[BackupStatus.CANCELLED]),
    ],
    touch_field="updated_at",
)

OPEN_STATUSES = (BackupStatus.PENDING, BackupStatus.ACKNOWLEDGED, BackupStatus.ENROUTE)

_RESPONDED = frozenset({BackupStatus.ACKNOWLEDGED.value, BackupStatus.ENROUTE.value})


def _not_yet_acknowledged(fields: dict) -> None:
    if fields["status"] in _RESPONDED:
        raise AlreadyAcknowledged(
            f"Backup request already acknowledged by unit {fields.get('responding_unit')}"
        )


def _sort_open(requests: Iterable[BackupRequest]) -> list[BackupRequest]:
    ordered = sorted(
        requests, key=lambda r: r.requested_at.timestamp() if r.requested_at else 0.0, reverse=True,
    )
    ordered.sort(key=lambda r: r.urgency.rank, reverse=True)
    return ordered


class BackupRequestCoordinator:
    """Cross-unit assistance requests with urgency-driven fan-out."""

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
            BACKUP_TABLE,
            store,
            snapshot=lambda record: BackupRequest.from_record(record).snapshot(),
            conflict_retries=retries,
            clock=clock,
        )

    async def audience_for(self, urgency: BackupUrgency, department: Department) -> Audience:
        """Resolve the urgency rule to concrete unit ids at publish time."""
        audience = Audience.dispatchers_only()
        if urgency is BackupUrgency.URGENT:
            return audience.with_units(await self._units.available_unit_ids([department]))
        if urgency is BackupUrgency.EMERGENCY:
            return audience.with_units(await self._units.available_unit_ids())
        return audience

    async def request(
        self,
        unit: str,
        department: Department | str,
        location: str,
        urgency: BackupUrgency | str,
        reason: str | None,
        linked_call_id: str | None = None,
        *,
        actor: str,
    ) -> BackupRequest:
        """Open a PENDING request on behalf of unit id ``unit``."""
        department = parse_enum(Department, department, "department")
        urgency = parse_enum(BackupUrgency, urgency, "urgency")
        if not (location or "").strip():
            raise DispatchValidationError("location is required")
        await self._units.get(unit)
        if linked_call_id and await self._store.load(EntityType.CALL.value, linked_call_id) is None:
            raise NotFound(EntityType.CALL.value, linked_call_id)

        now = self._clock()
        backup = BackupRequest(
            id=str(uuid.uuid4()),
            requesting_unit=unit,
            department=department,
            location=location.strip(),
            urgency=urgency,
            reason=reason,
            linked_call_id=linked_call_id,
            requested_by=actor,
            requested_at=now,
            updated_at=now,
            updated_by=actor,
        )
        record = await self._machine.create(backup.id, backup.to_fields(), actor=actor)
        backup = BackupRequest.from_record(record)

        audience = await self.audience_for(urgency, department)
        logger.info(
            f"Backup requested by unit {unit[:8]}: {urgency.value} {department.value} "
            f"at {backup.location}, notifying {len(audience.unit_ids)} unit(s)",
            extra={"actor": actor, "entity_type": EntityType.BACKUP_REQUEST.value, "entity_id": backup.id},
        )
        await self._fanout.publish(
            EventType.BACKUP_REQUESTED, EntityType.BACKUP_REQUEST.value, backup.id,
            backup.snapshot(), audience, actor,
        )
        return backup

    async def acknowledge(self, request_id: str, responding_unit: str, actor: str) -> BackupRequest:
        """PENDING -> ACKNOWLEDGED; exactly one of several racing units wins."""
        before = await self._machine.load(request_id)
        if before.fields.get("requesting_unit") == responding_unit:
            raise DispatchValidationError(
                "a unit cannot acknowledge its own backup request",
                current=BackupRequest.from_record(before).snapshot(),
            )
        try:
            BACKUP_TABLE.check(
                before.fields["status"], BackupStatus.ACKNOWLEDGED,
                action="acknowledge", fields=before.fields, precheck=_not_yet_acknowledged,
            )
        except DispatchError as exc:
            exc.current = BackupRequest.from_record(before).snapshot()
            DispatchMetrics.transition_rejected(EntityType.BACKUP_REQUEST.value, exc.code)
            raise

        ref = AssignmentRef.backup(request_id)
        await self._units.claim(responding_unit, ref, actor)

        def mutate(fields: dict) -> None:
            fields["responding_unit"] = responding_unit

        try:
            result = await self._machine.transition(
                request_id, BackupStatus.ACKNOWLEDGED, actor=actor, action="acknowledge",
                precheck=_not_yet_acknowledged, mutate=mutate,
            )
        except Exception:
            await self._units.release_logged(responding_unit, actor, ref)
            raise

        backup = BackupRequest.from_record(result.after)
        await self._publish(EventType.BACKUP_ACKNOWLEDGED, backup, actor)
        return backup

    async def enroute(self, request_id: str, actor: str) -> BackupRequest:
        """ACKNOWLEDGED -> ENROUTE; a PENDING request has nobody to send yet."""
        result = await self._machine.transition(
            request_id, BackupStatus.ENROUTE, actor=actor, action="enroute",
        )
        backup = BackupRequest.from_record(result.after)
        await self._follow(backup, UnitStatus.ENROUTE, actor)
        await self._publish(EventType.BACKUP_ENROUTE, backup, actor)
        return backup

    async def arrived(self, request_id: str, actor: str) -> BackupRequest:
        result = await self._machine.transition(
            request_id, BackupStatus.ARRIVED, actor=actor, action="arrived",
        )
        backup = BackupRequest.from_record(result.after)
        await self._follow(backup, UnitStatus.ON_SCENE, actor)
        await self._publish(EventType.BACKUP_ARRIVED, backup, actor)
        return backup

    async def cancel(self, request_id: str, actor: str) -> BackupRequest:
        """Withdraw an open request and free the responder if there is one."""
        result = await self._machine.transition(
            request_id, BackupStatus.CANCELLED, actor=actor, action="cancel",
        )
        backup = BackupRequest.from_record(result.after)
        if backup.responding_unit:
            await self._units.release_logged(backup.responding_unit, actor, AssignmentRef.backup(backup.id))
        await self._publish(EventType.BACKUP_CANCELLED, backup, actor)
        return backup

    async def transition(self, request_id: str, action: str, actor: str, **params: Any) -> BackupRequest:
        if action == "acknowledge":
            return await self.acknowledge(request_id, require_param(params, "responding_unit"), actor)
        if action == "enroute":
            return await self.enroute(request_id, actor)
        if action == "arrived":
            return await self.arrived(request_id, actor)
        if action == "cancel":
            return await self.cancel(request_id, actor)
        raise DispatchValidationError(f"unknown backup action '{action}'")

    async def get(self, request_id: str) -> BackupRequest:
        return BackupRequest.from_record(await self._machine.load(request_id))

    async def list(self, query: ListQuery | None = None) -> list[BackupRequest]:
        """Requests by urgency (highest first), newest first within an urgency."""
        records = await self._store.query(
            EntityType.BACKUP_REQUEST.value,
            filter_for(query, time_field="requested_at", priorities=False),
        )
        requests = _sort_open(BackupRequest.from_record(r) for r in records)
        if query and query.priorities:
            # Urgency is the priority dimension for backup requests.
            wanted = set(query.priorities)
            requests = [r for r in requests if r.urgency.value in wanted]
        if query and query.limit:
            requests = requests[: query.limit]
        return requests

    async def list_open(self, department: Department | str | None = None) -> list[BackupRequest]:
        query = ListQuery(statuses=[s.value for s in OPEN_STATUSES])
        if department is not None:
            query.departments = [parse_enum(Department, department, "department").value]
        return await self.list(query)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _follow(self, backup: BackupRequest, target: UnitStatus, actor: str) -> None:
        """Move the responder along with the request; advisory once the request moved."""
        if not backup.responding_unit:
            return
        try:
            await self._units.follow_assignment(
                backup.responding_unit, AssignmentRef.backup(backup.id), target, actor,
            )
        except DispatchError as exc:
            logger.warning(
                f"Responder {backup.responding_unit[:8]} not moved to {target.value} "
                f"for backup {backup.id[:8]}: {exc.detail}",
                extra={"actor": actor, "entity_type": EntityType.BACKUP_REQUEST.value, "entity_id": backup.id},
            )

    async def _publish(self, event_type: str, backup: BackupRequest, actor: str) -> None:
        units = [backup.requesting_unit]
        if backup.responding_unit:
            units.append(backup.responding_unit)
        await self._fanout.publish(
            event_type, EntityType.BACKUP_REQUEST.value, backup.id,
            backup.snapshot(), Audience.dispatchers_only().with_units(units), actor,
        )
