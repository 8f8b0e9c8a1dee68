# cadcore/core/units.py
"""
UnitStatusTracker: the single choke point for field-unit state.

Nothing else writes unit records.  Two tables share the same store:

- the duty table, driven by the unit itself (``set_status``):
  AVAILABLE <-> BUSY <-> ENROUTE <-> ON_SCENE, any -> OFFLINE,
  OFFLINE -> AVAILABLE.  AVAILABLE and OFFLINE clear the assignment.
- the dispatch table, driven by calls and backup requests:
  ``claim`` is AVAILABLE -> BUSY with an assignment, ``release`` is
  BUSY/ENROUTE/ON_SCENE -> AVAILABLE with the assignment cleared.

A claim is a compare-and-swap on the unit record, so two callers racing
for one AVAILABLE unit produce exactly one winner; the loser re-reads,
sees BUSY and gets UnitUnavailable.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Optional

from cadcore.config import settings
from cadcore.core.domain import (
    Audience,
    AssignmentRef,
    Department,
    EntityType,
    ListQuery,
    TacticalTeam,
    Unit,
    UnitStatus,
    UnitStatusLogEntry,
    parse_enum,
    to_iso,
    utcnow,
)
from cadcore.core.errors import (
    DispatchError,
    DispatchValidationError,
    PersistenceUnavailable,
    UnitUnavailable,
)
from cadcore.core.fanout import EventType, NotificationFanout
from cadcore.core.ports import AsyncEntityStore, RecordFilter, filter_for
from cadcore.core.state_machine import StateMachine, TransitionTable, stamp
from cadcore.infra.logging_config import get_logger
from cadcore.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

_ACTIVE_DUTY = (UnitStatus.AVAILABLE, UnitStatus.BUSY, UnitStatus.ENROUTE, UnitStatus.ON_SCENE)

UNIT_DUTY_TABLE = TransitionTable.build(
    EntityType.UNIT,
    initial=UnitStatus.OFFLINE,
    pairs=[
        (UnitStatus.AVAILABLE, UnitStatus.BUSY),
        (UnitStatus.BUSY, UnitStatus.AVAILABLE),
        (UnitStatus.BUSY, UnitStatus.ENROUTE),
        (UnitStatus.ENROUTE, UnitStatus.BUSY),
        (UnitStatus.ENROUTE, UnitStatus.ON_SCENE),
        (UnitStatus.ON_SCENE, UnitStatus.ENROUTE),
        *[(s, UnitStatus.OFFLINE) for s in _ACTIVE_DUTY],
        (UnitStatus.OFFLINE, UnitStatus.AVAILABLE),
    ],
    hooks=[stamp("last_status_change_at")],
)

UNIT_DISPATCH_TABLE = TransitionTable.build(
    EntityType.UNIT,
    initial=UnitStatus.OFFLINE,
    pairs=[
        (UnitStatus.AVAILABLE, UnitStatus.BUSY),
        (UnitStatus.BUSY, UnitStatus.AVAILABLE),
        (UnitStatus.ENROUTE, UnitStatus.AVAILABLE),
        (UnitStatus.ON_SCENE, UnitStatus.AVAILABLE),
    ],
    hooks=[stamp("last_status_change_at")],
)

_CLEARS_ASSIGNMENT = frozenset({UnitStatus.AVAILABLE.value, UnitStatus.OFFLINE.value})


class _NotAssignedTo(UnitUnavailable):
    """The unit is no longer committed to the assignment the caller expected."""

    code = "assignment_mismatch"


def _require_assignment(expected: AssignmentRef) -> Callable[[dict], None]:
    def precheck(fields: dict) -> None:
        if AssignmentRef.from_dict(fields.get("assignment")) != expected:
            raise _NotAssignedTo(
                f"Unit {fields.get('callsign')} is not assigned to {expected.kind} {expected.id}"
            )

    return precheck


def _eligibility_key(unit: Unit) -> tuple:
    # Never-assigned units first, then least recently assigned.
    assigned = unit.last_assigned_at
    return (assigned is not None, assigned or datetime.min, unit.callsign)


class UnitStatusTracker:
    """Field-unit availability and duty state."""

    def __init__(
        self,
        store: AsyncEntityStore,
        fanout: NotificationFanout,
        *,
        conflict_retries: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        retries = settings.transition_conflict_retries if conflict_retries is None else conflict_retries
        snapshot = lambda record: Unit.from_record(record).snapshot()  # noqa: E731
        self._store = store
        self._fanout = fanout
        self._clock = clock
        self._duty = StateMachine(
            UNIT_DUTY_TABLE, store, snapshot=snapshot, conflict_retries=retries, clock=clock,
        )
        self._dispatch = StateMachine(
            UNIT_DISPATCH_TABLE, store, snapshot=snapshot, conflict_retries=retries, clock=clock,
        )

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    async def register_unit(
        self,
        callsign: str,
        department: Department | str,
        actor: str,
        *,
        tactical_team: TacticalTeam | str | None = None,
        location: str | None = None,
    ) -> Unit:
        """Create a unit; new units start OFFLINE until they sign on."""
        callsign = (callsign or "").strip()
        if not callsign:
            raise DispatchValidationError("callsign is required")
        department = parse_enum(Department, department, "department")
        team = parse_enum(TacticalTeam, tactical_team, "tactical_team") if tactical_team else None
        if team is TacticalTeam.BOTH:
            raise DispatchValidationError("an officer belongs to CIRT or SOG, not BOTH")

        existing = await self._store.query(
            EntityType.UNIT.value, RecordFilter(equals={"callsign": callsign}),
        )
        if existing:
            raise DispatchValidationError(
                f"callsign '{callsign}' is already registered",
                current=Unit.from_record(existing[0]).snapshot(),
            )

        now = self._clock()
        unit = Unit(
            id=str(uuid.uuid4()),
            callsign=callsign,
            department=department,
            tactical_team=team,
            location=location,
            last_status_change_at=now,
            created_at=now,
            updated_by=actor,
        )
        record = await self._duty.create(unit.id, unit.to_fields(), actor=actor)
        unit = Unit.from_record(record)
        logger.info(
            f"Unit registered: {unit.callsign} ({unit.department.value})",
            extra={"actor": actor, "entity_type": EntityType.UNIT.value, "entity_id": unit.id},
        )
        await self._fanout.publish(
            EventType.UNIT_REGISTERED, EntityType.UNIT.value, unit.id,
            unit.snapshot(), Audience.dispatchers_only(), actor,
        )
        return unit

    async def update_location(self, unit_id: str, location: str, actor: str) -> Unit:
        def mutate(fields: dict) -> None:
            fields["location"] = location

        record = await self._duty.amend(unit_id, actor=actor, action="update_location", mutate=mutate)
        unit = Unit.from_record(record)
        await self._fanout.publish(
            EventType.UNIT_LOCATION_UPDATED, EntityType.UNIT.value, unit.id,
            unit.snapshot(), Audience.dispatchers_only().with_units([unit.id]), actor,
        )
        return unit

    # ------------------------------------------------------------------
    # Duty status
    # ------------------------------------------------------------------

    async def set_status(self, unit_id: str, new_status: UnitStatus | str, actor: str) -> Unit:
        """Unit-driven duty change; AVAILABLE and OFFLINE drop the assignment."""
        target = _parse_status(new_status)

        def mutate(fields: dict) -> None:
            if fields["status"] in _CLEARS_ASSIGNMENT:
                fields["assignment"] = None

        result = await self._duty.transition(
            unit_id, target, actor=actor, action="set_status", mutate=mutate,
        )
        return await self._record_change(result.before.fields, result.after, actor)

    async def claim(self, unit_id: str, assignment: AssignmentRef, actor: str) -> Unit:
        """AVAILABLE -> BUSY committed to ``assignment``; UnitUnavailable otherwise."""

        def precheck(fields: dict) -> None:
            if fields["status"] != UnitStatus.AVAILABLE.value:
                raise UnitUnavailable(f"Unit {fields.get('callsign')} is {fields['status']}")

        def mutate(fields: dict) -> None:
            fields["assignment"] = assignment.to_dict()
            fields["last_assigned_at"] = to_iso(self._clock())

        result = await self._dispatch.transition(
            unit_id, UnitStatus.BUSY, actor=actor, action="claim", precheck=precheck, mutate=mutate,
        )
        return await self._record_change(result.before.fields, result.after, actor)

    async def release(
        self,
        unit_id: str,
        actor: str,
        expected_assignment: AssignmentRef | None = None,
    ) -> Optional[Unit]:
        """
        Return a committed unit to AVAILABLE.

        With ``expected_assignment`` the release only happens while the unit
        is still committed to it; otherwise nothing changes and None is
        returned (the unit already cleared itself or moved on).
        """
        precheck = _require_assignment(expected_assignment) if expected_assignment else None

        def mutate(fields: dict) -> None:
            fields["assignment"] = None

        try:
            result = await self._dispatch.transition(
                unit_id, UnitStatus.AVAILABLE, actor=actor, action="release",
                precheck=precheck, mutate=mutate,
            )
        except _NotAssignedTo:
            logger.info(
                f"Release skipped for unit {unit_id[:8]}: no longer on "
                f"{expected_assignment.kind} {expected_assignment.id[:8]}",
                extra={"actor": actor, "entity_type": EntityType.UNIT.value, "entity_id": unit_id},
            )
            return None
        return await self._record_change(result.before.fields, result.after, actor)

    async def release_logged(self, unit_id: str, actor: str, expected_assignment: AssignmentRef) -> Optional[Unit]:
        """
        ``release`` for callers whose own write has already committed (or
        already failed): a failed release is logged and counted, never raised.
        The unit keeps its assignment and can clear itself with ``set_status``.
        """
        try:
            return await self.release(unit_id, actor, expected_assignment=expected_assignment)
        except DispatchError as exc:
            DispatchMetrics.release_failed(expected_assignment.kind)
            logger.error(
                f"Failed to release unit {unit_id[:8]} from {expected_assignment.kind} "
                f"{expected_assignment.id[:8]}: {exc.detail}",
                extra={"actor": actor, "entity_type": EntityType.UNIT.value, "entity_id": unit_id},
            )
            return None

    async def follow_assignment(
        self,
        unit_id: str,
        assignment: AssignmentRef,
        target: UnitStatus,
        actor: str,
    ) -> Optional[Unit]:
        """
        Move a unit along its duty table on behalf of the assignment it holds
        (e.g. a backup responder going ENROUTE).  No-op if the unit has since
        been committed elsewhere.
        """
        try:
            result = await self._duty.transition(
                unit_id, target, actor=actor, action="follow_assignment",
                precheck=_require_assignment(assignment),
            )
        except _NotAssignedTo:
            return None
        return await self._record_change(result.before.fields, result.after, actor)

    async def transition(self, unit_id: str, action: str, actor: str, **params: Any) -> Unit:
        if action == "set_status":
            return await self.set_status(unit_id, params.get("status"), actor)
        if action == "release":
            unit = await self.release(unit_id, actor)
            return unit if unit is not None else await self.get(unit_id)
        if action == "update_location":
            return await self.update_location(unit_id, params.get("location") or "", actor)
        raise DispatchValidationError(f"unknown unit action '{action}'")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, unit_id: str) -> Unit:
        return Unit.from_record(await self._duty.load(unit_id))

    async def list(self, query: ListQuery | None = None) -> list[Unit]:
        records = await self._store.query(
            EntityType.UNIT.value,
            filter_for(query, time_field="last_status_change_at", priorities=False),
        )
        units = sorted((Unit.from_record(r) for r in records), key=lambda u: u.callsign)
        if query and query.limit:
            units = units[: query.limit]
        return units

    async def find_eligible(self, department: Department | str, exclude_offline: bool = True) -> list[Unit]:
        """
        AVAILABLE units of ``department``, least recently assigned first,
        callsign as tie-break.

        With ``exclude_offline=False`` OFFLINE units follow, ordered by
        callsign, for dispatchers who want to see who could be called in.
        """
        department = parse_enum(Department, department, "department")
        statuses = {UnitStatus.AVAILABLE.value}
        if not exclude_offline:
            statuses.add(UnitStatus.OFFLINE.value)
        records = await self._store.query(
            EntityType.UNIT.value,
            RecordFilter(any_of={
                "department": frozenset({department.value}),
                "status": frozenset(statuses),
            }),
        )
        units = [Unit.from_record(r) for r in records]
        available = sorted(
            (u for u in units if u.status is UnitStatus.AVAILABLE), key=_eligibility_key,
        )
        offline = sorted(
            (u for u in units if u.status is UnitStatus.OFFLINE), key=lambda u: u.callsign,
        )
        return available + offline

    async def available_unit_ids(self, departments: list[Department] | None = None) -> frozenset[str]:
        record_filter = RecordFilter(any_of={"status": frozenset({UnitStatus.AVAILABLE.value})})
        if departments is not None:
            record_filter.any_of["department"] = frozenset(d.value for d in departments)
        records = await self._store.query(EntityType.UNIT.value, record_filter)
        return frozenset(r.entity_id for r in records)

    async def on_duty_unit_ids(self) -> frozenset[str]:
        """Every unit that is signed on, whatever it is doing."""
        records = await self._store.query(
            EntityType.UNIT.value,
            RecordFilter(any_of={"status": frozenset(s.value for s in _ACTIVE_DUTY)}),
        )
        return frozenset(r.entity_id for r in records)

    async def tactical_roster(self, team: TacticalTeam) -> list[Unit]:
        """Every officer on ``team`` regardless of duty status."""
        records = await self._store.query(
            EntityType.UNIT.value,
            RecordFilter(any_of={"tactical_team": frozenset(t.value for t in team.member_teams())}),
        )
        return sorted((Unit.from_record(r) for r in records), key=lambda u: u.callsign)

    async def history(self, unit_id: str, limit: int | None = None) -> list[UnitStatusLogEntry]:
        """Status log for one unit, newest first."""
        await self._duty.load(unit_id)
        limit = settings.unit_history_default_limit if limit is None else limit
        records = await self._store.query(
            EntityType.UNIT_STATUS_LOG.value, RecordFilter(equals={"unit_id": unit_id}),
        )
        entries = sorted(
            (UnitStatusLogEntry.from_record(r) for r in records),
            key=lambda e: e.created_at,
            reverse=True,
        )
        return entries[:limit]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _record_change(self, before: dict, after_record, actor: str) -> Unit:
        unit = Unit.from_record(after_record)
        entry = UnitStatusLogEntry(
            id=str(uuid.uuid4()),
            unit_id=unit.id,
            callsign=unit.callsign,
            from_status=before.get("status"),
            to_status=unit.status.value,
            actor=actor,
            created_at=self._clock(),
            assignment=unit.assignment,
        )
        try:
            await self._store.insert(EntityType.UNIT_STATUS_LOG.value, entry.id, entry.to_fields())
        except PersistenceUnavailable as exc:
            # The status change itself is committed; only the log row is lost.
            logger.error(
                f"Unit status log write failed for {unit.callsign}: {exc.detail}",
                extra={"actor": actor, "entity_type": EntityType.UNIT.value, "entity_id": unit.id},
            )
            DispatchMetrics.persistence_error("unit_status_log")

        payload = unit.snapshot()
        payload["from_status"] = before.get("status")
        await self._fanout.publish(
            EventType.UNIT_STATUS_CHANGED, EntityType.UNIT.value, unit.id,
            payload, Audience.dispatchers_only().with_units([unit.id]), actor,
        )
        return unit


def _parse_status(value: UnitStatus | str) -> UnitStatus:
    return parse_enum(UnitStatus, value, "status")
