# cadcore/core/calls.py
"""
CallRegistry: emergency call lifecycle.

PENDING -> ACTIVE -> CLOSED, PENDING/ACTIVE -> CANCELLED.  CLOSED and
CANCELLED are terminal; notes stay appendable on terminal calls because
they are audit fields.

Assigning a unit touches two records.  The unit is claimed first (a
compare-and-swap on the unit, so exactly one caller gets it), then the
call is updated.  If the call update is rejected the unit is released
again before the error propagates, so a unit is never left BUSY on a
call that does not list it.
"""
from __future__ import annotations

import secrets
import uuid
from datetime import datetime
from typing import Any, Callable, Iterable

from cadcore.config import settings
from cadcore.core.domain import (
    AssignmentRef,
    Audience,
    Call,
    CallNote,
    CallStatus,
    Department,
    EntityType,
    ListQuery,
    Priority,
    parse_enum,
    utcnow,
)
from cadcore.core.errors import (
    AlreadyTerminal,
    DispatchValidationError,
    UnitUnavailable,
    require_param,
)
from cadcore.core.fanout import EventType, NotificationFanout
from cadcore.core.ports import AsyncEntityStore, RecordFilter, filter_for
from cadcore.core.state_machine import StateMachine, TransitionTable, stamp
from cadcore.core.units import UnitStatusTracker
from cadcore.infra.logging_config import get_logger

logger = get_logger(__name__)

CALL_TABLE = TransitionTable.build(
    EntityType.CALL,
    initial=CallStatus.PENDING,
    pairs=[
        (CallStatus.PENDING, CallStatus.ACTIVE),
        (CallStatus.ACTIVE, CallStatus.CLOSED),
        (CallStatus.PENDING, CallStatus.CANCELLED),
        (CallStatus.ACTIVE, CallStatus.CANCELLED),
    ],
    terminal=[CallStatus.CLOSED, CallStatus.CANCELLED],
    hooks=[
        stamp("dispatched_at", on=[CallStatus.ACTIVE]),
        stamp("closed_at", on=[CallStatus.CLOSED, CallStatus.CANCELLED]),
    ],
    touch_field="updated_at",
)

_CALL_NUMBER_ATTEMPTS = 5


def generate_call_number(now: datetime) -> str:
    """Human-readable call number: ``YYYY-NNNNNN``."""
    return f"{now.year}-{secrets.randbelow(1_000_000):06d}"


def _call_audience(fields: dict, extra_units: Iterable[str] = ()) -> Audience:
    return Audience.dispatchers_only().with_units(
        list(fields.get("assigned_unit_ids") or []) + list(extra_units)
    )


class CallRegistry:
    """Emergency call lifecycle and unit assignment."""

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
            CALL_TABLE,
            store,
            snapshot=lambda record: Call.from_record(record).snapshot(),
            conflict_retries=retries,
            clock=clock,
        )

    async def create_call(
        self,
        type: str,
        priority: Priority | str,
        location: str,
        actor: str,
        *,
        description: str | None = None,
        postal: str | None = None,
        caller: str | None = None,
        caller_phone: str | None = None,
    ) -> Call:
        if not (type or "").strip():
            raise DispatchValidationError("call type is required")
        if not (location or "").strip():
            raise DispatchValidationError("location is required")
        priority = parse_enum(Priority, priority, "priority")

        now = self._clock()
        call = Call(
            id=str(uuid.uuid4()),
            call_number=await self._unique_call_number(now),
            type=type.strip(),
            priority=priority,
            location=location.strip(),
            description=description,
            postal=postal,
            caller=caller,
            caller_phone=caller_phone,
            created_by=actor,
            created_at=now,
            updated_at=now,
            updated_by=actor,
        )
        record = await self._machine.create(call.id, call.to_fields(), actor=actor)
        call = Call.from_record(record)
        logger.info(
            f"Call {call.call_number} created: {call.type} ({call.priority.value}) at {call.location}",
            extra={"actor": actor, "entity_type": EntityType.CALL.value, "entity_id": call.id},
        )
        await self._fanout.publish(
            EventType.CALL_CREATED, EntityType.CALL.value, call.id,
            call.snapshot(), Audience.dispatchers_only(), actor,
        )
        return call

    async def assign_unit(self, call_id: str, unit_id: str, actor: str) -> Call:
        """
        Commit an AVAILABLE unit to the call; the first assignment moves a
        PENDING call to ACTIVE.
        """
        await self._ensure_open(call_id)
        ref = AssignmentRef.call(call_id)
        await self._units.claim(unit_id, ref, actor)

        def next_status(fields: dict) -> str:
            if fields["status"] == CallStatus.PENDING.value:
                return CallStatus.ACTIVE.value
            return fields["status"]

        def mutate(fields: dict) -> None:
            # A unit that cleared itself stays listed; the new claim re-commits it.
            assigned = list(fields.get("assigned_unit_ids") or [])
            if unit_id not in assigned:
                assigned.append(unit_id)
            fields["assigned_unit_ids"] = assigned

        try:
            result = await self._machine.apply(
                call_id, next_status, actor=actor, action="assign_unit", mutate=mutate,
            )
        except Exception:
            logger.warning(
                f"Call {call_id[:8]} rejected unit {unit_id[:8]} after claim; releasing unit",
                extra={"actor": actor, "entity_type": EntityType.CALL.value, "entity_id": call_id},
            )
            await self._units.release_logged(unit_id, actor, ref)
            raise

        call = Call.from_record(result.after)
        await self._fanout.publish(
            EventType.CALL_UNIT_ASSIGNED, EntityType.CALL.value, call.id,
            {**call.snapshot(), "unit_id": unit_id}, _call_audience(result.after.fields), actor,
        )
        return call

    async def unassign_unit(self, call_id: str, unit_id: str, actor: str) -> Call:
        """Take one unit off an open call and release it; the call keeps its status."""

        def guard(fields: dict) -> None:
            if CALL_TABLE.is_terminal(fields["status"]):
                raise AlreadyTerminal(EntityType.CALL.value, fields["status"])
            if unit_id not in (fields.get("assigned_unit_ids") or []):
                raise DispatchValidationError(f"unit {unit_id} is not assigned to this call")

        def mutate(fields: dict) -> None:
            fields["assigned_unit_ids"] = [u for u in fields["assigned_unit_ids"] if u != unit_id]

        record = await self._machine.amend(
            call_id, actor=actor, action="unassign_unit", mutate=mutate, guard=guard,
        )
        await self._units.release(unit_id, actor, expected_assignment=AssignmentRef.call(call_id))

        call = Call.from_record(record)
        await self._fanout.publish(
            EventType.CALL_UNIT_UNASSIGNED, EntityType.CALL.value, call.id,
            {**call.snapshot(), "unit_id": unit_id}, _call_audience(record.fields, [unit_id]), actor,
        )
        return call

    async def dispatch_next_available(self, call_id: str, department: Department | str, actor: str) -> Call:
        """Assign the first eligible unit of ``department`` that can still be claimed."""
        department = parse_enum(Department, department, "department")
        await self._ensure_open(call_id)
        for unit in await self._units.find_eligible(department):
            try:
                return await self.assign_unit(call_id, unit.id, actor)
            except UnitUnavailable:
                logger.debug(
                    f"Unit {unit.callsign} taken before dispatch to call {call_id[:8]}, trying next",
                    extra={"entity_type": EntityType.CALL.value, "entity_id": call_id},
                )
        current = await self._machine.load(call_id)
        raise UnitUnavailable(
            f"No AVAILABLE {department.value} unit could be assigned",
            current=Call.from_record(current).snapshot(),
        )

    async def close_call(self, call_id: str, outcome: str | None, actor: str) -> Call:
        def mutate(fields: dict) -> None:
            fields["outcome"] = outcome

        result = await self._machine.transition(
            call_id, CallStatus.CLOSED, actor=actor, action="close", mutate=mutate,
        )
        await self._release_all(result.after.fields, call_id, actor)
        call = Call.from_record(result.after)
        await self._fanout.publish(
            EventType.CALL_CLOSED, EntityType.CALL.value, call.id,
            call.snapshot(), _call_audience(result.after.fields), actor,
        )
        return call

    async def cancel_call(self, call_id: str, actor: str) -> Call:
        result = await self._machine.transition(
            call_id, CallStatus.CANCELLED, actor=actor, action="cancel",
        )
        await self._release_all(result.after.fields, call_id, actor)
        call = Call.from_record(result.after)
        await self._fanout.publish(
            EventType.CALL_CANCELLED, EntityType.CALL.value, call.id,
            call.snapshot(), _call_audience(result.after.fields), actor,
        )
        return call

    async def add_note(self, call_id: str, content: str, actor: str) -> Call:
        content = (content or "").strip()
        if not content:
            raise DispatchValidationError("note content is required")
        note = CallNote(id=str(uuid.uuid4()), author=actor, content=content, created_at=self._clock())

        def mutate(fields: dict) -> None:
            fields["notes"] = list(fields.get("notes") or []) + [note.to_dict()]

        record = await self._machine.amend(call_id, actor=actor, action="add_note", mutate=mutate)
        call = Call.from_record(record)
        await self._fanout.publish(
            EventType.CALL_NOTE_ADDED, EntityType.CALL.value, call.id,
            {**call.snapshot(), "note": note.to_dict()}, _call_audience(record.fields), actor,
        )
        return call

    async def transition(self, call_id: str, action: str, actor: str, **params: Any) -> Call:
        if action == "assign":
            return await self.assign_unit(call_id, require_param(params, "unit_id"), actor)
        if action == "unassign":
            return await self.unassign_unit(call_id, require_param(params, "unit_id"), actor)
        if action == "dispatch_next":
            return await self.dispatch_next_available(call_id, require_param(params, "department"), actor)
        if action == "close":
            return await self.close_call(call_id, params.get("outcome"), actor)
        if action == "cancel":
            return await self.cancel_call(call_id, actor)
        if action == "add_note":
            return await self.add_note(call_id, params.get("content") or "", actor)
        raise DispatchValidationError(f"unknown call action '{action}'")

    async def get(self, call_id: str) -> Call:
        return Call.from_record(await self._machine.load(call_id))

    async def list(self, query: ListQuery | None = None) -> list[Call]:
        """Calls by priority (highest first), newest first within a priority."""
        records = await self._store.query(
            EntityType.CALL.value, filter_for(query, time_field="created_at", departments=False),
        )
        calls = [Call.from_record(r) for r in records]
        calls.sort(key=lambda c: c.created_at.timestamp() if c.created_at else 0.0, reverse=True)
        calls.sort(key=lambda c: c.priority.rank, reverse=True)
        if query and query.limit:
            calls = calls[: query.limit]
        return calls

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _ensure_open(self, call_id: str) -> None:
        record = await self._machine.load(call_id)
        status = record.fields["status"]
        if CALL_TABLE.is_terminal(status):
            raise AlreadyTerminal(
                EntityType.CALL.value, status, current=Call.from_record(record).snapshot(),
            )

    async def _release_all(self, fields: dict, call_id: str, actor: str) -> None:
        """Free every unit still committed to the call; failures are logged, the call stays terminal."""
        ref = AssignmentRef.call(call_id)
        for unit_id in fields.get("assigned_unit_ids") or []:
            await self._units.release_logged(unit_id, actor, ref)

    async def _unique_call_number(self, now: datetime) -> str:
        for _ in range(_CALL_NUMBER_ATTEMPTS):
            number = generate_call_number(now)
            clash = await self._store.query(
                EntityType.CALL.value, RecordFilter(equals={"call_number": number}),
            )
            if not clash:
                return number
        raise DispatchValidationError("could not allocate a unique call number, retry")
