# cadcore/core/tactical.py
"""
TacticalCalloutManager: special-team activation workflow.

PENDING -> RESPONDING -> ON_SCENE -> RESOLVED, one step at a time.
Skipping a step is an InvalidTransition so the response timeline is
always complete.

Paging is advisory: every officer of the team hears about it whatever
their duty status, and nothing about the officers is written.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Iterable

from cadcore.config import settings
from cadcore.core.domain import (
    Audience,
    DispatchEvent,
    EntityType,
    ListQuery,
    TacticalCallout,
    TacticalPriority,
    TacticalStatus,
    TacticalTeam,
    parse_enum,
    utcnow,
)
from cadcore.core.errors import (
    AlreadyTerminal,
    DispatchValidationError,
    InvalidTransition,
    NotFound,
    require_param,
)
from cadcore.core.fanout import EventType, NotificationFanout
from cadcore.core.ports import AsyncEntityStore, filter_for
from cadcore.core.state_machine import StateMachine, TransitionTable, stamp
from cadcore.core.units import UnitStatusTracker
from cadcore.infra.logging_config import get_logger

logger = get_logger(__name__)

TACTICAL_TABLE = TransitionTable.build(
    EntityType.TACTICAL_CALLOUT,
    initial=TacticalStatus.PENDING,
    pairs=[
        (TacticalStatus.PENDING, TacticalStatus.RESPONDING),
        (TacticalStatus.RESPONDING, TacticalStatus.ON_SCENE),
        (TacticalStatus.ON_SCENE, TacticalStatus.RESOLVED),
    ],
    terminal=[TacticalStatus.RESOLVED],
    hooks=[
        stamp("responding_at", on=[TacticalStatus.RESPONDING]),
        stamp("on_scene_at", on=[TacticalStatus.ON_SCENE]),
        stamp("resolved_at", on=[TacticalStatus.RESOLVED]),
    ],
    touch_field="updated_at",
)

ASSIGNABLE_STATUSES = frozenset({TacticalStatus.PENDING.value, TacticalStatus.RESPONDING.value})


class TacticalCalloutManager:
    """CIRT/SOG activation, paging and officer assignment."""

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
            TACTICAL_TABLE,
            store,
            snapshot=lambda record: TacticalCallout.from_record(record).snapshot(),
            conflict_retries=retries,
            clock=clock,
        )

    async def activate(
        self,
        team: TacticalTeam | str,
        incident_type: str,
        location: str,
        priority: TacticalPriority | str,
        briefing: str | None,
        staging_area: str | None,
        actor: str,
        *,
        call_id: str | None = None,
    ) -> TacticalCallout:
        """Open a PENDING callout and page the whole team."""
        team = parse_enum(TacticalTeam, team, "team")
        priority = parse_enum(TacticalPriority, priority, "priority")
        if not (incident_type or "").strip():
            raise DispatchValidationError("incident_type is required")
        if not (location or "").strip():
            raise DispatchValidationError("location is required")
        if call_id and await self._store.load(EntityType.CALL.value, call_id) is None:
            raise NotFound(EntityType.CALL.value, call_id)

        now = self._clock()
        callout = TacticalCallout(
            id=str(uuid.uuid4()),
            team=team,
            incident_type=incident_type.strip(),
            location=location.strip(),
            priority=priority,
            staging_area=staging_area,
            briefing=briefing,
            requested_by=actor,
            call_id=call_id,
            callout_time=now,
            updated_at=now,
            updated_by=actor,
        )
        record = await self._machine.create(callout.id, callout.to_fields(), actor=actor)
        callout = TacticalCallout.from_record(record)

        audience = await self._team_audience(team)
        logger.info(
            f"Tactical callout {team.value} activated: {callout.incident_type} at {callout.location} "
            f"({priority.value}), paging {len(audience.unit_ids)} officer(s)",
            extra={"actor": actor, "entity_type": EntityType.TACTICAL_CALLOUT.value, "entity_id": callout.id},
        )
        await self._fanout.publish(
            EventType.TACTICAL_ACTIVATED, EntityType.TACTICAL_CALLOUT.value, callout.id,
            callout.snapshot(), audience, actor,
        )
        return callout

    async def page(self, team: TacticalTeam | str, actor: str, message: str | None = None) -> DispatchEvent:
        """Page every officer of ``team`` without opening a callout."""
        team = parse_enum(TacticalTeam, team, "team")
        audience = await self._team_audience(team)
        page_id = str(uuid.uuid4())
        logger.info(
            f"Tactical page to {team.value}: {len(audience.unit_ids)} officer(s)",
            extra={"actor": actor, "entity_type": EntityType.TACTICAL_CALLOUT.value},
        )
        return await self._fanout.publish(
            EventType.TACTICAL_PAGE, EntityType.TACTICAL_CALLOUT.value, page_id,
            {"page_id": page_id, "team": team.value, "message": message}, audience, actor,
        )

    async def assign_officers(self, callout_id: str, officer_ids: Iterable[str], actor: str) -> TacticalCallout:
        """
        Add officers while PENDING or RESPONDING.

        Officers must be tactical units of a team the callout covers.  Their
        duty status is left alone.
        """
        if isinstance(officer_ids, str) or not isinstance(officer_ids, (list, tuple, set, frozenset)):
            raise DispatchValidationError("officer_ids must be a list of unit ids")
        officer_ids = list(dict.fromkeys(officer_ids))
        if not officer_ids:
            raise DispatchValidationError("officer_ids must not be empty")

        callout = await self.get(callout_id)
        for officer_id in officer_ids:
            officer = await self._units.get(officer_id)
            if not callout.team.covers(officer.tactical_team):
                raise DispatchValidationError(
                    f"unit {officer.callsign} is not a {callout.team.value} officer",
                    current=callout.snapshot(),
                )

        def guard(fields: dict) -> None:
            status = fields["status"]
            if TACTICAL_TABLE.is_terminal(status):
                raise AlreadyTerminal(EntityType.TACTICAL_CALLOUT.value, status)
            if status not in ASSIGNABLE_STATUSES:
                raise InvalidTransition(
                    EntityType.TACTICAL_CALLOUT.value, status, status, action="assign_officers",
                )

        def mutate(fields: dict) -> None:
            current = list(fields.get("officer_ids") or [])
            fields["officer_ids"] = current + [o for o in officer_ids if o not in current]

        record = await self._machine.amend(
            callout_id, actor=actor, action="assign_officers", mutate=mutate, guard=guard,
        )
        callout = TacticalCallout.from_record(record)
        await self._fanout.publish(
            EventType.TACTICAL_OFFICERS_ASSIGNED, EntityType.TACTICAL_CALLOUT.value, callout.id,
            {**callout.snapshot(), "added_officer_ids": officer_ids},
            Audience.dispatchers_only().with_units(callout.officer_ids), actor,
        )
        return callout

    async def advance(self, callout_id: str, next_status: TacticalStatus | str, actor: str) -> TacticalCallout:
        target = parse_enum(TacticalStatus, next_status, "status")
        result = await self._machine.transition(callout_id, target, actor=actor, action="advance")
        callout = TacticalCallout.from_record(result.after)
        await self._fanout.publish(
            EventType.TACTICAL_ADVANCED, EntityType.TACTICAL_CALLOUT.value, callout.id,
            {**callout.snapshot(), "from_status": result.from_status},
            Audience.dispatchers_only().with_units(callout.officer_ids), actor,
        )
        return callout

    async def transition(self, callout_id: str, action: str, actor: str, **params: Any) -> TacticalCallout:
        if action == "assign_officers":
            return await self.assign_officers(callout_id, require_param(params, "officer_ids"), actor)
        if action == "advance":
            return await self.advance(callout_id, require_param(params, "status"), actor)
        raise DispatchValidationError(f"unknown tactical action '{action}'")

    async def get(self, callout_id: str) -> TacticalCallout:
        return TacticalCallout.from_record(await self._machine.load(callout_id))

    async def list(self, query: ListQuery | None = None) -> list[TacticalCallout]:
        records = await self._store.query(
            EntityType.TACTICAL_CALLOUT.value,
            filter_for(query, time_field="callout_time", departments=False),
        )
        callouts = sorted(
            (TacticalCallout.from_record(r) for r in records),
            key=lambda c: c.callout_time.timestamp() if c.callout_time else 0.0,
            reverse=True,
        )
        if query and query.limit:
            callouts = callouts[: query.limit]
        return callouts

    async def _team_audience(self, team: TacticalTeam) -> Audience:
        roster = await self._units.tactical_roster(team)
        return Audience.dispatchers_only().with_units(u.id for u in roster)
