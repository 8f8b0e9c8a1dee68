# tests/test_units.py
"""Tests for UnitStatusTracker: registry, duty table, claim/release."""
import asyncio

import pytest

from cadcore.core.domain import AssignmentRef, UnitStatus
from cadcore.core.errors import (
    DispatchValidationError,
    InvalidTransition,
    NotFound,
    UnitUnavailable,
)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

class TestRegisterUnit:
    """Unit registration rules."""

    @pytest.mark.asyncio
    async def test_new_unit_starts_offline(self, core):
        unit = await core.units.register_unit("1A-01", "POLICE", "admin")
        assert unit.status is UnitStatus.OFFLINE
        assert unit.assignment is None
        assert unit.version == 1

    @pytest.mark.asyncio
    async def test_duplicate_callsign_rejected_with_current(self, core):
        first = await core.units.register_unit("1A-01", "POLICE", "admin")
        with pytest.raises(DispatchValidationError) as exc_info:
            await core.units.register_unit("1A-01", "FIRE", "admin")
        assert exc_info.value.current["id"] == first.id

    @pytest.mark.asyncio
    async def test_blank_callsign_rejected(self, core):
        with pytest.raises(DispatchValidationError):
            await core.units.register_unit("   ", "POLICE", "admin")

    @pytest.mark.asyncio
    async def test_unknown_department_rejected(self, core):
        with pytest.raises(DispatchValidationError, match="department"):
            await core.units.register_unit("X-1", "COAST_GUARD", "admin")

    @pytest.mark.asyncio
    async def test_officer_cannot_be_on_both_teams(self, core):
        with pytest.raises(DispatchValidationError):
            await core.units.register_unit("T-1", "POLICE", "admin", tactical_team="BOTH")

    @pytest.mark.asyncio
    async def test_registration_is_published_to_dispatchers(self, core, feed):
        unit = await core.units.register_unit("1A-01", "POLICE", "admin")
        events = await feed.poll("dispatchers")
        assert [e.event_type for e in events] == ["UnitRegistered"]
        assert events[0].entity_id == unit.id
        assert await feed.poll(unit.id) == []


# ---------------------------------------------------------------------------
# Duty status
# ---------------------------------------------------------------------------

class TestSetStatus:
    """Unit-driven duty transitions."""

    @pytest.mark.asyncio
    async def test_sign_on(self, core, sign_on):
        unit = await sign_on("1A-01")
        assert unit.status is UnitStatus.AVAILABLE
        assert unit.updated_by == "1A-01"

    @pytest.mark.asyncio
    async def test_offline_cannot_go_busy(self, core):
        unit = await core.units.register_unit("1A-01", "POLICE", "admin")
        with pytest.raises(InvalidTransition) as exc_info:
            await core.units.set_status(unit.id, "BUSY", "1A-01")
        assert exc_info.value.current["status"] == "OFFLINE"

    @pytest.mark.asyncio
    async def test_available_cannot_jump_on_scene(self, core, sign_on):
        unit = await sign_on("1A-01")
        with pytest.raises(InvalidTransition):
            await core.units.set_status(unit.id, "ON_SCENE", "1A-01")

    @pytest.mark.asyncio
    async def test_same_status_rejected(self, core, sign_on):
        unit = await sign_on("1A-01")
        with pytest.raises(InvalidTransition):
            await core.units.set_status(unit.id, "AVAILABLE", "1A-01")

    @pytest.mark.asyncio
    async def test_unknown_status_rejected(self, core, sign_on):
        unit = await sign_on("1A-01")
        with pytest.raises(DispatchValidationError):
            await core.units.set_status(unit.id, "NAPPING", "1A-01")

    @pytest.mark.asyncio
    async def test_full_duty_cycle(self, core, sign_on):
        unit = await sign_on("1A-01")
        for status in ("BUSY", "ENROUTE", "ON_SCENE", "ENROUTE", "BUSY", "AVAILABLE", "OFFLINE"):
            unit = await core.units.set_status(unit.id, status, "1A-01")
            assert unit.status.value == status

    @pytest.mark.asyncio
    async def test_offline_clears_assignment(self, core, sign_on):
        unit = await sign_on("1A-01")
        await core.units.claim(unit.id, AssignmentRef.call("c1"), "dispatcher-1")

        unit = await core.units.set_status(unit.id, "OFFLINE", "1A-01")

        assert unit.assignment is None

    @pytest.mark.asyncio
    async def test_unknown_unit(self, core):
        with pytest.raises(NotFound):
            await core.units.set_status("nope", "AVAILABLE", "x")


# ---------------------------------------------------------------------------
# Claim / release
# ---------------------------------------------------------------------------

class TestClaimRelease:
    """Dispatch-driven commitment of a unit."""

    @pytest.mark.asyncio
    async def test_claim_sets_busy_and_assignment(self, core, sign_on):
        unit = await sign_on("1A-01")
        ref = AssignmentRef.call("c1")

        unit = await core.units.claim(unit.id, ref, "dispatcher-1")

        assert unit.status is UnitStatus.BUSY
        assert unit.assignment == ref
        assert unit.last_assigned_at is not None

    @pytest.mark.asyncio
    async def test_claim_busy_unit_is_unavailable(self, core, sign_on):
        unit = await sign_on("1A-01")
        await core.units.claim(unit.id, AssignmentRef.call("c1"), "dispatcher-1")

        with pytest.raises(UnitUnavailable) as exc_info:
            await core.units.claim(unit.id, AssignmentRef.call("c2"), "dispatcher-2")
        assert exc_info.value.current["assignment"] == {"kind": "call", "id": "c1"}

    @pytest.mark.asyncio
    async def test_claim_offline_unit_is_unavailable(self, core):
        unit = await core.units.register_unit("1A-01", "POLICE", "admin")
        with pytest.raises(UnitUnavailable):
            await core.units.claim(unit.id, AssignmentRef.call("c1"), "dispatcher-1")

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(self, core, sign_on):
        unit = await sign_on("1A-01")

        results = await asyncio.gather(
            core.units.claim(unit.id, AssignmentRef.call("c1"), "dispatcher-1"),
            core.units.claim(unit.id, AssignmentRef.call("c2"), "dispatcher-2"),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], UnitUnavailable)

        stored = await core.units.get(unit.id)
        assert stored.assignment == winners[0].assignment

    @pytest.mark.asyncio
    async def test_release_returns_unit_to_available(self, core, sign_on):
        unit = await sign_on("1A-01")
        ref = AssignmentRef.call("c1")
        await core.units.claim(unit.id, ref, "dispatcher-1")

        released = await core.units.release(unit.id, "dispatcher-1", expected_assignment=ref)

        assert released.status is UnitStatus.AVAILABLE
        assert released.assignment is None

    @pytest.mark.asyncio
    async def test_release_for_other_assignment_is_noop(self, core, sign_on):
        unit = await sign_on("1A-01")
        await core.units.claim(unit.id, AssignmentRef.call("c2"), "dispatcher-1")

        result = await core.units.release(unit.id, "dispatcher-1", expected_assignment=AssignmentRef.call("c1"))

        assert result is None
        stored = await core.units.get(unit.id)
        assert stored.status is UnitStatus.BUSY

    @pytest.mark.asyncio
    async def test_release_available_unit_is_invalid(self, core, sign_on):
        unit = await sign_on("1A-01")
        with pytest.raises(InvalidTransition):
            await core.units.release(unit.id, "dispatcher-1")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

class TestEligibility:
    """find_eligible ordering and filters."""

    @pytest.mark.asyncio
    async def test_never_assigned_first_then_least_recent(self, core, sign_on):
        a = await sign_on("A-1")
        b = await sign_on("B-1")
        c = await sign_on("C-1")
        # b assigned earlier than a; c never assigned
        await core.units.claim(b.id, AssignmentRef.call("c1"), "d")
        await core.units.release(b.id, "d")
        await core.units.claim(a.id, AssignmentRef.call("c2"), "d")
        await core.units.release(a.id, "d")

        eligible = await core.units.find_eligible("POLICE")

        assert [u.callsign for u in eligible] == ["C-1", "B-1", "A-1"]
        assert c.id == eligible[0].id

    @pytest.mark.asyncio
    async def test_callsign_breaks_ties(self, core, sign_on):
        await sign_on("Z-9")
        await sign_on("M-5")
        eligible = await core.units.find_eligible("POLICE")
        assert [u.callsign for u in eligible] == ["M-5", "Z-9"]

    @pytest.mark.asyncio
    async def test_filters_department_and_status(self, core, sign_on):
        await sign_on("P-1", "POLICE")
        await sign_on("F-1", "FIRE")
        busy = await sign_on("P-2", "POLICE")
        await core.units.set_status(busy.id, "BUSY", "P-2")
        await core.units.register_unit("P-3", "POLICE", "admin")

        assert [u.callsign for u in await core.units.find_eligible("POLICE")] == ["P-1"]
        with_offline = await core.units.find_eligible("POLICE", exclude_offline=False)
        assert [u.callsign for u in with_offline] == ["P-1", "P-3"]

    @pytest.mark.asyncio
    async def test_list_sorted_by_callsign(self, core, sign_on):
        await sign_on("B-2")
        await sign_on("A-1")
        units = await core.units.list()
        assert [u.callsign for u in units] == ["A-1", "B-2"]


class TestHistory:
    """Unit status log."""

    @pytest.mark.asyncio
    async def test_history_newest_first(self, core, sign_on):
        unit = await sign_on("1A-01")
        await core.units.set_status(unit.id, "BUSY", "1A-01")
        await core.units.set_status(unit.id, "ENROUTE", "1A-01")

        history = await core.units.history(unit.id)

        assert [(h.from_status, h.to_status) for h in history] == [
            ("BUSY", "ENROUTE"),
            ("AVAILABLE", "BUSY"),
            ("OFFLINE", "AVAILABLE"),
        ]

    @pytest.mark.asyncio
    async def test_history_limit(self, core, sign_on):
        unit = await sign_on("1A-01")
        await core.units.set_status(unit.id, "BUSY", "1A-01")
        history = await core.units.history(unit.id, limit=1)
        assert len(history) == 1
        assert history[0].to_status == "BUSY"

    @pytest.mark.asyncio
    async def test_history_records_assignment(self, core, sign_on):
        unit = await sign_on("1A-01")
        await core.units.claim(unit.id, AssignmentRef.call("c1"), "d")
        history = await core.units.history(unit.id, limit=1)
        assert history[0].assignment == AssignmentRef.call("c1")
        assert history[0].actor == "d"

    @pytest.mark.asyncio
    async def test_history_unknown_unit(self, core):
        with pytest.raises(NotFound):
            await core.units.history("missing")

    @pytest.mark.asyncio
    async def test_status_change_reaches_unit_and_dispatchers(self, core, feed, sign_on):
        unit = await sign_on("1A-01")
        unit_events = await feed.poll(unit.id)
        assert [e.event_type for e in unit_events] == ["UnitStatusChanged"]
        assert unit_events[0].payload["from_status"] == "OFFLINE"


# ---------------------------------------------------------------------------
# Location
# ---------------------------------------------------------------------------

class TestUpdateLocation:
    """Location updates leave duty status alone."""

    @pytest.mark.asyncio
    async def test_location_update_keeps_status(self, core, feed, sign_on):
        unit = await sign_on("1A-01")
        updated = await core.units.update_location(unit.id, "5th & Pine", "1A-01")
        assert updated.location == "5th & Pine"
        assert updated.status is UnitStatus.AVAILABLE
        assert updated.version == unit.version + 1

        events = await feed.poll(unit.id)
        assert events[-1].event_type == "UnitLocationUpdated"

    @pytest.mark.asyncio
    async def test_location_update_through_transition(self, core, sign_on):
        unit = await sign_on("1A-01")
        updated = await core.units.transition(unit.id, "update_location", "1A-01", location="Pier 4")
        assert updated.location == "Pier 4"
