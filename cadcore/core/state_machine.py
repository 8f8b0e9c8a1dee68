# cadcore/core/state_machine.py
"""
Transition-table engine shared by every dispatch entity.

Each entity family declares one ``TransitionTable``: the allowed
``(from, to)`` status pairs, its terminal statuses and the hooks that
stamp fields when a status is entered.  ``StateMachine`` binds a table
to the entity store and applies a transition as one compare-and-swap
write: status, stamped fields and any caller mutation land together or
not at all.

Same-entity serialization:
    save() only succeeds if the record version is still the one that was
    validated.  On a VersionConflict the record is re-read and the whole
    validation runs again against the fresh state, so a lost race
    surfaces as the right domain error (e.g. AlreadyAcknowledged) rather
    than overwriting the winner.  The write is never replayed blindly.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable

from cadcore.core.domain import StoredRecord, to_iso, utcnow
from cadcore.core.errors import (
    AlreadyTerminal,
    ConcurrentModification,
    DispatchError,
    InvalidTransition,
    NotFound,
)
from cadcore.core.ports import AsyncEntityStore, VersionConflict
from cadcore.infra.audit_log import audit_event
from cadcore.infra.logging_config import get_logger
from cadcore.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

# (fields, from_status, to_status, now) -> None; mutates fields in place
PostTransitionHook = Callable[[dict, str, str, datetime], None]
# (fields) -> None; raises a DispatchError to veto
Precheck = Callable[[dict], None]
# (fields) -> None; mutates fields in place
Mutation = Callable[[dict], None]


def _value(status: Any) -> str:
    return status.value if isinstance(status, Enum) else str(status)


def stamp(field_name: str, *, on: Iterable[Any] | None = None) -> PostTransitionHook:
    """Hook that writes ``now`` into ``field_name`` when entering one of ``on``.

    With ``on=None`` the field is stamped on every transition.
    """
    targets = frozenset(_value(s) for s in on) if on is not None else None

    def hook(fields: dict, from_status: str, to_status: str, now: datetime) -> None:
        if targets is None or to_status in targets:
            fields[field_name] = to_iso(now)

    return hook


@dataclass(frozen=True)
class TransitionTable:
    entity_type: str
    initial: str
    allowed: frozenset[tuple[str, str]]
    terminal: frozenset[str] = frozenset()
    hooks: tuple[PostTransitionHook, ...] = field(default=())
    # stamped with the write time on every save, status change or not
    touch_field: str | None = None

    @classmethod
    def build(
        cls,
        entity_type: Any,
        *,
        initial: Any,
        pairs: Iterable[tuple[Any, Any]],
        terminal: Iterable[Any] = (),
        hooks: Iterable[PostTransitionHook] = (),
        touch_field: str | None = None,
    ) -> "TransitionTable":
        return cls(
            entity_type=_value(entity_type),
            initial=_value(initial),
            allowed=frozenset((_value(a), _value(b)) for a, b in pairs),
            terminal=frozenset(_value(s) for s in terminal),
            hooks=tuple(hooks),
            touch_field=touch_field,
        )

    def permits(self, from_status: Any, to_status: Any) -> bool:
        return (_value(from_status), _value(to_status)) in self.allowed

    def is_terminal(self, status: Any) -> bool:
        return _value(status) in self.terminal

    def check(
        self,
        current: Any,
        target: Any,
        *,
        action: str | None = None,
        fields: dict | None = None,
        precheck: Precheck | None = None,
    ) -> None:
        """
        Validate ``current -> target``.

        Order matters: a terminal record always reports AlreadyTerminal,
        then the caller's precheck may raise a more specific error (a lost
        race), then the pair itself is checked.
        """
        current_v, target_v = _value(current), _value(target)
        if current_v in self.terminal:
            raise AlreadyTerminal(self.entity_type, current_v)
        if precheck is not None:
            precheck(fields if fields is not None else {"status": current_v})
        if (current_v, target_v) not in self.allowed:
            raise InvalidTransition(self.entity_type, current_v, target_v, action=action)


@dataclass
class Transition:
    """Outcome of an accepted transition."""
    before: StoredRecord
    after: StoredRecord

    @property
    def from_status(self) -> str:
        return self.before.fields["status"]

    @property
    def to_status(self) -> str:
        return self.after.fields["status"]


class StateMachine:
    """
    Applies a ``TransitionTable`` against the entity store.

    ``snapshot`` turns a stored record into the caller-facing snapshot
    attached to rejections.
    """

    def __init__(
        self,
        table: TransitionTable,
        store: AsyncEntityStore,
        *,
        snapshot: Callable[[StoredRecord], dict[str, Any]] | None = None,
        conflict_retries: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.table = table
        self._store = store
        self._snapshot = snapshot or (lambda r: {"id": r.entity_id, "version": r.version, **r.fields})
        self._conflict_retries = max(0, conflict_retries)
        self._clock = clock

    @property
    def entity_type(self) -> str:
        return self.table.entity_type

    async def load(self, entity_id: str) -> StoredRecord:
        record = await self._store.load(self.entity_type, entity_id)
        if record is None:
            raise NotFound(self.entity_type, entity_id)
        return record

    async def create(self, entity_id: str, fields: dict[str, Any], *, actor: str) -> StoredRecord:
        """Insert a new record in the table's initial status."""
        fields = dict(fields)
        fields["status"] = self.table.initial
        record = await self._store.insert(self.entity_type, entity_id, fields)
        DispatchMetrics.entity_created(self.entity_type)
        audit_event(
            f"{self.entity_type}.create",
            actor=actor,
            entity_type=self.entity_type,
            entity_id=entity_id,
            to_status=self.table.initial,
        )
        return record

    async def transition(
        self,
        entity_id: str,
        target: Any,
        *,
        actor: str,
        action: str,
        precheck: Precheck | None = None,
        mutate: Mutation | None = None,
    ) -> Transition:
        """
        Move ``entity_id`` to ``target``.

        ``precheck`` sees the current fields after the terminal check and
        may veto with a specific error; ``mutate`` adds caller fields to
        the same write after the table hooks ran.
        """
        target_v = _value(target)
        return await self.apply(
            entity_id,
            lambda fields: target_v,
            actor=actor,
            action=action,
            precheck=precheck,
            mutate=mutate,
            allow_same=False,
        )

    async def apply(
        self,
        entity_id: str,
        next_status: Callable[[dict], Any],
        *,
        actor: str,
        action: str,
        precheck: Precheck | None = None,
        mutate: Mutation | None = None,
        allow_same: bool = True,
    ) -> Transition:
        """
        Like ``transition`` but the target is decided from the fields read
        in each attempt.

        With ``allow_same`` a target equal to the current status is an
        in-place update: terminal records and the precheck still apply,
        the table and the hooks do not.
        """

        def build(fields: dict) -> dict:
            current = fields["status"]
            target_v = _value(next_status(fields))
            now = self._clock()
            if allow_same and target_v == current:
                if self.table.is_terminal(current):
                    raise AlreadyTerminal(self.entity_type, current)
                if precheck is not None:
                    precheck(fields)
            else:
                self.table.check(current, target_v, action=action, fields=fields, precheck=precheck)
                fields["status"] = target_v
                for hook in self.table.hooks:
                    hook(fields, current, target_v, now)
            self._touch(fields, actor, now)
            if mutate is not None:
                mutate(fields)
            return fields

        with DispatchMetrics.track_transition(self.entity_type, action):
            before, after = await self._compare_and_swap(entity_id, build, action=action)

        result = Transition(before=before, after=after)
        DispatchMetrics.transition_accepted(self.entity_type, result.to_status)
        audit_event(
            f"{self.entity_type}.{action}",
            actor=actor,
            entity_type=self.entity_type,
            entity_id=entity_id,
            from_status=result.from_status,
            to_status=result.to_status,
        )
        return result

    async def amend(
        self,
        entity_id: str,
        *,
        actor: str,
        action: str,
        mutate: Mutation,
        guard: Precheck | None = None,
    ) -> StoredRecord:
        """
        Change non-status fields under the same compare-and-swap rules.

        ``guard`` decides whether the current status permits the change.
        """

        def build(fields: dict) -> dict:
            if guard is not None:
                guard(fields)
            self._touch(fields, actor, self._clock())
            mutate(fields)
            return fields

        with DispatchMetrics.track_transition(self.entity_type, action):
            _, after = await self._compare_and_swap(entity_id, build, action=action)

        audit_event(
            f"{self.entity_type}.{action}",
            actor=actor,
            entity_type=self.entity_type,
            entity_id=entity_id,
            from_status=after.fields.get("status"),
            to_status=after.fields.get("status"),
        )
        return after

    def _touch(self, fields: dict, actor: str, now: datetime) -> None:
        fields["updated_by"] = actor
        if self.table.touch_field:
            fields[self.table.touch_field] = to_iso(now)

    async def _compare_and_swap(
        self,
        entity_id: str,
        build: Callable[[dict], dict],
        *,
        action: str,
    ) -> tuple[StoredRecord, StoredRecord]:
        for attempt in range(self._conflict_retries + 1):
            before = await self.load(entity_id)
            try:
                fields = build(copy.deepcopy(before.fields))
            except DispatchError as exc:
                if exc.current is None:
                    exc.current = self._snapshot(before)
                DispatchMetrics.transition_rejected(self.entity_type, exc.code)
                if attempt > 0:
                    # Validation passed on an older read and failed on a
                    # newer one: somebody else got there first.
                    DispatchMetrics.race_lost(self.entity_type, exc.code)
                raise

            try:
                after = await self._store.save(
                    self.entity_type, entity_id, fields, expected_version=before.version,
                )
                return before, after
            except VersionConflict as exc:
                DispatchMetrics.version_conflict(self.entity_type)
                logger.debug(
                    f"Version conflict on {self.entity_type} {entity_id[:8]} "
                    f"(action={action}, attempt={attempt + 1}): {exc}",
                    extra={"entity_type": self.entity_type, "entity_id": entity_id},
                )

        latest = await self.load(entity_id)
        DispatchMetrics.transition_rejected(self.entity_type, ConcurrentModification.code)
        raise ConcurrentModification(
            f"{self.entity_type} '{entity_id}' changed concurrently during '{action}'",
            current=self._snapshot(latest),
        )
