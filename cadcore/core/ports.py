# cadcore/core/ports.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

from cadcore.core.domain import DispatchEvent, ListQuery, StoredRecord, from_iso


# ============================================================================
# PERSISTENCE
# ============================================================================

class VersionConflict(Exception):
    """save() was given a version that is no longer current.

    Internal to the persistence seam: the state machine turns it into a
    re-read, or into ConcurrentModification once re-reads are exhausted.
    """

    def __init__(self, entity_type: str, entity_id: str, expected: int, actual: int | None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{entity_type} {entity_id}: expected version {expected}, found {actual}"
        )


@dataclass
class RecordFilter:
    """Store-level filter.

    ``any_of`` maps a top-level field to the allowed string values,
    ``equals`` pins a field to one value, and ``since``/``until`` bound
    the ISO timestamp stored in ``time_field`` (inclusive).
    """
    any_of: dict[str, frozenset[str]] = field(default_factory=dict)
    equals: dict[str, Any] = field(default_factory=dict)
    time_field: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None

    def matches(self, fields: dict[str, Any]) -> bool:
        for name, allowed in self.any_of.items():
            if fields.get(name) not in allowed:
                return False
        for name, expected in self.equals.items():
            if fields.get(name) != expected:
                return False
        if self.time_field and (self.since or self.until):
            stamp = from_iso(fields.get(self.time_field))
            if stamp is None:
                return False
            if self.since and stamp < self.since:
                return False
            if self.until and stamp > self.until:
                return False
        return True


def filter_for(
    query: Optional[ListQuery],
    *,
    time_field: str,
    statuses: bool = True,
    departments: bool = True,
    priorities: bool = True,
) -> RecordFilter:
    """Translate a caller ListQuery into a store RecordFilter.

    Families that do not carry a dimension switch it off so a stray filter
    value cannot hide every record.
    """
    record_filter = RecordFilter(time_field=time_field)
    if query is None:
        return record_filter
    if statuses and query.statuses:
        record_filter.any_of["status"] = frozenset(query.statuses)
    if departments and query.departments:
        record_filter.any_of["department"] = frozenset(query.departments)
    if priorities and query.priorities:
        record_filter.any_of["priority"] = frozenset(query.priorities)
    record_filter.since = query.since
    record_filter.until = query.until
    return record_filter


class AsyncEntityStore(Protocol):
    async def load(self, entity_type: str, entity_id: str) -> Optional[StoredRecord]: ...

    async def insert(self, entity_type: str, entity_id: str, fields: dict[str, Any]) -> StoredRecord:
        """Create a record at version 1."""
        ...

    async def save(
        self,
        entity_type: str,
        entity_id: str,
        fields: dict[str, Any],
        expected_version: int,
    ) -> StoredRecord:
        """
        Replace the record's fields if its version still equals
        ``expected_version``; returns the record at version + 1.

        Raises VersionConflict otherwise.
        """
        ...

    async def query(self, entity_type: str, record_filter: Optional[RecordFilter] = None) -> list[StoredRecord]: ...


# ============================================================================
# NOTIFICATION TRANSPORT
# ============================================================================

class AsyncFanoutTransport(Protocol):
    name: str

    async def publish(self, event: DispatchEvent) -> None:
        """Deliver one event. May raise; the fanout logs and counts failures."""
        ...


class AsyncEventFeed(AsyncFanoutTransport, Protocol):
    """A transport that viewers poll with a cursor."""

    async def poll(self, viewer: str, after: int = 0, limit: int = 200) -> list[DispatchEvent]: ...

    async def latest_seq(self) -> int: ...

    async def oldest_seq(self) -> int:
        """Smallest seq still retained; a cursor below oldest_seq - 1 has missed events."""
        ...
