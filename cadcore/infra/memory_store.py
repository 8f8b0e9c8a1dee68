# cadcore/infra/memory_store.py
"""
In-process entity store.

Same contract as the postgres store: versioned records, compare-and-swap
saves, and the same unique keys as the SQL schema.  Each process holds
its own state, so it is only suitable for dev, tests and single-instance
demos.
"""
from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from typing import Any, Optional

from cadcore.core.errors import DispatchValidationError
from cadcore.core.ports import RecordFilter, VersionConflict
from cadcore.core.domain import StoredRecord
from cadcore.infra.logging_config import get_logger

logger = get_logger(__name__)

# Mirrors the unique indexes in sql/001_dispatch_core.sql
UNIQUE_FIELDS: dict[str, tuple[str, ...]] = {
    "unit": ("callsign",),
    "call": ("call_number",),
}


class InMemoryEntityStore:
    """
    Dict-backed AsyncEntityStore.

    Records are deep-copied on the way in and out so callers never share
    mutable state with the store.  Every load/save yields to the event
    loop once, which lets concurrent callers interleave the way they
    would against a real database.
    """

    def __init__(self) -> None:
        self._records: dict[str, dict[str, StoredRecord]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    async def load(self, entity_type: str, entity_id: str) -> Optional[StoredRecord]:
        await asyncio.sleep(0)
        record = self._records[entity_type].get(entity_id)
        return copy.deepcopy(record) if record else None

    async def insert(self, entity_type: str, entity_id: str, fields: dict[str, Any]) -> StoredRecord:
        async with self._lock:
            table = self._records[entity_type]
            if entity_id in table:
                raise DispatchValidationError(f"{entity_type} '{entity_id}' already exists")
            self._check_unique(entity_type, entity_id, fields)
            record = StoredRecord(entity_type, entity_id, 1, copy.deepcopy(fields))
            table[entity_id] = record
        return copy.deepcopy(record)

    async def save(
        self,
        entity_type: str,
        entity_id: str,
        fields: dict[str, Any],
        expected_version: int,
    ) -> StoredRecord:
        await asyncio.sleep(0)
        async with self._lock:
            current = self._records[entity_type].get(entity_id)
            actual = current.version if current else None
            if actual != expected_version:
                raise VersionConflict(entity_type, entity_id, expected_version, actual)
            self._check_unique(entity_type, entity_id, fields)
            record = StoredRecord(entity_type, entity_id, expected_version + 1, copy.deepcopy(fields))
            self._records[entity_type][entity_id] = record
        return copy.deepcopy(record)

    async def query(self, entity_type: str, record_filter: Optional[RecordFilter] = None) -> list[StoredRecord]:
        await asyncio.sleep(0)
        records = list(self._records[entity_type].values())
        if record_filter is not None:
            records = [r for r in records if record_filter.matches(r.fields)]
        return [copy.deepcopy(r) for r in records]

    def count(self, entity_type: str) -> int:
        return len(self._records[entity_type])

    def clear(self) -> None:
        self._records.clear()

    def _check_unique(self, entity_type: str, entity_id: str, fields: dict[str, Any]) -> None:
        for name in UNIQUE_FIELDS.get(entity_type, ()):
            value = fields.get(name)
            if value is None:
                continue
            for other in self._records[entity_type].values():
                if other.entity_id != entity_id and other.fields.get(name) == value:
                    raise DispatchValidationError(f"{entity_type} {name} '{value}' already exists")
