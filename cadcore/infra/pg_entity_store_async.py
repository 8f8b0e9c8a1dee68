# cadcore/infra/pg_entity_store_async.py
"""
Async PostgreSQL entity store (asyncpg).

One table, ``dispatch_entities``, holds every family keyed by
(entity_type, entity_id).  ``version`` is the compare-and-swap token:
save() is a single conditional UPDATE, so two writers that read the
same version cannot both succeed.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import asyncpg

from cadcore.core.domain import StoredRecord
from cadcore.core.errors import DispatchValidationError
from cadcore.core.ports import RecordFilter, VersionConflict
from cadcore.infra.db_async import db_conn
from cadcore.infra.db_resilience_async import persistence_guard, retry_on_transient_error
from cadcore.infra.logging_config import get_logger

logger = get_logger(__name__)


def _row_to_record(row) -> StoredRecord:
    """Convert an asyncpg Record to a StoredRecord."""
    fields = row["fields"]
    if isinstance(fields, str):
        fields = json.loads(fields)
    return StoredRecord(
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        version=row["version"],
        fields=fields,
    )


def build_where(entity_type: str, record_filter: Optional[RecordFilter]) -> tuple[str, list[Any]]:
    """
    Translate a RecordFilter into a WHERE clause.

    Field names are bound as parameters, never interpolated.
    """
    clauses = ["entity_type = $1"]
    params: list[Any] = [entity_type]

    def bind(value: Any) -> str:
        params.append(value)
        return f"${len(params)}"

    if record_filter is None:
        return " AND ".join(clauses), params

    for name, allowed in record_filter.any_of.items():
        clauses.append(f"fields->>{bind(name)} = ANY({bind(sorted(allowed))}::text[])")

    for name, expected in record_filter.equals.items():
        if expected is None:
            # Missing key and JSON null both read back as SQL NULL
            clauses.append(f"fields->>{bind(name)} IS NULL")
        else:
            clauses.append(f"fields->{bind(name)} = {bind(json.dumps(expected))}::jsonb")

    if record_filter.time_field and (record_filter.since or record_filter.until):
        column = f"(fields->>{bind(record_filter.time_field)})::timestamptz"
        if record_filter.since:
            clauses.append(f"{column} >= {bind(record_filter.since)}")
        if record_filter.until:
            clauses.append(f"{column} <= {bind(record_filter.until)}")

    return " AND ".join(clauses), params


class AsyncPostgresEntityStore:
    """AsyncEntityStore over the dispatch_entities table."""

    async def load(self, entity_type: str, entity_id: str) -> Optional[StoredRecord]:
        async with persistence_guard("load"):
            row = await self._fetch_one(entity_type, entity_id)
        return _row_to_record(row) if row else None

    async def insert(self, entity_type: str, entity_id: str, fields: dict[str, Any]) -> StoredRecord:
        async with persistence_guard("insert"):
            try:
                async with db_conn() as conn:
                    row = await conn.fetchrow(
                        """
                        INSERT INTO dispatch_entities (entity_type, entity_id, version, fields)
                        VALUES ($1, $2, 1, $3::jsonb)
                        RETURNING entity_type, entity_id, version, fields::text AS fields
                        """,
                        entity_type,
                        entity_id,
                        json.dumps(fields),
                    )
            except asyncpg.UniqueViolationError as exc:
                logger.warning(
                    f"Duplicate {entity_type} rejected: {exc.constraint_name or 'primary key'}",
                    extra={"entity_type": entity_type, "entity_id": entity_id},
                )
                raise DispatchValidationError(f"{entity_type} already exists ({exc.constraint_name})") from exc
        return _row_to_record(row)

    async def save(
        self,
        entity_type: str,
        entity_id: str,
        fields: dict[str, Any],
        expected_version: int,
    ) -> StoredRecord:
        async with persistence_guard("save"):
            try:
                async with db_conn() as conn:
                    row = await conn.fetchrow(
                        """
                        UPDATE dispatch_entities
                        SET fields = $4::jsonb, version = version + 1, updated_at = now()
                        WHERE entity_type = $1 AND entity_id = $2 AND version = $3
                        RETURNING entity_type, entity_id, version, fields::text AS fields
                        """,
                        entity_type,
                        entity_id,
                        expected_version,
                        json.dumps(fields),
                    )
                    if row is None:
                        actual = await conn.fetchval(
                            "SELECT version FROM dispatch_entities WHERE entity_type = $1 AND entity_id = $2",
                            entity_type,
                            entity_id,
                        )
                        raise VersionConflict(entity_type, entity_id, expected_version, actual)
            except asyncpg.UniqueViolationError as exc:
                raise DispatchValidationError(f"{entity_type} update violates {exc.constraint_name}") from exc
        return _row_to_record(row)

    async def query(self, entity_type: str, record_filter: Optional[RecordFilter] = None) -> list[StoredRecord]:
        async with persistence_guard("query"):
            rows = await self._fetch_many(entity_type, record_filter)
        return [_row_to_record(row) for row in rows]

    @retry_on_transient_error(max_retries=2)
    async def _fetch_one(self, entity_type: str, entity_id: str):
        async with db_conn() as conn:
            return await conn.fetchrow(
                """
                SELECT entity_type, entity_id, version, fields::text AS fields
                FROM dispatch_entities
                WHERE entity_type = $1 AND entity_id = $2
                """,
                entity_type,
                entity_id,
            )

    @retry_on_transient_error(max_retries=2)
    async def _fetch_many(self, entity_type: str, record_filter: Optional[RecordFilter]):
        where, params = build_where(entity_type, record_filter)
        async with db_conn() as conn:
            return await conn.fetch(
                f"""
                SELECT entity_type, entity_id, version, fields::text AS fields
                FROM dispatch_entities
                WHERE {where}
                ORDER BY created_at, entity_id
                """,
                *params,
            )
