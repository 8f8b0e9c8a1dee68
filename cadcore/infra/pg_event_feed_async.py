# cadcore/infra/pg_event_feed_async.py
"""
Async PostgreSQL polling feed (asyncpg).

Events land in ``dispatch_events``; the bigserial ``seq`` is the viewer
cursor, so every instance behind a load balancer serves the same feed.

Inserts take a transaction-scoped advisory lock before drawing ``seq``, so
events commit in ``seq`` order and a poller that has seen ``seq`` N never
misses a smaller one committed later.
"""
from __future__ import annotations

import json
import uuid

from cadcore.core.domain import DISPATCHERS, Audience, DispatchEvent
from cadcore.infra.db_async import db_conn
from cadcore.infra.db_resilience_async import persistence_guard, retry_on_transient_error
from cadcore.infra.logging_config import get_logger

logger = get_logger(__name__)

# pg_advisory_xact_lock key shared by every publisher of dispatch_events
FEED_PUBLISH_LOCK = 0x43414446


def _row_to_event(row) -> DispatchEvent:
    payload = row["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return DispatchEvent(
        id=str(row["event_id"]),
        event_type=row["event_type"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        payload=payload,
        audience=Audience(dispatchers=row["dispatchers"], unit_ids=frozenset(row["unit_ids"] or ())),
        actor=row["actor"],
        occurred_at=row["occurred_at"],
        seq=row["seq"],
    )


class AsyncPostgresEventFeed:
    name = "pg_feed"

    async def publish(self, event: DispatchEvent) -> None:
        async with persistence_guard("event_publish"):
            async with db_conn(autocommit=False) as conn:
                await conn.execute("SELECT pg_advisory_xact_lock($1)", FEED_PUBLISH_LOCK)
                event.seq = await conn.fetchval(
                    """
                    INSERT INTO dispatch_events
                        (event_id, event_type, entity_type, entity_id, payload,
                         dispatchers, unit_ids, actor, occurred_at)
                    VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7::text[], $8, $9)
                    RETURNING seq
                    """,
                    uuid.UUID(event.id),
                    event.event_type,
                    event.entity_type,
                    event.entity_id,
                    json.dumps(event.payload),
                    event.audience.dispatchers,
                    sorted(event.audience.unit_ids),
                    event.actor,
                    event.occurred_at,
                )

    async def poll(self, viewer: str, after: int = 0, limit: int = 200) -> list[DispatchEvent]:
        async with persistence_guard("event_poll"):
            rows = await self._fetch(viewer, after, limit)
        return [_row_to_event(row) for row in rows]

    async def latest_seq(self) -> int:
        async with persistence_guard("event_latest_seq"):
            async with db_conn() as conn:
                return await conn.fetchval("SELECT COALESCE(MAX(seq), 0) FROM dispatch_events")

    async def oldest_seq(self) -> int:
        async with persistence_guard("event_oldest_seq"):
            async with db_conn() as conn:
                return await conn.fetchval("SELECT COALESCE(MIN(seq), 1) FROM dispatch_events")

    @retry_on_transient_error(max_retries=2)
    async def _fetch(self, viewer: str, after: int, limit: int):
        if viewer == DISPATCHERS:
            visibility, params = "dispatchers", [after, limit]
        else:
            visibility, params = "$3 = ANY(unit_ids)", [after, limit, viewer]
        async with db_conn() as conn:
            return await conn.fetch(
                f"""
                SELECT seq, event_id, event_type, entity_type, entity_id, payload::text AS payload,
                       dispatchers, unit_ids, actor, occurred_at
                FROM dispatch_events
                WHERE seq > $1 AND {visibility}
                ORDER BY seq
                LIMIT $2
                """,
                *params,
            )
