# cadcore/transport/schemas.py
from datetime import datetime
from typing import Any

from fastapi import Query
from pydantic import BaseModel, Field

from cadcore.config import settings
from cadcore.core.domain import ListQuery, from_iso

# Enum-valued fields stay plain strings here; the core parses them so a bad
# value comes back in the same error shape as every other rejection.


class UnitIn(BaseModel):
    callsign: str = Field(min_length=1, max_length=32)
    department: str
    tactical_team: str | None = None
    location: str | None = Field(default=None, max_length=256)


class CallIn(BaseModel):
    type: str = Field(min_length=1, max_length=64)
    priority: str
    location: str = Field(min_length=1, max_length=256)
    description: str | None = Field(default=None, max_length=4000)
    postal: str | None = Field(default=None, max_length=16)
    caller: str | None = Field(default=None, max_length=128)
    caller_phone: str | None = Field(default=None, max_length=32)


class BoloIn(BaseModel):
    subject_type: str
    description: str = Field(min_length=1, max_length=4000)
    priority: str | None = None
    expires_at: datetime | None = None
    title: str | None = Field(default=None, max_length=128)
    person_name: str | None = Field(default=None, max_length=128)
    person_description: str | None = Field(default=None, max_length=1000)
    vehicle_plate: str | None = Field(default=None, max_length=16)
    vehicle_model: str | None = Field(default=None, max_length=64)
    vehicle_color: str | None = Field(default=None, max_length=32)


class BackupIn(BaseModel):
    unit: str = Field(min_length=1)
    department: str
    location: str = Field(min_length=1, max_length=256)
    urgency: str
    reason: str | None = Field(default=None, max_length=1000)
    linked_call_id: str | None = None


class TacticalIn(BaseModel):
    team: str
    incident_type: str = Field(min_length=1, max_length=64)
    location: str = Field(min_length=1, max_length=256)
    priority: str
    briefing: str | None = Field(default=None, max_length=4000)
    staging_area: str | None = Field(default=None, max_length=256)
    call_id: str | None = None


class TransitionIn(BaseModel):
    """One named action on an existing record, e.g. {"action": "assign", "params": {"unit_id": "..."}}."""
    action: str = Field(min_length=1, max_length=32)
    params: dict[str, Any] = Field(default_factory=dict)


class NoteIn(BaseModel):
    content: str = Field(min_length=1, max_length=4000)


class PageIn(BaseModel):
    team: str
    message: str | None = Field(default=None, max_length=1000)


def list_query(
    status: list[str] | None = Query(default=None),
    department: list[str] | None = Query(default=None),
    priority: list[str] | None = Query(default=None),
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int | None = Query(default=None, ge=1, le=1000),
) -> ListQuery:
    """Query-string filters shared by every list endpoint (repeat a key to OR values)."""
    return ListQuery(
        statuses=[s.upper() for s in status] if status else None,
        departments=[d.upper() for d in department] if department else None,
        priorities=[p.upper() for p in priority] if priority else None,
        since=from_iso(since),
        until=from_iso(until),
        limit=limit,
    )


def feed_page_size(limit: int | None = Query(default=None, ge=1, le=1000)) -> int:
    return limit or settings.event_feed_page_size
