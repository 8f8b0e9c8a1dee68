# cadcore/core/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from cadcore.core.errors import DispatchValidationError


# ============================================================================
# ENUMS
# ============================================================================

class EntityType(str, Enum):
    UNIT = "unit"
    CALL = "call"
    BOLO = "bolo"
    BACKUP_REQUEST = "backup_request"
    TACTICAL_CALLOUT = "tactical_callout"
    UNIT_STATUS_LOG = "unit_status_log"


class Department(str, Enum):
    POLICE = "POLICE"
    FIRE = "FIRE"
    EMS = "EMS"


class UnitStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    BUSY = "BUSY"
    ENROUTE = "ENROUTE"
    ON_SCENE = "ON_SCENE"
    OFFLINE = "OFFLINE"


class Priority(str, Enum):
    """Severity shared by calls and BOLOs."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.LOW: 0, Priority.MEDIUM: 1, Priority.HIGH: 2, Priority.CRITICAL: 3}


class CallStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


class BoloSubject(str, Enum):
    PERSON = "PERSON"
    VEHICLE = "VEHICLE"
    OTHER = "OTHER"


class BoloStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RESOLVED = "RESOLVED"
    CANCELLED = "CANCELLED"


class BackupUrgency(str, Enum):
    ROUTINE = "ROUTINE"
    URGENT = "URGENT"
    EMERGENCY = "EMERGENCY"

    @property
    def rank(self) -> int:
        return _URGENCY_RANK[self]


_URGENCY_RANK = {BackupUrgency.ROUTINE: 0, BackupUrgency.URGENT: 1, BackupUrgency.EMERGENCY: 2}


class BackupStatus(str, Enum):
    PENDING = "PENDING"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    ENROUTE = "ENROUTE"
    ARRIVED = "ARRIVED"
    CANCELLED = "CANCELLED"


class TacticalTeam(str, Enum):
    CIRT = "CIRT"
    SOG = "SOG"
    BOTH = "BOTH"

    def covers(self, officer_team: "TacticalTeam | None") -> bool:
        """True if an officer on ``officer_team`` belongs to this callout team."""
        if officer_team is None or officer_team is TacticalTeam.BOTH:
            return False
        return self is TacticalTeam.BOTH or self is officer_team

    def member_teams(self) -> tuple["TacticalTeam", ...]:
        if self is TacticalTeam.BOTH:
            return (TacticalTeam.CIRT, TacticalTeam.SOG)
        return (self,)


class TacticalPriority(str, Enum):
    ROUTINE = "ROUTINE"
    URGENT = "URGENT"
    CRITICAL = "CRITICAL"


class TacticalStatus(str, Enum):
    PENDING = "PENDING"
    RESPONDING = "RESPONDING"
    ON_SCENE = "ON_SCENE"
    RESOLVED = "RESOLVED"


# ============================================================================
# TIME / SERIALIZATION HELPERS
# ============================================================================

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_iso(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _enum_or_none(enum_cls, value):
    return enum_cls(value) if value else None


def parse_enum(enum_cls, value, field_name: str):
    """Coerce caller input to ``enum_cls`` or raise DispatchValidationError."""
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise DispatchValidationError(f"{field_name} must be one of {allowed}, got '{value}'") from None


# ============================================================================
# STORED RECORD (what the persistence collaborator hands back)
# ============================================================================

@dataclass
class StoredRecord:
    """One versioned row from the entity store.

    ``version`` is the optimistic-concurrency token: a save succeeds only
    if the caller presents the version it read.
    """
    entity_type: str
    entity_id: str
    version: int
    fields: dict[str, Any]


# ============================================================================
# ASSIGNMENT
# ============================================================================

@dataclass(frozen=True)
class AssignmentRef:
    """What a unit is currently committed to: a call or a backup request."""
    kind: str  # EntityType.CALL.value | EntityType.BACKUP_REQUEST.value
    id: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "id": self.id}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["AssignmentRef"]:
        if not data:
            return None
        return cls(kind=data["kind"], id=data["id"])

    @classmethod
    def call(cls, call_id: str) -> "AssignmentRef":
        return cls(kind=EntityType.CALL.value, id=call_id)

    @classmethod
    def backup(cls, request_id: str) -> "AssignmentRef":
        return cls(kind=EntityType.BACKUP_REQUEST.value, id=request_id)


# ============================================================================
# ENTITIES
# ============================================================================

@dataclass
class Unit:
    id: str
    callsign: str
    department: Department
    status: UnitStatus = UnitStatus.OFFLINE
    assignment: Optional[AssignmentRef] = None
    tactical_team: Optional[TacticalTeam] = None
    location: Optional[str] = None
    last_status_change_at: Optional[datetime] = None
    last_assigned_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    version: int = 0

    def to_fields(self) -> dict[str, Any]:
        return {
            "callsign": self.callsign,
            "department": self.department.value,
            "status": self.status.value,
            "assignment": self.assignment.to_dict() if self.assignment else None,
            "tactical_team": self.tactical_team.value if self.tactical_team else None,
            "location": self.location,
            "last_status_change_at": to_iso(self.last_status_change_at),
            "last_assigned_at": to_iso(self.last_assigned_at),
            "created_at": to_iso(self.created_at),
            "updated_by": self.updated_by,
        }

    @classmethod
    def from_record(cls, record: StoredRecord) -> "Unit":
        f = record.fields
        return cls(
            id=record.entity_id,
            callsign=f["callsign"],
            department=Department(f["department"]),
            status=UnitStatus(f["status"]),
            assignment=AssignmentRef.from_dict(f.get("assignment")),
            tactical_team=_enum_or_none(TacticalTeam, f.get("tactical_team")),
            location=f.get("location"),
            last_status_change_at=from_iso(f.get("last_status_change_at")),
            last_assigned_at=from_iso(f.get("last_assigned_at")),
            created_at=from_iso(f.get("created_at")),
            updated_by=f.get("updated_by"),
            version=record.version,
        )

    def snapshot(self) -> dict[str, Any]:
        return {"id": self.id, "version": self.version, **self.to_fields()}


@dataclass
class CallNote:
    id: str
    author: str
    content: str
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "author": self.author,
            "content": self.content,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CallNote":
        return cls(
            id=data["id"],
            author=data["author"],
            content=data["content"],
            created_at=from_iso(data["created_at"]),
        )


@dataclass
class Call:
    id: str
    call_number: str
    type: str
    priority: Priority
    location: str
    status: CallStatus = CallStatus.PENDING
    description: Optional[str] = None
    postal: Optional[str] = None
    caller: Optional[str] = None
    caller_phone: Optional[str] = None
    assigned_unit_ids: list[str] = field(default_factory=list)
    notes: list[CallNote] = field(default_factory=list)
    outcome: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    version: int = 0

    def to_fields(self) -> dict[str, Any]:
        return {
            "call_number": self.call_number,
            "type": self.type,
            "priority": self.priority.value,
            "location": self.location,
            "status": self.status.value,
            "description": self.description,
            "postal": self.postal,
            "caller": self.caller,
            "caller_phone": self.caller_phone,
            "assigned_unit_ids": list(self.assigned_unit_ids),
            "notes": [n.to_dict() for n in self.notes],
            "outcome": self.outcome,
            "created_by": self.created_by,
            "created_at": to_iso(self.created_at),
            "dispatched_at": to_iso(self.dispatched_at),
            "closed_at": to_iso(self.closed_at),
            "updated_at": to_iso(self.updated_at),
            "updated_by": self.updated_by,
        }

    @classmethod
    def from_record(cls, record: StoredRecord) -> "Call":
        f = record.fields
        return cls(
            id=record.entity_id,
            call_number=f["call_number"],
            type=f["type"],
            priority=Priority(f["priority"]),
            location=f["location"],
            status=CallStatus(f["status"]),
            description=f.get("description"),
            postal=f.get("postal"),
            caller=f.get("caller"),
            caller_phone=f.get("caller_phone"),
            assigned_unit_ids=list(f.get("assigned_unit_ids") or []),
            notes=[CallNote.from_dict(n) for n in f.get("notes") or []],
            outcome=f.get("outcome"),
            created_by=f.get("created_by"),
            created_at=from_iso(f.get("created_at")),
            dispatched_at=from_iso(f.get("dispatched_at")),
            closed_at=from_iso(f.get("closed_at")),
            updated_at=from_iso(f.get("updated_at")),
            updated_by=f.get("updated_by"),
            version=record.version,
        )

    def snapshot(self) -> dict[str, Any]:
        return {"id": self.id, "version": self.version, **self.to_fields()}


@dataclass
class Bolo:
    """
    Be-On-The-Lookout alert.

    The stored ``status`` only changes through an explicit resolve/cancel.
    Every read path must go through ``effective_status()`` so that an
    ACTIVE BOLO past ``expires_at`` is reported as RESOLVED consistently.
    """
    id: str
    subject_type: BoloSubject
    priority: Priority
    description: str
    issued_by: str
    status: BoloStatus = BoloStatus.ACTIVE
    title: Optional[str] = None
    person_name: Optional[str] = None
    person_description: Optional[str] = None
    vehicle_plate: Optional[str] = None
    vehicle_model: Optional[str] = None
    vehicle_color: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expiry_announced_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    version: int = 0

    def is_expired(self, now: datetime) -> bool:
        return (
            self.status is BoloStatus.ACTIVE
            and self.expires_at is not None
            and self.expires_at <= now
        )

    def effective_status(self, now: datetime) -> BoloStatus:
        if self.is_expired(now):
            return BoloStatus.RESOLVED
        return self.status

    def to_fields(self) -> dict[str, Any]:
        return {
            "subject_type": self.subject_type.value,
            "priority": self.priority.value,
            "description": self.description,
            "issued_by": self.issued_by,
            "status": self.status.value,
            "title": self.title,
            "person_name": self.person_name,
            "person_description": self.person_description,
            "vehicle_plate": self.vehicle_plate,
            "vehicle_model": self.vehicle_model,
            "vehicle_color": self.vehicle_color,
            "issued_at": to_iso(self.issued_at),
            "expires_at": to_iso(self.expires_at),
            "resolved_at": to_iso(self.resolved_at),
            "cancelled_at": to_iso(self.cancelled_at),
            "expiry_announced_at": to_iso(self.expiry_announced_at),
            "updated_at": to_iso(self.updated_at),
            "updated_by": self.updated_by,
        }

    @classmethod
    def from_record(cls, record: StoredRecord) -> "Bolo":
        f = record.fields
        return cls(
            id=record.entity_id,
            subject_type=BoloSubject(f["subject_type"]),
            priority=Priority(f["priority"]),
            description=f["description"],
            issued_by=f["issued_by"],
            status=BoloStatus(f["status"]),
            title=f.get("title"),
            person_name=f.get("person_name"),
            person_description=f.get("person_description"),
            vehicle_plate=f.get("vehicle_plate"),
            vehicle_model=f.get("vehicle_model"),
            vehicle_color=f.get("vehicle_color"),
            issued_at=from_iso(f.get("issued_at")),
            expires_at=from_iso(f.get("expires_at")),
            resolved_at=from_iso(f.get("resolved_at")),
            cancelled_at=from_iso(f.get("cancelled_at")),
            expiry_announced_at=from_iso(f.get("expiry_announced_at")),
            updated_at=from_iso(f.get("updated_at")),
            updated_by=f.get("updated_by"),
            version=record.version,
        )

    def snapshot(self, now: datetime) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            **self.to_fields(),
            "effective_status": self.effective_status(now).value,
            "expired": self.is_expired(now),
        }


@dataclass
class BackupRequest:
    id: str
    requesting_unit: str
    department: Department
    location: str
    urgency: BackupUrgency
    status: BackupStatus = BackupStatus.PENDING
    reason: Optional[str] = None
    linked_call_id: Optional[str] = None
    responding_unit: Optional[str] = None
    requested_by: Optional[str] = None
    requested_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    enroute_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    version: int = 0

    def to_fields(self) -> dict[str, Any]:
        return {
            "requesting_unit": self.requesting_unit,
            "department": self.department.value,
            "location": self.location,
            "urgency": self.urgency.value,
            "status": self.status.value,
            "reason": self.reason,
            "linked_call_id": self.linked_call_id,
            "responding_unit": self.responding_unit,
            "requested_by": self.requested_by,
            "requested_at": to_iso(self.requested_at),
            "responded_at": to_iso(self.responded_at),
            "enroute_at": to_iso(self.enroute_at),
            "arrived_at": to_iso(self.arrived_at),
            "cancelled_at": to_iso(self.cancelled_at),
            "updated_at": to_iso(self.updated_at),
            "updated_by": self.updated_by,
        }

    @classmethod
    def from_record(cls, record: StoredRecord) -> "BackupRequest":
        f = record.fields
        return cls(
            id=record.entity_id,
            requesting_unit=f["requesting_unit"],
            department=Department(f["department"]),
            location=f["location"],
            urgency=BackupUrgency(f["urgency"]),
            status=BackupStatus(f["status"]),
            reason=f.get("reason"),
            linked_call_id=f.get("linked_call_id"),
            responding_unit=f.get("responding_unit"),
            requested_by=f.get("requested_by"),
            requested_at=from_iso(f.get("requested_at")),
            responded_at=from_iso(f.get("responded_at")),
            enroute_at=from_iso(f.get("enroute_at")),
            arrived_at=from_iso(f.get("arrived_at")),
            cancelled_at=from_iso(f.get("cancelled_at")),
            updated_at=from_iso(f.get("updated_at")),
            updated_by=f.get("updated_by"),
            version=record.version,
        )

    def snapshot(self) -> dict[str, Any]:
        return {"id": self.id, "version": self.version, **self.to_fields()}


@dataclass
class TacticalCallout:
    id: str
    team: TacticalTeam
    incident_type: str
    location: str
    priority: TacticalPriority
    status: TacticalStatus = TacticalStatus.PENDING
    officer_ids: list[str] = field(default_factory=list)
    staging_area: Optional[str] = None
    briefing: Optional[str] = None
    requested_by: Optional[str] = None
    call_id: Optional[str] = None
    callout_time: Optional[datetime] = None
    responding_at: Optional[datetime] = None
    on_scene_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    version: int = 0

    def to_fields(self) -> dict[str, Any]:
        return {
            "team": self.team.value,
            "incident_type": self.incident_type,
            "location": self.location,
            "priority": self.priority.value,
            "status": self.status.value,
            "officer_ids": list(self.officer_ids),
            "staging_area": self.staging_area,
            "briefing": self.briefing,
            "requested_by": self.requested_by,
            "call_id": self.call_id,
            "callout_time": to_iso(self.callout_time),
            "responding_at": to_iso(self.responding_at),
            "on_scene_at": to_iso(self.on_scene_at),
            "resolved_at": to_iso(self.resolved_at),
            "updated_at": to_iso(self.updated_at),
            "updated_by": self.updated_by,
        }

    @classmethod
    def from_record(cls, record: StoredRecord) -> "TacticalCallout":
        f = record.fields
        return cls(
            id=record.entity_id,
            team=TacticalTeam(f["team"]),
            incident_type=f["incident_type"],
            location=f["location"],
            priority=TacticalPriority(f["priority"]),
            status=TacticalStatus(f["status"]),
            officer_ids=list(f.get("officer_ids") or []),
            staging_area=f.get("staging_area"),
            briefing=f.get("briefing"),
            requested_by=f.get("requested_by"),
            call_id=f.get("call_id"),
            callout_time=from_iso(f.get("callout_time")),
            responding_at=from_iso(f.get("responding_at")),
            on_scene_at=from_iso(f.get("on_scene_at")),
            resolved_at=from_iso(f.get("resolved_at")),
            updated_at=from_iso(f.get("updated_at")),
            updated_by=f.get("updated_by"),
            version=record.version,
        )

    def snapshot(self) -> dict[str, Any]:
        return {"id": self.id, "version": self.version, **self.to_fields()}


@dataclass
class UnitStatusLogEntry:
    id: str
    unit_id: str
    callsign: str
    from_status: Optional[str]
    to_status: str
    actor: str
    created_at: datetime
    assignment: Optional[AssignmentRef] = None

    def to_fields(self) -> dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "callsign": self.callsign,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor": self.actor,
            "created_at": to_iso(self.created_at),
            "assignment": self.assignment.to_dict() if self.assignment else None,
        }

    @classmethod
    def from_record(cls, record: StoredRecord) -> "UnitStatusLogEntry":
        f = record.fields
        return cls(
            id=record.entity_id,
            unit_id=f["unit_id"],
            callsign=f["callsign"],
            from_status=f.get("from_status"),
            to_status=f["to_status"],
            actor=f["actor"],
            created_at=from_iso(f["created_at"]),
            assignment=AssignmentRef.from_dict(f.get("assignment")),
        )

    def snapshot(self) -> dict[str, Any]:
        return {"id": self.id, **self.to_fields()}


# ============================================================================
# LIST QUERIES
# ============================================================================

@dataclass
class ListQuery:
    """Caller-facing list filter shared by every entity family.

    Values are matched as strings against the stored enum values.
    ``since``/``until`` bound the family's primary timestamp.
    """
    statuses: Optional[list[str]] = None
    departments: Optional[list[str]] = None
    priorities: Optional[list[str]] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = None


# ============================================================================
# NOTIFICATIONS
# ============================================================================

DISPATCHERS = "dispatchers"


@dataclass(frozen=True)
class Audience:
    """Who should hear about an event.

    Resolved to concrete unit ids at publish time so the recorded event
    says exactly who was told, independent of later status changes.
    """
    dispatchers: bool = True
    unit_ids: frozenset[str] = frozenset()

    def includes(self, viewer: str) -> bool:
        if viewer == DISPATCHERS:
            return self.dispatchers
        return viewer in self.unit_ids

    def to_dict(self) -> dict[str, Any]:
        return {"dispatchers": self.dispatchers, "unit_ids": sorted(self.unit_ids)}

    @classmethod
    def from_dict(cls, data: dict) -> "Audience":
        return cls(
            dispatchers=bool(data.get("dispatchers", True)),
            unit_ids=frozenset(data.get("unit_ids") or ()),
        )

    @classmethod
    def dispatchers_only(cls) -> "Audience":
        return cls(dispatchers=True)

    def with_units(self, unit_ids) -> "Audience":
        return Audience(dispatchers=self.dispatchers, unit_ids=self.unit_ids | frozenset(unit_ids))


@dataclass
class DispatchEvent:
    """A published state change.

    ``id`` is unique per event so at-least-once receivers can
    de-duplicate; ``seq`` is assigned by polling feeds.
    """
    id: str
    event_type: str
    entity_type: str
    entity_id: str
    payload: dict[str, Any]
    audience: Audience
    actor: str
    occurred_at: datetime
    seq: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "seq": self.seq,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "payload": self.payload,
            "audience": self.audience.to_dict(),
            "actor": self.actor,
            "occurred_at": to_iso(self.occurred_at),
        }
