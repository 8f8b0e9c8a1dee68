# cadcore/core/__init__.py
"""
Dispatch coordination core -- transport- and storage-agnostic.

This package contains the domain models, the persistence and fanout
ports, the transition-table engine and the five dispatch components
(units, calls, BOLOs, backup requests, tactical callouts).

Canonical imports:
    from cadcore.core import DispatchCore, build_dispatch_core
    from cadcore.core.domain import Unit, Call, Bolo
    from cadcore.core.ports import AsyncEntityStore, AsyncEventFeed
"""
from cadcore.core.domain import (  # noqa: F401
    Audience,
    AssignmentRef,
    BackupRequest,
    Bolo,
    Call,
    DispatchEvent,
    ListQuery,
    StoredRecord,
    TacticalCallout,
    Unit,
)
from cadcore.core.errors import (  # noqa: F401
    AlreadyAcknowledged,
    AlreadyTerminal,
    ConcurrentModification,
    DispatchError,
    DispatchValidationError,
    InvalidTransition,
    NotFound,
    PersistenceUnavailable,
    UnitUnavailable,
)
from cadcore.core.ports import (  # noqa: F401
    AsyncEntityStore,
    AsyncEventFeed,
    AsyncFanoutTransport,
    RecordFilter,
    VersionConflict,
)
from cadcore.core.state_machine import StateMachine, TransitionTable  # noqa: F401
from cadcore.core.fanout import EventType, NotificationFanout  # noqa: F401
from cadcore.core.units import UnitStatusTracker  # noqa: F401
from cadcore.core.calls import CallRegistry  # noqa: F401
from cadcore.core.bolos import BOLORegistry  # noqa: F401
from cadcore.core.backup import BackupRequestCoordinator  # noqa: F401
from cadcore.core.tactical import TacticalCalloutManager  # noqa: F401
from cadcore.core.service import DispatchCore, build_dispatch_core  # noqa: F401
