# cadcore/core/service.py
"""
DispatchCore: the wired-up set of dispatch components.

All components share one entity store and one fanout, and every
component that needs unit eligibility goes through the same
UnitStatusTracker, so unit records keep a single writer.

The transport layer holds one DispatchCore and stays a thin adapter:
    parse request -> call component -> map DispatchError -> return JSON.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from cadcore.core.backup import BackupRequestCoordinator
from cadcore.core.bolos import BOLORegistry
from cadcore.core.calls import CallRegistry
from cadcore.core.domain import utcnow
from cadcore.core.errors import NotFound
from cadcore.core.fanout import NotificationFanout
from cadcore.core.ports import AsyncEntityStore, AsyncEventFeed, AsyncFanoutTransport
from cadcore.core.tactical import TacticalCalloutManager
from cadcore.core.units import UnitStatusTracker


@dataclass
class DispatchCore:
    store: AsyncEntityStore
    fanout: NotificationFanout
    units: UnitStatusTracker
    calls: CallRegistry
    bolos: BOLORegistry
    backup: BackupRequestCoordinator
    tactical: TacticalCalloutManager
    feed: Optional[AsyncEventFeed] = None

    def registry(self, family: str) -> Any:
        """Component behind a URL family name (``units``, ``calls``, ...)."""
        registries = {
            "units": self.units,
            "calls": self.calls,
            "bolos": self.bolos,
            "backup": self.backup,
            "tactical": self.tactical,
        }
        try:
            return registries[family]
        except KeyError:
            raise NotFound("entity family", family) from None


def build_dispatch_core(
    store: AsyncEntityStore,
    *,
    feed: AsyncEventFeed | None = None,
    transports: Iterable[AsyncFanoutTransport] = (),
    conflict_retries: int | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> DispatchCore:
    """Wire every component against ``store``; ``feed`` is published to first."""
    all_transports: list[AsyncFanoutTransport] = []
    if feed is not None:
        all_transports.append(feed)
    all_transports.extend(transports)

    fanout = NotificationFanout(all_transports, clock=clock)
    kwargs = {"conflict_retries": conflict_retries, "clock": clock}
    units = UnitStatusTracker(store, fanout, **kwargs)
    return DispatchCore(
        store=store,
        fanout=fanout,
        units=units,
        calls=CallRegistry(store, fanout, units, **kwargs),
        bolos=BOLORegistry(store, fanout, units, **kwargs),
        backup=BackupRequestCoordinator(store, fanout, units, **kwargs),
        tactical=TacticalCalloutManager(store, fanout, units, **kwargs),
        feed=feed,
    )
