# tests/conftest.py
"""Pytest configuration and fixtures"""
import pytest
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from cadcore.core.errors import PersistenceUnavailable  # noqa: E402
from cadcore.core.service import build_dispatch_core  # noqa: E402
from cadcore.infra.event_feed import InMemoryEventFeed  # noqa: E402
from cadcore.infra.memory_store import InMemoryEntityStore  # noqa: E402
from cadcore.infra.metrics import get_metrics_collector  # noqa: E402


class FakeClock:
    """Deterministic clock; every read moves time forward by ``tick``."""

    def __init__(self, start: datetime | None = None, tick: timedelta = timedelta(seconds=1)):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        self.tick = tick

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.tick
        return current

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield


@pytest.fixture
def clock():
    return FakeClock()


class UnitWriteOutageStore(InMemoryEntityStore):
    """Memory store whose unit saves fail while ``units_down`` is set."""

    def __init__(self):
        super().__init__()
        self.units_down = False

    async def save(self, entity_type, entity_id, fields, expected_version):
        if self.units_down and entity_type == "unit":
            raise PersistenceUnavailable("Database unavailable during save")
        return await super().save(entity_type, entity_id, fields, expected_version)


@pytest.fixture
def store():
    return UnitWriteOutageStore()


@pytest.fixture
def feed():
    return InMemoryEventFeed(max_events=1000)


@pytest.fixture
def core(store, feed, clock):
    return build_dispatch_core(store, feed=feed, conflict_retries=3, clock=clock)


@pytest.fixture
def sign_on(core):
    """Register a unit and bring it AVAILABLE."""
    async def _sign_on(callsign: str, department: str = "POLICE", **kwargs):
        unit = await core.units.register_unit(callsign, department, "admin", **kwargs)
        return await core.units.set_status(unit.id, "AVAILABLE", callsign)
    return _sign_on


@pytest.fixture
def dispatcher():
    """Default acting identity for dispatcher commands"""
    return "dispatcher-1"
