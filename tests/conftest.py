import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set env before any imports that might read settings
os.environ.setdefault("LOG_JSON", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("IDENTITY_PROVIDER", "memory")
os.environ.setdefault("GUARD_STORE", "memory")
# Redis tests use their own database and skip when no server answers
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from rostergate.config import reset_settings_cache  # noqa: E402
from rostergate.service import runtime as runtime_module  # noqa: E402
from rostergate.service.device import DeviceRiskAssessor  # noqa: E402
from rostergate.service.guard import AccessControlGuard  # noqa: E402
from rostergate.service.identity_backends import MemoryIdentityProvider  # noqa: E402
from rostergate.service.migration import MigrationCoordinator  # noqa: E402
from rostergate.service.roster import CredentialRoster  # noqa: E402
from rostergate.service.session import SessionManager  # noqa: E402
from rostergate.storage.memory import MemoryGuardStore  # noqa: E402

# Monday morning, inside the default access window
START = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)

ROSTER_ENTRIES = [
    {"identifier": "S1001", "secret": "alpha-1001"},
    {"matricNumber": "S1002", "password": "bravo-1002"},
    {"identifier": "CSC/2021/003", "secret": "charlie-003"},
]


class FakeClock:
    """Manually advanced clock shared by every component under test."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_settings_cache()
    runtime_module.runtime = None
    yield
    reset_settings_cache()
    runtime_module.runtime = None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def roster():
    return CredentialRoster.from_entries(ROSTER_ENTRIES)


@pytest.fixture
def store():
    return MemoryGuardStore()


@pytest.fixture
def provider():
    return MemoryIdentityProvider()


@pytest.fixture
def guard(store, clock):
    return AccessControlGuard(store, clock=clock)


@pytest.fixture
def sessions(clock):
    return SessionManager(clock=clock)


@pytest.fixture
def assessor(store, clock):
    return DeviceRiskAssessor(store, clock=clock)


@pytest.fixture
def coordinator(roster, guard, provider, sessions, assessor, clock):
    return MigrationCoordinator(
        roster,
        guard,
        provider,
        sessions,
        risk_assessor=assessor,
        migration_delay=0,
        clock=clock,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
