"""
Shared pytest fixtures for NetWake tests.

Provides:
- An in-memory SQLite registry (fresh schema per test)
- Device and host factories
"""

import os

# Keep the default engine away from a real database file
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest
import pytest_asyncio
from datetime import timedelta

from netwake.db.database import init_db, make_engine, make_session_factory
from netwake.db.records import DeviceRecord, DeviceStatus, DeviceType, utcnow
from netwake.db.registry import DeviceRegistry
from netwake.scanner.network_sweeper import DiscoveredHost


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def engine():
    """In-memory database shared by every connection of one test."""
    engine = make_engine("sqlite+aiosqlite://")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def registry(session_factory):
    return DeviceRegistry(session_factory)


# ============================================================================
# Factories
# ============================================================================

@pytest.fixture
def make_device():
    """Build an unsaved DeviceRecord."""
    def _make(ip="192.168.1.10", mac="AA:BB:CC:DD:EE:FF", name=None,
              status=DeviceStatus.ONLINE, device_type=DeviceType.COMPUTER, age=timedelta(0)):
        seen = utcnow() - age
        return DeviceRecord(
            name=name if name is not None else f"host-{ip.rsplit('.', 1)[-1]}",
            ip_address=ip,
            mac_address=mac,
            device_type=device_type,
            status=status,
            last_seen_at=seen,
            created_at=seen,
            updated_at=seen,
        )
    return _make


@pytest.fixture
def make_host():
    """Build a DiscoveredHost as a sweep would report it."""
    def _make(ip="192.168.1.10", mac="AA:BB:CC:DD:EE:FF", hostname=None,
              device_type=DeviceType.UNKNOWN):
        return DiscoveredHost(ip_address=ip, mac_address=mac, hostname=hostname, device_type=device_type)
    return _make
