"""Shared test fixtures."""

import pytest
from httpx import ASGITransport, AsyncClient

from incident_bridge.config import Settings
from incident_bridge.mapping.mapper import FieldMapper
from incident_bridge.sync.forward import ForwardSyncEngine
from incident_bridge.sync.reverse import ReverseSyncEngine
from incident_bridge.sync.state import SyncState

from tests.fakes import FakeClock, FakeIncidentIO, FakeServiceNow, make_config


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def bridge_config():
    return make_config()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sync_state(bridge_config, clock):
    return SyncState.from_config(bridge_config.loop_guard, clock=clock)


@pytest.fixture
def servicenow():
    return FakeServiceNow()


@pytest.fixture
def incident_io():
    return FakeIncidentIO()


@pytest.fixture
def sleeps():
    """Records every delay requested by the batch runner instead of sleeping."""
    calls: list[float] = []

    async def _sleep(seconds: float) -> None:
        calls.append(seconds)

    _sleep.calls = calls
    return _sleep


@pytest.fixture
def forward_engine(servicenow, incident_io, bridge_config, sync_state, sleeps):
    mapper = FieldMapper(bridge_config.field_mappings)
    return ForwardSyncEngine(servicenow, incident_io, mapper, bridge_config, sync_state, sleep=sleeps)


@pytest.fixture
def reverse_engine(servicenow, incident_io, bridge_config, sync_state, sleeps):
    return ReverseSyncEngine(servicenow, incident_io, bridge_config, sync_state, sleep=sleeps)


@pytest.fixture
def app(bridge_config, servicenow, incident_io, sync_state):
    """Create a test application wired to the in-memory platforms."""
    from incident_bridge.main import create_app

    settings = Settings(rate_limit_enabled=False, json_logs=False, log_level="warning")
    return create_app(
        settings,
        bridge_config,
        servicenow=servicenow,
        incident_io=incident_io,
        state=sync_state,
    )


@pytest.fixture
async def client(app):
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
