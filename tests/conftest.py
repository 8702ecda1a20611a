"""
Pytest configuration and shared fixtures for the MCP orchestrator tests.
"""

import pytest
import pytest_asyncio

from mcp_orchestrator.config import Settings
from mcp_orchestrator.database.store import InMemoryOrchestratorStore
from mcp_orchestrator.services.orchestrator import OrchestrationContext
from mcp_orchestrator.utils.event_bus import EventBus
from tests.fixtures.fake_server import FakeTransportFactory


@pytest.fixture
def test_settings() -> Settings:
    """Short timeouts, no startup delay, no auto-connect, no Redis relay."""
    return Settings(
        SQLALCHEMY_DATABASE_URL="sqlite+aiosqlite:///:memory:",
        EVENT_RELAY_ENABLED=False,
        AUTO_CONNECT_ON_STARTUP=False,
        HANDSHAKE_TIMEOUT_SECONDS=0.5,
        DISCOVERY_TIMEOUT_SECONDS=0.5,
        REQUEST_TIMEOUT_SECONDS=1.0,
        PROCESS_STARTUP_DELAY_SECONDS=0.0,
        DISCONNECT_GRACE_SECONDS=0.5,
        HEALTH_CHECK_INTERVAL_SECONDS=3600,
        HEALTH_PROBE_TIMEOUT_SECONDS=0.5,
        RECONNECT_DELAY_SECONDS=0.01,
        RECONNECT_MAX_ATTEMPTS=1,
        MAX_SERVERS=10,
    )


@pytest.fixture
def store() -> InMemoryOrchestratorStore:
    return InMemoryOrchestratorStore()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus(relay_enabled=False, max_queue=100)


@pytest.fixture
def transport_factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest_asyncio.fixture
async def orchestrator(test_settings, store, event_bus, transport_factory):
    """Fully wired orchestration context on fake transports (monitor not started)."""
    context = OrchestrationContext(test_settings, store, event_bus=event_bus, transport_factory=transport_factory)
    await context.startup(start_monitor=False)
    yield context
    await context.shutdown()
