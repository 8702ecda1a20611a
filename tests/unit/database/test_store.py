"""
Orchestrator store tests.

Both implementations run the same contract: the in-memory store and the
SQLAlchemy store on an in-memory aiosqlite database.
"""

from datetime import timedelta

import pytest
import pytest_asyncio

from mcp_orchestrator.database.database import DatabaseManager
from mcp_orchestrator.database.store import InMemoryOrchestratorStore, SqlOrchestratorStore
from mcp_orchestrator.models.mcp import (
    AuditEntry,
    ConnectionEvent,
    ErrorKind,
    HealthFinding,
    InvocationRecord,
    ServerConfig,
    Severity,
    utcnow,
)
from tests.fixtures.fake_server import process_config


@pytest_asyncio.fixture(params=["memory", "sql"])
async def any_store(request):
    if request.param == "memory":
        store = InMemoryOrchestratorStore()
    else:
        store = SqlOrchestratorStore(DatabaseManager("sqlite+aiosqlite:///:memory:"), create_tables=True)
    await store.initialize()
    yield store
    await store.close()


def _invocation(server_id="files", success=True, minutes_ago=0, **kwargs):
    return InvocationRecord(
        tool_name="read",
        server_id=server_id,
        arguments={"path": "/tmp/a"},
        success=success,
        latency_ms=12.5,
        timestamp=utcnow() - timedelta(minutes=minutes_ago),
        **kwargs,
    )


class TestServerConfigs:

    @pytest.mark.asyncio
    async def test_save_and_list(self, any_store):
        config = ServerConfig(**process_config(
            "files", args=["--root", "/data"], env={"TOKEN": "x"}, tags=["fs"], request_timeout_seconds=12,
        ))

        await any_store.save_server(config)
        loaded = await any_store.list_servers()

        assert len(loaded) == 1
        assert loaded[0].id == "files"
        assert loaded[0].args == ["--root", "/data"]
        assert loaded[0].env == {"TOKEN": "x"}
        assert loaded[0].tags == ["fs"]
        assert loaded[0].request_timeout_seconds == 12
        assert loaded[0].capabilities == config.capabilities
        assert loaded[0].created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_save_replaces_existing(self, any_store):
        await any_store.save_server(ServerConfig(**process_config("files", priority=1)))
        await any_store.save_server(ServerConfig(**process_config("files", priority=8, enabled=False)))

        loaded = await any_store.list_servers()

        assert len(loaded) == 1
        assert loaded[0].priority == 8
        assert loaded[0].enabled is False

    @pytest.mark.asyncio
    async def test_list_order_and_delete(self, any_store):
        await any_store.save_server(ServerConfig(**process_config("b", priority=1)))
        await any_store.save_server(ServerConfig(**process_config("a", priority=9)))

        assert [c.id for c in await any_store.list_servers()] == ["a", "b"]

        await any_store.delete_server("a")
        await any_store.delete_server("missing")

        assert [c.id for c in await any_store.list_servers()] == ["b"]


class TestLogs:

    @pytest.mark.asyncio
    async def test_append_only_logs_accept_entries(self, any_store):
        await any_store.append_audit(AuditEntry(server_id="files", operation="created", changes={"priority": 5}))
        await any_store.append_connection_event(ConnectionEvent(
            server_id="files", event_type="error", detail="boom", metadata={"status": "error"}
        ))
        await any_store.append_finding(HealthFinding(
            server_id=None, severity=Severity.CRITICAL, rule="systemic_degradation", message="2 servers down",
        ))

    @pytest.mark.asyncio
    async def test_recent_invocations_newest_first(self, any_store):
        await any_store.append_invocation(_invocation(minutes_ago=5))
        await any_store.append_invocation(_invocation(
            success=False, minutes_ago=1, error_kind=ErrorKind.TIMEOUT,
            error_message="Request 'tools/call' timed out after 30s", outcome_known=False,
        ))
        await any_store.append_invocation(_invocation(server_id="other", minutes_ago=2))

        records = await any_store.recent_invocations(server_id="files")

        assert len(records) == 2
        assert records[0].success is False
        assert records[0].error_kind == ErrorKind.TIMEOUT
        assert records[0].outcome_known is False
        assert records[0].arguments == {"path": "/tmp/a"}
        assert records[1].success is True

    @pytest.mark.asyncio
    async def test_recent_invocations_since_and_limit(self, any_store):
        for minutes_ago in (90, 20, 10, 5):
            await any_store.append_invocation(_invocation(minutes_ago=minutes_ago))

        recent = await any_store.recent_invocations(since=utcnow() - timedelta(minutes=60))
        limited = await any_store.recent_invocations(limit=2)

        assert len(recent) == 3
        assert len(limited) == 2
        assert limited[0].timestamp > limited[1].timestamp

    @pytest.mark.asyncio
    async def test_not_found_records_have_no_server(self, any_store):
        await any_store.append_invocation(InvocationRecord(
            tool_name="ghost", success=False, latency_ms=0, error_kind=ErrorKind.NOT_FOUND,
        ))

        records = await any_store.recent_invocations()

        assert records[0].server_id is None
        assert records[0].error_kind == ErrorKind.NOT_FOUND
