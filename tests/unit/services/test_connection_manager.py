"""
Connection Manager Unit Tests

Runs the connection lifecycle against FakeToolServer peers:
- connect: handshake, capability discovery, catalog rebuild, events
- failures land in the returned state (status=error, last_error set)
- disconnect is idempotent and always releases the transport
- an unexpected exit moves the server to error and drops its tools at once
- probes and live requests
"""

import asyncio

import pytest

from mcp_orchestrator.models.errors import (
    ServerActiveError,
    ServerDisabledError,
    ServerNotConnectedError,
    ServerNotFoundError,
    ToolExecutionError,
    TransportError,
)
from mcp_orchestrator.models.mcp import ConnectionStatus, ServerCapabilities
from tests.fixtures.fake_server import drain, make_tool, process_config, settle, text_result


async def _add_server(orchestrator, transport_factory, server_id="files", priority=5, **server_kwargs):
    server = transport_factory.server(server_id, **server_kwargs)
    await orchestrator.registry.create(process_config(server_id, priority=priority))
    return server


class TestConnect:

    @pytest.mark.asyncio
    async def test_connect_discovers_tools_and_resources(self, orchestrator, transport_factory):
        server = await _add_server(
            orchestrator, transport_factory,
            tools=[make_tool("read"), make_tool("write")],
            resources=[{"uri": "file:///readme", "name": "readme"}],
        )

        state = await orchestrator.connections.connect("files")

        assert state.status == ConnectionStatus.CONNECTED
        assert state.last_error is None
        assert state.tools_count == 2
        assert state.resources_count == 1
        assert state.server_info["name"] == "files"
        assert state.protocol_version == "2024-11-05"
        assert state.connected_at is not None
        assert server.methods()[:4] == ["initialize", "notifications/initialized", "tools/list", "resources/list"]
        assert sorted(t.name for t in orchestrator.catalog.all_tools()) == ["read", "write"]
        assert orchestrator.catalog.resolve_resource("file:///readme") is not None

    @pytest.mark.asyncio
    async def test_connect_publishes_events_and_logs_transitions(self, orchestrator, transport_factory,
                                                               event_bus, store):
        await _add_server(orchestrator, transport_factory)
        subscription = event_bus.subscribe()

        await orchestrator.connections.connect("files")

        types = [e.type for e in drain(subscription)]
        assert types == ["server_connected", "catalog_changed"]
        logged = [e.event_type for e in store.connection_events if e.server_id == "files"]
        assert logged == ["connecting", "connected"]

    @pytest.mark.asyncio
    async def test_connect_when_connected_is_noop(self, orchestrator, transport_factory):
        await _add_server(orchestrator, transport_factory)

        first = await orchestrator.connections.connect("files")
        second = await orchestrator.connections.connect("files")

        assert second.status == ConnectionStatus.CONNECTED
        assert second.connected_at == first.connected_at
        assert len(transport_factory.transports) == 1

    @pytest.mark.asyncio
    async def test_connect_unknown_server(self, orchestrator):
        with pytest.raises(ServerNotFoundError):
            await orchestrator.connections.connect("ghost")

    @pytest.mark.asyncio
    async def test_connect_disabled_server_rejected(self, orchestrator, transport_factory):
        transport_factory.server("off")
        await orchestrator.registry.create(process_config("off", enabled=False))

        with pytest.raises(ServerDisabledError):
            await orchestrator.connections.connect("off")

        assert orchestrator.connections.state("off").status == ConnectionStatus.DISABLED
        assert transport_factory.transports == []

    @pytest.mark.asyncio
    async def test_handshake_timeout_sets_error(self, orchestrator, transport_factory):
        server = await _add_server(orchestrator, transport_factory)
        server.silent_methods.add("initialize")

        state = await orchestrator.connections.connect("files")

        assert state.status == ConnectionStatus.ERROR
        assert "timed out after 0.5s" in state.last_error
        assert transport_factory.latest("files").stopped
        assert orchestrator.catalog.all_tools() == []
        assert not orchestrator.connections.is_active("files")

    @pytest.mark.asyncio
    async def test_start_failure_sets_error(self, orchestrator, transport_factory):
        server = await _add_server(orchestrator, transport_factory)
        server.fail_start = "Failed to launch 'fake-server': no such file"

        state = await orchestrator.connections.connect("files")

        assert state.status == ConnectionStatus.ERROR
        assert "Failed to launch" in state.last_error

    @pytest.mark.asyncio
    async def test_tools_discovery_failure_is_fatal(self, orchestrator, transport_factory):
        server = await _add_server(orchestrator, transport_factory)
        server.failing_methods["tools/list"] = "listing broken"

        state = await orchestrator.connections.connect("files")

        assert state.status == ConnectionStatus.ERROR
        assert "listing broken" in state.last_error

    @pytest.mark.asyncio
    async def test_resource_discovery_failure_is_not_fatal(self, orchestrator, transport_factory):
        server = await _add_server(orchestrator, transport_factory)
        server.failing_methods["resources/list"] = "no resources here"

        state = await orchestrator.connections.connect("files")

        assert state.status == ConnectionStatus.CONNECTED
        assert state.tools_count == 1
        assert state.resources_count == 0

    @pytest.mark.asyncio
    async def test_discovery_follows_pagination(self, orchestrator, transport_factory):
        server = await _add_server(
            orchestrator, transport_factory, tools=[make_tool(f"tool_{i}") for i in range(5)]
        )
        server.page_size = 2

        state = await orchestrator.connections.connect("files")

        assert state.tools_count == 5
        assert server.methods().count("tools/list") == 3

    @pytest.mark.asyncio
    async def test_discovery_only_for_configured_and_declared_capabilities(self, orchestrator, transport_factory):
        # Server declares tools only; config does not ask for resources either way
        server = transport_factory.server("files", capabilities={"tools": {}})
        await orchestrator.registry.create(process_config(
            "files", capabilities=ServerCapabilities(tools=True, resources=False, prompts=True).model_dump()
        ))

        await orchestrator.connections.connect("files")

        methods = server.methods()
        assert "tools/list" in methods
        assert "resources/list" not in methods
        assert "prompts/list" not in methods

    @pytest.mark.asyncio
    async def test_slow_handshake_does_not_block_other_servers(self, orchestrator, transport_factory):
        slow = await _add_server(orchestrator, transport_factory, server_id="slow")
        slow.silent_methods.add("initialize")
        await _add_server(orchestrator, transport_factory, server_id="fast")

        slow_task = asyncio.create_task(orchestrator.connections.connect("slow"))
        await asyncio.sleep(0)
        fast_state = await orchestrator.connections.connect("fast")

        assert fast_state.status == ConnectionStatus.CONNECTED
        assert not slow_task.done()
        assert (await slow_task).status == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_connect_all_enabled_skips_disabled(self, orchestrator, transport_factory):
        await _add_server(orchestrator, transport_factory, server_id="a")
        await _add_server(orchestrator, transport_factory, server_id="b")
        transport_factory.server("c")
        await orchestrator.registry.create(process_config("c", enabled=False))

        states = await orchestrator.connections.connect_all_enabled()

        assert sorted(states) == ["a", "b"]
        assert all(s.status == ConnectionStatus.CONNECTED for s in states.values())
        stats = orchestrator.connections.pool_stats()
        assert stats.connected == 2
        assert stats.disabled == 1


class TestDisconnect:

    @pytest.mark.asyncio
    async def test_disconnect_releases_transport_and_catalog(self, orchestrator, transport_factory):
        await _add_server(orchestrator, transport_factory)
        await orchestrator.connections.connect("files")

        state = await orchestrator.connections.disconnect("files")

        assert state.status == ConnectionStatus.DISCONNECTED
        assert state.tools_count == 0
        assert transport_factory.latest("files").stopped
        assert orchestrator.catalog.all_tools() == []

    @pytest.mark.asyncio
    async def test_double_disconnect_is_idempotent(self, orchestrator, transport_factory, store):
        await _add_server(orchestrator, transport_factory)
        await orchestrator.connections.connect("files")

        await orchestrator.connections.disconnect("files")
        state = await orchestrator.connections.disconnect("files")

        assert state.status == ConnectionStatus.DISCONNECTED
        assert transport_factory.latest("files").stop_calls == 1
        logged = [e.event_type for e in store.connection_events if e.server_id == "files"]
        assert logged.count("disconnected") == 1

    @pytest.mark.asyncio
    async def test_disconnect_clears_error_state(self, orchestrator, transport_factory):
        server = await _add_server(orchestrator, transport_factory)
        server.silent_methods.add("initialize")
        await orchestrator.connections.connect("files")

        state = await orchestrator.connections.disconnect("files")

        assert state.status == ConnectionStatus.DISCONNECTED
        assert state.last_error is None

    @pytest.mark.asyncio
    async def test_unregister_active_server_rejected(self, orchestrator, transport_factory):
        await _add_server(orchestrator, transport_factory)
        await orchestrator.connections.connect("files")

        with pytest.raises(ServerActiveError):
            orchestrator.connections.unregister("files")


class TestUnexpectedExit:

    @pytest.mark.asyncio
    async def test_crash_moves_to_error_and_drops_tools(self, orchestrator, transport_factory, store, event_bus):
        await _add_server(orchestrator, transport_factory)
        await orchestrator.connections.connect("files")
        subscription = event_bus.subscribe()

        transport_factory.latest("files").crash("process exited with code 1: segfault")

        # Visible synchronously, before any background work runs
        state = orchestrator.connections.state("files")
        assert state.status == ConnectionStatus.ERROR
        assert state.last_error == "Connection lost: process exited with code 1: segfault"
        assert orchestrator.catalog.resolve("echo") is None

        await settle(orchestrator.connections)
        assert not orchestrator.connections.is_active("files")
        assert any(e.event_type == "process_exited" for e in store.connection_events)
        assert [e.type for e in drain(subscription)] == ["server_error", "catalog_changed"]

    @pytest.mark.asyncio
    async def test_crash_fails_in_flight_request(self, orchestrator, transport_factory):
        server = await _add_server(orchestrator, transport_factory)

        async def hang(arguments):
            await asyncio.Event().wait()

        server.handlers["echo"] = hang
        await orchestrator.connections.connect("files")
        call = asyncio.create_task(orchestrator.connections.call_tool("files", "echo", {}))
        await asyncio.sleep(0.01)

        transport_factory.latest("files").crash()

        with pytest.raises(TransportError):
            await call
        await settle(orchestrator.connections)

    @pytest.mark.asyncio
    async def test_reconnect_after_crash(self, orchestrator, transport_factory):
        await _add_server(orchestrator, transport_factory)
        await orchestrator.connections.connect("files")
        transport_factory.latest("files").crash()
        await settle(orchestrator.connections)

        state = await orchestrator.connections.connect("files")

        assert state.status == ConnectionStatus.CONNECTED
        assert state.last_error is None
        assert len(transport_factory.transports) == 2
        assert orchestrator.catalog.resolve("echo") is not None


class TestRequests:

    @pytest.mark.asyncio
    async def test_call_tool_returns_result(self, orchestrator, transport_factory):
        await _add_server(orchestrator, transport_factory)
        await orchestrator.connections.connect("files")

        result = await orchestrator.connections.call_tool("files", "echo", {"text": "hi"})

        assert result["content"][0]["text"] == 'files:{"text": "hi"}'

    @pytest.mark.asyncio
    async def test_call_tool_error_result_raises(self, orchestrator, transport_factory):
        server = await _add_server(orchestrator, transport_factory)

        async def broken(arguments):
            return text_result("disk full", is_error=True)

        server.handlers["echo"] = broken
        await orchestrator.connections.connect("files")

        with pytest.raises(ToolExecutionError) as exc_info:
            await orchestrator.connections.call_tool("files", "echo", {})

        assert str(exc_info.value) == "disk full"
        assert exc_info.value.content == [{"type": "text", "text": "disk full"}]

    @pytest.mark.asyncio
    async def test_call_tool_when_disconnected(self, orchestrator, transport_factory):
        await _add_server(orchestrator, transport_factory)

        with pytest.raises(ServerNotConnectedError):
            await orchestrator.connections.call_tool("files", "echo", {})

    @pytest.mark.asyncio
    async def test_probe_success(self, orchestrator, transport_factory):
        server = await _add_server(orchestrator, transport_factory)
        await orchestrator.connections.connect("files")
        before = orchestrator.connections.state("files").last_probe_at

        assert await orchestrator.connections.probe("files") is True

        assert "ping" in server.methods()
        assert orchestrator.connections.state("files").last_probe_at >= before

    @pytest.mark.asyncio
    async def test_probe_without_ping_support_counts_as_alive(self, orchestrator, transport_factory):
        server = await _add_server(orchestrator, transport_factory)
        server.failing_methods["ping"] = "Method not found"
        await orchestrator.connections.connect("files")

        assert await orchestrator.connections.probe("files") is True

    @pytest.mark.asyncio
    async def test_probe_timeout_records_failure(self, orchestrator, transport_factory, store):
        server = await _add_server(orchestrator, transport_factory)
        server.silent_methods.add("ping")
        await orchestrator.connections.connect("files")

        assert await orchestrator.connections.probe("files") is False

        assert any(e.event_type == "probe_failed" for e in store.connection_events)
        assert orchestrator.connections.state("files").status == ConnectionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_probe_disconnected_server(self, orchestrator, transport_factory):
        await _add_server(orchestrator, transport_factory)

        assert await orchestrator.connections.probe("files") is False


class TestApplyConfig:

    @pytest.mark.asyncio
    async def test_disable_and_enable_idle_server(self, orchestrator, transport_factory, store):
        await _add_server(orchestrator, transport_factory)
        config = orchestrator.registry.get("files")

        disabled = await orchestrator.connections.apply_config(config.model_copy(update={"enabled": False}))
        enabled = await orchestrator.connections.apply_config(config)

        assert disabled.status == ConnectionStatus.DISABLED
        assert enabled.status == ConnectionStatus.DISCONNECTED
        logged = [e.event_type for e in store.connection_events if e.server_id == "files"]
        assert logged == ["disabled", "enabled"]

    @pytest.mark.asyncio
    async def test_live_connection_keeps_connected_priority(self, orchestrator, transport_factory):
        await _add_server(orchestrator, transport_factory, server_id="a", priority=1)
        await _add_server(orchestrator, transport_factory, server_id="b", priority=5)
        await orchestrator.connections.connect_all_enabled()
        assert orchestrator.catalog.resolve("echo").owner_server_id == "b"

        config = orchestrator.registry.get("a")
        await orchestrator.connections.apply_config(config.model_copy(update={"priority": 9}))
        await orchestrator.connections.disconnect("b")

        # Until "a" reconnects it keeps the priority it connected with
        assert orchestrator.catalog.resolve("echo").owner_server_id == "a"
        assert orchestrator.catalog.resolve("echo").owner_priority == 1
