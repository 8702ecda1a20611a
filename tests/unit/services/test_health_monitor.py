"""
Health Monitor Unit Tests

Covers the severity rules, the systemic finding, the sweep's side effects
(store + event bus) and the bounded reconnect policy.
"""

import asyncio
from datetime import timedelta

import pytest

from mcp_orchestrator.models.mcp import (
    ConnectionState,
    ConnectionStatus,
    HealthFinding,
    HealthRules,
    ResourceReadResult,
    ServerConfig,
    Severity,
    WindowStats,
    utcnow,
)
from mcp_orchestrator.services.health_monitor import evaluate_server, evaluate_systemic
from tests.fixtures.fake_server import drain, make_tool, process_config, settle, text_result

RULES = HealthRules(
    window_seconds=300,
    min_window_requests=1,
    error_rate_threshold=0.20,
    latency_threshold_ms=5000,
    probe_overdue_seconds=180,
    stuck_after_seconds=60,
    systemic_min_servers=2,
)


def _config(server_id="files", enabled=True):
    return ServerConfig(**process_config(server_id, enabled=enabled))


def _state(status, seconds_in_status=0, now=None, **kwargs):
    now = now or utcnow()
    return ConnectionState(
        server_id="files",
        status=status,
        status_since=now - timedelta(seconds=seconds_in_status),
        **kwargs,
    )


def _rules(findings):
    return [f.rule for f in findings]


class TestEvaluateServer:

    def test_disabled_server_has_no_findings(self):
        now = utcnow()
        stats = WindowStats(server_id="files", total=10, failures=10)

        findings = evaluate_server(_config(enabled=False), _state(ConnectionStatus.DISABLED, 9999, now),
                                   stats, now, RULES)

        assert findings == []

    def test_stuck_disconnected_is_critical(self):
        now = utcnow()

        findings = evaluate_server(_config(), _state(ConnectionStatus.DISCONNECTED, 120, now),
                                   WindowStats(server_id="files"), now, RULES)

        assert _rules(findings) == ["server_unavailable"]
        assert findings[0].severity == Severity.CRITICAL

    def test_recent_error_within_grace_period(self):
        now = utcnow()

        findings = evaluate_server(_config(), _state(ConnectionStatus.ERROR, 30, now),
                                   WindowStats(server_id="files"), now, RULES)

        assert findings == []

    def test_error_rate_at_threshold_is_high(self):
        now = utcnow()
        connected = _state(ConnectionStatus.CONNECTED, 10, now, last_probe_at=now)

        findings = evaluate_server(_config(), connected, WindowStats(server_id="files", total=5, failures=1),
                                   now, RULES)

        assert _rules(findings) == ["high_error_rate"]
        assert findings[0].severity == Severity.HIGH

    def test_error_rate_below_threshold(self):
        now = utcnow()
        connected = _state(ConnectionStatus.CONNECTED, 10, now, last_probe_at=now)

        findings = evaluate_server(_config(), connected, WindowStats(server_id="files", total=6, failures=1),
                                   now, RULES)

        assert findings == []

    def test_one_failure_in_four_is_high(self):
        now = utcnow()
        connected = _state(ConnectionStatus.CONNECTED, 10, now, last_probe_at=now)

        failing = evaluate_server(_config("x"), connected, WindowStats(server_id="x", total=4, failures=1),
                                  now, RULES)
        healthy = evaluate_server(_config("y"), connected, WindowStats(server_id="y", total=4, failures=0),
                                  now, RULES)

        assert _rules(failing) == ["high_error_rate"]
        assert failing[0].server_id == "x"
        assert healthy == []

    def test_default_rules_fire_on_a_single_failure(self):
        now = utcnow()
        connected = _state(ConnectionStatus.CONNECTED, 10, now, last_probe_at=now)

        findings = evaluate_server(_config(), connected, WindowStats(server_id="files", total=1, failures=1),
                                   now, HealthRules())

        assert _rules(findings) == ["high_error_rate"]

    def test_configured_minimum_still_applies(self):
        now = utcnow()
        connected = _state(ConnectionStatus.CONNECTED, 10, now, last_probe_at=now)
        rules = RULES.model_copy(update={"min_window_requests": 5})

        findings = evaluate_server(_config(), connected, WindowStats(server_id="files", total=4, failures=4),
                                   now, rules)

        assert findings == []

    def test_slow_server_is_medium(self):
        now = utcnow()
        connected = _state(ConnectionStatus.CONNECTED, 10, now, last_probe_at=now)
        stats = WindowStats(server_id="files", total=2, failures=0, average_latency_ms=7500)

        findings = evaluate_server(_config(), connected, stats, now, RULES)

        assert _rules(findings) == ["high_latency"]
        assert findings[0].severity == Severity.MEDIUM

    def test_probe_overdue_is_low(self):
        now = utcnow()
        connected = _state(ConnectionStatus.CONNECTED, 600, now, last_probe_at=now - timedelta(seconds=200))

        findings = evaluate_server(_config(), connected, WindowStats(server_id="files"), now, RULES)

        assert _rules(findings) == ["probe_overdue"]
        assert findings[0].severity == Severity.LOW

    def test_probe_falls_back_to_connected_at(self):
        now = utcnow()
        connected = _state(ConnectionStatus.CONNECTED, 600, now, connected_at=now - timedelta(seconds=30))

        findings = evaluate_server(_config(), connected, WindowStats(server_id="files"), now, RULES)

        assert findings == []


class TestEvaluateSystemic:

    def _finding(self, server_id, severity):
        return HealthFinding(server_id=server_id, severity=severity, rule="r", message="m")

    def test_two_degraded_servers_is_systemic(self):
        findings = [self._finding("a", Severity.HIGH), self._finding("b", Severity.CRITICAL)]

        systemic = evaluate_systemic(findings, utcnow(), RULES)

        assert systemic.server_id is None
        assert systemic.severity == Severity.CRITICAL
        assert systemic.details["servers"] == ["a", "b"]

    def test_one_server_with_several_findings_is_not_systemic(self):
        findings = [self._finding("a", Severity.HIGH), self._finding("a", Severity.CRITICAL)]

        assert evaluate_systemic(findings, utcnow(), RULES) is None

    def test_medium_findings_do_not_count(self):
        findings = [self._finding("a", Severity.MEDIUM), self._finding("b", Severity.LOW)]

        assert evaluate_systemic(findings, utcnow(), RULES) is None


class TestSweep:

    @pytest.mark.asyncio
    async def test_sweep_records_and_publishes_findings(self, orchestrator, transport_factory, store, event_bus):
        transport_factory.server("files")
        await orchestrator.registry.create(process_config("files"))
        subscription = event_bus.subscribe()

        findings = await orchestrator.health_monitor.sweep(now=utcnow() + timedelta(seconds=120))

        assert _rules(findings) == ["server_unavailable"]
        assert store.findings == findings
        assert [e.type for e in drain(subscription)] == ["health_finding"]
        assert orchestrator.status_report().findings == findings

    @pytest.mark.asyncio
    async def test_sweep_adds_systemic_finding(self, orchestrator, transport_factory):
        for server_id in ("a", "b"):
            transport_factory.server(server_id)
            await orchestrator.registry.create(process_config(server_id))

        findings = await orchestrator.health_monitor.sweep(now=utcnow() + timedelta(seconds=120))

        assert sorted(_rules(findings)) == ["server_unavailable", "server_unavailable", "systemic_degradation"]
        assert orchestrator.health_monitor.open_findings()[0].severity == Severity.CRITICAL

    @pytest.mark.asyncio
    async def test_sweep_replaces_open_findings(self, orchestrator, transport_factory):
        transport_factory.server("files")
        await orchestrator.registry.create(process_config("files"))
        await orchestrator.health_monitor.sweep(now=utcnow() + timedelta(seconds=120))

        await orchestrator.connections.connect("files")
        findings = await orchestrator.health_monitor.sweep()

        assert findings == []
        assert orchestrator.health_monitor.open_findings() == []

    @pytest.mark.asyncio
    async def test_sweep_flags_only_the_failing_server(self, orchestrator, transport_factory):
        x = transport_factory.server("x", tools=[make_tool("read")])
        transport_factory.server("y", tools=[make_tool("write")])
        for server_id in ("x", "y"):
            await orchestrator.registry.create(process_config(server_id))
            await orchestrator.connections.connect(server_id)
        calls = {"count": 0}

        async def flaky(arguments):
            calls["count"] += 1
            return text_result("boom", is_error=calls["count"] == 1)

        x.handlers["read"] = flaky
        for _ in range(4):
            await orchestrator.invoker.invoke("read", {})
            await orchestrator.invoker.invoke("write", {})

        findings = await orchestrator.health_monitor.sweep()

        assert [(f.server_id, f.rule) for f in findings] == [("x", "high_error_rate")]
        assert findings[0].details["failures"] == 1
        assert findings[0].details["requests"] == 4

    @pytest.mark.asyncio
    async def test_run_cycle_probes_connected_servers(self, orchestrator, transport_factory):
        server = transport_factory.server("files")
        await orchestrator.registry.create(process_config("files"))
        await orchestrator.connections.connect("files")

        await orchestrator.health_monitor.run_cycle()

        assert "ping" in server.methods()

    @pytest.mark.asyncio
    async def test_run_cycle_drops_expired_cached_resources(self, orchestrator):
        cache = orchestrator.resource_cache
        stale = ResourceReadResult(uri="file:///old", server_id="files", success=True, contents=[{"text": "x"}])
        cache.put(stale, now=utcnow() - timedelta(seconds=cache.ttl_seconds + 1))

        await orchestrator.health_monitor.run_cycle()

        assert len(cache) == 0


class TestReconnects:

    async def _errored_server(self, orchestrator, transport_factory):
        server = transport_factory.server("files")
        await orchestrator.registry.create(process_config("files"))
        server.silent_methods.add("initialize")
        state = await orchestrator.connections.connect("files")
        assert state.status == ConnectionStatus.ERROR
        return server

    async def _wait_for_reconnects(self, monitor):
        await asyncio.gather(*list(monitor._reconnect_tasks.values()), return_exceptions=True)

    @pytest.mark.asyncio
    async def test_reconnect_is_bounded(self, orchestrator, transport_factory):
        await self._errored_server(orchestrator, transport_factory)
        monitor = orchestrator.health_monitor

        assert monitor.schedule_reconnects() == ["files"]
        # Already pending
        assert monitor.schedule_reconnects() == []
        await self._wait_for_reconnects(monitor)

        assert orchestrator.connections.state("files").status == ConnectionStatus.ERROR
        assert monitor.schedule_reconnects() == []
        assert len(transport_factory.transports) == 2

    @pytest.mark.asyncio
    async def test_reconnect_succeeds(self, orchestrator, transport_factory):
        server = await self._errored_server(orchestrator, transport_factory)
        server.silent_methods.clear()
        monitor = orchestrator.health_monitor

        monitor.schedule_reconnects()
        await self._wait_for_reconnects(monitor)

        assert orchestrator.connections.state("files").status == ConnectionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_new_error_episode_gets_fresh_budget(self, orchestrator, transport_factory):
        server = await self._errored_server(orchestrator, transport_factory)
        monitor = orchestrator.health_monitor
        monitor.schedule_reconnects()
        await self._wait_for_reconnects(monitor)

        server.silent_methods.clear()
        await orchestrator.connections.connect("files")
        assert monitor.schedule_reconnects() == []

        transport_factory.latest("files").crash()
        await settle(orchestrator.connections)

        assert monitor.schedule_reconnects() == ["files"]
        await self._wait_for_reconnects(monitor)
        assert orchestrator.connections.state("files").status == ConnectionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_server_fixed_by_hand_is_not_reconnected(self, orchestrator, transport_factory):
        await self._errored_server(orchestrator, transport_factory)
        monitor = orchestrator.health_monitor
        monitor.reconnect.delay_seconds = 0.2

        monitor.schedule_reconnects()
        await orchestrator.connections.disconnect("files")
        await self._wait_for_reconnects(monitor)

        assert orchestrator.connections.state("files").status == ConnectionStatus.DISCONNECTED
        assert len(transport_factory.transports) == 1


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, orchestrator):
        monitor = orchestrator.health_monitor

        await monitor.start()
        assert monitor.is_running
        assert monitor.monitor_task is not None

        await monitor.stop()
        assert not monitor.is_running
        assert monitor.monitor_task is None
