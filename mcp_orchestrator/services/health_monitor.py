"""
Health Monitor Service

Background service that periodically grades every enabled tool server from
connection state and windowed invocation metrics, publishes findings,
probes live connections and schedules bounded reconnects.

Severity rules (per server):
  critical  disconnected or error for longer than stuck_after_seconds
  high      window error rate >= error_rate_threshold
  medium    window average latency > latency_threshold_ms
  low       connected, but no successful probe within probe_overdue_seconds
When enough servers are high-or-worse in one sweep, a systemic critical
finding (server_id=None) is added.
"""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional

from mcp_orchestrator.database.store import OrchestratorStore
from mcp_orchestrator.models.errors import ServerNotFoundError
from mcp_orchestrator.models.events import create_health_finding_event
from mcp_orchestrator.models.mcp import (
    ConnectionState,
    ConnectionStatus,
    HealthFinding,
    HealthRules,
    ReconnectPolicy,
    ServerConfig,
    Severity,
    WindowStats,
    utcnow,
)
from mcp_orchestrator.services.connection_manager import ConnectionManager
from mcp_orchestrator.services.metrics import MetricsTracker
from mcp_orchestrator.services.resource_cache import ResourceCache
from mcp_orchestrator.utils.event_bus import EventBus
from mcp_orchestrator.utils.logging import get_logger

logger = get_logger("health-monitor")

STUCK_STATUSES = (ConnectionStatus.DISCONNECTED, ConnectionStatus.ERROR)


def evaluate_server(
    config: ServerConfig,
    state: ConnectionState,
    stats: WindowStats,
    now: datetime,
    rules: HealthRules,
) -> List[HealthFinding]:
    """Apply the severity rules to one server's snapshot. Disabled servers yield nothing."""
    if not config.enabled or state.status == ConnectionStatus.DISABLED:
        return []

    findings: List[HealthFinding] = []

    if state.status in STUCK_STATUSES:
        stuck_for = (now - state.status_since).total_seconds()
        if stuck_for > rules.stuck_after_seconds:
            findings.append(HealthFinding(
                server_id=config.id,
                severity=Severity.CRITICAL,
                rule="server_unavailable",
                message=f"Server '{config.id}' has been {state.status.value} for {int(stuck_for)}s",
                timestamp=now,
                details={"status": state.status.value, "last_error": state.last_error,
                         "seconds": round(stuck_for, 1)},
            ))

    if stats.total >= rules.min_window_requests and stats.error_rate >= rules.error_rate_threshold:
        findings.append(HealthFinding(
            server_id=config.id,
            severity=Severity.HIGH,
            rule="high_error_rate",
            message=f"Server '{config.id}' error rate is {stats.error_rate:.0%} over the last "
                    f"{stats.total} requests",
            timestamp=now,
            details={"error_rate": round(stats.error_rate, 4), "requests": stats.total,
                     "failures": stats.failures},
        ))

    if stats.total > 0 and stats.average_latency_ms > rules.latency_threshold_ms:
        findings.append(HealthFinding(
            server_id=config.id,
            severity=Severity.MEDIUM,
            rule="high_latency",
            message=f"Server '{config.id}' average latency is {stats.average_latency_ms:.0f}ms",
            timestamp=now,
            details={"average_latency_ms": round(stats.average_latency_ms, 2), "requests": stats.total},
        ))

    if state.status == ConnectionStatus.CONNECTED:
        last_seen = state.last_probe_at or state.connected_at or state.status_since
        silent_for = (now - last_seen).total_seconds()
        if silent_for > rules.probe_overdue_seconds:
            findings.append(HealthFinding(
                server_id=config.id,
                severity=Severity.LOW,
                rule="probe_overdue",
                message=f"Server '{config.id}' has not answered a probe for {int(silent_for)}s",
                timestamp=now,
                details={"seconds": round(silent_for, 1)},
            ))

    return findings


def evaluate_systemic(findings: List[HealthFinding], now: datetime,
                      rules: HealthRules) -> Optional[HealthFinding]:
    degraded = sorted({
        f.server_id for f in findings
        if f.server_id is not None and f.severity.rank >= Severity.HIGH.rank
    })
    if len(degraded) < rules.systemic_min_servers:
        return None
    return HealthFinding(
        server_id=None,
        severity=Severity.CRITICAL,
        rule="systemic_degradation",
        message=f"{len(degraded)} servers are degraded at the same time",
        timestamp=now,
        details={"servers": degraded},
    )


class HealthMonitorService:
    """Background service that periodically checks tool server health."""

    def __init__(
        self,
        registry,
        connections: ConnectionManager,
        metrics: MetricsTracker,
        store: OrchestratorStore,
        event_bus: Optional[EventBus] = None,
        rules: Optional[HealthRules] = None,
        reconnect: Optional[ReconnectPolicy] = None,
        interval_seconds: float = 60.0,
        resource_cache: Optional[ResourceCache] = None,
    ):
        self.registry = registry
        self.connections = connections
        self.metrics = metrics
        self.store = store
        self.event_bus = event_bus
        self.rules = rules or HealthRules()
        self.reconnect = reconnect or ReconnectPolicy()
        self.interval_seconds = interval_seconds
        self.resource_cache = resource_cache

        self.is_running = False
        self.monitor_task: Optional[asyncio.Task] = None
        self._open_findings: List[HealthFinding] = []
        self._reconnect_attempts: Dict[str, int] = {}
        self._reconnect_tasks: Dict[str, asyncio.Task] = {}

    async def start(self):
        """Start the background health monitoring."""
        if self.is_running:
            logger.warning("Health monitor already running")
            return

        self.is_running = True
        self.monitor_task = asyncio.create_task(self._monitor_loop())
        logger.info("Health monitor service started", extra={"data": {"interval_seconds": self.interval_seconds}})

    async def stop(self):
        """Stop monitoring and cancel pending reconnects."""
        self.is_running = False

        tasks = list(self._reconnect_tasks.values())
        if self.monitor_task:
            tasks.append(self.monitor_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._reconnect_tasks.clear()
        self.monitor_task = None

        logger.info("Health monitor service stopped")

    async def _monitor_loop(self):
        logger.info("Starting health monitoring loop")

        try:
            while self.is_running:
                try:
                    await self.run_cycle()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Error in monitoring loop: {e}", exc_info=True)
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("Health monitoring loop cancelled")

    async def run_cycle(self) -> List[HealthFinding]:
        """One monitoring round: sweep, probe live servers, schedule reconnects, drop stale cache entries."""
        findings = await self.sweep()
        await self.probe_connected()
        self.schedule_reconnects()
        if self.resource_cache is not None:
            self.resource_cache.clean_expired()
        return findings

    def open_findings(self) -> List[HealthFinding]:
        """Findings from the latest sweep, most severe first."""
        return sorted(self._open_findings, key=lambda f: (-f.severity.rank, f.server_id or ""))

    async def sweep(self, now: Optional[datetime] = None) -> List[HealthFinding]:
        """Evaluate every server from current snapshots and replace the open finding set."""
        now = now or utcnow()
        findings: List[HealthFinding] = []

        for config in self.registry.list():
            try:
                state = self.connections.state(config.id)
            except ServerNotFoundError:
                # Removed between listing and lookup
                continue
            stats = self.metrics.window_stats(config.id, self.rules.window_seconds, now)
            findings.extend(evaluate_server(config, state, stats, now, self.rules))

        systemic = evaluate_systemic(findings, now, self.rules)
        if systemic is not None:
            findings.append(systemic)

        self._open_findings = findings
        if findings:
            logger.warning(
                f"Health sweep produced {len(findings)} findings",
                extra={"data": {"rules": sorted({f.rule for f in findings})}}
            )
        else:
            logger.debug("Health sweep clean")

        for finding in findings:
            await self._record(finding)
        return findings

    async def _record(self, finding: HealthFinding) -> None:
        try:
            await self.store.append_finding(finding)
        except Exception as e:
            logger.error(f"Failed to store health finding: {e}", exc_info=True)

        if self.event_bus is not None:
            try:
                await self.event_bus.publish(create_health_finding_event(finding))
            except Exception as e:
                logger.error(f"Failed to publish health finding: {e}", exc_info=True)

    async def probe_connected(self) -> Dict[str, bool]:
        server_ids = [s.server_id for s in self.connections.states() if s.status == ConnectionStatus.CONNECTED]
        results = await asyncio.gather(*(self.connections.probe(sid) for sid in server_ids),
                                       return_exceptions=True)
        outcome = {}
        for sid, result in zip(server_ids, results):
            if isinstance(result, BaseException):
                logger.error(f"Probe of {sid} raised: {result}")
                result = False
            outcome[sid] = result
        return outcome

    def schedule_reconnects(self) -> List[str]:
        """Schedule a delayed reconnect for servers in error, within the attempt budget."""
        if not self.reconnect.enabled:
            return []

        scheduled = []
        for config in self.registry.list():
            try:
                state = self.connections.state(config.id)
            except ServerNotFoundError:
                continue

            if state.status != ConnectionStatus.ERROR:
                if state.status != ConnectionStatus.CONNECTING:
                    # Episode over: connected, or stopped on purpose
                    self._reconnect_attempts.pop(config.id, None)
                continue
            if not config.enabled or config.id in self._reconnect_tasks:
                continue

            attempts = self._reconnect_attempts.get(config.id, 0)
            if attempts >= self.reconnect.max_attempts:
                continue

            self._reconnect_attempts[config.id] = attempts + 1
            task = asyncio.create_task(self._reconnect_later(config.id, attempts + 1))
            self._reconnect_tasks[config.id] = task
            task.add_done_callback(lambda _t, sid=config.id: self._reconnect_tasks.pop(sid, None))
            scheduled.append(config.id)
            logger.info(
                f"Scheduled reconnect of {config.id}",
                extra={"data": {"attempt": attempts + 1, "delay_seconds": self.reconnect.delay_seconds}}
            )
        return scheduled

    async def _reconnect_later(self, server_id: str, attempt: int) -> None:
        await asyncio.sleep(self.reconnect.delay_seconds)
        try:
            state = self.connections.state(server_id)
            if state.status != ConnectionStatus.ERROR:
                return
            result = await self.connections.connect(server_id)
            logger.info(
                f"Reconnect attempt {attempt} for {server_id}: {result.status.value}",
                extra={"data": {"server_id": server_id, "last_error": result.last_error}}
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Reconnect of {server_id} failed: {e}", exc_info=True)
