"""
Orchestration context: builds and owns every orchestrator component.

One instance per application, created at startup and stored on
``app.state.orchestrator``; request handlers get it through a dependency.
"""

from typing import Optional

from mcp_orchestrator.config import Settings
from mcp_orchestrator.database.database import DatabaseManager
from mcp_orchestrator.database.store import OrchestratorStore, SqlOrchestratorStore
from mcp_orchestrator.models.mcp import (
    ConnectionStatus,
    ServerStatus,
    StatusReport,
    StatusTotals,
)
from mcp_orchestrator.services.chat_bridge import ChatBridge
from mcp_orchestrator.services.connection_manager import ConnectionManager, TransportFactory
from mcp_orchestrator.services.health_monitor import HealthMonitorService
from mcp_orchestrator.services.invoker import Invoker
from mcp_orchestrator.services.metrics import MetricsTracker
from mcp_orchestrator.services.resource_cache import ResourceCache
from mcp_orchestrator.services.server_registry import ServerRegistry
from mcp_orchestrator.services.tool_catalog import ToolCatalog
from mcp_orchestrator.utils.event_bus import EventBus
from mcp_orchestrator.utils.logging import get_logger, log_system_state_change

logger = get_logger("orchestrator")


class OrchestrationContext:

    def __init__(
        self,
        settings: Settings,
        store: OrchestratorStore,
        event_bus: Optional[EventBus] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        self.settings = settings
        self.store = store
        self.event_bus = event_bus or EventBus.from_settings(settings)

        self.catalog = ToolCatalog()
        self.metrics = MetricsTracker(window_size=settings.METRICS_WINDOW_SIZE)
        self.resource_cache = ResourceCache.from_settings(settings)
        self.connections = ConnectionManager(
            catalog=self.catalog,
            store=store,
            event_bus=self.event_bus,
            settings=settings.connection_settings(),
            transport_factory=transport_factory,
        )
        self.registry = ServerRegistry(
            store=store,
            connections=self.connections,
            event_bus=self.event_bus,
            max_servers=settings.MAX_SERVERS,
        )
        self.invoker = Invoker(
            catalog=self.catalog,
            connections=self.connections,
            metrics=self.metrics,
            store=store,
            event_bus=self.event_bus,
            resource_cache=self.resource_cache,
        )
        self.health_monitor = HealthMonitorService(
            registry=self.registry,
            connections=self.connections,
            metrics=self.metrics,
            store=store,
            event_bus=self.event_bus,
            rules=settings.health_rules(),
            reconnect=settings.reconnect_policy(),
            interval_seconds=settings.HEALTH_CHECK_INTERVAL_SECONDS,
            resource_cache=self.resource_cache,
        )
        self.chat_bridge = ChatBridge(catalog=self.catalog, invoker=self.invoker)
        self.started = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "OrchestrationContext":
        """Production wiring: SQL store on the configured database."""
        store = SqlOrchestratorStore(
            DatabaseManager(settings.SQLALCHEMY_DATABASE_URL, echo=settings.SQL_DEBUG),
            create_tables=settings.CREATE_TABLES,
        )
        return cls(settings, store)

    async def startup(self, start_monitor: bool = True) -> None:
        await self.store.initialize()
        configs = await self.registry.load()
        if self.settings.AUTO_CONNECT_ON_STARTUP:
            await self.connections.connect_all_enabled()
        if start_monitor:
            await self.health_monitor.start()
        self.started = True

        log_system_state_change(
            "mcp-orchestrator", "started",
            {"servers": len(configs), "tools": len(self.catalog.all_tools())},
            logger=logger,
        )

    async def shutdown(self) -> None:
        try:
            await self.health_monitor.stop()
            await self.connections.disconnect_all()
        finally:
            await self.event_bus.close()
            await self.store.close()
            self.started = False
            log_system_state_change("mcp-orchestrator", "stopped", {}, logger=logger)

    def status_report(self) -> StatusReport:
        """Totals, per-server state and metrics, and the open health findings."""
        servers = [
            ServerStatus(
                config=config,
                state=self.connections.state(config.id),
                metrics=self.metrics.aggregate(config.id),
            )
            for config in self.registry.list()
        ]
        totals = StatusTotals(
            servers_total=len(servers),
            servers_enabled=sum(1 for s in servers if s.config.enabled),
            servers_connected=sum(1 for s in servers if s.state.status == ConnectionStatus.CONNECTED),
            tools=len(self.catalog.all_tools()),
            resources=len(self.catalog.all_resources()),
        )
        return StatusReport(totals=totals, servers=servers, findings=self.health_monitor.open_findings())
