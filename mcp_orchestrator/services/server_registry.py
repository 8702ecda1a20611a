"""
Server registry: the authoritative set of tool server configurations.

Configurations are validated on the way in, persisted through the store and
mirrored in memory. Every mutation is audited and announced with a
config_changed event. The registry keeps the connection manager in step:
new servers are registered with it, disabling an active server disconnects
it, and forced deletes disconnect before removal.
"""

from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from mcp_orchestrator.database.store import OrchestratorStore
from mcp_orchestrator.models.errors import ConfigError, ServerActiveError, ServerNotFoundError
from mcp_orchestrator.models.events import create_config_changed_event
from mcp_orchestrator.models.mcp import AuditEntry, ServerConfig, ServerConfigPatch, utcnow
from mcp_orchestrator.services.connection_manager import ConnectionManager
from mcp_orchestrator.utils.event_bus import EventBus
from mcp_orchestrator.utils.logging import get_logger, log_config_change

logger = get_logger("server-registry")


def _validation_fields(error: ValidationError) -> List[str]:
    return [".".join(str(part) for part in e["loc"]) for e in error.errors()]


class ServerRegistry:

    def __init__(
        self,
        store: OrchestratorStore,
        connections: ConnectionManager,
        event_bus: Optional[EventBus] = None,
        max_servers: int = 50,
    ):
        self.store = store
        self.connections = connections
        self.event_bus = event_bus
        self.max_servers = max_servers
        self._servers: Dict[str, ServerConfig] = {}

    async def load(self) -> List[ServerConfig]:
        """Read persisted configurations and register them, all disconnected."""
        configs = await self.store.list_servers()
        for config in configs:
            self._servers[config.id] = config
            if not self.connections.has_server(config.id):
                self.connections.register(config)
        logger.info(f"Loaded {len(configs)} MCP server configurations")
        return self.list()

    def list(self) -> List[ServerConfig]:
        """All configurations, highest priority first."""
        return sorted(self._servers.values(), key=lambda c: (-c.priority, c.id))

    def get(self, server_id: str) -> ServerConfig:
        config = self._servers.get(server_id)
        if config is None:
            raise ServerNotFoundError(server_id)
        return config

    @staticmethod
    def validate(data: Any) -> ServerConfig:
        """
        Build a ServerConfig from raw input, rejecting anything incomplete.

        Raises:
            ConfigError: field types are wrong or the transport's required fields are missing
        """
        if isinstance(data, ServerConfig):
            data = data.model_dump()
        try:
            config = ServerConfig.model_validate(data)
        except ValidationError as e:
            server_id = data.get("id") if isinstance(data, dict) else None
            raise ConfigError(f"Invalid server configuration: {e.error_count()} error(s)",
                              server_id=server_id, fields=_validation_fields(e)) from e

        missing = config.missing_transport_fields()
        if missing:
            raise ConfigError(
                f"Server '{config.id}' ({config.transport_kind.value}) is missing: {', '.join(missing)}",
                server_id=config.id,
                fields=missing,
            )
        return config

    async def create(self, data: Any, source: str = "api") -> ServerConfig:
        config = self.validate(data)
        if config.id in self._servers:
            raise ConfigError(f"Server '{config.id}' already exists", server_id=config.id, fields=["id"])
        if len(self._servers) >= self.max_servers:
            raise ConfigError(f"Server limit of {self.max_servers} reached", server_id=config.id)

        now = utcnow()
        config = config.model_copy(update={"created_at": now, "updated_at": now})
        await self.store.save_server(config)
        self._servers[config.id] = config
        self.connections.register(config)

        await self._audit(config.id, "created", config.model_dump(mode="json"), source)
        return config

    async def update(self, server_id: str, patch: ServerConfigPatch, source: str = "api") -> ServerConfig:
        """
        Apply a partial update.

        Raises:
            ServerNotFoundError: unknown server id
            ConfigError: invalid result, or a transport change while the connection is active
        """
        current = self.get(server_id)
        changes = patch.model_dump(exclude_unset=True)
        if not changes:
            return current

        if "transport_kind" in changes and changes["transport_kind"] != current.transport_kind \
                and self.connections.is_active(server_id):
            raise ConfigError(
                f"Cannot change transport of '{server_id}' while it is connected",
                server_id=server_id,
                fields=["transport_kind"],
            )

        merged = current.model_dump()
        merged.update(changes)
        merged["id"] = server_id
        merged["created_at"] = current.created_at
        updated = self.validate(merged).model_copy(update={"updated_at": utcnow()})

        await self.store.save_server(updated)
        self._servers[server_id] = updated

        if current.enabled and not updated.enabled and self.connections.is_active(server_id):
            logger.info(f"Server {server_id} disabled while active, disconnecting")
            await self.connections.disconnect(server_id)
        await self.connections.apply_config(updated)

        await self._audit(server_id, "updated", patch.model_dump(mode="json", exclude_unset=True), source)
        return updated

    async def delete(self, server_id: str, force: bool = True, source: str = "api") -> None:
        """
        Remove a server.

        Raises:
            ServerNotFoundError: unknown server id
            ServerActiveError: the server is active and force is False
        """
        config = self.get(server_id)
        if self.connections.is_active(server_id):
            if not force:
                raise ServerActiveError(server_id)
            logger.info(f"Disconnecting {server_id} before deletion")
        # Also clears a lingering error state
        await self.connections.disconnect(server_id)

        await self.store.delete_server(server_id)
        self.connections.unregister(server_id)
        del self._servers[server_id]

        await self._audit(server_id, "deleted", {"name": config.name}, source)

    async def _audit(self, server_id: str, operation: str, changes: Dict[str, Any], source: str) -> None:
        log_config_change(operation, "mcp_server", {"server_id": server_id, "source": source}, logger=logger)

        try:
            await self.store.append_audit(AuditEntry(
                server_id=server_id, operation=operation, changes=changes, source=source
            ))
        except Exception as e:
            logger.error(f"Failed to write audit entry for {server_id}: {e}", exc_info=True)

        if self.event_bus is not None:
            try:
                await self.event_bus.publish(create_config_changed_event(server_id, operation, changes))
            except Exception as e:
                logger.error(f"Failed to publish config_changed event: {e}", exc_info=True)
