"""
Connection manager: owns every server's runtime state and transport.

State machine per server:

    disabled <-> disconnected -> connecting -> connected
                      ^              |             |
                      |              v             v
                      +---------- error <----------+

connect() never raises for connection failures; the failure lands in the
returned state as status=error with last_error set. Each server has its own
lock, so connecting one server never waits on another. The tool catalog is
rebuilt after every transition, from connected servers only.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from mcp_orchestrator import __version__
from mcp_orchestrator.database.store import OrchestratorStore
from mcp_orchestrator.models.errors import (
    HandshakeTimeoutError,
    JsonRpcError,
    RequestTimeoutError,
    ServerActiveError,
    ServerConnectionError,
    ServerDisabledError,
    ServerNotConnectedError,
    ServerNotFoundError,
    ToolExecutionError,
    TransportError,
)
from mcp_orchestrator.models.events import create_catalog_changed_event, create_connection_event
from mcp_orchestrator.models.mcp import (
    ACTIVE_STATUSES,
    ConnectionEvent,
    ConnectionPoolStats,
    ConnectionSettings,
    ConnectionState,
    ConnectionStatus,
    ServerConfig,
    TransportKind,
    utcnow,
)
from mcp_orchestrator.services.tool_catalog import CatalogSource, ToolCatalog
from mcp_orchestrator.services.transport import PROTOCOL_VERSION, Transport, create_transport
from mcp_orchestrator.utils.event_bus import EventBus
from mcp_orchestrator.utils.logging import get_logger, log_connection_event

logger = get_logger("connection-manager")

TransportFactory = Callable[[ServerConfig], Transport]

# Upper bound on paginated list calls during discovery
MAX_DISCOVERY_PAGES = 50


@dataclass
class _ServerSession:
    config: ServerConfig
    state: ConnectionState
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    transport: Optional[Transport] = None
    active_config: Optional[ServerConfig] = None
    tools: List[Dict[str, Any]] = field(default_factory=list)
    resources: List[Dict[str, Any]] = field(default_factory=list)
    prompts: List[Dict[str, Any]] = field(default_factory=list)

    def clear_discovery(self) -> None:
        self.tools = []
        self.resources = []
        self.prompts = []


def _result_text(result: Dict[str, Any]) -> str:
    parts = []
    for item in result.get("content") or []:
        if isinstance(item, dict) and item.get("type") == "text":
            parts.append(str(item.get("text", "")))
    return "\n".join(parts)


class ConnectionManager:
    """Connects, disconnects and supervises tool servers."""

    def __init__(
        self,
        catalog: ToolCatalog,
        store: OrchestratorStore,
        event_bus: Optional[EventBus] = None,
        settings: Optional[ConnectionSettings] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        self.catalog = catalog
        self.store = store
        self.event_bus = event_bus
        self.settings = settings or ConnectionSettings()
        self._transport_factory = transport_factory or create_transport
        self._sessions: Dict[str, _ServerSession] = {}
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Registration (called by the registry)
    # ------------------------------------------------------------------

    def register(self, config: ServerConfig) -> ConnectionState:
        status = ConnectionStatus.DISCONNECTED if config.enabled else ConnectionStatus.DISABLED
        session = _ServerSession(config=config, state=ConnectionState(server_id=config.id, status=status))
        self._sessions[config.id] = session
        return session.state.model_copy()

    async def apply_config(self, config: ServerConfig) -> ConnectionState:
        """Store a new config snapshot. A live connection keeps the config it connected with."""
        session = self._session(config.id)
        session.config = config
        status = session.state.status
        if status not in ACTIVE_STATUSES and session.transport is None:
            if not config.enabled and status != ConnectionStatus.DISABLED:
                await self._transition(session, ConnectionStatus.DISABLED, event_type="disabled")
            elif config.enabled and status == ConnectionStatus.DISABLED:
                await self._transition(session, ConnectionStatus.DISCONNECTED, event_type="enabled")
        return session.state.model_copy()

    def unregister(self, server_id: str) -> None:
        session = self._session(server_id)
        if session.transport is not None or session.state.status in ACTIVE_STATUSES:
            raise ServerActiveError(server_id)
        del self._sessions[server_id]

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _session(self, server_id: str) -> _ServerSession:
        session = self._sessions.get(server_id)
        if session is None:
            raise ServerNotFoundError(server_id)
        return session

    def has_server(self, server_id: str) -> bool:
        return server_id in self._sessions

    def state(self, server_id: str) -> ConnectionState:
        return self._session(server_id).state.model_copy()

    def states(self) -> List[ConnectionState]:
        return [s.state.model_copy() for s in self._sessions.values()]

    def is_active(self, server_id: str) -> bool:
        session = self._session(server_id)
        return session.state.status in ACTIVE_STATUSES or session.transport is not None

    def prompts(self, server_id: str) -> List[Dict[str, Any]]:
        return list(self._session(server_id).prompts)

    def pool_stats(self) -> ConnectionPoolStats:
        stats = ConnectionPoolStats(total_servers=len(self._sessions))
        for session in self._sessions.values():
            status = session.state.status
            if status == ConnectionStatus.CONNECTED:
                stats.connected += 1
            elif status == ConnectionStatus.CONNECTING:
                stats.connecting += 1
            elif status == ConnectionStatus.ERROR:
                stats.errored += 1
            elif status == ConnectionStatus.DISABLED:
                stats.disabled += 1
            else:
                stats.disconnected += 1
        return stats

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, server_id: str) -> ConnectionState:
        """
        Bring a server to connected.

        Returns the resulting state: connected, or error with last_error set.

        Raises:
            ServerNotFoundError: unknown server id
            ServerDisabledError: the server's configuration is disabled
        """
        session = self._session(server_id)
        async with session.lock:
            if session.state.status == ConnectionStatus.CONNECTED and session.transport is not None \
                    and session.transport.is_alive():
                return session.state.model_copy()
            if not session.config.enabled:
                raise ServerDisabledError(server_id)

            if session.transport is not None:
                # Left over from an unexpected exit; make sure the old process is reaped
                await self._release(session, session.transport)

            config = session.config
            await self._transition(session, ConnectionStatus.CONNECTING, event_type="connecting",
                                   last_error=None)

            transport = self._transport_factory(config)
            transport.on_exit(self._on_transport_exit)
            session.transport = transport
            session.active_config = config
            started = utcnow()

            try:
                await transport.start()
                if config.transport_kind == TransportKind.PROCESS and self.settings.process_startup_delay_seconds > 0:
                    await asyncio.sleep(self.settings.process_startup_delay_seconds)
                init_result = await self._handshake(transport, config)
                tools, resources, prompts = await self._discover(transport, config, init_result)
            except asyncio.CancelledError:
                await self._release(session, transport)
                self._apply_state(session, ConnectionStatus.DISCONNECTED, last_error="connect cancelled")
                raise
            except Exception as e:
                message = self._describe_failure(e, transport)
                logger.error(
                    f"Failed to connect to MCP server {server_id}: {message}",
                    extra={"data": {"server_id": server_id, "error_type": type(e).__name__}}
                )
                await self._release(session, transport)
                await self._transition(session, ConnectionStatus.ERROR, event_type="error",
                                       detail=message, last_error=message)
                return session.state.model_copy()

            session.tools, session.resources, session.prompts = tools, resources, prompts
            now = utcnow()
            await self._transition(
                session,
                ConnectionStatus.CONNECTED,
                event_type="connected",
                metadata={
                    "connect_ms": round((now - started).total_seconds() * 1000, 2),
                    "tools_count": len(tools),
                },
                last_error=None,
                connected_at=now,
                last_probe_at=now,
                tools_count=len(tools),
                resources_count=len(resources),
                prompts_count=len(prompts),
                server_info=init_result.get("serverInfo") or {},
                protocol_version=init_result.get("protocolVersion"),
            )
            await self._rebuild_catalog(f"{server_id} connected")
            return session.state.model_copy()

    async def disconnect(self, server_id: str) -> ConnectionState:
        """Close the server's transport. Idempotent; ends disconnected (or disabled)."""
        session = self._session(server_id)
        async with session.lock:
            target = ConnectionStatus.DISCONNECTED if session.config.enabled else ConnectionStatus.DISABLED
            transport = session.transport
            if transport is None and session.state.status in (ConnectionStatus.DISCONNECTED,
                                                              ConnectionStatus.DISABLED):
                if session.state.status != target:
                    await self._transition(session, target, event_type=target.value)
                return session.state.model_copy()

            had_catalog_entries = bool(session.tools or session.resources)
            try:
                if transport is not None:
                    await transport.stop(self.settings.disconnect_grace_seconds)
            except Exception as e:
                logger.error(f"Error stopping transport for {server_id}: {e}", exc_info=True)
            finally:
                session.transport = None
                session.active_config = None
                session.clear_discovery()
                await self._transition(
                    session, target, event_type="disconnected",
                    last_error=None, connected_at=None,
                    tools_count=0, resources_count=0, prompts_count=0,
                )
            if had_catalog_entries:
                await self._rebuild_catalog(f"{server_id} disconnected")
            return session.state.model_copy()

    async def connect_all_enabled(self) -> Dict[str, ConnectionState]:
        """Connect every enabled server concurrently."""
        server_ids = [
            sid for sid, s in self._sessions.items()
            if s.config.enabled and s.state.status != ConnectionStatus.CONNECTED
        ]
        results = await asyncio.gather(*(self.connect(sid) for sid in server_ids), return_exceptions=True)

        states: Dict[str, ConnectionState] = {}
        for sid, result in zip(server_ids, results):
            if isinstance(result, BaseException):
                logger.error(f"Connect of {sid} raised: {result}")
                continue
            states[sid] = result

        connected = sum(1 for s in states.values() if s.status == ConnectionStatus.CONNECTED)
        logger.info(f"Connected {connected} of {len(server_ids)} enabled MCP servers")
        return states

    async def disconnect_all(self) -> None:
        await asyncio.gather(*(self.disconnect(sid) for sid in list(self._sessions)), return_exceptions=True)
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Requests on a live connection
    # ------------------------------------------------------------------

    def _live_transport(self, server_id: str) -> Tuple[_ServerSession, Transport]:
        session = self._session(server_id)
        transport = session.transport
        if session.state.status != ConnectionStatus.CONNECTED or transport is None or not transport.is_alive():
            raise ServerNotConnectedError(server_id)
        return session, transport

    def _request_timeout(self, session: _ServerSession, timeout: Optional[float]) -> float:
        if timeout is not None:
            return timeout
        config = session.active_config or session.config
        return config.request_timeout_seconds or self.settings.request_timeout_seconds

    async def call_tool(self, server_id: str, tool_name: str, arguments: Dict[str, Any],
                        timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Run tools/call on a connected server and return the MCP result.

        Raises:
            ServerNotConnectedError, TransportError, RequestTimeoutError,
            JsonRpcError, ToolExecutionError (result flagged isError)
        """
        session, transport = self._live_transport(server_id)
        result = await transport.request(
            "tools/call",
            {"name": tool_name, "arguments": arguments},
            timeout=self._request_timeout(session, timeout),
        )
        if not isinstance(result, dict):
            return {"content": result}
        if result.get("isError"):
            raise ToolExecutionError(
                _result_text(result) or f"Tool '{tool_name}' reported an error",
                content=result.get("content"),
            )
        return result

    async def read_resource(self, server_id: str, uri: str,
                            timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        session, transport = self._live_transport(server_id)
        result = await transport.request(
            "resources/read", {"uri": uri}, timeout=self._request_timeout(session, timeout)
        )
        return list((result or {}).get("contents") or [])

    async def probe(self, server_id: str) -> bool:
        """Ping a connected server. Records last_probe_at on success."""
        session = self._session(server_id)
        transport = session.transport
        if session.state.status != ConnectionStatus.CONNECTED or transport is None:
            return False

        try:
            await transport.request("ping", {}, timeout=self.settings.probe_timeout_seconds)
        except JsonRpcError:
            # Answered, just without ping support
            pass
        except (RequestTimeoutError, TransportError) as e:
            logger.warning(f"Probe of {server_id} failed: {e}", extra={"data": {"server_id": server_id}})
            await self._store_connection_event(ConnectionEvent(
                server_id=server_id, event_type="probe_failed", detail=str(e)
            ))
            return False

        if session.transport is transport:
            session.state = session.state.model_copy(update={"last_probe_at": utcnow()})
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _handshake(self, transport: Transport, config: ServerConfig) -> Dict[str, Any]:
        timeout = self.settings.handshake_timeout_seconds
        try:
            result = await transport.request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": "mcp-orchestrator", "version": __version__},
                },
                timeout=timeout,
            )
        except RequestTimeoutError as e:
            raise HandshakeTimeoutError(
                f"Handshake with '{config.id}' timed out after {timeout:g}s", config.id
            ) from e
        await transport.notify("notifications/initialized")
        return result if isinstance(result, dict) else {}

    async def _discover(
        self, transport: Transport, config: ServerConfig, init_result: Dict[str, Any]
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]], List[Dict[str, Any]]]:
        declared = init_result.get("capabilities") or {}
        wanted = config.capabilities

        tools: List[Dict[str, Any]] = []
        resources: List[Dict[str, Any]] = []
        prompts: List[Dict[str, Any]] = []

        if wanted.tools and "tools" in declared:
            tools = await self._list_all(transport, config, "tools/list", "tools", required=True)
        if wanted.resources and "resources" in declared:
            resources = await self._list_all(transport, config, "resources/list", "resources")
        if wanted.prompts and "prompts" in declared:
            prompts = await self._list_all(transport, config, "prompts/list", "prompts")

        logger.info(
            f"Discovered capabilities of {config.id}",
            extra={"data": {
                "server_id": config.id,
                "tools": len(tools),
                "resources": len(resources),
                "prompts": len(prompts),
            }}
        )
        return tools, resources, prompts

    async def _list_all(self, transport: Transport, config: ServerConfig, method: str, key: str,
                        required: bool = False) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        for _ in range(MAX_DISCOVERY_PAGES):
            params = {"cursor": cursor} if cursor else {}
            try:
                result = await transport.request(method, params, timeout=self.settings.discovery_timeout_seconds)
            except RequestTimeoutError as e:
                raise ServerConnectionError(f"Discovery ({method}) on '{config.id}' timed out", config.id) from e
            except JsonRpcError as e:
                if required:
                    raise
                logger.warning(f"{method} failed on {config.id}: {e}")
                return items
            result = result or {}
            items.extend(i for i in result.get(key) or [] if isinstance(i, dict))
            cursor = result.get("nextCursor")
            if not cursor:
                break
        return items

    @staticmethod
    def _describe_failure(error: Exception, transport: Transport) -> str:
        message = str(error) or type(error).__name__
        if transport.exit_reason and transport.exit_reason not in message \
                and transport.exit_reason != "transport stopped":
            message = f"{message} ({transport.exit_reason})"
        return message

    async def _release(self, session: _ServerSession, transport: Transport) -> None:
        """Stop a transport and detach it from the session, whatever happens."""
        try:
            await transport.stop(self.settings.disconnect_grace_seconds)
        except Exception as e:
            logger.error(f"Error releasing transport for {session.config.id}: {e}", exc_info=True)
        finally:
            if session.transport is transport:
                session.transport = None
                session.active_config = None
                session.clear_discovery()

    def _on_transport_exit(self, transport: Transport, reason: str) -> None:
        session = self._sessions.get(transport.server_id)
        if session is None or session.transport is not transport:
            return
        if session.state.status != ConnectionStatus.CONNECTED:
            # connect() is still running and will observe the failure itself
            return

        message = f"Connection lost: {reason}"
        session.clear_discovery()
        state = self._apply_state(
            session, ConnectionStatus.ERROR,
            last_error=message, tools_count=0, resources_count=0, prompts_count=0,
        )
        self.catalog.rebuild(self._catalog_sources(), reason=f"{transport.server_id} lost")
        self._spawn(self._finish_unexpected_exit(session, transport, state, message))

    async def _finish_unexpected_exit(self, session: _ServerSession, transport: Transport,
                                      state: ConnectionState, message: str) -> None:
        async with session.lock:
            if session.transport is transport:
                await self._release(session, transport)
        await self._record_transition(state, "process_exited", detail=message)
        await self._publish_catalog_changed(f"{state.server_id} lost")

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _apply_state(self, session: _ServerSession, status: ConnectionStatus, **changes: Any) -> ConnectionState:
        update = dict(changes)
        update["status"] = status
        if status != session.state.status:
            update["status_since"] = utcnow()
        session.state = session.state.model_copy(update=update)
        return session.state

    async def _transition(self, session: _ServerSession, status: ConnectionStatus, event_type: str,
                          detail: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None,
                          **changes: Any) -> ConnectionState:
        state = self._apply_state(session, status, **changes)
        await self._record_transition(state, event_type, detail=detail, metadata=metadata)
        return state

    async def _record_transition(self, state: ConnectionState, event_type: str,
                                 detail: Optional[str] = None,
                                 metadata: Optional[Dict[str, Any]] = None) -> None:
        log_connection_event(
            state.server_id, event_type,
            {"status": state.status.value, "detail": detail, **(metadata or {})},
            logger=logger,
        )
        await self._store_connection_event(ConnectionEvent(
            server_id=state.server_id,
            event_type=event_type,
            detail=detail,
            metadata={"status": state.status.value, **(metadata or {})},
        ))
        if state.status != ConnectionStatus.CONNECTING:
            await self._publish(create_connection_event(state))

    async def _store_connection_event(self, event: ConnectionEvent) -> None:
        try:
            await self.store.append_connection_event(event)
        except Exception as e:
            logger.error(f"Failed to store connection event for {event.server_id}: {e}", exc_info=True)

    async def _publish(self, event) -> None:
        if self.event_bus is None:
            return
        try:
            await self.event_bus.publish(event)
        except Exception as e:
            logger.error(f"Failed to publish {event.type} event: {e}", exc_info=True)

    def _catalog_sources(self) -> List[CatalogSource]:
        return [
            CatalogSource(
                server_id=sid,
                priority=(s.active_config or s.config).priority,
                tools=s.tools,
                resources=s.resources,
            )
            for sid, s in self._sessions.items()
            if s.state.status == ConnectionStatus.CONNECTED
        ]

    async def _rebuild_catalog(self, reason: str) -> None:
        self.catalog.rebuild(self._catalog_sources(), reason=reason)
        await self._publish_catalog_changed(reason)

    async def _publish_catalog_changed(self, reason: str) -> None:
        snapshot = self.catalog.snapshot
        await self._publish(create_catalog_changed_event(
            version=snapshot.version,
            tools_count=len(snapshot.tools),
            resources_count=len(snapshot.resources),
            reason=reason,
        ))
