"""
Tool invoker: resolve a tool through the catalog, call it, classify the outcome.

invoke() never raises for tool failures. Every call produces exactly one
InvocationRecord, which is appended to the store, folded into the server's
metrics (catalog misses excepted) and published as a tool_invoked event.
Resource reads go through the optional resource cache and are not logged
as invocations.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from mcp_orchestrator.database.store import OrchestratorStore
from mcp_orchestrator.models.errors import (
    JsonRpcError,
    RequestTimeoutError,
    ToolExecutionError,
)
from mcp_orchestrator.models.events import create_tool_invoked_event
from mcp_orchestrator.models.mcp import (
    ErrorKind,
    InvocationFailure,
    InvocationRecord,
    InvocationRequest,
    InvocationResult,
    InvocationStats,
    ResourceReadResult,
    ServerInvocationStats,
)
from mcp_orchestrator.services.connection_manager import ConnectionManager
from mcp_orchestrator.services.metrics import MetricsTracker
from mcp_orchestrator.services.resource_cache import ResourceCache
from mcp_orchestrator.services.tool_catalog import ToolCatalog
from mcp_orchestrator.utils.event_bus import EventBus
from mcp_orchestrator.utils.logging import get_logger, log_tool_invocation

logger = get_logger("invoker")


def classify_error(error: Exception) -> Tuple[ErrorKind, bool]:
    """Map an exception from a tool call to (error kind, outcome known)."""
    if isinstance(error, RequestTimeoutError):
        # The server may still have executed the call
        return ErrorKind.TIMEOUT, False
    if isinstance(error, (ToolExecutionError, JsonRpcError)):
        return ErrorKind.TOOL, True
    return ErrorKind.TRANSPORT, True


class Invoker:

    def __init__(
        self,
        catalog: ToolCatalog,
        connections: ConnectionManager,
        metrics: MetricsTracker,
        store: OrchestratorStore,
        event_bus: Optional[EventBus] = None,
        resource_cache: Optional[ResourceCache] = None,
    ):
        self.catalog = catalog
        self.connections = connections
        self.metrics = metrics
        self.store = store
        self.event_bus = event_bus
        self.resource_cache = resource_cache

    async def invoke(self, tool_name: str, arguments: Optional[Dict[str, Any]] = None,
                     timeout: Optional[float] = None) -> InvocationResult:
        """
        Invoke a tool by exposed, qualified or unqualified name.

        Args:
            tool_name: Name as shown in the catalog
            arguments: Tool arguments (JSON object)
            timeout: Per-call deadline in seconds, overriding the server default

        Returns:
            InvocationResult with success=True and the MCP result as content,
            or success=False and an error of kind not_found, timeout, transport or tool
        """
        arguments = arguments or {}
        started = time.perf_counter()

        descriptor = self.catalog.resolve(tool_name)
        if descriptor is None:
            record = InvocationRecord(
                tool_name=tool_name,
                arguments=arguments,
                server_id=None,
                success=False,
                latency_ms=0.0,
                error_kind=ErrorKind.NOT_FOUND,
                error_message=f"Tool '{tool_name}' not found on any connected server",
            )
            await self._finish(record, track_metrics=False)
            return InvocationResult.from_record(record)

        content: Any = None
        try:
            content = await self.connections.call_tool(
                descriptor.owner_server_id, descriptor.tool_name, arguments, timeout=timeout
            )
            record = InvocationRecord(
                tool_name=descriptor.name,
                arguments=arguments,
                server_id=descriptor.owner_server_id,
                success=True,
                latency_ms=self._elapsed_ms(started),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            kind, outcome_known = classify_error(e)
            if isinstance(e, ToolExecutionError):
                content = e.content
            record = InvocationRecord(
                tool_name=descriptor.name,
                arguments=arguments,
                server_id=descriptor.owner_server_id,
                success=False,
                latency_ms=self._elapsed_ms(started),
                error_kind=kind,
                error_message=str(e) or type(e).__name__,
                outcome_known=outcome_known,
            )

        await self._finish(record)
        return InvocationResult.from_record(record, content)

    async def invoke_batch(self, requests: Sequence[InvocationRequest]) -> List[InvocationResult]:
        """Run several invocations concurrently; results come back in input order."""
        outcomes = await asyncio.gather(
            *(self.invoke(r.tool_name, r.arguments, r.timeout_seconds) for r in requests),
            return_exceptions=True,
        )

        results: List[InvocationResult] = []
        for request, outcome in zip(requests, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Batch invocation of {request.tool_name} raised: {outcome}")
                outcome = InvocationResult(
                    tool_name=request.tool_name,
                    success=False,
                    error=InvocationFailure(kind=ErrorKind.TRANSPORT, message=str(outcome)),
                )
            results.append(outcome)
        return results

    async def read_resource(self, uri: str, timeout: Optional[float] = None,
                            use_cache: bool = True) -> ResourceReadResult:
        """
        Read a resource from the server that owns it in the current catalog.

        A cached copy from the same owner is returned (with cached=True) while
        its TTL lasts; use_cache=False forces a fresh read, which then replaces
        the cached copy. Failed reads are never cached.
        """
        descriptor = self.catalog.resolve_resource(uri)
        if descriptor is None:
            return ResourceReadResult(
                uri=uri,
                success=False,
                error=InvocationFailure(kind=ErrorKind.NOT_FOUND, message=f"Resource '{uri}' not found"),
            )

        cache = self.resource_cache
        if cache is not None and use_cache:
            cached = cache.get(descriptor.owner_server_id, uri)
            if cached is not None:
                return cached

        result = await self._read_from_server(descriptor.owner_server_id, uri, timeout)
        if cache is not None and result.success:
            cache.put(result)
        return result

    async def _read_from_server(self, server_id: str, uri: str, timeout: Optional[float]) -> ResourceReadResult:
        try:
            contents = await self.connections.read_resource(server_id, uri, timeout=timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            kind, _ = classify_error(e)
            logger.warning(f"Reading resource {uri} failed: {e}")
            return ResourceReadResult(
                uri=uri,
                server_id=server_id,
                success=False,
                error=InvocationFailure(kind=kind, message=str(e) or type(e).__name__),
            )
        return ResourceReadResult(uri=uri, server_id=server_id, success=True, contents=contents)

    async def read_resources(self, uris: Sequence[str], use_cache: bool = True) -> List[ResourceReadResult]:
        """Read several resources concurrently; results come back in input order."""
        outcomes = await asyncio.gather(
            *(self.read_resource(uri, use_cache=use_cache) for uri in uris),
            return_exceptions=True,
        )

        results: List[ResourceReadResult] = []
        for uri, outcome in zip(uris, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Batch read of {uri} raised: {outcome}")
                outcome = ResourceReadResult(
                    uri=uri,
                    success=False,
                    error=InvocationFailure(kind=ErrorKind.TRANSPORT, message=str(outcome)),
                )
            results.append(outcome)
        return results

    async def invocation_history(self, server_id: Optional[str] = None, since: Optional[datetime] = None,
                                 limit: int = 100) -> List[InvocationRecord]:
        """Most recent invocation records from the persistent log, newest first."""
        return await self.store.recent_invocations(server_id=server_id, since=since, limit=limit)

    async def invocation_stats(self, server_id: Optional[str] = None, since: Optional[datetime] = None,
                               limit: int = 1000) -> InvocationStats:
        """
        Success and latency totals over the persisted invocation log.

        Unlike the in-memory metrics these survive a restart. Catalog misses
        (no owning server) count toward the totals but not toward by_server.
        """
        records = await self.invocation_history(server_id=server_id, since=since, limit=limit)
        if not records:
            return InvocationStats(since=since)

        successes = sum(1 for r in records if r.success)
        by_server: Dict[str, ServerInvocationStats] = {}
        for record in records:
            if record.server_id is None:
                continue
            current = by_server.get(record.server_id) or ServerInvocationStats(server_id=record.server_id)
            invocations = current.invocations + 1
            ok = current.successes + (1 if record.success else 0)
            by_server[record.server_id] = ServerInvocationStats(
                server_id=record.server_id,
                invocations=invocations,
                successes=ok,
                success_rate=round(ok / invocations, 4),
            )

        return InvocationStats(
            total_invocations=len(records),
            successful_invocations=successes,
            failed_invocations=len(records) - successes,
            success_rate=round(successes / len(records), 4),
            average_latency_ms=round(sum(r.latency_ms for r in records) / len(records), 3),
            by_server=by_server,
            since=since,
        )

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 3)

    async def _finish(self, record: InvocationRecord, track_metrics: bool = True) -> None:
        log_tool_invocation(
            record.tool_name, record.server_id, record.success, record.latency_ms,
            error_kind=record.error_kind.value if record.error_kind else None,
            error=record.error_message,
            logger=logger,
        )
        if track_metrics:
            self.metrics.record(record)

        try:
            await self.store.append_invocation(record)
        except Exception as e:
            logger.error(f"Failed to store invocation record {record.id}: {e}", exc_info=True)

        if self.event_bus is not None:
            try:
                await self.event_bus.publish(create_tool_invoked_event(record))
            except Exception as e:
                logger.error(f"Failed to publish tool_invoked event: {e}", exc_info=True)
