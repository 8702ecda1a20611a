"""
MCP Orchestrator API Endpoints

REST control surface for registering tool servers, driving their
connections, browsing the catalog, reading (cached) resources, invoking
tools, querying the invocation log and reading health status.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from mcp_orchestrator.models.errors import (
    ConfigError,
    OrchestratorError,
    ServerActiveError,
    ServerDisabledError,
    ServerNotFoundError,
)
from mcp_orchestrator.models.mcp import (
    BatchInvocationRequest,
    BatchResourceReadRequest,
    CacheClearResponse,
    ConnectionState,
    InvocationRecord,
    InvocationRequest,
    InvocationResult,
    InvocationStats,
    PromptsResponse,
    ResourceCacheStats,
    ResourceReadResult,
    ResourcesResponse,
    ServerConfig,
    ServerConfigPatch,
    ServerStatus,
    StatusReport,
    ToolsResponse,
)
from mcp_orchestrator.services.orchestrator import OrchestrationContext
from mcp_orchestrator.utils.logging import get_logger

logger = get_logger("mcp-api")
router = APIRouter(prefix="/api/mcp", tags=["MCP Servers"])


def get_orchestrator(request: Request) -> OrchestrationContext:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return orchestrator


def _to_http_error(error: OrchestratorError) -> HTTPException:
    if isinstance(error, ConfigError):
        return HTTPException(status_code=422, detail={"message": str(error), "fields": error.fields})
    if isinstance(error, ServerNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (ServerActiveError, ServerDisabledError)):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


def _server_status(orchestrator: OrchestrationContext, config: ServerConfig) -> ServerStatus:
    return ServerStatus(
        config=config,
        state=orchestrator.connections.state(config.id),
        metrics=orchestrator.metrics.aggregate(config.id),
    )


@router.get("/servers", response_model=List[ServerStatus])
async def list_servers(orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    """All registered servers with live connection state and metrics."""
    return [_server_status(orchestrator, config) for config in orchestrator.registry.list()]


@router.post("/servers", response_model=ServerStatus, status_code=201)
async def create_server(payload: Dict[str, Any],
                        orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    """
    Register a new server.

    The body is validated by the registry rather than by FastAPI so that every
    invalid definition is reported the same way (422 with the offending fields).
    """
    try:
        config = await orchestrator.registry.create(payload)
    except OrchestratorError as e:
        raise _to_http_error(e)
    logger.info(f"Registered MCP server {config.id}")
    return _server_status(orchestrator, config)


@router.get("/servers/{server_id}", response_model=ServerStatus)
async def get_server(server_id: str, orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    try:
        return _server_status(orchestrator, orchestrator.registry.get(server_id))
    except OrchestratorError as e:
        raise _to_http_error(e)


@router.patch("/servers/{server_id}", response_model=ServerStatus)
async def update_server(server_id: str, patch: ServerConfigPatch,
                        orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    try:
        config = await orchestrator.registry.update(server_id, patch)
    except OrchestratorError as e:
        raise _to_http_error(e)
    return _server_status(orchestrator, config)


@router.delete("/servers/{server_id}", status_code=204)
async def delete_server(server_id: str, force: bool = Query(True),
                        orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    try:
        await orchestrator.registry.delete(server_id, force=force)
    except OrchestratorError as e:
        raise _to_http_error(e)
    return Response(status_code=204)


@router.post("/servers/{server_id}/connect", response_model=ConnectionState)
async def connect_server(server_id: str, orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    """Connect a server. Connection failures are reported in the returned state, not as HTTP errors."""
    try:
        return await orchestrator.connections.connect(server_id)
    except OrchestratorError as e:
        raise _to_http_error(e)


@router.post("/servers/{server_id}/disconnect", response_model=ConnectionState)
async def disconnect_server(server_id: str, orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    try:
        return await orchestrator.connections.disconnect(server_id)
    except OrchestratorError as e:
        raise _to_http_error(e)


@router.get("/servers/{server_id}/prompts", response_model=PromptsResponse)
async def list_prompts(server_id: str, orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    """Prompts discovered on the server's last successful connection."""
    try:
        prompts = orchestrator.connections.prompts(server_id)
    except OrchestratorError as e:
        raise _to_http_error(e)
    return PromptsResponse(server_id=server_id, prompts=prompts, total_prompts=len(prompts))


@router.get("/tools", response_model=ToolsResponse)
async def list_tools(server_id: Optional[str] = None, search: Optional[str] = None,
                     orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    catalog = orchestrator.catalog
    tools = catalog.search(search) if search else catalog.all_tools(server_id)
    if search and server_id:
        tools = [t for t in tools if t.owner_server_id == server_id]
    return ToolsResponse(tools=tools, total_tools=len(tools))


@router.get("/resources", response_model=ResourcesResponse)
async def list_resources(server_id: Optional[str] = None,
                         mime_type: Optional[str] = None,
                         pattern: Optional[str] = Query(None, description="URI glob, e.g. file:///docs/*.md"),
                         search: Optional[str] = None,
                         orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    resources = orchestrator.catalog.find_resources(
        server_id=server_id, mime_type=mime_type, pattern=pattern, keyword=search
    )
    return ResourcesResponse(resources=resources, total_resources=len(resources))


@router.get("/resources/read", response_model=ResourceReadResult)
async def read_resource(uri: str, refresh: bool = Query(False),
                        orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    """Read one resource. refresh=true bypasses the cache and replaces the cached copy."""
    return await orchestrator.invoker.read_resource(uri, use_cache=not refresh)


@router.post("/resources/read-batch", response_model=List[ResourceReadResult])
async def read_resources(batch: BatchResourceReadRequest,
                         orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    return await orchestrator.invoker.read_resources(batch.uris, use_cache=batch.use_cache)


@router.get("/resources/cache", response_model=ResourceCacheStats)
async def resource_cache_stats(orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    return orchestrator.resource_cache.stats()


@router.delete("/resources/cache", response_model=CacheClearResponse)
async def clear_resource_cache(uri: Optional[str] = None, server_id: Optional[str] = None,
                               orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    """Drop cached resources, optionally only one URI and/or one server's entries."""
    removed = orchestrator.resource_cache.clear(uri=uri, server_id=server_id)
    logger.info(f"Cleared {removed} cached resources")
    return CacheClearResponse(removed=removed)


@router.post("/resources/cache/clean", response_model=CacheClearResponse)
async def clean_resource_cache(orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    return CacheClearResponse(removed=orchestrator.resource_cache.clean_expired())


@router.post("/tools/invoke", response_model=InvocationResult)
async def invoke_tool(request: InvocationRequest,
                      orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    """Invoke one tool. Tool failures come back as an unsuccessful result, not an HTTP error."""
    return await orchestrator.invoker.invoke(request.tool_name, request.arguments, request.timeout_seconds)


@router.post("/tools/invoke-batch", response_model=List[InvocationResult])
async def invoke_batch(batch: BatchInvocationRequest,
                       orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    return await orchestrator.invoker.invoke_batch(batch.requests)


@router.get("/invocations", response_model=List[InvocationRecord])
async def invocation_history(server_id: Optional[str] = None, since: Optional[datetime] = None,
                             limit: int = Query(100, ge=1, le=1000),
                             orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    """Persisted invocation records, newest first."""
    return await orchestrator.invoker.invocation_history(server_id=server_id, since=since, limit=limit)


@router.get("/invocations/stats", response_model=InvocationStats)
async def invocation_stats(server_id: Optional[str] = None, since: Optional[datetime] = None,
                           orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    return await orchestrator.invoker.invocation_stats(server_id=server_id, since=since)


@router.get("/engine/tools")
async def engine_tools(server_id: Optional[str] = None,
                       orchestrator: OrchestrationContext = Depends(get_orchestrator)) -> List[Dict[str, Any]]:
    """Function declarations for the conversational engine."""
    return orchestrator.chat_bridge.tools_for_engine(server_id)


@router.get("/status", response_model=StatusReport)
async def get_status(orchestrator: OrchestrationContext = Depends(get_orchestrator)):
    return orchestrator.status_report()
