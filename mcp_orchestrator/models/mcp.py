"""
MCP Orchestrator Domain Models

Pydantic V2 models for server configuration, runtime connection state,
catalog entries, invocation records, metrics and health findings.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransportKind(str, Enum):
    """How the orchestrator talks to a tool server."""
    PROCESS = "process"
    NETWORK = "network"


class ConnectionStatus(str, Enum):
    DISABLED = "disabled"
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
}


class ErrorKind(str, Enum):
    """Failure classification recorded on every failed invocation."""
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    TOOL = "tool"


ACTIVE_STATUSES = frozenset({ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED})


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ServerCapabilities(BaseModel):
    """Capabilities the orchestrator should discover on a server."""
    tools: bool = True
    resources: bool = True
    prompts: bool = False


class ServerConfig(BaseModel):
    """Identity and startup recipe for one tool server."""
    id: str = Field(..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
    name: str = Field(..., min_length=1, description="Human-readable server name")
    description: Optional[str] = Field(None, description="Server description")
    transport_kind: TransportKind = Field(..., description="process or network")

    # process transport
    command: Optional[str] = Field(None, description="Executable to launch (process transport)")
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)

    # network transport
    endpoint: Optional[str] = Field(None, description="JSON-RPC endpoint URL (network transport)")
    headers: Dict[str, str] = Field(default_factory=dict)

    capabilities: ServerCapabilities = Field(default_factory=ServerCapabilities)
    priority: int = Field(5, description="Higher priority wins unqualified tool lookups")
    tags: List[str] = Field(default_factory=list)
    enabled: bool = True
    request_timeout_seconds: Optional[float] = Field(None, gt=0)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("command", "endpoint")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    def missing_transport_fields(self) -> List[str]:
        """Names of fields the configured transport needs but does not have."""
        missing = []
        if self.transport_kind == TransportKind.PROCESS:
            if not self.command:
                missing.append("command")
        elif self.transport_kind == TransportKind.NETWORK:
            if not self.endpoint:
                missing.append("endpoint")
            elif not self.endpoint.startswith(("http://", "https://")):
                missing.append("endpoint (must be an http(s) URL)")
        return missing


class ServerConfigPatch(BaseModel):
    """Partial update for a server configuration. Unset fields are left alone."""
    name: Optional[str] = None
    description: Optional[str] = None
    transport_kind: Optional[TransportKind] = None
    command: Optional[str] = None
    args: Optional[List[str]] = None
    env: Optional[Dict[str, str]] = None
    endpoint: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    capabilities: Optional[ServerCapabilities] = None
    priority: Optional[int] = None
    tags: Optional[List[str]] = None
    enabled: Optional[bool] = None
    request_timeout_seconds: Optional[float] = None


class ConnectionSettings(BaseModel):
    """Timeouts used by the connection manager."""
    handshake_timeout_seconds: float = 10.0
    discovery_timeout_seconds: float = 10.0
    request_timeout_seconds: float = 30.0
    process_startup_delay_seconds: float = 0.5
    disconnect_grace_seconds: float = 5.0
    probe_timeout_seconds: float = 5.0


class HealthRules(BaseModel):
    """Threshold table for health findings."""
    window_seconds: float = 300.0
    min_window_requests: int = 1
    error_rate_threshold: float = 0.20
    latency_threshold_ms: float = 5000.0
    probe_overdue_seconds: float = 180.0
    stuck_after_seconds: float = 60.0
    systemic_min_servers: int = 2


class ReconnectPolicy(BaseModel):
    enabled: bool = True
    max_attempts: int = Field(1, ge=0)
    delay_seconds: float = Field(5.0, ge=0)


# ---------------------------------------------------------------------------
# Runtime state
# ---------------------------------------------------------------------------

class ConnectionState(BaseModel):
    """Per-server runtime status. Only the connection manager mutates it."""
    server_id: str
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    last_error: Optional[str] = None
    tools_count: int = 0
    resources_count: int = 0
    prompts_count: int = 0
    connected_at: Optional[datetime] = None
    status_since: datetime = Field(default_factory=utcnow)
    last_probe_at: Optional[datetime] = None
    server_info: Dict[str, Any] = Field(default_factory=dict)
    protocol_version: Optional[str] = None


class ToolDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., description="Exposed name; server-qualified when colliding")
    tool_name: str = Field(..., description="Name of the tool on its server")
    qualified_name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict, alias="inputSchema")
    owner_server_id: str
    owner_priority: int = 0
    collides: bool = False


class ResourceDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    uri: str
    name: str = ""
    description: str = ""
    mime_type: Optional[str] = None
    owner_server_id: str


class InvocationRecord(BaseModel):
    """Immutable log entry for one invocation attempt."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    server_id: Optional[str] = None
    success: bool
    latency_ms: float = Field(..., ge=0)
    timestamp: datetime = Field(default_factory=utcnow)
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    outcome_known: bool = True


class InvocationFailure(BaseModel):
    kind: ErrorKind
    message: str


class InvocationResult(BaseModel):
    """What a caller gets back from the invoker. Failures are values, not exceptions."""
    tool_name: str
    server_id: Optional[str] = None
    success: bool
    content: Any = None
    error: Optional[InvocationFailure] = None
    latency_ms: float = 0.0
    outcome_known: bool = True
    record_id: Optional[str] = None

    @classmethod
    def from_record(cls, record: InvocationRecord, content: Any = None) -> "InvocationResult":
        error = None
        if record.error_kind is not None:
            error = InvocationFailure(kind=record.error_kind, message=record.error_message or "")
        return cls(
            tool_name=record.tool_name,
            server_id=record.server_id,
            success=record.success,
            content=content,
            error=error,
            latency_ms=record.latency_ms,
            outcome_known=record.outcome_known,
            record_id=record.id,
        )

    def raise_for_error(self) -> "InvocationResult":
        """Raise ToolNotFoundError/InvocationError for a failed result, return self otherwise."""
        from mcp_orchestrator.models.errors import InvocationError, ToolNotFoundError

        if self.error is None:
            return self
        if self.error.kind == ErrorKind.NOT_FOUND:
            raise ToolNotFoundError(self.tool_name)
        raise InvocationError(self.error.message, kind=self.error.kind, tool_name=self.tool_name,
                              server_id=self.server_id)


class InvocationRequest(BaseModel):
    tool_name: str = Field(..., min_length=1)
    arguments: Dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = Field(None, gt=0)


class ResourceReadResult(BaseModel):
    uri: str
    server_id: Optional[str] = None
    success: bool
    contents: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[InvocationFailure] = None
    cached: bool = False


class ResourceCacheStats(BaseModel):
    total_entries: int = 0
    valid_entries: int = 0
    expired_entries: int = 0
    size_bytes: int = 0
    max_size_bytes: int = 0
    utilization: float = 0.0
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0


class MetricsAggregate(BaseModel):
    server_id: str
    total_requests: int = 0
    successes: int = 0
    failures: int = 0
    average_latency_ms: float = 0.0
    min_latency_ms: Optional[float] = None
    max_latency_ms: Optional[float] = None
    last_request_at: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.successes / self.total_requests


class WindowStats(BaseModel):
    """Trailing-window statistics for one server."""
    server_id: str
    total: int = 0
    failures: int = 0
    average_latency_ms: float = 0.0

    @property
    def error_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.failures / self.total


class HealthFinding(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    server_id: Optional[str] = Field(None, description="None for a systemic finding")
    severity: Severity
    rule: str
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    details: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Log entries owned by the persistence collaborator
# ---------------------------------------------------------------------------

class ConnectionEvent(BaseModel):
    server_id: str
    event_type: str  # "connected", "disconnected", "error", "process_exited", "probe_failed"
    timestamp: datetime = Field(default_factory=utcnow)
    detail: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AuditEntry(BaseModel):
    server_id: str
    operation: str  # "created", "updated", "deleted"
    timestamp: datetime = Field(default_factory=utcnow)
    changes: Dict[str, Any] = Field(default_factory=dict)
    source: str = "registry"


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------

class ServerStatus(BaseModel):
    """Server with live connection state and metrics."""
    config: ServerConfig
    state: ConnectionState
    metrics: MetricsAggregate


class ConnectionPoolStats(BaseModel):
    total_servers: int = 0
    connected: int = 0
    disconnected: int = 0
    connecting: int = 0
    errored: int = 0
    disabled: int = 0


class StatusTotals(BaseModel):
    servers_total: int = 0
    servers_enabled: int = 0
    servers_connected: int = 0
    tools: int = 0
    resources: int = 0


class StatusReport(BaseModel):
    totals: StatusTotals
    servers: List[ServerStatus]
    findings: List[HealthFinding]
    generated_at: datetime = Field(default_factory=utcnow)


class ToolsResponse(BaseModel):
    tools: List[ToolDescriptor]
    total_tools: int


class ResourcesResponse(BaseModel):
    resources: List[ResourceDescriptor]
    total_resources: int


class BatchInvocationRequest(BaseModel):
    requests: List[InvocationRequest]


class BatchResourceReadRequest(BaseModel):
    uris: List[str] = Field(..., min_length=1)
    use_cache: bool = True


class ServerInvocationStats(BaseModel):
    server_id: str
    invocations: int = 0
    successes: int = 0
    success_rate: float = 0.0


class InvocationStats(BaseModel):
    """Totals over a slice of the invocation log (not the in-memory metrics)."""
    total_invocations: int = 0
    successful_invocations: int = 0
    failed_invocations: int = 0
    success_rate: float = 0.0
    average_latency_ms: float = 0.0
    by_server: Dict[str, ServerInvocationStats] = Field(default_factory=dict)
    since: Optional[datetime] = None


class PromptsResponse(BaseModel):
    server_id: str
    prompts: List[Dict[str, Any]]
    total_prompts: int


class CacheClearResponse(BaseModel):
    removed: int
