"""
Exception types for the orchestration layer.

Registry and connection errors are raised to the caller that asked for the
operation. Invocation errors are normally carried inside InvocationResult
values and only raised when a caller asks for it (InvocationResult.raise_for_error).
"""

from typing import Any, List, Optional

from mcp_orchestrator.models.mcp import ErrorKind


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""
    pass


class ConfigError(OrchestratorError):
    """Invalid or incomplete server definition. Rejected at registration."""

    def __init__(self, message: str, server_id: Optional[str] = None, fields: Optional[List[str]] = None):
        super().__init__(message)
        self.server_id = server_id
        self.fields = fields or []


class ServerNotFoundError(OrchestratorError):
    """Raised when a server id is not registered."""

    def __init__(self, server_id: str):
        super().__init__(f"Server '{server_id}' not found")
        self.server_id = server_id


class ServerActiveError(OrchestratorError):
    """Raised when an operation requires a disconnected server."""

    def __init__(self, server_id: str, message: Optional[str] = None):
        super().__init__(message or f"Server '{server_id}' has an active connection")
        self.server_id = server_id


class ServerDisabledError(OrchestratorError):
    """Raised when connecting a server whose configuration is disabled."""

    def __init__(self, server_id: str):
        super().__init__(f"Server '{server_id}' is disabled")
        self.server_id = server_id


class ServerConnectionError(OrchestratorError):
    """Handshake timeout, spawn/dial failure or unexpected exit during connect."""

    def __init__(self, message: str, server_id: Optional[str] = None):
        super().__init__(message)
        self.server_id = server_id


class HandshakeTimeoutError(ServerConnectionError):
    pass


class TransportError(OrchestratorError):
    """The channel to a tool server failed (process exited, socket closed, write failed)."""
    pass


class ServerNotConnectedError(TransportError):
    def __init__(self, server_id: str):
        super().__init__(f"Server '{server_id}' is not connected")
        self.server_id = server_id


class RequestTimeoutError(OrchestratorError):
    """No correlated response arrived in time. The remote outcome is unknown."""

    def __init__(self, method: str, timeout: float):
        super().__init__(f"Request '{method}' timed out after {timeout:g}s")
        self.method = method
        self.timeout = timeout


class JsonRpcError(OrchestratorError):
    """A well-formed JSON-RPC error response."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"JSON-RPC error {code}: {message}")
        self.code = code
        self.rpc_message = message
        self.data = data


class ToolExecutionError(OrchestratorError):
    """The tool ran and reported a failure (MCP result with isError=true)."""

    def __init__(self, message: str, content: Any = None):
        super().__init__(message)
        self.content = content


class ToolNotFoundError(OrchestratorError):
    def __init__(self, tool_name: str):
        super().__init__(f"Tool '{tool_name}' not found on any connected server")
        self.tool_name = tool_name


class InvocationError(OrchestratorError):
    def __init__(self, message: str, kind: ErrorKind, tool_name: str, server_id: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.tool_name = tool_name
        self.server_id = server_id
