"""
Transport layer for talking JSON-RPC 2.0 to MCP tool servers.

Implements:
  - StdioTransport: newline-delimited JSON-RPC over a child process's stdin/stdout
  - NetworkTransport: JSON-RPC over HTTP POST (JSON or SSE-framed responses)

Both share request/response correlation through PendingRequests: every
outbound request gets a fresh id and a future, and responses may arrive in
any order. A response with an unknown id (e.g. one that arrives after its
request timed out) is logged and discarded.
"""

import asyncio
import itertools
import json
import os
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Set

import httpx

from mcp_orchestrator.models.errors import JsonRpcError, RequestTimeoutError, TransportError
from mcp_orchestrator.models.mcp import ServerConfig, TransportKind
from mcp_orchestrator.utils.logging import get_logger

logger = get_logger("mcp-transport")

PROTOCOL_VERSION = "2024-11-05"

# Tool results can be large; the default 64 KiB line limit is too small
STDIO_LINE_LIMIT = 16 * 1024 * 1024
# How long a closed stdout waits for the exit code and the rest of stderr
EXIT_SETTLE_SECONDS = 1.0

ExitCallback = Callable[["Transport", str], None]


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request. A request without an id is a notification."""
    method: str
    params: Optional[Dict[str, Any]] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"jsonrpc": "2.0", "method": self.method}
        if self.params is not None:
            payload["params"] = self.params
        if self.id is not None:
            payload["id"] = self.id
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response."""
    id: Any
    result: Any = None
    error: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JsonRpcResponse":
        return cls(id=data.get("id"), result=data.get("result"), error=data.get("error"))

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def raise_for_error(self) -> Any:
        if self.error is not None:
            raise JsonRpcError(
                code=self.error.get("code", -32603),
                message=self.error.get("message", "Unknown error"),
                data=self.error.get("data"),
            )
        return self.result


class PendingRequests:
    """Outstanding request ids mapped to the futures awaiting their responses."""

    def __init__(self):
        self._ids = itertools.count(1)
        self._futures: Dict[int, asyncio.Future] = {}

    def register(self) -> "tuple[int, asyncio.Future]":
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._futures[request_id] = future
        return request_id, future

    def resolve(self, response: JsonRpcResponse) -> bool:
        future = self._futures.pop(response.id, None) if isinstance(response.id, int) else None
        if future is None or future.done():
            logger.warning(
                "Discarding response with unknown id",
                extra={"data": {"response_id": response.id}}
            )
            return False
        future.set_result(response)
        return True

    def discard(self, request_id: int) -> None:
        self._futures.pop(request_id, None)

    def fail_all(self, error: Exception) -> int:
        futures, self._futures = self._futures, {}
        for future in futures.values():
            if not future.done():
                future.set_exception(error)
        return len(futures)

    def __len__(self) -> int:
        return len(self._futures)


class Transport(ABC):
    """Abstract transport: an ordered bidirectional JSON-RPC message channel."""

    kind: TransportKind

    def __init__(self, server_id: str):
        self.server_id = server_id
        self.pending = PendingRequests()
        self._exit_callbacks: List[ExitCallback] = []
        self._closing = False
        self._exited = False
        self.exit_reason: Optional[str] = None
        self._reply_tasks: Set[asyncio.Task] = set()

    @abstractmethod
    async def start(self) -> None:
        """Open the channel (launch the process / create the HTTP client)."""
        ...

    @abstractmethod
    async def stop(self, grace_seconds: float = 5.0) -> None:
        """Close the channel and release every resource it holds. Idempotent."""
        ...

    @abstractmethod
    def is_alive(self) -> bool:
        ...

    @abstractmethod
    async def _send(self, payload: Dict[str, Any]) -> None:
        """Write one message to the channel."""
        ...

    def on_exit(self, callback: ExitCallback) -> None:
        """Register a callback for an unexpected channel exit (not called on stop())."""
        self._exit_callbacks.append(callback)

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None,
                      timeout: float = 30.0) -> Any:
        """
        Send a request and wait for its correlated response.

        Raises:
            RequestTimeoutError: no response within ``timeout`` (the id is freed)
            JsonRpcError: the server answered with an error response
            TransportError: the channel failed or closed while waiting
        """
        if not self.is_alive():
            raise TransportError(f"Transport for '{self.server_id}' is not running")

        request_id, future = self.pending.register()
        payload = JsonRpcRequest(method=method, params=params or {}, id=request_id).to_dict()
        try:
            response = await asyncio.wait_for(self._roundtrip(payload, future), timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(method, timeout) from None
        finally:
            self.pending.discard(request_id)

        return response.raise_for_error()

    async def _roundtrip(self, payload: Dict[str, Any], future: asyncio.Future) -> JsonRpcResponse:
        await self._send(payload)
        return await future

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        if not self.is_alive():
            raise TransportError(f"Transport for '{self.server_id}' is not running")
        await self._send(JsonRpcRequest(method=method, params=params).to_dict())

    async def _handle_message(self, message: Any) -> None:
        if isinstance(message, list):
            for item in message:
                await self._handle_message(item)
            return
        if not isinstance(message, dict):
            logger.warning("Ignoring non-object JSON-RPC message", extra={"data": {"server_id": self.server_id}})
            return

        if "method" in message:
            await self._handle_server_message(message)
        elif "id" in message:
            self.pending.resolve(JsonRpcResponse.from_dict(message))
        else:
            logger.warning("Ignoring malformed JSON-RPC message", extra={"data": {"server_id": self.server_id}})

    async def _handle_server_message(self, message: Dict[str, Any]) -> None:
        """Server-initiated requests and notifications."""
        method = message.get("method")
        if "id" not in message:
            logger.debug(f"Notification from {self.server_id}: {method}")
            return

        if method == "ping":
            reply: Dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"], "result": {}}
        else:
            reply = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": -32601, "message": f"Method not found: {method}"},
            }
        # The reader must never wait on the write path
        task = asyncio.get_running_loop().create_task(self._reply(method, reply))
        self._reply_tasks.add(task)
        task.add_done_callback(self._reply_tasks.discard)

    async def _reply(self, method: str, reply: Dict[str, Any]) -> None:
        try:
            await self._send(reply)
        except TransportError as e:
            logger.debug(f"Could not answer server request {method} from {self.server_id}: {e}")

    async def flush_replies(self) -> None:
        """Wait until every queued reply to a server request has been written or dropped."""
        if self._reply_tasks:
            await asyncio.gather(*list(self._reply_tasks), return_exceptions=True)

    def _notify_exit(self, reason: str) -> None:
        if self._exited:
            return
        self._exited = True
        self.exit_reason = reason
        for task in list(self._reply_tasks):
            task.cancel()
        failed = self.pending.fail_all(TransportError(f"Server '{self.server_id}': {reason}"))
        if self._closing:
            return

        logger.warning(
            f"Transport for {self.server_id} exited unexpectedly",
            extra={"data": {"server_id": self.server_id, "reason": reason, "failed_requests": failed}}
        )
        for callback in self._exit_callbacks:
            try:
                callback(self, reason)
            except Exception as e:
                logger.error(f"Transport exit callback failed: {e}", exc_info=True)


class StdioTransport(Transport):
    """
    JSON-RPC over stdin/stdout pipes to a child process.

    One line on stdout is one message. Lines that are not JSON are treated
    as noise and logged; stderr is drained continuously and the tail is kept
    for error reporting.
    """

    kind = TransportKind.PROCESS

    def __init__(self, server_id: str, command: str, args: Optional[List[str]] = None,
                 env: Optional[Dict[str, str]] = None, cwd: Optional[str] = None):
        super().__init__(server_id)
        self.command = command
        self.args = list(args or [])
        self.env = dict(env or {})
        self.cwd = cwd
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self.stderr_tail: Deque[str] = deque(maxlen=50)

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        return self._process

    async def start(self) -> None:
        if self._process is not None:
            raise TransportError(f"Transport for '{self.server_id}' already started")

        logger.info(
            f"Starting stdio transport for {self.server_id}",
            extra={"data": {"command": self.command, "args": self.args}}
        )
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.env},
                cwd=self.cwd,
                limit=STDIO_LINE_LIMIT,
            )
        except OSError as e:
            self._exited = True
            raise TransportError(f"Failed to launch '{self.command}': {e}") from e

        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    def is_alive(self) -> bool:
        return (
            self._process is not None
            and self._process.returncode is None
            and not self._exited
        )

    async def _send(self, payload: Dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None or process.stdin.is_closing():
            raise TransportError(f"Transport for '{self.server_id}' is not running")

        line = (json.dumps(payload) + "\n").encode("utf-8")
        async with self._write_lock:
            try:
                process.stdin.write(line)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise TransportError(f"Write to '{self.server_id}' failed: {e}") from e

    async def _read_stdout(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        try:
            while True:
                raw = await stdout.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug(f"Non-JSON output from {self.server_id}: {line[:200]}")
                    continue
                await self._handle_message(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error reading from {self.server_id}: {e}", exc_info=True)

        try:
            await asyncio.wait_for(self._process.wait(), EXIT_SETTLE_SECONDS)
            if self._stderr_task is not None:
                await asyncio.wait_for(asyncio.shield(self._stderr_task), EXIT_SETTLE_SECONDS)
        except asyncio.TimeoutError:
            pass

        returncode = self._process.returncode
        reason = "process exited" if returncode is None else f"process exited with code {returncode}"
        if self.stderr_tail:
            reason = f"{reason}: {self.stderr_tail[-1]}"
        self._notify_exit(reason)

    async def _drain_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        stderr = self._process.stderr
        while True:
            raw = await stderr.readline()
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                self.stderr_tail.append(line)
                logger.debug(f"[{self.server_id} stderr] {line}")

    async def stop(self, grace_seconds: float = 5.0) -> None:
        """Close stdin, give the process ``grace_seconds`` to exit, then terminate and kill."""
        process = self._process
        if process is None:
            return
        self._closing = True

        try:
            if process.returncode is None:
                if process.stdin is not None and not process.stdin.is_closing():
                    process.stdin.close()
                try:
                    await asyncio.wait_for(process.wait(), grace_seconds)
                except asyncio.TimeoutError:
                    logger.info(f"Terminating {self.server_id} after {grace_seconds:g}s grace period")
                    process.terminate()
                    try:
                        await asyncio.wait_for(process.wait(), grace_seconds)
                    except asyncio.TimeoutError:
                        logger.warning(f"Killing unresponsive server process {self.server_id}")
                        process.kill()
                        await process.wait()
        except ProcessLookupError:
            pass
        finally:
            current = asyncio.current_task()
            tasks = [
                task for task in (self._reader_task, self._stderr_task)
                if task is not None and task is not current and not task.done()
            ]
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            self._notify_exit("transport stopped")
            logger.info(
                f"Stdio transport for {self.server_id} stopped",
                extra={"data": {"returncode": process.returncode}}
            )


class NetworkTransport(Transport):
    """
    JSON-RPC over HTTP POST.

    Each message is POSTed to the endpoint; the response body carries the
    correlated reply either as plain JSON or as server-sent events. The
    server's Mcp-Session-Id header is echoed on subsequent requests.
    """

    kind = TransportKind.NETWORK

    def __init__(self, server_id: str, endpoint: str, headers: Optional[Dict[str, str]] = None,
                 http_transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(server_id)
        self.endpoint = endpoint
        self.headers = dict(headers or {})
        self._http_transport = http_transport
        self._client: Optional[httpx.AsyncClient] = None
        self.session_id: Optional[str] = None

    async def start(self) -> None:
        if self._client is not None:
            raise TransportError(f"Transport for '{self.server_id}' already started")
        # Per-request deadlines are enforced by Transport.request
        self._client = httpx.AsyncClient(
            headers=self.headers,
            timeout=httpx.Timeout(None, connect=10.0),
            transport=self._http_transport,
        )
        logger.info(f"Network transport for {self.server_id} opened", extra={"data": {"endpoint": self.endpoint}})

    def is_alive(self) -> bool:
        return self._client is not None and not self._exited

    def _request_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json, text/event-stream",
            "Content-Type": "application/json",
        }
        if self.session_id:
            headers["Mcp-Session-Id"] = self.session_id
        return headers

    async def _send(self, payload: Dict[str, Any]) -> None:
        if self._client is None or self._exited:
            raise TransportError(f"Transport for '{self.server_id}' is not running")

        try:
            response = await self._client.post(
                self.endpoint,
                content=json.dumps(payload),
                headers=self._request_headers(),
            )
        except httpx.TransportError as e:
            self._notify_exit(f"connection failed: {e}")
            raise TransportError(f"Request to '{self.server_id}' failed: {e}") from e

        session_id = response.headers.get("mcp-session-id")
        if session_id:
            self.session_id = session_id

        if response.status_code >= 400:
            raise TransportError(
                f"Server '{self.server_id}' returned HTTP {response.status_code}"
            )
        if response.status_code == 202 or not response.content:
            return

        content_type = response.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            for message in self._parse_sse(response.text):
                await self._handle_message(message)
        else:
            try:
                message = response.json()
            except ValueError as e:
                raise TransportError(f"Invalid JSON from '{self.server_id}': {e}") from e
            await self._handle_message(message)

    def _parse_sse(self, body: str) -> List[Any]:
        messages = []
        data_lines: List[str] = []
        for line in body.splitlines() + [""]:
            if line.startswith("data:"):
                data_lines.append(line[5:].lstrip())
            elif not line and data_lines:
                try:
                    messages.append(json.loads("\n".join(data_lines)))
                except json.JSONDecodeError:
                    logger.debug(f"Ignoring non-JSON SSE data from {self.server_id}")
                data_lines = []
        return messages

    async def stop(self, grace_seconds: float = 5.0) -> None:
        client = self._client
        if client is None:
            return
        self._closing = True
        try:
            if self.session_id and not self._exited:
                try:
                    await asyncio.wait_for(
                        client.delete(self.endpoint, headers=self._request_headers()),
                        grace_seconds,
                    )
                except (httpx.HTTPError, asyncio.TimeoutError) as e:
                    logger.debug(f"Session teardown for {self.server_id} failed: {e}")
        finally:
            await client.aclose()
            self._notify_exit("transport stopped")
            logger.info(f"Network transport for {self.server_id} closed")


def create_transport(config: ServerConfig,
                     http_transport: Optional[httpx.AsyncBaseTransport] = None) -> Transport:
    """Build the transport a server configuration asks for."""
    if config.transport_kind == TransportKind.PROCESS:
        return StdioTransport(config.id, config.command, config.args, config.env)
    if config.transport_kind == TransportKind.NETWORK:
        return NetworkTransport(config.id, config.endpoint, config.headers, http_transport=http_transport)
    raise TransportError(f"Unsupported transport kind: {config.transport_kind}")
