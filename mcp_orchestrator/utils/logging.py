"""
structlog setup for the orchestrator: orjson-rendered JSON lines (or a
colour console in development), an optional rotating log file, and an HTTP
middleware that tags every line logged during a request with its request id.

Services pass structured fields as extra={"data": {...}}; the helpers at the
bottom fix the field names for config, lifecycle, connection and tool-call
lines so the operations dashboard can filter on them.
"""

import logging
import sys
import time
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

import orjson
import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response


def _orjson_dumps(obj: Any, **kwargs: Any) -> str:
    return orjson.dumps(obj, default=str).decode()


def configure_logging(
    service_name: str = "mcp-orchestrator",
    log_level: str = "INFO",
    enable_json: bool = True,
    enable_file_logging: bool = False,
    log_file_path: Optional[str] = None,
    max_file_size_mb: int = 10,
    backup_count: int = 5,
) -> None:
    """
    Route stdlib logging and structlog through one processor chain.

    Args:
        service_name: Bound as ``service`` on every line
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL (unknown names fall back to INFO)
        enable_json: JSON lines when True, coloured console output when False
        enable_file_logging: Also write to a rotating log file
        log_file_path: Log file path, defaults to ./logs/{service_name}.log
        max_file_size_mb: Rotation size for the log file
        backup_count: Number of rotated files to keep
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if enable_file_logging:
        log_file = log_file_path or f"logs/{service_name}.log"
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            log_file,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8",
        ))

    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        handlers=handlers,
        force=True,
    )

    shared_processors = [
        structlog.stdlib.filter_by_level,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if enable_json:
        final_processor = structlog.processors.JSONRenderer(serializer=_orjson_dumps)
    else:
        final_processor = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [final_processor],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(service=service_name)


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """structlog logger bound to ``name``."""
    return structlog.get_logger(name)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Binds request_id (taken from X-Request-ID or generated), method and path
    for the duration of a request, logs its outcome with the elapsed time and
    echoes the id back in the response headers.
    """

    def __init__(self, app, service_name: str = "mcp-orchestrator"):
        super().__init__(app)
        self.service_name = service_name
        self.logger = get_logger("request")

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            service=self.service_name,
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else "unknown",
        )

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            self.logger.error(
                "Request failed",
                exc_info=True,
                extra={
                    "data": {
                        "exception_type": type(exc).__name__,
                        "exception_message": str(exc),
                    }
                }
            )
            raise

        self.logger.info(
            "Request completed",
            extra={
                "data": {
                    "status_code": response.status_code,
                    "response_time_ms": round((time.perf_counter() - started) * 1000, 2),
                }
            }
        )
        response.headers["X-Request-ID"] = request_id
        return response


def log_config_change(
    operation: str,
    config_type: str,
    details: Dict[str, Any],
    logger: Optional[structlog.stdlib.BoundLogger] = None
) -> None:
    """One line per registry mutation (created, updated, deleted)."""
    if logger is None:
        logger = get_logger("config")

    logger.info(
        f"{config_type} {operation}",
        extra={
            "data": {
                "config_type": config_type,
                "operation": operation,
                **details
            }
        }
    )


def log_system_state_change(
    component: str,
    state: str,
    details: Dict[str, Any],
    logger: Optional[structlog.stdlib.BoundLogger] = None
) -> None:
    """Startup and shutdown of long-lived components."""
    if logger is None:
        logger = get_logger("system")

    logger.info(
        f"{component} {state}",
        extra={
            "data": {
                "component": component,
                "new_state": state,
                **details
            }
        }
    )


def log_connection_event(
    server_id: str,
    event_type: str,
    details: Optional[Dict[str, Any]] = None,
    logger: Optional[structlog.stdlib.BoundLogger] = None
) -> None:
    """Connection transitions; exits and errors go to warning."""
    if logger is None:
        logger = get_logger("connection")

    log = logger.warning if event_type in ("error", "process_exited") else logger.info
    log(
        f"Server {server_id}: {event_type}",
        extra={
            "data": {
                "server_id": server_id,
                "event_type": event_type,
                **(details or {})
            }
        }
    )


def log_tool_invocation(
    tool_name: str,
    server_id: Optional[str],
    success: bool,
    latency_ms: float,
    error_kind: Optional[str] = None,
    error: Optional[str] = None,
    logger: Optional[structlog.stdlib.BoundLogger] = None
) -> None:
    """Log one tool call. Successes go to debug, failures to warning."""
    if logger is None:
        logger = get_logger("tool_invocation")

    data = {"tool": tool_name, "server_id": server_id, "latency_ms": latency_ms}
    if success:
        logger.debug(f"Tool {tool_name} succeeded", extra={"data": data})
        return

    logger.warning(
        f"Tool {tool_name} failed: {error_kind}",
        extra={"data": {**data, "error_kind": error_kind, "error": error}}
    )
