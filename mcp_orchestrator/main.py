"""
MCP Orchestrator Server

Hosts the orchestration context and its REST control surface.
"""

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv

# Load environment variables FIRST before importing config
load_dotenv()

from fastapi import FastAPI

from mcp_orchestrator.api.mcp_endpoints import router as mcp_router
from mcp_orchestrator.config import settings
from mcp_orchestrator.services.orchestrator import OrchestrationContext
from mcp_orchestrator.utils.logging import RequestLoggingMiddleware, configure_logging, get_logger

configure_logging(
    service_name=settings.SERVICE_NAME,
    log_level=settings.LOG_LEVEL,
    enable_json=settings.LOG_JSON,
    enable_file_logging=settings.LOG_FILE_ENABLED,
    log_file_path=settings.LOG_FILE_PATH,
    max_file_size_mb=settings.LOG_FILE_MAX_SIZE_MB,
    backup_count=settings.LOG_FILE_BACKUP_COUNT,
)

logger = get_logger("main")


def create_app(context: Optional[OrchestrationContext] = None, start_monitor: bool = True) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        context: Pre-built orchestration context (tests); defaults to the SQL-backed production wiring
        start_monitor: Whether startup launches the background health monitor
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        orchestrator = context or OrchestrationContext.from_settings(settings)
        app.state.orchestrator = orchestrator
        logger.info("Starting MCP orchestrator")
        await orchestrator.startup(start_monitor=start_monitor)
        try:
            yield
        finally:
            logger.info("Shutting down MCP orchestrator")
            await orchestrator.shutdown()

    app = FastAPI(
        title="MCP Orchestrator",
        description="Registers, connects and supervises MCP tool servers",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware, service_name=settings.SERVICE_NAME)
    app.include_router(mcp_router)

    @app.get("/health")
    async def health():
        orchestrator = getattr(app.state, "orchestrator", None)
        return {
            "status": "healthy" if orchestrator is not None and orchestrator.started else "starting",
            "service": settings.SERVICE_NAME,
        }

    return app


app = create_app()


def run():
    uvicorn.run(
        "mcp_orchestrator.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=False,
    )


if __name__ == "__main__":
    run()
