"""
Event schema definitions for the orchestrator's publish/subscribe channel.
Connection manager, registry, invoker and health monitor publish these;
the operations dashboard subscribes to them.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from mcp_orchestrator.models.mcp import (
    ConnectionState,
    HealthFinding,
    InvocationRecord,
)


EventType = Literal[
    "server_connected",
    "server_disconnected",
    "server_error",
    "catalog_changed",
    "config_changed",
    "tool_invoked",
    "health_finding",
]


class OrchestratorEvent(BaseModel):
    """
    Standard event format for the orchestrator.
    All events published through the event bus use this format.
    """
    id: str = Field(default_factory=lambda: str(uuid4()))
    type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any]
    source: str  # component that generated the event


class ConfigChangedEventData(BaseModel):
    server_id: str
    operation: Literal["created", "updated", "deleted"]
    changes: Dict[str, Any] = {}


class CatalogChangedEventData(BaseModel):
    version: int
    tools_count: int
    resources_count: int
    reason: str


# Helper functions for creating typed events
def create_connection_event(state: ConnectionState, source: str = "connection-manager") -> OrchestratorEvent:
    """Create a server_connected / server_disconnected / server_error event from a state snapshot."""
    event_type = {
        "connected": "server_connected",
        "error": "server_error",
    }.get(state.status.value, "server_disconnected")
    return OrchestratorEvent(
        type=event_type,
        data=state.model_dump(mode="json"),
        source=source,
    )


def create_config_changed_event(
    server_id: str,
    operation: Literal["created", "updated", "deleted"],
    changes: Optional[Dict[str, Any]] = None,
    source: str = "server-registry",
) -> OrchestratorEvent:
    return OrchestratorEvent(
        type="config_changed",
        data=ConfigChangedEventData(
            server_id=server_id,
            operation=operation,
            changes=changes or {},
        ).model_dump(mode="json"),
        source=source,
    )


def create_catalog_changed_event(
    version: int,
    tools_count: int,
    resources_count: int,
    reason: str,
    source: str = "connection-manager",
) -> OrchestratorEvent:
    return OrchestratorEvent(
        type="catalog_changed",
        data=CatalogChangedEventData(
            version=version,
            tools_count=tools_count,
            resources_count=resources_count,
            reason=reason,
        ).model_dump(),
        source=source,
    )


def create_tool_invoked_event(record: InvocationRecord, source: str = "invoker") -> OrchestratorEvent:
    return OrchestratorEvent(
        type="tool_invoked",
        data=record.model_dump(mode="json", exclude={"arguments"}),
        source=source,
    )


def create_health_finding_event(finding: HealthFinding, source: str = "health-monitor") -> OrchestratorEvent:
    return OrchestratorEvent(
        type="health_finding",
        data=finding.model_dump(mode="json"),
        source=source,
    )
