"""
MCP Orchestrator Database Models

Server configurations plus the append-only logs: connection events,
tool invocations, registry audit entries and health findings.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class MCPServerRecord(Base):
    """Persisted server configuration."""
    __tablename__ = 'mcp_servers'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    transport_kind: Mapped[str] = mapped_column(String(20), nullable=False)  # "process", "network"
    command: Mapped[Optional[str]] = mapped_column(Text)
    args: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)
    env: Mapped[Dict[str, str]] = mapped_column(JSONType, default=dict, nullable=False)
    endpoint: Mapped[Optional[str]] = mapped_column(Text)
    headers: Mapped[Dict[str, str]] = mapped_column(JSONType, default=dict, nullable=False)
    capabilities: Mapped[Dict[str, bool]] = mapped_column(JSONType, default=dict, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    tags: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    request_timeout_seconds: Mapped[Optional[float]] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<MCPServerRecord(id={self.id}, transport={self.transport_kind}, enabled={self.enabled})>"


class MCPConnectionLog(Base):
    __tablename__ = 'mcp_connection_logs'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    server_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    detail: Mapped[Optional[str]] = mapped_column(Text)
    event_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSONType, default=dict, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('idx_connection_logs_server_time', 'server_id', 'occurred_at'),
    )


class MCPToolInvocation(Base):
    __tablename__ = 'mcp_tool_invocations'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tool_name: Mapped[str] = mapped_column(String(255), nullable=False)
    server_id: Mapped[Optional[str]] = mapped_column(String(64))
    arguments: Mapped[Dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    latency_ms: Mapped[float] = mapped_column(Float, nullable=False)
    error_kind: Mapped[Optional[str]] = mapped_column(String(20))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    outcome_known: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    invoked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('idx_invocations_server_time', 'server_id', 'invoked_at'),
        Index('idx_invocations_tool', 'tool_name'),
    )


class MCPAuditLog(Base):
    __tablename__ = 'mcp_audit_log'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    server_id: Mapped[str] = mapped_column(String(64), nullable=False)
    operation: Mapped[str] = mapped_column(String(20), nullable=False)
    changes: Mapped[Dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    source: Mapped[str] = mapped_column(String(40), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class MCPHealthFinding(Base):
    """Audit trail of health findings. Never read back as authoritative state."""
    __tablename__ = 'mcp_health_findings'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    server_id: Mapped[Optional[str]] = mapped_column(String(64))
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    rule: Mapped[str] = mapped_column(String(40), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    found_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('idx_findings_severity_time', 'severity', 'found_at'),
    )
