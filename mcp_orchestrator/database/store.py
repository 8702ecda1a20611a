"""
Persistence collaborator for the orchestrator.

OrchestratorStore is the interface the registry, connection manager, invoker
and health monitor write through. SqlOrchestratorStore is the production
implementation on top of DatabaseManager; InMemoryOrchestratorStore keeps
everything in process for tests and database-less local runs.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import delete, desc, select

from mcp_orchestrator.database.database import DatabaseManager
from mcp_orchestrator.models.mcp import (
    AuditEntry,
    ConnectionEvent,
    ErrorKind,
    HealthFinding,
    InvocationRecord,
    ServerCapabilities,
    ServerConfig,
    TransportKind,
)
from mcp_orchestrator.models.models import (
    MCPAuditLog,
    MCPConnectionLog,
    MCPHealthFinding,
    MCPServerRecord,
    MCPToolInvocation,
)
from mcp_orchestrator.utils.logging import get_logger

logger = get_logger("orchestrator-store")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class OrchestratorStore(ABC):
    """Server configurations plus append-only connection, invocation, audit and finding logs."""

    async def initialize(self) -> None:
        """Prepare the backing storage. No-op by default."""

    async def close(self) -> None:
        """Release the backing storage. No-op by default."""

    @abstractmethod
    async def list_servers(self) -> List[ServerConfig]:
        ...

    @abstractmethod
    async def save_server(self, config: ServerConfig) -> None:
        """Insert or replace a server configuration."""
        ...

    @abstractmethod
    async def delete_server(self, server_id: str) -> None:
        ...

    @abstractmethod
    async def append_audit(self, entry: AuditEntry) -> None:
        ...

    @abstractmethod
    async def append_connection_event(self, event: ConnectionEvent) -> None:
        ...

    @abstractmethod
    async def append_invocation(self, record: InvocationRecord) -> None:
        ...

    @abstractmethod
    async def append_finding(self, finding: HealthFinding) -> None:
        ...

    @abstractmethod
    async def recent_invocations(
        self,
        server_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[InvocationRecord]:
        """Most recent invocation records first."""
        ...


class InMemoryOrchestratorStore(OrchestratorStore):
    """Process-local store. Contents do not survive a restart."""

    def __init__(self):
        self.servers: Dict[str, ServerConfig] = {}
        self.audit_log: List[AuditEntry] = []
        self.connection_events: List[ConnectionEvent] = []
        self.invocations: List[InvocationRecord] = []
        self.findings: List[HealthFinding] = []

    async def list_servers(self) -> List[ServerConfig]:
        return sorted(self.servers.values(), key=lambda c: (-c.priority, c.id))

    async def save_server(self, config: ServerConfig) -> None:
        self.servers[config.id] = config

    async def delete_server(self, server_id: str) -> None:
        self.servers.pop(server_id, None)

    async def append_audit(self, entry: AuditEntry) -> None:
        self.audit_log.append(entry)

    async def append_connection_event(self, event: ConnectionEvent) -> None:
        self.connection_events.append(event)

    async def append_invocation(self, record: InvocationRecord) -> None:
        self.invocations.append(record)

    async def append_finding(self, finding: HealthFinding) -> None:
        self.findings.append(finding)

    async def recent_invocations(
        self,
        server_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[InvocationRecord]:
        # Equal timestamps: later appends first
        records = [
            r for r in reversed(self.invocations)
            if (server_id is None or r.server_id == server_id)
            and (since is None or r.timestamp >= since)
        ]
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return records[:limit]


class SqlOrchestratorStore(OrchestratorStore):
    """SQLAlchemy-backed store (PostgreSQL in production)."""

    def __init__(self, db_manager: DatabaseManager, create_tables: bool = False):
        self.db_manager = db_manager
        self.create_tables = create_tables

    async def initialize(self) -> None:
        if self.create_tables:
            await self.db_manager.create_tables()
            logger.info("Database tables created/verified")

    async def close(self) -> None:
        await self.db_manager.close()

    @staticmethod
    def _to_config(record: MCPServerRecord) -> ServerConfig:
        return ServerConfig(
            id=record.id,
            name=record.name,
            description=record.description,
            transport_kind=TransportKind(record.transport_kind),
            command=record.command,
            args=record.args or [],
            env=record.env or {},
            endpoint=record.endpoint,
            headers=record.headers or {},
            capabilities=ServerCapabilities(**(record.capabilities or {})),
            priority=record.priority,
            tags=record.tags or [],
            enabled=record.enabled,
            request_timeout_seconds=record.request_timeout_seconds,
            created_at=_as_utc(record.created_at) or datetime.now(timezone.utc),
            updated_at=_as_utc(record.updated_at) or datetime.now(timezone.utc),
        )

    async def list_servers(self) -> List[ServerConfig]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(MCPServerRecord).order_by(desc(MCPServerRecord.priority), MCPServerRecord.id)
            )
            return [self._to_config(record) for record in result.scalars().all()]

    async def save_server(self, config: ServerConfig) -> None:
        async with self.db_manager.get_session() as session:
            record = await session.get(MCPServerRecord, config.id)
            if record is None:
                record = MCPServerRecord(id=config.id, created_at=config.created_at)
                session.add(record)
            record.name = config.name
            record.description = config.description
            record.transport_kind = config.transport_kind.value
            record.command = config.command
            record.args = list(config.args)
            record.env = dict(config.env)
            record.endpoint = config.endpoint
            record.headers = dict(config.headers)
            record.capabilities = config.capabilities.model_dump()
            record.priority = config.priority
            record.tags = list(config.tags)
            record.enabled = config.enabled
            record.request_timeout_seconds = config.request_timeout_seconds
            record.updated_at = config.updated_at

    async def delete_server(self, server_id: str) -> None:
        async with self.db_manager.get_session() as session:
            await session.execute(delete(MCPServerRecord).where(MCPServerRecord.id == server_id))

    async def append_audit(self, entry: AuditEntry) -> None:
        async with self.db_manager.get_session() as session:
            session.add(MCPAuditLog(
                server_id=entry.server_id,
                operation=entry.operation,
                changes=entry.model_dump(mode="json")["changes"],
                source=entry.source,
                occurred_at=entry.timestamp,
            ))

    async def append_connection_event(self, event: ConnectionEvent) -> None:
        async with self.db_manager.get_session() as session:
            session.add(MCPConnectionLog(
                server_id=event.server_id,
                event_type=event.event_type,
                detail=event.detail,
                event_metadata=event.model_dump(mode="json")["metadata"],
                occurred_at=event.timestamp,
            ))

    async def append_invocation(self, record: InvocationRecord) -> None:
        async with self.db_manager.get_session() as session:
            session.add(MCPToolInvocation(
                id=record.id,
                tool_name=record.tool_name,
                server_id=record.server_id,
                arguments=record.model_dump(mode="json")["arguments"],
                success=record.success,
                latency_ms=record.latency_ms,
                error_kind=record.error_kind.value if record.error_kind else None,
                error_message=record.error_message,
                outcome_known=record.outcome_known,
                invoked_at=record.timestamp,
            ))

    async def append_finding(self, finding: HealthFinding) -> None:
        async with self.db_manager.get_session() as session:
            session.add(MCPHealthFinding(
                id=finding.id,
                server_id=finding.server_id,
                severity=finding.severity.value,
                rule=finding.rule,
                message=finding.message,
                details=finding.model_dump(mode="json")["details"],
                found_at=finding.timestamp,
            ))

    async def recent_invocations(
        self,
        server_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[InvocationRecord]:
        query = select(MCPToolInvocation)
        if server_id is not None:
            query = query.where(MCPToolInvocation.server_id == server_id)
        if since is not None:
            query = query.where(MCPToolInvocation.invoked_at >= since)
        query = query.order_by(desc(MCPToolInvocation.invoked_at)).limit(limit)

        async with self.db_manager.get_session() as session:
            result = await session.execute(query)
            return [
                InvocationRecord(
                    id=row.id,
                    tool_name=row.tool_name,
                    server_id=row.server_id,
                    arguments=row.arguments or {},
                    success=row.success,
                    latency_ms=row.latency_ms,
                    timestamp=_as_utc(row.invoked_at),
                    error_kind=ErrorKind(row.error_kind) if row.error_kind else None,
                    error_message=row.error_message,
                    outcome_known=row.outcome_known,
                )
                for row in result.scalars().all()
            ]
