"""
Orchestrator Models Package

Import the ORM tables here to ensure they are registered with SQLAlchemy's metadata.
"""

from .models import Base, MCPAuditLog, MCPConnectionLog, MCPHealthFinding, MCPServerRecord, MCPToolInvocation

__all__ = [
    'Base',
    'MCPServerRecord',
    'MCPConnectionLog',
    'MCPToolInvocation',
    'MCPAuditLog',
    'MCPHealthFinding',
]
