from .database import DatabaseManager
from .store import InMemoryOrchestratorStore, OrchestratorStore, SqlOrchestratorStore

__all__ = ["DatabaseManager", "OrchestratorStore", "InMemoryOrchestratorStore", "SqlOrchestratorStore"]
