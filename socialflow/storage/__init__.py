"""Database models and storage layer."""

from .database import (
    Base,
    build_engine,
    create_tables,
    drop_tables,
    get_session_factory,
)
from .models import (
    ContinuationModel,
    DefinitionModel,
    NodeOutcomeModel,
    ProcessedEventModel,
    RunModel,
)
from .sql_store import SqlDefinitionStore, SqlRunStore

__all__ = [
    "Base",
    "build_engine",
    "create_tables",
    "drop_tables",
    "get_session_factory",
    "DefinitionModel",
    "RunModel",
    "NodeOutcomeModel",
    "ContinuationModel",
    "ProcessedEventModel",
    "SqlDefinitionStore",
    "SqlRunStore",
]
