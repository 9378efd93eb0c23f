"""Server registry persistence using SQLAlchemy with DuckDB/PostgreSQL, or in memory."""

from .bounded import bounded
from .database import get_engine, get_session_factory, init_database, reset_engine
from .in_memory_registry import InMemoryServerRegistry
from .models import Base, ServerRecord, ServerToolRecord, UserServerConfigRecord, UserToolOverrideRecord
from .patch import apply_server_patch
from .repository import SqlServerRegistry

__all__ = [
    "bounded",
    "get_engine",
    "get_session_factory",
    "init_database",
    "reset_engine",
    "InMemoryServerRegistry",
    "SqlServerRegistry",
    "apply_server_patch",
    "Base",
    "ServerRecord",
    "ServerToolRecord",
    "UserServerConfigRecord",
    "UserToolOverrideRecord",
]
