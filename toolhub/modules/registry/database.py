"""Database engine factory for the server registry.

Supports DuckDB (local/dev), PostgreSQL (production) and SQLite (tests)
via SQLAlchemy.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .models import Base

logger = logging.getLogger(__name__)

DEFAULT_DB_URL = "duckdb:///data/toolhub.db"

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def _resolve_db_url(db_url: str) -> str:
    """Anchor relative file databases at the project root and create their directory."""
    for prefix in ("duckdb:///", "sqlite:///"):
        if not db_url.startswith(prefix):
            continue
        db_path = db_url[len(prefix):]
        if not db_path or db_path == ":memory:":
            break
        if not os.path.isabs(db_path):
            project_root = Path(__file__).parent.parent.parent.parent
            full_path = project_root / db_path
            full_path.parent.mkdir(parents=True, exist_ok=True)
            db_url = f"{prefix}{full_path}"
            logger.info("Database path resolved to: %s", full_path)
        else:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        break
    return db_url


def get_engine(db_url: Optional[str] = None) -> Engine:
    """Process-wide engine; db_url falls back to TOOLHUB_DB_URL, then DuckDB."""
    global _engine
    if _engine is not None:
        return _engine

    if db_url is None:
        db_url = os.environ.get("TOOLHUB_DB_URL", DEFAULT_DB_URL)

    db_url = _resolve_db_url(db_url)

    if db_url.startswith("duckdb"):
        _engine = create_engine(db_url, echo=False)
    elif db_url.startswith("postgresql"):
        _engine = create_engine(
            db_url,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
            echo=False,
        )
    elif db_url.startswith("sqlite"):
        # Sessions are opened from worker threads
        _engine = create_engine(db_url, echo=False, connect_args={"check_same_thread": False})
    else:
        _engine = create_engine(db_url, echo=False)

    logger.info("Registry database engine created: %s", db_url.split("@")[-1] if "@" in db_url else db_url)
    return _engine


def get_session_factory(engine: Optional[Engine] = None) -> sessionmaker:
    """Session factory bound to the shared engine."""
    global _session_factory
    if _session_factory is not None:
        return _session_factory

    if engine is None:
        engine = get_engine()

    _session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    return _session_factory


def init_database(db_url: Optional[str] = None) -> Engine:
    """Create missing registry tables and return the engine."""
    engine = get_engine(db_url)
    Base.metadata.create_all(engine)
    logger.info("Registry database tables created/verified")
    return engine


def reset_engine():
    """Dispose the shared engine so the next call builds a fresh one."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
