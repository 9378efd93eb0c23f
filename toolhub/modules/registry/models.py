"""SQLAlchemy models for the server registry.

Uses String(36) UUIDs and Text for JSON to maximize DuckDB compatibility.
No database-level foreign key constraints since DuckDB does not support
CASCADE on FK-constrained tables. Cascading deletes are enforced in the
repository layer.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def _uuid_default():
    return str(uuid.uuid4())


def _now_utc():
    return datetime.now(timezone.utc)


class ServerRecord(Base):
    """A registered MCP server definition."""

    __tablename__ = "mcp_servers"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    owner_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    transport_json = Column(Text, nullable=False)
    policy_json = Column(Text, nullable=False)
    is_enabled = Column(Boolean, default=True, nullable=False)
    is_public = Column(Boolean, default=False, nullable=False)
    connection_status = Column(String(20), default="disconnected", nullable=False)
    last_error = Column(Text, nullable=True)
    last_connected = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now_utc, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_now_utc, nullable=False)

    __table_args__ = (
        Index("ix_mcp_servers_owner_name", "owner_id", "name"),
    )


class ServerToolRecord(Base):
    """Mirror of a tool advertised by a server at its last successful listing."""

    __tablename__ = "mcp_server_tools"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    server_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    input_schema_json = Column(Text, nullable=True)
    is_enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_now_utc, nullable=False)

    __table_args__ = (
        UniqueConstraint("server_id", "name", name="uq_server_tool_name"),
    )


class UserServerConfigRecord(Base):
    """A user's enablement and encrypted credentials for one server."""

    __tablename__ = "mcp_user_server_configs"

    user_id = Column(String(255), primary_key=True)
    server_id = Column(String(36), primary_key=True)
    is_enabled = Column(Boolean, default=True, nullable=False)
    encrypted_credentials = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now_utc, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_now_utc, nullable=False)


class UserToolOverrideRecord(Base):
    """A user's enable/disable override for one tool of one server."""

    __tablename__ = "mcp_user_tool_overrides"

    user_id = Column(String(255), primary_key=True)
    server_id = Column(String(36), primary_key=True)
    tool_name = Column(String(255), primary_key=True)
    is_enabled = Column(Boolean, nullable=False)
