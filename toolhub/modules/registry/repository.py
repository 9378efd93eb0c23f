"""SQL-backed server registry.

Handles server definition CRUD, the tool mirror and per-user server configs.
Cascading deletes are enforced here rather than via database FK constraints
for DuckDB compatibility. Sessions are synchronous; every public method runs
its session work in a worker thread so the event loop is never blocked.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, or_
from sqlalchemy.orm import Session, sessionmaker

from toolhub.core.log_sanitizer import sanitize_for_logging
from toolhub.domain.errors import ValidationError
from toolhub.domain.servers.models import (
    ConnectionPolicy,
    ConnectionStatus,
    ServerDefinition,
    ToolDefinition,
    ToolRecord,
    UserServerConfig,
    transport_from_dict,
)

from .models import ServerRecord, ServerToolRecord, UserServerConfigRecord, UserToolOverrideRecord
from .patch import apply_server_patch

logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on read; stored values are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _server_to_domain(record: ServerRecord) -> ServerDefinition:
    return ServerDefinition(
        id=record.id,
        owner_id=record.owner_id,
        name=record.name,
        description=record.description,
        transport=transport_from_dict(json.loads(record.transport_json)),
        policy=ConnectionPolicy(**json.loads(record.policy_json)),
        is_enabled=bool(record.is_enabled),
        is_public=bool(record.is_public),
        connection_status=ConnectionStatus(record.connection_status),
        last_error=record.last_error,
        last_connected=_as_utc(record.last_connected),
        created_at=_as_utc(record.created_at),
        updated_at=_as_utc(record.updated_at),
    )


def _copy_server_fields(server: ServerDefinition, record: ServerRecord) -> None:
    record.owner_id = server.owner_id
    record.name = server.name
    record.description = server.description
    record.transport_json = json.dumps(server.transport.to_dict())
    record.policy_json = json.dumps(server.policy.to_dict())
    record.is_enabled = server.is_enabled
    record.is_public = server.is_public
    record.connection_status = server.connection_status.value
    record.last_error = server.last_error
    record.last_connected = server.last_connected
    record.updated_at = server.updated_at


def _tool_to_domain(record: ServerToolRecord) -> ToolRecord:
    return ToolRecord(
        id=record.id,
        server_id=record.server_id,
        name=record.name,
        description=record.description or "",
        input_schema=json.loads(record.input_schema_json) if record.input_schema_json else {},
        is_enabled=bool(record.is_enabled),
        created_at=_as_utc(record.created_at),
    )


class SqlServerRegistry:
    """Server registry over a SQLAlchemy session factory."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _get_session(self) -> Session:
        return self._session_factory()

    # ------------------------------------------------------------------
    # Server definitions
    # ------------------------------------------------------------------

    def _get(self, server_id: str) -> Optional[ServerDefinition]:
        with self._get_session() as session:
            record = session.get(ServerRecord, server_id)
            return _server_to_domain(record) if record else None

    def _list(self, owner_id: Optional[str]) -> List[ServerDefinition]:
        with self._get_session() as session:
            query = session.query(ServerRecord)
            if owner_id is not None:
                query = query.filter(or_(ServerRecord.owner_id == owner_id, ServerRecord.is_public.is_(True)))
            records = query.order_by(ServerRecord.created_at).all()
            return [_server_to_domain(record) for record in records]

    def _create(self, server: ServerDefinition) -> ServerDefinition:
        server.transport.validate()
        server.policy.validate()
        with self._get_session() as session:
            if session.get(ServerRecord, server.id) is not None:
                raise ValidationError(f"Server {server.id} already exists", code="DUPLICATE_SERVER")
            record = ServerRecord(id=server.id, created_at=server.created_at)
            _copy_server_fields(server, record)
            session.add(record)
            session.commit()
            logger.info(
                "Created server %s (%s) for %s",
                sanitize_for_logging(server.name),
                server.id,
                sanitize_for_logging(server.owner_id),
            )
            return server

    def _update(self, server_id: str, patch: Dict[str, Any]) -> Optional[ServerDefinition]:
        with self._get_session() as session:
            record = session.get(ServerRecord, server_id)
            if record is None:
                return None
            updated = apply_server_patch(_server_to_domain(record), patch)
            _copy_server_fields(updated, record)
            session.commit()
            return updated

    def _delete(self, server_id: str) -> Optional[ServerDefinition]:
        with self._get_session() as session:
            record = session.get(ServerRecord, server_id)
            if record is None:
                return None
            server = _server_to_domain(record)
            session.execute(delete(ServerToolRecord).where(ServerToolRecord.server_id == server_id))
            session.execute(delete(UserToolOverrideRecord).where(UserToolOverrideRecord.server_id == server_id))
            session.execute(delete(UserServerConfigRecord).where(UserServerConfigRecord.server_id == server_id))
            session.delete(record)
            session.commit()
            logger.info("Deleted server %s with its tools and user configs", server_id)
            return server

    async def get(self, server_id: str) -> Optional[ServerDefinition]:
        return await asyncio.to_thread(self._get, server_id)

    async def list(self, owner_id: Optional[str] = None) -> List[ServerDefinition]:
        return await asyncio.to_thread(self._list, owner_id)

    async def create(self, server: ServerDefinition) -> ServerDefinition:
        return await asyncio.to_thread(self._create, server)

    async def update(self, server_id: str, patch: Dict[str, Any]) -> Optional[ServerDefinition]:
        return await asyncio.to_thread(self._update, server_id, patch)

    async def delete(self, server_id: str) -> Optional[ServerDefinition]:
        return await asyncio.to_thread(self._delete, server_id)

    # ------------------------------------------------------------------
    # Tool mirror
    # ------------------------------------------------------------------

    def _replace_tools(self, server_id: str, tools: List[ToolDefinition]) -> List[ToolRecord]:
        with self._get_session() as session:
            previous = session.query(ServerToolRecord).filter(ServerToolRecord.server_id == server_id).all()
            # Admin-disabled tools stay disabled across refreshes
            disabled = {record.name for record in previous if not record.is_enabled}

            session.execute(delete(ServerToolRecord).where(ServerToolRecord.server_id == server_id))
            session.flush()

            records = []
            seen = set()
            for tool in tools:
                if tool.name in seen:
                    continue
                seen.add(tool.name)
                record = ServerToolRecord(
                    server_id=server_id,
                    name=tool.name,
                    description=tool.description,
                    input_schema_json=json.dumps(tool.input_schema) if tool.input_schema else None,
                    is_enabled=tool.name not in disabled,
                )
                session.add(record)
                records.append(record)
            session.commit()
            return [_tool_to_domain(record) for record in records]

    def _list_tools(self, server_id: str) -> List[ToolRecord]:
        with self._get_session() as session:
            records = (
                session.query(ServerToolRecord)
                .filter(ServerToolRecord.server_id == server_id)
                .order_by(ServerToolRecord.name)
                .all()
            )
            return [_tool_to_domain(record) for record in records]

    def _set_tool_enabled(self, server_id: str, tool_name: str, enabled: bool) -> Optional[ToolRecord]:
        with self._get_session() as session:
            record = session.query(ServerToolRecord).filter(
                ServerToolRecord.server_id == server_id,
                ServerToolRecord.name == tool_name,
            ).first()
            if record is None:
                return None
            record.is_enabled = enabled
            session.commit()
            return _tool_to_domain(record)

    async def replace_tools(self, server_id: str, tools: List[ToolDefinition]) -> List[ToolRecord]:
        return await asyncio.to_thread(self._replace_tools, server_id, tools)

    async def list_tools(self, server_id: str) -> List[ToolRecord]:
        return await asyncio.to_thread(self._list_tools, server_id)

    async def set_tool_enabled(self, server_id: str, tool_name: str, enabled: bool) -> Optional[ToolRecord]:
        return await asyncio.to_thread(self._set_tool_enabled, server_id, tool_name, enabled)

    # ------------------------------------------------------------------
    # User configs
    # ------------------------------------------------------------------

    def _config_to_domain(self, session: Session, record: UserServerConfigRecord) -> UserServerConfig:
        overrides = session.query(UserToolOverrideRecord).filter(
            UserToolOverrideRecord.user_id == record.user_id,
            UserToolOverrideRecord.server_id == record.server_id,
        ).all()
        return UserServerConfig(
            user_id=record.user_id,
            server_id=record.server_id,
            is_enabled=bool(record.is_enabled),
            encrypted_credentials=record.encrypted_credentials,
            tool_overrides={override.tool_name: bool(override.is_enabled) for override in overrides},
        )

    def _list_user_configs(self, user_id: str) -> List[UserServerConfig]:
        with self._get_session() as session:
            records = (
                session.query(UserServerConfigRecord)
                .filter(UserServerConfigRecord.user_id == user_id)
                .order_by(UserServerConfigRecord.created_at)
                .all()
            )
            return [self._config_to_domain(session, record) for record in records]

    def _get_user_config(self, user_id: str, server_id: str) -> Optional[UserServerConfig]:
        with self._get_session() as session:
            record = session.get(UserServerConfigRecord, (user_id, server_id))
            return self._config_to_domain(session, record) if record else None

    def _upsert_user_config(self, config: UserServerConfig) -> UserServerConfig:
        with self._get_session() as session:
            record = session.get(UserServerConfigRecord, (config.user_id, config.server_id))
            if record is None:
                record = UserServerConfigRecord(user_id=config.user_id, server_id=config.server_id)
                session.add(record)
            record.is_enabled = config.is_enabled
            record.encrypted_credentials = config.encrypted_credentials
            record.updated_at = datetime.now(timezone.utc)

            session.execute(
                delete(UserToolOverrideRecord).where(
                    UserToolOverrideRecord.user_id == config.user_id,
                    UserToolOverrideRecord.server_id == config.server_id,
                )
            )
            for tool_name, enabled in config.tool_overrides.items():
                session.add(
                    UserToolOverrideRecord(
                        user_id=config.user_id,
                        server_id=config.server_id,
                        tool_name=tool_name,
                        is_enabled=enabled,
                    )
                )
            session.commit()
            return config

    def _set_user_tool_override(
        self, user_id: str, server_id: str, tool_name: str, enabled: bool
    ) -> UserServerConfig:
        with self._get_session() as session:
            record = session.get(UserServerConfigRecord, (user_id, server_id))
            if record is None:
                record = UserServerConfigRecord(user_id=user_id, server_id=server_id, is_enabled=True)
                session.add(record)
            override = session.get(UserToolOverrideRecord, (user_id, server_id, tool_name))
            if override is None:
                session.add(
                    UserToolOverrideRecord(
                        user_id=user_id, server_id=server_id, tool_name=tool_name, is_enabled=enabled
                    )
                )
            else:
                override.is_enabled = enabled
            session.commit()
            return self._config_to_domain(session, record)

    async def list_user_configs(self, user_id: str) -> List[UserServerConfig]:
        return await asyncio.to_thread(self._list_user_configs, user_id)

    async def get_user_config(self, user_id: str, server_id: str) -> Optional[UserServerConfig]:
        return await asyncio.to_thread(self._get_user_config, user_id, server_id)

    async def upsert_user_config(self, config: UserServerConfig) -> UserServerConfig:
        return await asyncio.to_thread(self._upsert_user_config, config)

    async def set_user_tool_override(
        self, user_id: str, server_id: str, tool_name: str, enabled: bool
    ) -> UserServerConfig:
        return await asyncio.to_thread(self._set_user_tool_override, user_id, server_id, tool_name, enabled)
