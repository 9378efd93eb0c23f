"""REST API routes for MCP server management and per-user tool access.

All endpoints act on behalf of the authenticated user. Server status in every
response is reconciled against the live connection manager.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from toolhub.core.log_sanitizer import get_current_user, sanitize_for_logging
from toolhub.domain.errors import (
    ConfigurationError,
    ConnectionStateError,
    CredentialError,
    DomainError,
    ServerNotFoundError,
    ServerNotManagedError,
    StoreTimeoutError,
    ToolNotFoundError,
    ValidationError,
)
from toolhub.domain.servers.models import ConnectionPolicy, transport_from_dict
from toolhub.infrastructure.app_factory import AppFactory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mcp", tags=["mcp"])


class CreateServerRequest(BaseModel):
    name: str
    description: Optional[str] = None
    transport: Dict[str, Any]
    policy: Optional[Dict[str, Any]] = None
    is_public: bool = False
    is_enabled: bool = True


class UpdateServerRequest(BaseModel):
    """Partial update; only fields present in the body are applied."""
    name: Optional[str] = None
    description: Optional[str] = None
    transport: Optional[Dict[str, Any]] = None
    policy: Optional[Dict[str, Any]] = None
    is_public: Optional[bool] = None
    is_enabled: Optional[bool] = None


class ActionRequest(BaseModel):
    action: str = Field(..., description="connect, disconnect, reconnect or test")


class EnabledRequest(BaseModel):
    enabled: bool


class TestConnectionRequest(BaseModel):
    transport: Dict[str, Any]
    credentials: Optional[Dict[str, Any]] = None
    timeout_ms: Optional[int] = None


class CredentialsRequest(BaseModel):
    credentials: Dict[str, Any] = Field(default_factory=dict)


def get_app_factory(request: Request) -> AppFactory:
    """The per-process AppFactory stored on app.state by the lifespan."""
    factory = getattr(request.app.state, "app_factory", None)
    if factory is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return factory


def _http_error(error: DomainError) -> HTTPException:
    """Translate a domain error into the matching HTTP status."""
    if isinstance(error, (ValidationError, ConfigurationError)):
        status = 400
    elif isinstance(error, (ServerNotFoundError, ToolNotFoundError, ServerNotManagedError)):
        status = 404
    elif isinstance(error, ConnectionStateError):
        status = 409
    elif isinstance(error, CredentialError):
        status = 422
    elif isinstance(error, StoreTimeoutError):
        status = 504
    else:
        status = 500
    detail: Dict[str, Any] = {"message": error.message}
    if error.code:
        detail["code"] = error.code
    return HTTPException(status_code=status, detail=detail)


# ----------------------------------------------------------------------
# Servers
# ----------------------------------------------------------------------

@router.get("/servers")
async def list_servers(
    current_user: str = Depends(get_current_user),
    factory: AppFactory = Depends(get_app_factory),
):
    """List servers owned by or shared with the user."""
    try:
        servers = await factory.server_service.list_servers(current_user)
    except DomainError as e:
        raise _http_error(e) from e
    return {"servers": [server.to_dict() for server in servers]}


@router.post("/servers", status_code=201)
async def create_server(
    body: CreateServerRequest,
    current_user: str = Depends(get_current_user),
    factory: AppFactory = Depends(get_app_factory),
):
    try:
        transport = transport_from_dict(body.transport)
        policy = ConnectionPolicy.from_dict(body.policy)
        server = await factory.server_service.create_server(
            current_user,
            body.name,
            transport,
            policy=policy,
            description=body.description,
            is_public=body.is_public,
            is_enabled=body.is_enabled,
        )
    except DomainError as e:
        raise _http_error(e) from e
    logger.info(
        "User %s created MCP server %s",
        sanitize_for_logging(current_user),
        sanitize_for_logging(server.name),
    )
    return server.to_dict()


@router.get("/servers/{server_id}")
async def get_server(
    server_id: str,
    current_user: str = Depends(get_current_user),
    factory: AppFactory = Depends(get_app_factory),
):
    try:
        server = await factory.server_service.get_server(current_user, server_id)
    except DomainError as e:
        raise _http_error(e) from e
    return server.to_dict()


@router.patch("/servers/{server_id}")
async def update_server(
    server_id: str,
    body: UpdateServerRequest,
    current_user: str = Depends(get_current_user),
    factory: AppFactory = Depends(get_app_factory),
):
    """Update a server definition.

    Disabling closes every connection; a transport or policy change rebuilds
    live connections in the background.
    """
    patch = body.model_dump(exclude_unset=True)
    if not patch:
        raise HTTPException(status_code=400, detail={"message": "No fields to update", "code": "EMPTY_PATCH"})
    try:
        server = await factory.server_service.update_server(current_user, server_id, patch)
    except DomainError as e:
        raise _http_error(e) from e
    return server.to_dict()


@router.delete("/servers/{server_id}")
async def delete_server(
    server_id: str,
    current_user: str = Depends(get_current_user),
    factory: AppFactory = Depends(get_app_factory),
):
    try:
        server = await factory.server_service.delete_server(current_user, server_id)
    except DomainError as e:
        raise _http_error(e) from e
    return {"message": f"Server '{server.name}' deleted", "id": server.id}


@router.post("/servers/{server_id}/connect")
async def server_action(
    server_id: str,
    body: ActionRequest,
    current_user: str = Depends(get_current_user),
    factory: AppFactory = Depends(get_app_factory),
):
    """Connect, disconnect, reconnect or test the user's connection to a server."""
    try:
        result = await factory.server_service.perform_action(current_user, server_id, body.action)
    except DomainError as e:
        raise _http_error(e) from e
    return {"action": body.action, "result": result.to_dict()}


@router.post("/servers/{server_id}/toggle")
async def toggle_server(
    server_id: str,
    body: EnabledRequest,
    current_user: str = Depends(get_current_user),
    factory: AppFactory = Depends(get_app_factory),
):
    try:
        server = await factory.server_service.toggle(current_user, server_id, body.enabled)
    except DomainError as e:
        raise _http_error(e) from e
    return server.to_dict()


@router.get("/servers/{server_id}/tools")
async def list_server_tools(
    server_id: str,
    current_user: str = Depends(get_current_user),
    factory: AppFactory = Depends(get_app_factory),
):
    try:
        tools = await factory.server_service.list_tools(current_user, server_id)
    except DomainError as e:
        raise _http_error(e) from e
    return {"server_id": server_id, "tools": tools}


@router.patch("/servers/{server_id}/tools/{tool_name}")
async def set_server_tool_enabled(
    server_id: str,
    tool_name: str,
    body: EnabledRequest,
    current_user: str = Depends(get_current_user),
    factory: AppFactory = Depends(get_app_factory),
):
    """Owner switch for a mirrored tool; applies to every user of the server."""
    try:
        return await factory.server_service.set_tool_enabled(current_user, server_id, tool_name, body.enabled)
    except DomainError as e:
        raise _http_error(e) from e


@router.post("/test-connection")
async def test_connection(
    body: TestConnectionRequest,
    current_user: str = Depends(get_current_user),
    factory: AppFactory = Depends(get_app_factory),
):
    """Test an unsaved transport without registering it."""
    try:
        transport = transport_from_dict(body.transport)
        result = await factory.server_service.test_transport(transport, body.credentials, body.timeout_ms)
    except DomainError as e:
        raise _http_error(e) from e
    logger.info(
        "Connection test by %s: success=%s",
        sanitize_for_logging(current_user),
        result.success,
    )
    return result.to_dict()


# ----------------------------------------------------------------------
# Per-user views
# ----------------------------------------------------------------------

@router.get("/dashboard")
async def dashboard(
    current_user: str = Depends(get_current_user),
    factory: AppFactory = Depends(get_app_factory),
):
    try:
        return await factory.server_service.dashboard(current_user)
    except DomainError as e:
        raise _http_error(e) from e


@router.get("/templates")
async def list_templates(
    current_user: str = Depends(get_current_user),
    factory: AppFactory = Depends(get_app_factory),
):
    """Server templates, flat and grouped by category."""
    catalog = factory.config_manager.mcp_templates
    logger.debug("Serving %d server templates to %s", len(catalog.templates), sanitize_for_logging(current_user))
    return {
        "templates": [template.model_dump() for template in catalog.templates],
        "categories": {
            category: [template.model_dump() for template in group]
            for category, group in catalog.by_category().items()
        },
        "total_templates": len(catalog.templates),
    }


@router.get("/tools")
async def list_user_tools(
    current_user: str = Depends(get_current_user),
    factory: AppFactory = Depends(get_app_factory),
):
    """All tools the user can call right now, in function-calling form."""
    try:
        tools = await factory.tool_aggregator.get_tools_for_user(current_user)
    except DomainError as e:
        raise _http_error(e) from e
    return {
        "tools": [tool.to_dict() for tool in tools],
        "functions": factory.tool_aggregator.to_function_schemas(tools),
    }


@router.get("/status")
async def user_status(
    current_user: str = Depends(get_current_user),
    factory: AppFactory = Depends(get_app_factory),
):
    try:
        statuses = await factory.tool_aggregator.get_status_for_user(current_user)
    except DomainError as e:
        raise _http_error(e) from e
    return {"servers": {server_id: snapshot.to_dict() for server_id, snapshot in statuses.items()}}


@router.put("/configs/{server_id}")
async def set_user_server_enabled(
    server_id: str,
    body: EnabledRequest,
    current_user: str = Depends(get_current_user),
    factory: AppFactory = Depends(get_app_factory),
):
    try:
        config = await factory.server_service.set_server_enabled_for_user(current_user, server_id, body.enabled)
    except DomainError as e:
        raise _http_error(e) from e
    return config.to_dict()


@router.put("/configs/{server_id}/tools/{tool_name}")
async def set_user_tool_override(
    server_id: str,
    tool_name: str,
    body: EnabledRequest,
    current_user: str = Depends(get_current_user),
    factory: AppFactory = Depends(get_app_factory),
):
    try:
        config = await factory.server_service.set_tool_override(current_user, server_id, tool_name, body.enabled)
    except DomainError as e:
        raise _http_error(e) from e
    return config.to_dict()


@router.put("/credentials/{server_id}")
async def set_credentials(
    server_id: str,
    body: CredentialsRequest,
    current_user: str = Depends(get_current_user),
    factory: AppFactory = Depends(get_app_factory),
):
    """Store the user's credentials for a server, encrypted at rest."""
    try:
        config = await factory.server_service.set_credentials(current_user, server_id, body.credentials)
    except DomainError as e:
        raise _http_error(e) from e
    return config.to_dict()
