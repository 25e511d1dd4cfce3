"""MCP servers router - configure tool servers, manage their connections, invoke capabilities."""

from fastapi import APIRouter, HTTPException
from pydantic import ValidationError

from mcp_console.app.models.mcp import (
    Capability,
    ConnectionInfo,
    InvocationResult,
    InvokeRequest,
    ServerConfig,
    ServerConfigCreate,
    ServerConfigUpdate,
    ServerState,
    ServerStateList,
)
from mcp_console.app.services.connection_manager import connection_manager
from mcp_console.app.services.logging_service import get_logger
from mcp_console.app.services.mcp_service import mcp_service

logger = get_logger(__name__)

router = APIRouter(prefix="/mcp", tags=["mcp"])


def _state(config: ServerConfig) -> ServerState:
    return ServerState(config=config, connection=connection_manager.get_connection(config.id))


def _require(server_id: str) -> ServerConfig:
    config = mcp_service.get_server(server_id)
    if config is None:
        raise HTTPException(status_code=404, detail="MCP server not found")
    return config


@router.get("/servers", response_model=ServerStateList)
async def list_servers() -> ServerStateList:
    """Get every configured server with its live connection state."""
    return ServerStateList(servers=[_state(s) for s in mcp_service.list_servers()])


@router.post("/servers", response_model=ServerState, status_code=201)
async def create_server(body: ServerConfigCreate) -> ServerState:
    """Add a server. Enabled servers are connected right away."""
    config = mcp_service.add_server(body)
    await connection_manager.apply_config(config)
    return _state(config)


@router.post("/servers/import", response_model=ServerStateList)
async def import_servers(body: dict) -> ServerStateList:
    """Import local servers from an ``{"mcpServers": {...}}`` document."""
    added = mcp_service.import_servers(body)
    await connection_manager.sync(mcp_service.list_enabled())
    return ServerStateList(servers=[_state(s) for s in added])


@router.get("/servers/{server_id}", response_model=ServerState)
async def get_server(server_id: str) -> ServerState:
    return _state(_require(server_id))


@router.put("/servers/{server_id}", response_model=ServerState)
async def update_server(server_id: str, body: ServerConfigUpdate) -> ServerState:
    """Replace a server's config and restart its connection to match."""
    try:
        config = mcp_service.update_server(server_id, body)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if config is None:
        raise HTTPException(status_code=404, detail="MCP server not found")
    await connection_manager.disconnect(server_id)
    await connection_manager.apply_config(config)
    return _state(config)


@router.delete("/servers/{server_id}")
async def delete_server(server_id: str) -> dict:
    """Delete a server and stop its process."""
    await connection_manager.forget(server_id)
    if not mcp_service.remove_server(server_id):
        raise HTTPException(status_code=404, detail="MCP server not found")
    return {"ok": True}


@router.post("/servers/{server_id}/toggle", response_model=ServerState)
async def toggle_server(server_id: str) -> ServerState:
    """Flip enabled; connects or disconnects accordingly."""
    _require(server_id)
    config = mcp_service.toggle_server(server_id)
    await connection_manager.apply_config(config)
    return _state(config)


@router.post("/servers/{server_id}/connect", response_model=ConnectionInfo)
async def connect_server(server_id: str) -> ConnectionInfo:
    return await connection_manager.connect(_require(server_id))


@router.post("/servers/{server_id}/disconnect", response_model=ConnectionInfo)
async def disconnect_server(server_id: str) -> ConnectionInfo:
    _require(server_id)
    return await connection_manager.disconnect(server_id)


@router.post("/servers/{server_id}/reconnect", response_model=ConnectionInfo)
async def reconnect_server(server_id: str) -> ConnectionInfo:
    _require(server_id)
    return await connection_manager.reconnect(server_id)


@router.post("/servers/{server_id}/rediscover", response_model=ConnectionInfo)
async def rediscover_server(server_id: str) -> ConnectionInfo:
    """Re-query the server's tool list."""
    _require(server_id)
    return await connection_manager.rediscover(server_id)


@router.get("/servers/{server_id}/capabilities", response_model=list[Capability])
async def list_server_capabilities(server_id: str) -> list[Capability]:
    """Capabilities of a connected server (empty when not connected)."""
    _require(server_id)
    return connection_manager.list_capabilities(server_id)


@router.post("/servers/{server_id}/invoke", response_model=InvocationResult)
async def invoke_capability(server_id: str, body: InvokeRequest) -> InvocationResult:
    """Call a capability. Failures come back as a typed result, not an HTTP error."""
    return await connection_manager.invoke(server_id, body.capability, body.arguments)


@router.get("/capabilities")
async def list_all_capabilities() -> dict[str, list[Capability]]:
    """Capabilities of every connected server, keyed by server id."""
    return connection_manager.list_all_connected()
