"""Selections router - per-conversation tool selection."""

from fastapi import APIRouter, HTTPException

from mcp_console.app.models.selection import SelectionSnapshot, ServerSelectionState
from mcp_console.app.services.selection_registry import selection_registry_manager

router = APIRouter(prefix="/selections", tags=["selections"])


@router.get("/{conversation_id}", response_model=SelectionSnapshot)
async def get_selection(conversation_id: str) -> SelectionSnapshot:
    """Raw selections plus the resolved, live-filtered capability list."""
    return selection_registry_manager.get_or_create(conversation_id).snapshot()


@router.delete("/{conversation_id}")
async def discard_selection(conversation_id: str) -> dict:
    if not selection_registry_manager.discard(conversation_id):
        raise HTTPException(status_code=404, detail="No selection for this conversation")
    return {"ok": True}


@router.post("/{conversation_id}/servers/{server_id}", response_model=SelectionSnapshot)
async def select_server(conversation_id: str, server_id: str) -> SelectionSnapshot:
    """Enable every capability the server currently exposes."""
    registry = selection_registry_manager.get_or_create(conversation_id)
    registry.select_server(server_id)
    return registry.snapshot()


@router.delete("/{conversation_id}/servers/{server_id}", response_model=SelectionSnapshot)
async def deselect_server(conversation_id: str, server_id: str) -> SelectionSnapshot:
    registry = selection_registry_manager.get_or_create(conversation_id)
    registry.deselect_server(server_id)
    return registry.snapshot()


@router.get("/{conversation_id}/servers/{server_id}", response_model=ServerSelectionState)
async def get_server_selection(conversation_id: str, server_id: str) -> ServerSelectionState:
    """Tri-state for a server row in the tool picker."""
    return selection_registry_manager.get_or_create(conversation_id).server_state(server_id)


@router.post("/{conversation_id}/servers/{server_id}/capabilities/{name}", response_model=SelectionSnapshot)
async def select_capability(conversation_id: str, server_id: str, name: str) -> SelectionSnapshot:
    registry = selection_registry_manager.get_or_create(conversation_id)
    registry.select_capability(server_id, name)
    return registry.snapshot()


@router.delete("/{conversation_id}/servers/{server_id}/capabilities/{name}", response_model=SelectionSnapshot)
async def deselect_capability(conversation_id: str, server_id: str, name: str) -> SelectionSnapshot:
    registry = selection_registry_manager.get_or_create(conversation_id)
    registry.deselect_capability(server_id, name)
    return registry.snapshot()


@router.get("/{conversation_id}/request-tools")
async def get_request_tools(conversation_id: str) -> dict:
    """Tool definitions to send with the next inference request."""
    tools = selection_registry_manager.get_or_create(conversation_id).to_request_tools()
    return {"conversation_id": conversation_id, "tools": tools, "count": len(tools)}
