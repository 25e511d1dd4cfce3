"""Logs API endpoints."""

from typing import Optional

from fastapi import APIRouter, Query

from mcp_console.app.services.logging_service import read_conversation_logs, read_server_logs

router = APIRouter(prefix="/logs", tags=["logs"])


@router.get("/server")
async def get_server_logs(
    tail: int = Query(default=100, ge=1, le=10000, description="Number of lines to return")
) -> dict:
    """Get recent server logs, including provider stderr at DEBUG."""
    lines = read_server_logs(tail=tail)
    return {
        "lines": lines,
        "count": len(lines),
    }


@router.get("/conversations/{conversation_id}")
async def get_conversation_logs(
    conversation_id: str,
    tail: Optional[int] = Query(default=None, ge=1, le=10000, description="Number of lines to return"),
    level: Optional[str] = Query(default=None, description="Filter by log level (INFO, WARNING, ERROR)")
) -> dict:
    """Get the log of one conversation's response streams."""
    lines = read_conversation_logs(conversation_id, tail=tail, level=level)
    return {
        "conversation_id": conversation_id,
        "lines": lines,
        "count": len(lines),
    }
