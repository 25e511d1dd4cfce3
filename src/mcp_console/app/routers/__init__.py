"""API routers."""

from . import logs, mcp, selections, streams

__all__ = ["logs", "mcp", "selections", "streams"]
