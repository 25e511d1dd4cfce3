"""MCP Console - tool-server orchestration backend for a desktop chat client."""

__version__ = "0.1.0"
