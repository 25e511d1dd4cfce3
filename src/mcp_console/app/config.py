"""Configuration and constants."""

import os
from pathlib import Path

# Base storage directory
APP_HOME = Path(os.environ.get("MCP_CONSOLE_HOME", Path.home() / ".mcp-console"))

# Persisted tool-server configurations ({"servers": [...]})
MCP_SERVERS_FILE = APP_HOME / "mcp-servers.json"

# Log directories
LOGS_DIR = APP_HOME / "logs"
CONVERSATION_LOGS_DIR = LOGS_DIR / "conversations"

# Seconds allowed for launch + initialize + tools/list before a server is marked errored
HANDSHAKE_TIMEOUT_SECONDS = float(os.environ.get("MCP_CONSOLE_HANDSHAKE_TIMEOUT", "30"))

# Seconds a single tools/call may take before it is reported as failed
INVOKE_TIMEOUT_SECONDS = float(os.environ.get("MCP_CONSOLE_INVOKE_TIMEOUT", "120"))

# Finalized response streams are kept this long for late readers
STREAM_TTL_SECONDS = 300

# API settings
API_PREFIX = "/api"


def ensure_directories() -> None:
    """Create required directories if they don't exist."""
    for directory in [APP_HOME, LOGS_DIR, CONVERSATION_LOGS_DIR]:
        directory.mkdir(parents=True, exist_ok=True)
