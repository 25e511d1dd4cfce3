"""Tool-server configuration store.

Persists the user's tool servers in ~/.mcp-console/mcp-servers.json:

    {"servers": [{"id": ..., "name": ..., "command": ..., "args": [...],
                  "env": {...}, "enabled": true}, ...]}

Also imports the common ``{"mcpServers": {...}}`` document used by other
MCP clients. Only local (command-based) servers can be imported.
"""

import json
import uuid

from mcp_console.app import config as app_config
from mcp_console.app.models.mcp import ServerConfig, ServerConfigCreate, ServerConfigUpdate
from mcp_console.app.services.logging_service import get_logger

logger = get_logger(__name__)


class MCPService:
    """Service to load, edit and persist tool-server configurations."""

    def __init__(self) -> None:
        self._cached: list[ServerConfig] | None = None
        self._cache_mtime: float = 0.0

    @property
    def config_file(self):
        return app_config.MCP_SERVERS_FILE

    def _should_refresh_cache(self) -> bool:
        """Check if cache needs refresh based on file modification time."""
        if self._cached is None:
            return True
        if self.config_file.exists() and self.config_file.stat().st_mtime > self._cache_mtime:
            return True
        return False

    def _load(self) -> list[ServerConfig]:
        if not self.config_file.exists():
            return []
        try:
            data = json.loads(self.config_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse MCP server config: {e}")
            return []
        except Exception as e:
            logger.error(f"Error reading MCP server config: {e}")
            return []

        raw_servers = data.get("servers", []) if isinstance(data, dict) else []
        servers: list[ServerConfig] = []
        seen: set[str] = set()
        for raw in raw_servers:
            try:
                server = ServerConfig(**raw)
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping invalid MCP server entry {raw!r}: {e}")
                continue
            if server.id in seen:
                logger.warning(f"Skipping duplicate MCP server id '{server.id}'")
                continue
            seen.add(server.id)
            servers.append(server)
        return servers

    def _save(self, servers: list[ServerConfig]) -> None:
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        payload = {"servers": [s.model_dump() for s in servers]}
        self.config_file.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        self._cached = list(servers)
        self._cache_mtime = self.config_file.stat().st_mtime

    def list_servers(self, force_refresh: bool = False) -> list[ServerConfig]:
        """Get all configured tool servers."""
        if force_refresh or self._should_refresh_cache():
            self._cached = self._load()
            self._cache_mtime = self.config_file.stat().st_mtime if self.config_file.exists() else 0.0
            logger.info(f"Loaded {len(self._cached)} MCP servers")
        assert self._cached is not None
        return list(self._cached)

    def list_enabled(self) -> list[ServerConfig]:
        return [s for s in self.list_servers() if s.enabled]

    def get_server(self, server_id: str) -> ServerConfig | None:
        for server in self.list_servers():
            if server.id == server_id:
                return server
        return None

    def add_server(self, request: ServerConfigCreate) -> ServerConfig:
        """Add a new tool server with a generated id."""
        servers = self.list_servers()
        server = ServerConfig(id=uuid.uuid4().hex[:12], **request.model_dump())
        servers.append(server)
        self._save(servers)
        logger.info(f"[{server.id}] Added MCP server '{server.name}'")
        return server

    def update_server(self, server_id: str, request: ServerConfigUpdate) -> ServerConfig | None:
        """Replace a stored record with the edited one. Returns None if not found."""
        servers = self.list_servers()
        for i, existing in enumerate(servers):
            if existing.id != server_id:
                continue
            data = existing.model_dump()
            data.update(request.model_dump(exclude_unset=True))
            # Re-validate the whole record rather than patching fields in place
            updated = ServerConfig(**data)
            servers[i] = updated
            self._save(servers)
            logger.info(f"[{server_id}] Updated MCP server '{updated.name}'")
            return updated
        return None

    def remove_server(self, server_id: str) -> bool:
        """Delete a tool server. Returns True if deleted."""
        servers = self.list_servers()
        remaining = [s for s in servers if s.id != server_id]
        if len(remaining) == len(servers):
            return False
        self._save(remaining)
        logger.info(f"[{server_id}] Removed MCP server")
        return True

    def toggle_server(self, server_id: str) -> ServerConfig | None:
        """Flip the enabled flag. Returns None if not found."""
        server = self.get_server(server_id)
        if server is None:
            return None
        return self.update_server(server_id, ServerConfigUpdate(enabled=not server.enabled))

    def _parse_mcp_servers_from_json(self, data: dict) -> list[ServerConfigCreate]:
        """Parse an ``mcpServers`` mapping into create requests.

        Remote (url-based) entries are skipped: only stdio providers are supported.
        """
        requests: list[ServerConfigCreate] = []

        mcp_servers = data.get("mcpServers", {}) if isinstance(data, dict) else {}
        if not isinstance(mcp_servers, dict):
            return requests

        for name, entry in mcp_servers.items():
            if not isinstance(entry, dict):
                continue
            if entry.get("type") in ("http", "sse") or "url" in entry:
                logger.warning(f"Remote MCP server '{name}' is not supported, skipping")
                continue
            command = entry.get("command", "")
            if not command:
                logger.warning(f"MCP server '{name}' has no command, skipping")
                continue
            args = entry.get("args", [])
            try:
                requests.append(ServerConfigCreate(
                    name=name,
                    command=command,
                    args=args if isinstance(args, list) else [str(args)],
                    env=entry.get("env"),
                    enabled=not entry.get("disabled", False),
                ))
            except ValueError as e:
                logger.warning(f"Failed to parse MCP server '{name}': {e}")
        return requests

    def import_servers(self, data: dict) -> list[ServerConfig]:
        """Add every local server from an ``mcpServers`` document. Returns the added records."""
        added = [self.add_server(request) for request in self._parse_mcp_servers_from_json(data)]
        logger.info(f"Imported {len(added)} MCP servers")
        return added


# Singleton instance
mcp_service = MCPService()
