"""Per-conversation tool selection.

Selection state is a single mapping of server id -> enabled capability
names. Selecting a whole server stores the names discovered at that moment;
later capability churn does not grow or shrink the stored set. Names that
are no longer live stay in the mapping and are filtered out by ``resolve()``,
which is the only way callers should turn selections into tools.
"""

from typing import Protocol

from mcp_console.app.models.mcp import Capability
from mcp_console.app.models.selection import ResolvedCapability, SelectionSnapshot, ServerSelectionState
from mcp_console.app.services.connection_manager import connection_manager
from mcp_console.app.services.logging_service import get_logger, release_conversation_log

logger = get_logger(__name__)


class CapabilitySource(Protocol):
    def list_capabilities(self, server_id: str) -> list[Capability]: ...

    def list_all_connected(self) -> dict[str, list[Capability]]: ...


class SelectionRegistry:
    """Which discovered capabilities are active for one conversation."""

    def __init__(self, conversation_id: str, capability_source: CapabilitySource) -> None:
        self.conversation_id = conversation_id
        self._source = capability_source
        self._selections: dict[str, set[str]] = {}

    def select_server(self, server_id: str) -> int:
        """Enable every capability the server exposes right now. Returns how many."""
        names = {c.name for c in self._source.list_capabilities(server_id)}
        if not names:
            logger.debug(f"[{self.conversation_id}] Server {server_id} has no live capabilities to select")
            self._selections.pop(server_id, None)
            return 0
        self._selections[server_id] = names
        return len(names)

    def deselect_server(self, server_id: str) -> None:
        self._selections.pop(server_id, None)

    def select_capability(self, server_id: str, name: str) -> None:
        self._selections.setdefault(server_id, set()).add(name)

    def deselect_capability(self, server_id: str, name: str) -> None:
        names = self._selections.get(server_id)
        if names is None:
            return
        names.discard(name)
        if not names:
            del self._selections[server_id]

    def clear(self) -> None:
        self._selections.clear()

    def resolve(self) -> list[ResolvedCapability]:
        """Selected capabilities that are live, in discovery order, without duplicates."""
        resolved: list[ResolvedCapability] = []
        seen: set[tuple[str, str]] = set()
        for server_id, capabilities in self._source.list_all_connected().items():
            selected = self._selections.get(server_id)
            if not selected:
                continue
            for capability in capabilities:
                key = (server_id, capability.name)
                if capability.name not in selected or key in seen:
                    continue
                seen.add(key)
                resolved.append(ResolvedCapability(
                    server_id=server_id,
                    name=capability.name,
                    description=capability.description,
                    input_schema=capability.input_schema,
                ))
        return resolved

    def count(self) -> int:
        return len(self.resolve())

    def to_request_tools(self) -> list[dict]:
        """Tool definitions for the inference request, built from ``resolve()``."""
        return [
            {
                "type": "function",
                "server_id": item.server_id,
                "function": {
                    "name": item.name,
                    "description": item.description,
                    "parameters": item.input_schema or {"type": "object", "properties": {}},
                },
            }
            for item in self.resolve()
        ]

    def is_server_fully_selected(self, server_id: str) -> bool:
        """True when every live capability of the server is selected. UI display only."""
        live = {c.name for c in self._source.list_capabilities(server_id)}
        if not live:
            return False
        return live <= self._selections.get(server_id, set())

    def server_state(self, server_id: str) -> ServerSelectionState:
        live = [c.name for c in self._source.list_capabilities(server_id)]
        selected = self._selections.get(server_id, set())
        return ServerSelectionState(
            server_id=server_id,
            selected=[name for name in live if name in selected],
            fully_selected=self.is_server_fully_selected(server_id),
        )

    def snapshot(self) -> SelectionSnapshot:
        resolved = self.resolve()
        return SelectionSnapshot(
            conversation_id=self.conversation_id,
            selections={sid: sorted(names) for sid, names in self._selections.items()},
            resolved=resolved,
            count=len(resolved),
        )


class SelectionRegistryManager:
    """Registries keyed by conversation id. Nothing here is persisted."""

    def __init__(self, capability_source: CapabilitySource) -> None:
        self._source = capability_source
        self._registries: dict[str, SelectionRegistry] = {}

    def get_or_create(self, conversation_id: str) -> SelectionRegistry:
        registry = self._registries.get(conversation_id)
        if registry is None:
            registry = SelectionRegistry(conversation_id, self._source)
            self._registries[conversation_id] = registry
            logger.debug(f"[{conversation_id}] Created selection registry")
        return registry

    def get(self, conversation_id: str) -> SelectionRegistry | None:
        return self._registries.get(conversation_id)

    def discard(self, conversation_id: str) -> bool:
        if self._registries.pop(conversation_id, None) is None:
            return False
        release_conversation_log(conversation_id)
        return True


# Singleton instance
selection_registry_manager = SelectionRegistryManager(connection_manager)
