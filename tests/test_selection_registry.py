"""Tests for per-conversation tool selection."""

from __future__ import annotations

from mcp_console.app.models.mcp import Capability
from mcp_console.app.services.selection_registry import SelectionRegistry, SelectionRegistryManager


class FakeCapabilities:
    """Stands in for the connection manager's live capability lists."""

    def __init__(self, **servers: list[str]):
        self.servers = {sid: list(names) for sid, names in servers.items()}

    def list_capabilities(self, server_id: str) -> list[Capability]:
        return [Capability(server_id=server_id, name=n) for n in self.servers.get(server_id, [])]

    def list_all_connected(self) -> dict[str, list[Capability]]:
        return {sid: self.list_capabilities(sid) for sid in self.servers}


def _pairs(registry: SelectionRegistry) -> list[tuple[str, str]]:
    return [(r.server_id, r.name) for r in registry.resolve()]


class TestSelectServer:
    def test_selects_everything_discovered(self):
        source = FakeCapabilities(files=["read", "write"])
        registry = SelectionRegistry("conv-1", source)
        assert registry.select_server("files") == 2
        assert _pairs(registry) == [("files", "read"), ("files", "write")]

    def test_rediscovery_with_fewer_capabilities(self):
        """Scenario A: select all, server loses 'write', resolve() returns only read."""
        source = FakeCapabilities(files=["read", "write"])
        registry = SelectionRegistry("conv-1", source)
        registry.select_server("files")

        source.servers["files"] = ["read"]
        assert _pairs(registry) == [("files", "read")]
        # Stale name is tolerated in the raw mapping
        assert registry.snapshot().selections == {"files": ["read", "write"]}

    def test_select_all_is_a_snapshot(self):
        source = FakeCapabilities(files=["read"])
        registry = SelectionRegistry("conv-1", source)
        registry.select_server("files")

        source.servers["files"] = ["read", "delete"]
        assert _pairs(registry) == [("files", "read")]
        assert registry.is_server_fully_selected("files") is False

    def test_deselect_server(self):
        source = FakeCapabilities(files=["read"], web=["fetch"])
        registry = SelectionRegistry("conv-1", source)
        registry.select_server("files")
        registry.select_server("web")
        registry.deselect_server("files")
        assert _pairs(registry) == [("web", "fetch")]

    def test_select_server_without_capabilities(self):
        registry = SelectionRegistry("conv-1", FakeCapabilities())
        assert registry.select_server("offline") == 0
        assert registry.count() == 0


class TestSelectCapability:
    def test_individual_toggle(self):
        source = FakeCapabilities(files=["read", "write"])
        registry = SelectionRegistry("conv-1", source)
        registry.select_capability("files", "write")
        assert _pairs(registry) == [("files", "write")]

        registry.deselect_capability("files", "write")
        assert registry.count() == 0
        assert registry.snapshot().selections == {}

    def test_union_with_server_selection_has_no_duplicates(self):
        source = FakeCapabilities(files=["read", "write"])
        registry = SelectionRegistry("conv-1", source)
        registry.select_server("files")
        registry.select_capability("files", "read")
        assert _pairs(registry) == [("files", "read"), ("files", "write")]
        assert registry.count() == 2

    def test_deselect_one_after_select_all(self):
        source = FakeCapabilities(files=["read", "write"])
        registry = SelectionRegistry("conv-1", source)
        registry.select_server("files")
        registry.deselect_capability("files", "read")
        assert _pairs(registry) == [("files", "write")]

    def test_deselect_unknown_is_noop(self):
        registry = SelectionRegistry("conv-1", FakeCapabilities())
        registry.deselect_capability("files", "read")
        assert registry.count() == 0


class TestResolve:
    def test_disconnected_server_is_filtered(self):
        source = FakeCapabilities(files=["read"], web=["fetch"])
        registry = SelectionRegistry("conv-1", source)
        registry.select_server("files")
        registry.select_server("web")

        del source.servers["web"]
        assert _pairs(registry) == [("files", "read")]

    def test_order_follows_discovery(self):
        source = FakeCapabilities(b=["z", "y"], a=["x"])
        registry = SelectionRegistry("conv-1", source)
        registry.select_capability("a", "x")
        registry.select_capability("b", "y")
        registry.select_capability("b", "z")
        assert _pairs(registry) == [("b", "z"), ("b", "y"), ("a", "x")]

    def test_count_and_request_tools_agree_with_resolve(self):
        source = FakeCapabilities(files=["read", "write"])
        registry = SelectionRegistry("conv-1", source)
        registry.select_server("files")
        source.servers["files"] = ["write"]

        tools = registry.to_request_tools()
        assert registry.count() == len(tools) == 1
        assert tools[0]["function"]["name"] == "write"
        assert tools[0]["server_id"] == "files"
        assert tools[0]["function"]["parameters"] == {"type": "object", "properties": {}}


class TestFullySelected:
    def test_tri_state(self):
        source = FakeCapabilities(files=["read", "write"])
        registry = SelectionRegistry("conv-1", source)
        assert registry.server_state("files").selected == []
        assert registry.is_server_fully_selected("files") is False

        registry.select_capability("files", "read")
        state = registry.server_state("files")
        assert state.selected == ["read"]
        assert state.fully_selected is False

        registry.select_capability("files", "write")
        assert registry.is_server_fully_selected("files") is True

    def test_server_with_no_live_capabilities_is_not_fully_selected(self):
        registry = SelectionRegistry("conv-1", FakeCapabilities(files=[]))
        assert registry.is_server_fully_selected("files") is False


class TestSelectionRegistryManager:
    def test_registries_are_per_conversation(self):
        source = FakeCapabilities(files=["read"])
        manager = SelectionRegistryManager(source)
        manager.get_or_create("a").select_server("files")
        assert manager.get_or_create("b").count() == 0
        assert manager.get_or_create("a") is manager.get("a")

    def test_discard(self):
        manager = SelectionRegistryManager(FakeCapabilities())
        manager.get_or_create("a")
        assert manager.discard("a") is True
        assert manager.discard("a") is False
        assert manager.get("a") is None
