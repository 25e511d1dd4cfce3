"""Tests for the connection manager against a real stdio tool server process."""

from __future__ import annotations

import asyncio
import os

from conftest import fake_server_spec

from mcp_console.app.models.mcp import ConnectionStatus, ServerConfig, ToolErrorKind
from mcp_console.app.services.connection_manager import ConnectionManager
from mcp_console.app.services.selection_registry import SelectionRegistry


def _config(server_id: str = "files", tools: str = "read,write", enabled: bool = True, **env: str) -> ServerConfig:
    return ServerConfig(id=server_id, name=server_id, enabled=enabled, **fake_server_spec(tools, **env))


def _manager(**kwargs) -> ConnectionManager:
    kwargs.setdefault("handshake_timeout", 10)
    kwargs.setdefault("invoke_timeout", 10)
    return ConnectionManager(**kwargs)


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


def _process_gone(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    return False


class FakeConfigSource:
    def __init__(self, *configs: ServerConfig):
        self.configs = {c.id: c for c in configs}

    def get_server(self, server_id: str) -> ServerConfig | None:
        return self.configs.get(server_id)


# ===================================================================
# connect / disconnect
# ===================================================================

class TestConnect:
    def test_connect_discovers_capabilities(self):
        async def _run():
            manager = _manager()
            info = await manager.connect(_config())
            assert info.status == ConnectionStatus.CONNECTED
            assert [c.name for c in info.capabilities] == ["read", "write"]
            assert info.capabilities[0].server_id == "files"
            assert info.server_info["name"] == "fake-server"
            assert info.last_error is None
            await manager.shutdown()

        asyncio.run(_run())

    def test_disconnect_leaves_no_process(self, tmp_path):
        async def _run():
            pid_file = tmp_path / "server.pid"
            manager = _manager()
            await manager.connect(_config(FAKE_PID_FILE=str(pid_file)))
            channel = manager._connections["files"].channel
            pid = int(pid_file.read_text())

            info = await manager.disconnect("files")
            assert info.status == ConnectionStatus.DISCONNECTED
            assert channel.is_closed
            await _wait_for(lambda: _process_gone(pid))
            assert manager.list_capabilities("files") == []
            assert manager.list_connections() == []

        asyncio.run(_run())

    def test_disconnect_is_idempotent(self):
        async def _run():
            manager = _manager()
            await manager.connect(_config())
            await manager.disconnect("files")
            info = await manager.disconnect("files")
            assert info.status == ConnectionStatus.DISCONNECTED
            assert (await manager.disconnect("never-connected")).status == ConnectionStatus.DISCONNECTED

        asyncio.run(_run())

    def test_paginated_tool_list(self):
        async def _run():
            manager = _manager()
            info = await manager.connect(_config(tools="a,b,c", FAKE_PAGE_SIZE="1"))
            assert [c.name for c in info.capabilities] == ["a", "b", "c"]
            await manager.shutdown()

        asyncio.run(_run())

    def test_non_json_stdout_is_ignored(self):
        async def _run():
            manager = _manager()
            info = await manager.connect(_config(FAKE_BANNER="1"))
            assert info.status == ConnectionStatus.CONNECTED
            await manager.shutdown()

        asyncio.run(_run())

    def test_quoted_args_are_sanitized(self):
        async def _run():
            manager = _manager()
            config = _config()
            config = config.model_copy(update={"args": [f'"{config.args[0]}"']})
            info = await manager.connect(config)
            assert info.status == ConnectionStatus.CONNECTED
            await manager.shutdown()

        asyncio.run(_run())

    def test_launch_failure(self):
        async def _run():
            manager = _manager()
            config = ServerConfig(id="bad", name="bad", command="/nonexistent/mcp-server-binary")
            info = await manager.connect(config)
            assert info.status == ConnectionStatus.ERRORED
            assert info.last_error.kind == ToolErrorKind.LAUNCH_FAILURE
            assert info.last_error.user_visible is True
            assert info.capabilities == []

        asyncio.run(_run())

    def test_handshake_timeout_kills_process(self):
        async def _run():
            manager = _manager(handshake_timeout=0.5)
            info = await manager.connect(_config(FAKE_HANG_HANDSHAKE="1"))
            assert info.status == ConnectionStatus.ERRORED
            assert info.last_error.kind == ToolErrorKind.HANDSHAKE_TIMEOUT
            assert manager._connections["files"].channel is None

        asyncio.run(_run())

    def test_no_automatic_retry(self):
        async def _run():
            manager = _manager()
            config = ServerConfig(id="bad", name="bad", command="/nonexistent/mcp-server-binary")
            first = await manager.connect(config)
            await asyncio.sleep(0.2)
            assert manager.get_connection("bad").attempt == first.attempt

        asyncio.run(_run())

    def test_disabled_config_is_not_launched(self):
        async def _run():
            manager = _manager()
            info = await manager.connect(_config(enabled=False))
            assert info.status == ConnectionStatus.DISCONNECTED
            assert manager.list_connections() == []

        asyncio.run(_run())

    def test_abandon_connect(self):
        async def _run():
            manager = _manager(handshake_timeout=30)
            task = asyncio.create_task(manager.connect(_config(FAKE_HANG_HANDSHAKE="1")))
            await _wait_for(lambda: manager.get_connection("files").status == ConnectionStatus.CONNECTING)
            await asyncio.sleep(0.3)

            assert await manager.abandon_connect("files") is True
            info = await task
            assert info.status != ConnectionStatus.CONNECTED
            assert manager.get_connection("files").status == ConnectionStatus.DISCONNECTED
            assert await manager.abandon_connect("files") is False

        asyncio.run(_run())

    def test_unexpected_exit_marks_errored(self):
        async def _run():
            manager = _manager()
            await manager.connect(_config(tools="read,crash"))
            result = await manager.invoke("files", "crash")
            assert result.ok is False
            assert result.error.kind == ToolErrorKind.INVOCATION_FAILED

            await _wait_for(lambda: manager.get_connection("files").status == ConnectionStatus.ERRORED)
            info = manager.get_connection("files")
            assert info.last_error.kind == ToolErrorKind.PROCESS_EXITED
            assert info.capabilities == []
            await manager.shutdown()

        asyncio.run(_run())

    def test_reconnect_uses_stored_config(self):
        async def _run():
            source = FakeConfigSource(_config(tools="read"))
            manager = _manager(config_source=source)
            await manager.connect(source.configs["files"])

            source.configs["files"] = _config(tools="read,write,delete")
            info = await manager.reconnect("files")
            assert info.status == ConnectionStatus.CONNECTED
            assert [c.name for c in info.capabilities] == ["read", "write", "delete"]
            await manager.shutdown()

        asyncio.run(_run())

    def test_sync_connects_enabled_only(self):
        async def _run():
            manager = _manager()
            infos = await manager.sync([
                _config("a"),
                _config("b", tools="fetch"),
                _config("c", enabled=False),
            ])
            assert {i.server_id for i in infos} == {"a", "b"}
            assert set(manager.list_all_connected()) == {"a", "b"}

            await manager.sync([_config("b", tools="fetch")])
            assert set(manager.list_all_connected()) == {"b"}
            await manager.shutdown()

        asyncio.run(_run())

    def test_shutdown_stops_every_process(self, tmp_path):
        async def _run():
            manager = _manager()
            for sid in ("a", "b"):
                await manager.connect(_config(sid, FAKE_PID_FILE=str(tmp_path / f"{sid}.pid")))
            pids = [int((tmp_path / f"{sid}.pid").read_text()) for sid in ("a", "b")]

            await manager.shutdown()
            for pid in pids:
                await _wait_for(lambda: _process_gone(pid))
            assert manager.list_connections() == []

        asyncio.run(_run())


# ===================================================================
# invoke
# ===================================================================

class TestInvoke:
    def test_invoke_success(self):
        async def _run():
            manager = _manager()
            await manager.connect(_config())
            result = await manager.invoke("files", "read", {"path": "/tmp"})
            assert result.ok is True
            assert result.error is None
            assert result.content[0]["text"] == 'read: {"path": "/tmp"}'
            await manager.shutdown()

        asyncio.run(_run())

    def test_invoke_on_errored_connection_is_not_connected(self):
        """Scenario D: no process call is attempted."""
        async def _run():
            manager = _manager()
            await manager.connect(ServerConfig(id="bad", name="bad", command="/nonexistent/mcp-server-binary"))
            result = await manager.invoke("bad", "read")
            assert result.ok is False
            assert result.error.kind == ToolErrorKind.NOT_CONNECTED
            assert result.error.user_visible is False
            assert manager.pending_invocations() == []

        asyncio.run(_run())

    def test_invoke_unknown_server(self):
        async def _run():
            result = await _manager().invoke("nowhere", "read")
            assert result.error.kind == ToolErrorKind.NOT_CONNECTED

        asyncio.run(_run())

    def test_unknown_capability(self):
        async def _run():
            manager = _manager()
            await manager.connect(_config())
            result = await manager.invoke("files", "delete")
            assert result.error.kind == ToolErrorKind.UNKNOWN_CAPABILITY
            await manager.shutdown()

        asyncio.run(_run())

    def test_tool_error_result(self):
        async def _run():
            manager = _manager()
            await manager.connect(_config(tools="fail"))
            result = await manager.invoke("files", "fail")
            assert result.ok is False
            assert result.error.kind == ToolErrorKind.INVOCATION_FAILED
            assert "failed on purpose" in result.error.message
            assert result.error.user_visible is True
            await manager.shutdown()

        asyncio.run(_run())

    def test_invoke_timeout(self):
        async def _run():
            manager = _manager(invoke_timeout=0.3)
            await manager.connect(_config(tools="slow,read"))
            result = await manager.invoke("files", "slow", {"seconds": 2})
            assert result.error.kind == ToolErrorKind.INVOCATION_FAILED
            assert "Timed out" in result.error.message

            # The connection survives and still serves other calls
            assert (await manager.invoke("files", "read")).ok is True
            await manager.shutdown()

        asyncio.run(_run())

    def test_replies_matched_by_token(self):
        async def _run():
            manager = _manager()
            await manager.connect(_config(tools="slow,read"))
            slow = manager.begin_invoke("files", "slow", {"seconds": 0.5})
            fast = manager.begin_invoke("files", "read", {"n": 1})

            fast_result = await manager.wait_invocation(fast)
            assert fast_result.ok is True
            assert fast_result.token == fast
            assert manager.pending_invocations("files") == [slow]

            slow_result = await manager.wait_invocation(slow)
            assert slow_result.ok is True
            assert slow_result.content[0]["text"] == "slept 0.5"
            await manager.shutdown()

        asyncio.run(_run())

    def test_abandon_discards_late_reply(self):
        async def _run():
            manager = _manager()
            await manager.connect(_config(tools="slow,read"))
            token = manager.begin_invoke("files", "slow", {"seconds": 0.5})
            waiter = asyncio.create_task(manager.wait_invocation(token))
            await asyncio.sleep(0.1)

            assert await manager.abandon(token) is True
            result = await waiter
            assert result.error.kind == ToolErrorKind.INVOCATION_FAILED
            assert "abandoned" in result.error.message.lower()
            assert token not in manager._invocations

            await asyncio.sleep(0.7)
            assert manager.get_connection("files").status == ConnectionStatus.CONNECTED
            assert (await manager.invoke("files", "read")).ok is True
            assert await manager.abandon(token) is False
            await manager.shutdown()

        asyncio.run(_run())

    def test_disconnect_fails_pending_invocations(self):
        async def _run():
            manager = _manager()
            await manager.connect(_config(tools="slow"))
            token = manager.begin_invoke("files", "slow", {"seconds": 5})
            await asyncio.sleep(0.1)

            waiter = asyncio.create_task(manager.wait_invocation(token))
            await asyncio.sleep(0)

            await manager.disconnect("files")
            result = await waiter
            assert result.error.kind == ToolErrorKind.INVOCATION_FAILED
            assert manager._invocations == {}

        asyncio.run(_run())

    def test_hung_server_does_not_block_another(self):
        async def _run():
            manager = _manager()
            await manager.connect(_config("hung", tools="slow"))
            await manager.connect(_config("files"))
            slow = manager.begin_invoke("hung", "slow", {"seconds": 3})

            result = await asyncio.wait_for(manager.invoke("files", "read"), timeout=2)
            assert result.ok is True
            await manager.abandon(slow)
            await manager.shutdown()

        asyncio.run(_run())


# ===================================================================
# rediscovery
# ===================================================================

class TestRediscover:
    def test_rediscover_replaces_list(self, tmp_path):
        async def _run():
            tools_file = tmp_path / "tools.txt"
            tools_file.write_text("read,write", encoding="utf-8")
            manager = _manager()
            await manager.connect(_config(FAKE_TOOLS_FILE=str(tools_file)))

            tools_file.write_text("read", encoding="utf-8")
            info = await manager.rediscover("files")
            assert [c.name for c in info.capabilities] == ["read"]
            await manager.shutdown()

        asyncio.run(_run())

    def test_selection_filtered_after_rediscovery(self, tmp_path):
        """Scenario A against a live server."""
        async def _run():
            tools_file = tmp_path / "tools.txt"
            tools_file.write_text("read,write", encoding="utf-8")
            manager = _manager()
            await manager.connect(_config(FAKE_TOOLS_FILE=str(tools_file)))

            registry = SelectionRegistry("conv-1", manager)
            registry.select_server("files")
            tools_file.write_text("read", encoding="utf-8")
            await manager.rediscover("files")

            assert [(r.server_id, r.name) for r in registry.resolve()] == [("files", "read")]
            await manager.shutdown()

        asyncio.run(_run())

    def test_list_changed_notification_triggers_rediscovery(self, tmp_path):
        async def _run():
            tools_file = tmp_path / "tools.txt"
            tools_file.write_text("read,notify_change", encoding="utf-8")
            manager = _manager()
            await manager.connect(_config(FAKE_TOOLS_FILE=str(tools_file)))

            tools_file.write_text("read,notify_change,extra", encoding="utf-8")
            assert (await manager.invoke("files", "notify_change")).ok is True
            await _wait_for(lambda: "extra" in {c.name for c in manager.list_capabilities("files")})
            await manager.shutdown()

        asyncio.run(_run())

    def test_rediscover_disconnected_is_noop(self):
        async def _run():
            info = await _manager().rediscover("files")
            assert info.status == ConnectionStatus.DISCONNECTED

        asyncio.run(_run())


# ===================================================================
# misbehaving providers
# ===================================================================

class TestMisbehavingProvider:
    def test_malformed_call_result_fails_invocation(self):
        async def _run():
            manager = _manager(invoke_timeout=2)
            await manager.connect(_config(FAKE_MALFORMED="call"))
            result = await asyncio.wait_for(manager.invoke("files", "read"), timeout=5)
            assert result.ok is False
            assert result.error.kind == ToolErrorKind.INVOCATION_FAILED
            assert manager.pending_invocations() == []
            assert manager.get_connection("files").status == ConnectionStatus.CONNECTED
            await manager.shutdown()

        asyncio.run(_run())

    def test_non_object_call_result_is_bounded_by_timeout(self):
        async def _run():
            manager = _manager(invoke_timeout=0.5)
            await manager.connect(_config(FAKE_MALFORMED="call_scalar"))
            result = await asyncio.wait_for(manager.invoke("files", "read"), timeout=5)
            assert result.ok is False
            assert result.error.kind == ToolErrorKind.INVOCATION_FAILED
            await manager.shutdown()

        asyncio.run(_run())

    def test_unusable_tool_entries_are_skipped(self):
        async def _run():
            manager = _manager()
            info = await manager.connect(_config(FAKE_MALFORMED="entries"))
            assert info.status == ConnectionStatus.CONNECTED
            assert [c.name for c in info.capabilities] == ["read", "write", "odd"]
            assert info.capabilities[2].description == ""
            await manager.shutdown()

        asyncio.run(_run())

    def test_malformed_tool_list_errors_without_orphan(self, tmp_path):
        async def _run():
            pid_file = tmp_path / "server.pid"
            manager = _manager()
            info = await asyncio.wait_for(
                manager.connect(_config(FAKE_MALFORMED="list", FAKE_PID_FILE=str(pid_file))), timeout=8
            )
            assert info.status == ConnectionStatus.ERRORED
            assert info.last_error.kind == ToolErrorKind.LAUNCH_FAILURE
            assert info.capabilities == []

            await manager.shutdown()
            await _wait_for(lambda: _process_gone(int(pid_file.read_text())))

        asyncio.run(_run())

    def test_failed_rediscovery_keeps_capabilities(self):
        async def _run():
            manager = _manager()
            await manager.connect(_config(FAKE_MALFORMED="relist"))
            info = await manager.rediscover("files")
            assert info.status == ConnectionStatus.CONNECTED
            assert [c.name for c in info.capabilities] == ["read", "write"]
            await manager.shutdown()

        asyncio.run(_run())

    def test_replies_for_unknown_ids_are_ignored(self):
        async def _run():
            manager = _manager()
            await manager.connect(_config(FAKE_MALFORMED="stray"))
            result = await asyncio.wait_for(manager.invoke("files", "read", {"n": 1}), timeout=5)
            assert result.ok is True
            assert result.content[0]["text"] == 'read: {"n": 1}'
            await manager.shutdown()

        asyncio.run(_run())

    def test_abandoned_token_is_forgotten_without_waiting(self):
        async def _run():
            manager = _manager()
            await manager.connect(_config(tools="slow"))
            token = manager.begin_invoke("files", "slow", {"seconds": 2})
            assert await manager.abandon(token) is True
            assert manager._invocations == {}
            await manager.shutdown()

        asyncio.run(_run())


def test_explicit_zero_timeouts_are_kept():
    manager = ConnectionManager(handshake_timeout=0, invoke_timeout=0)
    assert manager.handshake_timeout == 0
    assert manager.invoke_timeout == 0
