"""Tool-server connection manager.

Supervises one MCP stdio session per enabled tool server:

- connect: launch -> initialize (+ notifications/initialized) -> tools/list
- disconnect: abandon in-flight work, close the process, clear capabilities
- invoke: tools/call with a per-invocation correlation token and timeout

Each server entry owns its own tasks and timeouts, so a slow or hung
provider only ever blocks callers of that provider. Every connect attempt
bumps the entry's generation; work started under an older generation is
discarded when it completes, which is how abandoned calls are kept from
mutating state.

All failures are reported as typed results (ConnectionInfo.last_error or
InvocationResult.error); process-level exceptions never escape, including
those raised by replies that do not match the protocol.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from mcp import types

from mcp_console.app import config as app_config
from mcp_console.app.models.mcp import (
    Capability,
    ConnectionInfo,
    ConnectionStatus,
    InvocationResult,
    ServerConfig,
    ToolErrorKind,
    ToolServerError,
)
from mcp_console.app.services.logging_service import get_logger
from mcp_console.app.services.mcp_channel import (
    ChannelClosedError,
    LaunchError,
    RemoteError,
    StdioChannel,
)
from mcp_console.app.utils.args import sanitize_args

logger = get_logger(__name__)


class ConfigSource(Protocol):
    def get_server(self, server_id: str) -> ServerConfig | None: ...


@dataclass
class Connection:
    """Runtime state for one server. Only the manager mutates it."""
    config: ServerConfig
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    last_error: ToolServerError | None = None
    capabilities: list[Capability] = field(default_factory=list)
    server_info: dict | None = None
    channel: StdioChannel | None = None
    generation: int = 0
    connect_task: asyncio.Task | None = None
    watch_task: asyncio.Task | None = None

    def info(self) -> ConnectionInfo:
        return ConnectionInfo(
            server_id=self.config.id,
            name=self.config.name,
            status=self.status,
            last_error=self.last_error,
            capabilities=list(self.capabilities),
            server_info=self.server_info,
            attempt=self.generation,
        )


@dataclass
class PendingInvocation:
    token: str
    server_id: str
    capability: str
    future: asyncio.Future
    channel: StdioChannel | None = None
    task: asyncio.Task | None = None


def _result_text(result: types.CallToolResult) -> str:
    return "\n".join(item.text for item in result.content if isinstance(item, types.TextContent))


def _capability(server_id: str, entry: Any) -> Capability | None:
    """A Capability from one raw tools/list entry, or None if it is unusable."""
    if not isinstance(entry, dict):
        logger.warning(f"[{server_id}] Skipping tool entry that is not an object: {entry!r:.100}")
        return None
    name = entry.get("name")
    if not isinstance(name, str) or not name:
        logger.warning(f"[{server_id}] Skipping tool entry without a name: {entry!r:.100}")
        return None
    schema = entry.get("inputSchema")
    if schema is not None and not isinstance(schema, dict):
        logger.warning(f"[{server_id}] Skipping tool '{name}': inputSchema is not an object")
        return None
    description = entry.get("description")
    return Capability(
        server_id=server_id,
        name=name,
        description=description if isinstance(description, str) else "",
        input_schema=schema or {},
    )


class ConnectionManager:
    """Owns every tool-server process and its discovered capabilities."""

    def __init__(
        self,
        config_source: ConfigSource | None = None,
        handshake_timeout: float | None = None,
        invoke_timeout: float | None = None,
    ) -> None:
        self._config_source = config_source
        self.handshake_timeout = app_config.HANDSHAKE_TIMEOUT_SECONDS if handshake_timeout is None else handshake_timeout
        self.invoke_timeout = app_config.INVOKE_TIMEOUT_SECONDS if invoke_timeout is None else invoke_timeout
        self._connections: dict[str, Connection] = {}
        self._invocations: dict[str, PendingInvocation] = {}
        self._background: set[asyncio.Task] = set()
        self._attempts: dict[str, int] = {}

    def set_config_source(self, config_source: ConfigSource) -> None:
        self._config_source = config_source

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self, config: ServerConfig) -> ConnectionInfo:
        """Launch and handshake a server. Never retries on failure."""
        if not config.enabled:
            logger.info(f"[{config.id}] Not connecting disabled server '{config.name}'")
            await self.disconnect(config.id)
            return ConnectionInfo(server_id=config.id, name=config.name)

        conn = self._connections.get(config.id)
        if conn is not None:
            in_flight = conn.connect_task is not None and not conn.connect_task.done()
            if conn.config == config and (in_flight or conn.status == ConnectionStatus.CONNECTED):
                if in_flight:
                    await asyncio.wait({conn.connect_task})
                return conn.info()
            await self.disconnect(config.id)

        conn = Connection(config=config, generation=self._attempts.get(config.id, 0) + 1)
        self._attempts[config.id] = conn.generation
        self._connections[config.id] = conn
        conn.status = ConnectionStatus.CONNECTING
        task = asyncio.create_task(self._establish(conn, conn.generation), name=f"mcp-connect-{config.id}")
        conn.connect_task = task
        # asyncio.wait does not raise if the task is abandoned (cancelled)
        await asyncio.wait({task})
        return conn.info()

    async def _establish(self, conn: Connection, generation: int) -> None:
        config = conn.config
        server_id = config.id

        def current() -> bool:
            return self._connections.get(server_id) is conn and conn.generation == generation

        channel = StdioChannel(
            server_id,
            config.command,
            sanitize_args(config.args),
            config.env,
            on_notification=lambda method: self._on_notification(conn, generation, method),
        )
        try:
            server_info, capabilities = await asyncio.wait_for(
                self._handshake(server_id, channel), timeout=self.handshake_timeout
            )
        except LaunchError as e:
            logger.error(f"[{server_id}] Launch failed: {e}")
            await channel.close()
            if current():
                self._set_error(conn, ToolErrorKind.LAUNCH_FAILURE, str(e))
            return
        except asyncio.TimeoutError:
            logger.error(f"[{server_id}] Handshake timed out after {self.handshake_timeout}s")
            await channel.close()
            if current():
                self._set_error(
                    conn, ToolErrorKind.HANDSHAKE_TIMEOUT,
                    f"No handshake response within {self.handshake_timeout:g}s",
                )
            return
        except asyncio.CancelledError:
            logger.info(f"[{server_id}] Connect abandoned")
            await channel.close()
            raise
        except Exception as e:
            # Remote errors, a dropped channel, or replies that fail validation
            logger.error(f"[{server_id}] Handshake failed: {e!r}")
            await channel.close()
            if current():
                self._set_error(conn, ToolErrorKind.LAUNCH_FAILURE, f"Handshake failed: {e}")
            return

        if not current():
            # Superseded while the handshake was in flight
            await channel.close()
            return

        conn.channel = channel
        conn.server_info = server_info
        conn.capabilities = capabilities
        conn.status = ConnectionStatus.CONNECTED
        conn.last_error = None
        conn.watch_task = asyncio.create_task(self._watch(conn, generation, channel))
        logger.info(f"[{server_id}] Connected to '{config.name}' with {len(capabilities)} capabilities")

    async def _handshake(self, server_id: str, channel: StdioChannel) -> tuple[dict | None, list[Capability]]:
        await channel.start()
        server_info = await channel.initialize()
        capabilities = await self._list_tools(server_id, channel)
        return server_info, capabilities

    async def _list_tools(self, server_id: str, channel: StdioChannel) -> list[Capability]:
        capabilities: list[Capability] = []
        seen: set[str] = set()
        cursor = None
        while True:
            page = await channel.list_tools_page(cursor)
            for entry in page.tools:
                capability = _capability(server_id, entry)
                if capability is None or capability.name in seen:
                    continue
                seen.add(capability.name)
                capabilities.append(capability)
            cursor = page.nextCursor
            if not cursor:
                return capabilities

    async def _watch(self, conn: Connection, generation: int, channel: StdioChannel) -> None:
        """Mark the server errored if its process goes away on its own."""
        await channel.wait_closed()
        if conn.generation != generation or conn.channel is not channel:
            return
        reason = channel.close_reason or "process exited"
        logger.warning(f"[{conn.config.id}] Server '{conn.config.name}' went away: {reason}")
        conn.channel = None
        conn.capabilities = []
        conn.status = ConnectionStatus.ERRORED
        conn.last_error = ToolServerError(kind=ToolErrorKind.PROCESS_EXITED, message=reason)
        self._fail_pending(conn.config.id, f"Connection lost: {reason}")
        # Reap the exited process and release the transport
        await channel.close()

    def _on_notification(self, conn: Connection, generation: int, method: str) -> None:
        if conn.generation != generation:
            return
        if method == "notifications/tools/list_changed":
            logger.info(f"[{conn.config.id}] Tool list changed, rediscovering")
            self._spawn(self.rediscover(conn.config.id))
        else:
            logger.debug(f"[{conn.config.id}] Notification {method}")

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _set_error(self, conn: Connection, kind: ToolErrorKind, message: str) -> None:
        conn.status = ConnectionStatus.ERRORED
        conn.last_error = ToolServerError(kind=kind, message=message)
        conn.capabilities = []
        conn.channel = None

    async def disconnect(self, server_id: str) -> ConnectionInfo:
        """Stop a server and release its connection. Idempotent."""
        conn = self._connections.pop(server_id, None)
        if conn is None:
            return ConnectionInfo(server_id=server_id)

        conn.generation += 1
        task, conn.connect_task = conn.connect_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

        self._fail_pending(server_id, "Invocation abandoned: server disconnected")
        channel, conn.channel = conn.channel, None
        conn.status = ConnectionStatus.DISCONNECTED
        conn.capabilities = []
        conn.server_info = None
        if channel is not None:
            await channel.close()
        watch, conn.watch_task = conn.watch_task, None
        if watch is not None and not watch.done():
            # Its channel is closed by now, so the watcher is finishing up
            await asyncio.wait({watch})
        logger.info(f"[{server_id}] Disconnected '{conn.config.name}'")
        return ConnectionInfo(server_id=server_id, name=conn.config.name)

    async def abandon_connect(self, server_id: str) -> bool:
        """Cancel an in-flight connect. Returns False if nothing was pending."""
        conn = self._connections.get(server_id)
        if conn is None or conn.connect_task is None or conn.connect_task.done():
            return False
        await self.disconnect(server_id)
        return True

    async def reconnect(self, server_id: str) -> ConnectionInfo:
        """Disconnect, then connect with the currently stored config."""
        config = self._config_source.get_server(server_id) if self._config_source else None
        if config is None:
            conn = self._connections.get(server_id)
            config = conn.config if conn else None
        await self.disconnect(server_id)
        if config is None:
            logger.warning(f"[{server_id}] Cannot reconnect: no stored configuration")
            return ConnectionInfo(server_id=server_id)
        return await self.connect(config)

    async def rediscover(self, server_id: str) -> ConnectionInfo:
        """Re-query the capability manifest and replace the list wholesale."""
        conn = self._connections.get(server_id)
        if conn is None or conn.status != ConnectionStatus.CONNECTED or conn.channel is None:
            return self.get_connection(server_id)
        generation, channel = conn.generation, conn.channel
        try:
            capabilities = await asyncio.wait_for(
                self._list_tools(server_id, channel), timeout=self.handshake_timeout
            )
        except Exception as e:
            logger.warning(f"[{server_id}] Rediscovery failed, keeping previous capabilities: {e!r}")
            return conn.info()
        if conn.generation == generation and conn.channel is channel:
            conn.capabilities = capabilities
            logger.info(f"[{server_id}] Rediscovered {len(capabilities)} capabilities")
        return conn.info()

    async def apply_config(self, config: ServerConfig) -> ConnectionInfo:
        """React to a stored config being created or edited."""
        if not config.enabled:
            return await self.disconnect(config.id)
        return await self.connect(config)

    async def forget(self, server_id: str) -> None:
        """Drop every trace of a deleted server."""
        await self.disconnect(server_id)
        self._attempts.pop(server_id, None)

    async def sync(self, configs: list[ServerConfig]) -> list[ConnectionInfo]:
        """Bring connections in line with the stored configs (startup)."""
        wanted = {c.id: c for c in configs if c.enabled}
        for server_id in list(self._connections):
            if server_id not in wanted:
                await self.disconnect(server_id)
        return list(await asyncio.gather(*(self.connect(c) for c in wanted.values())))

    async def shutdown(self) -> None:
        """Tear down every provider process."""
        server_ids = list(self._connections)
        if server_ids:
            logger.info(f"Shutting down {len(server_ids)} MCP server(s)")
        await asyncio.gather(*(self.disconnect(sid) for sid in server_ids))
        for task in list(self._background):
            task.cancel()
        self._background.clear()

    # -------------------------------------------------------------------------
    # Invocation
    # -------------------------------------------------------------------------

    def _failed(self, token: str, server_id: str, capability: str, kind: ToolErrorKind, message: str) -> InvocationResult:
        return InvocationResult(
            token=token,
            server_id=server_id,
            capability=capability,
            ok=False,
            error=ToolServerError(kind=kind, message=message),
        )

    def begin_invoke(self, server_id: str, capability: str, arguments: dict[str, Any] | None = None) -> str:
        """Start a tools/call and return its correlation token."""
        token = uuid.uuid4().hex
        pending = PendingInvocation(
            token=token,
            server_id=server_id,
            capability=capability,
            future=asyncio.get_running_loop().create_future(),
        )
        self._invocations[token] = pending

        conn = self._connections.get(server_id)
        if conn is None or conn.status != ConnectionStatus.CONNECTED or conn.channel is None:
            pending.future.set_result(self._failed(
                token, server_id, capability, ToolErrorKind.NOT_CONNECTED,
                f"Server '{server_id}' is not connected",
            ))
            return token
        if capability not in {c.name for c in conn.capabilities}:
            pending.future.set_result(self._failed(
                token, server_id, capability, ToolErrorKind.UNKNOWN_CAPABILITY,
                f"Server '{conn.config.name}' has no capability '{capability}'",
            ))
            return token

        pending.channel = conn.channel
        pending.task = asyncio.create_task(self._run_invocation(pending, arguments or {}))
        return token

    async def _run_invocation(self, pending: PendingInvocation, arguments: dict[str, Any]) -> None:
        token, server_id, capability = pending.token, pending.server_id, pending.capability
        logger.info(f"[{server_id}] Invoking {capability} (token={token[:8]})")
        outcome: InvocationResult | None = None
        try:
            outcome = await self._call(pending, arguments)
        except Exception as e:
            # Replies that fail validation, or anything else a provider can provoke
            logger.error(f"[{server_id}] Unusable reply from {capability}: {e!r}")
            outcome = self._failed(
                token, server_id, capability, ToolErrorKind.INVOCATION_FAILED,
                f"Invalid reply from server: {e}",
            )
        finally:
            if outcome is None:
                outcome = self._failed(token, server_id, capability, ToolErrorKind.INVOCATION_FAILED, "Invocation abandoned")
            if pending.future.done():
                logger.debug(f"[{server_id}] Discarding late result for abandoned token {token[:8]}")
            else:
                if outcome.error:
                    logger.warning(f"[{server_id}] {capability} failed: {outcome.error.message}")
                pending.future.set_result(outcome)

    async def _call(self, pending: PendingInvocation, arguments: dict[str, Any]) -> InvocationResult:
        token, server_id, capability = pending.token, pending.server_id, pending.capability
        try:
            result = await pending.channel.call_tool(capability, arguments, timeout=self.invoke_timeout)
        except asyncio.TimeoutError:
            return self._failed(
                token, server_id, capability, ToolErrorKind.INVOCATION_FAILED,
                f"Timed out after {self.invoke_timeout:g}s",
            )
        except RemoteError as e:
            return self._failed(token, server_id, capability, ToolErrorKind.INVOCATION_FAILED, e.message)
        except ChannelClosedError as e:
            return self._failed(token, server_id, capability, ToolErrorKind.INVOCATION_FAILED, f"Connection lost: {e}")
        if result.isError:
            return self._failed(
                token, server_id, capability, ToolErrorKind.INVOCATION_FAILED,
                _result_text(result) or "Tool reported an error",
            )
        return InvocationResult(
            token=token,
            server_id=server_id,
            capability=capability,
            ok=True,
            content=[item.model_dump(mode="json", by_alias=True, exclude_none=True) for item in result.content],
            structured_content=result.structuredContent,
        )

    async def wait_invocation(self, token: str) -> InvocationResult:
        """Wait for the result of a started invocation."""
        pending = self._invocations.get(token)
        if pending is None:
            return self._failed(token, "", "", ToolErrorKind.INVOCATION_FAILED, "Unknown invocation token")
        try:
            return await pending.future
        finally:
            self._invocations.pop(token, None)

    async def invoke(self, server_id: str, capability: str, arguments: dict[str, Any] | None = None) -> InvocationResult:
        """Call a capability and wait for its typed result."""
        return await self.wait_invocation(self.begin_invoke(server_id, capability, arguments))

    def _settle(self, pending: PendingInvocation, message: str) -> None:
        """Fail a pending invocation, stop its request and forget its token."""
        self._invocations.pop(pending.token, None)
        if not pending.future.done():
            pending.future.set_result(self._failed(
                pending.token, pending.server_id, pending.capability,
                ToolErrorKind.INVOCATION_FAILED, message,
            ))
        if pending.task is not None and not pending.task.done():
            # The session drops the reply of a cancelled request when it arrives
            pending.task.cancel()

    async def abandon(self, token: str) -> bool:
        """Give up on an invocation. Its eventual reply is discarded."""
        pending = self._invocations.get(token)
        if pending is None or pending.future.done():
            return False
        self._settle(pending, "Invocation abandoned")
        logger.info(f"[{pending.server_id}] Abandoned {pending.capability} (token={token[:8]})")
        return True

    def _fail_pending(self, server_id: str, message: str) -> None:
        for pending in list(self._invocations.values()):
            if pending.server_id == server_id and not pending.future.done():
                self._settle(pending, message)

    def pending_invocations(self, server_id: str | None = None) -> list[str]:
        return [
            token for token, p in self._invocations.items()
            if not p.future.done() and (server_id is None or p.server_id == server_id)
        ]

    # -------------------------------------------------------------------------
    # Queries (snapshots only)
    # -------------------------------------------------------------------------

    def get_connection(self, server_id: str) -> ConnectionInfo:
        conn = self._connections.get(server_id)
        if conn is None:
            return ConnectionInfo(server_id=server_id)
        return conn.info()

    def list_connections(self) -> list[ConnectionInfo]:
        return [conn.info() for conn in self._connections.values()]

    def list_capabilities(self, server_id: str) -> list[Capability]:
        """Capabilities of a connected server; empty for any other state."""
        conn = self._connections.get(server_id)
        if conn is None or conn.status != ConnectionStatus.CONNECTED:
            return []
        return list(conn.capabilities)

    def list_all_connected(self) -> dict[str, list[Capability]]:
        return {
            server_id: list(conn.capabilities)
            for server_id, conn in self._connections.items()
            if conn.status == ConnectionStatus.CONNECTED
        }


# Singleton instance
connection_manager = ConnectionManager()
