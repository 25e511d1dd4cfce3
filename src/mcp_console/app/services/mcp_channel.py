"""Private MCP session with one tool-server process.

Built on the MCP SDK's stdio transport (``stdio_client``) and
``ClientSession``. The SDK's context managers have to be entered and exited
by the same task, so every channel owns a runner task that holds them open
until ``close()``; requests are sent from any task through the live session.

Replies are validated here and surface as the channel's own exceptions
(RemoteError, ChannelClosedError, asyncio.TimeoutError). Tool manifests are
parsed leniently: entries are handed back raw so the caller can skip a bad
one without losing the rest of the page.
"""

import asyncio
import os
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Callable, Iterator, Optional, TypeVar

import anyio
import httpx
from mcp import ClientSession, StdioServerParameters, types
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from pydantic import BaseModel, Field

from mcp_console import __version__
from mcp_console.app.services.logging_service import get_logger

logger = get_logger(__name__)

NotificationHandler = Callable[[str], None]

ResultT = TypeVar("ResultT", bound=BaseModel)


class ChannelError(Exception):
    """Base class for channel failures."""


class LaunchError(ChannelError):
    """The provider process could not be started."""


class ChannelClosedError(ChannelError):
    """The process exited or the channel was closed while a request was pending."""


class RemoteError(ChannelError):
    """The provider answered with a JSON-RPC error object."""

    def __init__(self, code: int | None, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class ToolPage(BaseModel):
    """One page of a tools/list reply, entries unvalidated."""

    tools: list[Any] = Field(default_factory=list)
    nextCursor: Optional[str] = None


class ProviderSession(ClientSession):
    """ClientSession that reports when the provider's stdout ends."""

    def __init__(self, read_stream, write_stream, on_eof: Callable[[], None], **kwargs):
        super().__init__(read_stream, write_stream, **kwargs)
        self._eof_callback = on_eof

    async def _receive_loop(self) -> None:
        try:
            await super()._receive_loop()
        finally:
            self._eof_callback()


class StdioChannel:
    """One provider process and the MCP session spoken over its stdio."""

    def __init__(
        self,
        server_id: str,
        command: str,
        args: list[str],
        env: dict[str, str] | None = None,
        on_notification: NotificationHandler | None = None,
    ):
        self.server_id = server_id
        self.command = command
        self._params = StdioServerParameters(
            command=command,
            args=args,
            env={**os.environ, **(env or {})},
        )
        self._on_notification = on_notification
        self._session: ClientSession | None = None
        self._started: asyncio.Future | None = None
        self._runner: asyncio.Task | None = None
        self._stop = asyncio.Event()
        self._closed = asyncio.Event()
        self._close_reason: str | None = None

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    @property
    def close_reason(self) -> str | None:
        return self._close_reason

    async def wait_closed(self) -> None:
        await self._closed.wait()

    # -- session runner ----------------------------------------------------

    async def start(self) -> None:
        """Launch the process and open the session. Raises LaunchError."""
        if self._runner is None:
            self._started = asyncio.get_running_loop().create_future()
            self._runner = asyncio.create_task(self._run(), name=f"mcp-session-{self.server_id}")
        await asyncio.shield(self._started)

    async def _run(self) -> None:
        try:
            async with stdio_client(self._params) as (read_stream, write_stream):
                async with ProviderSession(
                    read_stream,
                    write_stream,
                    on_eof=self._on_eof,
                    message_handler=self._on_message,
                    client_info=types.Implementation(name="mcp-console", version=__version__),
                ) as session:
                    self._session = session
                    self._resolve_start()
                    logger.info(f"[{self.server_id}] Session open on '{self.command}'")
                    await self._stop.wait()
        except Exception as e:
            if self._resolve_start(LaunchError(f"Could not start '{self.command}': {e}")):
                return
            logger.warning(f"[{self.server_id}] Session ended with error: {e!r}")
        finally:
            self._session = None
            self._mark_closed(self._close_reason or "session ended")
            self._resolve_start(ChannelClosedError("channel closed before the session opened"))

    def _resolve_start(self, error: Exception | None = None) -> bool:
        if self._started is None or self._started.done():
            return False
        if error is None:
            self._started.set_result(None)
        else:
            self._started.set_exception(error)
        return True

    def _on_eof(self) -> None:
        if not self._stop.is_set():
            self._mark_closed("process exited")

    async def _on_message(self, message) -> None:
        if isinstance(message, Exception):
            # Banner text on stdout, replies for ids nobody is waiting on
            logger.debug(f"[{self.server_id}] Ignoring unreadable message: {message}")
            return
        if not isinstance(message, types.ServerNotification):
            return
        method = message.root.method
        if self._on_notification is None:
            return
        try:
            self._on_notification(method)
        except Exception as e:
            logger.warning(f"[{self.server_id}] Notification handler failed for {method}: {e}")

    def _mark_closed(self, reason: str) -> None:
        if self._closed.is_set():
            return
        self._close_reason = reason
        self._closed.set()
        logger.info(f"[{self.server_id}] Channel closed: {reason}")

    # -- requests ----------------------------------------------------------

    def _live_session(self) -> ClientSession:
        if self._session is None or self.is_closed:
            raise ChannelClosedError(self._close_reason or "session is not open")
        return self._session

    def _translate(self, error: McpError) -> Exception:
        data = error.error
        if data.code == httpx.codes.REQUEST_TIMEOUT:
            return asyncio.TimeoutError(data.message)
        if self.is_closed:
            return ChannelClosedError(self._close_reason or data.message)
        return RemoteError(data.code, data.message, data.data)

    @contextmanager
    def _translated_errors(self) -> Iterator[None]:
        try:
            yield
        except McpError as e:
            raise self._translate(e) from e
        except (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream) as e:
            raise ChannelClosedError(self._close_reason or "session closed") from e

    async def _send(self, request: types.ClientRequest, result_type: type[ResultT], timeout: float | None = None) -> ResultT:
        session = self._live_session()
        with self._translated_errors():
            return await session.send_request(
                request,
                result_type,
                request_read_timeout_seconds=timedelta(seconds=timeout) if timeout is not None else None,
            )

    async def initialize(self) -> dict | None:
        """Run the initialize handshake. Returns the provider's serverInfo."""
        session = self._live_session()
        with self._translated_errors():
            result = await session.initialize()
        return result.serverInfo.model_dump(exclude_none=True) if result.serverInfo else None

    async def list_tools_page(self, cursor: str | None = None) -> ToolPage:
        request = types.ClientRequest(types.ListToolsRequest(
            method="tools/list",
            params=types.PaginatedRequestParams(cursor=cursor) if cursor else None,
        ))
        return await self._send(request, ToolPage)

    async def call_tool(self, name: str, arguments: dict[str, Any], timeout: float | None = None) -> types.CallToolResult:
        """tools/call, bounded by ``timeout`` seconds."""
        request = types.ClientRequest(types.CallToolRequest(
            method="tools/call",
            params=types.CallToolRequestParams(name=name, arguments=arguments),
        ))
        return await self._send(request, types.CallToolResult, timeout)

    # -- shutdown ----------------------------------------------------------

    async def close(self) -> None:
        """End the session. The transport closes stdin, then terminates the process."""
        self._close_reason = self._close_reason or "closed by client"
        self._stop.set()
        if self._runner is not None:
            # asyncio.wait so a cancelled caller cannot interrupt the transport's cleanup
            await asyncio.wait({self._runner})
        self._mark_closed(self._close_reason)
