"""Tool-server (MCP) models.

A ServerConfig is the persisted launch record for one local stdio provider.
Connection state and discovered capabilities are runtime-only and are
exposed through ConnectionInfo snapshots.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, computed_field, field_validator

from mcp_console.app.utils.args import parse_args_string


class ServerConfig(BaseModel):
    """Persisted tool-server configuration."""

    id: str = Field(..., description="Unique server identifier")
    name: str = Field(..., description="Display name")
    command: str = Field(..., description="Command to execute")
    args: list[str] = Field(default_factory=list, description="Arguments to pass to the command")
    env: dict[str, str] | None = Field(default=None, description="Environment overrides")
    enabled: bool = Field(default=True, description="Whether this server should be running")


def _coerce_args(value: Any) -> Any:
    # The settings form submits args as one comma-separated string
    if isinstance(value, str):
        return parse_args_string(value)
    return value


class ServerConfigCreate(BaseModel):
    """Request to add a tool server."""

    name: str = Field(..., min_length=1)
    command: str = Field(..., min_length=1)
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    enabled: bool = True

    @field_validator("args", mode="before")
    @classmethod
    def _split_args(cls, value: Any) -> Any:
        return _coerce_args(value)

    @field_validator("name", "command")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class ServerConfigUpdate(BaseModel):
    """Request to edit a tool server. Unset fields keep their stored value."""

    name: str | None = None
    command: str | None = None
    args: list[str] | None = None
    env: dict[str, str] | None = None
    enabled: bool | None = None

    @field_validator("args", mode="before")
    @classmethod
    def _split_args(cls, value: Any) -> Any:
        return _coerce_args(value)


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERRORED = "errored"


class ToolErrorKind(str, Enum):
    LAUNCH_FAILURE = "launch_failure"
    HANDSHAKE_TIMEOUT = "handshake_timeout"
    NOT_CONNECTED = "not_connected"
    UNKNOWN_CAPABILITY = "unknown_capability"
    INVOCATION_FAILED = "invocation_failed"
    TRANSPORT_DROPPED_EVENT = "transport_dropped_event"
    STALE_SELECTION = "stale_selection"
    PROCESS_EXITED = "process_exited"


USER_VISIBLE_ERRORS = frozenset({
    ToolErrorKind.LAUNCH_FAILURE,
    ToolErrorKind.HANDSHAKE_TIMEOUT,
    ToolErrorKind.INVOCATION_FAILED,
    ToolErrorKind.PROCESS_EXITED,
})


class ToolServerError(BaseModel):
    """Typed failure returned from connection manager operations."""

    kind: ToolErrorKind
    message: str = ""

    @computed_field
    @property
    def user_visible(self) -> bool:
        return self.kind in USER_VISIBLE_ERRORS


class Capability(BaseModel):
    """One named, schema-described operation exposed by a tool server."""

    server_id: str
    name: str
    description: str = ""
    input_schema: dict = Field(default_factory=dict)


class ConnectionInfo(BaseModel):
    """Read-only snapshot of a server's runtime connection."""

    server_id: str
    name: str = ""
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    last_error: ToolServerError | None = None
    capabilities: list[Capability] = Field(default_factory=list)
    server_info: dict | None = Field(default=None, description="serverInfo from the initialize handshake")
    attempt: int = Field(default=0, description="Connect attempt counter for this server")


class ServerState(BaseModel):
    """A stored configuration together with its live connection snapshot."""

    config: ServerConfig
    connection: ConnectionInfo


class ServerStateList(BaseModel):
    servers: list[ServerState] = Field(default_factory=list)


class InvokeRequest(BaseModel):
    """Request to invoke a capability on a connected server."""

    capability: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class InvocationResult(BaseModel):
    """Outcome of a tools/call, success or typed failure."""

    token: str
    server_id: str
    capability: str
    ok: bool
    content: list[dict] = Field(default_factory=list)
    structured_content: dict | None = None
    error: ToolServerError | None = None
