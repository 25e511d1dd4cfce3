"""Streaming response models.

Blocks are identified by a producer-assigned index within their kind.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class BlockKind(str, Enum):
    REASONING = "reasoning"
    TOOL_INVOCATION = "tool_invocation"
    TOOL_RESULT = "tool_result"
    TEXT = "text"


class BlockState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class AssemblerState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINALIZED = "finalized"


class StreamEventType(str, Enum):
    OPEN = "open"
    APPEND = "append"
    CLOSE = "close"


class StreamEvent(BaseModel):
    """One record of the inference backend's event stream."""

    kind: BlockKind
    index: int = Field(..., ge=0)
    event_type: StreamEventType
    payload: str | dict[str, Any] | None = None


class StreamingBlock(BaseModel):
    """One block under construction."""

    index: int
    kind: BlockKind
    state: BlockState = BlockState.OPEN
    fragments: list[str | dict[str, Any]] = Field(default_factory=list)
    forced_close: bool = Field(default=False, description="Closed by finalize() rather than a close event")

    @property
    def content(self) -> str | dict[str, Any]:
        """Concatenated text, or the merged payload once any fragment is structured."""
        if any(isinstance(f, dict) for f in self.fragments):
            merged: dict[str, Any] = {}
            text_parts = []
            for fragment in self.fragments:
                if isinstance(fragment, dict):
                    merged.update(fragment)
                else:
                    text_parts.append(fragment)
            if text_parts:
                merged.setdefault("partial", "".join(text_parts))
            return merged
        return "".join(self.fragments)


class BlockView(BaseModel):
    """Serialized block for API consumers."""

    index: int
    kind: BlockKind
    state: BlockState
    content: str | dict[str, Any]
    forced_close: bool = False


class AssemblerSnapshot(BaseModel):
    """Read-only view of an assembler, blocks grouped by kind in index order."""

    state: AssemblerState
    text: str = ""
    blocks: dict[BlockKind, list[BlockView]] = Field(default_factory=dict)
    dropped_events: int = 0


class StreamStatus(BaseModel):
    conversation_id: str
    active: bool
    state: AssemblerState
    cancelled: bool = False
    blocks_count: int = 0
    text_length: int = 0
    dropped_events: int = 0
    started_at: str | None = None
