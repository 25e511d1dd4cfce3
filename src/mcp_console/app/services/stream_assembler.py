"""Streaming response assembler.

Rebuilds the typed blocks of one in-flight model response from an
interleaved open/append/close event sequence.

Lifecycle: idle -> streaming -> finalized. ``reset()`` returns to idle and
discards every block. Malformed sequences never raise: duplicate opens are
ignored, and appends/closes that target a missing or closed index are
dropped and counted.

Text is special: besides its per-index block, every text fragment is also
appended to one running buffer, since rendering only needs the full text.
"""

from typing import Any

from mcp_console.app.models.streaming import (
    AssemblerSnapshot,
    AssemblerState,
    BlockKind,
    BlockState,
    BlockView,
    StreamEvent,
    StreamEventType,
    StreamingBlock,
)
from mcp_console.app.services.logging_service import get_logger

logger = get_logger(__name__)


class StreamAssembler:
    """Block state for exactly one response at a time."""

    def __init__(self, label: str = "stream") -> None:
        self.label = label
        self.state = AssemblerState.IDLE
        self._blocks: dict[BlockKind, dict[int, StreamingBlock]] = {kind: {} for kind in BlockKind}
        self._text: list[str] = []
        self.dropped_events = 0

    def reset(self) -> None:
        """Discard all block state. Safe to call repeatedly."""
        self.state = AssemblerState.IDLE
        self._blocks = {kind: {} for kind in BlockKind}
        self._text = []
        self.dropped_events = 0

    def _drop(self, reason: str, kind: BlockKind, index: int) -> None:
        self.dropped_events += 1
        logger.debug(f"[{self.label}] Dropped event ({reason}) for {kind.value}[{index}]")

    def open(self, kind: BlockKind, index: int) -> None:
        if self.state == AssemblerState.FINALIZED:
            self._drop("finalized", kind, index)
            return
        existing = self._blocks[kind].get(index)
        if existing is not None:
            if existing.state == BlockState.CLOSED:
                self._drop("reopen of closed block", kind, index)
            return
        self.state = AssemblerState.STREAMING
        self._blocks[kind][index] = StreamingBlock(index=index, kind=kind)

    def append(self, kind: BlockKind, index: int, fragment: str | dict[str, Any] | None) -> None:
        if self.state == AssemblerState.FINALIZED:
            self._drop("finalized", kind, index)
            return
        block = self._blocks[kind].get(index)
        if block is None:
            self._drop("append to unopened block", kind, index)
            return
        if block.state == BlockState.CLOSED:
            self._drop("append to closed block", kind, index)
            return
        if fragment is None:
            return
        block.fragments.append(fragment)
        if kind == BlockKind.TEXT and isinstance(fragment, str):
            self._text.append(fragment)

    def close(self, kind: BlockKind, index: int) -> None:
        if self.state == AssemblerState.FINALIZED:
            self._drop("finalized", kind, index)
            return
        block = self._blocks[kind].get(index)
        if block is None or block.state == BlockState.CLOSED:
            self._drop("close of missing or closed block", kind, index)
            return
        block.state = BlockState.CLOSED

    def handle(self, event: StreamEvent) -> None:
        """Apply one backend event."""
        if event.event_type == StreamEventType.OPEN:
            self.open(event.kind, event.index)
            if event.payload is not None:
                self.append(event.kind, event.index, event.payload)
        elif event.event_type == StreamEventType.APPEND:
            self.append(event.kind, event.index, event.payload)
        elif event.event_type == StreamEventType.CLOSE:
            if event.payload is not None:
                self.append(event.kind, event.index, event.payload)
            self.close(event.kind, event.index)

    def finalize(self) -> None:
        """Close every open block, keeping partial content, and stop accepting events."""
        if self.state == AssemblerState.FINALIZED:
            return
        forced = 0
        for collection in self._blocks.values():
            for block in collection.values():
                if block.state == BlockState.OPEN:
                    block.state = BlockState.CLOSED
                    block.forced_close = True
                    forced += 1
        self.state = AssemblerState.FINALIZED
        if forced:
            logger.info(f"[{self.label}] Finalized with {forced} block(s) force-closed")

    # -- queries ---------------------------------------------------------

    @property
    def text(self) -> str:
        """The running text buffer."""
        return "".join(self._text)

    def blocks(self, kind: BlockKind) -> list[StreamingBlock]:
        """Blocks of one kind in index order."""
        collection = self._blocks[kind]
        return [collection[i] for i in sorted(collection)]

    def get_block(self, kind: BlockKind, index: int) -> StreamingBlock | None:
        return self._blocks[kind].get(index)

    def closed_blocks(self, kind: BlockKind) -> list[StreamingBlock]:
        return [b for b in self.blocks(kind) if b.state == BlockState.CLOSED]

    def block_count(self) -> int:
        return sum(len(c) for c in self._blocks.values())

    def snapshot(self) -> AssemblerSnapshot:
        return AssemblerSnapshot(
            state=self.state,
            text=self.text,
            blocks={
                kind: [
                    BlockView(
                        index=b.index,
                        kind=b.kind,
                        state=b.state,
                        content=b.content,
                        forced_close=b.forced_close,
                    )
                    for b in self.blocks(kind)
                ]
                for kind in BlockKind
            },
            dropped_events=self.dropped_events,
        )
