"""Response streams for in-flight model responses.

Each response lifecycle gets its own typed queue and a single consumer task
that applies queued items to a private StreamAssembler. Producers only
enqueue; readers take snapshots and wait on the update signal (no polling).
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from mcp_console.app.config import STREAM_TTL_SECONDS
from mcp_console.app.models.streaming import AssemblerState, StreamEvent, StreamStatus
from mcp_console.app.services.logging_service import conversation_logging, get_logger, release_conversation_log
from mcp_console.app.services.stream_assembler import StreamAssembler

logger = get_logger(__name__)


class StreamItemType(Enum):
    EVENT = "event"
    FINALIZE = "finalize"
    ABORT = "abort"


@dataclass(frozen=True)
class StreamItem:
    type: StreamItemType
    event: Optional[StreamEvent] = None


@dataclass
class ResponseStream:
    """Queue + consumer loop for one response being assembled."""
    conversation_id: str
    assembler: StreamAssembler = field(init=False)
    cancelled: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finalized_at: Optional[datetime] = None

    _queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    _update_event: asyncio.Event = field(default_factory=asyncio.Event)
    _closed_event: asyncio.Event = field(default_factory=asyncio.Event)
    _consumer: Optional[asyncio.Task] = None

    def __post_init__(self) -> None:
        self.assembler = StreamAssembler(label=self.conversation_id)

    def start(self) -> None:
        """Reset block state and start the consumer loop."""
        if self._consumer is not None:
            return
        self.assembler.reset()
        self._consumer = asyncio.create_task(self._consume())
        logger.info(f"[{self.conversation_id}] Response stream started")

    @property
    def state(self) -> AssemblerState:
        return self.assembler.state

    @property
    def is_open(self) -> bool:
        return not self._closed_event.is_set()

    def publish(self, event: StreamEvent) -> bool:
        """Queue one backend event. Returns False once the stream is closed."""
        if not self.is_open:
            self.assembler.dropped_events += 1
            return False
        self._queue.put_nowait(StreamItem(StreamItemType.EVENT, event))
        return True

    def finish(self) -> None:
        """Queue the backend's finalize signal behind any pending events."""
        if self.is_open:
            self._queue.put_nowait(StreamItem(StreamItemType.FINALIZE))

    def cancel(self) -> None:
        """User abort: finalize immediately, discarding events still queued."""
        if not self.is_open:
            return
        self.cancelled = True
        self._discard_queued()
        self._queue.put_nowait(StreamItem(StreamItemType.ABORT))

    async def _consume(self) -> None:
        with conversation_logging(self.conversation_id):
            try:
                while True:
                    item: StreamItem = await self._queue.get()
                    self._queue.task_done()
                    if item.type == StreamItemType.EVENT and item.event is not None:
                        self.assembler.handle(item.event)
                        self._update_event.set()
                        continue
                    if item.type == StreamItemType.ABORT:
                        logger.info(f"[{self.conversation_id}] Response cancelled")
                    break
            except asyncio.CancelledError:
                logger.warning(f"[{self.conversation_id}] Stream consumer cancelled")
                raise
            finally:
                self._close()

    def _discard_queued(self) -> None:
        while not self._queue.empty():
            item: StreamItem = self._queue.get_nowait()
            self._queue.task_done()
            if item.type == StreamItemType.EVENT:
                self.assembler.dropped_events += 1

    def _close(self) -> None:
        self.assembler.finalize()
        # Events queued behind the finalize signal arrived too late
        self._discard_queued()
        self.finalized_at = datetime.now(timezone.utc)
        self._closed_event.set()
        self._update_event.set()
        logger.info(
            f"[{self.conversation_id}] Response finalized: {self.assembler.block_count()} blocks, "
            f"{len(self.assembler.text)} chars text, {self.assembler.dropped_events} dropped events"
        )

    async def flush(self) -> None:
        """Wait until every queued item has been applied, or the stream has closed."""
        if not self.is_open:
            return
        joined = asyncio.create_task(self._queue.join())
        closed = asyncio.create_task(self._closed_event.wait())
        _, pending = await asyncio.wait({joined, closed}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()

    async def wait_closed(self, timeout: float | None = None) -> bool:
        """Wait until the stream is finalized. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._closed_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def wait_for_update(self, timeout: float = 30.0) -> bool:
        """Wait for new block data. Returns True if signaled, False if timeout."""
        self._update_event.clear()
        if not self.is_open:
            return True
        try:
            await asyncio.wait_for(self._update_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def stop(self) -> None:
        """Tear down the consumer task (manager removal or shutdown)."""
        if self._consumer and not self._consumer.done():
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass

    def is_stale(self, max_age_seconds: int = STREAM_TTL_SECONDS) -> bool:
        """Check if stream is finalized and older than max_age."""
        if self.is_open or self.finalized_at is None:
            return False
        age = (datetime.now(timezone.utc) - self.finalized_at).total_seconds()
        return age > max_age_seconds

    def status(self) -> StreamStatus:
        return StreamStatus(
            conversation_id=self.conversation_id,
            active=self.is_open,
            state=self.state,
            cancelled=self.cancelled,
            blocks_count=self.assembler.block_count(),
            text_length=len(self.assembler.text),
            dropped_events=self.assembler.dropped_events,
            started_at=self.started_at.isoformat(),
        )


class ResponseStreamManager:
    """Owns one response stream per conversation."""

    def __init__(self) -> None:
        self._streams: dict[str, ResponseStream] = {}
        self._lock = asyncio.Lock()
        self._cleanup_task: asyncio.Task | None = None
        self._ttl_seconds = STREAM_TTL_SECONDS

    def start_cleanup_task(self) -> None:
        """Start the background cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.info("Started response stream cleanup task")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(60)
            await self._cleanup_stale_streams()

    async def _cleanup_stale_streams(self) -> None:
        async with self._lock:
            stale = [cid for cid, s in self._streams.items() if s.is_stale(self._ttl_seconds)]
        for conversation_id in stale:
            logger.debug(f"[{conversation_id}] Removing stale response stream")
            await self.remove_stream(conversation_id)

    async def create_stream(self, conversation_id: str) -> ResponseStream:
        """Begin a new response; any previous stream for the conversation is cancelled."""
        async with self._lock:
            previous = self._streams.pop(conversation_id, None)
            if previous is not None:
                previous.cancel()
                await previous.stop()
            stream = ResponseStream(conversation_id=conversation_id)
            stream.start()
            self._streams[conversation_id] = stream
            logger.info(f"[{conversation_id}] Created response stream, total streams: {len(self._streams)}")
            return stream

    async def get_stream(self, conversation_id: str) -> Optional[ResponseStream]:
        async with self._lock:
            return self._streams.get(conversation_id)

    async def remove_stream(self, conversation_id: str) -> bool:
        async with self._lock:
            stream = self._streams.pop(conversation_id, None)
        if stream is None:
            return False
        stream.cancel()
        await stream.stop()
        release_conversation_log(conversation_id)
        return True

    def has_active_stream(self, conversation_id: str) -> bool:
        stream = self._streams.get(conversation_id)
        return stream is not None and stream.is_open

    def get_all_active(self) -> list[StreamStatus]:
        return [s.status() for s in self._streams.values() if s.is_open]

    async def shutdown(self) -> None:
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        for conversation_id in list(self._streams):
            await self.remove_stream(conversation_id)


# Singleton instance
response_stream_manager = ResponseStreamManager()
