"""Streams router - feed backend events into a response and read its blocks back."""

import asyncio
import json
from typing import AsyncGenerator, Union

from fastapi import APIRouter, HTTPException
from sse_starlette.sse import EventSourceResponse

from mcp_console.app.models.streaming import StreamEvent, StreamStatus
from mcp_console.app.services.logging_service import get_logger
from mcp_console.app.services.response_stream import ResponseStream, response_stream_manager

logger = get_logger(__name__)

router = APIRouter(prefix="/streams", tags=["streams"])

FINALIZE_WAIT_SECONDS = 5.0


async def _require(conversation_id: str) -> ResponseStream:
    stream = await response_stream_manager.get_stream(conversation_id)
    if stream is None:
        raise HTTPException(status_code=404, detail="No response stream for this conversation")
    return stream


def _view(stream: ResponseStream) -> dict:
    return {
        "status": stream.status().model_dump(mode="json"),
        "snapshot": stream.assembler.snapshot().model_dump(mode="json"),
    }


@router.get("", response_model=list[StreamStatus])
async def list_active_streams() -> list[StreamStatus]:
    """Responses that are still assembling."""
    return response_stream_manager.get_all_active()


@router.post("/{conversation_id}", response_model=StreamStatus, status_code=201)
async def start_stream(conversation_id: str) -> StreamStatus:
    """Begin a new response. Any previous response for the conversation is cancelled."""
    stream = await response_stream_manager.create_stream(conversation_id)
    return stream.status()


@router.get("/{conversation_id}")
async def get_stream(conversation_id: str) -> dict:
    """Current block state of the response."""
    return _view(await _require(conversation_id))


@router.delete("/{conversation_id}")
async def remove_stream(conversation_id: str) -> dict:
    if not await response_stream_manager.remove_stream(conversation_id):
        raise HTTPException(status_code=404, detail="No response stream for this conversation")
    return {"ok": True}


@router.post("/{conversation_id}/events")
async def publish_events(conversation_id: str, body: Union[list[StreamEvent], StreamEvent]) -> dict:
    """Queue one or more backend events, then wait for them to be applied."""
    stream = await _require(conversation_id)
    events = body if isinstance(body, list) else [body]
    accepted = sum(1 for event in events if stream.publish(event))
    await stream.flush()
    return {
        "accepted": accepted,
        "rejected": len(events) - accepted,
        "dropped_events": stream.assembler.dropped_events,
    }


@router.post("/{conversation_id}/finalize")
async def finalize_stream(conversation_id: str) -> dict:
    """The backend finished. Open blocks are force-closed with what they have."""
    stream = await _require(conversation_id)
    stream.finish()
    await stream.wait_closed(timeout=FINALIZE_WAIT_SECONDS)
    return _view(stream)


@router.post("/{conversation_id}/cancel")
async def cancel_stream(conversation_id: str) -> dict:
    """User abort: finalize now and discard anything still queued."""
    stream = await _require(conversation_id)
    stream.cancel()
    await stream.wait_closed(timeout=FINALIZE_WAIT_SECONDS)
    return _view(stream)


@router.get("/{conversation_id}/events")
async def stream_updates(conversation_id: str) -> EventSourceResponse:
    """SSE feed of the response.

    Events:
    - 'snapshot': full block state, sent on connect and after each update
    - 'done': the response was finalized (or cancelled)
    """
    stream = await _require(conversation_id)

    async def generate_events() -> AsyncGenerator[dict, None]:
        try:
            while True:
                yield {"event": "snapshot", "data": json.dumps(_view(stream))}
                if not stream.is_open:
                    yield {
                        "event": "done",
                        "data": json.dumps({"conversation_id": conversation_id, "cancelled": stream.cancelled}),
                    }
                    break
                await stream.wait_for_update(timeout=30.0)
        except asyncio.CancelledError:
            logger.info(f"[SSE] Stream client disconnected for conversation {conversation_id}")
            raise

    return EventSourceResponse(generate_events())
