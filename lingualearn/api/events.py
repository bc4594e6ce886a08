from __future__ import annotations

import asyncio
import json
from typing import AsyncIterator

from fastapi import APIRouter
from fastapi.responses import StreamingResponse

from lingualearn.core.event_bus import EventBus, event_bus

router = APIRouter(prefix="/events", tags=["events"])


async def sse_lines(bus: EventBus, queue: asyncio.Queue, event_type: str | None = None) -> AsyncIterator[str]:
    """Render queued bus events as server-sent-event frames; unsubscribes when the client goes away."""
    try:
        while True:
            event = await queue.get()
            if event_type is not None and event["type"] != event_type:
                continue
            yield f"event: {event['type']}\ndata: {json.dumps(event)}\n\n"
    finally:
        await bus.unsubscribe(queue)


@router.get("/history")
async def events_history(event_type: str | None = None):
    return {"events": event_bus.history(event_type)}


@router.get("/stream")
async def stream_events(event_type: str | None = None, replay_last: int = 20):
    queue = await event_bus.subscribe(replay_last=replay_last)
    return StreamingResponse(sse_lines(event_bus, queue, event_type), media_type="text/event-stream")
