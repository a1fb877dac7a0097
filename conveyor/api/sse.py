"""Server-Sent Event endpoints."""

from __future__ import annotations
import json
from typing import Iterator, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from conveyor.api.routes import get_user_id
from conveyor.config import get_history_default_limit
from conveyor.events.bus import EventBus
from conveyor.models import ConveyorEvent

router = APIRouter(tags=["events"])


def format_event(event: ConveyorEvent) -> str:
    return "".join(
        [
            f"id: {event.id}\n",
            f"event: {event.type.value}\n",
            f"data: {json.dumps(event.to_wire())}\n\n",
        ]
    )


def _event_iterator(bus: EventBus, user_id: str, replay: int, follow: bool) -> Iterator[bytes]:
    yield b": connected\n\n"
    for event in bus.stream(user_id, replay=replay, follow=follow):
        if event is None:
            yield b": keep-alive\n\n"
            continue
        yield format_event(event).encode("utf-8")


@router.get("/events", response_class=StreamingResponse)
def stream_events(
    request: Request,
    user_id: str = Depends(get_user_id),
    replay: int = Query(0, ge=0, le=500),
    follow: bool = Query(True),
) -> StreamingResponse:
    """Live events for the user; ?replay=N backfills the last N first. follow=false closes after replay."""
    return StreamingResponse(
        _event_iterator(request.app.state.bus, user_id, replay, follow),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@router.get("/events/history")
def event_history(
    request: Request,
    user_id: str = Depends(get_user_id),
    limit: Optional[int] = Query(None, ge=1, le=1000),
) -> dict:
    events = request.app.state.bus.history(user_id, limit or get_history_default_limit())
    return {"events": [e.to_wire() for e in events]}
