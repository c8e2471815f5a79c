from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime

from fastapi import APIRouter, Query, Request
from starlette.responses import StreamingResponse

from realtime.bus import EventBus


router = APIRouter()

HEARTBEAT_SECONDS = 15


def _format(event_type: str, data: dict) -> str:
    payload = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    return f"event: {event_type}\ndata: {payload}\n\n"


@router.get("/sse")
async def sse(
    request: Request, types: str | None = Query(default=None)
) -> StreamingResponse:
    bus: EventBus = request.app.state.bus
    wanted = {t.strip() for t in types.split(",") if t.strip()} if types else None
    queue = await bus.subscribe()

    async def event_stream():
        try:
            yield _format("heartbeat", {})
            while True:
                if await request.is_disconnected():
                    return
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
                except asyncio.TimeoutError:
                    ts = datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")
                    yield _format("heartbeat", {"ts": ts})
                    continue
                if wanted is not None and event.type not in wanted:
                    continue
                yield _format(event.type, event.data)
        finally:
            await bus.unsubscribe(queue)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
