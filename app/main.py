from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.log import configure_logging
from app.runtime import build_pipeline
from app.settings import Settings
from health.health import CycleHealth
from ingest.pipeline import CycleReport, IngestionPipeline
from realtime.bus import EventBus, bus_sink, publish_cycle
from realtime.sse import router as sse_router
from store.db import open_database


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings()
    configure_logging(settings.log_level)
    db = open_database(settings.db_path) if settings.db_path is not None else None
    bus = EventBus()
    health = CycleHealth(db)

    async def on_cycle(report: CycleReport) -> None:
        health.record(report)
        await publish_cycle(bus, report)

    stop = asyncio.Event()
    async with httpx.AsyncClient(follow_redirects=True) as client:
        pipeline = build_pipeline(
            settings, client=client, sink=bus_sink(bus), db=db, on_cycle=on_cycle
        )
        app.state.settings = settings
        app.state.bus = bus
        app.state.health = health
        app.state.pipeline = pipeline

        pipeline_task = asyncio.create_task(pipeline.run(stop))
        try:
            yield
        finally:
            stop.set()
            # the cycle in flight runs to completion; each request has its own timeout
            await pipeline_task
            if db is not None:
                with db.lock:
                    db.conn.close()


app = FastAPI(lifespan=lifespan)
app.include_router(sse_router)


@app.get("/health")
def health(request: Request) -> JSONResponse:
    cycle_health: CycleHealth = request.app.state.health
    pipeline: IngestionPipeline = request.app.state.pipeline
    summary = cycle_health.summary()
    summary["state"] = pipeline.state.value
    summary["feed_url"] = pipeline.feed_url
    summary["seen_alerts"] = len(pipeline.dedup)
    status_code = 200 if cycle_health.status != "degraded" else 503
    return JSONResponse(summary, status_code=status_code)
