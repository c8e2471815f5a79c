from __future__ import annotations

import httpx

from app.settings import Settings
from ingest.dedup import Deduplicator
from ingest.pipeline import AlertSink, CycleCallback, IngestionPipeline
from store.db import Database, SeenStore


def build_dedup(settings: Settings, db: Database | None) -> Deduplicator:
    store = SeenStore(db) if db is not None else None
    return Deduplicator(settings.dedup_retention, store=store)


def build_pipeline(
    settings: Settings,
    *,
    client: httpx.AsyncClient,
    sink: AlertSink,
    db: Database | None = None,
    on_cycle: CycleCallback | None = None,
) -> IngestionPipeline:
    return IngestionPipeline(
        feed_url=settings.feed_url,
        sink=sink,
        client=client,
        dedup=build_dedup(settings, db),
        poll_interval=settings.poll_interval_seconds,
        request_timeout=settings.request_timeout_seconds,
        max_concurrency=settings.max_concurrency,
        msg_type_filter=settings.msg_type_filter,
        event_filter=settings.event_filter,
        user_agent=settings.user_agent,
        on_cycle=on_cycle,
    )
