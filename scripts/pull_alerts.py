from __future__ import annotations

import argparse
import asyncio
import json
import signal
from contextlib import suppress
from pathlib import Path

import httpx

from app.log import configure_logging
from app.runtime import build_pipeline
from app.settings import Settings
from ingest.models import AlertRecord
from store.db import open_database


def _settings_from_args(args: argparse.Namespace) -> Settings:
    overrides: dict[str, object] = {}
    if args.feed_url:
        overrides["FEED_URL"] = args.feed_url
    if args.msg_type:
        overrides["MSG_TYPE_FILTER"] = args.msg_type
    if args.event:
        overrides["EVENT_FILTER"] = args.event
    if args.max_concurrency is not None:
        overrides["MAX_CONCURRENCY"] = args.max_concurrency
    if args.db:
        overrides["DB_PATH"] = args.db
    if args.log_level:
        overrides["LOG_LEVEL"] = args.log_level
    return Settings(**overrides)


async def _print_alert(record: AlertRecord) -> None:
    print(json.dumps(record.to_dict(), ensure_ascii=False), flush=True)


async def _run(settings: Settings, *, loop: bool) -> int:
    db = open_database(settings.db_path) if settings.db_path is not None else None
    try:
        async with httpx.AsyncClient(follow_redirects=True) as client:
            pipeline = build_pipeline(settings, client=client, sink=_print_alert, db=db)
            if not loop:
                report = await pipeline.run_cycle()
                return 0 if report.ok else 1

            stop = asyncio.Event()
            event_loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                with suppress(NotImplementedError):
                    event_loop.add_signal_handler(sig, stop.set)
            await pipeline.run(stop)
            return 0
    finally:
        if db is not None:
            with db.lock:
                db.conn.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Pull CAP alerts from an Atom feed and print them as JSON lines."
    )
    parser.add_argument("--feed-url", default=None)
    parser.add_argument(
        "--msg-type",
        default=None,
        help="only print alerts of this msgType (Alert, Update, Cancel, Ack, Error)",
    )
    parser.add_argument(
        "--event", default=None, help="only print alerts whose event contains this text"
    )
    parser.add_argument("--max-concurrency", type=int, default=None)
    parser.add_argument("--db", type=Path, default=None)
    parser.add_argument("--log-level", default=None)
    parser.add_argument(
        "--loop", action="store_true", help="keep polling until interrupted"
    )
    return parser


def main() -> None:
    args = build_parser().parse_args()

    settings = _settings_from_args(args)
    configure_logging(settings.log_level)
    raise SystemExit(asyncio.run(_run(settings, loop=args.loop)))


if __name__ == "__main__":
    main()
