from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

import httpx

from ingest.dedup import Deduplicator
from ingest.errors import (
    EmptyFeed,
    FeedUnavailable,
    MalformedDocument,
    ParseError,
)
from ingest.fetch import DEFAULT_USER_AGENT, fetch, is_absolute_url
from ingest.models import AlertRecord, FeedEntry, FetchFailure, MsgType
from ingest.parsers.atom import parse_feed
from ingest.parsers.cap import parse_alert


logger = logging.getLogger(__name__)

AlertSink = Callable[[AlertRecord], Awaitable[None]]
CycleCallback = Callable[["CycleReport"], Awaitable[None] | None]


class PipelineState(Enum):
    IDLE = "idle"
    FETCHING_FEED = "fetching_feed"
    PARSING_FEED = "parsing_feed"
    FETCHING_ENTRIES = "fetching_entries"
    DONE = "done"
    ERROR_CYCLE = "error_cycle"


class EntryOutcome(Enum):
    EMITTED = "emitted"
    DUPLICATE = "duplicate"
    FILTERED = "filtered"
    FAILED = "failed"


@dataclass(frozen=True)
class EntryFailure:
    url: str
    reason: str


@dataclass
class CycleReport:
    feed_url: str
    started_at: datetime
    state: PipelineState = PipelineState.IDLE
    finished_at: datetime | None = None
    entries: int = 0
    emitted: int = 0
    duplicates: int = 0
    filtered: int = 0
    failures: list[EntryFailure] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.state is PipelineState.DONE

    def to_dict(self) -> dict:
        return {
            "feed_url": self.feed_url,
            "state": self.state.value,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at) if self.finished_at else None,
            "entries": self.entries,
            "emitted": self.emitted,
            "duplicates": self.duplicates,
            "filtered": self.filtered,
            "failed": len(self.failures),
            "failures": [{"url": f.url, "reason": f.reason} for f in self.failures],
            "error": self.error,
        }


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _iso(ts: datetime) -> str:
    return ts.astimezone(tz=UTC).isoformat().replace("+00:00", "Z")


class IngestionPipeline:
    """Polls one Atom feed and pushes new CAP alerts to ``sink``.

    A cycle fetches the feed, parses its entry links and fetches/parses each
    linked alert with at most ``max_concurrency`` requests in flight. A failing
    entry is logged and dropped; only a feed-level failure ends the cycle in
    ``PipelineState.ERROR_CYCLE``. Cycles never overlap.
    """

    def __init__(
        self,
        *,
        feed_url: str,
        sink: AlertSink,
        client: httpx.AsyncClient,
        dedup: Deduplicator | None = None,
        poll_interval: float = 60.0,
        request_timeout: float = 10.0,
        max_concurrency: int = 8,
        msg_type_filter: MsgType | None = None,
        event_filter: str | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
        on_cycle: CycleCallback | None = None,
    ) -> None:
        if not is_absolute_url(feed_url):
            raise ValueError(f"feed_url must be an absolute http(s) url: {feed_url!r}")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        self.feed_url = feed_url
        self.sink = sink
        self.client = client
        self.dedup = dedup if dedup is not None else Deduplicator()
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout
        self.max_concurrency = max_concurrency
        self.msg_type_filter = msg_type_filter
        self.event_filter = event_filter.lower() if event_filter else None
        self.user_agent = user_agent
        self.on_cycle = on_cycle
        self.state = PipelineState.IDLE
        self.last_report: CycleReport | None = None

    async def run(self, stop: asyncio.Event) -> None:
        logger.info(
            "polling %s every %ss (max_concurrency=%d)",
            self.feed_url,
            self.poll_interval,
            self.max_concurrency,
        )
        while not stop.is_set():
            try:
                await self.run_cycle()
            except Exception:
                self.state = PipelineState.ERROR_CYCLE
                logger.exception(
                    "cycle failed for %s; retrying in %ss", self.feed_url, self.poll_interval
                )
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            self.state = PipelineState.IDLE
        logger.info("polling stopped for %s", self.feed_url)

    async def run_cycle(self) -> CycleReport:
        report = CycleReport(feed_url=self.feed_url, started_at=_utc_now())
        self.dedup.evict_expired()

        entries = await self._discover_entries(report)
        if entries:
            self.state = PipelineState.FETCHING_ENTRIES
            report.entries = len(entries)
            sem = asyncio.Semaphore(self.max_concurrency)
            outcomes = await asyncio.gather(
                *(self._process_entry(entry, sem, report) for entry in entries)
            )
            for outcome in outcomes:
                if outcome is EntryOutcome.EMITTED:
                    report.emitted += 1
                elif outcome is EntryOutcome.DUPLICATE:
                    report.duplicates += 1
                elif outcome is EntryOutcome.FILTERED:
                    report.filtered += 1
            self.state = PipelineState.DONE

        report.state = self.state
        report.finished_at = _utc_now()
        self.last_report = report
        logger.info(
            "cycle %s: entries=%d emitted=%d duplicates=%d filtered=%d failed=%d",
            report.state.value,
            report.entries,
            report.emitted,
            report.duplicates,
            report.filtered,
            len(report.failures),
        )
        if self.on_cycle is not None:
            try:
                result = self.on_cycle(report)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("cycle callback failed for %s", self.feed_url)
        return report

    async def _discover_entries(self, report: CycleReport) -> list[FeedEntry]:
        self.state = PipelineState.FETCHING_FEED
        result = await fetch(
            self.client,
            url=self.feed_url,
            timeout=self.request_timeout,
            user_agent=self.user_agent,
        )
        if isinstance(result, FetchFailure):
            error = FeedUnavailable(self.feed_url, result.to_error())
            logger.error("%s; retrying in %ss", error, self.poll_interval)
            report.error = str(error)
            self.state = PipelineState.ERROR_CYCLE
            return []

        self.state = PipelineState.PARSING_FEED
        try:
            entries = parse_feed(result.content)
        except EmptyFeed:
            logger.info("feed %s has no entries", self.feed_url)
            self.state = PipelineState.DONE
            return []
        except MalformedDocument as e:
            error = FeedUnavailable(self.feed_url, e)
            logger.error("%s; retrying in %ss", error, self.poll_interval)
            report.error = str(error)
            self.state = PipelineState.ERROR_CYCLE
            return []
        return entries

    async def _process_entry(
        self, entry: FeedEntry, sem: asyncio.Semaphore, report: CycleReport
    ) -> EntryOutcome:
        try:
            async with sem:
                result = await fetch(
                    self.client,
                    url=entry.link,
                    timeout=self.request_timeout,
                    user_agent=self.user_agent,
                )
            if isinstance(result, FetchFailure):
                return self._fail(entry, report, result.detail)
            record = parse_alert(result.content, source_url=entry.link)
        except ParseError as e:
            return self._fail(entry, report, f"{e.__class__.__name__}: {e}")
        except Exception as e:
            logger.exception("dropping entry %s: unexpected error", entry.link)
            report.failures.append(
                EntryFailure(url=entry.link, reason=f"error:{e.__class__.__name__}")
            )
            return EntryOutcome.FAILED

        if not self.dedup.claim(record.id):
            logger.debug("duplicate alert %s from %s", record.id, entry.link)
            return EntryOutcome.DUPLICATE

        if not self._accepts(record):
            return EntryOutcome.FILTERED

        try:
            await self.sink(record)
        except Exception:
            self.dedup.release(record.id)
            logger.exception("sink rejected alert %s from %s", record.id, entry.link)
            report.failures.append(EntryFailure(url=entry.link, reason="sink_error"))
            return EntryOutcome.FAILED
        return EntryOutcome.EMITTED

    def _accepts(self, record: AlertRecord) -> bool:
        if self.msg_type_filter is not None and record.msg_type is not self.msg_type_filter:
            return False
        if self.event_filter is not None:
            event = (record.event or "").lower()
            if self.event_filter not in event:
                return False
        return True

    def _fail(self, entry: FeedEntry, report: CycleReport, reason: str) -> EntryOutcome:
        logger.warning("dropping entry %s: %s", entry.link, reason)
        report.failures.append(EntryFailure(url=entry.link, reason=reason))
        return EntryOutcome.FAILED
