import asyncio
import logging

import httpx
import pytest

from helpers import FEED_URL, atom_feed, cap_alert, make_client
from ingest.dedup import Deduplicator
from ingest.models import AlertRecord, MsgType
from ingest.pipeline import CycleReport, IngestionPipeline, PipelineState


BASE = "https://alerts.example.test/cap"


def _link(name: str) -> str:
    return f"{BASE}/{name}.xml"


class Collector:
    def __init__(self) -> None:
        self.records: list[AlertRecord] = []

    async def __call__(self, record: AlertRecord) -> None:
        self.records.append(record)

    @property
    def ids(self) -> list[str]:
        return [r.id for r in self.records]


def _routes(names: list[str], **overrides) -> dict:
    routes: dict = {FEED_URL: atom_feed([_link(n) for n in names])}
    for name in names:
        routes[_link(name)] = overrides.get(name, cap_alert(f"NWS-{name}"))
    return routes


def _run_cycles(routes: dict, cycles: int = 1, **kwargs) -> tuple[Collector, list[CycleReport]]:
    sink = Collector()

    async def go() -> list[CycleReport]:
        async with make_client(routes) as client:
            pipeline = IngestionPipeline(feed_url=FEED_URL, sink=sink, client=client, **kwargs)
            return [await pipeline.run_cycle() for _ in range(cycles)]

    return sink, asyncio.run(go())


def test_cycle_emits_every_alert() -> None:
    sink, [report] = _run_cycles(_routes(["A", "B", "C"]))
    assert sorted(sink.ids) == ["NWS-A", "NWS-B", "NWS-C"]
    assert report.state is PipelineState.DONE
    assert report.entries == 3
    assert report.emitted == 3
    assert report.failures == []
    assert all(r.source_url and r.source_url.startswith(BASE) for r in sink.records)


def test_timed_out_entry_is_isolated(caplog) -> None:
    routes = _routes(["A", "B", "C"], B=httpx.ReadTimeout("timed out"))
    with caplog.at_level(logging.WARNING, logger="ingest.pipeline"):
        sink, [report] = _run_cycles(routes)

    assert sorted(sink.ids) == ["NWS-A", "NWS-C"]
    assert report.state is PipelineState.DONE
    assert [f.url for f in report.failures] == [_link("B")]
    dropped = [r for r in caplog.records if "dropping entry" in r.getMessage()]
    assert len(dropped) == 1
    assert _link("B") in dropped[0].getMessage()


def test_bad_entries_do_not_abort_batch() -> None:
    routes = _routes(
        ["A", "B", "C", "D", "E"],
        B=500,
        C=b"<alert><identifier>broken",
        D=cap_alert(None),
        E=cap_alert("NWS-E", msg_type="Bogus"),
    )
    sink, [report] = _run_cycles(routes)
    assert sink.ids == ["NWS-A"]
    assert report.emitted == 1
    assert len(report.failures) == 4
    reasons = {f.url: f.reason for f in report.failures}
    assert reasons[_link("B")] == "http_500"
    assert reasons[_link("D")].startswith("MissingField")
    assert reasons[_link("E")].startswith("UnknownMsgType")


def test_same_id_in_one_cycle_emitted_once() -> None:
    routes = _routes(["A", "B"], B=cap_alert("NWS-A"))
    sink, [report] = _run_cycles(routes)
    assert sink.ids == ["NWS-A"]
    assert report.emitted == 1
    assert report.duplicates == 1


def test_alert_repeated_across_cycles_emitted_once() -> None:
    routes = _routes(["X"], X=cap_alert("NWS-123"))
    sink, reports = _run_cycles(routes, cycles=2)
    assert sink.ids == ["NWS-123"]
    assert [r.emitted for r in reports] == [1, 0]
    assert reports[1].duplicates == 1


def test_concurrency_limit_does_not_change_emitted_set() -> None:
    names = [str(i) for i in range(20)]
    routes = _routes(names, **{"7": 404, "13": httpx.ConnectError("refused")})
    serial, _ = _run_cycles(routes, max_concurrency=1)
    parallel, _ = _run_cycles(routes, max_concurrency=8)
    assert len(serial.ids) == 18
    assert set(serial.ids) == set(parallel.ids)


def test_max_concurrency_bounds_in_flight_requests() -> None:
    names = [str(i) for i in range(12)]
    links = {_link(n): n for n in names}
    in_flight = 0
    peak = 0

    class SlowTransport(httpx.AsyncBaseTransport):
        async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
            nonlocal in_flight, peak
            url = str(request.url)
            if url == FEED_URL:
                return httpx.Response(200, content=atom_feed(list(links)))
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return httpx.Response(200, content=cap_alert(f"NWS-{links[url]}"))

    sink = Collector()

    async def go() -> CycleReport:
        async with httpx.AsyncClient(transport=SlowTransport()) as client:
            pipeline = IngestionPipeline(
                feed_url=FEED_URL, sink=sink, client=client, max_concurrency=3
            )
            return await pipeline.run_cycle()

    report = asyncio.run(go())
    assert report.emitted == 12
    assert 1 <= peak <= 3


def test_feed_failure_is_error_cycle(caplog) -> None:
    with caplog.at_level(logging.ERROR, logger="ingest.pipeline"):
        sink, [report] = _run_cycles({FEED_URL: 502})
    assert report.state is PipelineState.ERROR_CYCLE
    assert report.error is not None and "http_502" in report.error
    assert sink.records == []
    assert len([r for r in caplog.records if r.levelno == logging.ERROR]) == 1


def test_malformed_feed_is_error_cycle() -> None:
    sink, [report] = _run_cycles({FEED_URL: b"<feed><entry>"})
    assert report.state is PipelineState.ERROR_CYCLE
    assert sink.records == []


def test_empty_feed_is_done() -> None:
    sink, [report] = _run_cycles({FEED_URL: atom_feed([])})
    assert report.state is PipelineState.DONE
    assert report.error is None
    assert report.entries == 0


def test_msg_type_filter_passes_matching_alerts_only() -> None:
    routes = _routes(
        ["A", "B", "C"],
        B=cap_alert("NWS-B", msg_type="Cancel"),
        C=cap_alert("NWS-C", msg_type="Update"),
    )
    sink, [report] = _run_cycles(routes, msg_type_filter=MsgType.CANCEL)
    assert sink.ids == ["NWS-B"]
    assert report.filtered == 2


def test_event_filter_is_case_insensitive_substring() -> None:
    routes = _routes(
        ["A", "B"],
        A=cap_alert("NWS-A", event="Red Flag Warning"),
        B=cap_alert("NWS-B", event="Flash Flood Warning"),
    )
    sink, _ = _run_cycles(routes, event_filter="FLOOD")
    assert sink.ids == ["NWS-B"]


def test_failing_sink_releases_claim() -> None:
    calls = 0

    async def flaky_sink(record: AlertRecord) -> None:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("consumer unavailable")

    dedup = Deduplicator()

    async def go() -> list[CycleReport]:
        async with make_client(_routes(["A"])) as client:
            pipeline = IngestionPipeline(
                feed_url=FEED_URL, sink=flaky_sink, client=client, dedup=dedup
            )
            return [await pipeline.run_cycle(), await pipeline.run_cycle()]

    first, second = asyncio.run(go())
    assert first.failures[0].reason == "sink_error"
    assert second.emitted == 1
    assert not dedup.is_new("NWS-A")


def test_on_cycle_callback_receives_report() -> None:
    reports: list[CycleReport] = []
    sink, [report] = _run_cycles(_routes(["A"]), on_cycle=reports.append)
    assert reports == [report]


def test_run_stops_between_cycles() -> None:
    calls: list[str] = []
    sink = Collector()

    async def go() -> IngestionPipeline:
        stop = asyncio.Event()
        async with make_client(_routes(["A"]), calls) as client:
            pipeline = IngestionPipeline(
                feed_url=FEED_URL, sink=sink, client=client, poll_interval=0.01
            )
            task = asyncio.create_task(pipeline.run(stop))
            while calls.count(FEED_URL) < 2:
                await asyncio.sleep(0.005)
            stop.set()
            await asyncio.wait_for(task, timeout=5)
            return pipeline

    pipeline = asyncio.run(go())
    assert sink.ids == ["NWS-A"]
    assert pipeline.state is PipelineState.IDLE
    assert pipeline.last_report is not None
    assert pipeline.last_report.state is PipelineState.DONE


@pytest.mark.parametrize(
    "kwargs",
    [
        {"feed_url": "not a url"},
        {"max_concurrency": 0},
        {"poll_interval": 0},
        {"request_timeout": -1},
    ],
)
def test_rejects_invalid_configuration(kwargs) -> None:
    params = {"feed_url": FEED_URL, "sink": Collector(), "client": None, **kwargs}
    with pytest.raises(ValueError):
        IngestionPipeline(**params)


def test_unexpected_entry_error_is_isolated(caplog) -> None:
    routes = _routes(["A", "B", "C"], B=RuntimeError("boom"))
    with caplog.at_level(logging.ERROR, logger="ingest.pipeline"):
        sink, [report] = _run_cycles(routes)

    assert sorted(sink.ids) == ["NWS-A", "NWS-C"]
    assert report.state is PipelineState.DONE
    assert [(f.url, f.reason) for f in report.failures] == [(_link("B"), "error:RuntimeError")]
    assert any(_link("B") in r.getMessage() for r in caplog.records)


def test_failing_cycle_callback_does_not_fail_cycle() -> None:
    def broken(report: CycleReport) -> None:
        raise RuntimeError("callback broke")

    sink, [report] = _run_cycles(_routes(["A"]), on_cycle=broken)
    assert sink.ids == ["NWS-A"]
    assert report.state is PipelineState.DONE


def test_run_keeps_polling_after_unexpected_cycle_error() -> None:
    calls: list[str] = []
    sink = Collector()

    class BrokenOnceDedup(Deduplicator):
        evictions = 0

        def evict_expired(self, now=None) -> int:
            self.evictions += 1
            if self.evictions == 1:
                raise RuntimeError("store unavailable")
            return super().evict_expired(now)

    async def go() -> IngestionPipeline:
        stop = asyncio.Event()
        async with make_client(_routes(["A"]), calls) as client:
            pipeline = IngestionPipeline(
                feed_url=FEED_URL,
                sink=sink,
                client=client,
                dedup=BrokenOnceDedup(),
                poll_interval=0.01,
            )
            task = asyncio.create_task(pipeline.run(stop))
            while not sink.records:
                await asyncio.sleep(0.005)
            stop.set()
            await asyncio.wait_for(task, timeout=5)
            return pipeline

    pipeline = asyncio.run(go())
    assert sink.ids == ["NWS-A"]
    assert pipeline.last_report is not None
    assert pipeline.last_report.state is PipelineState.DONE


def test_stop_during_cycle_finishes_in_flight_entries() -> None:
    names = ["A", "B", "C", "D"]
    links = {_link(n): n for n in names}
    feed_requests = 0
    stop = asyncio.Event()

    class SlowTransport(httpx.AsyncBaseTransport):
        async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
            nonlocal feed_requests
            url = str(request.url)
            if url == FEED_URL:
                feed_requests += 1
                return httpx.Response(200, content=atom_feed(list(links)))
            stop.set()
            await asyncio.sleep(0.02)
            return httpx.Response(200, content=cap_alert(f"NWS-{links[url]}"))

    sink = Collector()

    async def go() -> IngestionPipeline:
        async with httpx.AsyncClient(transport=SlowTransport()) as client:
            pipeline = IngestionPipeline(
                feed_url=FEED_URL,
                sink=sink,
                client=client,
                max_concurrency=2,
                poll_interval=0.01,
            )
            await asyncio.wait_for(pipeline.run(stop), timeout=5)
            return pipeline

    pipeline = asyncio.run(go())
    assert sorted(sink.ids) == ["NWS-A", "NWS-B", "NWS-C", "NWS-D"]
    assert feed_requests == 1
    assert pipeline.state is PipelineState.IDLE
    assert pipeline.last_report is not None
    assert pipeline.last_report.state is PipelineState.DONE
    assert pipeline.last_report.emitted == 4
