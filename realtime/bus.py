from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from ingest.models import AlertRecord
from ingest.pipeline import AlertSink, CycleReport


logger = logging.getLogger(__name__)

ALERT_EVENT = "alert"
CYCLE_EVENT = "cycle"


@dataclass(frozen=True)
class Event:
    type: str
    data: dict


class EventBus:
    """Fan-out of pipeline events to any number of subscriber queues.

    A slow subscriber loses its oldest queued event rather than blocking
    the publisher.
    """

    def __init__(self, queue_size: int = 200) -> None:
        self._queue_size = queue_size
        self._lock = asyncio.Lock()
        self._subscribers: set[asyncio.Queue[Event]] = set()

    async def subscribe(self) -> asyncio.Queue[Event]:
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=self._queue_size)
        async with self._lock:
            self._subscribers.add(queue)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue[Event]) -> None:
        async with self._lock:
            self._subscribers.discard(queue)

    async def publish(self, event: Event) -> None:
        async with self._lock:
            subscribers = list(self._subscribers)
        for queue in subscribers:
            if queue.full():
                dropped = queue.get_nowait()
                logger.warning("subscriber queue full, dropped %s event", dropped.type)
            queue.put_nowait(event)


def bus_sink(bus: EventBus) -> AlertSink:
    async def sink(record: AlertRecord) -> None:
        await bus.publish(Event(type=ALERT_EVENT, data=record.to_dict()))

    return sink


async def publish_cycle(bus: EventBus, report: CycleReport) -> None:
    await bus.publish(Event(type=CYCLE_EVENT, data=report.to_dict()))
