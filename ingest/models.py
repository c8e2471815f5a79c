from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType

from ingest.errors import (
    ConnectionFailed,
    EmptyResponse,
    FetchTimeout,
    HttpStatusError,
    NetworkError,
)


class MsgType(Enum):
    ALERT = "Alert"
    UPDATE = "Update"
    CANCEL = "Cancel"
    ACK = "Ack"
    ERROR = "Error"


class FailureKind(Enum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    HTTP_STATUS = "http_status"
    EMPTY_BODY = "empty_body"


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class FeedEntry:
    link: str
    discovered_at: datetime = field(default_factory=_utc_now)
    entry_id: str | None = None
    title: str | None = None
    updated: str | None = None


@dataclass(frozen=True)
class AlertRecord:
    """A parsed CAP alert.

    Only ``id``, ``msg_type`` and ``sent_at`` are interpreted by the pipeline;
    everything else the parser extracted travels in ``raw_fields``.
    """

    id: str
    msg_type: MsgType
    sent_at: datetime | None = None
    raw_fields: Mapping[str, object] = field(default_factory=dict)
    source_url: str | None = None

    def __post_init__(self) -> None:
        if not self.id or not self.id.strip():
            raise ValueError("AlertRecord.id must be non-empty")
        if not isinstance(self.msg_type, MsgType):
            raise ValueError(f"invalid msg_type: {self.msg_type!r}")
        object.__setattr__(self, "raw_fields", MappingProxyType(dict(self.raw_fields)))

    @property
    def event(self) -> str | None:
        value = self.raw_fields.get("event")
        return str(value) if value else None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "msg_type": self.msg_type.value,
            "sent_at": (
                self.sent_at.astimezone(tz=UTC).isoformat().replace("+00:00", "Z")
                if self.sent_at is not None
                else None
            ),
            "source_url": self.source_url,
            **dict(self.raw_fields),
        }


@dataclass(frozen=True)
class FetchOk:
    content: bytes
    status_code: int = 200

    ok = True


@dataclass(frozen=True)
class FetchFailure:
    kind: FailureKind
    detail: str
    url: str
    status_code: int | None = None

    ok = False

    def to_error(self) -> NetworkError:
        if self.kind is FailureKind.TIMEOUT:
            return FetchTimeout(self.url, self.detail)
        if self.kind is FailureKind.HTTP_STATUS and self.status_code is not None:
            return HttpStatusError(self.url, self.status_code)
        if self.kind is FailureKind.EMPTY_BODY:
            return EmptyResponse(self.url, self.detail)
        return ConnectionFailed(self.url, self.detail)


FetchResult = FetchOk | FetchFailure
