from __future__ import annotations


class IngestError(Exception):
    pass


class NetworkError(IngestError):
    def __init__(self, url: str, detail: str) -> None:
        super().__init__(f"{url}: {detail}")
        self.url = url
        self.detail = detail


class FetchTimeout(NetworkError):
    pass


class ConnectionFailed(NetworkError):
    pass


class HttpStatusError(NetworkError):
    def __init__(self, url: str, status_code: int) -> None:
        super().__init__(url, f"http_{status_code}")
        self.status_code = status_code


class EmptyResponse(NetworkError):
    pass


class ParseError(IngestError, ValueError):
    pass


class MalformedDocument(ParseError):
    pass


class EmptyFeed(ParseError):
    pass


class MissingField(ParseError):
    def __init__(self, name: str) -> None:
        super().__init__(f"missing required element: {name}")
        self.name = name


class UnknownMsgType(ParseError):
    def __init__(self, value: str) -> None:
        super().__init__(f"unknown msgType: {value!r}")
        self.value = value


class PipelineError(IngestError):
    pass


class FeedUnavailable(PipelineError):
    def __init__(self, url: str, cause: Exception) -> None:
        super().__init__(f"feed unavailable: {url}: {cause}")
        self.url = url
        self.cause = cause
