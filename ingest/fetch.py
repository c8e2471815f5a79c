from __future__ import annotations

import asyncio
from urllib.parse import urlsplit

import httpx

from ingest.models import FailureKind, FetchFailure, FetchOk, FetchResult


DEFAULT_USER_AGENT = "cap-ingest/0.1"
_ACCEPT = "application/atom+xml, application/cap+xml, application/xml, text/xml, */*"


def is_absolute_url(url: str) -> bool:
    parts = urlsplit(url)
    return parts.scheme in ("http", "https") and bool(parts.netloc)


async def fetch(
    client: httpx.AsyncClient,
    *,
    url: str,
    timeout: float,
    user_agent: str = DEFAULT_USER_AGENT,
    extra_headers: dict[str, str] | None = None,
) -> FetchResult:
    if not is_absolute_url(url):
        raise ValueError(f"not an absolute http(s) url: {url!r}")
    if timeout <= 0:
        raise ValueError(f"timeout must be positive, got {timeout}")

    headers = {"User-Agent": user_agent, "Accept": _ACCEPT}
    if extra_headers:
        headers.update(extra_headers)

    try:
        async with asyncio.timeout(timeout):
            response = await client.get(
                url, headers=headers, timeout=httpx.Timeout(timeout)
            )
    except httpx.TimeoutException as e:
        return FetchFailure(
            kind=FailureKind.TIMEOUT, detail=f"timeout:{e.__class__.__name__}", url=url
        )
    except TimeoutError:
        return FetchFailure(kind=FailureKind.TIMEOUT, detail="timeout:deadline", url=url)
    except httpx.RequestError as e:
        return FetchFailure(
            kind=FailureKind.NETWORK,
            detail=f"request_error:{e.__class__.__name__}",
            url=url,
        )

    if not 200 <= response.status_code < 300:
        return FetchFailure(
            kind=FailureKind.HTTP_STATUS,
            detail=f"http_{response.status_code}",
            url=url,
            status_code=response.status_code,
        )
    if not response.content:
        return FetchFailure(
            kind=FailureKind.EMPTY_BODY,
            detail="empty_body",
            url=url,
            status_code=response.status_code,
        )

    return FetchOk(content=response.content, status_code=response.status_code)
