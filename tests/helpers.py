from __future__ import annotations

from pathlib import Path

import httpx


FIXTURES = Path(__file__).resolve().parent / "fixtures"
FEED_URL = "https://alerts.example.test/cap/us.atom"

Route = bytes | int | Exception


def atom_feed(links: list[str]) -> bytes:
    entries = "".join(
        f"<entry><id>{link}</id><title>entry {i}</title><link href=\"{link}\"/></entry>"
        for i, link in enumerate(links)
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<feed xmlns="http://www.w3.org/2005/Atom">'
        "<id>urn:test-feed</id><title>test</title>"
        f"{entries}</feed>"
    ).encode()


def cap_alert(
    identifier: str | None,
    msg_type: str | None = "Alert",
    event: str = "Flood Warning",
) -> bytes:
    parts = ['<alert xmlns="urn:oasis:names:tc:emergency:cap:1.2">']
    if identifier is not None:
        parts.append(f"<identifier>{identifier}</identifier>")
    parts.append("<sender>test@example.test</sender>")
    parts.append("<sent>2024-05-01T12:00:00Z</sent>")
    parts.append("<status>Actual</status>")
    if msg_type is not None:
        parts.append(f"<msgType>{msg_type}</msgType>")
    parts.append("<scope>Public</scope>")
    parts.append(f"<info><event>{event}</event><area><areaDesc>Test County</areaDesc></area></info>")
    parts.append("</alert>")
    return "".join(parts).encode()


def make_client(routes: dict[str, Route], calls: list[str] | None = None) -> httpx.AsyncClient:
    """AsyncClient whose responses come from ``routes`` keyed by full URL.

    bytes -> 200 with that body, int -> empty response with that status,
    an exception instance -> raised from the transport.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if calls is not None:
            calls.append(url)
        route = routes.get(url, 404)
        if isinstance(route, Exception):
            raise route
        if isinstance(route, int):
            return httpx.Response(route)
        return httpx.Response(200, content=route)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
