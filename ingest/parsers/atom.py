from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import UTC, datetime
from urllib.parse import urljoin

from ingest.errors import EmptyFeed, MalformedDocument
from ingest.fetch import is_absolute_url
from ingest.models import FeedEntry


logger = logging.getLogger(__name__)

_ATOM_NS = "{http://www.w3.org/2005/Atom}"
_XML_BASE = "{http://www.w3.org/XML/1998/namespace}base"
_CAP_MEDIA_TYPE = "application/cap+xml"


def _to_iso(ts: str | None) -> str | None:
    if not ts:
        return None
    ts = ts.strip()
    if ts.endswith("Z"):
        return ts
    try:
        dt = datetime.fromisoformat(ts)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(tz=UTC).isoformat().replace("+00:00", "Z")


def _pick_link(entry: ET.Element) -> str | None:
    links = [link for link in entry.findall(f"{_ATOM_NS}link") if link.get("href")]
    for link in links:
        if link.get("type") == _CAP_MEDIA_TYPE:
            return link.get("href")
    for link in links:
        if link.get("rel") in (None, "", "alternate"):
            return link.get("href")
    if links:
        return links[0].get("href")
    return None


def parse_feed(data: bytes, *, discovered_at: datetime | None = None) -> list[FeedEntry]:
    """Return one FeedEntry per Atom entry that carries a link, in document order.

    Raises MalformedDocument when the bytes are not an Atom feed and EmptyFeed
    when no entry yields a usable link.
    """
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise MalformedDocument(f"invalid XML: {e}") from e

    if root.tag != f"{_ATOM_NS}feed":
        raise MalformedDocument(f"root element must be atom:feed, got {root.tag!r}")

    discovered_at = discovered_at or datetime.now(tz=UTC)
    feed_base = root.get(_XML_BASE) or ""

    entries: list[FeedEntry] = []
    for index, entry in enumerate(root.findall(f"{_ATOM_NS}entry")):
        entry_id = (entry.findtext(f"{_ATOM_NS}id") or "").strip() or None
        href = _pick_link(entry)
        if href is None:
            logger.warning("feed entry %d (%s) has no link, skipping", index, entry_id)
            continue

        base = urljoin(feed_base, entry.get(_XML_BASE) or "")
        link = urljoin(base, href.strip()) if base else href.strip()
        if not is_absolute_url(link):
            logger.warning("feed entry %d has non-absolute link %r, skipping", index, link)
            continue

        entries.append(
            FeedEntry(
                link=link,
                discovered_at=discovered_at,
                entry_id=entry_id,
                title=(entry.findtext(f"{_ATOM_NS}title") or "").strip() or None,
                updated=_to_iso(entry.findtext(f"{_ATOM_NS}updated")),
            )
        )

    if not entries:
        raise EmptyFeed("feed contains no entries with links")
    return entries
