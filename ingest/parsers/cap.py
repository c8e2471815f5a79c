from __future__ import annotations

import xml.etree.ElementTree as ET
from datetime import UTC, datetime

from ingest.errors import MalformedDocument, MissingField, UnknownMsgType
from ingest.models import AlertRecord, MsgType


_HEADER_FIELDS = ("sender", "status", "scope", "source", "note", "incidents")
_INFO_FIELDS = {
    "event": "event",
    "headline": "headline",
    "description": "description",
    "instruction": "instruction",
    "urgency": "urgency",
    "severity": "severity",
    "certainty": "certainty",
    "senderName": "sender_name",
    "web": "web",
}
_INFO_TIMES = {"effective": "effective", "onset": "onset", "expires": "expires"}


def _parse_datetime(ts: str | None) -> datetime | None:
    if not ts:
        return None
    ts = ts.strip()
    if ts.endswith("Z"):
        ts = ts[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(ts)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def _to_iso(ts: str | None) -> str | None:
    dt = _parse_datetime(ts)
    if dt is None:
        return None
    return dt.astimezone(tz=UTC).isoformat().replace("+00:00", "Z")


def _text(parent: ET.Element, tag: str) -> str | None:
    value = parent.findtext(f"{{*}}{tag}")
    if value is None:
        return None
    value = value.strip()
    return value or None


def _named_values(parent: ET.Element, tag: str) -> dict[str, list[str]]:
    values: dict[str, list[str]] = {}
    for el in parent.findall(f"{{*}}{tag}"):
        name = _text(el, "valueName")
        value = _text(el, "value")
        if name and value:
            values.setdefault(name, []).append(value)
    return values


def _info_fields(info: ET.Element) -> dict[str, object]:
    fields: dict[str, object] = {}
    for tag, key in _INFO_FIELDS.items():
        value = _text(info, tag)
        if value is not None:
            fields[key] = value
    for tag, key in _INFO_TIMES.items():
        value = _to_iso(_text(info, tag))
        if value is not None:
            fields[key] = value

    categories = [c.text.strip() for c in info.findall("{*}category") if c.text]
    if categories:
        fields["category"] = categories

    area_descs: list[str] = []
    geocodes: dict[str, list[str]] = {}
    polygons: list[str] = []
    for area in info.findall("{*}area"):
        desc = _text(area, "areaDesc")
        if desc:
            area_descs.append(desc)
        for name, values in _named_values(area, "geocode").items():
            geocodes.setdefault(name, []).extend(values)
        polygons.extend(p.text.strip() for p in area.findall("{*}polygon") if p.text)
    if area_descs:
        fields["area_desc"] = "; ".join(area_descs)
    if geocodes:
        fields["geocodes"] = geocodes
    if polygons:
        fields["polygons"] = polygons

    parameters = _named_values(info, "parameter")
    if parameters:
        fields["parameters"] = parameters
    event_codes = _named_values(info, "eventCode")
    if event_codes:
        fields["event_codes"] = event_codes
    return fields


def parse_alert(data: bytes, *, source_url: str | None = None) -> AlertRecord:
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise MalformedDocument(f"invalid XML: {e}") from e

    tag = root.tag.split("}", 1)[-1]
    if tag != "alert":
        raise MalformedDocument(f"root element must be 'alert', got {tag!r}")

    identifier = _text(root, "identifier")
    if not identifier:
        raise MissingField("identifier")

    msg_type_text = _text(root, "msgType")
    if not msg_type_text:
        raise MissingField("msgType")
    try:
        msg_type = MsgType(msg_type_text)
    except ValueError:
        raise UnknownMsgType(msg_type_text) from None

    raw_fields: dict[str, object] = {}
    for name in _HEADER_FIELDS:
        value = _text(root, name)
        if value is not None:
            raw_fields[name] = value

    references = _text(root, "references")
    if references:
        raw_fields["references"] = references.split()
    codes = [c.text.strip() for c in root.findall("{*}code") if c.text]
    if codes:
        raw_fields["code"] = codes

    info = root.find("{*}info")
    if info is not None:
        raw_fields.update(_info_fields(info))

    return AlertRecord(
        id=identifier,
        msg_type=msg_type,
        sent_at=_parse_datetime(_text(root, "sent")),
        raw_fields=raw_fields,
        source_url=source_url,
    )
