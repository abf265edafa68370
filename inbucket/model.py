"""JSON data model shared by the mailbox REST API and its client."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_DATE_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})"
    r"(?:\.(\d{1,9}))?"
    r"(?:(Z)|([+-])(\d{2}):(\d{2}))\Z"
)


def format_date(value: datetime) -> str:
    """Format a datetime as RFC 3339 with a trimmed fractional second.

    Naive datetimes are taken to be UTC; a zero offset is written as ``Z``.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset() or timedelta(0)
    if not offset:
        return text + "Z"
    sign = "-" if offset < timedelta(0) else "+"
    minutes = int(abs(offset).total_seconds()) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def parse_date(text: str) -> datetime:
    """Parse an RFC 3339 timestamp; precision beyond microseconds is dropped."""
    match = _DATE_RE.match(text)
    if match is None:
        raise ValueError(f"invalid RFC 3339 timestamp: {text!r}")
    year, month, day, hour, minute, second = (int(g) for g in match.group(1, 2, 3, 4, 5, 6))
    fraction = match.group(7) or ""
    micro = int(fraction.ljust(9, "0")[:6])
    if match.group(8):
        tz = timezone.utc
    else:
        delta = timedelta(hours=int(match.group(10)), minutes=int(match.group(11)))
        tz = timezone(-delta if match.group(9) == "-" else delta)
    return datetime(year, month, day, hour, minute, second, micro, tzinfo=tz)


def _require_object(data: Any) -> dict:
    if not isinstance(data, dict):
        raise TypeError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _header_fields(data: Any) -> dict[str, Any]:
    data = _require_object(data)
    date = data.get("date")
    return {
        "mailbox": data.get("mailbox") or "",
        "id": data.get("id") or "",
        "from_": data.get("from") or "",
        "to": list(data.get("to") or []),
        "subject": data.get("subject") or "",
        "date": ZERO_TIME if date is None else parse_date(date),
        "posix_millis": int(data.get("posix-millis") or 0),
        "size": int(data.get("size") or 0),
        "seen": bool(data.get("seen", False)),
    }


@dataclass
class MessageHeaderV1:
    """Basic header data for a message."""

    mailbox: str = ""
    id: str = ""
    from_: str = ""
    to: list[str] = field(default_factory=list)
    subject: str = ""
    date: datetime = ZERO_TIME
    posix_millis: int = 0
    size: int = 0
    seen: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "mailbox": self.mailbox,
            "id": self.id,
            "from": self.from_,
            "to": list(self.to),
            "subject": self.subject,
            "date": format_date(self.date),
            "posix-millis": self.posix_millis,
            "size": self.size,
            "seen": self.seen,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(**_header_fields(data))


@dataclass
class BodyV1:
    """Text and HTML versions of a message body."""

    text: str = ""
    html: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "html": self.html}

    @classmethod
    def from_dict(cls, data):
        data = _require_object(data)
        return cls(text=data.get("text") or "", html=data.get("html") or "")


@dataclass
class AttachmentV1:
    """Information about a MIME attachment."""

    filename: str = ""
    content_type: str = ""
    download_link: str = ""
    view_link: str = ""
    md5: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "content-type": self.content_type,
            "download-link": self.download_link,
            "view-link": self.view_link,
            "md5": self.md5,
        }

    @classmethod
    def from_dict(cls, data):
        data = _require_object(data)
        return cls(
            filename=data.get("filename") or "",
            content_type=data.get("content-type") or "",
            download_link=data.get("download-link") or "",
            view_link=data.get("view-link") or "",
            md5=data.get("md5") or "",
        )


@dataclass
class MessageV1(MessageHeaderV1):
    """Header data plus body, raw header map and attachments."""

    body: BodyV1 | None = None
    header: dict[str, list[str]] = field(default_factory=dict)
    attachments: list[AttachmentV1] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["body"] = self.body.to_dict() if self.body is not None else None
        result["header"] = {key: list(values) for key, values in self.header.items()}
        result["attachments"] = [attachment.to_dict() for attachment in self.attachments]
        return result

    @classmethod
    def from_dict(cls, data):
        fields = _header_fields(data)
        body = data.get("body")
        return cls(
            **fields,
            body=None if body is None else BodyV1.from_dict(body),
            header={key: list(values) for key, values in (data.get("header") or {}).items()},
            attachments=[AttachmentV1.from_dict(item) for item in data.get("attachments") or []],
        )


@dataclass
class MessageIDV2:
    """Uniquely identifies a message."""

    mailbox: str = ""
    id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"mailbox": self.mailbox, "id": self.id}


@dataclass
class MonitorEventV2:
    """Monitor event: variant is ``message-stored`` or ``message-deleted``."""

    variant: str = ""
    identifier: MessageIDV2 | None = None
    header: MessageHeaderV1 | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "variant": self.variant,
            "identifier": self.identifier.to_dict() if self.identifier is not None else None,
            "header": self.header.to_dict() if self.header is not None else None,
        }