"""Helpers for rendering web content and JSON responses."""

from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any, Mapping
from urllib.parse import quote

from werkzeug.wrappers import Response

from inbucket.model import format_date

_URL_RE = re.compile(
    r"\b("
    r"(?:[a-z][\w-]+:(?:/{1,3}|[a-z0-9%])|www\d{0,3}[.]|[a-z0-9.\-]+[.][a-z]{2,4}/)"
    r"(?:[^\s()<>]|\((?:[^\s()<>]|\([^\s()<>]+\))*\))+"
    r"(?:\((?:[^\s()<>]|\([^\s()<>]+\))*\)|[^\s`!()\[\]{};:'\".,<>?«»“”‘’])"
    r")",
    re.IGNORECASE | re.ASCII,
)

_NEWLINE_RE = re.compile(r"\r\n|\r|\n")

_HTML_ESCAPES = str.maketrans(
    {"&": "&amp;", "'": "&#39;", "<": "&lt;", ">": "&gt;", '"': "&#34;"}
)

_JSON_HTML_ESCAPES = str.maketrans(
    {"<": "\\u003c", ">": "\\u003e", "&": "\\u0026", "\u2028": "\\u2028", "\u2029": "\\u2029"}
)


def wrap_url(url: str) -> str:
    """Wrap an anchor tag around an (HTML escaped) URL."""
    unescaped = url.replace("&amp;", "&")
    return f'<a href="{unescaped}" target="_blank">{url}</a>'


def text_to_html(text: str) -> str:
    """Escape plain text, link its URLs and turn line breaks into ``<br/>``."""
    text = text.translate(_HTML_ESCAPES)
    text = _URL_RE.sub(lambda match: wrap_url(match.group(0)), text)
    return _NEWLINE_RE.sub("<br/>\n", text)


def _jsonable(data: Any) -> Any:
    if hasattr(data, "to_dict"):
        return data.to_dict()
    if isinstance(data, Mapping):
        return {str(key): _jsonable(value) for key, value in data.items()}
    if isinstance(data, (list, tuple)):
        return [_jsonable(item) for item in data]
    if isinstance(data, datetime):
        return format_date(data)
    return data


def _encode_json(data: Any) -> str:
    text = json.dumps(_jsonable(data), ensure_ascii=False, allow_nan=False, separators=(",", ":"))
    return text.translate(_JSON_HTML_ESCAPES) + "\n"


def render_json(data: Any) -> Response:
    """Build a JSON response for ``data`` with no-cache headers."""
    return Response(
        _encode_json(data),
        status=200,
        content_type="application/json; charset=utf-8",
        headers={"Expires": "-1"},
    )


def app_config_cookie(base_path: str, monitor_visible: bool) -> dict[str, str]:
    """Return keyword arguments for setting the ``app-config`` cookie."""
    config = json.dumps(
        {"base-path": base_path, "monitor-visible": monitor_visible},
        ensure_ascii=False,
        separators=(",", ":"),
    ).translate(_JSON_HTML_ESCAPES)
    return {"key": "app-config", "value": quote(config, safe="$&+:=@"), "path": "/"}


def header_match(headers: Any, name: str, value: str) -> bool:
    """Tell whether request header ``name`` has exactly ``value``, ignoring case."""
    name = name.lower()
    value = value.lower()
    if hasattr(headers, "getlist"):
        values = list(headers.getlist(name))
    else:
        values = []
        for key, entry in headers.items():
            if key.lower() == name:
                values.extend([entry] if isinstance(entry, str) else entry)
    return any(candidate.lower() == value for candidate in values)