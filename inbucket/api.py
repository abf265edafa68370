"""REST API (v1) for mailboxes, plus listeners that feed monitor events."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.charset import QP, Charset
from email.header import Header
from typing import Any, Callable, Iterator, Protocol

from werkzeug.exceptions import HTTPException, MethodNotAllowed, NotFound
from werkzeug.routing import Map, Rule
from werkzeug.wrappers import Request, Response

from inbucket.model import MessageHeaderV1, MessageIDV2, MessageV1, AttachmentV1, BodyV1
from inbucket.model import MonitorEventV2
from inbucket.webhelpers import header_match, render_json

_log = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_QUEUE_SIZE = 100


class NotExistError(LookupError):
    """The requested message does not exist."""


class _Hub(Protocol):
    def add_listener(self, listener: Any) -> None: ...

    def remove_listener(self, listener: Any) -> None: ...


@dataclass
class RequestContext:
    """Per-request state handed to every API handler."""

    vars: dict[str, str]
    manager: Any
    hub: Any = None
    is_json: bool = False


def _format_address(address: Any) -> str:
    """Render an address given as ``None``, a bare string or a ``(name, address)`` pair."""
    if address is None:
        return ""
    if isinstance(address, str):
        name, addr = "", address
    else:
        name, addr = address
    text = f"<{addr}>"
    if not name:
        return text
    if all(" " <= ch <= "~" for ch in name):
        escaped = name.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}" {text}'
    charset = Charset("utf-8")
    charset.header_encoding = QP
    return f"{Header(name, charset).encode()} {text}"


def _format_address_list(addresses: Any) -> list[str]:
    return [_format_address(address) for address in addresses or []]


def _posix_millis(date: datetime) -> int:
    if date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)
    micros = (date - _EPOCH) // timedelta(microseconds=1)
    millis = abs(micros) // 1000
    return millis if micros >= 0 else -millis


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _header_from(msg: Any, mailbox: str, seen: bool) -> MessageHeaderV1:
    return MessageHeaderV1(
        mailbox=mailbox,
        id=msg.id,
        from_=_format_address(msg.from_),
        to=_format_address_list(msg.to),
        subject=msg.subject,
        date=msg.date,
        posix_millis=_posix_millis(msg.date),
        size=msg.size,
        seen=seen,
    )


def metadata_to_header(msg: Any) -> MessageHeaderV1:
    """Convert message metadata into the JSON header model used by monitors."""
    return _header_from(msg, msg.mailbox, False)


def _not_found() -> Response:
    return Response(
        "404 page not found\n",
        status=404,
        content_type="text/plain; charset=utf-8",
        headers={"X-Content-Type-Options": "nosniff"},
    )


def _internal_error(message: str) -> Response:
    return Response(
        message + "\n",
        status=500,
        content_type="text/plain; charset=utf-8",
        headers={"X-Content-Type-Options": "nosniff"},
    )


def mailbox_list_v1(request: Request, ctx: RequestContext) -> Response:
    """List the message headers in a mailbox."""
    name = ctx.manager.mailbox_for_address(ctx.vars["name"])
    try:
        messages = ctx.manager.get_metadata(name)
    except Exception as exc:
        raise RuntimeError(f"failed to get messages for {name}: {exc}") from exc
    return render_json([_header_from(msg, name, msg.seen) for msg in messages])


def mailbox_show_v1(request: Request, ctx: RequestContext) -> Response:
    """Show one message with its body, headers and attachments."""
    message_id = ctx.vars["id"]
    name = ctx.manager.mailbox_for_address(ctx.vars["name"])
    try:
        msg = ctx.manager.get_message(name, message_id)
    except NotExistError:
        return _not_found()
    except Exception as exc:
        raise RuntimeError(f"GetMessage({_quote(message_id)}) failed: {exc}") from exc
    if msg is None:
        return _not_found()

    attachments = []
    for index, part in enumerate(msg.attachments):
        link = (
            f"http://{request.host}/serve/mailbox/{name}/{message_id}"
            f"/attach/{index}/{part.filename}"
        )
        attachments.append(
            AttachmentV1(
                filename=part.filename,
                content_type=part.content_type,
                download_link=link,
                view_link=link,
                md5=hashlib.md5(part.content or b"").hexdigest(),
            )
        )
    header = _header_from(msg, name, msg.seen)
    return render_json(
        MessageV1(
            mailbox=header.mailbox,
            id=header.id,
            from_=header.from_,
            to=header.to,
            subject=header.subject,
            date=header.date,
            posix_millis=header.posix_millis,
            size=header.size,
            seen=header.seen,
            header={key: list(values) for key, values in (msg.header or {}).items()},
            body=BodyV1(text=msg.text, html=msg.html),
            attachments=attachments,
        )
    )


def _decode_header(raw: bytes) -> MessageHeaderV1:
    try:
        data, _ = json.JSONDecoder().raw_decode(raw.decode("utf-8").lstrip())
        if isinstance(data, dict):
            seen = data.get("seen")
            if seen is not None and not isinstance(seen, bool):
                raise TypeError("seen must be a boolean")
        return MessageHeaderV1.from_dict(data)
    except (ValueError, TypeError) as exc:
        raise RuntimeError(f"failed to decode JSON: {exc}") from exc


def mailbox_mark_seen_v1(request: Request, ctx: RequestContext) -> Response:
    """Mark a message as read when the JSON body says ``seen``."""
    message_id = ctx.vars["id"]
    name = ctx.manager.mailbox_for_address(ctx.vars["name"])
    header = _decode_header(request.get_data())
    if header.seen:
        try:
            ctx.manager.mark_seen(name, message_id)
        except NotExistError:
            return _not_found()
        except Exception as exc:
            raise RuntimeError(f"MarkSeen({_quote(message_id)}) failed: {exc}") from exc
    return render_json("OK")


def mailbox_purge_v1(request: Request, ctx: RequestContext) -> Response:
    """Delete every message in a mailbox."""
    name = ctx.manager.mailbox_for_address(ctx.vars["name"])
    try:
        ctx.manager.purge_messages(name)
    except Exception as exc:
        raise RuntimeError(f"Mailbox({_quote(name)}) purge failed: {exc}") from exc
    return render_json("OK")


def mailbox_source_v1(request: Request, ctx: RequestContext) -> Response:
    """Return the raw source of a message as plain text."""
    message_id = ctx.vars["id"]
    name = ctx.manager.mailbox_for_address(ctx.vars["name"])
    try:
        reader = ctx.manager.source_reader(name, message_id)
    except NotExistError:
        return _not_found()
    except Exception as exc:
        raise RuntimeError(f"SourceReader({_quote(message_id)}) failed: {exc}") from exc
    if reader is None:
        return _not_found()
    with reader:
        content = reader.read()
    return Response(content, status=200, content_type="text/plain")


def mailbox_delete_v1(request: Request, ctx: RequestContext) -> Response:
    """Remove a single message from a mailbox."""
    message_id = ctx.vars["id"]
    name = ctx.manager.mailbox_for_address(ctx.vars["name"])
    try:
        ctx.manager.remove_message(name, message_id)
    except NotExistError:
        return _not_found()
    except Exception as exc:
        raise RuntimeError(f"RemoveMessage({_quote(message_id)}) failed: {exc}") from exc
    return render_json("OK")


_Handler = Callable[[Request, RequestContext], Response]

_ROUTES: tuple[tuple[str, str, _Handler], ...] = (
    ("/api/v1/mailbox/<name>", "GET", mailbox_list_v1),
    ("/api/v1/mailbox/<name>", "DELETE", mailbox_purge_v1),
    ("/api/v1/mailbox/<name>/<id>", "GET", mailbox_show_v1),
    ("/api/v1/mailbox/<name>/<id>", "PATCH", mailbox_mark_seen_v1),
    ("/api/v1/mailbox/<name>/<id>", "DELETE", mailbox_delete_v1),
    ("/api/v1/mailbox/<name>/<id>/source", "GET", mailbox_source_v1),
)


def create_app(manager: Any, hub: Any = None) -> Callable:
    """Build a WSGI application serving the mailbox REST API."""
    url_map = Map([Rule(path, methods=[method], endpoint=handler)
                   for path, method, handler in _ROUTES])

    @Request.application
    def app(request: Request) -> Response:
        _log.debug("Request %s %s from %s", request.method, request.path, request.remote_addr)
        adapter = url_map.bind_to_environ(request.environ)
        try:
            handler, values = adapter.match()
        except NotFound:
            _log.warning("No route matches URI path %s", request.path)
            return Response(status=404)
        except MethodNotAllowed:
            _log.warning("Method not allowed for URI path %s", request.path)
            return Response(status=405)
        except HTTPException as exc:
            return exc.get_response(request.environ)

        ctx = RequestContext(
            vars=dict(values),
            manager=manager,
            hub=hub,
            is_json=header_match(request.headers, "Accept", "application/json"),
        )
        try:
            return handler(request, ctx)
        except Exception as exc:
            _log.error("Error handling request %s: %s", request.path, exc)
            return _internal_error(str(exc))

    return app


class _Listener:
    """Bounded queue of hub events, optionally restricted to one mailbox."""

    def __init__(self, hub: _Hub, mailbox: str = "") -> None:
        self.hub = hub
        self.mailbox = mailbox
        self._queue: deque[Any] = deque()
        self._cond = threading.Condition()
        self._closed = False
        hub.add_listener(self)

    def _watching(self, mailbox: str) -> bool:
        return not self.mailbox or self.mailbox == mailbox

    def _enqueue(self, item: Any) -> None:
        with self._cond:
            self._cond.wait_for(lambda: self._closed or len(self._queue) < _QUEUE_SIZE)
            if self._closed:
                return
            self._queue.append(item)
            self._cond.notify_all()

    def close(self) -> None:
        """Unregister from the hub; queued events can still be drained."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
        self.hub.remove_listener(self)

    def _next(self) -> Iterator[Any]:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._closed or bool(self._queue))
                if not self._queue:
                    return
                item = self._queue.popleft()
                self._cond.notify_all()
            yield item

    def events(self) -> Iterator[Any]:
        """Yield queued events until the listener is closed and drained."""
        yield from self._next()


class MessageListenerV1(_Listener):
    """Reports stored messages as JSON headers; deletions are ignored."""

    def receive(self, msg: Any) -> None:
        if self._watching(msg.mailbox):
            self._enqueue(msg)

    def delete(self, mailbox: str, message_id: str) -> None:
        return None

    def close(self) -> None:
        super().close()

    def events(self) -> Iterator[MessageHeaderV1]:
        for msg in self._next():
            yield metadata_to_header(msg)


class MessageListenerV2(_Listener):
    """Reports both stored and deleted messages as monitor events."""

    def receive(self, msg: Any) -> None:
        if self._watching(msg.mailbox):
            self._enqueue(MonitorEventV2(variant="message-stored", header=metadata_to_header(msg)))

    def delete(self, mailbox: str, message_id: str) -> None:
        if self._watching(mailbox):
            self._enqueue(
                MonitorEventV2(
                    variant="message-deleted",
                    identifier=MessageIDV2(mailbox=mailbox, id=message_id),
                )
            )

    def close(self) -> None:
        super().close()

    def events(self) -> Iterator[MonitorEventV2]:
        yield from self._next()