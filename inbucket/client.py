"""Client for the mailbox REST API (v1)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote_plus

import httpx

from inbucket.model import MessageHeaderV1, MessageV1

DEFAULT_TIMEOUT = 30.0


class ClientError(Exception):
    """A REST request failed or returned an unexpected response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _join_path(base: str, uri: str) -> str:
    segments: list[str] = []
    for part in f"{base}/{uri}".split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if segments:
                segments.pop()
            continue
        segments.append(part)
    path = "/" + "/".join(segments)
    if uri.endswith("/") and not path.endswith("/"):
        path += "/"
    return path


def _mailbox_uri(name: str, *rest: str) -> str:
    return "/".join(["/api/v1/mailbox", quote_plus(name), *rest])


class Client:
    """Accesses the REST API of a server given its base URL, e.g. ``http://localhost:9000``."""

    def __init__(self, base_url: str, transport: httpx.BaseTransport | None = None,
                 timeout: float = DEFAULT_TIMEOUT) -> None:
        try:
            self._base_url = httpx.URL(base_url)
        except httpx.InvalidURL as exc:
            raise ClientError(f"invalid base URL {base_url!r}: {exc}") from exc
        self._http = httpx.Client(transport=transport, timeout=timeout)

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def _do(self, method: str, uri: str, body: bytes | None = None) -> httpx.Response:
        url = self._base_url.copy_with(path=_join_path(self._base_url.path, uri))
        try:
            return self._http.request(method, url, content=body)
        except httpx.HTTPError as exc:
            raise ClientError(f'{method} for "{url}": {exc}') from exc

    def _do_json(self, method: str, uri: str, decode: bool = True) -> Any:
        response = self._do(method, uri)
        if response.status_code != 200:
            raise ClientError(
                f'{method} for "{uri}", unexpected {response.status_code}: '
                f"{response.status_code} {response.reason_phrase}",
                response.status_code,
            )
        if not decode:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ClientError(f"failed to decode JSON: {exc}") from exc

    def _do_expect_ok(self, method: str, uri: str) -> httpx.Response:
        response = self._do(method, uri)
        if response.status_code != 200:
            raise ClientError(
                f"unexpected HTTP response status {response.status_code}: "
                f"{response.status_code} {response.reason_phrase}",
                response.status_code,
            )
        return response

    def list_mailbox(self, name: str) -> list[MessageHeader]:
        """Return the message headers in a mailbox."""
        data = self._do_json("GET", _mailbox_uri(name))
        if data is None:
            return []
        if not isinstance(data, list):
            raise ClientError("failed to decode JSON: expected a list of messages")
        headers = [MessageHeader.from_dict(item) for item in data]
        for header in headers:
            header._client = self
        return headers

    def get_message(self, name: str, message_id: str) -> Message:
        """Return a message with its content."""
        data = self._do_json("GET", _mailbox_uri(name, message_id))
        message = Message.from_dict(data)
        message._client = self
        return message

    def mark_seen(self, name: str, message_id: str) -> None:
        """Mark a message as read."""
        self._do_json("PATCH", _mailbox_uri(name, message_id), decode=False)

    def get_message_source(self, name: str, message_id: str) -> bytes:
        """Return the raw source of a message."""
        return self._do_expect_ok("GET", _mailbox_uri(name, message_id, "source")).content

    def delete_message(self, name: str, message_id: str) -> None:
        """Delete a single message."""
        self._do_expect_ok("DELETE", _mailbox_uri(name, message_id))

    def purge_mailbox(self, name: str) -> None:
        """Delete every message in a mailbox."""
        self._do_expect_ok("DELETE", _mailbox_uri(name))


def _bound(client: Client | None) -> Client:
    if client is None:
        raise ClientError("message is not bound to a client")
    return client


@dataclass
class MessageHeader(MessageHeaderV1):
    """A message header with shortcuts back to its client."""

    _client: Client | None = field(default=None, repr=False, compare=False)

    def get_message(self) -> Message:
        return _bound(self._client).get_message(self.mailbox, self.id)

    def get_source(self) -> bytes:
        return _bound(self._client).get_message_source(self.mailbox, self.id)

    def delete(self) -> None:
        _bound(self._client).delete_message(self.mailbox, self.id)


@dataclass
class Message(MessageV1):
    """A full message with shortcuts back to its client."""

    _client: Client | None = field(default=None, repr=False, compare=False)

    def get_source(self) -> bytes:
        return _bound(self._client).get_message_source(self.mailbox, self.id)

    def delete(self) -> None:
        _bound(self._client).delete_message(self.mailbox, self.id)