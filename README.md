# inbucket

Building blocks for a disposable e-mail testing service: captured mail is
kept in mailboxes that can be read over POP3 or inspected over a REST API,
without any real delivery taking place.

The package provides:

- `inbucket.pop3` – a threaded POP3 server (`Server`, `Session`,
  `Pop3Config`, `State`) that serves mailboxes from a message store you
  supply, with optional STLS and forced TLS.
- `inbucket.api` – the mailbox REST API (v1) as a WSGI application built by
  `create_app(manager, hub)`, and the monitor listeners
  `MessageListenerV1` / `MessageListenerV2` that turn hub notifications into
  a stream of events.
- `inbucket.client` – a REST client (`Client`) for talking to a running
  server from tests.
- `inbucket.model` – the JSON data model shared by the API and the client
  (`MessageHeaderV1`, `MessageV1`, `BodyV1`, `AttachmentV1`, `MessageIDV2`,
  `MonitorEventV2`, `format_date`, `parse_date`).
- `inbucket.webhelpers` – `text_to_html`, `wrap_url`, `render_json`,
  `app_config_cookie` and `header_match`.

## Using the REST client

```python
from inbucket.client import Client, ClientError

with Client("http://localhost:9000") as client:
    headers = client.list_mailbox("user1")
    for header in headers:
        print(header.id, header.subject)

    # Fetch the full message, including bodies and attachments.
    message = headers[0].get_message()
    print(message.body.text)

    # Raw source of the message (bytes), headers included.
    source = headers[0].get_source()

    # Mark as read, delete one message, or empty the mailbox.
    client.mark_seen("user1", headers[0].id)
    headers[0].delete()
    client.purge_mailbox("user1")
```

Any response other than `200 OK` raises `ClientError`, whose
`status_code` holds the HTTP status when there was one. A custom `httpx`
transport may be passed as `transport=` (handy with `httpx.MockTransport`
in tests), and `timeout=` sets the request timeout, 30 seconds by default.
The base URL may carry a path prefix; request paths are joined below it.

## Serving the REST API

`create_app(manager, hub=None)` returns a WSGI application. The `manager`
is any object with these methods:

- `mailbox_for_address(address)` – the mailbox name for an address; raise
  to reject it.
- `get_metadata(name)` – message metadata for a mailbox.
- `get_message(name, id)` – one message, or `None`.
- `mark_seen(name, id)`, `remove_message(name, id)`, `purge_messages(name)`.
- `source_reader(name, id)` – a binary file-like object, or `None`.

`get_message`, `mark_seen`, `remove_message` and `source_reader` may raise
`inbucket.api.NotExistError` for a missing message. Messages carry `id`,
`from_`, `to`, `subject`, `date`, `size` and `seen`; full messages also have
`header`, `text`, `html` and `attachments` (each with `filename`,
`content_type` and `content`). Addresses are a string or a
`(name, address)` pair.

| Method | Path                                  | Purpose                      |
|--------|---------------------------------------|------------------------------|
| GET    | `/api/v1/mailbox/{name}`              | list message headers         |
| DELETE | `/api/v1/mailbox/{name}`              | purge the mailbox            |
| GET    | `/api/v1/mailbox/{name}/{id}`         | show one message             |
| PATCH  | `/api/v1/mailbox/{name}/{id}`         | mark seen (`{"seen": true}`) |
| DELETE | `/api/v1/mailbox/{name}/{id}`         | delete one message           |
| GET    | `/api/v1/mailbox/{name}/{id}/source`  | raw message source           |

Missing messages answer `404`. Any exception raised by the manager
otherwise, including a rejected mailbox name, answers `500` with the error
text. Unknown paths answer `404` and wrong methods `405`.

## Monitor listeners

`MessageListenerV1(hub, mailbox="")` and `MessageListenerV2(hub, mailbox="")`
register themselves with `hub.add_listener` and receive `receive(msg)` and
`delete(mailbox, id)` calls. An empty `mailbox` watches every mailbox.
`events()` yields queued items until `close()` is called and the queue is
drained: V1 yields a `MessageHeaderV1` per stored message and ignores
deletions; V2 yields `MonitorEventV2` objects with variant `message-stored`
or `message-deleted`. The queue holds at most 100 events; further calls
block until there is room.

## Running the POP3 server

```python
from inbucket.pop3 import Pop3Config, Server

config = Pop3Config(addr="127.0.0.1:1100", domain="inbucket.local")
server = Server(config, store)
server.start(ready=lambda: print("listening on", server.address))
...
server.stop()   # stop accepting connections
server.drain()  # wait for running sessions to finish
```

The `store` provides `get_messages(mailbox)`, returning objects with `id`,
`size` and `source()` (a binary file-like object), and
`remove_message(mailbox, id)`. Any user name and password are accepted;
messages marked with `DELE` are removed when the client sends `QUIT`.
Supported commands are `USER`, `PASS`, `APOP`, `STAT`, `LIST`, `UIDL`,
`RETR`, `TOP`, `DELE`, `NOOP`, `RSET`, `CAPA`, `STLS` and `QUIT`. Set
`tls_enabled` with `tls_cert` and `tls_priv_key` to offer `STLS`, and
`force_tls` to require TLS from the first byte. A certificate that cannot
be loaded makes `Server(...)` raise `ValueError`.

## Rendering text bodies

```python
from inbucket.webhelpers import text_to_html

text_to_html("see http://a.com/?q=a&n=v\nthanks")
```

The text is HTML-escaped, URLs become links opening in a new tab, and line
breaks become `<br/>`.

## What this package does not do

It has no SMTP server, so mail cannot be received with it, and no message
storage: the POP3 server and the REST API work on a store and a manager you
provide. There is no web user interface, no WebSocket endpoint serving the
monitor events, no message hub and no command-line program.