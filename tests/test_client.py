from datetime import datetime, timedelta, timezone

import httpx
import pytest

from inbucket.client import Client, ClientError, MessageHeader

BASE = "http://test.local:8080"
UTC_MINUS_7 = timezone(timedelta(hours=-7))


class _Router:
    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, method, path, body="", status=200):
        self.routes[(method, path)] = (status, body)

    def __call__(self, request):
        self.calls.append((request.method, str(request.url), request.content))
        key = (request.method, request.url.path)
        if key in self.routes:
            status, body = self.routes[key]
            return httpx.Response(status, content=body.encode())
        if any(path == request.url.path for _, path in self.routes):
            return httpx.Response(405)
        return httpx.Response(404)


@pytest.fixture
def router():
    return _Router()


@pytest.fixture
def client(router):
    with Client(BASE, transport=httpx.MockTransport(router)) as c:
        yield c


def test_list_mailbox(router, client):
    router.add("GET", "/api/v1/mailbox/testbox", """[
        {"mailbox": "testbox", "id": "1", "from": "fromuser", "subject": "test subject",
         "date": "2013-10-15T16:12:02.231532239-07:00", "size": 264, "seen": true}
    ]""")
    headers = client.list_mailbox("testbox")
    assert len(headers) == 1
    h = headers[0]
    assert h.mailbox == "testbox"
    assert h.id == "1"
    assert h.from_ == "fromuser"
    assert h.subject == "test subject"
    assert h.date == datetime(2013, 10, 15, 16, 12, 2, 231532, tzinfo=UTC_MINUS_7)
    assert h.size == 264
    assert h.seen is True


def test_get_message(router, client):
    router.add("GET", "/api/v1/mailbox/testbox/20170107T224128-0000", """{
        "mailbox": "testbox", "id": "20170107T224128-0000", "from": "fromuser",
        "subject": "test subject", "date": "2013-10-15T16:12:02.231532239-07:00",
        "size": 264, "seen": true, "body": {"text": "Plain text", "html": "<html>"}
    }""")
    m = client.get_message("testbox", "20170107T224128-0000")
    assert m.mailbox == "testbox"
    assert m.id == "20170107T224128-0000"
    assert m.from_ == "fromuser"
    assert m.subject == "test subject"
    assert m.date == datetime(2013, 10, 15, 16, 12, 2, 231532, tzinfo=UTC_MINUS_7)
    assert m.size == 264
    assert m.seen is True
    assert m.body.text == "Plain text"
    assert m.body.html == "<html>"


def test_mark_seen(router, client):
    router.add("PATCH", "/api/v1/mailbox/testbox/20170107T224128-0000")
    result = client.mark_seen("testbox", "20170107T224128-0000")
    assert result is None
    assert router.calls == [
        ("PATCH", BASE + "/api/v1/mailbox/testbox/20170107T224128-0000", b""),
    ]


def test_mark_seen_error(client):
    with pytest.raises(ClientError) as info:
        client.mark_seen("testbox", "1")
    assert info.value.status_code == 404
    assert str(info.value) == 'PATCH for "/api/v1/mailbox/testbox/1", unexpected 404: 404 Not Found'


def test_get_message_source(router, client):
    router.add("GET", "/api/v1/mailbox/testbox/20170107T224128-0000/source", "message source")
    assert client.get_message_source("testbox", "20170107T224128-0000") == b"message source"


def test_get_message_source_error(client):
    with pytest.raises(ClientError) as info:
        client.get_message_source("testbox", "missing")
    assert info.value.status_code == 404


def test_custom_transport():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, content=b"Custom Transport")

    with Client(BASE, transport=httpx.MockTransport(handler)) as c:
        source = c.get_message_source("testbox", "20170107T224128-0000")
    assert source == b"Custom Transport"
    assert len(calls) == 1


def test_delete_message(router, client):
    router.add("DELETE", "/api/v1/mailbox/testbox/20170107T224128-0000")
    result = client.delete_message("testbox", "20170107T224128-0000")
    assert result is None
    assert [call[0] for call in router.calls] == ["DELETE"]


def test_delete_message_error(client):
    with pytest.raises(ClientError) as info:
        client.delete_message("testbox", "missing")
    assert info.value.status_code == 404


def test_purge_mailbox(router, client):
    router.add("DELETE", "/api/v1/mailbox/testbox")
    result = client.purge_mailbox("testbox")
    assert result is None
    assert router.calls[0][:2] == ("DELETE", BASE + "/api/v1/mailbox/testbox")


def test_purge_mailbox_error(client):
    with pytest.raises(ClientError) as info:
        client.purge_mailbox("otherbox")
    assert info.value.status_code == 404


def test_message_header_shortcuts(router, client):
    router.add("GET", "/api/v1/mailbox/testbox", """[
        {"mailbox": "mailbox1", "id": "id1", "from": "from1", "subject": "subject1",
         "date": "2017-01-01T00:00:00.000-07:00", "size": 100, "seen": true}
    ]""")
    headers = client.list_mailbox("testbox")
    assert len(headers) == 1
    header = headers[0]

    router.add("DELETE", "/api/v1/mailbox/mailbox1/id1")
    header.delete()
    assert router.calls[-1][:2] == ("DELETE", BASE + "/api/v1/mailbox/mailbox1/id1")

    router.add("GET", "/api/v1/mailbox/mailbox1/id1/source", "source1")
    assert header.get_source() == b"source1"

    router.add("GET", "/api/v1/mailbox/mailbox1/id1", """{
        "mailbox": "mailbox1", "id": "id1", "from": "from1", "subject": "subject1",
        "date": "2017-01-01T00:00:00.000-07:00", "size": 100
    }""")
    message = header.get_message()
    assert message.id == "id1"
    assert message.body is None

    message.delete()
    assert router.calls[-1][:2] == ("DELETE", BASE + "/api/v1/mailbox/mailbox1/id1")
    assert message.get_source() == b"source1"


def test_example_flow(router, client):
    router.add("GET", "/api/v1/mailbox/user1", """[
        {"mailbox": "user1", "id": "20180107T224128-0000", "subject": "First subject"},
        {"mailbox": "user1", "id": "20180108T121212-0123", "subject": "Second subject"}
    ]""")
    router.add("GET", "/api/v1/mailbox/user1/20180107T224128-0000", """{
        "mailbox": "user1", "id": "20180107T224128-0000", "from": "from@example.com",
        "subject": "First subject", "body": {"text": "This is the plain text body"}
    }""")
    router.add("DELETE", "/api/v1/mailbox/user1/20180108T121212-0123")

    headers = client.list_mailbox("user1")
    assert [(h.id, h.subject) for h in headers] == [
        ("20180107T224128-0000", "First subject"),
        ("20180108T121212-0123", "Second subject"),
    ]
    message = headers[0].get_message()
    assert message.from_ == "from@example.com"
    assert message.body.text == "This is the plain text body"
    headers[1].delete()
    assert router.calls[-1][:2] == ("DELETE", BASE + "/api/v1/mailbox/user1/20180108T121212-0123")


def test_base_url_with_path(router):
    router.add("GET", "/inbucket/api/v1/mailbox/testbox", "[]")
    with Client(BASE + "/inbucket", transport=httpx.MockTransport(router)) as c:
        assert c.list_mailbox("testbox") == []
    assert router.calls == [("GET", BASE + "/inbucket/api/v1/mailbox/testbox", b"")]


def test_wrong_method_is_error(router, client):
    router.add("DELETE", "/api/v1/mailbox/testbox")
    with pytest.raises(ClientError) as info:
        client.list_mailbox("testbox")
    assert info.value.status_code == 405


def test_invalid_json_is_error(router, client):
    router.add("GET", "/api/v1/mailbox/testbox", "not json")
    with pytest.raises(ClientError):
        client.list_mailbox("testbox")


def test_transport_error_is_wrapped():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with Client(BASE, transport=httpx.MockTransport(handler)) as c:
        with pytest.raises(ClientError):
            c.purge_mailbox("testbox")


def test_unbound_header_raises():
    with pytest.raises(ClientError):
        MessageHeader(mailbox="m", id="1").get_source()