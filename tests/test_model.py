from datetime import datetime, timedelta, timezone

import pytest

from inbucket.model import (
    AttachmentV1,
    BodyV1,
    MessageHeaderV1,
    MessageIDV2,
    MessageV1,
    MonitorEventV2,
    format_date,
    parse_date,
)

PST = timezone(timedelta(hours=-8))
PDT = timezone(timedelta(hours=-7))


def _header():
    return MessageHeaderV1(
        mailbox="good",
        id="0001",
        from_="<from1@example.com>",
        to=["<to1@example.com>"],
        subject="subject 1",
        date=datetime(2012, 2, 1, 10, 11, 12, tzinfo=PST),
        posix_millis=1328119872000,
        size=0,
        seen=False,
    )


def test_header_round_trip():
    header = _header()
    assert MessageHeaderV1.from_dict(header.to_dict()) == header


def test_header_json_keys():
    assert set(_header().to_dict()) == {
        "mailbox", "id", "from", "to", "subject", "date", "posix-millis", "size", "seen",
    }


def test_header_uses_wire_names():
    header = _header()
    data = header.to_dict()
    assert data["from"] == header.from_
    assert data["posix-millis"] == header.posix_millis
    assert data["to"] == header.to


def test_parse_date_truncates_nanoseconds():
    parsed = parse_date("2013-10-15T16:12:02.231532239-07:00")
    assert parsed == datetime(2013, 10, 15, 16, 12, 2, 231532, tzinfo=PDT)


def test_format_date_without_fraction():
    assert format_date(datetime(2012, 2, 1, 10, 11, 12, tzinfo=PST)) == "2012-02-01T10:11:12-08:00"


@pytest.mark.parametrize(
    "value",
    [
        datetime(2012, 2, 1, 10, 11, 12, tzinfo=PST),
        datetime(2012, 7, 1, 10, 11, 12, 500000, tzinfo=PDT),
        datetime(2017, 1, 1, 0, 0, 0, 123, tzinfo=timezone.utc),
        datetime(2020, 5, 5, 5, 5, 5, 999999, tzinfo=timezone(timedelta(hours=5, minutes=30))),
    ],
)
def test_date_round_trip(value):
    assert parse_date(format_date(value)) == value


def test_format_date_utc_uses_z():
    text = format_date(datetime(2017, 1, 1, tzinfo=timezone.utc))
    assert text.endswith("Z")
    assert "+00:00" not in text


def test_format_naive_as_utc():
    naive = datetime(2017, 1, 1, 12, 30)
    assert format_date(naive) == format_date(naive.replace(tzinfo=timezone.utc))


@pytest.mark.parametrize(
    "text", ["", "garbage", "2012-02-01", "2012-02-01T10:11:12", "2012-13-01T10:11:12Z"]
)
def test_parse_date_rejects_invalid(text):
    with pytest.raises(ValueError):
        parse_date(text)


def test_missing_date_is_zero_time():
    header = MessageHeaderV1.from_dict({"mailbox": "m"})
    assert header.date == parse_date("0001-01-01T00:00:00Z")
    assert format_date(header.date) == "0001-01-01T00:00:00Z"


def test_message_round_trip():
    message = MessageV1(
        mailbox="good",
        id="0001",
        subject="subject 1",
        date=datetime(2012, 2, 1, 10, 11, 12, tzinfo=PST),
        seen=True,
        body=BodyV1(text="This is some text", html="This is some HTML"),
        header={"To": ["a@example.com", "b@example.com"]},
        attachments=[AttachmentV1(filename="favicon.png", content_type="image/png")],
    )
    assert MessageV1.from_dict(message.to_dict()) == message


def test_message_without_body():
    message = MessageV1.from_dict({"mailbox": "m", "id": "i"})
    assert message.mailbox == "m"
    assert message.body is None
    assert message.to_dict()["body"] is None


def test_attachment_keys():
    data = AttachmentV1(filename="f.pdf", md5="abc").to_dict()
    assert set(data) == {"filename", "content-type", "download-link", "view-link", "md5"}
    assert data["filename"] == "f.pdf"


def test_monitor_event_deleted():
    event = MonitorEventV2(variant="message-deleted", identifier=MessageIDV2("box", "0002"))
    assert event.to_dict() == {
        "variant": "message-deleted",
        "identifier": {"mailbox": "box", "id": "0002"},
        "header": None,
    }


def test_monitor_event_stored():
    header = _header()
    data = MonitorEventV2(variant="message-stored", header=header).to_dict()
    assert data["header"] == header.to_dict()
    assert data["identifier"] is None


def test_from_dict_requires_object():
    with pytest.raises(TypeError):
        MessageHeaderV1.from_dict(["not", "an", "object"])