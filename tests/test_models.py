import json
import re
from datetime import datetime, timezone

import pytest

from chatsync.errors import SerializationError
from chatsync.models import (
    DeliveryStatus,
    Message,
    SenderType,
    SyncStatus,
    WireMessage,
    new_message_id,
    parse_timestamp,
)


def test_message_ids_are_prefixed_and_unique():
    ids = {new_message_id() for _ in range(100)}

    assert len(ids) == 100
    assert all(re.fullmatch(r"msg_[0-9a-f]{10}", i) for i in ids)


def test_message_id_cannot_change():
    message = Message(conversation_id="c", content="hi")

    with pytest.raises(ValueError):
        message.with_changes(id="msg_other")
    assert message.with_changes(content="edited").id == message.id


def test_delivery_status_ordering():
    assert DeliveryStatus.SENDING.can_advance_to(DeliveryStatus.SENT)
    assert DeliveryStatus.SENT.can_advance_to(DeliveryStatus.READ)
    assert not DeliveryStatus.READ.can_advance_to(DeliveryStatus.DELIVERED)
    assert not DeliveryStatus.SENT.can_advance_to(DeliveryStatus.SENT)
    assert not DeliveryStatus.FAILED.can_advance_to(DeliveryStatus.SENT)
    assert not DeliveryStatus.SENT.can_advance_to(DeliveryStatus.FAILED)


def test_parse_timestamp_accepts_iso_and_epoch_ms():
    expected = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    assert parse_timestamp("2024-01-02T03:04:05Z") == expected
    assert parse_timestamp("2024-01-02T03:04:05") == expected
    assert parse_timestamp(int(expected.timestamp() * 1000)) == expected
    with pytest.raises(ValueError):
        parse_timestamp(None)


def test_wire_format_uses_camel_case():
    message = Message(
        conversation_id="sess-9",
        content="hello",
        sender_type=SenderType.CUSTOMER,
        timestamp=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        metadata={"lang": "en"},
    )

    frame = json.loads(WireMessage(type="message", payload=message, timestamp=42).to_json())

    assert frame["type"] == "message"
    assert frame["timestamp"] == 42
    assert frame["payload"]["sessionId"] == "sess-9"
    assert frame["payload"]["senderType"] == "customer"
    assert frame["payload"]["contentType"] == "text"
    assert frame["payload"]["timestamp"] == "2024-05-01T12:00:00Z"
    assert "metadata" not in frame


def test_inbound_message_defaults():
    frame = WireMessage.from_json(json.dumps({
        "type": "message",
        "payload": {"id": "m1", "sessionId": "s1", "content": "yo", "timestamp": "2024-05-01T12:00:00Z"},
    }))

    assert frame.payload.sender_type is SenderType.CUSTOMER
    assert frame.payload.delivery_status is DeliveryStatus.SENT
    assert frame.payload.sync_status is SyncStatus.SYNCED
    assert isinstance(frame.timestamp, int)


def test_bytes_frames_are_decoded():
    frame = WireMessage.from_json(b'{"type": "pong", "metadata": {"pingId": "p1"}}')

    assert frame.type == "pong"
    assert frame.metadata == {"pingId": "p1"}


@pytest.mark.parametrize("raw", [
    "not json",
    "[1, 2]",
    '{"type": "shout"}',
    '{"type": "ping", "metadata": "oops"}',
    '{"type": "message", "payload": {"content": "no id"}}',
    b"\xff\xfe",
])
def test_malformed_frames_raise(raw):
    with pytest.raises(SerializationError):
        WireMessage.from_json(raw)


def test_storage_dict_restores_message():
    message = Message(conversation_id="c", content="stored", attachments=[{"name": "a.png"}])

    restored = Message.from_dict(json.loads(json.dumps(message.to_dict())))

    assert restored == message
