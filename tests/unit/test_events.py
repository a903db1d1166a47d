import json

import pytest

from support_desk.schemas.events import (
    ConnectionAck,
    ConversationStatusUpdate,
    ErrorMessage,
    JoinConversation,
    NewMessage,
    SendMessage,
    StatusDetail,
    TypingStartBroadcast,
    parse_inbound,
)
from support_desk.schemas.models import ConversationStatus, Message, MessageContent, UserRole
from support_desk.utils.errors import InvalidPayload


def test_parse_join_frame_from_text():
    event = parse_inbound(json.dumps({"event": "join_conversation", "data": {"conversation_id": "c1"}}))
    assert isinstance(event, JoinConversation)
    assert event.data.conversation_id == "c1"


def test_parse_send_with_file_only():
    event = parse_inbound(
        {
            "event": "send_message",
            "data": {
                "conversation_id": "c1",
                "content": {"file_info": {"url": "/files/a.png", "name": "a.png", "mime_type": "image/png", "size": 12}},
            },
        }
    )
    assert isinstance(event, SendMessage)
    assert event.data.content.file_info.name == "a.png"
    assert not event.data.content.has_text


@pytest.mark.parametrize("content", [{}, {"text": ""}, {"text": "   "}])
def test_empty_content_is_invalid_and_scoped(content):
    frame = {"event": "send_message", "data": {"conversation_id": "c1", "content": content}}
    with pytest.raises(InvalidPayload) as excinfo:
        parse_inbound(frame)
    assert excinfo.value.conversation_id == "c1"


def test_missing_conversation_id_is_invalid():
    with pytest.raises(InvalidPayload) as excinfo:
        parse_inbound({"event": "send_message", "data": {"content": {"text": "hi"}}})
    assert excinfo.value.conversation_id is None


def test_unknown_event_is_invalid():
    with pytest.raises(InvalidPayload):
        parse_inbound({"event": "delete_everything", "data": {"conversation_id": "c1"}})


def test_malformed_json_is_invalid():
    with pytest.raises(InvalidPayload) as excinfo:
        parse_inbound("{not json")
    assert "JSON" in excinfo.value.message


def test_binary_frames_parse_and_undecodable_bytes_are_invalid():
    event = parse_inbound(b'{"event": "leave_conversation", "data": {"conversation_id": "c1"}}')
    assert event.event == "leave_conversation"

    with pytest.raises(InvalidPayload):
        parse_inbound(b"\xff\xfe not json")


def test_outbound_frames_use_event_and_data_keys():
    frame = ConnectionAck(user_id="u1").to_wire()
    assert frame == {
        "event": "connection_ack",
        "data": {"user_id": "u1", "message": "Successfully connected to chat server."},
    }

    typing = TypingStartBroadcast(user_id="u1", user_name="Alice", conversation_id="c1").to_wire()
    assert typing["event"] == "typing_start_broadcast"
    assert typing["data"] == {"user_id": "u1", "user_name": "Alice", "conversation_id": "c1"}


def test_new_message_payload_is_the_message():
    message = Message(
        id="m1",
        conversation_id="c1",
        sender_id="u1",
        sender_name="Alice",
        sender_role=UserRole.customer,
        content=MessageContent(text="hello"),
    )
    frame = NewMessage(message=message).to_wire()
    assert frame["event"] == "new_message"
    assert frame["data"]["id"] == "m1"
    assert frame["data"]["content"]["text"] == "hello"
    assert frame["data"]["sender_role"] == "customer"


def test_status_update_detail_serializes_status_value():
    frame = ConversationStatusUpdate(
        conversation_id="c1",
        text="Conversation status updated to in_progress.",
        detail=StatusDetail(new_status=ConversationStatus.in_progress),
    ).to_wire()
    assert frame["data"]["detail"]["new_status"] == "in_progress"


def test_error_message_defaults():
    frame = ErrorMessage(message="nope").to_wire()
    assert frame["data"] == {"conversation_id": None, "message": "nope", "code": "error"}
