"""Wire format of the real-time channel.

Every frame is a JSON object ``{"event": <name>, "data": {...}}``. Inbound frames
are parsed into one of a closed set of event models; outbound events know how to
render themselves back into a frame.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from support_desk.schemas.models import (
    Conversation,
    ConversationStatus,
    Message,
    MessageContent,
    ParticipantInfo,
)
from support_desk.utils.errors import InvalidPayload


class ConversationRef(BaseModel):
    conversation_id: str = Field(min_length=1)


class SendMessageData(ConversationRef):
    content: MessageContent


class JoinConversation(BaseModel):
    event: Literal["join_conversation"]
    data: ConversationRef


class SendMessage(BaseModel):
    event: Literal["send_message"]
    data: SendMessageData


class TypingStart(BaseModel):
    event: Literal["user_typing_start"]
    data: ConversationRef


class TypingStop(BaseModel):
    event: Literal["user_typing_stop"]
    data: ConversationRef


class LeaveConversation(BaseModel):
    event: Literal["leave_conversation"]
    data: ConversationRef


InboundEvent = Annotated[
    Union[JoinConversation, SendMessage, TypingStart, TypingStop, LeaveConversation],
    Field(discriminator="event"),
]

_INBOUND_ADAPTER: TypeAdapter = TypeAdapter(InboundEvent)


def _conversation_hint(frame: Any) -> str | None:
    if not isinstance(frame, dict):
        return None
    data = frame.get("data")
    if not isinstance(data, dict):
        return None
    value = data.get("conversation_id")
    if isinstance(value, str) and value.strip():
        return value
    return None


def _describe(exc: ValidationError) -> str:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part not in {"data"})
    reason = first.get("msg", "invalid event")
    if location:
        return f"Invalid event payload ({location}): {reason}"
    return f"Invalid event payload: {reason}"


def parse_inbound(raw: str | bytes | Dict[str, Any]) -> InboundEvent:
    """Validate one client frame; raises InvalidPayload scoped to the frame's conversation id."""

    frame: Any = raw
    if isinstance(raw, (str, bytes)):
        try:
            frame = json.loads(raw)
        except ValueError as exc:
            raise InvalidPayload("Event frame is not valid JSON.") from exc
    hint = _conversation_hint(frame)
    try:
        return _INBOUND_ADAPTER.validate_python(frame)
    except ValidationError as exc:
        raise InvalidPayload(_describe(exc), conversation_id=hint) from exc


class OutboundEvent(BaseModel):
    event: ClassVar[str]

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    def to_wire(self) -> Dict[str, Any]:
        return {"event": self.event, "data": self.payload()}


class ConnectionAck(OutboundEvent):
    event: ClassVar[str] = "connection_ack"

    user_id: str
    message: str = "Successfully connected to chat server."


class ConversationJoined(OutboundEvent):
    event: ClassVar[str] = "conversation_joined"

    conversation: Conversation

    def payload(self) -> Dict[str, Any]:
        return self.conversation.model_dump(mode="json")


class ParticipantUpdate(OutboundEvent):
    event: ClassVar[str] = "participant_update"

    conversation_id: str
    participants: List[ParticipantInfo] = Field(default_factory=list)


class SystemMessage(OutboundEvent):
    event: ClassVar[str] = "system_message"

    conversation_id: str
    text: str


class NewMessage(OutboundEvent):
    event: ClassVar[str] = "new_message"

    message: Message

    def payload(self) -> Dict[str, Any]:
        return self.message.model_dump(mode="json")


class StatusDetail(BaseModel):
    new_status: ConversationStatus
    updated_by_user_id: Optional[str] = None


class ConversationStatusUpdate(OutboundEvent):
    event: ClassVar[str] = "conversation_status_update"

    conversation_id: str
    text: str
    detail: StatusDetail


class AssignmentDetail(BaseModel):
    agent_id: str
    agent_name: Optional[str] = None
    new_status: ConversationStatus


class ConversationAssigned(OutboundEvent):
    event: ClassVar[str] = "conversation_assigned"

    conversation_id: str
    text: str
    detail: AssignmentDetail


class TypingStartBroadcast(OutboundEvent):
    event: ClassVar[str] = "typing_start_broadcast"

    user_id: str
    user_name: str
    conversation_id: str


class TypingStopBroadcast(OutboundEvent):
    event: ClassVar[str] = "typing_stop_broadcast"

    user_id: str
    user_name: str
    conversation_id: str


class ErrorMessage(OutboundEvent):
    event: ClassVar[str] = "error_message"

    conversation_id: Optional[str] = None
    message: str
    code: str = "error"
