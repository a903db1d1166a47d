from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _now_utc() -> datetime:
    return datetime.now(UTC)


class UserRole(str, Enum):
    customer = "customer"
    agent = "agent"
    admin = "admin"


STAFF_ROLES = frozenset({UserRole.agent, UserRole.admin})


class ConversationStatus(str, Enum):
    open = "open"
    assigned = "assigned"
    in_progress = "in_progress"
    pending_customer = "pending_customer"
    resolved = "resolved"
    closed = "closed"


class FileInfo(BaseModel):
    """Retrievable reference to an attachment held by the file store."""

    url: str = Field(min_length=1)
    name: str = Field(min_length=1)
    mime_type: str = "application/octet-stream"
    size: int = Field(default=0, ge=0)


class MessageContent(BaseModel):
    text: Optional[str] = None
    file_info: Optional[FileInfo] = None

    @model_validator(mode="after")
    def _require_text_or_file(self) -> "MessageContent":
        if not self.has_text and self.file_info is None:
            raise ValueError("message content needs text or a file reference")
        return self

    @property
    def has_text(self) -> bool:
        return bool(self.text and self.text.strip())


class Message(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    sender_name: str
    sender_role: UserRole
    content: MessageContent
    timestamp: datetime = Field(default_factory=_now_utc)


class IdentitySnapshot(BaseModel):
    """Who is behind a connection. Fixed for the lifetime of that connection."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    name: str
    role: UserRole
    email: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


class ParticipantInfo(BaseModel):
    connection_id: str
    user_id: str
    name: str
    role: UserRole


class Conversation(BaseModel):
    id: str
    customer_id: str
    agent_id: Optional[str] = None
    status: ConversationStatus = ConversationStatus.open
    subject: Optional[str] = None
    chat_history: List[Message] = Field(default_factory=list)
    summary: Optional[str] = None
    created_at: datetime = Field(default_factory=_now_utc)
    updated_at: datetime = Field(default_factory=_now_utc)
    last_message_at: datetime = Field(default_factory=_now_utc)
    assigned_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @property
    def is_closed(self) -> bool:
        return self.status == ConversationStatus.closed


class UserProfile(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    role: UserRole
    is_active: bool = True
    is_blocked: bool = False
    created_at: datetime
    updated_at: datetime


class CreateConversationRequest(BaseModel):
    subject: Optional[str] = Field(default=None, max_length=255)
    initial_message_text: Optional[str] = Field(default=None, max_length=2000)


class StatusUpdateRequest(BaseModel):
    new_status: ConversationStatus


class AssignAgentRequest(BaseModel):
    agent_id: str = Field(min_length=1)


class UserUpdateRequest(BaseModel):
    full_name: Optional[str] = Field(default=None, max_length=255)
    role: Optional[UserRole] = None
    is_active: Optional[bool] = None
    is_blocked: Optional[bool] = None


class ServiceStatusResponse(BaseModel):
    generated_at: datetime = Field(default_factory=_now_utc)
    active_connections: int = 0
    active_rooms: int = 0
    metrics: dict = Field(default_factory=dict)
