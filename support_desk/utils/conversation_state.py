"""Conversation status transitions.

Pure functions over a loaded :class:`Conversation`: they never touch the store
or the network. Each returns a :class:`StatusPatch` describing the columns the
caller must persist together with whatever else it writes.

    open -> assigned -> in_progress -> pending_customer -> resolved -> closed

``resolved`` and ``closed`` can be set directly by staff from any non-terminal
state. ``closed`` is terminal.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Dict

from support_desk.schemas.models import STAFF_ROLES, Conversation, ConversationStatus, UserRole
from support_desk.utils.errors import AuthorizationFailure, ConflictOrTerminalState

_ADVANCED_BY_STAFF_REPLY = frozenset({ConversationStatus.open, ConversationStatus.assigned})


@dataclass(frozen=True)
class StatusPatch:
    status: ConversationStatus | None = None
    agent_id: str | None = None
    assigned_at: datetime | None = None
    resolved_at: datetime | None = None
    closed_at: datetime | None = None

    def columns(self) -> Dict[str, Any]:
        return {item.name: getattr(self, item.name) for item in fields(self) if getattr(self, item.name) is not None}

    def is_empty(self) -> bool:
        return not self.columns()


def initial_status() -> ConversationStatus:
    return ConversationStatus.open


def ensure_not_closed(conversation: Conversation, action: str) -> None:
    if conversation.is_closed:
        raise ConflictOrTerminalState(
            f"This conversation is closed and cannot be {action}.",
            conversation_id=conversation.id,
        )


def on_message_sent(conversation: Conversation, sender_role: UserRole) -> ConversationStatus:
    """Status after a message from ``sender_role``; only staff replies advance it."""

    ensure_not_closed(conversation, "written to")
    if sender_role in STAFF_ROLES and conversation.status in _ADVANCED_BY_STAFF_REPLY:
        return ConversationStatus.in_progress
    return conversation.status


def message_patch(conversation: Conversation, sender_role: UserRole, now: datetime) -> StatusPatch:
    new_status = on_message_sent(conversation, sender_role)
    if new_status == conversation.status:
        return StatusPatch()
    assigned_at = None
    if conversation.agent_id and conversation.assigned_at is None:
        assigned_at = now
    return StatusPatch(status=new_status, assigned_at=assigned_at)


def on_assigned(conversation: Conversation, agent_id: str, now: datetime) -> StatusPatch:
    ensure_not_closed(conversation, "reassigned")
    status = ConversationStatus.assigned if conversation.status == ConversationStatus.open else None
    return StatusPatch(status=status, agent_id=agent_id, assigned_at=now)


def on_status_requested(
    conversation: Conversation,
    requester_role: UserRole,
    target: ConversationStatus,
    now: datetime,
    *,
    customer_can_reopen_resolved: bool = True,
) -> StatusPatch:
    ensure_not_closed(conversation, "updated")
    if requester_role not in STAFF_ROLES:
        if target != ConversationStatus.open:
            raise AuthorizationFailure(
                f"User role {requester_role.value} cannot set status to {target.value}.",
                conversation_id=conversation.id,
            )
        if conversation.status == ConversationStatus.resolved and not customer_can_reopen_resolved:
            raise AuthorizationFailure(
                "Resolved conversations can only be reopened by support staff.",
                conversation_id=conversation.id,
            )
    if target == ConversationStatus.resolved:
        return StatusPatch(status=target, resolved_at=now)
    if target == ConversationStatus.closed:
        return StatusPatch(status=target, closed_at=now, resolved_at=conversation.resolved_at or now)
    return StatusPatch(status=target)


def apply_patch(conversation: Conversation, patch: StatusPatch) -> Conversation:
    """In-memory view of ``conversation`` after ``patch``; mirrors what the store writes."""

    return conversation.model_copy(update=patch.columns())
