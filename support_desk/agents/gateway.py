"""Real-time session layer.

The gateway owns the live side of the platform: it authenticates connections,
routes inbound frames to handlers, enforces who may touch which conversation
and fans the resulting events out to the conversation's room.

Writes to one conversation are serialized by a per-conversation
``asyncio.Lock``. The store stamps message timestamps inside that critical
section and the broadcast happens before the lock is released, so delivery
order, history order and timestamp order agree.
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, Protocol

from fastapi import WebSocket

from support_desk.schemas.events import (
    ConnectionAck,
    ConversationAssigned,
    ConversationJoined,
    ConversationRef,
    ConversationStatusUpdate,
    AssignmentDetail,
    ErrorMessage,
    NewMessage,
    OutboundEvent,
    ParticipantUpdate,
    SendMessageData,
    StatusDetail,
    SystemMessage,
    TypingStartBroadcast,
    TypingStopBroadcast,
    parse_inbound,
)
from support_desk.schemas.models import (
    Conversation,
    ConversationStatus,
    IdentitySnapshot,
    Message,
    MessageContent,
    UserRole,
)
from support_desk.utils.conversation_state import (
    apply_patch,
    message_patch,
    on_assigned,
    on_status_requested,
)
from support_desk.utils.conversation_store import ConversationStore
from support_desk.utils.errors import (
    AuthenticationFailure,
    AuthorizationFailure,
    ConflictOrTerminalState,
    InvalidPayload,
    NotFound,
    SupportDeskError,
)
from support_desk.utils.identity import IdentityVerifier
from support_desk.utils.logging import bound_context, get_logger
from support_desk.utils.observability import RequestMetrics, get_metrics, time_event
from support_desk.utils.presence import PresenceRegistry
from support_desk.utils.settings import Settings, get_settings
from support_desk.utils.storage import now_utc
from support_desk.utils.user_store import UserAccount

log = get_logger(__name__)

GENERIC_FAILURE_MESSAGE = "Something went wrong while handling the request. Please retry."


def _describe_failure(exc: BaseException) -> str:
    if isinstance(exc, TimeoutError):
        return "send timed out"
    return str(exc) or type(exc).__name__


class Connection(Protocol):
    connection_id: str

    async def send(self, frame: Dict[str, Any]) -> None: ...


class WebSocketConnection:
    def __init__(self, websocket: WebSocket, connection_id: str | None = None) -> None:
        self.websocket = websocket
        self.connection_id = connection_id or uuid.uuid4().hex

    async def send(self, frame: Dict[str, Any]) -> None:
        await self.websocket.send_json(frame)


class SessionGateway:
    def __init__(
        self,
        store: ConversationStore,
        verifier: IdentityVerifier,
        presence: PresenceRegistry | None = None,
        *,
        settings: Settings | None = None,
        metrics: RequestMetrics | None = None,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.presence = presence if presence is not None else PresenceRegistry()
        self.settings = settings or get_settings()
        self.metrics = metrics or get_metrics()
        self._connections: Dict[str, Connection] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_waiters: Dict[str, int] = {}
        self._handlers: Dict[str, Callable[[str, Any], Awaitable[None]]] = {
            "join_conversation": self.handle_join,
            "send_message": self.handle_send,
            "user_typing_start": self.handle_typing_start,
            "user_typing_stop": self.handle_typing_stop,
            "leave_conversation": self.handle_leave,
        }

    # connection lifecycle

    async def authenticate(self, token: str | None) -> IdentitySnapshot:
        try:
            return await asyncio.to_thread(self.verifier.verify, token)
        except AuthenticationFailure as exc:
            self.metrics.increment_counter("ws_connections::rejected")
            log.info("gateway_auth_rejected", reason=exc.message)
            raise

    async def connect(self, connection: Connection, identity: IdentitySnapshot) -> None:
        self.presence.register(connection.connection_id, identity)
        self._connections[connection.connection_id] = connection
        self.metrics.increment_counter("ws_connections::opened")
        self._update_gauges()
        log.info(
            "gateway_connected",
            connection_id=connection.connection_id,
            user_id=identity.user_id,
            role=identity.role.value,
        )
        await self._deliver(connection.connection_id, ConnectionAck(user_id=identity.user_id))

    async def disconnect(self, connection_id: str) -> None:
        entry = self.presence.get(connection_id)
        if entry is None:
            self._connections.pop(connection_id, None)
            return
        identity = entry.identity
        rooms = self.presence.deregister(connection_id)
        self._connections.pop(connection_id, None)
        self.metrics.increment_counter("ws_connections::closed")
        self._update_gauges()
        log.info("gateway_disconnected", connection_id=connection_id, user_id=identity.user_id, rooms=len(rooms))
        for conversation_id in sorted(rooms):
            await self._announce_departure(conversation_id, identity)

    async def dispatch(self, connection_id: str, raw: str | bytes | Dict[str, Any]) -> None:
        """Handle one inbound frame. Failures become an ``error_message`` to the sender."""

        try:
            event = parse_inbound(raw)
        except InvalidPayload as exc:
            self.metrics.record_event("invalid_frame", 0.0, failed=True)
            log.info("gateway_invalid_frame", connection_id=connection_id, error=exc.message)
            await self._send_error(connection_id, exc)
            return

        conversation_id = event.data.conversation_id
        handler = self._handlers[event.event]
        with bound_context(connection_id=connection_id, event=event.event, conversation_id=conversation_id):
            with time_event(self.metrics, event.event) as outcome:
                try:
                    await handler(connection_id, event.data)
                except SupportDeskError as exc:
                    outcome["failed"] = True
                    if exc.conversation_id is None:
                        exc.conversation_id = conversation_id
                    log.info("gateway_event_rejected", code=exc.code, error=exc.message)
                    await self._send_error(connection_id, exc)
                except Exception as exc:
                    outcome["failed"] = True
                    log.exception("gateway_event_failed", error=str(exc))
                    await self._deliver(
                        connection_id,
                        ErrorMessage(
                            conversation_id=conversation_id,
                            message=GENERIC_FAILURE_MESSAGE,
                            code="internal_error",
                        ),
                    )

    # inbound events

    async def handle_join(self, connection_id: str, data: ConversationRef) -> None:
        identity = self.presence.identity(connection_id)
        conversation_id = data.conversation_id
        async with self._conversation_lock(conversation_id):
            conversation = await self._load(conversation_id)
            if not self._may_participate(conversation, identity):
                raise AuthorizationFailure(
                    "You are not authorized to join this conversation.",
                    conversation_id=conversation_id,
                )
            if conversation.is_closed:
                raise ConflictOrTerminalState(
                    "This conversation is closed and cannot be joined.",
                    conversation_id=conversation_id,
                )
            newly_joined = self.presence.join(connection_id, conversation_id)
            log.info("gateway_join", user_id=identity.user_id, newly_joined=newly_joined)
            await self._deliver(connection_id, ConversationJoined(conversation=conversation))
            await self._broadcast_participants(conversation_id)
            if newly_joined:
                await self._broadcast(
                    conversation_id,
                    SystemMessage(conversation_id=conversation_id, text=f"{identity.name} has joined the chat."),
                    exclude=(connection_id,),
                )

    async def handle_send(self, connection_id: str, data: SendMessageData) -> None:
        identity = self.presence.identity(connection_id)
        conversation_id = data.conversation_id
        await self.post_message(conversation_id, identity, data.content)

    async def post_message(
        self,
        conversation_id: str,
        sender: IdentitySnapshot,
        content: MessageContent,
    ) -> Message:
        """Append a message, advance the status and tell the room."""

        async with self._conversation_lock(conversation_id):
            conversation = await self._load(conversation_id, include_history=False)
            if not self._may_participate(conversation, sender):
                raise AuthorizationFailure(
                    "You are not authorized to send messages to this conversation.",
                    conversation_id=conversation_id,
                )
            now = now_utc()
            patch = message_patch(conversation, sender.role, now)
            message = Message(
                id=uuid.uuid4().hex,
                conversation_id=conversation_id,
                sender_id=sender.user_id,
                sender_name=sender.name,
                sender_role=sender.role,
                content=content,
                timestamp=now,
            )
            stored = await asyncio.to_thread(self.store.append_message_and_update, conversation_id, message, patch)
            after = apply_patch(conversation, patch)
            self.metrics.increment_counter("messages::stored")
            log.info(
                "gateway_message_stored",
                conversation_id=conversation_id,
                message_id=stored.id,
                sender_role=sender.role.value,
                status_changed=after.status != conversation.status,
            )
            await self._broadcast(conversation_id, NewMessage(message=stored))
            if after.status != conversation.status:
                await self._broadcast(
                    conversation_id,
                    ConversationStatusUpdate(
                        conversation_id=conversation_id,
                        text=f"Conversation status updated to {after.status.value}.",
                        detail=StatusDetail(new_status=after.status),
                    ),
                )
        return stored

    async def handle_typing_start(self, connection_id: str, data: ConversationRef) -> None:
        await self._relay_typing(connection_id, data.conversation_id, started=True)

    async def handle_typing_stop(self, connection_id: str, data: ConversationRef) -> None:
        await self._relay_typing(connection_id, data.conversation_id, started=False)

    async def _relay_typing(self, connection_id: str, conversation_id: str, *, started: bool) -> None:
        if not self.presence.is_joined(connection_id, conversation_id):
            return
        identity = self.presence.identity(connection_id)
        event_type = TypingStartBroadcast if started else TypingStopBroadcast
        await self._broadcast(
            conversation_id,
            event_type(user_id=identity.user_id, user_name=identity.name, conversation_id=conversation_id),
            exclude=(connection_id,),
        )

    async def handle_leave(self, connection_id: str, data: ConversationRef) -> None:
        identity = self.presence.identity(connection_id)
        if not self.presence.leave(connection_id, data.conversation_id):
            return
        log.info("gateway_leave", user_id=identity.user_id)
        await self._announce_departure(data.conversation_id, identity)

    # operations driven by the HTTP surface

    async def create_conversation(
        self,
        customer: IdentitySnapshot,
        *,
        subject: str | None = None,
        initial_message_text: str | None = None,
    ) -> Conversation:
        conversation_id = uuid.uuid4().hex
        initial_message = None
        if initial_message_text and initial_message_text.strip():
            initial_message = Message(
                id=uuid.uuid4().hex,
                conversation_id=conversation_id,
                sender_id=customer.user_id,
                sender_name=customer.name,
                sender_role=customer.role,
                content=MessageContent(text=initial_message_text),
            )
        conversation = await asyncio.to_thread(
            self.store.create,
            customer.user_id,
            subject=subject,
            initial_message=initial_message,
            conversation_id=conversation_id,
        )
        self.metrics.increment_counter("conversations::created")
        log.info("conversation_created", conversation_id=conversation.id, customer_id=customer.user_id)
        return conversation

    async def assign_agent(self, conversation_id: str, agent: UserAccount) -> Conversation:
        async with self._conversation_lock(conversation_id):
            conversation = await self._load(conversation_id, include_history=False)
            patch = on_assigned(conversation, agent.user_id, now_utc())
            updated = await asyncio.to_thread(self.store.update, conversation_id, patch)
            log.info(
                "conversation_assigned",
                conversation_id=conversation_id,
                agent_id=agent.user_id,
                status=updated.status.value,
            )
            text = f"Conversation assigned to agent: {agent.display_name}."
            await self._broadcast(
                conversation_id,
                ConversationAssigned(
                    conversation_id=conversation_id,
                    text=text,
                    detail=AssignmentDetail(
                        agent_id=agent.user_id,
                        agent_name=agent.full_name,
                        new_status=updated.status,
                    ),
                ),
            )
            await self._broadcast(conversation_id, SystemMessage(conversation_id=conversation_id, text=text))
        return updated

    async def update_status(
        self,
        conversation_id: str,
        actor: IdentitySnapshot,
        new_status: ConversationStatus,
    ) -> Conversation:
        async with self._conversation_lock(conversation_id):
            conversation = await self._load(conversation_id, include_history=False)
            if not actor.is_staff and conversation.customer_id != actor.user_id:
                raise AuthorizationFailure(
                    "Not authorized to update this conversation.",
                    conversation_id=conversation_id,
                )
            patch = on_status_requested(
                conversation,
                actor.role,
                new_status,
                now_utc(),
                customer_can_reopen_resolved=self.settings.customer_can_reopen_resolved,
            )
            updated = await asyncio.to_thread(self.store.update, conversation_id, patch)
            log.info(
                "conversation_status_updated",
                conversation_id=conversation_id,
                from_status=conversation.status.value,
                to_status=updated.status.value,
                actor_id=actor.user_id,
            )
            await self._broadcast(
                conversation_id,
                ConversationStatusUpdate(
                    conversation_id=conversation_id,
                    text=f"{actor.name} updated conversation status to: {new_status.value}.",
                    detail=StatusDetail(new_status=new_status, updated_by_user_id=actor.user_id),
                ),
            )
        return updated

    async def get_conversation(self, conversation_id: str, viewer: IdentitySnapshot) -> Conversation:
        """Load a conversation for the customer who owns it, its agent or an admin."""

        conversation = await self._load(conversation_id)
        allowed = (
            conversation.customer_id == viewer.user_id
            or (conversation.agent_id is not None and conversation.agent_id == viewer.user_id)
            or viewer.role == UserRole.admin
        )
        if not allowed:
            raise AuthorizationFailure("Not authorized to view this conversation.", conversation_id=conversation_id)
        return conversation

    # helpers

    def stats(self) -> Dict[str, int]:
        return {
            "active_connections": self.presence.connection_count(),
            "active_rooms": self.presence.room_count(),
        }

    def _update_gauges(self) -> None:
        self.metrics.set_gauge("ws_connections::active", self.presence.connection_count())
        self.metrics.set_gauge("rooms::active", self.presence.room_count())

    @staticmethod
    def _may_participate(conversation: Conversation, identity: IdentitySnapshot) -> bool:
        return identity.is_staff or conversation.customer_id == identity.user_id

    async def _load(self, conversation_id: str, *, include_history: bool = True) -> Conversation:
        conversation = await asyncio.to_thread(
            self.store.find_by_id, conversation_id, include_history=include_history
        )
        if conversation is None:
            raise NotFound("Conversation not found.", conversation_id=conversation_id)
        return conversation

    @asynccontextmanager
    async def _conversation_lock(self, conversation_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        self._lock_waiters[conversation_id] = self._lock_waiters.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_waiters[conversation_id] - 1
            if remaining:
                self._lock_waiters[conversation_id] = remaining
            else:
                del self._lock_waiters[conversation_id]
                del self._locks[conversation_id]

    async def _announce_departure(self, conversation_id: str, identity: IdentitySnapshot) -> None:
        await self._broadcast_participants(conversation_id)
        await self._broadcast(
            conversation_id,
            SystemMessage(conversation_id=conversation_id, text=f"{identity.name} has left the chat."),
        )

    async def _broadcast_participants(self, conversation_id: str) -> None:
        await self._broadcast(
            conversation_id,
            ParticipantUpdate(
                conversation_id=conversation_id,
                participants=self.presence.list_participants(conversation_id),
            ),
        )

    async def _broadcast(
        self,
        conversation_id: str,
        event: OutboundEvent,
        *,
        exclude: Iterable[str] = (),
    ) -> None:
        """Send ``event`` to every connection in the room. Delivery failures are logged and counted only."""

        skipped = set(exclude)
        targets = [
            connection_id
            for connection_id in sorted(self.presence.connections_in(conversation_id))
            if connection_id not in skipped and connection_id in self._connections
        ]
        if not targets:
            return
        frame = event.to_wire()
        results = await asyncio.gather(
            *(self._send(self._connections[connection_id], frame) for connection_id in targets),
            return_exceptions=True,
        )
        for connection_id, result in zip(targets, results):
            if isinstance(result, Exception):
                self.metrics.increment_counter("broadcast::failed")
                log.warning(
                    "gateway_broadcast_failed",
                    conversation_id=conversation_id,
                    connection_id=connection_id,
                    event=event.event,
                    error=_describe_failure(result),
                )

    async def _send(self, connection: Connection, frame: Dict[str, Any]) -> None:
        await asyncio.wait_for(connection.send(frame), timeout=self.settings.ws_send_timeout_seconds)

    async def _deliver(self, connection_id: str, event: OutboundEvent) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        try:
            await self._send(connection, event.to_wire())
        except Exception as exc:
            self.metrics.increment_counter("broadcast::failed")
            log.warning(
                "gateway_send_failed",
                connection_id=connection_id,
                event=event.event,
                error=_describe_failure(exc),
            )

    async def _send_error(self, connection_id: str, exc: SupportDeskError) -> None:
        await self._deliver(
            connection_id,
            ErrorMessage(conversation_id=exc.conversation_id, message=exc.message, code=exc.code),
        )
