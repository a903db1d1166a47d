from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Set

from support_desk.schemas.models import IdentitySnapshot, ParticipantInfo


class DuplicateConnectionError(RuntimeError):
    """Raised when a connection id is registered twice."""


class UnknownConnectionError(KeyError):
    """Raised when a room operation names a connection that was never registered."""


@dataclass
class PresenceEntry:
    connection_id: str
    identity: IdentitySnapshot
    rooms: Set[str] = field(default_factory=set)

    def participant(self) -> ParticipantInfo:
        return ParticipantInfo(
            connection_id=self.connection_id,
            user_id=self.identity.user_id,
            name=self.identity.name,
            role=self.identity.role,
        )


class PresenceRegistry:
    """Live connections and the conversation rooms they have joined.

    Lives only in memory and is rebuilt from nothing on restart. Mutations are
    plain synchronous dict/set updates; callers run them on one event loop so
    no locking is needed. ``_entries[c].rooms`` and ``_rooms`` are kept as exact
    mirrors of each other.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, PresenceEntry] = {}
        self._rooms: Dict[str, Set[str]] = {}

    def register(self, connection_id: str, identity: IdentitySnapshot) -> PresenceEntry:
        if connection_id in self._entries:
            raise DuplicateConnectionError(f"connection {connection_id} is already registered")
        entry = PresenceEntry(connection_id=connection_id, identity=identity)
        self._entries[connection_id] = entry
        return entry

    def _entry(self, connection_id: str) -> PresenceEntry:
        entry = self._entries.get(connection_id)
        if entry is None:
            raise UnknownConnectionError(connection_id)
        return entry

    def join(self, connection_id: str, conversation_id: str) -> bool:
        """Add the connection to the room. Returns False when it was already there."""

        entry = self._entry(connection_id)
        if conversation_id in entry.rooms:
            return False
        entry.rooms.add(conversation_id)
        self._rooms.setdefault(conversation_id, set()).add(connection_id)
        return True

    def leave(self, connection_id: str, conversation_id: str) -> bool:
        """Remove the connection from the room. Returns False when it was not a member."""

        entry = self._entries.get(connection_id)
        if entry is None or conversation_id not in entry.rooms:
            return False
        entry.rooms.discard(conversation_id)
        self._drop_from_room(connection_id, conversation_id)
        return True

    def _drop_from_room(self, connection_id: str, conversation_id: str) -> None:
        members = self._rooms.get(conversation_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._rooms[conversation_id]

    def deregister(self, connection_id: str) -> Set[str]:
        """Forget the connection; returns the conversation ids it was still joined to."""

        entry = self._entries.pop(connection_id, None)
        if entry is None:
            return set()
        affected = set(entry.rooms)
        for conversation_id in affected:
            self._drop_from_room(connection_id, conversation_id)
        entry.rooms.clear()
        return affected

    def list_participants(self, conversation_id: str) -> List[ParticipantInfo]:
        members = self._rooms.get(conversation_id, ())
        return [self._entries[connection_id].participant() for connection_id in members if connection_id in self._entries]

    def get(self, connection_id: str) -> PresenceEntry | None:
        return self._entries.get(connection_id)

    def identity(self, connection_id: str) -> IdentitySnapshot:
        return self._entry(connection_id).identity

    def is_joined(self, connection_id: str, conversation_id: str) -> bool:
        entry = self._entries.get(connection_id)
        return entry is not None and conversation_id in entry.rooms

    def rooms_for(self, connection_id: str) -> FrozenSet[str]:
        entry = self._entries.get(connection_id)
        return frozenset(entry.rooms) if entry else frozenset()

    def connections_in(self, conversation_id: str) -> FrozenSet[str]:
        return frozenset(self._rooms.get(conversation_id, ()))

    def connection_count(self) -> int:
        return len(self._entries)

    def room_count(self) -> int:
        return len(self._rooms)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
