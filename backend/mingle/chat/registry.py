"""Room registry: which live connections are subscribed to which room.

The registry is a derived, process-local index. It is not a source of truth:
it starts empty on every process start and clients re-subscribe when they
reconnect. ``RoomRegistry`` is the contract the rest of the core depends on,
so a deployment running several broker processes can swap the in-memory
index for one backed by a shared pub/sub fan-out without touching callers.
"""
from abc import ABC, abstractmethod
from typing import Dict, Set


class RoomRegistry(ABC):
    """Subscription index from room ID to connection IDs.

    All operations are idempotent: subscribing twice is a no-op and
    unsubscribing a non-member is a no-op.
    """

    @abstractmethod
    def subscribe(self, room_id: str, connection_id: str) -> bool:
        """Add a connection to a room. Returns True if it was not already there."""

    @abstractmethod
    def unsubscribe(self, room_id: str, connection_id: str) -> bool:
        """Remove a connection from a room. Returns True if it was a member."""

    @abstractmethod
    def members_of(self, room_id: str) -> Set[str]:
        """Snapshot of connection IDs currently subscribed to a room."""

    @abstractmethod
    def rooms(self) -> Set[str]:
        """Rooms with at least one subscriber."""

    def unsubscribe_all(self, connection_id: str) -> Set[str]:
        """Remove a connection from every room. Returns the rooms it left."""
        left = set()
        for room_id in self.rooms():
            if self.unsubscribe(room_id, connection_id):
                left.add(room_id)
        return left


class InMemoryRoomRegistry(RoomRegistry):
    """Single-process registry backed by a dict of sets."""

    def __init__(self) -> None:
        # room_id -> set of connection IDs
        self._members: Dict[str, Set[str]] = {}

    def subscribe(self, room_id: str, connection_id: str) -> bool:
        members = self._members.setdefault(room_id, set())
        if connection_id in members:
            return False
        members.add(connection_id)
        return True

    def unsubscribe(self, room_id: str, connection_id: str) -> bool:
        members = self._members.get(room_id)
        if not members or connection_id not in members:
            return False
        members.discard(connection_id)
        if not members:
            del self._members[room_id]
        return True

    def members_of(self, room_id: str) -> Set[str]:
        return set(self._members.get(room_id, ()))

    def rooms(self) -> Set[str]:
        return set(self._members)
