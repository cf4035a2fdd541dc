"""Chat directory: resolves participant sets to canonical rooms."""
import logging
from typing import Iterable, List, Optional, Tuple

from .errors import InvalidRequest, Unauthorized
from .schemas import Room, RoomSummary
from .store import DuplicateRoom, MessageStore

logger = logging.getLogger(__name__)


class ChatDirectory:
    """Find-or-create lookups and room listings on top of the MessageStore.

    Rooms are created lazily on first intent between a participant set.
    Lookup is independent of the order participants are given in, and the
    store's uniqueness constraint on the participant set guarantees that
    concurrent callers converge on the same room.
    """

    def __init__(self, store: MessageStore) -> None:
        self._store = store

    @staticmethod
    def validate_participants(participant_ids: Iterable[str]) -> List[str]:
        """Check a participant set and return it as a sorted list.

        Raises:
            InvalidRequest: Fewer than two participants, blank identities,
                or duplicate entries.
        """
        ids = list(participant_ids)
        if any(not isinstance(pid, str) or not pid.strip() for pid in ids):
            raise InvalidRequest("Participant identities must be non-empty strings")
        if len(set(ids)) != len(ids):
            raise InvalidRequest("Participant set contains duplicate entries")
        if len(ids) < 2:
            raise InvalidRequest("A chat needs at least two participants")
        return sorted(ids)

    def find_or_create(
        self,
        participant_ids: Iterable[str],
        requester: Optional[str] = None,
    ) -> Room:
        """Return the room for a participant set, creating it if absent."""
        room, _ = self.resolve(participant_ids, requester)
        return room

    def resolve(
        self,
        participant_ids: Iterable[str],
        requester: Optional[str] = None,
    ) -> Tuple[Room, bool]:
        """Find-or-create, also reporting whether the room was just created.

        Args:
            participant_ids: The participants of the chat.
            requester: Authenticated identity making the request. When given,
                it must be one of the participants.

        Returns:
            Tuple of (room, created).

        Raises:
            InvalidRequest: Malformed participant set.
            Unauthorized: The requester is not part of the set.
        """
        ids = self.validate_participants(participant_ids)
        if requester is not None and requester not in ids:
            raise Unauthorized(f"{requester} cannot open a chat it is not part of")

        existing = self._store.find_room(ids)
        if existing is not None:
            return existing, False

        try:
            return self._store.create_room(ids), True
        except DuplicateRoom:
            # Lost the race: another caller created it first
            winner = self._store.find_room(ids)
            if winner is None:
                raise
            logger.info("[Directory] Concurrent create resolved to room %s", winner.id)
            return winner, False

    def list_rooms_for(self, participant_id: str) -> List[RoomSummary]:
        """Rooms the identity belongs to, most recent activity first."""
        if not participant_id:
            raise Unauthorized("Missing participant identity")
        return self._store.rooms_for(participant_id)

    def require_participant(self, room_id: str, participant_id: str) -> Room:
        return self._store.require_participant(room_id, participant_id)
