"""Local, de-duplicated message timeline for one room."""
import bisect
from typing import Dict, Iterable, List, Optional, Tuple

from mingle.chat.schemas import Message


class RoomTimeline:
    """Messages a client holds for a room, ordered by ``(ts, seq)``.

    A message is identified by its server-assigned ``id``; adding the same
    message twice (history replay after reconnect, or an ``ack`` racing a
    broadcast) keeps a single entry.
    """

    def __init__(self, room_id: str) -> None:
        self.room_id = room_id
        self._by_id: Dict[str, Message] = {}
        self._keys: List[Tuple[float, int]] = []
        self._messages: List[Message] = []

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def cursor(self) -> Optional[str]:
        """ID of the newest message held, used to resume after reconnect."""
        return self._messages[-1].id if self._messages else None

    def add(self, message: Message) -> bool:
        """Insert a message in order. Returns False if it was already held."""
        if message.id in self._by_id:
            return False
        key = message.order_key()
        index = bisect.bisect_right(self._keys, key)
        self._keys.insert(index, key)
        self._messages.insert(index, message)
        self._by_id[message.id] = message
        return True

    def merge(self, messages: Iterable[Message]) -> List[Message]:
        """Add a batch and return only the messages that were new."""
        return [m for m in messages if self.add(m)]
