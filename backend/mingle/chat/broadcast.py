"""Message send protocol: validate, persist, publish, acknowledge.

State machine per send:

    1. Validate   connection is ACTIVE, sender participates in the room,
                  content is non-empty and within the length bound.
    2. Persist    MessageStore.append (runs in an executor thread).
    3. Publish    ``message`` to every connection subscribed to the room
                  except the originating one (the sender's other
                  connections included).
    4. Acknowledge  ``ack`` with the same canonical message to the
                  originating connection.

Step 2 always completes before step 3: a message that reaches any client
has already survived a store write. If the append fails nothing is
published and the error goes back to the sender only.

Steps 2-4 run under the room's lock, so every connection observes the
messages of a room in persistence order.
"""
import asyncio
import logging
from collections import OrderedDict
from typing import Optional, Tuple

from mingle.config import ChatSettings

from .connection import Connection
from .errors import InvalidRequest, Unauthorized
from .manager import ConnectionManager
from .protocol import AckEvent, MessageEvent, ReadReceiptEvent
from .schemas import Message
from .store import MessageStore

logger = logging.getLogger(__name__)

# Maximum number of (room, sender, ref) keys remembered for retry suppression
MESSAGE_DEDUP_CACHE_SIZE = 10000


class BroadcastProtocol:
    """Persist-then-publish message delivery for one broker process."""

    def __init__(
        self,
        store: MessageStore,
        manager: ConnectionManager,
        settings: ChatSettings,
    ) -> None:
        self._store = store
        self._manager = manager
        self._settings = settings

        # (room_id, sender_id, ref) -> persisted Message (LRU)
        self._recent_refs: "OrderedDict[Tuple[str, str, str], Message]" = OrderedDict()

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self, sender_id: Optional[str], room_id: str, content: object) -> None:
        """Step 1. Raises the matching ChatError; no state changes."""
        if not sender_id:
            raise Unauthorized("Connection is not authenticated")
        if not isinstance(content, str) or not content.strip():
            raise InvalidRequest("Invalid message format: content is required")
        limit = self._settings.max_message_length
        if len(content.strip()) > limit:
            raise InvalidRequest(f"Message exceeds {limit} characters")
        self._store.require_participant(room_id, sender_id)

    # =========================================================================
    # Retry suppression
    # =========================================================================

    def _seen(self, key: Optional[Tuple[str, str, str]]) -> Optional[Message]:
        if key is None:
            return None
        message = self._recent_refs.get(key)
        if message is not None:
            self._recent_refs.move_to_end(key)
        return message

    def _remember(self, key: Optional[Tuple[str, str, str]], message: Message) -> None:
        if key is None:
            return
        self._recent_refs[key] = message
        while len(self._recent_refs) > MESSAGE_DEDUP_CACHE_SIZE:
            self._recent_refs.popitem(last=False)

    # =========================================================================
    # Send
    # =========================================================================

    async def send(
        self,
        sender_id: Optional[str],
        room_id: str,
        content: str,
        origin: Optional[Connection] = None,
        ref: Optional[str] = None,
    ) -> Message:
        """Run the full send state machine and return the canonical message.

        Args:
            sender_id: Authenticated identity of the sender.
            room_id: Target room.
            content: Message text.
            origin: Originating connection; receives the ``ack`` and is
                excluded from the ``message`` broadcast. None for sends that
                come from the REST surface.
            ref: Client correlation token. A repeated ref from the same
                sender in the same room is re-acknowledged without being
                persisted or broadcast again.

        Raises:
            Unauthorized, InvalidRequest, NotFound, Forbidden: Validation
                failed; nothing was persisted or published.
            TransientIO: The store write failed; nothing was published.
        """
        if origin is not None and not origin.is_active:
            raise Unauthorized("Connection is not authenticated")
        self.validate(sender_id, room_id, content)

        key = (room_id, sender_id, ref) if ref else None
        exclude = origin.id if origin is not None else None

        async with self._manager.room_lock(room_id):
            duplicate = self._seen(key)
            if duplicate is not None:
                logger.debug(f"[Broadcast] Duplicate send ref={ref} re-acknowledged")
                if origin is not None:
                    await origin.send(AckEvent(message=duplicate, ref=ref))
                return duplicate

            loop = asyncio.get_running_loop()
            message = await loop.run_in_executor(
                None, self._store.append, room_id, sender_id, content
            )
            self._remember(key, message)

            delivered = await self._manager.publish(
                room_id, MessageEvent(message=message), exclude=exclude
            )
            if origin is not None:
                await origin.send(AckEvent(message=message, ref=ref))

        logger.info(
            f"[Broadcast] {sender_id} -> room {room_id}: message {message.id} "
            f"(seq={message.seq}) delivered to {delivered} connection(s)"
        )
        return message

    # =========================================================================
    # Read receipts
    # =========================================================================

    async def mark_read(self, participant_id: str, room_id: str, message_id: str) -> bool:
        """Advance a read cursor and tell the room when it moved."""
        advanced = self._store.mark_read(room_id, participant_id, message_id)
        if advanced:
            await self._manager.publish(
                room_id,
                ReadReceiptEvent(
                    roomId=room_id, participantId=participant_id, messageId=message_id
                ),
            )
        return advanced
