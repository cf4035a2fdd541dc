"""Connection lifecycle state machine and the server-side connection handle.

State machine (shared by the server and the client session adapter):

    CONNECTING -> AUTHENTICATING -> ACTIVE -> (RECONNECTING) -> ACTIVE | CLOSED

CLOSED is terminal. On the server a dropped transport is never revived:
the client opens a brand-new connection, so RECONNECTING is only entered by
the client-side session.
"""
import logging
import time
import uuid
from enum import Enum
from typing import Dict, FrozenSet, Optional, Set

from fastapi import WebSocket
from pydantic import BaseModel

from .errors import StateTransitionError

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Lifecycle state of a logical connection."""
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


_TRANSITIONS: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.AUTHENTICATING, ConnectionState.CLOSED}
    ),
    ConnectionState.AUTHENTICATING: frozenset(
        {ConnectionState.ACTIVE, ConnectionState.CLOSED}
    ),
    ConnectionState.ACTIVE: frozenset(
        {ConnectionState.RECONNECTING, ConnectionState.CLOSED}
    ),
    ConnectionState.RECONNECTING: frozenset(
        {ConnectionState.AUTHENTICATING, ConnectionState.ACTIVE, ConnectionState.CLOSED}
    ),
    ConnectionState.CLOSED: frozenset(),
}


def transition(current: ConnectionState, target: ConnectionState) -> ConnectionState:
    """Validate a lifecycle transition and return the new state.

    Raises:
        StateTransitionError: The transition is not allowed (anything out of
            CLOSED, or skipping authentication).
    """
    if target not in _TRANSITIONS[current]:
        raise StateTransitionError(f"Illegal transition {current.value} -> {target.value}")
    return target


class Connection:
    """One live transport session for one authenticated participant.

    Attributes:
        id: Ephemeral connection ID, regenerated per physical connection.
        websocket: The underlying transport.
        participant_id: Identity bound at handshake (immutable once set).
        rooms: Rooms this connection is currently subscribed to.
        state: Current lifecycle state.
        connected_at: Monotonic time the connection was created.
        last_seen: Monotonic time of the last inbound frame.
    """

    def __init__(self, websocket: WebSocket, connection_id: Optional[str] = None) -> None:
        self.id = connection_id or str(uuid.uuid4())
        self.websocket = websocket
        self.participant_id: Optional[str] = None
        self.rooms: Set[str] = set()
        self.state = ConnectionState.CONNECTING
        self.connected_at = time.monotonic()
        self.last_seen = self.connected_at

    def __repr__(self) -> str:
        return f"<Connection {self.id[:8]} {self.participant_id} {self.state.value}>"

    @property
    def is_active(self) -> bool:
        return self.state == ConnectionState.ACTIVE

    @property
    def is_closed(self) -> bool:
        return self.state == ConnectionState.CLOSED

    def advance(self, target: ConnectionState) -> None:
        self.state = transition(self.state, target)
        logger.debug("[Conn] %s -> %s", self.id[:8], target.value)

    def bind(self, participant_id: str) -> None:
        """Bind the authenticated identity and become ACTIVE."""
        if self.participant_id is not None:
            raise StateTransitionError("Connection identity is already bound")
        self.advance(ConnectionState.ACTIVE)
        self.participant_id = participant_id

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    async def send(self, event: BaseModel) -> bool:
        """Send an event, swallowing transport failures.

        Returns:
            True if successful, False if the connection failed or is closed.
        """
        if self.is_closed:
            return False
        try:
            await self.websocket.send_json(event.model_dump(mode="json"))
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection {self.id[:8]}: {e}")
            return False
