"""WebSocket connection manager for real-time chat rooms.

This module owns the per-connection lifecycle: the authenticated handshake,
room membership (join/leave with history replay), fan-out to the members of
a room, and cleanup on disconnect.

Key features:
    - Credential handshake via ``token`` query parameter or a first ``auth``
      frame, bounded by a handshake timeout
    - Multi-room membership per connection
    - History snapshot on join, incremental replay after a cursor on rejoin
    - Presence notifications (peer_joined / peer_left)
    - Concurrent fan-out with asyncio.gather() and dead connection cleanup
    - Idle timeout on the receive loop

Thread Safety:
    This implementation is designed for async/await usage with a single event
    loop. Per-room ``asyncio.Lock`` objects serialize joins and sends to the
    same room so a joining connection either sees a message in its history
    snapshot or receives it as a broadcast, never both and never neither.
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from mingle.auth.service import IdentityService
from mingle.config import ChatSettings

from .connection import Connection, ConnectionState
from .directory import ChatDirectory
from .errors import ChatError, InvalidRequest, Unauthorized
from .protocol import (
    AuthEvent,
    ConnectedEvent,
    ErrorEvent,
    JoinedEvent,
    LeftEvent,
    PeerJoinedEvent,
    PeerLeftEvent,
    parse_client_event,
)
from .registry import RoomRegistry
from .schemas import Message
from .store import MessageStore

logger = logging.getLogger(__name__)

# WebSocket close codes
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_TRY_AGAIN_LATER = 1013


class IdleTimeout(Exception):
    """No frame arrived within the configured idle timeout."""


class _RoomLock:
    """A room's lock and the number of tasks holding or waiting for it."""

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class ConnectionManager:
    """Manages live connections and their room subscriptions.

    Connections are process-local. The Room Registry is only ever mutated
    here; the Broadcast Protocol reads it through :meth:`publish`.
    """

    def __init__(
        self,
        directory: ChatDirectory,
        store: MessageStore,
        registry: RoomRegistry,
        identity: IdentityService,
        settings: ChatSettings,
    ) -> None:
        self._directory = directory
        self._store = store
        self._registry = registry
        self._identity = identity
        self._settings = settings

        # connection_id -> Connection (ACTIVE connections only)
        self.connections: Dict[str, Connection] = {}

        # room_id -> lock serializing join snapshots and appends.
        # Entries are dropped once unused and the room has no subscribers.
        self._room_locks: Dict[str, _RoomLock] = {}

        # Presence fan-outs still running after their caller was cancelled
        self._pending: Set[asyncio.Task] = set()

    @property
    def registry(self) -> RoomRegistry:
        return self._registry

    @asynccontextmanager
    async def room_lock(self, room_id: str) -> AsyncIterator[None]:
        """Hold the room's lock for the duration of the block."""
        entry = self._room_locks.get(room_id)
        if entry is None:
            entry = self._room_locks[room_id] = _RoomLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            self._discard_lock(room_id)

    def _discard_lock(self, room_id: str) -> None:
        entry = self._room_locks.get(room_id)
        if entry is not None and entry.users == 0 and not self._registry.members_of(room_id):
            del self._room_locks[room_id]

    def _participant_in_room(
        self, room_id: str, participant_id: Optional[str], exclude: Optional[str] = None
    ) -> bool:
        """Whether another connection of *participant_id* is subscribed to the room."""
        for connection_id in self._registry.members_of(room_id):
            if connection_id == exclude:
                continue
            other = self.connections.get(connection_id)
            if other is not None and other.participant_id == participant_id:
                return True
        return False

    def get(self, connection_id: str) -> Optional[Connection]:
        return self.connections.get(connection_id)

    def connections_for(self, participant_id: str) -> List[Connection]:
        return [c for c in self.connections.values() if c.participant_id == participant_id]

    # =========================================================================
    # Handshake
    # =========================================================================

    async def accept(
        self, websocket: WebSocket, credential: Optional[str] = None
    ) -> Optional[Connection]:
        """Accept a transport connection and authenticate it.

        The credential comes from the ``token`` query parameter or, when that
        is absent, from a first ``auth`` frame that must arrive within the
        handshake timeout. A connection without a valid credential is closed
        with 1008 and never reaches ACTIVE.

        Returns:
            The ACTIVE connection, or None if the handshake was rejected.
        """
        conn = Connection(websocket)
        await websocket.accept()
        conn.advance(ConnectionState.AUTHENTICATING)

        try:
            if credential is None:
                credential = await self._await_credential(websocket)
            participant_id = self._identity.resolve(credential)
        except ChatError as exc:
            logger.warning(f"[Manager] Handshake rejected for {conn.id[:8]}: {exc.reason}")
            await conn.send(ErrorEvent.from_error(exc))
            await self._close_transport(conn, CLOSE_POLICY_VIOLATION)
            conn.advance(ConnectionState.CLOSED)
            return None

        conn.bind(participant_id)
        self.connections[conn.id] = conn
        logger.info(f"[Manager] Connection {conn.id[:8]} authenticated as {participant_id}")

        await conn.send(ConnectedEvent(connectionId=conn.id, participantId=participant_id))
        return conn

    async def _await_credential(self, websocket: WebSocket) -> str:
        timeout = self._settings.handshake_timeout_seconds
        try:
            raw = await asyncio.wait_for(websocket.receive_text(), timeout=timeout)
            event = parse_client_event(json.loads(raw))
        except asyncio.TimeoutError:
            raise Unauthorized(f"No credential received within {timeout:g}s")
        except WebSocketDisconnect:
            raise Unauthorized("Client disconnected during handshake")
        except (TypeError, ValueError, KeyError, InvalidRequest):
            raise Unauthorized("Expected an auth frame with a credential")
        if not isinstance(event, AuthEvent):
            raise Unauthorized("Expected an auth frame with a credential")
        return event.token

    # =========================================================================
    # Receive loop support
    # =========================================================================

    async def receive(self, conn: Connection) -> Any:
        """Receive and decode one JSON frame from a connection.

        Raises:
            IdleTimeout: Nothing arrived within the idle timeout.
            InvalidRequest: The frame was not valid JSON text.
            WebSocketDisconnect: The transport went away.
        """
        timeout = self._settings.idle_timeout_seconds or None
        try:
            raw = await asyncio.wait_for(conn.websocket.receive_text(), timeout=timeout)
        except asyncio.TimeoutError:
            raise IdleTimeout(conn.id)
        except KeyError:
            raise InvalidRequest("Invalid message format: expected a text frame")
        conn.touch()
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            raise InvalidRequest("Invalid message format: not valid JSON")

    # =========================================================================
    # Room membership
    # =========================================================================

    def _require_active(self, conn: Connection) -> None:
        if not conn.is_active or conn.participant_id is None:
            raise Unauthorized("Connection is not authenticated")

    async def join(
        self, conn: Connection, room_id: str, cursor: Optional[str] = None
    ) -> List[Message]:
        """Subscribe a connection to a room and send it the history snapshot.

        Without a cursor the snapshot is the most recent page of history.
        With a cursor (rejoin after reconnect) it is every message after the
        cursor, so the client only receives what it is missing.

        Raises:
            Unauthorized: The connection is not ACTIVE.
            NotFound: The room (or the cursor message) does not exist.
            Forbidden: The participant is not a member of the room.
        """
        self._require_active(conn)
        self._directory.require_participant(room_id, conn.participant_id)

        async with self.room_lock(room_id):
            if cursor:
                history = self._store.history(room_id, since=cursor)
            else:
                history = self._store.history(room_id, limit=self._settings.history_page_size)
            newly_joined = self._registry.subscribe(room_id, conn.id)
            conn.rooms.add(room_id)
            await conn.send(
                JoinedEvent(roomId=room_id, messages=history, isRecovery=cursor is not None)
            )

        logger.info(
            f"[Manager] {conn.participant_id} joined room {room_id} "
            f"({len(history)} messages, cursor={cursor})"
        )
        # Presence is per participant: a second device joining is not news
        if newly_joined and not self._participant_in_room(
            room_id, conn.participant_id, exclude=conn.id
        ):
            await self.publish(
                room_id,
                PeerJoinedEvent(roomId=room_id, participantId=conn.participant_id),
                exclude=conn.id,
            )
        return history

    async def leave(self, conn: Connection, room_id: str) -> bool:
        """Unsubscribe a connection from a room (no-op if not a member)."""
        self._require_active(conn)
        removed = self._registry.unsubscribe(room_id, conn.id)
        conn.rooms.discard(room_id)
        await conn.send(LeftEvent(roomId=room_id))
        if removed:
            logger.info(f"[Manager] {conn.participant_id} left room {room_id}")
            if not self._participant_in_room(room_id, conn.participant_id):
                await self.publish(
                    room_id,
                    PeerLeftEvent(roomId=room_id, participantId=conn.participant_id),
                    exclude=conn.id,
                )
        self._discard_lock(room_id)
        return removed

    # =========================================================================
    # Disconnect
    # =========================================================================

    async def disconnect(self, conn: Connection, clean: bool, reason: str = "") -> None:
        """Tear down a connection and remove every room membership it held.

        Safe to call more than once; a CLOSED connection is left untouched.
        Membership is removed before the first await. The ``peer_left``
        fan-out keeps running if the caller is cancelled (an endpoint task
        torn down by the server).
        """
        if conn.is_closed:
            return
        conn.advance(ConnectionState.CLOSED)
        self.connections.pop(conn.id, None)

        left = set(conn.rooms)
        for room_id in conn.rooms:
            self._registry.unsubscribe(room_id, conn.id)
        left |= self._registry.unsubscribe_all(conn.id)
        conn.rooms.clear()
        for room_id in left:
            self._discard_lock(room_id)

        kind = "clean" if clean else "abnormal"
        logger.info(
            f"[Manager] Connection {conn.id[:8]} ({conn.participant_id}) closed: "
            f"{kind}{', ' + reason if reason else ''}; left {len(left)} room(s)"
        )

        departed = [
            room_id for room_id in sorted(left)
            if not self._participant_in_room(room_id, conn.participant_id)
        ]
        if departed:
            task = asyncio.ensure_future(self._announce_departure(conn, departed))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            await asyncio.shield(task)

    async def _announce_departure(self, conn: Connection, room_ids: Iterable[str]) -> None:
        for room_id in room_ids:
            await self.publish(
                room_id,
                PeerLeftEvent(roomId=room_id, participantId=conn.participant_id or ""),
            )

    async def close(self, conn: Connection, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """Server-initiated termination of a connection."""
        await self._close_transport(conn, code)
        await self.disconnect(conn, clean=True, reason=reason or "closed by server")

    async def close_all(self, code: int = CLOSE_GOING_AWAY) -> None:
        for conn in list(self.connections.values()):
            await self.close(conn, code, reason="server shutdown")
        await self.drain()

    async def drain(self) -> None:
        """Wait for presence fan-outs that outlived their caller."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _close_transport(self, conn: Connection, code: int) -> None:
        timeout = self._settings.send_timeout_seconds or None
        try:
            await asyncio.wait_for(conn.websocket.close(code=code), timeout=timeout)
        except Exception as e:
            logger.debug(f"Close on {conn.id[:8]} failed (already gone?): {e}")

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def publish(self, room_id: str, event: Any, exclude: Optional[str] = None) -> int:
        """Deliver an event to every connection subscribed to a room.

        Sends run concurrently with asyncio.gather(). A connection whose send
        fails or exceeds the send timeout has missed an event, so it is
        closed with 1013; the client reconnects and replays from its cursor.

        Args:
            room_id: Room to broadcast to.
            event: Server event model.
            exclude: Connection ID to skip (typically the originator).

        Returns:
            Number of connections the event was delivered to.
        """
        targets = []
        for connection_id in self._registry.members_of(room_id):
            if connection_id == exclude:
                continue
            conn = self.connections.get(connection_id)
            if conn is not None and conn.is_active:
                targets.append(conn)
        if not targets:
            return 0

        results = await asyncio.gather(
            *[self._send_bounded(conn, event) for conn in targets],
            return_exceptions=True,
        )

        failed = [conn for conn, ok in zip(targets, results) if ok is not True]
        for conn in failed:
            logger.warning(
                f"[Manager] Delivery to {conn.id[:8]} ({conn.participant_id}) "
                f"in room {room_id} failed, closing connection"
            )
            await self.close(conn, CLOSE_TRY_AGAIN_LATER, reason="send failed")
        return len(targets) - len(failed)

    async def _send_bounded(self, conn: Connection, event: Any) -> bool:
        timeout = self._settings.send_timeout_seconds or None
        try:
            return await asyncio.wait_for(conn.send(event), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[Manager] Send to {conn.id[:8]} timed out after {timeout}s")
            return False
