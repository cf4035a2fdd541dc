"""Client-side session adapter for the chat WebSocket.

``ChatSession`` keeps one logical connection per user. It tracks which rooms
the user considers active, holds a de-duplicated timeline per room, and
survives transport drops: it reconnects with bounded backoff, rejoins every
active room with the newest message it already has as cursor, and resends
messages whose ``ack`` never arrived (the server re-acknowledges a repeated
``ref`` instead of storing it twice).

Usage:
    session = ChatSession("ws://localhost:7000/ws/chat", token)
    await session.start()
    await session.join(room_id)
    message = await session.send(room_id, "hi!")
    await session.close()
"""
import asyncio
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import urlencode

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from mingle.chat.connection import ConnectionState, transition
from mingle.chat.errors import ChatError, InvalidRequest, Unauthorized, error_from_code
from mingle.chat.protocol import (
    AckEvent,
    ConnectedEvent,
    ErrorEvent,
    JoinedEvent,
    LeftEvent,
    MessageEvent,
    PeerJoinedEvent,
    PeerLeftEvent,
    ReadReceiptEvent,
    parse_server_event,
)
from mingle.chat.schemas import Message

from .backoff import ReconnectPolicy
from .timeline import RoomTimeline

logger = logging.getLogger(__name__)

# Reasons reported with the CLOSED state
REASON_CLOSED = "closed"
REASON_UNAUTHORIZED = "unauthorized"
REASON_DISCONNECTED = "disconnected"
REASON_SERVER_CLOSED = "closed by server"

_TRANSPORT_ERRORS = (ConnectionClosed, OSError, InvalidHandshake, asyncio.TimeoutError)

# Server close codes after which reconnecting is expected (restart, overload)
_RETRYABLE_CLOSE_CODES = frozenset({1012, 1013})


class ChatSession:
    """One user's logical chat connection.

    Args:
        url: WebSocket endpoint, e.g. ``ws://host:7000/ws/chat``.
        token: Session credential, sent as the ``token`` query parameter.
        policy: Reconnection policy. Defaults to 5 attempts, 1s to 5s.
        connect: Transport factory ``connect(uri) -> awaitable connection``.
            Defaults to ``websockets.asyncio.client.connect``.
        on_message: Called with each message that is new to a timeline.
        on_state_change: Called with ``(state, reason)`` on every transition.
        on_error: Called with a ChatError the server reported outside any
            pending request.
        on_presence: Called with peer_joined / peer_left / read_receipt events.
        connect_timeout: Seconds allowed for opening the transport and
            receiving the ``connected`` event.
        sleep: Awaitable used between reconnect attempts.
    """

    def __init__(
        self,
        url: str,
        token: str,
        policy: Optional[ReconnectPolicy] = None,
        connect: Optional[Callable[[str], Awaitable[Any]]] = None,
        on_message: Optional[Callable[[Message], None]] = None,
        on_state_change: Optional[Callable[[ConnectionState, Optional[str]], None]] = None,
        on_error: Optional[Callable[[ChatError], None]] = None,
        on_presence: Optional[Callable[[Any], None]] = None,
        connect_timeout: float = 20.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._url = url
        self._token = token
        self._policy = policy or ReconnectPolicy()
        self._connect = connect or self._default_connect
        self._on_message = on_message
        self._on_state_change = on_state_change
        self._on_error = on_error
        self._on_presence = on_presence
        self._connect_timeout = connect_timeout
        self._sleep = sleep

        self.state = ConnectionState.CONNECTING
        self.close_reason: Optional[str] = None
        self.participant_id: Optional[str] = None
        self.connection_id: Optional[str] = None

        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._active_rooms: Set[str] = set()
        self._timelines: Dict[str, RoomTimeline] = {}

        # room_id -> future resolved by the matching joined / left event
        self._pending_joins: Dict[str, asyncio.Future] = {}
        self._pending_leaves: Dict[str, asyncio.Future] = {}
        # ref -> (room_id, content, future resolved by ack / error)
        self._outbox: Dict[str, Tuple[str, str, asyncio.Future]] = {}

    async def _default_connect(self, uri: str) -> Any:
        return await ws_connect(uri, open_timeout=self._connect_timeout)

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def rooms(self) -> Set[str]:
        """Rooms this session considers active."""
        return set(self._active_rooms)

    def timeline(self, room_id: str) -> RoomTimeline:
        timeline = self._timelines.get(room_id)
        if timeline is None:
            timeline = self._timelines[room_id] = RoomTimeline(room_id)
        return timeline

    def _set_state(self, target: ConnectionState, reason: Optional[str] = None) -> None:
        self.state = transition(self.state, target)
        if target == ConnectionState.CLOSED:
            self.close_reason = reason
        logger.info(f"[Session] {self.participant_id or '?'} -> {target.value}"
                    f"{' (' + reason + ')' if reason else ''}")
        self._invoke(self._on_state_change, target, reason)

    @staticmethod
    def _invoke(callback: Optional[Callable[..., None]], *args: Any) -> None:
        """Run a user callback; its failure must not stop the reader loop."""
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception(f"[Session] Callback {getattr(callback, '__name__', callback)} failed")

    # =========================================================================
    # Connect / handshake
    # =========================================================================

    async def start(self) -> None:
        """Open the connection and complete the handshake.

        Raises:
            Unauthorized: The credential was rejected (state CLOSED,
                reason ``unauthorized``; no retry).
            ConnectionError: The transport could not be opened (state
                CLOSED, reason ``disconnected``).
        """
        if self.state != ConnectionState.CONNECTING:
            raise RuntimeError(f"Session already started ({self.state.value})")
        try:
            ws = await self._open_transport()
        except _TRANSPORT_ERRORS as exc:
            self._set_state(ConnectionState.CLOSED, REASON_DISCONNECTED)
            raise ConnectionError(f"Could not connect to {self._url}: {exc}") from exc

        self._set_state(ConnectionState.AUTHENTICATING)
        try:
            await self._handshake(ws)
        except Unauthorized:
            self._set_state(ConnectionState.CLOSED, REASON_UNAUTHORIZED)
            raise
        except (ChatError, ValueError, *_TRANSPORT_ERRORS) as exc:
            await self._close_quietly(ws)
            self._set_state(ConnectionState.CLOSED, REASON_DISCONNECTED)
            raise ConnectionError(f"Handshake with {self._url} failed: {exc}") from exc

        self._set_state(ConnectionState.ACTIVE)
        self._reader = asyncio.ensure_future(self._run())

    async def _open_transport(self) -> Any:
        uri = f"{self._url}?{urlencode({'token': self._token})}"
        return await asyncio.wait_for(self._connect(uri), timeout=self._connect_timeout)

    async def _handshake(self, ws: Any) -> None:
        raw = await asyncio.wait_for(ws.recv(), timeout=self._connect_timeout)
        event = parse_server_event(json.loads(raw))
        if isinstance(event, ErrorEvent):
            await self._close_quietly(ws)
            raise error_from_code(event.code, event.reason)
        if not isinstance(event, ConnectedEvent):
            raise InvalidRequest(f"Expected 'connected', got '{event.type}'")
        self._ws = ws
        self.participant_id = event.participantId
        self.connection_id = event.connectionId

    # =========================================================================
    # Public API
    # =========================================================================

    async def join(self, room_id: str) -> List[Message]:
        """Subscribe to a room and return its timeline after the snapshot."""
        self._ensure_open()
        self._active_rooms.add(room_id)
        future = self._pending_joins.get(room_id)
        if future is None or future.done():
            future = self._pending_joins[room_id] = asyncio.get_running_loop().create_future()
        if self.state == ConnectionState.ACTIVE:
            await self._send_frame({
                "type": "join",
                "roomId": room_id,
                "cursor": self.timeline(room_id).cursor,
            })
        await future
        return self.timeline(room_id).messages

    async def leave(self, room_id: str) -> None:
        """Unsubscribe from a room. It is no longer rejoined after reconnect."""
        self._ensure_open()
        self._active_rooms.discard(room_id)
        if self.state != ConnectionState.ACTIVE:
            return
        future = asyncio.get_running_loop().create_future()
        self._pending_leaves[room_id] = future
        if await self._send_frame({"type": "leave", "roomId": room_id}):
            await future
        else:
            self._pending_leaves.pop(room_id, None)

    async def send(self, room_id: str, content: str) -> Message:
        """Send a message and wait for its canonical form.

        While reconnecting the message is held and sent once the session is
        ACTIVE again.

        Raises:
            ChatError: The server rejected the message.
            ConnectionError: The session closed before an ``ack`` arrived.
        """
        self._ensure_open()
        ref = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._outbox[ref] = (room_id, content, future)
        if self.state == ConnectionState.ACTIVE:
            await self._send_frame(
                {"type": "send", "roomId": room_id, "content": content, "ref": ref}
            )
        return await future

    async def mark_read(self, room_id: str, message_id: str) -> None:
        self._ensure_open()
        await self._send_frame({"type": "read", "roomId": room_id, "messageId": message_id})

    async def close(self) -> None:
        """Clean disconnect: no reconnection follows."""
        if self.state == ConnectionState.CLOSED:
            return
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.send(json.dumps({"type": "close"}))
            except _TRANSPORT_ERRORS:
                pass
            await self._close_quietly(ws)
        self._set_state(ConnectionState.CLOSED, REASON_CLOSED)
        self._fail_pending(ConnectionError("Session closed"))
        reader = self._reader
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

    async def wait_closed(self) -> None:
        """Wait until the session reaches CLOSED on its own."""
        if self._reader is not None:
            await asyncio.shield(self._reader)

    def _ensure_open(self) -> None:
        if self.state == ConnectionState.CLOSED:
            raise ConnectionError(f"Session is closed ({self.close_reason})")
        if self.state in (ConnectionState.CONNECTING, ConnectionState.AUTHENTICATING):
            raise RuntimeError("Session is not started")

    # =========================================================================
    # Transport
    # =========================================================================

    async def _send_frame(self, data: dict) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(json.dumps(data))
            return True
        except _TRANSPORT_ERRORS as exc:
            # The reader notices the drop and starts reconnecting
            logger.debug(f"[Session] Send failed: {exc}")
            return False

    @staticmethod
    async def _close_quietly(ws: Any) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"[Session] Close failed: {e}")

    async def _run(self) -> None:
        """Reader loop; reconnects after an abnormal drop.

        A close frame from the server (idle timeout, shutdown, policy
        violation) terminates the session without reconnecting, unless its
        code asks the client to come back (1012, 1013).
        """
        while self.state == ConnectionState.ACTIVE:
            ws = self._ws
            try:
                while True:
                    raw = await ws.recv()
                    self._handle_frame(raw)
            except _TRANSPORT_ERRORS as exc:
                if self.state != ConnectionState.ACTIVE:
                    return
                self._ws = None
                await self._close_quietly(ws)
                close_frame = getattr(exc, "rcvd", None)
                if close_frame is not None and close_frame.code not in _RETRYABLE_CLOSE_CODES:
                    logger.info(
                        f"[Session] Server closed the connection "
                        f"(code={close_frame.code}, reason={close_frame.reason!r})"
                    )
                    self._set_state(ConnectionState.CLOSED, REASON_SERVER_CLOSED)
                    self._fail_pending(ConnectionError("Connection closed by server"))
                    return
                logger.warning(f"[Session] Connection lost: {exc}")

            await self._reconnect()

    async def _reconnect(self) -> None:
        self._set_state(ConnectionState.RECONNECTING)
        for attempt, delay in enumerate(self._policy.delays(), 1):
            await self._sleep(delay)
            if self.state != ConnectionState.RECONNECTING:
                return
            ws = None
            try:
                ws = await self._open_transport()
                await self._handshake(ws)
            except Unauthorized:
                self._set_state(ConnectionState.CLOSED, REASON_UNAUTHORIZED)
                self._fail_pending(Unauthorized("Credential rejected on reconnect"))
                return
            except (ChatError, ValueError, *_TRANSPORT_ERRORS) as exc:
                if ws is not None:
                    await self._close_quietly(ws)
                logger.info(
                    f"[Session] Reconnect attempt {attempt}/{self._policy.max_attempts} "
                    f"failed: {exc}"
                )
                continue

            self._set_state(ConnectionState.ACTIVE)
            await self._resume()
            return

        self._set_state(ConnectionState.CLOSED, REASON_DISCONNECTED)
        self._fail_pending(ConnectionError("Disconnected: reconnect attempts exhausted"))

    async def _resume(self) -> None:
        """Rejoin active rooms from their cursors and resend unacked messages."""
        for room_id in sorted(self._active_rooms):
            await self._send_frame({
                "type": "join",
                "roomId": room_id,
                "cursor": self.timeline(room_id).cursor,
            })
        for ref, (room_id, content, future) in list(self._outbox.items()):
            if not future.done():
                await self._send_frame(
                    {"type": "send", "roomId": room_id, "content": content, "ref": ref}
                )

    def _fail_pending(self, exc: Exception) -> None:
        futures = list(self._pending_joins.values()) + list(self._pending_leaves.values())
        futures += [future for _, _, future in self._outbox.values()]
        self._pending_joins.clear()
        self._pending_leaves.clear()
        self._outbox.clear()
        for future in futures:
            if not future.done():
                future.set_exception(exc)

    # =========================================================================
    # Inbound events
    # =========================================================================

    def _handle_frame(self, raw: Any) -> None:
        try:
            event = parse_server_event(json.loads(raw))
        except ValueError as exc:
            logger.warning(f"[Session] Ignoring malformed frame: {exc}")
            return

        if isinstance(event, MessageEvent):
            self._add(event.message)
        elif isinstance(event, AckEvent):
            self._add(event.message)
            entry = self._outbox.pop(event.ref, None) if event.ref else None
            if entry is not None and not entry[2].done():
                entry[2].set_result(event.message)
        elif isinstance(event, JoinedEvent):
            for message in self.timeline(event.roomId).merge(event.messages):
                self._notify(message)
            self._resolve(self._pending_joins, event.roomId, None)
        elif isinstance(event, LeftEvent):
            self._resolve(self._pending_leaves, event.roomId, None)
        elif isinstance(event, ErrorEvent):
            self._handle_error(event)
        elif isinstance(event, (PeerJoinedEvent, PeerLeftEvent, ReadReceiptEvent)):
            self._invoke(self._on_presence, event)

    def _handle_error(self, event: ErrorEvent) -> None:
        error = error_from_code(event.code, event.reason)
        if event.ref and event.ref in self._outbox:
            _, _, future = self._outbox.pop(event.ref)
            if not future.done():
                future.set_exception(error)
            return
        if event.roomId and event.roomId in self._pending_joins:
            self._active_rooms.discard(event.roomId)
            future = self._pending_joins.pop(event.roomId)
            if not future.done():
                future.set_exception(error)
            return
        logger.warning(f"[Session] Server error: {event.code} {event.reason}")
        self._invoke(self._on_error, error)

    @staticmethod
    def _resolve(pending: Dict[str, asyncio.Future], room_id: str, result: Any) -> None:
        future = pending.pop(room_id, None)
        if future is not None and not future.done():
            future.set_result(result)

    def _add(self, message: Message) -> None:
        if self.timeline(message.roomId).add(message):
            self._notify(message)

    def _notify(self, message: Message) -> None:
        self._invoke(self._on_message, message)
