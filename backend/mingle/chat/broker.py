"""Chat broker: composition root for one server process.

The broker owns the Message Store, the Chat Directory, the Room Registry,
the Connection Manager and the Broadcast Protocol, and routes parsed client
events to them. It is created once at startup and stored on
``app.state.broker``; routers reach it through the request/websocket app.
"""
import logging
from typing import Optional

from mingle.auth.service import IdentityService
from mingle.config import AppConfig, ChatSettings

from .broadcast import BroadcastProtocol
from .connection import Connection
from .directory import ChatDirectory
from .errors import ChatError, InvalidRequest
from .manager import ConnectionManager
from .protocol import (
    AuthEvent,
    ClientEvent,
    CloseEvent,
    ErrorEvent,
    JoinEvent,
    LeaveEvent,
    ReadEvent,
    SendEvent,
)
from .registry import InMemoryRoomRegistry, RoomRegistry
from .store import MessageStore

logger = logging.getLogger(__name__)


class Broker:
    """Wires the chat components together and dispatches client events."""

    def __init__(
        self,
        store: MessageStore,
        identity: IdentityService,
        settings: Optional[ChatSettings] = None,
        registry: Optional[RoomRegistry] = None,
    ) -> None:
        self.settings = settings or ChatSettings()
        self.store = store
        self.identity = identity
        self.directory = ChatDirectory(store)
        self.registry = registry or InMemoryRoomRegistry()
        self.manager = ConnectionManager(
            self.directory, store, self.registry, identity, self.settings
        )
        self.broadcast = BroadcastProtocol(store, self.manager, self.settings)

    @classmethod
    def from_config(cls, config: AppConfig) -> "Broker":
        """Build a broker backed by the databases named in *config*."""
        store = MessageStore(config.store.path)
        identity = IdentityService(
            config.auth.path, default_ttl_seconds=config.auth.session_ttl_seconds
        )
        if config.auth.seed_sessions:
            identity.seed(config.auth.seed_sessions)
        return cls(store, identity, config.chat)

    async def dispatch(self, conn: Connection, event: ClientEvent) -> bool:
        """Handle one client event on an ACTIVE connection.

        Failures become an ``error`` event for the originating connection
        only, tagged with the room and ref the event carried.

        Returns:
            False when the client asked to close the connection.
        """
        if isinstance(event, CloseEvent):
            return False

        room_id = getattr(event, "roomId", None)
        ref = getattr(event, "ref", None)
        try:
            if isinstance(event, JoinEvent):
                await self.manager.join(conn, event.roomId, cursor=event.cursor)
            elif isinstance(event, LeaveEvent):
                await self.manager.leave(conn, event.roomId)
            elif isinstance(event, SendEvent):
                await self.broadcast.send(
                    conn.participant_id, event.roomId, event.content, origin=conn, ref=event.ref
                )
            elif isinstance(event, ReadEvent):
                self.directory.require_participant(event.roomId, conn.participant_id)
                await self.broadcast.mark_read(conn.participant_id, event.roomId, event.messageId)
            elif isinstance(event, AuthEvent):
                raise InvalidRequest("Connection is already authenticated")
            else:
                raise InvalidRequest(f"Unsupported event type: {event.type}")
        except ChatError as exc:
            logger.warning(
                f"[Broker] {event.type} from {conn.participant_id} failed: "
                f"{exc.code} {exc.reason}"
            )
            await conn.send(ErrorEvent.from_error(exc, room_id=room_id, ref=ref))
        return True

    async def shutdown(self) -> None:
        """Close every live connection, then the databases."""
        await self.manager.close_all()
        self.store.close()
        self.identity.close()
        logger.info("[Broker] Shut down")
