"""WebSocket wire protocol.

Every frame is a JSON object discriminated by its ``type`` field. Each event
type is a pydantic model with a fixed schema, and the two directions are
closed unions, so a handler can dispatch exhaustively on the event class.

Client -> Server:
    - auth: credential, only when no ``token`` query parameter was supplied
    - join: subscribe to a room (optionally replaying history after a cursor)
    - leave: unsubscribe from a room
    - send: post a message to a room
    - read: advance the caller's read cursor
    - close: clean disconnect (no reconnection expected)

Server -> Client:
    - connected, joined, left, message, ack, error,
      peer_joined, peer_left, read_receipt
"""
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .errors import ChatError, InvalidRequest
from .schemas import Message


# =============================================================================
# Client -> Server
# =============================================================================


class AuthEvent(BaseModel):
    type: Literal["auth"] = "auth"
    token: str


class JoinEvent(BaseModel):
    type: Literal["join"] = "join"
    roomId: str = Field(..., min_length=1)
    cursor: Optional[str] = Field(
        default=None,
        description="Last message ID the client already has (history replay)",
    )


class LeaveEvent(BaseModel):
    type: Literal["leave"] = "leave"
    roomId: str = Field(..., min_length=1)


class SendEvent(BaseModel):
    type: Literal["send"] = "send"
    roomId: str = Field(..., min_length=1)
    content: str
    ref: Optional[str] = Field(
        default=None,
        description="Client correlation token echoed on ack/error",
    )


class ReadEvent(BaseModel):
    type: Literal["read"] = "read"
    roomId: str = Field(..., min_length=1)
    messageId: str = Field(..., min_length=1)


class CloseEvent(BaseModel):
    type: Literal["close"] = "close"


ClientEvent = Annotated[
    Union[AuthEvent, JoinEvent, LeaveEvent, SendEvent, ReadEvent, CloseEvent],
    Field(discriminator="type"),
]


# =============================================================================
# Server -> Client
# =============================================================================


class ConnectedEvent(BaseModel):
    type: Literal["connected"] = "connected"
    connectionId: str
    participantId: str


class JoinedEvent(BaseModel):
    type: Literal["joined"] = "joined"
    roomId: str
    messages: List[Message] = Field(default_factory=list)
    isRecovery: bool = False


class LeftEvent(BaseModel):
    type: Literal["left"] = "left"
    roomId: str


class MessageEvent(BaseModel):
    type: Literal["message"] = "message"
    message: Message


class AckEvent(BaseModel):
    type: Literal["ack"] = "ack"
    message: Message
    ref: Optional[str] = None


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    code: str
    reason: str
    roomId: Optional[str] = None
    ref: Optional[str] = None

    @classmethod
    def from_error(
        cls,
        exc: ChatError,
        room_id: Optional[str] = None,
        ref: Optional[str] = None,
    ) -> "ErrorEvent":
        return cls(code=exc.code, reason=exc.reason, roomId=room_id, ref=ref)


class PeerJoinedEvent(BaseModel):
    type: Literal["peer_joined"] = "peer_joined"
    roomId: str
    participantId: str


class PeerLeftEvent(BaseModel):
    type: Literal["peer_left"] = "peer_left"
    roomId: str
    participantId: str


class ReadReceiptEvent(BaseModel):
    type: Literal["read_receipt"] = "read_receipt"
    roomId: str
    participantId: str
    messageId: str


ServerEvent = Annotated[
    Union[
        ConnectedEvent,
        JoinedEvent,
        LeftEvent,
        MessageEvent,
        AckEvent,
        ErrorEvent,
        PeerJoinedEvent,
        PeerLeftEvent,
        ReadReceiptEvent,
    ],
    Field(discriminator="type"),
]

_client_adapter: TypeAdapter = TypeAdapter(ClientEvent)
_server_adapter: TypeAdapter = TypeAdapter(ServerEvent)


def parse_client_event(data: Any) -> BaseModel:
    """Validate a raw client frame into its event model.

    Raises:
        InvalidRequest: If the frame is not an object, has an unknown
            ``type``, or does not match the event schema.
    """
    if not isinstance(data, dict):
        raise InvalidRequest("Invalid message format: expected a JSON object")
    try:
        return _client_adapter.validate_python(data)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(part) for part in first.get("loc", ()))
        detail = first.get("msg", "invalid payload")
        raise InvalidRequest(f"Invalid message format: {where} {detail}".strip()) from exc


def parse_server_event(data: Any) -> BaseModel:
    """Validate a raw server frame (client side)."""
    return _server_adapter.validate_python(data)
