"""Pydantic models for rooms and messages.

These are the canonical records owned by the Message Store. Field names are
camelCase because the same models travel over the WebSocket and REST
surfaces unchanged.
"""
from typing import List, Optional

from pydantic import BaseModel, Field


class Message(BaseModel):
    """A persisted chat message.

    Identity and timestamp are always assigned by the server at persistence
    time. Within a room, messages are totally ordered by ``(ts, seq)``.

    Attributes:
        id: Opaque unique message identifier.
        roomId: Room this message belongs to.
        senderId: Participant identity of the sender.
        content: Trimmed, non-empty message text.
        ts: Server timestamp in seconds since epoch (non-decreasing per room).
        seq: Store-assigned sequence number; tiebreak for equal timestamps.
    """
    id: str = Field(..., description="Server-assigned message ID")
    roomId: str = Field(..., description="Room ID this message belongs to")
    senderId: str = Field(..., description="Participant ID of the sender")
    content: str = Field(..., description="Message content")
    ts: float = Field(..., description="Timestamp in seconds since epoch")
    seq: int = Field(..., description="Store sequence number")

    def order_key(self) -> tuple:
        return (self.ts, self.seq)


class Room(BaseModel):
    """A persistent conversation scoped to a fixed participant set.

    Attributes:
        id: Opaque unique room identifier.
        participants: Sorted participant identities (size >= 2).
        createdAt: Creation timestamp (seconds since epoch).
        lastActivityAt: Timestamp of the latest append, or createdAt.
    """
    id: str
    participants: List[str]
    createdAt: float
    lastActivityAt: float


class RoomSummary(Room):
    """Room listing entry with its most recent message and unread count."""
    lastMessage: Optional[Message] = None
    unreadCount: int = 0


# =============================================================================
# REST payloads
# =============================================================================


class CreateRoomRequest(BaseModel):
    participantIds: List[str] = Field(..., description="Participants of the chat, caller included")


class SendMessageRequest(BaseModel):
    content: str


class MarkReadRequest(BaseModel):
    messageId: str = Field(..., min_length=1)


class HistoryPage(BaseModel):
    """One page of room history, oldest first."""
    messages: List[Message] = Field(default_factory=list)
    hasMore: bool = False
