"""REST endpoints for rooms and message history.

All routes require ``Authorization: Bearer <token>``.

This module provides:
    - GET  /rooms: Rooms of the caller, most recent activity first
    - POST /rooms: Find or create the room for a participant set
    - GET  /rooms/{room_id}: Room detail
    - GET  /rooms/{room_id}/messages: Paginated message history
    - POST /rooms/{room_id}/messages: Send a message (persist, then broadcast)
    - POST /rooms/{room_id}/read: Advance the caller's read cursor
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from .broker import Broker
from .dependencies import get_broker, get_current_participant
from .schemas import (
    CreateRoomRequest,
    HistoryPage,
    MarkReadRequest,
    Message,
    Room,
    RoomSummary,
    SendMessageRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rooms", tags=["rooms"])


@router.get("", response_model=List[RoomSummary])
async def list_rooms(
    participant_id: str = Depends(get_current_participant),
    broker: Broker = Depends(get_broker),
) -> List[RoomSummary]:
    return broker.directory.list_rooms_for(participant_id)


@router.post("", response_model=Room)
async def find_or_create_room(
    body: CreateRoomRequest,
    response: Response,
    participant_id: str = Depends(get_current_participant),
    broker: Broker = Depends(get_broker),
) -> Room:
    """Return the room for ``participantIds``, creating it on first use.

    Responds 201 when the room was created by this call, 200 otherwise.
    """
    room, created = broker.directory.resolve(body.participantIds, requester=participant_id)
    if created:
        response.status_code = status.HTTP_201_CREATED
        logger.info(f"[Rooms] {participant_id} opened room {room.id}")
    return room


@router.get("/{room_id}", response_model=Room)
async def get_room(
    room_id: str,
    participant_id: str = Depends(get_current_participant),
    broker: Broker = Depends(get_broker),
) -> Room:
    return broker.directory.require_participant(room_id, participant_id)


@router.get("/{room_id}/messages", response_model=HistoryPage)
async def get_messages(
    room_id: str,
    since: Optional[str] = Query(None, description="Message ID cursor: return messages after it"),
    before: Optional[str] = Query(None, description="Message ID cursor: return messages before it"),
    limit: Optional[int] = Query(None, ge=1, description="Page size"),
    participant_id: str = Depends(get_current_participant),
    broker: Broker = Depends(get_broker),
) -> HistoryPage:
    """Get one page of history, oldest first.

    Without ``since`` the page is the most recent ``limit`` messages (before
    ``before`` when given) and ``hasMore`` says whether older ones exist.
    With ``since`` the page starts right after the cursor and ``hasMore``
    says whether newer ones exist.

    Example:
        GET /rooms/abc/messages?limit=50
        GET /rooms/abc/messages?before=<oldest id>&limit=50
        GET /rooms/abc/messages?since=<newest id>
    """
    settings = broker.settings
    page_size = min(limit or settings.history_page_size, settings.max_page_size)

    broker.directory.require_participant(room_id, participant_id)
    # One extra row tells us whether another page exists
    messages = broker.store.history(room_id, since=since, before=before, limit=page_size + 1)

    has_more = len(messages) > page_size
    if has_more:
        messages = messages[:page_size] if since is not None else messages[1:]
    return HistoryPage(messages=messages, hasMore=has_more)


@router.post("/{room_id}/messages", response_model=Message, status_code=status.HTTP_201_CREATED)
async def send_message(
    room_id: str,
    body: SendMessageRequest,
    participant_id: str = Depends(get_current_participant),
    broker: Broker = Depends(get_broker),
) -> Message:
    return await broker.broadcast.send(participant_id, room_id, body.content)


@router.post("/{room_id}/read")
async def mark_read(
    room_id: str,
    body: MarkReadRequest,
    participant_id: str = Depends(get_current_participant),
    broker: Broker = Depends(get_broker),
) -> dict:
    advanced = await broker.broadcast.mark_read(participant_id, room_id, body.messageId)
    return {"roomId": room_id, "messageId": body.messageId, "advanced": advanced}
