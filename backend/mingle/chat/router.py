"""Chat WebSocket endpoint.

This module provides:
    - WebSocket /ws/chat: Real-time chat for one authenticated participant

The connection is not bound to a room. After the handshake the client
subscribes to as many rooms as it likes with ``join`` events.

Protocol Flow:
    1. Client connects with ``?token=...`` (or sends {type: "auth", token})
       -> Server sends: {type: "connected", connectionId, participantId}
       -> On a bad credential: {type: "error", code: "unauthorized"}, close 1008
    2. Client sends: {type: "join", roomId, cursor?}
       -> Server sends: {type: "joined", roomId, messages, isRecovery}
       -> Other members receive: {type: "peer_joined", roomId, participantId}
    3. Client sends: {type: "send", roomId, content, ref?}
       -> Other members receive: {type: "message", message}
       -> Sender receives: {type: "ack", message, ref}
    4. Client sends: {type: "read", roomId, messageId}
       -> Members receive: {type: "read_receipt", roomId, participantId, messageId}
    5. Client sends: {type: "leave", roomId} -> {type: "left", roomId}
    6. Client sends: {type: "close"} -> server closes with 1000
    7. On disconnect -> members receive: {type: "peer_left", roomId, participantId}
"""
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from .broker import Broker
from .errors import InvalidRequest
from .manager import CLOSE_GOING_AWAY, CLOSE_NORMAL, IdleTimeout
from .protocol import ErrorEvent, parse_client_event

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Session credential"),
) -> None:
    """WebSocket endpoint handling the full lifecycle of one connection.

    Args:
        websocket: The WebSocket connection.
        token: Optional session credential. When absent the first frame
            must be an ``auth`` event.
    """
    broker: Broker = websocket.app.state.broker
    manager = broker.manager

    conn = await manager.accept(websocket, credential=token)
    if conn is None:
        return
    logger.info(f"[WS] {conn.participant_id} connected ({conn.id[:8]})")

    clean = False
    reason = ""
    try:
        while True:
            try:
                event = parse_client_event(await manager.receive(conn))
            except InvalidRequest as exc:
                logger.debug("[WS] Rejected frame from %s: %s", conn.participant_id, exc.reason)
                await conn.send(ErrorEvent.from_error(exc))
                continue

            logger.debug("[WS] %s -> %s", conn.participant_id, event.type)
            if not await broker.dispatch(conn, event):
                clean = True
                reason = "closed by client"
                await manager.close(conn, CLOSE_NORMAL, reason)
                break

    except IdleTimeout:
        logger.info(f"[WS] {conn.participant_id} idle, closing {conn.id[:8]}")
        clean = True
        reason = "idle timeout"
        await manager.close(conn, CLOSE_GOING_AWAY, reason)

    except WebSocketDisconnect as exc:
        logger.info(f"[WS] {conn.participant_id} disconnected (code={exc.code})")
        clean = exc.code == CLOSE_NORMAL
        reason = f"transport closed ({exc.code})"

    except Exception as e:
        logger.error(f"[WS] Error for {conn.participant_id}: {e}", exc_info=True)
        reason = str(e)

    finally:
        await manager.disconnect(conn, clean=clean, reason=reason)
