"""FastAPI dependencies shared by the chat routers.

A single Broker is created at startup and stored on ``app.state.broker``.
Tests build their own broker and pass it to ``create_app``.
"""
from typing import Optional

from fastapi import Depends, Header, Request

from .broker import Broker
from .errors import Unauthorized


def get_broker(request: Request) -> Broker:
    return request.app.state.broker


def get_current_participant(
    authorization: Optional[str] = Header(None),
    broker: Broker = Depends(get_broker),
) -> str:
    """Resolve ``Authorization: Bearer <token>`` to a participant ID."""
    if not authorization:
        raise Unauthorized("Missing credential")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Expected a Bearer credential")
    return broker.identity.resolve(token.strip())
