"""Error taxonomy shared by the chat core, the REST layer and the client.

Each error carries a stable wire ``code`` (sent in ``error`` events) and an
HTTP ``status_code`` (used by the REST exception handler).
"""
from typing import Dict, Optional, Type


class ChatError(Exception):
    """Base class for every error surfaced to a client."""

    code: str = "error"
    status_code: int = 500

    def __init__(self, reason: str = "") -> None:
        super().__init__(reason or self.code)
        self.reason = reason or self.code


class Unauthorized(ChatError):
    """Missing or invalid credential, or identity not part of the request."""
    code = "unauthorized"
    status_code = 401


class Forbidden(ChatError):
    """Authenticated identity is not a participant of the target room."""
    code = "forbidden"
    status_code = 403


class InvalidRequest(ChatError):
    """Malformed payload: empty content, bad participant set, unknown event."""
    code = "invalid_request"
    status_code = 400


class NotFound(ChatError):
    """Referenced room or message does not exist."""
    code = "not_found"
    status_code = 404


class TransientIO(ChatError):
    """The store is temporarily unavailable; the caller may retry."""
    code = "transient_io"
    status_code = 503


class StateTransitionError(RuntimeError):
    """Illegal connection lifecycle transition (programming error)."""


_BY_CODE: Dict[str, Type[ChatError]] = {
    cls.code: cls
    for cls in (Unauthorized, Forbidden, InvalidRequest, NotFound, TransientIO)
}


def error_from_code(code: str, reason: Optional[str] = None) -> ChatError:
    """Rebuild a typed error from a wire ``error`` event."""
    cls = _BY_CODE.get(code, ChatError)
    return cls(reason or code)
