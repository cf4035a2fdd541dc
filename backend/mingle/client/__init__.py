"""Client-side session adapter for the Mingle chat WebSocket."""
from .backoff import ReconnectPolicy
from .session import ChatSession
from .timeline import RoomTimeline

__all__ = ["ChatSession", "ReconnectPolicy", "RoomTimeline"]
