"""Bounded exponential backoff for client reconnection."""
from dataclasses import dataclass
from typing import Iterator

from mingle.config import ClientSettings


@dataclass(frozen=True)
class ReconnectPolicy:
    """How often and how patiently a session retries a dropped connection.

    The delay before attempt ``n`` (starting at 0) is
    ``min(base_delay * factor ** n, max_delay)``.
    """
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 5.0
    factor: float = 2.0

    @classmethod
    def from_settings(cls, settings: ClientSettings) -> "ReconnectPolicy":
        return cls(
            max_attempts=settings.reconnect_attempts,
            base_delay=settings.reconnect_base_delay,
            max_delay=settings.reconnect_max_delay,
        )

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * (self.factor ** attempt), self.max_delay)

    def delays(self) -> Iterator[float]:
        """Yield one delay per allowed attempt."""
        for attempt in range(max(self.max_attempts, 0)):
            yield self.delay(attempt)
