"""DuckDB-backed session token service.

Clients present an opaque session token (``token`` query parameter on the
WebSocket, ``Authorization: Bearer`` on REST). This service maps the token
to the participant it was issued for. Issuing tokens is normally the job of
the login flow elsewhere in the product; ``issue`` exists for that flow and
for tests, and ``seed`` preloads fixed tokens for local development.

Database Schema:
    sessions table:
        - token: Opaque credential (PRIMARY KEY)
        - participant_id: Identity the token resolves to
        - created_at: Issue time (seconds since epoch)
        - expires_at: Expiry time, NULL for non-expiring sessions
        - revoked: Set once the session is revoked

Usage:
    identity = IdentityService(db_path="mingle_sessions.duckdb")
    token = identity.issue("alice")
    identity.resolve(token)  # -> "alice"
"""
import logging
import secrets
import threading
import time
from typing import Callable, Dict, Optional

import duckdb

from mingle.chat.errors import Unauthorized

logger = logging.getLogger(__name__)


class IdentityService:
    """Resolves session credentials to participant identities.

    Args:
        db_path: DuckDB file path, or ``":memory:"`` for tests.
        default_ttl_seconds: Lifetime applied by ``issue`` when no TTL is
            given. None means sessions do not expire.
        clock: Time source in seconds since epoch.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        default_ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = db_path
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(db_path)
        self._initialize_db()

    def _initialize_db(self) -> None:
        self._connection.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                token          VARCHAR PRIMARY KEY,
                participant_id VARCHAR NOT NULL,
                created_at     DOUBLE  NOT NULL,
                expires_at     DOUBLE,
                revoked        BOOLEAN NOT NULL DEFAULT FALSE
            )
        """)

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            raise Unauthorized("Identity service is closed")
        return self._connection

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    def issue(self, participant_id: str, ttl_seconds: Optional[int] = None) -> str:
        """Create a new session for a participant and return its token."""
        if not participant_id:
            raise ValueError("participant_id is required")
        token = secrets.token_urlsafe(32)
        self._insert(token, participant_id, ttl_seconds)
        logger.info("[Identity] Issued session for %s", participant_id)
        return token

    def seed(self, sessions: Dict[str, str]) -> int:
        """Register fixed token -> participant pairs. Existing tokens are kept.

        Returns:
            Number of sessions added.
        """
        added = 0
        for token, participant_id in sessions.items():
            with self._lock:
                exists = self._get_connection().execute(
                    "SELECT 1 FROM sessions WHERE token = ?", [token]
                ).fetchone()
            if exists:
                continue
            self._insert(token, participant_id, None)
            added += 1
        if added:
            logger.info("[Identity] Seeded %d session(s)", added)
        return added

    def _insert(self, token: str, participant_id: str, ttl_seconds: Optional[int]) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        now = self._clock()
        expires_at = now + ttl if ttl else None
        with self._lock:
            self._get_connection().execute(
                """
                INSERT INTO sessions (token, participant_id, created_at, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                [token, participant_id, now, expires_at],
            )

    def resolve(self, credential: Optional[str]) -> str:
        """Return the participant a credential belongs to.

        Raises:
            Unauthorized: Missing, unknown, revoked or expired credential.
        """
        if not credential:
            raise Unauthorized("Missing credential")
        with self._lock:
            row = self._get_connection().execute(
                """
                SELECT participant_id, expires_at, revoked
                FROM sessions WHERE token = ?
                """,
                [credential],
            ).fetchone()
        if row is None:
            raise Unauthorized("Invalid credential")
        participant_id, expires_at, revoked = row
        if revoked:
            raise Unauthorized("Session has been revoked")
        if expires_at is not None and expires_at <= self._clock():
            raise Unauthorized("Session has expired")
        return participant_id

    def revoke(self, token: str) -> bool:
        """Revoke a session. Returns True if the token existed."""
        with self._lock:
            conn = self._get_connection()
            row = conn.execute(
                "SELECT revoked FROM sessions WHERE token = ?", [token]
            ).fetchone()
            if row is None:
                return False
            conn.execute("UPDATE sessions SET revoked = TRUE WHERE token = ?", [token])
        logger.info("[Identity] Revoked session %s...", token[:6])
        return True
