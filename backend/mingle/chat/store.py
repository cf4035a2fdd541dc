"""DuckDB-backed durable store for rooms and messages.

The store is the single source of truth for chat history. Every write runs
inside an explicit transaction under a process-wide lock, so a message that
``append`` has returned is fully visible to every later read and a failed
write leaves nothing behind.

Database Schema:
    rooms:         id, participant_key, created_at, last_activity_at
    room_keys:     participant_key (PRIMARY KEY) -> room_id
                   (uniqueness constraint on the participant set)
    room_members:  room_id, participant_id (lookup by participant)
    messages:      seq (from messages_seq), id, room_id, sender_id, content, ts
    read_cursors:  room_id, participant_id, last_read_seq

Ordering:
    Messages in a room are totally ordered by ``(ts, seq)``. ``ts`` is the
    server clock clamped to the room's last activity, so it never decreases
    within a room; ``seq`` comes from a DuckDB sequence and follows the order
    in which appends were accepted.

Thread Safety:
    The DuckDB connection is guarded by a ``threading.Lock``. Blocking calls
    may be issued from an executor thread (see BroadcastProtocol).
"""
import json
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, Sequence

import duckdb

from .errors import Forbidden, InvalidRequest, NotFound, TransientIO
from .schemas import Message, Room, RoomSummary

logger = logging.getLogger(__name__)

_SCHEMA = [
    "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS rooms (
        id               VARCHAR NOT NULL,
        participant_key  VARCHAR NOT NULL,
        created_at       DOUBLE  NOT NULL,
        last_activity_at DOUBLE  NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS room_keys (
        participant_key VARCHAR PRIMARY KEY,
        room_id         VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS room_members (
        room_id        VARCHAR NOT NULL,
        participant_id VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        seq       BIGINT  DEFAULT nextval('messages_seq'),
        id        VARCHAR NOT NULL,
        room_id   VARCHAR NOT NULL,
        sender_id VARCHAR NOT NULL,
        content   VARCHAR NOT NULL,
        ts        DOUBLE  NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS read_cursors (
        room_id        VARCHAR NOT NULL,
        participant_id VARCHAR NOT NULL,
        last_read_seq  BIGINT  NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_room ON messages(room_id)",
    "CREATE INDEX IF NOT EXISTS idx_members_participant ON room_members(participant_id)",
]

_MESSAGE_COLUMNS = "id, room_id, sender_id, content, ts, seq"


class DuplicateRoom(Exception):
    """Raised by ``create_room`` when the participant set already has a room."""


def participant_key(participant_ids: Sequence[str]) -> str:
    """Canonical, order-independent key for a participant set."""
    return json.dumps(sorted(participant_ids), separators=(",", ":"))


def _row_to_message(row) -> Message:
    return Message(
        id=row[0],
        roomId=row[1],
        senderId=row[2],
        content=row[3],
        ts=row[4],
        seq=row[5],
    )


def _row_to_room(row) -> Room:
    return Room(
        id=row[0],
        participants=json.loads(row[1]),
        createdAt=row[2],
        lastActivityAt=row[3],
    )


class MessageStore:
    """Durable, append-only log of chat messages keyed by room.

    Args:
        db_path: DuckDB file path, or ``":memory:"`` for tests.
        clock: Time source in seconds since epoch (injectable for tests).
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = db_path
        self._clock = clock
        self._lock = threading.Lock()
        self._conn: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(db_path)
        for statement in _SCHEMA:
            self._conn.execute(statement)
        logger.info("[Store] Initialized with db=%s", db_path)

    # -----------------------------------------------------------------------
    # Connection handling
    # -----------------------------------------------------------------------

    def _connection(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise TransientIO("Message store is closed")
        return self._conn

    @contextmanager
    def _read(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._lock:
            try:
                yield self._connection()
            except duckdb.Error as exc:
                logger.error("[Store] Read failed: %s", exc)
                raise TransientIO(f"Message store unavailable: {exc}") from exc

    @contextmanager
    def _transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._lock:
            conn = self._connection()
            try:
                conn.execute("BEGIN TRANSACTION")
            except duckdb.Error as exc:
                raise TransientIO(f"Message store unavailable: {exc}") from exc
            try:
                yield conn
                conn.execute("COMMIT")
            except duckdb.Error as exc:
                self._rollback(conn)
                logger.error("[Store] Write failed, rolled back: %s", exc)
                raise TransientIO(f"Message store unavailable: {exc}") from exc
            except BaseException:
                self._rollback(conn)
                raise

    @staticmethod
    def _rollback(conn: duckdb.DuckDBPyConnection) -> None:
        try:
            conn.execute("ROLLBACK")
        except duckdb.Error as exc:
            logger.warning("[Store] Rollback failed: %s", exc)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # -----------------------------------------------------------------------
    # Rooms
    # -----------------------------------------------------------------------

    def create_room(self, participant_ids: Sequence[str]) -> Room:
        """Create a room for a participant set.

        Raises:
            DuplicateRoom: A room for this participant set already exists.
        """
        key = participant_key(participant_ids)
        room_id = str(uuid.uuid4())
        now = self._clock()
        with self._transaction() as conn:
            try:
                conn.execute(
                    "INSERT INTO room_keys (participant_key, room_id) VALUES (?, ?)",
                    [key, room_id],
                )
            except duckdb.ConstraintException as exc:
                raise DuplicateRoom(key) from exc
            conn.execute(
                """
                INSERT INTO rooms (id, participant_key, created_at, last_activity_at)
                VALUES (?, ?, ?, ?)
                """,
                [room_id, key, now, now],
            )
            conn.executemany(
                "INSERT INTO room_members (room_id, participant_id) VALUES (?, ?)",
                [[room_id, pid] for pid in sorted(participant_ids)],
            )
        logger.info("[Store] Created room %s for %s", room_id, key)
        return Room(
            id=room_id,
            participants=sorted(participant_ids),
            createdAt=now,
            lastActivityAt=now,
        )

    def find_room(self, participant_ids: Sequence[str]) -> Optional[Room]:
        """Look up the room for an exact participant set, if any."""
        key = participant_key(participant_ids)
        with self._read() as conn:
            row = conn.execute(
                """
                SELECT r.id, r.participant_key, r.created_at, r.last_activity_at
                FROM room_keys k JOIN rooms r ON r.id = k.room_id
                WHERE k.participant_key = ?
                """,
                [key],
            ).fetchone()
        return _row_to_room(row) if row else None

    def get_room(self, room_id: str) -> Room:
        with self._read() as conn:
            row = conn.execute(
                """
                SELECT id, participant_key, created_at, last_activity_at
                FROM rooms WHERE id = ?
                """,
                [room_id],
            ).fetchone()
        if row is None:
            raise NotFound(f"Room {room_id} not found")
        return _row_to_room(row)

    def require_participant(self, room_id: str, participant_id: str) -> Room:
        """Return the room if *participant_id* belongs to it.

        Raises:
            NotFound: The room does not exist.
            Forbidden: The participant is not a member of the room.
        """
        room = self.get_room(room_id)
        if participant_id not in room.participants:
            raise Forbidden(f"{participant_id} is not a participant of room {room_id}")
        return room

    def count_rooms(self) -> int:
        with self._read() as conn:
            return conn.execute("SELECT count(*) FROM rooms").fetchone()[0]

    def rooms_for(self, participant_id: str) -> List[RoomSummary]:
        """Rooms the participant belongs to, most recent activity first."""
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT r.id, r.participant_key, r.created_at, r.last_activity_at,
                       COALESCE(rc.last_read_seq, 0)
                FROM rooms r
                JOIN room_members m ON m.room_id = r.id
                LEFT JOIN read_cursors rc
                       ON rc.room_id = r.id AND rc.participant_id = m.participant_id
                WHERE m.participant_id = ?
                ORDER BY r.last_activity_at DESC, r.created_at DESC, r.id
                """,
                [participant_id],
            ).fetchall()

            summaries = []
            for row in rows:
                room = _row_to_room(row[:4])
                last = conn.execute(
                    f"""
                    SELECT {_MESSAGE_COLUMNS} FROM messages
                    WHERE room_id = ?
                    ORDER BY ts DESC, seq DESC
                    LIMIT 1
                    """,
                    [room.id],
                ).fetchone()
                unread = conn.execute(
                    """
                    SELECT count(*) FROM messages
                    WHERE room_id = ? AND seq > ? AND sender_id <> ?
                    """,
                    [room.id, row[4], participant_id],
                ).fetchone()[0]
                summaries.append(
                    RoomSummary(
                        **room.model_dump(),
                        lastMessage=_row_to_message(last) if last else None,
                        unreadCount=unread,
                    )
                )
        return summaries

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    def append(self, room_id: str, sender_id: str, content: str) -> Message:
        """Persist a message and return it with its server-assigned identity.

        Raises:
            InvalidRequest: Content is empty after trimming.
            NotFound: The room does not exist.
            Forbidden: The sender is not a participant of the room.
            TransientIO: The store failed; nothing was written.
        """
        text = content.strip() if isinstance(content, str) else ""
        if not text:
            raise InvalidRequest("Message content must not be empty")

        message_id = str(uuid.uuid4())
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT participant_key, last_activity_at FROM rooms WHERE id = ?",
                [room_id],
            ).fetchone()
            if row is None:
                raise NotFound(f"Room {room_id} not found")
            if sender_id not in json.loads(row[0]):
                raise Forbidden(f"{sender_id} is not a participant of room {room_id}")

            # Clamp so timestamps never go backwards within a room
            ts = max(self._clock(), row[1])
            seq = conn.execute(
                """
                INSERT INTO messages (id, room_id, sender_id, content, ts)
                VALUES (?, ?, ?, ?, ?)
                RETURNING seq
                """,
                [message_id, room_id, sender_id, text, ts],
            ).fetchone()[0]
            conn.execute(
                "UPDATE rooms SET last_activity_at = ? WHERE id = ?",
                [ts, room_id],
            )

        return Message(
            id=message_id,
            roomId=room_id,
            senderId=sender_id,
            content=text,
            ts=ts,
            seq=seq,
        )

    def get_message(self, room_id: str, message_id: str) -> Message:
        with self._read() as conn:
            row = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE room_id = ? AND id = ?",
                [room_id, message_id],
            ).fetchone()
        if row is None:
            raise NotFound(f"Message {message_id} not found in room {room_id}")
        return _row_to_message(row)

    def history(
        self,
        room_id: str,
        since: Optional[str] = None,
        before: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Message]:
        """Return messages of a room in total order (oldest first).

        Args:
            room_id: The room to read.
            since: Message ID cursor; only messages after it are returned.
                With ``limit``, the first ``limit`` messages after the cursor.
            before: Message ID cursor; only messages before it are returned.
                With ``limit``, the ``limit`` most recent ones before it.
            limit: Maximum number of messages. ``None`` returns everything.

        Raises:
            NotFound: The room or a cursor message does not exist.
        """
        self.get_room(room_id)

        clauses = ["room_id = ?"]
        params: list = [room_id]
        if since is not None:
            anchor = self.get_message(room_id, since)
            clauses.append("(ts > ? OR (ts = ? AND seq > ?))")
            params.extend([anchor.ts, anchor.ts, anchor.seq])
        if before is not None:
            anchor = self.get_message(room_id, before)
            clauses.append("(ts < ? OR (ts = ? AND seq < ?))")
            params.extend([anchor.ts, anchor.ts, anchor.seq])

        newest_first = limit is not None and since is None
        order = "ts DESC, seq DESC" if newest_first else "ts ASC, seq ASC"
        query = (
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            f"WHERE {' AND '.join(clauses)} ORDER BY {order}"
        )
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()

        messages = [_row_to_message(row) for row in rows]
        if newest_first:
            messages.reverse()
        return messages

    def count_messages(self, room_id: Optional[str] = None) -> int:
        with self._read() as conn:
            if room_id is None:
                return conn.execute("SELECT count(*) FROM messages").fetchone()[0]
            return conn.execute(
                "SELECT count(*) FROM messages WHERE room_id = ?", [room_id]
            ).fetchone()[0]

    # -----------------------------------------------------------------------
    # Read tracking
    # -----------------------------------------------------------------------

    def mark_read(self, room_id: str, participant_id: str, message_id: str) -> bool:
        """Advance a participant's read cursor to *message_id*.

        Returns:
            True if the cursor moved forward, False if it was already at or
            past this message.
        """
        self.require_participant(room_id, participant_id)
        message = self.get_message(room_id, message_id)

        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT last_read_seq FROM read_cursors
                WHERE room_id = ? AND participant_id = ?
                """,
                [room_id, participant_id],
            ).fetchone()
            if row is not None and row[0] >= message.seq:
                return False
            conn.execute(
                "DELETE FROM read_cursors WHERE room_id = ? AND participant_id = ?",
                [room_id, participant_id],
            )
            conn.execute(
                """
                INSERT INTO read_cursors (room_id, participant_id, last_read_seq)
                VALUES (?, ?, ?)
                """,
                [room_id, participant_id, message.seq],
            )
        return True
