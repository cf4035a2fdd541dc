"""Tests for the DuckDB-backed MessageStore."""
import pytest

from mingle.chat.errors import Forbidden, InvalidRequest, NotFound, TransientIO
from mingle.chat.store import DuplicateRoom, MessageStore, participant_key


@pytest.fixture
def room(store):
    return store.create_room(["bob", "alice"])


class TestRooms:
    """Tests for room creation and lookup."""

    def test_create_room_sorts_participants(self, room):
        assert room.participants == ["alice", "bob"]
        assert room.createdAt == room.lastActivityAt

    def test_participant_key_is_order_independent(self):
        assert participant_key(["b", "a", "c"]) == participant_key(["c", "b", "a"])

    def test_find_room_ignores_order(self, store, room):
        assert store.find_room(["alice", "bob"]).id == room.id
        assert store.find_room(["bob", "alice"]).id == room.id

    def test_find_room_missing(self, store):
        assert store.find_room(["alice", "carol"]) is None

    def test_duplicate_participant_set_rejected(self, store, room):
        with pytest.raises(DuplicateRoom):
            store.create_room(["alice", "bob"])
        assert store.count_rooms() == 1

    def test_store_usable_after_duplicate(self, store, room):
        with pytest.raises(DuplicateRoom):
            store.create_room(["bob", "alice"])
        other = store.create_room(["alice", "carol"])
        assert store.get_room(other.id).participants == ["alice", "carol"]

    def test_subset_is_a_different_room(self, store, room):
        group = store.create_room(["alice", "bob", "carol"])
        assert group.id != room.id

    def test_get_room_not_found(self, store):
        with pytest.raises(NotFound):
            store.get_room("nope")

    def test_require_participant(self, store, room):
        assert store.require_participant(room.id, "alice").id == room.id
        with pytest.raises(Forbidden):
            store.require_participant(room.id, "carol")


class TestAppend:
    """Tests for MessageStore.append()."""

    def test_append_assigns_identity_and_time(self, store, room, clock):
        message = store.append(room.id, "alice", "  hello  ")

        assert message.id
        assert message.roomId == room.id
        assert message.senderId == "alice"
        assert message.content == "hello"
        assert message.ts == clock.now
        assert message.seq >= 1

    def test_append_updates_last_activity(self, store, room, clock):
        clock.advance(30)
        message = store.append(room.id, "bob", "hi")
        assert store.get_room(room.id).lastActivityAt == message.ts

    def test_empty_content_rejected(self, store, room):
        with pytest.raises(InvalidRequest):
            store.append(room.id, "alice", "   ")
        assert store.count_messages(room.id) == 0

    def test_unknown_room(self, store):
        with pytest.raises(NotFound):
            store.append("missing", "alice", "hi")

    def test_non_participant(self, store, room):
        with pytest.raises(Forbidden):
            store.append(room.id, "carol", "let me in")
        assert store.count_messages() == 0

    def test_timestamp_never_goes_backwards(self, store, room, clock):
        first = store.append(room.id, "alice", "one")
        clock.advance(-60)
        second = store.append(room.id, "bob", "two")

        assert second.ts == first.ts
        assert second.seq > first.seq
        assert [m.id for m in store.history(room.id)] == [first.id, second.id]

    def test_equal_timestamps_ordered_by_sequence(self, store, room):
        ids = [store.append(room.id, "alice", f"m{i}").id for i in range(5)]
        history = store.history(room.id)
        assert [m.id for m in history] == ids
        assert [m.order_key() for m in history] == sorted(m.order_key() for m in history)

    def test_append_fails_when_closed(self, store, room):
        store.close()
        with pytest.raises(TransientIO):
            store.append(room.id, "alice", "hello")


class TestHistory:
    """Tests for MessageStore.history() cursors and limits."""

    @pytest.fixture
    def messages(self, store, room, clock):
        sent = []
        for i in range(6):
            clock.advance(1)
            sent.append(store.append(room.id, "alice" if i % 2 else "bob", f"m{i}"))
        return sent

    def test_full_history_oldest_first(self, store, room, messages):
        assert [m.id for m in store.history(room.id)] == [m.id for m in messages]

    def test_empty_room(self, store, room):
        assert store.history(room.id) == []

    def test_since_cursor(self, store, room, messages):
        after = store.history(room.id, since=messages[2].id)
        assert [m.id for m in after] == [m.id for m in messages[3:]]

    def test_since_newest_is_empty(self, store, room, messages):
        assert store.history(room.id, since=messages[-1].id) == []

    def test_limit_returns_most_recent(self, store, room, messages):
        page = store.history(room.id, limit=2)
        assert [m.id for m in page] == [m.id for m in messages[-2:]]

    def test_since_with_limit_returns_next_page(self, store, room, messages):
        page = store.history(room.id, since=messages[0].id, limit=2)
        assert [m.id for m in page] == [messages[1].id, messages[2].id]

    def test_before_with_limit(self, store, room, messages):
        page = store.history(room.id, before=messages[4].id, limit=3)
        assert [m.id for m in page] == [m.id for m in messages[1:4]]

    def test_unknown_cursor(self, store, room, messages):
        with pytest.raises(NotFound):
            store.history(room.id, since="no-such-message")

    def test_cursor_from_another_room(self, store, room, messages):
        other = store.create_room(["alice", "carol"])
        with pytest.raises(NotFound):
            store.history(other.id, since=messages[0].id)

    def test_unknown_room(self, store):
        with pytest.raises(NotFound):
            store.history("missing")


class TestRoomsFor:
    """Tests for room summaries."""

    def test_ordered_by_last_activity(self, store, clock):
        older = store.create_room(["alice", "bob"])
        clock.advance(1)
        newer = store.create_room(["alice", "carol"])
        clock.advance(1)
        store.append(older.id, "bob", "bump")

        rooms = store.rooms_for("alice")
        assert [r.id for r in rooms] == [older.id, newer.id]

    def test_summary_carries_last_message(self, store, room, clock):
        store.append(room.id, "alice", "first")
        clock.advance(1)
        last = store.append(room.id, "bob", "second")

        summary = store.rooms_for("alice")[0]
        assert summary.lastMessage.id == last.id
        assert summary.participants == ["alice", "bob"]

    def test_room_without_messages(self, store, room):
        summary = store.rooms_for("bob")[0]
        assert summary.lastMessage is None
        assert summary.unreadCount == 0

    def test_only_member_rooms(self, store, room):
        assert store.rooms_for("carol") == []

    def test_unread_count_excludes_own_messages(self, store, room):
        store.append(room.id, "alice", "mine")
        store.append(room.id, "bob", "theirs 1")
        store.append(room.id, "bob", "theirs 2")

        assert store.rooms_for("alice")[0].unreadCount == 2
        assert store.rooms_for("bob")[0].unreadCount == 1


class TestReadCursor:
    """Tests for MessageStore.mark_read()."""

    def test_mark_read_clears_unread(self, store, room):
        store.append(room.id, "bob", "one")
        second = store.append(room.id, "bob", "two")

        assert store.mark_read(room.id, "alice", second.id) is True
        assert store.rooms_for("alice")[0].unreadCount == 0

    def test_cursor_only_moves_forward(self, store, room):
        first = store.append(room.id, "bob", "one")
        second = store.append(room.id, "bob", "two")

        assert store.mark_read(room.id, "alice", second.id) is True
        assert store.mark_read(room.id, "alice", first.id) is False
        assert store.mark_read(room.id, "alice", second.id) is False
        assert store.rooms_for("alice")[0].unreadCount == 0

    def test_partial_read(self, store, room):
        first = store.append(room.id, "bob", "one")
        store.append(room.id, "bob", "two")

        store.mark_read(room.id, "alice", first.id)
        assert store.rooms_for("alice")[0].unreadCount == 1

    def test_outsider_cannot_mark_read(self, store, room):
        message = store.append(room.id, "bob", "one")
        with pytest.raises(Forbidden):
            store.mark_read(room.id, "carol", message.id)

    def test_unknown_message(self, store, room):
        with pytest.raises(NotFound):
            store.mark_read(room.id, "alice", "missing")


class TestDurability:
    """Messages survive reopening a file-backed store."""

    def test_reopen(self, tmp_path):
        db_path = str(tmp_path / "chat.duckdb")
        store = MessageStore(db_path)
        room = store.create_room(["alice", "bob"])
        message = store.append(room.id, "alice", "still here")
        store.close()

        reopened = MessageStore(db_path)
        try:
            assert [m.id for m in reopened.history(room.id)] == [message.id]
            assert reopened.find_room(["bob", "alice"]).id == room.id
            later = reopened.append(room.id, "bob", "next")
            assert later.seq > message.seq
        finally:
            reopened.close()
