"""Tests for the ConnectionManager, BroadcastProtocol and Broker dispatch.

These run the async core directly against in-process fake WebSockets.
"""
import asyncio
import json
from unittest.mock import patch

import pytest
from fastapi import WebSocketDisconnect

from conftest import FakeWebSocket
from mingle.chat.connection import ConnectionState
from mingle.chat.errors import (
    Forbidden,
    InvalidRequest,
    NotFound,
    TransientIO,
    Unauthorized,
)
from mingle.chat.manager import CLOSE_POLICY_VIOLATION, IdleTimeout
from mingle.chat.protocol import (
    CloseEvent,
    JoinEvent,
    LeaveEvent,
    ReadEvent,
    SendEvent,
)


@pytest.fixture
def room(broker):
    return broker.directory.find_or_create(["alice", "bob"])


@pytest.fixture
def group(broker):
    return broker.directory.find_or_create(["alice", "bob", "carol"])


async def connect(broker, token):
    ws = FakeWebSocket()
    conn = await broker.manager.accept(ws, credential=token)
    assert conn is not None
    return conn, ws


class TestHandshake:
    """Tests for ConnectionManager.accept()."""

    @pytest.mark.asyncio
    async def test_query_token(self, broker, tokens):
        conn, ws = await connect(broker, tokens["alice"])

        assert ws.accepted
        assert conn.is_active
        assert conn.participant_id == "alice"
        assert ws.sent == [
            {"type": "connected", "connectionId": conn.id, "participantId": "alice"}
        ]
        assert broker.manager.get(conn.id) is conn

    @pytest.mark.asyncio
    async def test_auth_frame(self, broker, tokens):
        ws = FakeWebSocket()
        ws.push(json.dumps({"type": "auth", "token": tokens["bob"]}))

        conn = await broker.manager.accept(ws)
        assert conn.participant_id == "bob"

    @pytest.mark.asyncio
    async def test_invalid_token_rejected(self, broker):
        ws = FakeWebSocket()
        conn = await broker.manager.accept(ws, credential="forged")

        assert conn is None
        assert ws.sent[0]["type"] == "error"
        assert ws.sent[0]["code"] == "unauthorized"
        assert ws.closed_code == CLOSE_POLICY_VIOLATION
        assert broker.manager.connections == {}

    @pytest.mark.asyncio
    async def test_first_frame_must_be_auth(self, broker, room):
        ws = FakeWebSocket()
        ws.push(json.dumps({"type": "join", "roomId": room.id}))

        assert await broker.manager.accept(ws) is None
        assert ws.of_type("error")[0]["code"] == "unauthorized"

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, broker):
        broker.settings.handshake_timeout_seconds = 0.05
        ws = FakeWebSocket()

        assert await broker.manager.accept(ws) is None
        assert ws.closed_code == CLOSE_POLICY_VIOLATION

    @pytest.mark.asyncio
    async def test_disconnect_during_handshake(self, broker):
        ws = FakeWebSocket()
        ws.push(WebSocketDisconnect(code=1006))

        assert await broker.manager.accept(ws) is None

    @pytest.mark.asyncio
    async def test_revoked_session(self, broker, tokens, identity):
        identity.revoke(tokens["alice"])
        ws = FakeWebSocket()
        assert await broker.manager.accept(ws, credential=tokens["alice"]) is None


class TestJoinLeave:
    """Tests for room membership and presence."""

    @pytest.mark.asyncio
    async def test_join_sends_history_snapshot(self, broker, tokens, room):
        earlier = broker.store.append(room.id, "bob", "you there?")
        conn, ws = await connect(broker, tokens["alice"])

        await broker.dispatch(conn, JoinEvent(roomId=room.id))

        joined = ws.of_type("joined")[0]
        assert joined["roomId"] == room.id
        assert joined["isRecovery"] is False
        assert [m["id"] for m in joined["messages"]] == [earlier.id]
        assert broker.registry.members_of(room.id) == {conn.id}
        assert room.id in conn.rooms

    @pytest.mark.asyncio
    async def test_join_with_cursor_replays_only_missed(self, broker, tokens, room, clock):
        seen = broker.store.append(room.id, "bob", "one")
        clock.advance(1)
        missed = broker.store.append(room.id, "bob", "two")
        conn, ws = await connect(broker, tokens["alice"])

        await broker.dispatch(conn, JoinEvent(roomId=room.id, cursor=seen.id))

        joined = ws.of_type("joined")[0]
        assert joined["isRecovery"] is True
        assert [m["id"] for m in joined["messages"]] == [missed.id]

    @pytest.mark.asyncio
    async def test_join_forbidden_for_outsider(self, broker, tokens, room):
        conn, ws = await connect(broker, tokens["carol"])

        await broker.dispatch(conn, JoinEvent(roomId=room.id))

        error = ws.of_type("error")[0]
        assert error["code"] == "forbidden"
        assert error["roomId"] == room.id
        assert broker.registry.members_of(room.id) == set()

    @pytest.mark.asyncio
    async def test_join_unknown_room(self, broker, tokens):
        conn, ws = await connect(broker, tokens["alice"])
        await broker.dispatch(conn, JoinEvent(roomId="missing"))
        assert ws.of_type("error")[0]["code"] == "not_found"

    @pytest.mark.asyncio
    async def test_peer_presence(self, broker, tokens, room):
        alice, alice_ws = await connect(broker, tokens["alice"])
        bob, bob_ws = await connect(broker, tokens["bob"])
        await broker.dispatch(alice, JoinEvent(roomId=room.id))
        await broker.dispatch(bob, JoinEvent(roomId=room.id))

        assert alice_ws.of_type("peer_joined") == [
            {"type": "peer_joined", "roomId": room.id, "participantId": "bob"}
        ]
        assert bob_ws.of_type("peer_joined") == []

        await broker.dispatch(bob, LeaveEvent(roomId=room.id))
        assert bob_ws.of_type("left") == [{"type": "left", "roomId": room.id}]
        assert alice_ws.of_type("peer_left")[0]["participantId"] == "bob"
        assert broker.registry.members_of(room.id) == {alice.id}

    @pytest.mark.asyncio
    async def test_presence_is_per_participant(self, broker, tokens, room):
        alice, alice_ws = await connect(broker, tokens["alice"])
        phone, _ = await connect(broker, tokens["bob"])
        laptop, _ = await connect(broker, tokens["bob"])
        await broker.dispatch(alice, JoinEvent(roomId=room.id))
        await broker.dispatch(phone, JoinEvent(roomId=room.id))
        await broker.dispatch(laptop, JoinEvent(roomId=room.id))

        assert len(alice_ws.of_type("peer_joined")) == 1

        await broker.manager.disconnect(phone, clean=False)
        assert alice_ws.of_type("peer_left") == []

        await broker.dispatch(laptop, LeaveEvent(roomId=room.id))
        assert alice_ws.of_type("peer_left") == [
            {"type": "peer_left", "roomId": room.id, "participantId": "bob"}
        ]

    @pytest.mark.asyncio
    async def test_room_lock_released_when_room_empties(self, broker, tokens, room):
        alice, _ = await connect(broker, tokens["alice"])
        await broker.dispatch(alice, JoinEvent(roomId=room.id))
        await broker.dispatch(alice, SendEvent(roomId=room.id, content="hi"))
        assert room.id in broker.manager._room_locks

        await broker.manager.disconnect(alice, clean=True)
        assert broker.manager._room_locks == {}

        await broker.broadcast.send("bob", room.id, "nobody listening")
        assert broker.manager._room_locks == {}

    @pytest.mark.asyncio
    async def test_leave_non_member_is_noop(self, broker, tokens, room):
        conn, ws = await connect(broker, tokens["alice"])
        assert await broker.manager.leave(conn, room.id) is False
        assert ws.of_type("left")

    @pytest.mark.asyncio
    async def test_multiple_rooms_per_connection(self, broker, tokens, room, group):
        conn, ws = await connect(broker, tokens["alice"])
        await broker.dispatch(conn, JoinEvent(roomId=room.id))
        await broker.dispatch(conn, JoinEvent(roomId=group.id))

        assert conn.rooms == {room.id, group.id}
        assert broker.registry.members_of(group.id) == {conn.id}


class TestSend:
    """Tests for BroadcastProtocol.send() through the broker."""

    @pytest.mark.asyncio
    async def test_persist_then_broadcast_and_ack(self, broker, tokens, room):
        alice, alice_ws = await connect(broker, tokens["alice"])
        bob, bob_ws = await connect(broker, tokens["bob"])
        await broker.dispatch(alice, JoinEvent(roomId=room.id))
        await broker.dispatch(bob, JoinEvent(roomId=room.id))

        await broker.dispatch(alice, SendEvent(roomId=room.id, content="hi bob", ref="r1"))

        ack = alice_ws.of_type("ack")[0]
        delivered = bob_ws.of_type("message")[0]["message"]
        assert ack["ref"] == "r1"
        assert ack["message"] == delivered
        assert delivered["senderId"] == "alice"
        assert alice_ws.of_type("message") == []
        assert [m.id for m in broker.store.history(room.id)] == [delivered["id"]]

    @pytest.mark.asyncio
    async def test_sender_other_connections_receive_message(self, broker, tokens, room):
        phone, phone_ws = await connect(broker, tokens["alice"])
        laptop, laptop_ws = await connect(broker, tokens["alice"])
        await broker.dispatch(phone, JoinEvent(roomId=room.id))
        await broker.dispatch(laptop, JoinEvent(roomId=room.id))

        await broker.dispatch(phone, SendEvent(roomId=room.id, content="from phone"))

        assert len(phone_ws.of_type("ack")) == 1
        assert laptop_ws.of_type("message")[0]["message"]["content"] == "from phone"

    @pytest.mark.asyncio
    async def test_send_without_origin_reaches_everyone(self, broker, tokens, room):
        alice, alice_ws = await connect(broker, tokens["alice"])
        await broker.dispatch(alice, JoinEvent(roomId=room.id))

        message = await broker.broadcast.send("alice", room.id, "posted over REST")

        assert alice_ws.of_type("message")[0]["message"]["id"] == message.id

    @pytest.mark.asyncio
    async def test_store_failure_broadcasts_nothing(self, broker, tokens, room):
        alice, alice_ws = await connect(broker, tokens["alice"])
        bob, bob_ws = await connect(broker, tokens["bob"])
        await broker.dispatch(alice, JoinEvent(roomId=room.id))
        await broker.dispatch(bob, JoinEvent(roomId=room.id))

        with patch.object(broker.store, "append", side_effect=TransientIO("disk full")):
            await broker.dispatch(alice, SendEvent(roomId=room.id, content="lost", ref="r9"))

        error = alice_ws.of_type("error")[0]
        assert error["code"] == "transient_io"
        assert error["ref"] == "r9"
        assert error["roomId"] == room.id
        assert bob_ws.of_type("message") == []
        assert alice_ws.of_type("ack") == []
        assert broker.store.count_messages() == 0

    @pytest.mark.asyncio
    async def test_store_failure_raises_for_direct_callers(self, broker, room):
        with patch.object(broker.store, "append", side_effect=TransientIO("disk full")):
            with pytest.raises(TransientIO):
                await broker.broadcast.send("alice", room.id, "lost")

    @pytest.mark.asyncio
    async def test_non_member_rejected(self, broker, tokens, room):
        carol, carol_ws = await connect(broker, tokens["carol"])
        await broker.dispatch(carol, SendEvent(roomId=room.id, content="hello?", ref="x"))

        assert carol_ws.of_type("error")[0]["code"] == "forbidden"
        assert broker.store.count_messages() == 0

    @pytest.mark.asyncio
    async def test_empty_and_oversized_content(self, broker, room):
        with pytest.raises(InvalidRequest):
            await broker.broadcast.send("alice", room.id, "   ")
        with pytest.raises(InvalidRequest):
            await broker.broadcast.send("alice", room.id, "x" * 201)
        assert broker.store.count_messages() == 0

    @pytest.mark.asyncio
    async def test_unauthenticated_sender(self, broker, room):
        with pytest.raises(Unauthorized):
            await broker.broadcast.send(None, room.id, "who am i")

    @pytest.mark.asyncio
    async def test_unknown_room(self, broker):
        with pytest.raises(NotFound):
            await broker.broadcast.send("alice", "missing", "hi")

    @pytest.mark.asyncio
    async def test_repeated_ref_is_not_stored_twice(self, broker, tokens, room):
        alice, alice_ws = await connect(broker, tokens["alice"])
        bob, bob_ws = await connect(broker, tokens["bob"])
        await broker.dispatch(alice, JoinEvent(roomId=room.id))
        await broker.dispatch(bob, JoinEvent(roomId=room.id))

        await broker.dispatch(alice, SendEvent(roomId=room.id, content="retry me", ref="r1"))
        await broker.dispatch(alice, SendEvent(roomId=room.id, content="retry me", ref="r1"))

        acks = alice_ws.of_type("ack")
        assert len(acks) == 2
        assert acks[0]["message"]["id"] == acks[1]["message"]["id"]
        assert len(bob_ws.of_type("message")) == 1
        assert broker.store.count_messages(room.id) == 1

    @pytest.mark.asyncio
    async def test_concurrent_sends_arrive_in_persistence_order(self, broker, tokens, group):
        alice, _ = await connect(broker, tokens["alice"])
        bob, _ = await connect(broker, tokens["bob"])
        carol, carol_ws = await connect(broker, tokens["carol"])
        for conn in (alice, bob, carol):
            await broker.dispatch(conn, JoinEvent(roomId=group.id))

        await asyncio.gather(*[
            broker.dispatch(sender, SendEvent(roomId=group.id, content=f"{i}"))
            for i in range(10)
            for sender in (alice, bob)
        ])

        history = broker.store.history(group.id)
        received = [event["message"]["id"] for event in carol_ws.of_type("message")]
        assert len(history) == 20
        assert received == [m.id for m in history]
        assert [m.seq for m in history] == sorted(m.seq for m in history)

    @pytest.mark.asyncio
    async def test_dead_connection_is_closed(self, broker, tokens, room):
        alice, alice_ws = await connect(broker, tokens["alice"])
        bob, bob_ws = await connect(broker, tokens["bob"])
        await broker.dispatch(alice, JoinEvent(roomId=room.id))
        await broker.dispatch(bob, JoinEvent(roomId=room.id))
        bob_ws.fail_sends = True

        await broker.dispatch(alice, SendEvent(roomId=room.id, content="anyone?"))

        assert bob_ws.closed_code == 1013
        assert bob.state == ConnectionState.CLOSED
        assert broker.manager.get(bob.id) is None
        assert broker.registry.members_of(room.id) == {alice.id}
        assert alice_ws.of_type("peer_left")[0]["participantId"] == "bob"
        assert len(alice_ws.of_type("ack")) == 1
        assert broker.store.count_messages() == 1

    @pytest.mark.asyncio
    async def test_slow_connection_is_closed_and_recovers_from_cursor(self, broker, tokens, room):
        broker.settings.send_timeout_seconds = 0.05
        alice, _ = await connect(broker, tokens["alice"])
        bob, bob_ws = await connect(broker, tokens["bob"])
        await broker.dispatch(alice, JoinEvent(roomId=room.id))
        await broker.dispatch(bob, JoinEvent(roomId=room.id))
        bob_ws.send_delay = 0.5

        for content in ("one", "two", "three"):
            await broker.dispatch(alice, SendEvent(roomId=room.id, content=content))

        assert bob_ws.closed_code == 1013
        assert bob.state == ConnectionState.CLOSED
        assert bob_ws.of_type("message") == []

        rejoined, rejoined_ws = await connect(broker, tokens["bob"])
        await broker.dispatch(rejoined, JoinEvent(roomId=room.id))
        snapshot = rejoined_ws.of_type("joined")[0]["messages"]
        assert [m["content"] for m in snapshot] == ["one", "two", "three"]


class TestReadReceipts:
    @pytest.mark.asyncio
    async def test_read_receipt_broadcast(self, broker, tokens, room):
        alice, alice_ws = await connect(broker, tokens["alice"])
        bob, bob_ws = await connect(broker, tokens["bob"])
        await broker.dispatch(alice, JoinEvent(roomId=room.id))
        await broker.dispatch(bob, JoinEvent(roomId=room.id))
        message = await broker.broadcast.send("alice", room.id, "read me")

        await broker.dispatch(bob, ReadEvent(roomId=room.id, messageId=message.id))
        await broker.dispatch(bob, ReadEvent(roomId=room.id, messageId=message.id))

        receipts = alice_ws.of_type("read_receipt")
        assert receipts == [{
            "type": "read_receipt",
            "roomId": room.id,
            "participantId": "bob",
            "messageId": message.id,
        }]

    @pytest.mark.asyncio
    async def test_read_outsider(self, broker, tokens, room):
        message = await broker.broadcast.send("alice", room.id, "private")
        carol, carol_ws = await connect(broker, tokens["carol"])

        await broker.dispatch(carol, ReadEvent(roomId=room.id, messageId=message.id))
        assert carol_ws.of_type("error")[0]["code"] == "forbidden"


class TestDisconnect:
    """Tests for cleanup when a connection goes away."""

    @pytest.mark.asyncio
    async def test_abnormal_disconnect_leaves_every_room(self, broker, tokens, room, group):
        alice, _ = await connect(broker, tokens["alice"])
        bob, bob_ws = await connect(broker, tokens["bob"])
        for conn in (alice, bob):
            await broker.dispatch(conn, JoinEvent(roomId=room.id))
            await broker.dispatch(conn, JoinEvent(roomId=group.id))

        await broker.manager.disconnect(alice, clean=False, reason="network")

        assert alice.state == ConnectionState.CLOSED
        assert alice.rooms == set()
        assert broker.manager.get(alice.id) is None
        for room_id in (room.id, group.id):
            assert alice.id not in broker.registry.members_of(room_id)
        assert {e["roomId"] for e in bob_ws.of_type("peer_left")} == {room.id, group.id}

    @pytest.mark.asyncio
    async def test_peer_left_survives_cancelled_caller(self, broker, tokens, room):
        alice, alice_ws = await connect(broker, tokens["alice"])
        bob, _ = await connect(broker, tokens["bob"])
        await broker.dispatch(alice, JoinEvent(roomId=room.id))
        await broker.dispatch(bob, JoinEvent(roomId=room.id))
        alice_ws.send_delay = 0.05

        endpoint = asyncio.ensure_future(broker.manager.disconnect(bob, clean=False))
        await asyncio.sleep(0)
        endpoint.cancel()
        with pytest.raises(asyncio.CancelledError):
            await endpoint

        await asyncio.wait_for(broker.manager.drain(), timeout=1.0)
        assert alice_ws.of_type("peer_left") == [
            {"type": "peer_left", "roomId": room.id, "participantId": "bob"}
        ]
        assert broker.registry.members_of(room.id) == {alice.id}

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, broker, tokens, room):
        alice, _ = await connect(broker, tokens["alice"])
        await broker.dispatch(alice, JoinEvent(roomId=room.id))

        await broker.manager.disconnect(alice, clean=True)
        await broker.manager.disconnect(alice, clean=False)

        assert broker.registry.rooms() == set()

    @pytest.mark.asyncio
    async def test_close_event_ends_dispatch(self, broker, tokens):
        alice, _ = await connect(broker, tokens["alice"])
        assert await broker.dispatch(alice, CloseEvent()) is False

    @pytest.mark.asyncio
    async def test_closed_connection_cannot_send(self, broker, tokens, room):
        alice, alice_ws = await connect(broker, tokens["alice"])
        await broker.manager.close(alice)

        assert alice_ws.closed_code == 1000
        with pytest.raises(Unauthorized):
            await broker.broadcast.send("alice", room.id, "late", origin=alice)

    @pytest.mark.asyncio
    async def test_shutdown_closes_everything(self, broker, tokens):
        alice, alice_ws = await connect(broker, tokens["alice"])
        await broker.shutdown()

        assert alice_ws.closed_code == 1001
        assert broker.manager.connections == {}
        with pytest.raises(TransientIO):
            broker.store.count_rooms()


class TestReceive:
    @pytest.mark.asyncio
    async def test_idle_timeout(self, broker, tokens):
        broker.settings.idle_timeout_seconds = 0.05
        alice, _ = await connect(broker, tokens["alice"])
        with pytest.raises(IdleTimeout):
            await broker.manager.receive(alice)

    @pytest.mark.asyncio
    async def test_invalid_json(self, broker, tokens):
        alice, ws = await connect(broker, tokens["alice"])
        ws.push("{not json")
        with pytest.raises(InvalidRequest):
            await broker.manager.receive(alice)

    @pytest.mark.asyncio
    async def test_auth_after_handshake_rejected(self, broker, tokens):
        from mingle.chat.protocol import AuthEvent

        alice, ws = await connect(broker, tokens["alice"])
        await broker.dispatch(alice, AuthEvent(token=tokens["bob"]))

        assert ws.of_type("error")[0]["code"] == "invalid_request"
        assert alice.participant_id == "alice"
