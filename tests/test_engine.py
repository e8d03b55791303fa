import json

import pytest

from backend import HistoryFilter
from chat.engine import ChatEngine, EngineSettings
from tests.helpers import FakeHandle


@pytest.mark.asyncio
async def test_frames_before_announce_are_rejected(engine):
    handle = FakeHandle("anon")

    await engine.handle_frame(handle, json.dumps({"type": "send-room", "body": "hi"}))

    error = handle.last("error")
    assert error.code == "not-announced"


@pytest.mark.asyncio
@pytest.mark.parametrize("frame", [
    "not json",
    json.dumps({"type": "explode"}),
    json.dumps({"type": "send-private", "body": "hi"}),
    json.dumps({"type": "send-room", "body": "   "}),
    json.dumps({"type": "typing-start", "destination": "general", "destination_kind": "channel"}),
])
async def test_malformed_frames_get_invalid_payload(engine, frame):
    handle = FakeHandle("anon")

    await engine.handle_frame(handle, frame)

    assert handle.types() == ["error"]
    assert handle.last("error").code == "invalid-payload"


@pytest.mark.asyncio
async def test_ping_works_without_announce(engine):
    handle = FakeHandle("anon")
    await engine.handle_frame(handle, '{"type": "ping"}')
    assert handle.types() == ["pong"]


@pytest.mark.asyncio
async def test_announce_frame_registers_connection(engine):
    handle = FakeHandle("alice")

    await engine.handle_frame(handle, {"type": "announce", "identity_id": "  alice  "})

    connected = handle.last("connected")
    assert connected.identity_id == "alice"
    assert connected.display_name == "Alice"
    assert connected.connection_id == handle.connection_id
    assert engine.registry.lookup("alice").handle is handle


@pytest.mark.asyncio
async def test_unknown_identity_is_rejected_when_auto_register_is_off(engine):
    handle = FakeHandle("mallory")

    await engine.handle_frame(handle, {"type": "announce", "identity_id": "mallory"})

    assert handle.last("error").code == "unknown-identity"
    assert engine.registry.lookup("mallory") is None


@pytest.mark.asyncio
async def test_unknown_identity_is_registered_when_auto_register_is_on(backend):
    engine = ChatEngine(backend, EngineSettings(auto_register_identities=True))
    handle = FakeHandle("dave")

    await engine.handle_frame(handle, {"type": "announce", "identity_id": "dave"})

    assert handle.last("connected").display_name == "dave"
    assert backend.resolve_identity("dave").display_name == "dave"


@pytest.mark.asyncio
async def test_full_conversation_over_frames(engine):
    alice = FakeHandle("alice")
    bob = FakeHandle("bob")
    await engine.handle_frame(alice, {"type": "announce", "identity_id": "alice"})
    await engine.handle_frame(alice, {"type": "join-room", "room_id": "general", "room_display_name": "General"})
    await engine.handle_frame(bob, {"type": "announce", "identity_id": "bob"})
    await engine.handle_frame(bob, {"type": "join-room", "room_id": "general"})
    await engine.handle_frame(bob, {"type": "typing-start", "destination": "general", "destination_kind": "room"})
    await engine.handle_frame(bob, {"type": "typing-stop", "destination": "general", "destination_kind": "room"})
    await engine.handle_frame(bob, {"type": "send-room", "body": "hi"})
    await engine.handle_frame(bob, {"type": "list-online"})
    await engine.handle_frame(bob, {"type": "leave-room"})

    assert alice.types() == [
        "connected", "room-joined", "presence-online", "member-joined",
        "typing-started", "typing-stopped", "receive-message", "member-left",
    ]
    assert bob.last("room-joined").display_name == "General"
    assert [u.id for u in bob.last("online-users").users] == ["alice"]
    assert bob.last("room-left").room_id == "general"
    assert "error" not in bob.types()


@pytest.mark.asyncio
async def test_leave_room_when_not_in_room(engine, connect):
    handle, _ = await connect("alice")
    await engine.handle_frame(handle, {"type": "leave-room"})
    assert handle.last("error").code == "not-in-room"


@pytest.mark.asyncio
async def test_typing_in_foreign_room_reports_not_a_member(engine, connect):
    handle, _ = await connect("alice")
    await engine.handle_frame(handle, {"type": "typing-start", "destination": "general", "destination_kind": "room"})
    assert handle.last("error").code == "not-a-member"


@pytest.mark.asyncio
async def test_private_message_to_unknown_identity(engine, connect):
    handle, _ = await connect("alice")
    await engine.handle_frame(handle, {"type": "send-private", "to_identity_id": "nobody", "body": "hi"})
    assert handle.last("error").code == "unknown-identity"
    assert handle.of_type("message-sent") == []


@pytest.mark.asyncio
async def test_messages_are_persisted(engine, backend, connect):
    _, alice = await connect("alice")
    _, bob = await connect("bob")
    await engine.join_room(alice, "general")
    await engine.join_room(bob, "general")
    await engine.send_room(bob, "hi room")
    await engine.send_private(alice, "bob", "hi bob")
    await engine.disconnect(bob.handle)
    await engine.send_private(alice, "bob", "you there?")

    room_history = backend.query_history(HistoryFilter(room_id="general"))
    assert [(m["body"], m["room_id"]) for m in room_history] == [("hi room", "general")]

    private_history = backend.query_history(HistoryFilter(identity_id="bob", peer_id="alice"))
    assert [(m["body"], m["delivered"]) for m in private_history] == [("hi bob", True), ("you there?", False)]


@pytest.mark.asyncio
async def test_rejected_room_message_is_not_persisted(engine, backend, connect):
    _, alice = await connect("alice")
    await engine.send_room(alice, "lost")
    assert backend._history == {}


@pytest.mark.asyncio
async def test_persistence_failure_does_not_affect_delivery(engine, backend, connect):
    def broken_append(record):
        raise ConnectionError("store down")

    backend.append_message = broken_append
    _, alice = await connect("alice")
    bob_handle, _ = await connect("bob")

    result = await engine.send_private(alice, "bob", "still works")

    assert result.delivered is True
    assert bob_handle.last("receive-message").body == "still works"


@pytest.mark.asyncio
async def test_unexpected_error_becomes_internal_error(engine, connect, monkeypatch):
    handle, _ = await connect("alice")

    async def explode(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(engine.router, "send_room", explode)
    await engine.handle_frame(handle, {"type": "send-room", "body": "hi"})

    assert handle.last("error").code == "internal-error"


@pytest.mark.asyncio
async def test_shutdown_disconnects_everyone(engine, connect):
    alice_handle, _ = await connect("alice")
    bob_handle, _ = await connect("bob")

    await engine.shutdown()

    assert len(engine.registry) == 0
    assert alice_handle.close_calls[-1][0] == 1001
    assert bob_handle.close_calls[-1][0] == 1001
