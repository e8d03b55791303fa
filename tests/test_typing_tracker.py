import asyncio

import pytest

from chat.connections import DisconnectReason
from chat.errors import NotAMember
from chat.typing_tracker import Destination

GENERAL = Destination("room", "general")


async def _room_with(engine, connect, *identity_ids):
    members = {}
    for identity_id in identity_ids:
        handle, connection = await connect(identity_id)
        await engine.join_room(connection, "general")
        members[identity_id] = (handle, connection)
    return members


@pytest.mark.asyncio
async def test_start_and_stop_are_broadcast_to_others(engine, connect):
    members = await _room_with(engine, connect, "alice", "bob")
    alice_handle, alice = members["alice"]
    bob_handle, _ = members["bob"]

    assert await engine.typing.start_typing(alice, GENERAL) is True
    assert engine.typing.typing_in(GENERAL) == {"alice"}
    assert await engine.typing.stop_typing(alice, GENERAL) is True
    assert engine.typing.typing_in(GENERAL) == set()

    assert [e.type for e in bob_handle.of_type("typing-started", "typing-stopped")] == ["typing-started", "typing-stopped"]
    started = bob_handle.last("typing-started")
    assert (started.identity_id, started.destination, started.destination_kind) == ("alice", "general", "room")
    assert alice_handle.of_type("typing-started", "typing-stopped") == []


@pytest.mark.asyncio
async def test_restart_only_rearms(engine, connect):
    members = await _room_with(engine, connect, "alice", "bob")
    _, alice = members["alice"]
    bob_handle, _ = members["bob"]

    await engine.typing.start_typing(alice, GENERAL)
    first_expiry = engine.typing.marks()[0].expires_at
    await asyncio.sleep(0.01)
    assert await engine.typing.start_typing(alice, GENERAL) is False

    assert len(bob_handle.of_type("typing-started")) == 1
    assert engine.typing.marks()[0].expires_at > first_expiry


@pytest.mark.asyncio
async def test_stop_without_start_is_silent(engine, connect):
    members = await _room_with(engine, connect, "alice", "bob")
    _, alice = members["alice"]
    bob_handle, _ = members["bob"]

    assert await engine.typing.stop_typing(alice, GENERAL) is False
    assert bob_handle.of_type("typing-stopped") == []


@pytest.mark.asyncio
async def test_typing_expires_with_a_single_synthesized_stop(engine, connect):
    members = await _room_with(engine, connect, "alice", "bob", "carol")
    _, alice = members["alice"]

    await engine.typing.start_typing(alice, GENERAL)
    await asyncio.sleep(engine.typing.expiry_seconds * 4)

    for name in ("bob", "carol"):
        handle, _ = members[name]
        assert len(handle.of_type("typing-started")) == 1
        assert len(handle.of_type("typing-stopped")) == 1
    assert engine.typing.typing_in(GENERAL) == set()


@pytest.mark.asyncio
async def test_explicit_stop_cancels_expiry(engine, connect):
    members = await _room_with(engine, connect, "alice", "bob")
    _, alice = members["alice"]
    bob_handle, _ = members["bob"]

    await engine.typing.start_typing(alice, GENERAL)
    await engine.typing.stop_typing(alice, GENERAL)
    await asyncio.sleep(engine.typing.expiry_seconds * 3)

    assert len(bob_handle.of_type("typing-stopped")) == 1


@pytest.mark.asyncio
async def test_disconnect_clears_typing_immediately(engine, connect):
    members = await _room_with(engine, connect, "alice", "bob")
    alice_handle, alice = members["alice"]
    bob_handle, _ = members["bob"]

    await engine.typing.start_typing(alice, GENERAL)
    await engine.typing.start_typing(alice, Destination("private", "bob"))
    await engine.disconnect(alice_handle)

    assert engine.typing.marks() == []
    assert len(bob_handle.of_type("typing-stopped")) == 2
    types = bob_handle.types()
    assert types.index("typing-stopped") < types.index("member-left")
    await asyncio.sleep(engine.typing.expiry_seconds * 3)
    assert len(bob_handle.of_type("typing-stopped")) == 2


@pytest.mark.asyncio
async def test_leaving_room_clears_room_typing(engine, connect):
    members = await _room_with(engine, connect, "alice", "bob")
    _, alice = members["alice"]
    bob_handle, _ = members["bob"]

    await engine.typing.start_typing(alice, GENERAL)
    await engine.join_room(alice, "elsewhere")

    stopped = bob_handle.of_type("typing-stopped")
    assert [(e.identity_id, e.destination) for e in stopped] == [("alice", "general")]
    assert engine.typing.typing_in(GENERAL) == set()


@pytest.mark.asyncio
async def test_room_typing_requires_membership(engine, connect):
    _, alice = await connect("alice")

    with pytest.raises(NotAMember):
        await engine.typing.start_typing(alice, GENERAL)


@pytest.mark.asyncio
async def test_private_typing_goes_to_recipient_only(engine, connect):
    alice_handle, alice = await connect("alice")
    bob_handle, _ = await connect("bob")
    carol_handle, _ = await connect("carol")

    await engine.typing.start_typing(alice, Destination("private", "bob"))

    started = bob_handle.last("typing-started")
    assert (started.identity_id, started.destination_kind) == ("alice", "private")
    assert carol_handle.of_type("typing-started") == []
    assert alice_handle.of_type("typing-started") == []


@pytest.mark.asyncio
async def test_typing_start_racing_a_disconnect_leaves_no_mark(engine, connect):
    members = await _room_with(engine, connect, "alice", "bob")
    alice_handle, _ = members["alice"]
    bob_handle, bob = members["bob"]

    await engine.typing._lock.acquire()
    disconnect = asyncio.create_task(engine.disconnect(bob_handle, DisconnectReason.TRANSPORT_FAILURE))
    for _ in range(5):
        await asyncio.sleep(0)
    start = asyncio.create_task(engine.typing.start_typing(bob, GENERAL))
    await asyncio.sleep(0)
    engine.typing._lock.release()
    await asyncio.gather(disconnect, start)

    assert engine.registry.lookup("bob") is None
    assert engine.typing.marks() == []
    types = alice_handle.types()
    assert "typing-started" not in types[types.index("member-left"):]
