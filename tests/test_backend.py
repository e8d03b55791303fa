import json
from unittest.mock import MagicMock

import pytest

from backend import HistoryFilter, HistoryPage, MemoryBackend, RedisBackend, create_backend


def _record(i, room_id="general"):
    return {
        "message_id": f"m{i}",
        "kind": "room",
        "from_identity": "alice",
        "from_display_name": "Alice",
        "body": f"message {i}",
        "sent_at": "2026-01-01T00:00:00",
        "room_id": room_id,
    }


@pytest.fixture
def redis_client():
    return MagicMock()


@pytest.fixture
def redis_backend(redis_client):
    return RedisBackend(client=redis_client)


class TestRedisBackend:
    def test_resolve_identity(self, redis_backend, redis_client):
        redis_client.hgetall.return_value = {"id": "alice", "display_name": "Alice"}

        identity = redis_backend.resolve_identity("alice")

        redis_client.hgetall.assert_called_once_with("identity:alice")
        assert identity.id == "alice"
        assert identity.display_name == "Alice"

    def test_resolve_missing_identity(self, redis_backend, redis_client):
        redis_client.hgetall.return_value = {}
        assert redis_backend.resolve_identity("ghost") is None

    def test_register_identity(self, redis_backend, redis_client):
        identity = redis_backend.register_identity("bob", "Bobby")

        key, = redis_client.hset.call_args.args
        mapping = redis_client.hset.call_args.kwargs["mapping"]
        assert key == "identity:bob"
        assert mapping["display_name"] == "Bobby"
        assert identity.display_name == "Bobby"

    def test_append_room_message(self, redis_backend, redis_client):
        assert redis_backend.append_message(_record(1)) == "m1"

        key, payload = redis_client.rpush.call_args.args
        assert key == "messages:room:general"
        assert json.loads(payload)["body"] == "message 1"
        redis_client.expire.assert_not_called()

    def test_append_private_message_uses_sorted_pair_key(self, redis_client):
        backend = RedisBackend(client=redis_client, message_ttl=60)
        record = {**_record(2), "kind": "private", "from_identity": "zoe", "to_identity": "adam"}
        del record["room_id"]

        backend.append_message(record)

        key, _ = redis_client.rpush.call_args.args
        assert key == "messages:dm:adam:zoe"
        redis_client.expire.assert_called_once_with("messages:dm:adam:zoe", 60)

    def test_query_history_pages_back_from_newest(self, redis_backend, redis_client):
        redis_client.lrange.return_value = [json.dumps(_record(3)), "not json", json.dumps(_record(4))]

        messages = redis_backend.query_history(HistoryFilter(room_id="general"), HistoryPage(offset=10, limit=5))

        redis_client.lrange.assert_called_once_with("messages:room:general", -15, -11)
        assert [m["message_id"] for m in messages] == ["m3", "m4"]

    def test_ping_failure_is_raised(self, redis_backend, redis_client):
        redis_client.ping.side_effect = ConnectionError("refused")
        with pytest.raises(ConnectionError):
            redis_backend.ping()


class TestMemoryBackend:
    def test_history_pages(self):
        backend = MemoryBackend()
        for i in range(5):
            backend.append_message(_record(i))
        room = HistoryFilter(room_id="general")

        assert [m["message_id"] for m in backend.query_history(room, HistoryPage(limit=2))] == ["m3", "m4"]
        assert [m["message_id"] for m in backend.query_history(room, HistoryPage(offset=2, limit=2))] == ["m1", "m2"]
        assert [m["message_id"] for m in backend.query_history(room, HistoryPage(offset=4, limit=2))] == ["m0"]
        assert backend.query_history(room, HistoryPage(offset=5, limit=2)) == []
        assert backend.query_history(HistoryFilter(room_id="other")) == []

    def test_identities(self):
        backend = MemoryBackend(identities={"alice": "Alice"})
        assert backend.resolve_identity("alice").display_name == "Alice"
        assert backend.resolve_identity("bob") is None
        assert backend.register_identity("bob").display_name == "bob"


def test_history_filter_requires_a_target():
    with pytest.raises(ValueError):
        HistoryFilter(identity_id="alice")
    assert HistoryFilter(identity_id="b", peer_id="a").key() == HistoryFilter(identity_id="a", peer_id="b").key()


def test_create_backend():
    assert isinstance(create_backend("memory"), MemoryBackend)
    with pytest.raises(ValueError):
        create_backend("sqlite")
