import redis
import json
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional
from constants import (
    REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, STORAGE_BACKEND, MESSAGE_TTL_SECONDS, HISTORY_PAGE_SIZE,
)
from redis_keys import REDIS_IDENTITY_KEY, REDIS_ROOM_HISTORY_KEY, dm_history_key
from schemas.users import Identity
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class HistoryFilter:
    """Either ``room_id`` or the ``identity_id``/``peer_id`` pair of a private conversation."""
    room_id: Optional[str] = None
    identity_id: Optional[str] = None
    peer_id: Optional[str] = None

    def __post_init__(self):
        if self.room_id is None and not (self.identity_id and self.peer_id):
            raise ValueError("HistoryFilter needs room_id or identity_id and peer_id")

    def key(self) -> str:
        if self.room_id is not None:
            return REDIS_ROOM_HISTORY_KEY.format(room_id=self.room_id)
        return dm_history_key(self.identity_id, self.peer_id)


@dataclass(frozen=True)
class HistoryPage:
    """Window counted back from the newest message."""
    offset: int = 0
    limit: int = HISTORY_PAGE_SIZE


def _record_key(record: dict) -> str:
    if record.get("kind") == "room":
        return REDIS_ROOM_HISTORY_KEY.format(room_id=record["room_id"])
    return dm_history_key(record["from_identity"], record["to_identity"])


class RedisBackend:
    """Identity directory and message store backed by Redis."""

    def __init__(self, host: str = REDIS_HOST, port: int = REDIS_PORT, password: Optional[str] = REDIS_PASSWORD,
                 client: Optional[redis.Redis] = None, message_ttl: int = MESSAGE_TTL_SECONDS):
        logger.info(f"Initializing RedisBackend with connection to {host}:{port}")
        self.redis_client = client or redis.Redis(host=host, port=port, password=password, decode_responses=True)
        self.message_ttl = message_ttl
        self._address = f"{host}:{port}"

    def ping(self):
        try:
            self.redis_client.ping()
            logger.info(f"Redis client connected successfully to {self._address}")
        except Exception as e:
            logger.error(f"Failed to connect to Redis at {self._address}: {e}", exc_info=True)
            raise

    def resolve_identity(self, identity_id: str) -> Optional[Identity]:
        logger.debug(f"Resolving identity {identity_id}")
        data = self.redis_client.hgetall(REDIS_IDENTITY_KEY.format(identity_id=identity_id))
        if not data:
            logger.debug(f"Identity {identity_id} not found in Redis")
            return None
        return Identity(id=data.get("id", identity_id), display_name=data.get("display_name") or identity_id)

    def register_identity(self, identity_id: str, display_name: Optional[str] = None) -> Identity:
        logger.info(f"Registering identity {identity_id}")
        identity = Identity(id=identity_id, display_name=display_name or identity_id)
        self.redis_client.hset(REDIS_IDENTITY_KEY.format(identity_id=identity_id), mapping={
            "id": identity.id,
            "display_name": identity.display_name,
            "created_at": datetime.now().isoformat(),
        })
        return identity

    def append_message(self, record: dict) -> str:
        key = _record_key(record)
        self.redis_client.rpush(key, json.dumps(record))
        if self.message_ttl:
            self.redis_client.expire(key, self.message_ttl)
        logger.debug(f"Appended message {record['message_id']} to {key}")
        return record["message_id"]

    def query_history(self, history_filter: HistoryFilter, page: HistoryPage = HistoryPage()) -> List[dict]:
        """Return one page of messages, oldest first."""
        key = history_filter.key()
        if page.limit <= 0:
            return []
        start = -(page.offset + page.limit)
        end = -(page.offset + 1)
        raw_messages = self.redis_client.lrange(key, start, end)
        messages = []
        for raw in raw_messages:
            try:
                messages.append(json.loads(raw))
            except (json.JSONDecodeError, TypeError):
                logger.warning(f"Skipping unreadable history entry in {key}")
        logger.debug(f"Loaded {len(messages)} messages from {key} (offset={page.offset}, limit={page.limit})")
        return messages


class MemoryBackend:
    """In-process identity directory and message store, for development and tests."""

    def __init__(self, identities: Optional[Dict[str, str]] = None):
        self._lock = threading.Lock()
        self._identities: Dict[str, Identity] = {}
        self._history: Dict[str, List[dict]] = {}
        for identity_id, display_name in (identities or {}).items():
            self._identities[identity_id] = Identity(id=identity_id, display_name=display_name)

    def ping(self):
        logger.info("Using in-memory storage backend")

    def resolve_identity(self, identity_id: str) -> Optional[Identity]:
        with self._lock:
            return self._identities.get(identity_id)

    def register_identity(self, identity_id: str, display_name: Optional[str] = None) -> Identity:
        identity = Identity(id=identity_id, display_name=display_name or identity_id)
        with self._lock:
            self._identities[identity_id] = identity
        logger.info(f"Registering identity {identity_id}")
        return identity

    def append_message(self, record: dict) -> str:
        with self._lock:
            self._history.setdefault(_record_key(record), []).append(dict(record))
        return record["message_id"]

    def query_history(self, history_filter: HistoryFilter, page: HistoryPage = HistoryPage()) -> List[dict]:
        with self._lock:
            messages = self._history.get(history_filter.key(), [])
            if page.limit <= 0 or page.offset >= len(messages):
                return []
            end = len(messages) - page.offset
            start = max(0, end - page.limit)
            return [dict(m) for m in messages[start:end]]


def create_backend(kind: str = STORAGE_BACKEND):
    if kind == "memory":
        return MemoryBackend()
    if kind == "redis":
        return RedisBackend()
    raise ValueError(f"Unknown STORAGE_BACKEND '{kind}', expected 'redis' or 'memory'")
