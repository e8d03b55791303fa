from typing import Optional

import pytest

from backend import MemoryBackend
from chat.engine import ChatEngine, EngineSettings
from tests.helpers import FakeHandle


@pytest.fixture
def backend():
    return MemoryBackend(identities={"alice": "Alice", "bob": "Bob", "carol": "Carol"})


@pytest.fixture
def settings():
    return EngineSettings(
        typing_expiry_seconds=0.05,
        reaper_interval_seconds=3600,
        stale_connection_seconds=30,
        heartbeat_idle_seconds=10,
        auto_register_identities=False,
    )


@pytest.fixture
async def engine(backend, settings):
    chat_engine = ChatEngine(backend, settings)
    yield chat_engine
    await chat_engine.typing.close()
    await chat_engine.reaper.stop()


@pytest.fixture
def connect(engine):
    """Announce an identity on a fresh FakeHandle; returns (handle, connection)."""

    async def _connect(identity_id: str, handle: Optional[FakeHandle] = None):
        handle = handle or FakeHandle(identity_id)
        connection = await engine.announce(handle, identity_id)
        return handle, connection

    return _connect
