import itertools
from typing import List

from chat.errors import TransportFailure

_ids = itertools.count(1)


class FakeHandle:
    """In-memory ConnectionHandle that records what the engine pushes to it."""

    def __init__(self, name: str = "conn", fail_sends: bool = False):
        self.connection_id = f"{name}-{next(_ids)}"
        self.events: List = []
        self.close_calls: List[tuple] = []
        self.fail_sends = fail_sends
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event):
        if self.fail_sends or self._closed:
            raise TransportFailure(f"{self.connection_id} is closed")
        self.events.append(event)

    async def close(self, code: int = 1000, reason: str = ""):
        self._closed = True
        self.close_calls.append((code, reason))

    def of_type(self, *types: str) -> List:
        return [e for e in self.events if e.type in types]

    def types(self) -> List[str]:
        return [e.type for e in self.events]

    def last(self, event_type: str):
        matching = self.of_type(event_type)
        return matching[-1] if matching else None

    def clear(self):
        self.events.clear()
