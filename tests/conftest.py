"""
Shared pytest fixtures for filedrop tests.

Provides:
- Settings with test friendly values
- FakeChannel, an in-memory SignalingChannel that records what it was sent
- Recorder, which collects transfer callbacks, and until(), a polling wait
- LoopbackHub, a Negotiator implementation that wires peers together with
  MemoryTransport pairs instead of real WebRTC connections
"""

import asyncio
import uuid
from typing import Any, Dict, List, Optional, Tuple

import pytest

from filedrop.config import Settings, get_settings
from filedrop.relay import SignalingRelay
from filedrop.room_registry import RoomRegistry
from filedrop.transfer import TransferCallbacks
from filedrop.transport import MemoryTransport
from filedrop.websocket_manager import ConnectionManager, SignalingChannel


class FakeChannel(SignalingChannel):
    def __init__(self, connection_id: Optional[str] = None, fail: bool = False, delay: float = 0.0):
        super().__init__(connection_id or str(uuid.uuid4()))
        self.sent: List[dict] = []
        self.fail = fail
        self.delay = delay

    async def send(self, message: dict) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("socket gone")
        self.sent.append(message)

    def of_type(self, type: str) -> List[dict]:
        return [m for m in self.sent if m["type"] == type]

    def last(self, type: str) -> dict:
        return self.of_type(type)[-1]


class Recorder:
    """Collects every TransferCallbacks invocation."""

    def __init__(self):
        self.states = []
        self.progress = []
        self.received = []
        self.sent = []
        self.errors = []

    def callbacks(self) -> TransferCallbacks:
        return TransferCallbacks(
            on_state_change=lambda session, state: self.states.append(state),
            on_progress=lambda session, progress: self.progress.append(progress),
            on_file_received=lambda session, received: self.received.append(received),
            on_file_sent=lambda session, metadata: self.sent.append(metadata),
            on_error=lambda session, error: self.errors.append(error),
        )


async def until(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout)


class LoopbackHub:
    """Creates a MemoryTransport pair per offer/answer exchange."""

    def __init__(self, flush_delay: float = 0.0):
        self.flush_delay = flush_delay
        self.offers: List[Tuple[str, str]] = []
        self._pending: Dict[Tuple[str, str], "asyncio.Future[MemoryTransport]"] = {}

    def negotiator(self, local_id: str) -> "LoopbackNegotiator":
        return LoopbackNegotiator(self, local_id)

    def _future(self, local_id: str, remote_id: str) -> "asyncio.Future[MemoryTransport]":
        key = (local_id, remote_id)
        if key not in self._pending:
            self._pending[key] = asyncio.get_running_loop().create_future()
        return self._pending[key]


class LoopbackNegotiator:
    def __init__(self, hub: LoopbackHub, local_id: str):
        self.hub = hub
        self.local_id = local_id
        self.send_candidate = None
        self.candidates: List[Any] = []
        self.closed: List[str] = []

    def bind(self, send_candidate) -> None:
        self.send_candidate = send_candidate

    async def create_offer(self, remote_id: str) -> Dict[str, Any]:
        self.hub.offers.append((self.local_id, remote_id))
        await self.send_candidate(remote_id, {"candidate": f"candidate:{self.local_id}"})
        return {"sdp": f"offer {self.local_id}->{remote_id}"}

    async def accept_offer(self, remote_id: str, offer: Dict[str, Any]) -> Dict[str, Any]:
        assert offer["sdp"] == f"offer {remote_id}->{self.local_id}"
        ours, theirs = MemoryTransport.pair(flush_delay=self.hub.flush_delay)
        self.hub._future(self.local_id, remote_id).set_result(ours)
        self.hub._future(remote_id, self.local_id).set_result(theirs)
        return {"sdp": f"answer {self.local_id}->{remote_id}"}

    async def accept_answer(self, remote_id: str, answer: Dict[str, Any]) -> None:
        assert answer["sdp"] == f"answer {remote_id}->{self.local_id}"

    async def add_candidate(self, remote_id: str, candidate: Any) -> None:
        self.candidates.append((remote_id, candidate))

    async def wait_transport(self, remote_id: str) -> MemoryTransport:
        return await self.hub._future(self.local_id, remote_id)

    async def close(self, remote_id: str) -> None:
        self.closed.append(remote_id)


@pytest.fixture
def settings():
    return Settings(_env_file=None, log_level="DEBUG")


@pytest.fixture
def reset_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def relay(registry, settings):
    return SignalingRelay(registry, ConnectionManager(), settings)


@pytest.fixture
def hub():
    return LoopbackHub()
