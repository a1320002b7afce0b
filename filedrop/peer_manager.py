"""
Client side glue between the signaling link and the per-peer transfer sessions.

Membership updates decide who opens a data channel (see peer_role); offers,
answers and candidates are handed to a Negotiator, which owns the actual
peer connection and hands back a ChunkedTransport once the channel exists.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Set

from .chunking import FileSource
from .config import Settings, get_settings
from .errors import TargetNotFound
from .models import ErrorMessage, PeerSignal, PublicRooms, RoomCreated, UserInfo, UserListUpdate, Welcome
from .peer_role import ConnectionTracker, membership_delta, should_initiate
from .signaling_client import SignalingClient
from .transfer import TransferCallbacks, TransferSession
from .transport import ChunkedTransport

logger = logging.getLogger(__name__)

SendCandidate = Callable[[str, Any], Awaitable[None]]


class Negotiator(Protocol):
    """Peer connection capability. SDP and candidates are opaque here."""

    def bind(self, send_candidate: SendCandidate) -> None:
        ...

    async def create_offer(self, remote_id: str) -> Dict[str, Any]:
        ...

    async def accept_offer(self, remote_id: str, offer: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def accept_answer(self, remote_id: str, answer: Dict[str, Any]) -> None:
        ...

    async def add_candidate(self, remote_id: str, candidate: Any) -> None:
        ...

    async def wait_transport(self, remote_id: str) -> ChunkedTransport:
        ...

    async def close(self, remote_id: str) -> None:
        ...


class PeerManager:
    def __init__(
        self,
        signaling: SignalingClient,
        negotiator: Negotiator,
        settings: Optional[Settings] = None,
        callbacks: Optional[TransferCallbacks] = None,
    ):
        self.signaling = signaling
        self.negotiator = negotiator
        self.settings = settings or get_settings()
        self.callbacks = callbacks or TransferCallbacks()

        self.local_id: Optional[str] = None
        self.username: Optional[str] = None
        self.room_id: Optional[str] = None
        self.users: Dict[str, UserInfo] = {}
        self.public_rooms: List[str] = []
        self.sessions: Dict[str, TransferSession] = {}
        self.tracker: Optional[ConnectionTracker] = None
        self._tasks: Set[asyncio.Task] = set()

        negotiator.bind(self._send_candidate)

    async def run(self) -> None:
        async for message in self.signaling.messages():
            await self.handle(message)

    async def handle(self, message) -> None:
        if isinstance(message, Welcome):
            self.local_id = message.id
            self.username = message.username
            self.tracker = ConnectionTracker(message.id)
        elif isinstance(message, RoomCreated):
            self.room_id = message.room_id
            await self._update_members(message.users)
        elif isinstance(message, UserListUpdate):
            await self._update_members(message.users)
        elif isinstance(message, PublicRooms):
            self.public_rooms = list(message.rooms)
        elif isinstance(message, ErrorMessage):
            logger.warning(f"⚠️ Relay error {message.code}: {message.message}")
        elif isinstance(message, PeerSignal):
            await self._handle_signal(message)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def _update_members(self, users: Iterable[UserInfo]) -> None:
        if self.local_id is None:
            logger.warning("❌ Membership update before welcome, ignoring")
            return
        previous = list(self.users)
        self.users = {u.id: u for u in users}
        appeared, gone = membership_delta(self.local_id, previous, self.users)

        for remote_id in gone:
            logger.info(f"🚪 Peer {remote_id} left")
            await self._drop_peer(remote_id)

        for remote_id in sorted(appeared):
            if should_initiate(self.local_id, remote_id):
                logger.info(f"🤝 Initiating connection to {remote_id} ({self.local_id} < {remote_id})")
                await self.connect(remote_id)
            else:
                logger.info(f"⏳ Waiting for {remote_id} to open the data channel")

    def session_for(self, remote_id: str) -> TransferSession:
        session = self.sessions.get(remote_id)
        if session is None:
            session = TransferSession(
                self.local_id,
                remote_id,
                self.callbacks,
                chunk_size=self.settings.chunk_size,
                buffer_threshold=self.settings.buffer_threshold,
            )
            self.sessions[remote_id] = session
        return session

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    async def connect(self, remote_id: str) -> None:
        if not self.tracker.begin(remote_id):
            return
        session = self.session_for(remote_id)
        session.begin_negotiation()
        try:
            offer = await self.negotiator.create_offer(remote_id)
        except Exception as e:
            logger.error(f"❌ Creating offer for {remote_id} failed: {e}")
            self.tracker.release(remote_id)
            return
        await self.signaling.send_offer(remote_id, **offer)
        self._spawn(self._await_transport(remote_id))

    async def _handle_signal(self, message: PeerSignal) -> None:
        remote_id = message.from_
        if remote_id is None or self.tracker is None:
            return
        payload = dict(message.model_extra or {})

        if message.type == "offer":
            if not self.tracker.begin(remote_id):
                logger.warning(f"⚠️ Ignoring offer from {remote_id}, connection already in progress")
                return
            self.session_for(remote_id).begin_negotiation()
            try:
                answer = await self.negotiator.accept_offer(remote_id, payload)
            except Exception as e:
                logger.error(f"❌ Handling offer from {remote_id} failed: {e}")
                self.tracker.release(remote_id)
                return
            await self.signaling.send_answer(remote_id, **answer)
            self._spawn(self._await_transport(remote_id))
        elif message.type == "answer":
            await self.negotiator.accept_answer(remote_id, payload)
        elif message.type == "ice-candidate":
            if payload.get("candidate") is not None:
                await self.negotiator.add_candidate(remote_id, payload["candidate"])
        else:
            logger.debug(f"Ignoring {message.type} from {remote_id}")

    async def _send_candidate(self, remote_id: str, candidate: Any) -> None:
        await self.signaling.send_ice_candidate(remote_id, candidate)

    async def _await_transport(self, remote_id: str) -> None:
        transport = await self.negotiator.wait_transport(remote_id)
        session = self.sessions.get(remote_id)
        if session is None:
            await transport.close()
            return
        self.tracker.mark_open(remote_id)
        session.attach(transport)
        await session.wait_closed()
        self.tracker.release(remote_id)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"❌ Peer task failed: {task.exception()}")

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def send_file(self, remote_id: str, source: FileSource) -> TransferSession:
        """Queue `source` for `remote_id`, opening a channel if this side initiates."""
        if remote_id not in self.users or remote_id == self.local_id:
            raise TargetNotFound(remote_id, self.room_id)
        session = self.session_for(remote_id)
        session.send_file(source)
        if session.transport is None and remote_id not in self.tracker and should_initiate(self.local_id, remote_id):
            await self.connect(remote_id)
        return session

    async def _drop_peer(self, remote_id: str) -> None:
        session = self.sessions.pop(remote_id, None)
        if session is not None:
            await session.close()
        if self.tracker is not None:
            self.tracker.release(remote_id)
        await self.negotiator.close(remote_id)

    async def close(self) -> None:
        for remote_id in list(self.sessions):
            await self._drop_peer(remote_id)
        for task in list(self._tasks):
            task.cancel()
        await self.signaling.disconnect()
