"""
Client end of the signaling link.

Messages sent while the link is down are queued and flushed on reconnect.
A severed link is retried up to `max_reconnect_attempts` times, waiting
`reconnect_delay * attempt` seconds before each try; after that the failure
is reported once through `on_error` and `run()` returns.
"""

import asyncio
import json
import logging
from collections import deque
from typing import Any, AsyncIterator, Callable, Deque, Optional, Union

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from .config import Settings, get_settings
from .errors import FileDropError, MaxReconnectAttemptsExceeded
from .models import CreateRoom, GetPublicRooms, JoinRoom, LeaveRoom, PeerSignal, WireModel, parse_server_message

logger = logging.getLogger(__name__)


class SignalingClient:
    def __init__(
        self,
        url: Optional[str] = None,
        settings: Optional[Settings] = None,
        on_error: Optional[Callable[[FileDropError], None]] = None,
        connect: Callable[..., Any] = websockets.connect,
    ):
        settings = settings or get_settings()
        self.url = url or settings.signaling_url
        self.max_reconnect_attempts = settings.max_reconnect_attempts
        self.reconnect_delay = settings.reconnect_delay
        self.on_error = on_error or (lambda error: None)
        self._connect = connect

        self.reconnect_attempts = 0
        self.connected = asyncio.Event()
        self._ws = None
        self._stopped = False
        self._outbox: Deque[str] = deque()
        self._inbox: "asyncio.Queue[Optional[WireModel]]" = asyncio.Queue()

    # ------------------------------------------------------------------
    # Link supervision
    # ------------------------------------------------------------------

    async def run(self) -> None:
        while not self._stopped:
            try:
                async with self._connect(self.url) as ws:
                    self._ws = ws
                    self.reconnect_attempts = 0
                    logger.info(f"🔌 Signaling connected to {self.url}")
                    await self._flush_outbox()
                    self.connected.set()
                    async for raw in ws:
                        self._dispatch(raw)
                logger.info("🔌 Signaling connection closed")
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logger.warning(f"❌ Signaling connection error: {e}")
            finally:
                self._ws = None
                self.connected.clear()

            if self._stopped:
                break
            if self.reconnect_attempts >= self.max_reconnect_attempts:
                error = MaxReconnectAttemptsExceeded(self.reconnect_attempts)
                logger.error(f"❌ {error.message}")
                self.on_error(error)
                break

            self.reconnect_attempts += 1
            logger.info(f"🔄 Attempting to reconnect ({self.reconnect_attempts}/{self.max_reconnect_attempts})")
            await asyncio.sleep(self.reconnect_delay * self.reconnect_attempts)

        self._inbox.put_nowait(None)

    async def disconnect(self) -> None:
        self._stopped = True
        if self._ws is not None:
            await self._ws.close()

    def _dispatch(self, raw: Union[str, bytes]) -> None:
        try:
            message = parse_server_message(raw)
        except ValidationError as e:
            logger.warning(f"⚠️ Dropping malformed signaling message: {e.error_count()} error(s)")
            return
        self._inbox.put_nowait(message)

    async def messages(self) -> AsyncIterator[WireModel]:
        """Inbound server messages until the client stops for good."""
        while True:
            message = await self._inbox.get()
            if message is None:
                return
            yield message

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, message: Union[WireModel, dict]) -> None:
        payload = message.dump() if isinstance(message, WireModel) else message
        data = json.dumps(payload)
        if self._ws is None or not self.connected.is_set():
            self._outbox.append(data)
            return
        try:
            await self._ws.send(data)
        except ConnectionClosed:
            self._outbox.append(data)

    async def _flush_outbox(self) -> None:
        while self._outbox and self._ws is not None:
            await self._ws.send(self._outbox[0])
            self._outbox.popleft()

    async def create_room(self, is_public: bool, room_id: Optional[str] = None) -> None:
        await self.send(CreateRoom(is_public=is_public, room_id=room_id))

    async def join_room(self, room_id: str) -> None:
        await self.send(JoinRoom(room_id=room_id))

    async def leave_room(self) -> None:
        await self.send(LeaveRoom())

    async def get_public_rooms(self) -> None:
        await self.send(GetPublicRooms())

    async def send_offer(self, to: str, **payload: Any) -> None:
        await self.send(PeerSignal(type="offer", to=to, **payload))

    async def send_answer(self, to: str, **payload: Any) -> None:
        await self.send(PeerSignal(type="answer", to=to, **payload))

    async def send_ice_candidate(self, to: str, candidate: Any) -> None:
        await self.send(PeerSignal(type="ice-candidate", to=to, candidate=candidate))
