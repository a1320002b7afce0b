"""
Ordered, reliable message channel between two peers.

The transfer layer only needs three things from a transport: `send`, a way to
wait until the outgoing buffer has drained, and an in-order stream of inbound
events. `MemoryTransport` provides them in-process; `DataChannelTransport`
adapts an aiortc style RTCDataChannel.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Deque, Optional, Tuple, Union

from .errors import TransportClosed

logger = logging.getLogger(__name__)

Payload = Union[str, bytes]


class TransportEventType(str, Enum):
    OPEN = "open"
    MESSAGE = "message"
    DRAINED = "drained"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class TransportEvent:
    type: TransportEventType
    data: Optional[Payload] = None
    error: Optional[BaseException] = None


class ChunkedTransport(ABC):
    def __init__(self, low_threshold: int = 0):
        self._low_threshold = low_threshold
        self._events: "asyncio.Queue[TransportEvent]" = asyncio.Queue()
        self._drained = asyncio.Event()
        self._drained.set()
        self.closed = False
        self.opened = False

    # ------------------------------------------------------------------
    # Interface
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def buffered_amount(self) -> int:
        ...

    @abstractmethod
    async def send(self, data: Payload) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @property
    def is_open(self) -> bool:
        return self.opened and not self.closed

    @property
    def low_threshold(self) -> int:
        return self._low_threshold

    @low_threshold.setter
    def low_threshold(self, value: int) -> None:
        self._low_threshold = value

    async def wait_drained(self) -> None:
        """Block until buffered_amount <= low_threshold."""
        while self.buffered_amount > self._low_threshold:
            if self.closed:
                raise TransportClosed("Transport closed while waiting for the buffer to drain")
            self._drained.clear()
            await self._drained.wait()
        if self.closed:
            raise TransportClosed("Transport closed")

    async def events(self) -> AsyncIterator[TransportEvent]:
        """In-order inbound events, ending after CLOSED or ERROR."""
        while True:
            event = await self._events.get()
            yield event
            if event.type in (TransportEventType.CLOSED, TransportEventType.ERROR):
                return

    # ------------------------------------------------------------------
    # Helpers for implementations
    # ------------------------------------------------------------------

    def _emit(self, type: TransportEventType, data: Optional[Payload] = None, error: BaseException = None) -> None:
        self._events.put_nowait(TransportEvent(type, data, error))

    def _on_open(self) -> None:
        if not self.opened:
            self.opened = True
            self._emit(TransportEventType.OPEN)

    def _on_buffer_low(self) -> None:
        self._drained.set()
        self._emit(TransportEventType.DRAINED)

    def _on_closed(self, error: BaseException = None) -> None:
        if self.closed:
            return
        self.closed = True
        # wake any sender parked in wait_drained
        self._drained.set()
        if error is not None:
            self._emit(TransportEventType.ERROR, error=error)
        else:
            self._emit(TransportEventType.CLOSED)


_CLOSE = object()


def _size(data: Payload) -> int:
    if isinstance(data, str):
        return len(data.encode("utf-8"))
    return len(data)


class MemoryTransport(ChunkedTransport):
    """One end of an in-process transport pair.

    Sent payloads sit in an outgoing buffer (counted by buffered_amount)
    until the flush task hands them to the peer. `hold()` stops the flush
    so a full buffer can be observed.
    """

    def __init__(self, low_threshold: int = 0, flush_delay: float = 0.0):
        super().__init__(low_threshold)
        self.peer: Optional["MemoryTransport"] = None
        self.flush_delay = flush_delay
        self._outgoing: Deque[Any] = deque()
        self._buffered = 0
        self._pending = asyncio.Event()
        self._flowing = asyncio.Event()
        self._flowing.set()
        self._flush_task: Optional[asyncio.Task] = None
        self.sent_messages = 0

    @classmethod
    def pair(cls, low_threshold: int = 0, flush_delay: float = 0.0) -> Tuple["MemoryTransport", "MemoryTransport"]:
        a = cls(low_threshold, flush_delay)
        b = cls(low_threshold, flush_delay)
        a.peer, b.peer = b, a
        a._start()
        b._start()
        return a, b

    def _start(self) -> None:
        self._flush_task = asyncio.get_running_loop().create_task(self._flush())
        self._on_open()

    @property
    def buffered_amount(self) -> int:
        return self._buffered

    def hold(self) -> None:
        self._flowing.clear()

    def release(self) -> None:
        self._flowing.set()

    async def send(self, data: Payload) -> None:
        if self.closed:
            raise TransportClosed("Cannot send on a closed transport")
        if isinstance(data, (bytearray, memoryview)):
            data = bytes(data)
        self._outgoing.append(data)
        self._buffered += _size(data)
        self.sent_messages += 1
        self._pending.set()

    async def close(self) -> None:
        if self.closed:
            return
        self._outgoing.append(_CLOSE)
        self._pending.set()
        self._flowing.set()
        self._on_closed()

    async def _flush(self) -> None:
        while True:
            await self._pending.wait()
            await self._flowing.wait()
            if not self._outgoing:
                self._pending.clear()
                continue
            if self.flush_delay:
                await asyncio.sleep(self.flush_delay)
            else:
                await asyncio.sleep(0)
            item = self._outgoing.popleft()
            if item is _CLOSE:
                self.peer._on_closed()
                return
            was_above = self._buffered > self._low_threshold
            self._buffered -= _size(item)
            self.peer._emit(TransportEventType.MESSAGE, item)
            if was_above and self._buffered <= self._low_threshold:
                self._on_buffer_low()

    def fail(self, error: BaseException) -> None:
        """Simulate a transport error on both ends."""
        self._outgoing.clear()
        self._buffered = 0
        if self._flush_task is not None:
            self._flush_task.cancel()
        self._on_closed(error)
        if self.peer is not None:
            self.peer._on_closed(error)


class DataChannelTransport(ChunkedTransport):
    """Adapter over an aiortc style RTCDataChannel.

    The channel must expose `send`, `close`, `readyState`, `bufferedAmount`,
    `bufferedAmountLowThreshold` and `on(event, handler)`.
    """

    def __init__(self, channel, low_threshold: int = 0):
        super().__init__(low_threshold)
        self.channel = channel
        channel.bufferedAmountLowThreshold = low_threshold
        channel.on("open", self._on_open)
        channel.on("message", self._on_message)
        channel.on("bufferedamountlow", self._on_buffer_low)
        channel.on("close", self._on_closed)
        channel.on("error", self._on_error)
        if getattr(channel, "readyState", None) == "open":
            self._on_open()

    @ChunkedTransport.low_threshold.setter
    def low_threshold(self, value: int) -> None:
        self._low_threshold = value
        self.channel.bufferedAmountLowThreshold = value

    @property
    def buffered_amount(self) -> int:
        return self.channel.bufferedAmount

    def _on_message(self, message: Payload) -> None:
        self._emit(TransportEventType.MESSAGE, message)

    def _on_error(self, error: BaseException) -> None:
        logger.error(f"❌ Data channel {getattr(self.channel, 'label', '')} error: {error}")
        self._on_closed(error)

    async def send(self, data: Payload) -> None:
        if self.closed or getattr(self.channel, "readyState", "open") != "open":
            raise TransportClosed("Data channel is not open")
        self.channel.send(data)

    async def close(self) -> None:
        if not self.closed:
            self.channel.close()
            self._on_closed()
