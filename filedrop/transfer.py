import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Optional

from pydantic import ValidationError

from .chunking import CHUNK_SIZE, ChunkAssembler, FileSource, ReceivedFile, iter_chunks
from .errors import FileDropError, OutOfOrderChunk, SizeMismatch, TransportClosed
from .models import FileMetadata, FileMetadataMessage, TransferProgress
from .transport import ChunkedTransport, Payload, TransportEventType

logger = logging.getLogger(__name__)

BUFFER_THRESHOLD = 1024 * 1024


class TransferState(str, Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    OPEN = "open"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"


class Direction(str, Enum):
    SEND = "send"
    RECEIVE = "receive"


def _noop(*args: Any) -> None:
    pass


@dataclass
class TransferCallbacks:
    """Every callback receives the session (sender or receiver) first."""

    on_state_change: Callable[[Any, TransferState], None] = _noop
    on_progress: Callable[[Any, TransferProgress], None] = _noop
    on_file_received: Callable[[Any, ReceivedFile], None] = _noop
    on_file_sent: Callable[[Any, FileMetadata], None] = _noop
    on_error: Callable[[Any, FileDropError], None] = _noop


class _StateMixin:
    direction: Direction

    def _set_state(self, state: TransferState) -> None:
        if state == self.state:
            return
        logger.debug(f"🔁 {self.direction.value} session with {self.remote_id}: {self.state.value} -> {state.value}")
        self.state = state
        self.callbacks.on_state_change(self, state)

    def _emit_progress(self) -> None:
        progress = TransferProgress.of(self.bytes_transferred, self.metadata.size)
        self.callbacks.on_progress(self, progress)


class ReceiveSession(_StateMixin):
    """Receiver-side shadow of a TransferSession: metadata, then chunks."""

    direction = Direction.RECEIVE

    def __init__(self, remote_id: str, callbacks: TransferCallbacks):
        self.remote_id = remote_id
        self.callbacks = callbacks
        self.state = TransferState.IDLE
        self.assembler = ChunkAssembler()

    @property
    def metadata(self) -> Optional[FileMetadata]:
        return self.assembler.metadata

    @property
    def bytes_transferred(self) -> int:
        return self.assembler.received

    def handle(self, data: Payload) -> None:
        if isinstance(data, str):
            self._handle_control(data)
        else:
            self._handle_chunk(bytes(data))

    def _handle_control(self, text: str) -> None:
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            logger.warning(f"⚠️ Dropping unparsable control message from {self.remote_id}")
            return
        if not isinstance(message, dict) or message.get("type") != "file-metadata":
            logger.warning(f"⚠️ Ignoring control message {message!r:.80} from {self.remote_id}")
            return
        try:
            metadata = FileMetadata.model_validate(message.get("metadata"))
        except ValidationError as e:
            logger.warning(f"⚠️ Dropping invalid file metadata from {self.remote_id}: {e.error_count()} error(s)")
            return

        if self.state == TransferState.TRANSFERRING:
            # a new file started before the previous one was complete
            self.fail(SizeMismatch(self.assembler.metadata.size, self.assembler.received))

        logger.info(f"📁 Receiving {metadata.name} ({metadata.size} bytes) from {self.remote_id}")
        self.assembler.start(metadata)
        self._set_state(TransferState.TRANSFERRING)
        self._emit_progress()
        if metadata.size == 0:
            self._complete()

    def _handle_chunk(self, chunk: bytes) -> None:
        if not self.assembler.active:
            self.fail(OutOfOrderChunk(f"Chunk of {len(chunk)} bytes from {self.remote_id} before file metadata"))
            return
        try:
            done = self.assembler.add(chunk)
        except SizeMismatch as e:
            self.fail(e)
            return
        self._emit_progress()
        if done:
            self._complete()

    def _complete(self) -> None:
        received = self.assembler.finish()
        self._set_state(TransferState.COMPLETED)
        logger.info(f"✅ Received {received.metadata.name} from {self.remote_id}")
        self.callbacks.on_file_received(self, received)
        self._set_state(TransferState.IDLE)

    def fail(self, error: FileDropError) -> None:
        logger.error(f"❌ Receive from {self.remote_id} failed: {error.message}")
        self.assembler.reset()
        self._set_state(TransferState.FAILED)
        self.callbacks.on_error(self, error)
        self._set_state(TransferState.IDLE)


class TransferSession(_StateMixin):
    """Outbound transfers to one remote peer over one transport.

    Files requested before the transport is open, or while another file is
    being sent, wait in a FIFO queue. Only one send loop runs at a time.
    """

    direction = Direction.SEND

    def __init__(
        self,
        local_id: str,
        remote_id: str,
        callbacks: Optional[TransferCallbacks] = None,
        chunk_size: int = CHUNK_SIZE,
        buffer_threshold: int = BUFFER_THRESHOLD,
    ):
        self.local_id = local_id
        self.remote_id = remote_id
        self.callbacks = callbacks or TransferCallbacks()
        self.chunk_size = chunk_size
        self.buffer_threshold = buffer_threshold

        self.state = TransferState.IDLE
        self.metadata: Optional[FileMetadata] = None
        self.bytes_transferred = 0
        self.queue: Deque[FileSource] = deque()
        self.transport: Optional[ChunkedTransport] = None
        self.receiver = ReceiveSession(remote_id, self.callbacks)

        self._pump_task: Optional[asyncio.Task] = None
        self._send_task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def busy(self) -> bool:
        return self._send_task is not None and not self._send_task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def begin_negotiation(self) -> None:
        if self.state == TransferState.IDLE and self.transport is None:
            self._set_state(TransferState.NEGOTIATING)

    def attach(self, transport: ChunkedTransport) -> None:
        """Take ownership of a transport and start consuming its events."""
        if self.transport is not None and not self.transport.closed:
            raise RuntimeError(f"Session with {self.remote_id} already has a transport")
        self.transport = transport
        self._cancelled = False
        transport.low_threshold = self.buffer_threshold
        if self.state == TransferState.IDLE:
            self._set_state(TransferState.NEGOTIATING)
        self._pump_task = asyncio.get_running_loop().create_task(self._pump(transport))

    async def _pump(self, transport: ChunkedTransport) -> None:
        async for event in transport.events():
            if event.type is TransportEventType.OPEN:
                self._on_open()
            elif event.type is TransportEventType.MESSAGE:
                self.receiver.handle(event.data)
            elif event.type in (TransportEventType.CLOSED, TransportEventType.ERROR):
                self._on_transport_closed(transport, event.error)

    def _on_open(self) -> None:
        logger.info(f"🔗 Data channel with {self.remote_id} open")
        if self.state in (TransferState.IDLE, TransferState.NEGOTIATING):
            self._set_state(TransferState.OPEN)
        self._kick()

    def _on_transport_closed(self, transport: ChunkedTransport, error: Optional[BaseException]) -> None:
        logger.info(f"🔌 Data channel with {self.remote_id} closed" + (f": {error}" if error else ""))
        if self.receiver.state == TransferState.TRANSFERRING:
            self.receiver.fail(TransportClosed("Data channel closed during receive"))
        if transport is self.transport:
            self.transport = None
        # a running send loop notices on its next iteration
        if not self.busy:
            self._set_state(TransferState.IDLE)

    async def close(self) -> None:
        """Stop sending, drop the queue and close the transport."""
        self._cancelled = True
        self.queue.clear()
        transport = self.transport
        if transport is not None:
            await transport.close()
        if self._send_task is not None:
            await asyncio.gather(self._send_task, return_exceptions=True)
        if self._pump_task is not None:
            await asyncio.gather(self._pump_task, return_exceptions=True)
        self.transport = None
        self._set_state(TransferState.IDLE)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send_file(self, source: FileSource) -> None:
        """Queue a file. It is sent once the transport is open and earlier files are done."""
        self.queue.append(source)
        logger.info(f"📤 Queued {source.name} ({source.size} bytes) for {self.remote_id} ({len(self.queue)} waiting)")
        if self.transport is None:
            self.begin_negotiation()
        else:
            self._kick()

    def _kick(self) -> None:
        if self.busy or not self.queue:
            return
        if self.transport is None or not self.transport.is_open:
            return
        self._send_task = asyncio.get_running_loop().create_task(self._send_loop())

    async def _send_loop(self) -> None:
        while self.queue and not self._cancelled:
            transport = self.transport
            if transport is None or not transport.is_open:
                break
            source = self.queue.popleft()
            try:
                await self._send_one(transport, source)
            except FileDropError as e:
                self._fail(e)
            self._reset()
        if self.transport is None or self.transport.closed:
            self._set_state(TransferState.IDLE)

    async def _send_one(self, transport: ChunkedTransport, source: FileSource, offset: int = 0) -> None:
        self.metadata = source.metadata
        self.bytes_transferred = offset
        self._set_state(TransferState.TRANSFERRING)
        logger.info(f"📁 Sending {source.name} ({source.size} bytes) to {self.remote_id}")

        await transport.send(FileMetadataMessage(metadata=self.metadata).model_dump_json(by_alias=True))

        for chunk in iter_chunks(source, self.chunk_size, offset):
            if self._cancelled or transport.closed:
                raise TransportClosed(f"Transfer of {source.name} to {self.remote_id} interrupted")
            if transport.buffered_amount > self.buffer_threshold:
                await transport.wait_drained()
            await transport.send(chunk)
            self.bytes_transferred += len(chunk)
            self._emit_progress()

        if source.size == 0:
            self._emit_progress()
        self._set_state(TransferState.COMPLETED)
        logger.info(f"✅ Sent {source.name} to {self.remote_id}")
        self.callbacks.on_file_sent(self, self.metadata)

    def _fail(self, error: FileDropError) -> None:
        logger.error(f"❌ Send to {self.remote_id} failed: {error.message}")
        self._set_state(TransferState.FAILED)
        self.callbacks.on_error(self, error)

    def _reset(self) -> None:
        self._set_state(TransferState.IDLE)
        if self.transport is not None and self.transport.is_open and not self._cancelled:
            self._set_state(TransferState.OPEN)

    async def wait_idle(self) -> None:
        """Wait until the queue has been worked off."""
        while self.busy:
            await asyncio.gather(self._send_task, return_exceptions=True)

    async def wait_closed(self) -> None:
        """Wait until the current transport has delivered its final event."""
        if self._pump_task is not None:
            await asyncio.gather(self._pump_task, return_exceptions=True)
