"""
Tests for filedrop/transport.py

MemoryTransport pairs are used directly; DataChannelTransport is exercised
against a stand-in that behaves like an aiortc RTCDataChannel.
"""

import asyncio

import pytest

from filedrop.errors import TransportClosed
from filedrop.transport import DataChannelTransport, MemoryTransport, TransportEventType


async def next_event(events, timeout=1.0):
    return await asyncio.wait_for(events.__anext__(), timeout)


class FakeDataChannel:
    def __init__(self, ready_state="connecting"):
        self.label = "files"
        self.readyState = ready_state
        self.bufferedAmount = 0
        self.bufferedAmountLowThreshold = 0
        self.handlers = {}
        self.sent = []

    def on(self, event, handler):
        self.handlers[event] = handler

    def emit(self, event, *args):
        self.handlers[event](*args)

    def send(self, data):
        self.sent.append(data)
        self.bufferedAmount += len(data)

    def close(self):
        self.readyState = "closed"


class TestMemoryTransport:
    @pytest.mark.asyncio
    async def test_delivers_in_order(self):
        a, b = MemoryTransport.pair()
        events = b.events()

        await a.send("hello")
        await a.send(b"\x01\x02")

        assert (await next_event(events)).type is TransportEventType.OPEN
        first = await next_event(events)
        second = await next_event(events)
        assert (first.type, first.data) == (TransportEventType.MESSAGE, "hello")
        assert (second.type, second.data) == (TransportEventType.MESSAGE, b"\x01\x02")
        await a.close()

    @pytest.mark.asyncio
    async def test_wait_drained_blocks_until_flushed(self):
        a, b = MemoryTransport.pair(low_threshold=10)
        a.hold()
        await a.send(b"x" * 100)
        assert a.buffered_amount == 100

        waiter = asyncio.create_task(a.wait_drained())
        await asyncio.sleep(0.01)
        assert not waiter.done()

        a.release()
        await asyncio.wait_for(waiter, 1.0)
        assert a.buffered_amount == 0
        await a.close()

    @pytest.mark.asyncio
    async def test_text_buffered_as_utf8_bytes(self):
        a, b = MemoryTransport.pair()
        a.hold()
        await a.send("é")
        await a.send("ab")
        assert a.buffered_amount == 4

        a.release()
        await asyncio.wait_for(a.wait_drained(), 1.0)
        assert a.buffered_amount == 0
        await a.close()

    @pytest.mark.asyncio
    async def test_drained_event_emitted_locally(self):
        a, b = MemoryTransport.pair(low_threshold=0)
        events = a.events()
        await a.send(b"abc")

        types = [(await next_event(events)).type for _ in range(2)]

        assert types == [TransportEventType.OPEN, TransportEventType.DRAINED]
        await a.close()

    @pytest.mark.asyncio
    async def test_close_delivers_pending_data_first(self):
        a, b = MemoryTransport.pair()
        await a.send("last words")
        await a.close()

        seen = [event async for event in b.events()]

        assert [e.type for e in seen] == [
            TransportEventType.OPEN,
            TransportEventType.MESSAGE,
            TransportEventType.CLOSED,
        ]
        assert a.closed and b.closed

    @pytest.mark.asyncio
    async def test_send_after_close(self):
        a, b = MemoryTransport.pair()
        await a.close()
        with pytest.raises(TransportClosed):
            await a.send(b"late")

    @pytest.mark.asyncio
    async def test_close_wakes_blocked_sender(self):
        a, b = MemoryTransport.pair()
        a.hold()
        await a.send(b"x" * 100)
        waiter = asyncio.create_task(a.wait_drained())
        await asyncio.sleep(0)

        await a.close()

        with pytest.raises(TransportClosed):
            await asyncio.wait_for(waiter, 1.0)

    @pytest.mark.asyncio
    async def test_fail_errors_both_ends(self):
        a, b = MemoryTransport.pair()
        boom = RuntimeError("ice failed")

        a.fail(boom)

        for transport in (a, b):
            seen = [event async for event in transport.events()]
            assert seen[-1].type is TransportEventType.ERROR
            assert seen[-1].error is boom


class TestDataChannelTransport:
    @pytest.mark.asyncio
    async def test_registers_handlers_and_threshold(self):
        channel = FakeDataChannel()
        transport = DataChannelTransport(channel, low_threshold=64)

        assert set(channel.handlers) == {"open", "message", "bufferedamountlow", "close", "error"}
        assert channel.bufferedAmountLowThreshold == 64

        transport.low_threshold = 1024
        assert channel.bufferedAmountLowThreshold == 1024
        assert transport.low_threshold == 1024

    @pytest.mark.asyncio
    async def test_send_requires_open_channel(self):
        channel = FakeDataChannel()
        transport = DataChannelTransport(channel)
        with pytest.raises(TransportClosed):
            await transport.send(b"early")

        channel.readyState = "open"
        channel.emit("open")
        await transport.send(b"ok")

        assert transport.is_open
        assert channel.sent == [b"ok"]
        assert transport.buffered_amount == 2

    @pytest.mark.asyncio
    async def test_already_open_channel(self):
        transport = DataChannelTransport(FakeDataChannel(ready_state="open"))
        event = await next_event(transport.events())
        assert event.type is TransportEventType.OPEN

    @pytest.mark.asyncio
    async def test_events_follow_channel(self):
        channel = FakeDataChannel(ready_state="open")
        transport = DataChannelTransport(channel)
        channel.emit("message", "text")
        channel.emit("message", b"bin")
        channel.emit("close")

        seen = [event async for event in transport.events()]

        assert [e.type for e in seen] == [
            TransportEventType.OPEN,
            TransportEventType.MESSAGE,
            TransportEventType.MESSAGE,
            TransportEventType.CLOSED,
        ]
        assert [e.data for e in seen[1:3]] == ["text", b"bin"]

    @pytest.mark.asyncio
    async def test_buffered_amount_low_releases_sender(self):
        channel = FakeDataChannel(ready_state="open")
        transport = DataChannelTransport(channel, low_threshold=4)
        await transport.send(b"123456789")

        waiter = asyncio.create_task(transport.wait_drained())
        await asyncio.sleep(0)
        assert not waiter.done()

        channel.bufferedAmount = 0
        channel.emit("bufferedamountlow")
        await asyncio.wait_for(waiter, 1.0)

    @pytest.mark.asyncio
    async def test_error_ends_stream(self):
        channel = FakeDataChannel(ready_state="open")
        transport = DataChannelTransport(channel)
        channel.emit("error", ConnectionError("sctp abort"))

        seen = [event async for event in transport.events()]

        assert seen[-1].type is TransportEventType.ERROR
        assert transport.closed
        with pytest.raises(TransportClosed):
            await transport.send(b"x")
