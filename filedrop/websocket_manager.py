import json
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)


class SignalingChannel(ABC):
    """One relay-side connection to a single remote client."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        self.closed = False

    @abstractmethod
    async def send(self, message: dict) -> None:
        ...

    async def close(self) -> None:
        self.closed = True


class WebSocketChannel(SignalingChannel):
    """SignalingChannel backed by a FastAPI WebSocket."""

    def __init__(self, connection_id: str, websocket: WebSocket):
        super().__init__(connection_id)
        self.websocket = websocket

    async def send(self, message: dict) -> None:
        await self.websocket.send_text(json.dumps(message))

    async def close(self) -> None:
        if (
            not self.closed
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        ):
            await self.websocket.close()
        self.closed = True


class ConnectionManager:
    def __init__(self):
        # connection_id -> SignalingChannel
        self.active_connections: Dict[str, SignalingChannel] = {}

    def connect(self, channel: SignalingChannel) -> None:
        self.active_connections[channel.connection_id] = channel
        logger.info(f"🔌 Channel connected: {channel.connection_id}")
        logger.info(f"📊 Total connections: {len(self.active_connections)}")

    def disconnect(self, connection_id: str) -> Optional[SignalingChannel]:
        channel = self.active_connections.pop(connection_id, None)
        if channel is not None:
            logger.info(f"❌ Channel disconnected: {connection_id}")
            logger.info(f"📊 Total connections: {len(self.active_connections)}")
        return channel

    def get(self, connection_id: str) -> Optional[SignalingChannel]:
        return self.active_connections.get(connection_id)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self.active_connections

    def __len__(self) -> int:
        return len(self.active_connections)

    async def send_personal_message(self, connection_id: str, message: dict) -> bool:
        """Send to one channel. A channel that fails to send is dropped."""
        channel = self.active_connections.get(connection_id)
        if channel is None:
            logger.warning(f"❌ Channel {connection_id} not found in active connections")
            return False
        try:
            await channel.send(message)
            logger.debug(f"✅ Sent {message.get('type', 'unknown')} to {connection_id}")
            return True
        except Exception as e:
            logger.error(f"❌ Error sending message to {connection_id}: {e}")
            self.disconnect(connection_id)
            return False
