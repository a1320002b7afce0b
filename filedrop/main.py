from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
import uuid
import logging

from .config import get_settings
from .errors import RoomNotFound
from .relay import SignalingRelay
from .room_registry import RoomRegistry
from .websocket_manager import ConnectionManager, WebSocketChannel

settings = get_settings()

# Configure logging
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


def create_app(relay: SignalingRelay = None) -> FastAPI:
    if relay is None:
        relay = SignalingRelay(
            RoomRegistry(public_id_length=settings.public_room_id_length),
            ConnectionManager(),
            settings,
        )

    app = FastAPI(title="filedrop signaling relay", version="1.0.0")
    app.state.relay = relay

    @app.get("/health")
    async def health():
        return {"status": "ok", "connections": len(relay.connections), "rooms": len(relay.registry)}

    @app.get("/api/rooms/public")
    async def get_public_rooms():
        """List public rooms"""
        return {"rooms": list(relay.registry.list_public_rooms())}

    @app.get("/api/rooms/{room_id}/users")
    async def get_room_users(room_id: str):
        """Get users in a specific room"""
        try:
            users = relay.registry.members(room_id)
        except RoomNotFound as e:
            raise HTTPException(status_code=404, detail=e.message)
        return {"room_id": room_id, "users": [u.model_dump() for u in users]}

    @app.get("/api/debug")
    async def debug_info():
        """Get server debug information"""
        return relay.debug_info()

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Signaling connection for one browser peer"""
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        member = await relay.connect(WebSocketChannel(connection_id, websocket))
        logger.info(f"🔌 WebSocket connected: {connection_id} ({member.username})")

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    logger.info(f"🔌 WebSocket disconnected: {connection_id}")
                    break
                data = message.get("text")
                if data is None:
                    data = message.get("bytes")
                if data is not None:
                    await relay.handle_raw(connection_id, data)
        except WebSocketDisconnect:
            logger.info(f"🔌 WebSocket disconnected: {connection_id}")
        except Exception as e:
            logger.error(f"❌ WebSocket error for {connection_id}: {e}")
        finally:
            await relay.disconnect(connection_id)

    return app


app = create_app()


def run():
    import uvicorn
    uvicorn.run("filedrop.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
