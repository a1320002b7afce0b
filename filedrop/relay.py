import logging
from collections import deque
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Deque, Dict, Iterable, Optional, Union

from pydantic import ValidationError

from .config import Settings, get_settings
from .errors import FileDropError, TargetNotFound
from .models import (
    CreateRoom,
    GetPublicRooms,
    JoinRoom,
    LeaveRoom,
    PeerSignal,
    PublicRooms,
    RoomCreated,
    UserInfo,
    UserListUpdate,
    Visibility,
    Welcome,
    parse_client_message,
)
from .room_registry import RoomRegistry
from .websocket_manager import ConnectionManager, SignalingChannel

logger = logging.getLogger(__name__)


class SignalingRelay:
    """Interprets client messages against the RoomRegistry and routes
    offer/answer/candidate payloads between members of the same room."""

    def __init__(
        self,
        registry: RoomRegistry,
        connections: Optional[ConnectionManager] = None,
        settings: Optional[Settings] = None,
    ):
        self.registry = registry
        self.connections = connections or ConnectionManager()
        self.settings = settings or get_settings()
        # connection_id -> UserInfo
        self.members: Dict[str, UserInfo] = {}
        self.target_not_found = 0
        self.routing_failures: Deque[TargetNotFound] = deque(maxlen=100)

    async def connect(self, channel: SignalingChannel, username: Optional[str] = None) -> UserInfo:
        member = UserInfo(
            id=channel.connection_id,
            username=username or f"{self.settings.username_prefix}{channel.connection_id[:4]}",
        )
        self.connections.connect(channel)
        self.members[member.id] = member
        await self.connections.send_personal_message(member.id, Welcome(id=member.id, username=member.username).dump())
        return member

    async def disconnect(self, connection_id: str) -> None:
        """Leave the current room (broadcasting to the rest) and drop the channel."""
        await self._leave_current_room(connection_id)
        channel = self.connections.disconnect(connection_id)
        self.members.pop(connection_id, None)
        if channel is not None:
            try:
                await channel.close()
            except Exception as e:
                logger.debug(f"Closing channel {connection_id} failed: {e}")

    async def handle_raw(self, connection_id: str, raw: Union[str, bytes]) -> None:
        try:
            message = parse_client_message(raw)
        except ValidationError as e:
            logger.warning(f"⚠️ Dropping malformed message from {connection_id}: {e.error_count()} error(s)")
            return
        await self.handle_message(connection_id, message)

    async def handle_message(self, connection_id: str, message) -> None:
        member = self.members.get(connection_id)
        if member is None:
            logger.warning(f"❌ Message from unknown connection {connection_id}")
            return

        logger.info(f"📨 Received {message.type} from {connection_id}")
        try:
            if isinstance(message, CreateRoom):
                await self._create_room(member, message)
            elif isinstance(message, JoinRoom):
                await self._join_room(member, message.room_id)
            elif isinstance(message, LeaveRoom):
                await self._leave_current_room(member.id)
            elif isinstance(message, GetPublicRooms):
                rooms = self.registry.list_public_rooms()
                await self.connections.send_personal_message(member.id, PublicRooms(rooms=list(rooms)).dump())
            elif isinstance(message, PeerSignal):
                await self._route(member, message)
        except TargetNotFound as e:
            self.target_not_found += 1
            self.routing_failures.append(e)
            logger.warning(f"❌ Target {e.target_id} not found for {message.type} from {member.id}")
            if self.settings.reply_on_missing_target:
                await self.connections.send_personal_message(member.id, e.to_message())
        except FileDropError as e:
            logger.warning(f"⚠️ {message.type} from {member.id} failed: {e.message}")
            await self.connections.send_personal_message(member.id, e.to_message())

    async def broadcast(self, users: Iterable[UserInfo], message: dict) -> int:
        successful_sends = 0
        for user in users:
            if await self.connections.send_personal_message(user.id, message):
                successful_sends += 1
        logger.info(f"📡 Broadcast {message.get('type')} complete: {successful_sends} successful sends")
        return successful_sends

    @asynccontextmanager
    async def _member_locked(self, member_id: str, target: Optional[str] = None):
        """Hold the locks of the member's current room and of `target`.

        Locks are taken in sorted order, so two members swapping rooms cannot
        deadlock. Yields the room the member is in while the locks are held.
        """
        while True:
            current = self.registry.room_of(member_id)
            async with AsyncExitStack() as stack:
                for room_id in sorted({current, target} - {None}):
                    await stack.enter_async_context(self.registry.locked(room_id))
                if self.registry.room_of(member_id) == current:
                    yield current
                    return

    async def _announce_departure(self, room_id: Optional[str], member_id: str) -> None:
        if room_id is None or room_id not in self.registry:
            return
        if self.registry.is_member(room_id, member_id):
            return
        users = self.registry.members(room_id)
        await self.broadcast(users, UserListUpdate(users=list(users)).dump())

    async def _create_room(self, member: UserInfo, message: CreateRoom) -> None:
        visibility = Visibility.PUBLIC if message.is_public else Visibility.PRIVATE
        target = None if message.is_public else message.room_id
        async with self._member_locked(member.id, target) as previous:
            # raises before detaching the member from previous
            room_id, users = self.registry.create_room(visibility, member, message.room_id)
            await self.connections.send_personal_message(
                member.id, RoomCreated(room_id=room_id, users=list(users)).dump()
            )
            await self._announce_departure(previous, member.id)

    async def _join_room(self, member: UserInfo, room_id: str) -> None:
        async with self._member_locked(member.id, room_id) as previous:
            users = self.registry.join_room(room_id, member)
            await self._announce_departure(previous, member.id)
            await self.broadcast(users, UserListUpdate(users=list(users)).dump())

    async def _leave_current_room(self, member_id: str) -> None:
        async with self._member_locked(member_id) as room_id:
            if room_id is None:
                return
            result = self.registry.leave_room(member_id)
            if result is not None and not result.room_deleted:
                await self.broadcast(result.users, UserListUpdate(users=list(result.users)).dump())

    async def _route(self, sender: UserInfo, signal: PeerSignal) -> None:
        room_id = self.registry.room_of(sender.id)
        if room_id is None:
            raise TargetNotFound(signal.to, None)

        async with self.registry.locked(room_id):
            if not self.registry.is_member(room_id, signal.to):
                raise TargetNotFound(signal.to, room_id)
            # never trust a client supplied "from"
            forwarded = signal.model_copy(update={"from_": sender.id})
            delivered = await self.connections.send_personal_message(signal.to, forwarded.dump())

        if delivered:
            logger.info(f"🔄 Forwarded {signal.type} from {sender.id} to {signal.to}")
        else:
            logger.error(f"❌ Failed to deliver {signal.type} from {sender.id} to {signal.to}")

    def debug_info(self) -> dict:
        info = self.registry.stats()
        info["active_connections"] = list(self.connections.active_connections)
        info["total_connections"] = len(self.connections)
        info["target_not_found"] = self.target_not_found
        return info
