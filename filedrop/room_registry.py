import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .errors import InvalidRoomId, RoomIdConflict, RoomNotFound
from .models import Room, UserInfo, Visibility

logger = logging.getLogger(__name__)

Snapshot = Tuple[UserInfo, ...]


@dataclass(frozen=True)
class LeaveResult:
    room_id: str
    users: Snapshot
    room_deleted: bool


class RoomRegistry:
    """Authoritative room -> membership mapping.

    Operations are synchronous and never touch the network, so each one is
    atomic on the event loop; the registry belongs to a single loop and is
    not thread safe. Callers that
    need "mutate, snapshot, then broadcast" to be atomic for a room wrap the
    whole sequence in ``async with registry.locked(room_id)``.
    """

    def __init__(self, public_id_length: int = 6):
        self.public_id_length = public_id_length
        self._rooms: Dict[str, Room] = {}
        # member_id -> room_id
        self._member_rooms: Dict[str, str] = {}
        # insertion ordered set of public room ids
        self._public: Dict[str, None] = {}
        # room_id -> [lock, holders + waiters]
        self._room_locks: Dict[str, list] = {}

    @asynccontextmanager
    async def locked(self, room_id: str):
        """Serialize all work on one room across tasks."""
        entry = self._room_locks.get(room_id)
        if entry is None:
            entry = self._room_locks[room_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._room_locks.pop(room_id, None)

    def _new_public_id(self) -> str:
        while True:
            room_id = uuid.uuid4().hex[: self.public_id_length]
            if room_id not in self._rooms:
                return room_id

    def check_private_id(self, desired_id: Optional[str]) -> str:
        """Normalized private room id, or InvalidRoomId / RoomIdConflict."""
        room_id = (desired_id or "").strip()
        if not room_id:
            raise InvalidRoomId("A private room needs a room id")
        if room_id in self._rooms:
            raise RoomIdConflict(room_id)
        return room_id

    def create_room(
        self, visibility: Visibility, member: UserInfo, desired_id: Optional[str] = None
    ) -> Tuple[str, Snapshot]:
        if visibility is Visibility.PUBLIC:
            room_id = self._new_public_id()
        else:
            room_id = self.check_private_id(desired_id)

        self._detach(member.id)
        room = Room(room_id=room_id, visibility=visibility, host=member.id)
        room.members[member.id] = member
        self._rooms[room_id] = room
        self._member_rooms[member.id] = room_id
        if room.is_public:
            self._public[room_id] = None

        logger.info(f"🏠 Created {visibility.value} room {room_id} for {member.username} ({member.id})")
        return room_id, room.snapshot()

    def join_room(self, room_id: str, member: UserInfo) -> Snapshot:
        room = self._rooms.get(room_id)
        if room is None:
            raise RoomNotFound(room_id)

        current = self._member_rooms.get(member.id)
        if current is not None and current != room_id:
            self._detach(member.id)

        room.members[member.id] = member
        self._member_rooms[member.id] = room_id
        logger.info(f"🏠 User {member.username} ({member.id}) joined room {room_id}")
        logger.debug(f"📋 Room {room_id} users: {[u.username for u in room.members.values()]}")
        return room.snapshot()

    def leave_room(self, member_id: str) -> Optional[LeaveResult]:
        """Idempotent. Returns None when the member was not in a room."""
        return self._detach(member_id)

    def _detach(self, member_id: str) -> Optional[LeaveResult]:
        room_id = self._member_rooms.pop(member_id, None)
        if room_id is None:
            return None
        room = self._rooms.get(room_id)
        if room is None:
            return None

        room.members.pop(member_id, None)
        logger.info(f"🚪 User {member_id} left room {room_id}")

        if not room.members:
            del self._rooms[room_id]
            self._public.pop(room_id, None)
            logger.info(f"🗑️ Removed empty room {room_id}")
            return LeaveResult(room_id=room_id, users=(), room_deleted=True)

        return LeaveResult(room_id=room_id, users=room.snapshot(), room_deleted=False)

    def list_public_rooms(self) -> Tuple[str, ...]:
        return tuple(self._public)

    def room_of(self, member_id: str) -> Optional[str]:
        return self._member_rooms.get(member_id)

    def members(self, room_id: str) -> Snapshot:
        room = self._rooms.get(room_id)
        if room is None:
            raise RoomNotFound(room_id)
        return room.snapshot()

    def is_member(self, room_id: str, member_id: str) -> bool:
        return self._member_rooms.get(member_id) == room_id

    def get_room(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)

    def stats(self) -> dict:
        rooms: Dict[str, dict] = {}
        for room_id, room in self._rooms.items():
            rooms[room_id] = {
                "visibility": room.visibility.value,
                "host": room.host,
                "users": [u.model_dump() for u in room.members.values()],
            }
        return {
            "rooms": rooms,
            "public_rooms": list(self._public),
            "total_rooms": len(self._rooms),
            "total_members": len(self._member_rooms),
        }

