from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class UserInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    username: str


class Room(BaseModel):
    room_id: str
    visibility: Visibility
    host: str
    members: Dict[str, UserInfo] = {}

    @property
    def is_public(self) -> bool:
        return self.visibility is Visibility.PUBLIC

    def snapshot(self) -> Tuple[UserInfo, ...]:
        """Immutable copy of the membership, in join order."""
        return tuple(self.members.values())


# ---------------------------------------------------------------------------
# Signaling wire messages (client <-> relay)
# ---------------------------------------------------------------------------

class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class CreateRoom(WireModel):
    type: Literal["create-room"] = "create-room"
    is_public: bool = Field(default=False, alias="isPublic")
    room_id: Optional[str] = Field(default=None, alias="roomId")


class JoinRoom(WireModel):
    type: Literal["join-room"] = "join-room"
    room_id: str = Field(alias="roomId")


class LeaveRoom(WireModel):
    type: Literal["leave-room"] = "leave-room"


class GetPublicRooms(WireModel):
    type: Literal["get-public-rooms"] = "get-public-rooms"


class PeerSignal(WireModel):
    """offer / answer / ice-candidate / generic signal routed to one peer.

    The sdp and candidate payloads are opaque and travel as extra fields.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: Literal["offer", "answer", "ice-candidate", "signal"]
    to: str
    from_: Optional[str] = Field(default=None, alias="from")


ClientMessage = Annotated[
    Union[CreateRoom, JoinRoom, LeaveRoom, GetPublicRooms, PeerSignal],
    Field(discriminator="type"),
]


class RoomCreated(WireModel):
    type: Literal["room-created"] = "room-created"
    room_id: str = Field(alias="roomId")
    users: List[UserInfo]


class UserListUpdate(WireModel):
    type: Literal["user-list-update"] = "user-list-update"
    users: List[UserInfo]


class PublicRooms(WireModel):
    type: Literal["public-rooms"] = "public-rooms"
    rooms: List[str]


class Welcome(WireModel):
    type: Literal["welcome"] = "welcome"
    id: str
    username: str


class ErrorMessage(WireModel):
    type: Literal["error"] = "error"
    code: str
    message: str


ServerMessage = Annotated[
    Union[Welcome, RoomCreated, UserListUpdate, PublicRooms, ErrorMessage, PeerSignal],
    Field(discriminator="type"),
]

_client_adapter = TypeAdapter(ClientMessage)
_server_adapter = TypeAdapter(ServerMessage)


def parse_client_message(raw: Union[str, bytes]):
    """Raises pydantic.ValidationError on malformed JSON or an unknown type."""
    return _client_adapter.validate_json(raw)


def parse_server_message(raw: Union[str, bytes]):
    return _server_adapter.validate_json(raw)


# ---------------------------------------------------------------------------
# Peer-to-peer control messages (over the data channel)
# ---------------------------------------------------------------------------

class FileMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str
    size: int = Field(ge=0)
    content_type: str = Field(default="application/octet-stream", alias="type")


class FileMetadataMessage(WireModel):
    type: Literal["file-metadata"] = "file-metadata"
    metadata: FileMetadata


class TransferProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    bytes_transferred: int
    total_bytes: int
    percentage: float

    @classmethod
    def of(cls, transferred: int, total: int) -> "TransferProgress":
        percentage = 100.0 if total == 0 else (transferred / total) * 100
        return cls(bytes_transferred=transferred, total_bytes=total, percentage=percentage)

    @property
    def complete(self) -> bool:
        return self.bytes_transferred == self.total_bytes
