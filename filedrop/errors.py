class FileDropError(Exception):
    """Base error. `code` is what goes on the wire in an `error` message."""

    code = "error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_message(self) -> dict:
        return {"type": "error", "code": self.code, "message": self.message}


class RoomNotFound(FileDropError):
    code = "room-not-found"

    def __init__(self, room_id: str):
        super().__init__(f"Room {room_id} does not exist")
        self.room_id = room_id


class RoomIdConflict(FileDropError):
    code = "room-id-conflict"

    def __init__(self, room_id: str):
        super().__init__(f"Room {room_id} already exists")
        self.room_id = room_id


class InvalidRoomId(FileDropError):
    code = "invalid-room-id"


class TargetNotFound(FileDropError):
    code = "target-not-found"

    def __init__(self, target_id: str, room_id: str = None):
        super().__init__(f"User {target_id} is not in room {room_id}")
        self.target_id = target_id
        self.room_id = room_id


class OutOfOrderChunk(FileDropError):
    code = "out-of-order-chunk"


class SizeMismatch(FileDropError):
    code = "size-mismatch"

    def __init__(self, expected: int, received: int):
        super().__init__(f"Expected {expected} bytes, received {received}")
        self.expected = expected
        self.received = received


class TransportClosed(FileDropError):
    code = "transport-closed"


class MaxReconnectAttemptsExceeded(FileDropError):
    code = "max-reconnect-attempts-exceeded"

    def __init__(self, attempts: int):
        super().__init__(f"Max reconnection attempts reached ({attempts})")
        self.attempts = attempts
