from __future__ import annotations

from .room_types import ErrorCode


class RoomError(Exception):
    code: ErrorCode = "unavailable"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class Unauthenticated(RoomError):
    code: ErrorCode = "unauthenticated"


class InvalidArgument(RoomError):
    code: ErrorCode = "invalid-argument"


class PermissionDenied(RoomError):
    code: ErrorCode = "permission-denied"


class NotFound(RoomError):
    code: ErrorCode = "not-found"


class Conflict(RoomError):
    code: ErrorCode = "conflict"


class AlreadyExists(Conflict):
    code: ErrorCode = "already-exists"


class Transient(RoomError):
    code: ErrorCode = "unavailable"
    retryable = True
