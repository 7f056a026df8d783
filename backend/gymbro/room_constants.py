from __future__ import annotations

from .config import settings
from .room_types import RoomPrivacy, RoomStatus

ROOMS_COLLECTION = "gymbro_rooms"
MEMBERS_COLLECTION = "members"
METRICS_COLLECTION = "activeMetrics"
WORKOUT_LOG_COLLECTION = "workoutLog"
INVITES_COLLECTION = "invites"

ROOM_CODE_CHARS = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ROOM_CODE_LENGTH = 6
ROOM_CODE_ATTEMPTS = 24
ROOM_NAME_MAX_LENGTH = 50
DEFAULT_MAX_CAPACITY = settings.room_default_capacity
MIN_CAPACITY = 2
MAX_CAPACITY = 50
MY_ACTIVE_ROOMS_LIMIT = 20

DEFAULT_DISPLAY_NAME = "Utente"
ARCHIVED_REASON_HOST_LEFT = "host_left"

OPEN_ROOM_STATUSES: tuple[RoomStatus, ...] = ("lobby", "active")
TERMINAL_ROOM_STATUSES: tuple[RoomStatus, ...] = ("finished", "archived")
ROOM_PRIVACY_LEVELS: tuple[RoomPrivacy, ...] = ("friends_only", "invite_only", "public")
DEFAULT_PRIVACY: RoomPrivacy = "friends_only"

STREAM_TYPES = ("room", "members", "metrics", "log")

BADGE_VOLUME_KING = "volume-king"
BADGE_TOP_THREE = "top-three"
