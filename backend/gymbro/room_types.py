from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

RoomStatus = Literal["lobby", "active", "finished", "archived"]
RoomPrivacy = Literal["friends_only", "invite_only", "public"]
MemberRole = Literal["host", "member"]
InviteStatus = Literal["pending", "accepted", "declined"]
SessionStatus = Literal["loading", "lobby", "active", "finished"]
StreamType = Literal["room", "members", "metrics", "log"]
ErrorCode = Literal[
    "unauthenticated",
    "invalid-argument",
    "permission-denied",
    "not-found",
    "conflict",
    "already-exists",
    "unavailable",
]


def _int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _number(value: Any) -> float | int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return value


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


@dataclass
class Room:
    room_id: str
    host_id: str
    name: str
    status: RoomStatus
    max_capacity: int
    privacy: RoomPrivacy
    workout_id: str | None = None
    created_at: int | None = None
    started_at: int | None = None
    finished_at: int | None = None
    archived_at: int | None = None
    archived_reason: str | None = None
    last_activity: int | None = None
    final_leaderboard: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_document(cls, room_id: str, data: dict[str, Any]) -> "Room":
        final_leaderboard = data.get("finalLeaderboard")
        return cls(
            room_id=room_id,
            host_id=str(data.get("hostId") or ""),
            name=str(data.get("name") or ""),
            status=data.get("status") or "lobby",
            max_capacity=_int(data.get("maxCapacity"), 0),
            privacy=data.get("privacy") or "friends_only",
            workout_id=_optional_str(data.get("workoutId")),
            created_at=_optional_int(data.get("createdAt")),
            started_at=_optional_int(data.get("startedAt")),
            finished_at=_optional_int(data.get("finishedAt")),
            archived_at=_optional_int(data.get("archivedAt")),
            archived_reason=_optional_str(data.get("archivedReason")),
            last_activity=_optional_int(data.get("lastActivity")),
            final_leaderboard=list(final_leaderboard) if isinstance(final_leaderboard, list) else [],
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "roomId": self.room_id,
            "hostId": self.host_id,
            "name": self.name,
            "status": self.status,
            "maxCapacity": self.max_capacity,
            "privacy": self.privacy,
            "workoutId": self.workout_id,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "archivedAt": self.archived_at,
            "archivedReason": self.archived_reason,
            "lastActivity": self.last_activity,
            "finalLeaderboard": self.final_leaderboard,
        }


@dataclass
class Member:
    uid: str
    display_name: str
    role: MemberRole
    ready_status: bool = False
    photo_url: str | None = None
    joined_at: int | None = None

    @classmethod
    def from_document(cls, uid: str, data: dict[str, Any]) -> "Member":
        return cls(
            uid=uid,
            display_name=str(data.get("displayName") or ""),
            role="host" if data.get("role") == "host" else "member",
            ready_status=bool(data.get("readyStatus")),
            photo_url=_optional_str(data.get("photoUrl")),
            joined_at=_optional_int(data.get("joinedAt")),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "displayName": self.display_name,
            "photoUrl": self.photo_url,
            "readyStatus": self.ready_status,
            "role": self.role,
            "joinedAt": self.joined_at,
        }


@dataclass
class ActiveMetrics:
    uid: str
    current_exercise: str | None = None
    current_set: int = 0
    total_volume: float | int = 0
    total_sets: int = 0
    last_set_weight: float | int = 0
    last_set_reps: int = 0
    last_update: int | None = None

    @classmethod
    def from_document(cls, uid: str, data: dict[str, Any]) -> "ActiveMetrics":
        return cls(
            uid=uid,
            current_exercise=_optional_str(data.get("currentExercise")),
            current_set=_int(data.get("currentSet")),
            total_volume=_number(data.get("totalVolume")),
            total_sets=_int(data.get("totalSets")),
            last_set_weight=_number(data.get("lastSetWeight")),
            last_set_reps=_int(data.get("lastSetReps")),
            last_update=_optional_int(data.get("lastUpdate")),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "currentExercise": self.current_exercise,
            "currentSet": self.current_set,
            "totalVolume": self.total_volume,
            "totalSets": self.total_sets,
            "lastSetWeight": self.last_set_weight,
            "lastSetReps": self.last_set_reps,
            "lastUpdate": self.last_update,
        }


@dataclass
class WorkoutLogEntry:
    log_id: str
    uid: str
    exercise: str
    set: int
    reps: int
    weight: float | int
    volume: float | int
    timestamp: int | None = None

    @classmethod
    def from_document(cls, log_id: str, data: dict[str, Any]) -> "WorkoutLogEntry":
        return cls(
            log_id=log_id,
            uid=str(data.get("uid") or ""),
            exercise=str(data.get("exercise") or ""),
            set=_int(data.get("set")),
            reps=_int(data.get("reps")),
            weight=_number(data.get("weight")),
            volume=_number(data.get("volume")),
            timestamp=_optional_int(data.get("timestamp")),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "logId": self.log_id,
            "uid": self.uid,
            "exercise": self.exercise,
            "set": self.set,
            "reps": self.reps,
            "weight": self.weight,
            "volume": self.volume,
            "timestamp": self.timestamp,
        }


@dataclass
class Invite:
    invite_id: str
    room_id: str
    invitee_uid: str
    invited_by: str
    room_name: str
    status: InviteStatus = "pending"
    created_at: int | None = None

    @classmethod
    def from_document(cls, invite_id: str, room_id: str, data: dict[str, Any]) -> "Invite":
        return cls(
            invite_id=invite_id,
            room_id=room_id,
            invitee_uid=str(data.get("inviteeUid") or ""),
            invited_by=str(data.get("invitedBy") or ""),
            room_name=str(data.get("roomName") or ""),
            status=data.get("status") or "pending",
            created_at=_optional_int(data.get("createdAt")),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "inviteId": self.invite_id,
            "roomId": self.room_id,
            "inviteeUid": self.invitee_uid,
            "invitedBy": self.invited_by,
            "roomName": self.room_name,
            "status": self.status,
            "createdAt": self.created_at,
        }


@dataclass
class LeaderboardEntry:
    uid: str
    rank: int
    total_volume: float | int
    total_sets: int = 0
    current_exercise: str | None = None
    current_set: int = 0
    last_set_weight: float | int = 0
    last_set_reps: int = 0
    last_update: int | None = None
    display_name: str | None = None
    photo_url: str | None = None
    role: MemberRole = "member"

    def to_payload(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "rank": self.rank,
            "totalVolume": self.total_volume,
            "totalSets": self.total_sets,
            "currentExercise": self.current_exercise,
            "currentSet": self.current_set,
            "lastSetWeight": self.last_set_weight,
            "lastSetReps": self.last_set_reps,
            "lastUpdate": self.last_update,
            "displayName": self.display_name,
            "photoUrl": self.photo_url,
            "role": self.role,
        }


@dataclass(frozen=True)
class MetricDelta:
    uid: str
    volume_delta: float | int
    rank_delta: int
    is_new: bool

    def to_payload(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "volumeDelta": self.volume_delta,
            "rankDelta": self.rank_delta,
            "isNew": self.is_new,
        }


@dataclass
class RoomUpdate:
    room_id: str
    exists: bool
    room: Room | None = None


@dataclass
class MemberChanges:
    added: list[Member] = field(default_factory=list)
    modified: list[Member] = field(default_factory=list)
    removed: list[Member] = field(default_factory=list)


@dataclass
class MembersUpdate:
    room_id: str
    members: list[Member]
    changes: MemberChanges


@dataclass
class MetricsUpdate:
    room_id: str
    leaderboard: list[LeaderboardEntry]
    deltas: list[MetricDelta]
    timestamp: int


@dataclass
class WorkoutLogUpdate:
    room_id: str
    log: list[WorkoutLogEntry]


@dataclass(frozen=True)
class StreamDead:
    room_id: str
    stream: StreamType
    error: str
    retries: int


def to_jsonable(value: Any) -> Any:
    if hasattr(value, "to_payload"):
        return value.to_payload()
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


@dataclass
class ServiceResult:
    success: bool
    data: Any = None
    error: str | None = None
    code: ErrorCode | None = None

    @classmethod
    def ok(cls, data: Any = None) -> "ServiceResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: ErrorCode) -> "ServiceResult":
        return cls(success=False, error=error, code=code)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            payload["data"] = to_jsonable(self.data)
        if self.error is not None:
            payload["error"] = self.error
        if self.code is not None:
            payload["code"] = self.code
        return payload
