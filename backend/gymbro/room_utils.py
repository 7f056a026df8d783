from __future__ import annotations

import hashlib
import json
import logging
import random
from typing import Any

from .documents import now_ms
from .room_constants import (
    INVITES_COLLECTION,
    MEMBERS_COLLECTION,
    METRICS_COLLECTION,
    ROOM_CODE_CHARS,
    ROOM_CODE_LENGTH,
    ROOMS_COLLECTION,
    WORKOUT_LOG_COLLECTION,
)

__all__ = [
    "now_ms",
    "random_room_code",
    "sanitize_room_id",
    "mask_uid",
    "log_event",
    "room_path",
    "member_path",
    "metrics_path",
    "members_collection",
    "metrics_collection",
    "log_collection",
    "invites_collection",
    "invite_path",
    "empty_metrics",
]


def random_room_code(length: int = ROOM_CODE_LENGTH) -> str:
    return "".join(random.choice(ROOM_CODE_CHARS) for _ in range(max(4, length)))


def sanitize_room_id(raw: Any) -> str:
    if not isinstance(raw, str):
        return ""
    value = raw.strip().upper()
    if not value or any(not ch.isalnum() for ch in value):
        return ""
    return value[:16]


def mask_uid(uid: str | None) -> str:
    if not uid:
        return "none"
    return hashlib.sha256(uid.encode("utf-8")).hexdigest()[:10]


def log_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    **fields: object,
) -> None:
    logger.log(
        level,
        "room.%s %s",
        event,
        json.dumps(fields, ensure_ascii=False, separators=(",", ":"), default=str),
    )


def room_path(room_id: str) -> str:
    return f"{ROOMS_COLLECTION}/{room_id}"


def members_collection(room_id: str) -> str:
    return f"{room_path(room_id)}/{MEMBERS_COLLECTION}"


def metrics_collection(room_id: str) -> str:
    return f"{room_path(room_id)}/{METRICS_COLLECTION}"


def log_collection(room_id: str) -> str:
    return f"{room_path(room_id)}/{WORKOUT_LOG_COLLECTION}"


def invites_collection(room_id: str) -> str:
    return f"{room_path(room_id)}/{INVITES_COLLECTION}"


def member_path(room_id: str, uid: str) -> str:
    return f"{members_collection(room_id)}/{uid}"


def metrics_path(room_id: str, uid: str) -> str:
    return f"{metrics_collection(room_id)}/{uid}"


def invite_path(room_id: str, invite_id: str) -> str:
    return f"{invites_collection(room_id)}/{invite_id}"


def empty_metrics(last_update: Any) -> dict[str, Any]:
    return {
        "currentExercise": None,
        "currentSet": 0,
        "totalVolume": 0,
        "totalSets": 0,
        "lastSetWeight": 0,
        "lastSetReps": 0,
        "lastUpdate": last_update,
    }
