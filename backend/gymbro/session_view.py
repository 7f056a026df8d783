from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .room_leaderboard import badges_for
from .room_types import (
    LeaderboardEntry,
    Member,
    MetricDelta,
    Room,
    SessionStatus,
    StreamType,
    WorkoutLogEntry,
)

PODIUM_SIZE = 3
LOG_TAIL_SIZE = 50


@dataclass
class SessionState:
    room: Room | None = None
    members: list[Member] = field(default_factory=list)
    leaderboard: list[LeaderboardEntry] = field(default_factory=list)
    deltas: list[MetricDelta] = field(default_factory=list)
    log: list[WorkoutLogEntry] = field(default_factory=list)
    status: SessionStatus = "loading"
    is_host: bool = False
    error: str | None = None
    stale_streams: set[StreamType] = field(default_factory=set)


def format_volume(volume: float | int, unit: str = "") -> str:
    value = volume or 0
    if value >= 1000:
        text = f"{value / 1000:.1f}k"
    elif float(value).is_integer():
        text = str(int(value))
    else:
        text = f"{value:.1f}"
    return f"{text} {unit}".strip()


def leaderboard_payload(entries: list[LeaderboardEntry], user_id: str) -> list[dict[str, Any]]:
    payload: list[dict[str, Any]] = []
    for entry in entries:
        item = entry.to_payload()
        item["badges"] = badges_for(entry)
        item["isMe"] = entry.uid == user_id
        item["volumeDisplay"] = format_volume(entry.total_volume)
        payload.append(item)
    return payload


def build_summary(rows: list[dict[str, Any]]) -> dict[str, Any]:
    total_volume = sum(row.get("totalVolume") or 0 for row in rows)
    total_sets = sum(row.get("totalSets") or 0 for row in rows)
    podium = [
        {
            "place": index + 1,
            "uid": row.get("uid"),
            "displayName": row.get("displayName"),
            "photoUrl": row.get("photoUrl"),
            "totalVolume": row.get("totalVolume") or 0,
            "volumeDisplay": format_volume(row.get("totalVolume") or 0, "kg"),
        }
        for index, row in enumerate(rows[:PODIUM_SIZE])
    ]
    return {
        "totalVolume": total_volume,
        "totalVolumeDisplay": format_volume(total_volume, "kg"),
        "totalSets": total_sets,
        "participants": len(rows),
        "podium": podium,
    }


def build_view(state: SessionState, user_id: str) -> dict[str, Any]:
    members = [member.to_payload() for member in state.members]
    ready_count = sum(1 for member in state.members if member.ready_status)
    me = next((member for member in state.members if member.uid == user_id), None)
    leaderboard = leaderboard_payload(state.leaderboard, user_id)

    view: dict[str, Any] = {
        "type": "state-sync",
        "roomId": state.room.room_id if state.room else None,
        "status": state.status,
        "isHost": state.is_host,
        "room": state.room.to_payload() if state.room else None,
        "members": members,
        "readyCount": ready_count,
        "allReady": bool(members) and ready_count == len(members),
        "meReady": bool(me and me.ready_status),
        "leaderboard": leaderboard,
        "deltas": [delta.to_payload() for delta in state.deltas],
        "log": [entry.to_payload() for entry in state.log[-LOG_TAIL_SIZE:]],
        "staleStreams": sorted(state.stale_streams),
        "error": state.error,
    }
    if state.status == "finished":
        final_rows = state.room.final_leaderboard if state.room and state.room.final_leaderboard else leaderboard
        view["summary"] = build_summary(list(final_rows))
    return view
