from __future__ import annotations

import math
from typing import Iterable

from .room_constants import BADGE_TOP_THREE, BADGE_VOLUME_KING, DEFAULT_DISPLAY_NAME
from .room_types import ActiveMetrics, LeaderboardEntry, Member, MetricDelta


def _ranking_key(metrics: ActiveMetrics) -> tuple[float, float, str]:
    last_update = metrics.last_update if metrics.last_update is not None else math.inf
    return (-float(metrics.total_volume or 0), float(last_update), metrics.uid)


def build_leaderboard(
    metrics: Iterable[ActiveMetrics],
    members: Iterable[Member] | None = None,
) -> list[LeaderboardEntry]:
    """Rank metrics by volume, earliest update first on ties, then uid.

    Entries whose member is not known yet get placeholder display data.
    """
    members_by_uid = {member.uid: member for member in members or ()}
    entries: list[LeaderboardEntry] = []
    for index, item in enumerate(sorted(metrics, key=_ranking_key)):
        member = members_by_uid.get(item.uid)
        entries.append(
            LeaderboardEntry(
                uid=item.uid,
                rank=index + 1,
                total_volume=item.total_volume,
                total_sets=item.total_sets,
                current_exercise=item.current_exercise,
                current_set=item.current_set,
                last_set_weight=item.last_set_weight,
                last_set_reps=item.last_set_reps,
                last_update=item.last_update,
                display_name=(member.display_name if member and member.display_name else DEFAULT_DISPLAY_NAME),
                photo_url=member.photo_url if member else None,
                role=member.role if member else "member",
            )
        )
    return entries


def compute_deltas(
    previous: Iterable[LeaderboardEntry] | None,
    current: Iterable[LeaderboardEntry],
) -> list[MetricDelta]:
    previous_by_uid = {entry.uid: entry for entry in previous or ()}
    deltas: list[MetricDelta] = []
    for entry in current:
        before = previous_by_uid.get(entry.uid)
        if before is None:
            deltas.append(MetricDelta(uid=entry.uid, volume_delta=0, rank_delta=0, is_new=True))
            continue
        deltas.append(
            MetricDelta(
                uid=entry.uid,
                volume_delta=entry.total_volume - before.total_volume,
                rank_delta=before.rank - entry.rank,
                is_new=False,
            )
        )
    return deltas


def badges_for(entry: LeaderboardEntry) -> list[str]:
    if not entry.total_volume or entry.total_volume <= 0:
        return []
    badges: list[str] = []
    if entry.rank == 1:
        badges.append(BADGE_VOLUME_KING)
    if entry.rank <= 3:
        badges.append(BADGE_TOP_THREE)
    return badges
