from __future__ import annotations

import asyncio

import pytest

from gymbro.documents import Increment
from gymbro.documents_memory import MemoryDocumentStore
from gymbro.room_types import MembersUpdate, MetricsUpdate, RoomUpdate, StreamDead, WorkoutLogUpdate
from gymbro.room_utils import log_collection, members_collection, metrics_collection, metrics_path, room_path

from helpers import settle, wait_until


async def _open_room(room_store_for, *guests: str) -> str:
    created = await room_store_for("alice").create_room("Leg Day")
    room_id = created.data["roomId"]
    for guest in guests:
        assert (await room_store_for(guest).join_room(room_id)).success
    return room_id


@pytest.mark.asyncio
async def test_room_watch_delivers_each_change(room_store_for, sync_for) -> None:
    room_id = await _open_room(room_store_for, "bob")
    sync = sync_for("alice")
    updates: list[RoomUpdate] = []
    sync.watch_room(room_id, updates.append)
    await wait_until(lambda: len(updates) == 1)
    assert updates[0].exists and updates[0].room.status == "lobby"

    await room_store_for("alice").start_workout(room_id)
    await wait_until(lambda: len(updates) == 2)
    assert updates[1].room.status == "active"
    assert sync.is_watching_room(room_id)


@pytest.mark.asyncio
async def test_room_watch_reports_deletion(store: MemoryDocumentStore, room_store_for, sync_for) -> None:
    room_id = await _open_room(room_store_for)
    updates: list[RoomUpdate] = []
    sync_for("alice").watch_room(room_id, updates.append)
    await wait_until(lambda: len(updates) == 1)
    await store.delete(room_path(room_id))
    await wait_until(lambda: len(updates) == 2)
    assert updates[-1].exists is False
    assert updates[-1].room is None


@pytest.mark.asyncio
async def test_metrics_burst_is_debounced_into_one_callback(
    store: MemoryDocumentStore, room_store_for, sync_for
) -> None:
    room_id = await _open_room(room_store_for)
    sync = sync_for("alice", metrics_debounce_ms=50)
    updates: list[MetricsUpdate] = []
    sync.watch_metrics(room_id, updates.append)
    await wait_until(lambda: len(updates) == 1)

    for _ in range(10):
        await store.update(metrics_path(room_id, "alice"), {"totalVolume": Increment(100)})
    await asyncio.sleep(0.02)
    assert len(updates) == 1
    await wait_until(lambda: len(updates) == 2)
    await asyncio.sleep(0.08)

    assert len(updates) == 2
    assert updates[-1].leaderboard[0].total_volume == 1000
    delta = updates[-1].deltas[0]
    assert (delta.volume_delta, delta.rank_delta, delta.is_new) == (1000, 0, False)
    assert sync.stats["flushes"] == 2


@pytest.mark.asyncio
async def test_metrics_deltas_follow_rank_changes(store: MemoryDocumentStore, room_store_for, sync_for) -> None:
    room_id = await _open_room(room_store_for, "bob")
    await store.update(metrics_path(room_id, "alice"), {"totalVolume": 150})
    await store.update(metrics_path(room_id, "bob"), {"totalVolume": 100})

    sync = sync_for("alice")
    sync.watch_members(room_id, lambda update: None)
    updates: list[MetricsUpdate] = []
    sync.watch_metrics(room_id, updates.append)
    await wait_until(lambda: len(updates) == 1)
    assert [delta.is_new for delta in updates[0].deltas] == [True, True]

    await store.update(metrics_path(room_id, "bob"), {"totalVolume": 150, "lastUpdate": 1})
    await wait_until(lambda: len(updates) == 2)
    board = updates[-1].leaderboard
    assert [(entry.uid, entry.rank, entry.display_name) for entry in board] == [("bob", 1, "Bob"), ("alice", 2, "Alice")]
    deltas = {delta.uid: delta for delta in updates[-1].deltas}
    assert (deltas["bob"].volume_delta, deltas["bob"].rank_delta) == (50, 1)
    assert (deltas["alice"].volume_delta, deltas["alice"].rank_delta) == (0, -1)


@pytest.mark.asyncio
async def test_member_changes_are_annotated(room_store_for, sync_for) -> None:
    room_id = await _open_room(room_store_for)
    updates: list[MembersUpdate] = []
    sync = sync_for("alice")
    sync.watch_members(room_id, updates.append)
    await wait_until(lambda: len(updates) == 1)
    assert [member.uid for member in updates[0].changes.added] == ["alice"]

    await room_store_for("bob").join_room(room_id)
    await wait_until(lambda: len(updates) == 2)
    assert [member.uid for member in updates[1].changes.added] == ["bob"]
    assert [member.uid for member in updates[1].members] == ["alice", "bob"]

    await room_store_for("bob").leave_room(room_id)
    await wait_until(lambda: len(updates) == 3)
    assert [member.uid for member in updates[2].changes.removed] == ["bob"]
    assert [member.uid for member in sync.cached_members(room_id)] == ["alice"]


@pytest.mark.asyncio
async def test_member_changes_fold_across_debounce_window(room_store_for, sync_for) -> None:
    room_id = await _open_room(room_store_for)
    updates: list[MembersUpdate] = []
    sync_for("alice", members_debounce_ms=40).watch_members(room_id, updates.append)
    await wait_until(lambda: len(updates) == 1)

    await room_store_for("bob").join_room(room_id)
    await room_store_for("carol").join_room(room_id)
    await room_store_for("bob").leave_room(room_id)
    await wait_until(lambda: len(updates) == 2)
    await asyncio.sleep(0.06)

    assert len(updates) == 2
    changes = updates[1].changes
    assert [member.uid for member in changes.added] == ["carol"]
    assert changes.removed == []


@pytest.mark.asyncio
async def test_workout_log_is_ordered_by_timestamp(room_store_for, sync_for) -> None:
    room_id = await _open_room(room_store_for, "bob")
    await room_store_for("alice").start_workout(room_id)
    updates: list[WorkoutLogUpdate] = []
    alice_sync, bob_sync = sync_for("alice"), sync_for("bob")
    alice_sync.watch_workout_log(room_id, updates.append)
    await wait_until(lambda: len(updates) == 1)
    assert updates[0].log == []

    await alice_sync.push_metric_update(room_id, "squat", reps=5, weight=100, set_number=1)
    await alice_sync.wait_for_log_writes()
    await bob_sync.push_metric_update(room_id, "bench", reps=8, weight=60, set_number=1)
    await bob_sync.wait_for_log_writes()
    await wait_until(lambda: updates and len(updates[-1].log) == 2)

    log = updates[-1].log
    assert [(entry.uid, entry.exercise, entry.volume) for entry in log] == [
        ("alice", "squat", 500),
        ("bob", "bench", 480),
    ]
    assert log[0].timestamp < log[1].timestamp


@pytest.mark.asyncio
async def test_dispose_stops_callbacks_even_when_push_is_queued(
    store: MemoryDocumentStore, room_store_for, sync_for
) -> None:
    room_id = await _open_room(room_store_for)
    sync = sync_for("alice", metrics_debounce_ms=30)
    updates: list[MetricsUpdate] = []
    subscription = sync.watch_metrics(room_id, updates.append)
    await wait_until(lambda: len(updates) == 1)

    await store.update(metrics_path(room_id, "alice"), {"totalVolume": 10})
    await settle()
    assert subscription.cancel() is True
    assert subscription.cancel() is False
    await asyncio.sleep(0.06)

    assert len(updates) == 1
    assert sync.active_listener_count == 0
    assert store.subscription_count == 0


@pytest.mark.asyncio
async def test_watching_same_stream_replaces_previous_listener(
    store: MemoryDocumentStore, room_store_for, sync_for
) -> None:
    room_id = await _open_room(room_store_for)
    sync = sync_for("alice")
    first: list[RoomUpdate] = []
    second: list[RoomUpdate] = []
    sync.watch_room(room_id, first.append)
    sync.watch_room(room_id, second.append)
    await wait_until(lambda: len(second) == 1)
    await store.update(room_path(room_id), {"name": "Renamed"})
    await wait_until(lambda: len(second) == 2)
    await settle()
    assert first == []
    assert sync.active_listener_count == 1
    assert store.subscription_count == 1


@pytest.mark.asyncio
async def test_unsubscribe_room_and_cleanup(store: MemoryDocumentStore, room_store_for, sync_for) -> None:
    room_id = await _open_room(room_store_for)
    sync = sync_for("alice")
    sync.watch_room(room_id, lambda update: None)
    sync.watch_members(room_id, lambda update: None)
    sync.watch_metrics(room_id, lambda update: None)
    sync.watch_workout_log(room_id, lambda update: None)
    assert sync.active_listener_count == 4

    sync.unsubscribe_room(room_id)
    assert sync.active_listener_count == 0
    assert not sync.is_watching_room(room_id)
    assert store.subscription_count == 0

    sync.watch_room(room_id, lambda update: None)
    sync.cleanup()
    sync.cleanup()
    assert sync.active_listener_count == 0


@pytest.mark.asyncio
async def test_stream_error_resubscribes_without_false_additions(
    store: MemoryDocumentStore, room_store_for, sync_for
) -> None:
    room_id = await _open_room(room_store_for, "bob")
    sync = sync_for("alice")
    updates: list[MembersUpdate] = []
    dead: list[StreamDead] = []
    sync.watch_members(room_id, updates.append, on_dead=dead.append)
    await wait_until(lambda: len(updates) == 1)

    store.fail_subscriptions(members_collection(room_id), ConnectionError("listener dropped"))
    await wait_until(lambda: sync.stats["resubscribes"] == 1)
    await wait_until(lambda: len(updates) == 2)

    assert updates[1].changes.added == []
    assert [member.uid for member in updates[1].members] == ["alice", "bob"]
    assert sync.stats["streamErrors"] == 1
    assert dead == []

    await room_store_for("carol").join_room(room_id)
    await wait_until(lambda: len(updates) == 3)
    assert [member.uid for member in updates[2].changes.added] == ["carol"]


@pytest.mark.asyncio
async def test_stream_dies_after_retry_budget(store: MemoryDocumentStore, room_store_for, sync_for) -> None:
    room_id = await _open_room(room_store_for)
    sync = sync_for("alice", max_retries=2)
    dead: list[StreamDead] = []
    updates: list[WorkoutLogUpdate] = []
    store.fail_next_subscribes(log_collection(room_id), ConnectionError("permission revoked"), times=3)

    sync.watch_workout_log(room_id, updates.append, on_dead=dead.append)
    await wait_until(lambda: len(dead) == 1)

    assert dead[0] == StreamDead(room_id=room_id, stream="log", error="permission revoked", retries=2)
    assert updates == []
    assert sync.stats["resubscribes"] == 2
    assert sync.stats["deadStreams"] == 1
    assert sync.active_listener_count == 0


@pytest.mark.asyncio
async def test_successful_snapshot_resets_error_count(store: MemoryDocumentStore, room_store_for, sync_for) -> None:
    room_id = await _open_room(room_store_for)
    sync = sync_for("alice", max_retries=1)
    dead: list[StreamDead] = []
    updates: list[RoomUpdate] = []
    sync.watch_room(room_id, updates.append, on_dead=dead.append)

    for expected in (2, 3):
        await wait_until(lambda: len(updates) == expected - 1)
        store.fail_subscriptions(room_path(room_id), ConnectionError("blip"))
        await wait_until(lambda: len(updates) == expected)

    assert dead == []
    assert sync.stats["resubscribes"] == 2


@pytest.mark.asyncio
async def test_push_metric_update_validation(room_store_for, sync_for) -> None:
    room_id = await _open_room(room_store_for)
    sync = sync_for("alice")
    cases = [
        ({"exercise": "", "reps": 5, "weight": 10}, "Esercizio non valido"),
        ({"exercise": "squat", "reps": 0, "weight": 10}, "Ripetizioni non valide"),
        ({"exercise": "squat", "reps": True, "weight": 10}, "Ripetizioni non valide"),
        ({"exercise": "squat", "reps": 5, "weight": -1}, "Peso non valido"),
        ({"exercise": "squat", "reps": 5, "weight": "heavy"}, "Peso non valido"),
        ({"exercise": "squat", "reps": 5, "weight": 10, "set_number": -2}, "Serie non valida"),
    ]
    for kwargs, message in cases:
        result = await sync.push_metric_update(room_id, **kwargs)
        assert (result.success, result.code, result.error) == (False, "invalid-argument", message)
    assert sync.stats["metricPushes"] == 0

    unauthenticated = await sync_for(None).push_metric_update(room_id, "squat", reps=5, weight=10)
    assert unauthenticated.code == "unauthenticated"


@pytest.mark.asyncio
async def test_push_metric_update_accumulates(store: MemoryDocumentStore, room_store_for, sync_for) -> None:
    room_id = await _open_room(room_store_for)
    sync = sync_for("alice")
    await sync.push_metric_update(room_id, " squat ", reps=10, weight=100)
    await sync.push_metric_update(room_id, "squat", reps=8, weight=0)
    await sync.wait_for_log_writes()

    metrics = (await store.get(metrics_path(room_id, "alice"))).to_dict()
    assert metrics["currentExercise"] == "squat"
    assert metrics["totalVolume"] == 1000
    assert metrics["totalSets"] == 2
    assert metrics["currentSet"] == 2
    assert (metrics["lastSetWeight"], metrics["lastSetReps"]) == (0, 8)
    assert len(await store.list(log_collection(room_id))) == 2
    assert sync.stats["metricPushes"] == 2


@pytest.mark.asyncio
async def test_log_append_failure_keeps_metric_write(
    store: MemoryDocumentStore, room_store_for, sync_for
) -> None:
    room_id = await _open_room(room_store_for)
    sync = sync_for("alice")

    async def broken_add(collection: str, data: dict) -> str:
        raise ConnectionError("log offline")

    store.add = broken_add  # type: ignore[method-assign]
    result = await sync.push_metric_update(room_id, "deadlift", reps=3, weight=200)
    await sync.wait_for_log_writes()

    assert result.success
    assert (await store.get(metrics_path(room_id, "alice"))).get("totalVolume") == 600
    assert sync.stats["logAppendFailures"] == 1


@pytest.mark.asyncio
async def test_update_current_exercise_resets_set(store: MemoryDocumentStore, room_store_for, sync_for) -> None:
    room_id = await _open_room(room_store_for)
    sync = sync_for("alice")
    await sync.push_metric_update(room_id, "squat", reps=5, weight=100, set_number=3)
    result = await sync.update_current_exercise(room_id, "  lunges ")
    assert result.data == {"currentExercise": "lunges"}
    metrics = await store.get(metrics_path(room_id, "alice"))
    assert (metrics.get("currentExercise"), metrics.get("currentSet")) == ("lunges", 0)

    outsider = await sync_for("bob").update_current_exercise(room_id, "squat")
    assert outsider.code == "not-found"
    await sync.wait_for_log_writes()


@pytest.mark.asyncio
async def test_metrics_for_unknown_member_use_placeholder(
    store: MemoryDocumentStore, room_store_for, sync_for
) -> None:
    room_id = await _open_room(room_store_for)
    await store.set(f"{metrics_collection(room_id)}/ghost", {"totalVolume": 5})
    updates: list[MetricsUpdate] = []
    sync_for("alice").watch_metrics(room_id, updates.append)
    await wait_until(lambda: len(updates) == 1)
    ghost = next(entry for entry in updates[0].leaderboard if entry.uid == "ghost")
    assert (ghost.display_name, ghost.role) == ("Utente", "member")
