from __future__ import annotations

import asyncio
from typing import Any

import pytest

from gymbro.documents_memory import MemoryDocumentStore
from gymbro.room_types import Room
from gymbro.room_utils import members_collection, metrics_path, room_path
from gymbro.session_controller import RoomSessionController

from helpers import wait_until


class Harness:
    def __init__(self, controller: RoomSessionController) -> None:
        self.controller = controller
        self.renders: list[dict[str, Any]] = []
        self.notices: list[dict[str, str]] = []
        self.fatal: list[str] = []
        self.ended: list[Room | None] = []
        self.errors: list[str] = []
        self.closed: list[str] = []
        controller.events.on("notice", self.notices.append)
        controller.events.on("fatal", self.fatal.append)
        controller.events.on("closed", self.closed.append)

    @property
    def last_view(self) -> dict[str, Any]:
        return self.renders[-1]

    def notice_messages(self) -> list[str]:
        return [notice["message"] for notice in self.notices]


@pytest.fixture
def session_for(room_store_for, sync_for):
    harnesses: list[Harness] = []

    def factory(name: str, room_id: str, frame_ms: int = 5, **sync_options) -> Harness:
        holder: dict[str, Harness] = {}

        def render(view: dict[str, Any]) -> None:
            holder["harness"].renders.append(view)

        controller = RoomSessionController(
            room_id,
            name,
            room_store_for(name),
            sync_for(name, **sync_options),
            render=render,
            on_room_end=lambda room: holder["harness"].ended.append(room),
            on_error=lambda message: holder["harness"].errors.append(message),
            frame_ms=frame_ms,
        )
        harness = Harness(controller)
        holder["harness"] = harness
        harnesses.append(harness)
        return harness

    yield factory
    for harness in harnesses:
        harness.controller.cleanup()


async def _open_room(room_store_for, *guests: str) -> str:
    room_id = (await room_store_for("alice").create_room("Leg Day")).data["roomId"]
    for guest in guests:
        await room_store_for(guest).join_room(room_id)
    return room_id


async def _init(harness: Harness) -> None:
    assert await harness.controller.init() is True
    await wait_until(lambda: bool(harness.renders) and len(harness.last_view["members"]) > 0)


@pytest.mark.asyncio
async def test_init_renders_lobby_view(room_store_for, session_for) -> None:
    room_id = await _open_room(room_store_for, "bob")
    host = session_for("alice", room_id)
    await _init(host)

    view = host.last_view
    assert view["type"] == "state-sync"
    assert (view["roomId"], view["status"], view["isHost"]) == (room_id, "lobby", True)
    assert [member["uid"] for member in view["members"]] == ["alice", "bob"]
    assert (view["readyCount"], view["allReady"], view["meReady"]) == (1, False, True)
    assert view["error"] is None
    assert "summary" not in view


@pytest.mark.asyncio
async def test_first_render_happens_before_room_loads(room_store_for, session_for) -> None:
    room_id = await _open_room(room_store_for)
    harness = session_for("alice", room_id, frame_ms=1)
    original_get_room = harness.controller._rooms.get_room

    async def slow_get_room(room_id: str):
        await asyncio.sleep(0.03)
        return await original_get_room(room_id)

    harness.controller._rooms.get_room = slow_get_room  # type: ignore[method-assign]
    init = asyncio.create_task(harness.controller.init())
    await wait_until(lambda: bool(harness.renders))
    assert harness.renders[0]["status"] == "loading"
    assert await init is True


@pytest.mark.asyncio
async def test_init_missing_room_is_fatal(session_for) -> None:
    harness = session_for("alice", "NOROOM")
    assert await harness.controller.init() is False
    assert harness.fatal == ["Room non trovata"]
    assert harness.errors == ["Room non trovata"]
    assert harness.controller.closed
    assert len(harness.ended) == 1


@pytest.mark.asyncio
async def test_init_archived_room_is_fatal(room_store_for, session_for) -> None:
    room_id = await _open_room(room_store_for)
    await room_store_for("alice").leave_room(room_id)
    harness = session_for("bob", room_id)
    assert await harness.controller.init() is False
    assert harness.fatal == ["Room chiusa"]


@pytest.mark.asyncio
async def test_redraws_coalesce_within_a_frame(store: MemoryDocumentStore, room_store_for, session_for) -> None:
    room_id = await _open_room(room_store_for)
    harness = session_for("alice", room_id, frame_ms=40)
    await _init(harness)
    await asyncio.sleep(0.1)
    baseline = harness.controller.render_count

    for volume in range(1, 6):
        await store.update(metrics_path(room_id, "alice"), {"totalVolume": volume * 100})
    assert harness.controller.render_pending
    await asyncio.sleep(0.1)

    assert harness.controller.render_count == baseline + 1
    assert harness.last_view["leaderboard"][0]["totalVolume"] == 500
    assert harness.last_view["leaderboard"][0]["volumeDisplay"] == "500"


@pytest.mark.asyncio
async def test_workout_lifecycle_transitions(room_store_for, session_for) -> None:
    room_id = await _open_room(room_store_for, "bob")
    host = session_for("alice", room_id)
    guest = session_for("bob", room_id)
    await _init(host)
    await _init(guest)
    started: list[Room] = []
    ended: list[Room] = []
    guest.controller.events.on("workout-started", started.append)
    guest.controller.events.on("workout-ended", ended.append)

    early = await guest.controller.push_set("squat", reps=5, weight=100)
    assert (early.success, early.code) == (False, "conflict")

    assert (await host.controller.start_workout()).success
    await wait_until(lambda: guest.controller.state.status == "active")
    assert "Allenamento iniziato!" in guest.notice_messages()
    assert len(started) == 1

    assert (await guest.controller.push_set("squat", reps=8, weight=120, set_number=1)).success
    assert (await host.controller.push_set("squat", reps=10, weight=100, set_number=1)).success
    await wait_until(lambda: len(guest.controller.state.leaderboard) == 2 and guest.controller.state.leaderboard[0].total_volume == 1000)

    assert (await host.controller.end_workout()).success
    await wait_until(lambda: guest.controller.state.status == "finished")
    await wait_until(lambda: guest.last_view["status"] == "finished")
    assert "Allenamento terminato!" in guest.notice_messages()
    assert len(ended) == 1
    assert len(guest.ended) == 1

    summary = guest.last_view["summary"]
    assert summary["totalVolume"] == 1960
    assert summary["totalVolumeDisplay"] == "2.0k kg"
    assert summary["participants"] == 2
    assert [row["uid"] for row in summary["podium"]] == ["alice", "bob"]

    assert guest.controller.acknowledge_finished() is True
    assert guest.controller.closed


@pytest.mark.asyncio
async def test_only_host_can_start(room_store_for, session_for) -> None:
    room_id = await _open_room(room_store_for, "bob")
    guest = session_for("bob", room_id)
    await _init(guest)
    result = await guest.controller.start_workout()
    assert result.code == "permission-denied"
    assert guest.notices[-1] == {"level": "error", "message": "Solo l'host può avviare l'allenamento"}


@pytest.mark.asyncio
async def test_toggle_ready_follows_member_state(room_store_for, session_for) -> None:
    room_id = await _open_room(room_store_for, "bob")
    guest = session_for("bob", room_id)
    await _init(guest)
    assert guest.last_view["meReady"] is False

    assert (await guest.controller.toggle_ready()).data == {"readyStatus": True}
    await wait_until(lambda: guest.last_view["meReady"] is True)
    assert guest.last_view["allReady"] is True

    assert (await guest.controller.toggle_ready()).data == {"readyStatus": False}
    await wait_until(lambda: guest.last_view["meReady"] is False)


@pytest.mark.asyncio
async def test_member_join_and_leave_notices(room_store_for, session_for) -> None:
    room_id = await _open_room(room_store_for)
    host = session_for("alice", room_id)
    await _init(host)

    await room_store_for("bob").join_room(room_id)
    await wait_until(lambda: "Bob è entrato" in host.notice_messages())
    await room_store_for("bob").leave_room(room_id)
    await wait_until(lambda: "Bob è uscito" in host.notice_messages())
    assert not host.controller.closed


@pytest.mark.asyncio
async def test_host_leaving_ends_guest_session(room_store_for, session_for) -> None:
    room_id = await _open_room(room_store_for, "bob")
    host = session_for("alice", room_id)
    guest = session_for("bob", room_id)
    await _init(host)
    await _init(guest)

    left = await host.controller.leave_room()
    assert left.data["archived"] is True
    assert host.controller.closed
    assert len(host.ended) == 1
    assert "L'host ha chiuso la room" not in host.notice_messages()

    await wait_until(lambda: guest.controller.closed)
    assert "L'host ha chiuso la room" in guest.notice_messages()
    assert len(guest.ended) == 1
    assert guest.ended[0].status == "archived"
    assert guest.fatal == []


@pytest.mark.asyncio
async def test_host_leaving_after_finish_closes_guest_session(room_store_for, session_for) -> None:
    room_id = await _open_room(room_store_for, "bob")
    alice = room_store_for("alice")
    guest = session_for("bob", room_id)
    await _init(guest)
    await alice.start_workout(room_id)
    await alice.end_workout(room_id)
    await wait_until(lambda: guest.controller.state.status == "finished")
    assert not guest.controller.closed

    assert (await alice.leave_room(room_id)).data["archived"] is True
    await wait_until(lambda: guest.controller.closed)
    assert "L'host ha chiuso la room" in guest.notice_messages()
    assert [room.status for room in guest.ended] == ["finished"]
    assert guest.fatal == []


@pytest.mark.asyncio
async def test_kicked_member_gets_fatal_error(room_store_for, session_for) -> None:
    room_id = await _open_room(room_store_for, "bob")
    guest = session_for("bob", room_id)
    await _init(guest)

    assert (await room_store_for("alice").kick_member(room_id, "bob")).success
    await wait_until(lambda: guest.controller.closed)
    assert guest.fatal == ["Sei stato rimosso dalla room"]
    assert guest.controller.state.error == "Sei stato rimosso dalla room"
    assert len(guest.ended) == 1


@pytest.mark.asyncio
async def test_room_deletion_is_fatal(store: MemoryDocumentStore, room_store_for, session_for) -> None:
    room_id = await _open_room(room_store_for)
    harness = session_for("alice", room_id)
    await _init(harness)

    await store.delete(room_path(room_id))
    await wait_until(lambda: harness.controller.closed)
    assert harness.fatal == ["Room eliminata"]
    assert harness.errors == ["Room eliminata"]
    assert len(harness.ended) == 1


@pytest.mark.asyncio
async def test_dead_room_stream_is_fatal(store: MemoryDocumentStore, room_store_for, session_for) -> None:
    room_id = await _open_room(room_store_for)
    store.fail_next_subscribes(room_path(room_id), ConnectionError("denied"))
    harness = session_for("alice", room_id, max_retries=0)
    assert await harness.controller.init() is True
    await wait_until(lambda: harness.controller.closed)
    assert harness.fatal == ["Connessione alla room persa"]


@pytest.mark.asyncio
async def test_dead_secondary_stream_marks_view_stale(
    store: MemoryDocumentStore, room_store_for, session_for
) -> None:
    room_id = await _open_room(room_store_for)
    store.fail_next_subscribes(members_collection(room_id), ConnectionError("denied"))
    harness = session_for("alice", room_id, max_retries=0)
    assert await harness.controller.init() is True
    await wait_until(lambda: bool(harness.renders) and harness.last_view["staleStreams"] == ["members"])

    assert not harness.controller.closed
    assert harness.notices[-1] == {"level": "warning", "message": "Aggiornamenti in tempo reale interrotti"}


@pytest.mark.asyncio
async def test_cleanup_is_idempotent(store: MemoryDocumentStore, room_store_for, session_for) -> None:
    room_id = await _open_room(room_store_for)
    harness = session_for("alice", room_id, frame_ms=50)
    await _init(harness)
    await store.update(metrics_path(room_id, "alice"), {"totalVolume": 10})
    await wait_until(lambda: harness.controller.render_pending)

    harness.controller.cleanup()
    harness.controller.cleanup()
    count = harness.controller.render_count
    await asyncio.sleep(0.08)

    assert harness.closed == [room_id]
    assert harness.controller.render_count == count
    assert not harness.controller.render_pending
    assert store.subscription_count == 0
    assert harness.controller.acknowledge_finished() is False
