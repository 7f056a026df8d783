from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from .config import settings
from .realtime_sync import RealtimeSync
from .room_events import EventEmitter, Subscription
from .room_store import RoomStore
from .room_types import (
    MembersUpdate,
    MetricsUpdate,
    Room,
    RoomUpdate,
    ServiceResult,
    StreamDead,
    WorkoutLogUpdate,
)
from .room_utils import log_event, mask_uid
from .session_view import SessionState, build_view

logger = logging.getLogger(__name__)

RenderFn = Callable[[dict[str, Any]], Any]
RoomEndFn = Callable[[Room | None], None]
ErrorFn = Callable[[str], None]


class RoomSessionController:
    """View-state machine for one user inside one room.

    Status moves ``loading -> lobby -> active -> finished``. Store and
    stream updates mark the view dirty; the redraw itself always runs on a
    later loop tick, at most once per frame.
    """

    def __init__(
        self,
        room_id: str,
        user_id: str,
        rooms: RoomStore,
        sync: RealtimeSync,
        render: RenderFn | None = None,
        on_room_end: RoomEndFn | None = None,
        on_error: ErrorFn | None = None,
        frame_ms: int | None = None,
    ) -> None:
        self.room_id = room_id
        self.user_id = user_id
        self.state = SessionState()
        self.events = EventEmitter()
        self.render_count = 0
        self._rooms = rooms
        self._sync = sync
        self._render = render
        self._on_room_end = on_room_end
        self._on_error = on_error
        self._frame_s = (frame_ms if frame_ms is not None else settings.render_frame_ms) / 1000
        self._subscriptions: list[Subscription] = []
        self._render_handle: asyncio.TimerHandle | None = None
        self._render_tasks: set[asyncio.Task[Any]] = set()
        self._closed = False
        self._ended = False
        self._leaving = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def render_pending(self) -> bool:
        return self._render_handle is not None

    def view(self) -> dict[str, Any]:
        return build_view(self.state, self.user_id)

    # ------------------------------------------------------------------
    # lifecycle

    async def init(self) -> bool:
        self._schedule_render()
        result = await self._rooms.get_room(self.room_id)
        if self._closed:
            return False
        if not result.success or not isinstance(result.data, Room):
            self._fail(result.error or "Room non trovata")
            return False

        room: Room = result.data
        if room.status == "archived":
            self._fail("Room chiusa")
            return False
        self.state.room = room
        self.state.is_host = room.host_id == self.user_id
        self.state.status = room.status
        self._setup_listeners()
        self._schedule_render()
        log_event(logger, "session_init", roomId=self.room_id, uid=mask_uid(self.user_id), status=room.status)
        return True

    def _setup_listeners(self) -> None:
        self._subscriptions.extend(
            [
                self._sync.watch_room(self.room_id, self._on_room, on_dead=self._on_stream_dead),
                self._sync.watch_members(self.room_id, self._on_members, on_dead=self._on_stream_dead),
                self._sync.watch_metrics(self.room_id, self._on_metrics, on_dead=self._on_stream_dead),
                self._sync.watch_workout_log(self.room_id, self._on_log, on_dead=self._on_stream_dead),
            ]
        )

    def cleanup(self) -> None:
        was_closed, self._closed = self._closed, True
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            try:
                subscription.cancel()
            except Exception:
                logger.exception("Failed to cancel subscription for room %s", self.room_id)
        self._sync.unsubscribe_room(self.room_id)
        if self._render_handle is not None:
            self._render_handle.cancel()
            self._render_handle = None
        if not was_closed:
            self.events.emit("closed", self.room_id)

    def _end_room(self) -> None:
        if self._ended:
            return
        self._ended = True
        if self._on_room_end is not None:
            try:
                self._on_room_end(self.state.room)
            except Exception:
                logger.exception("Room end callback failed for %s", self.room_id)

    def _fail(self, message: str) -> None:
        self.state.error = message
        log_event(logger, "session_fatal", logging.WARNING, roomId=self.room_id, error=message)
        self.events.emit("fatal", message)
        if self._on_error is not None:
            try:
                self._on_error(message)
            except Exception:
                logger.exception("Error callback failed for %s", self.room_id)
        self.cleanup()
        self._end_room()

    def _notice(self, level: str, message: str) -> None:
        self.events.emit("notice", {"level": level, "message": message})

    # ------------------------------------------------------------------
    # render scheduling

    def _schedule_render(self) -> None:
        if self._closed or self._render_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._render_handle = loop.call_later(self._frame_s, self._render_now)

    def _render_now(self) -> None:
        self._render_handle = None
        if self._closed:
            return
        self.render_count += 1
        if self._render is None:
            return
        try:
            result = self._render(self.view())
        except Exception:
            logger.exception("Render failed for room %s", self.room_id)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._render_tasks.add(task)
            task.add_done_callback(self._render_done)

    def _render_done(self, task: asyncio.Task[Any]) -> None:
        self._render_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Render delivery failed for room %s: %r", self.room_id, exc)

    # ------------------------------------------------------------------
    # stream callbacks

    def _on_room(self, update: RoomUpdate) -> None:
        if self._closed:
            return
        if not update.exists or update.room is None:
            self._fail("Room eliminata")
            return

        room = update.room
        previous_status = self.state.status
        self.state.room = room
        self.state.is_host = room.host_id == self.user_id

        if room.status == "archived":
            if not self._leaving:
                self._notice("warning", "L'host ha chiuso la room")
            self.cleanup()
            self._end_room()
            return

        self.state.status = room.status
        if previous_status != room.status:
            if room.status == "active" and previous_status == "lobby":
                self._notice("success", "Allenamento iniziato!")
                self.events.emit("workout-started", room)
            elif room.status == "finished":
                self._notice("success", "Allenamento terminato!")
                self.events.emit("workout-ended", room)
                self._end_room()
        self._schedule_render()

    def _on_members(self, update: MembersUpdate) -> None:
        if self._closed:
            return
        self.state.members = update.members
        for member in update.changes.added:
            if member.uid != self.user_id:
                self._notice("info", f"{member.display_name or 'Utente'} è entrato")
        for member in update.changes.removed:
            if member.uid != self.user_id:
                self._notice("info", f"{member.display_name or 'Utente'} è uscito")
        if (
            not self._leaving
            and self.state.status in ("lobby", "active")
            and any(member.uid == self.user_id for member in update.changes.removed)
        ):
            self._fail("Sei stato rimosso dalla room")
            return
        self._schedule_render()

    def _on_metrics(self, update: MetricsUpdate) -> None:
        if self._closed:
            return
        self.state.leaderboard = update.leaderboard
        self.state.deltas = update.deltas
        self._schedule_render()

    def _on_log(self, update: WorkoutLogUpdate) -> None:
        if self._closed:
            return
        self.state.log = update.log
        self._schedule_render()

    def _on_stream_dead(self, dead: StreamDead) -> None:
        if self._closed:
            return
        if dead.stream == "room":
            self._fail("Connessione alla room persa")
            return
        self.state.stale_streams.add(dead.stream)
        self._notice("warning", "Aggiornamenti in tempo reale interrotti")
        self._schedule_render()

    # ------------------------------------------------------------------
    # user actions

    def _report(self, result: ServiceResult) -> ServiceResult:
        if not result.success:
            self._notice("error", result.error or "Operazione non riuscita")
        return result

    def _is_me_ready(self) -> bool:
        me = next((member for member in self.state.members if member.uid == self.user_id), None)
        return bool(me and me.ready_status)

    async def toggle_ready(self) -> ServiceResult:
        result = await self._rooms.set_ready_status(self.room_id, not self._is_me_ready())
        return self._report(result)

    async def start_workout(self) -> ServiceResult:
        return self._report(await self._rooms.start_workout(self.room_id))

    async def end_workout(self) -> ServiceResult:
        return self._report(await self._rooms.end_workout(self.room_id))

    async def leave_room(self) -> ServiceResult:
        self._leaving = True
        result = await self._rooms.leave_room(self.room_id)
        if not result.success:
            self._leaving = False
            return self._report(result)
        self.cleanup()
        self._end_room()
        return result

    async def push_set(
        self,
        exercise: Any,
        reps: Any,
        weight: Any,
        set_number: Any = None,
    ) -> ServiceResult:
        if self.state.status != "active":
            return self._report(ServiceResult.fail("L'allenamento non è in corso", "conflict"))
        result = await self._sync.push_metric_update(
            self.room_id,
            exercise=exercise,
            reps=reps,
            weight=weight,
            set_number=set_number,
        )
        return self._report(result)

    async def set_exercise(self, exercise: str | None) -> ServiceResult:
        return self._report(await self._sync.update_current_exercise(self.room_id, exercise))

    def acknowledge_finished(self) -> bool:
        if self.state.status != "finished":
            return False
        self.cleanup()
        return True
