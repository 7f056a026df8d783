from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from .config import settings
from .documents import (
    SERVER_TIMESTAMP,
    DocumentChange,
    DocumentNotFound,
    DocumentSnapshot,
    DocumentStore,
    Increment,
    QuerySnapshot,
    Snapshot,
    Unsubscribe,
    diff_collection,
    now_ms,
)
from .identity import CurrentUser, IdentityProvider
from .room_constants import STREAM_TYPES
from .room_errors import InvalidArgument, NotFound, RoomError, Unauthenticated
from .room_leaderboard import build_leaderboard, compute_deltas
from .room_types import (
    ActiveMetrics,
    LeaderboardEntry,
    Member,
    MemberChanges,
    MembersUpdate,
    MetricsUpdate,
    Room,
    RoomUpdate,
    ServiceResult,
    StreamDead,
    StreamType,
    WorkoutLogEntry,
    WorkoutLogUpdate,
)
from .room_events import Subscription
from .room_utils import (
    log_collection,
    log_event,
    mask_uid,
    members_collection,
    metrics_collection,
    metrics_path,
    room_path,
    sanitize_room_id,
)

logger = logging.getLogger(__name__)

DeadCallback = Callable[[StreamDead], None]


@dataclass(eq=False)
class _StreamListener:
    room_id: str
    stream: StreamType
    path: str
    debounce_ms: int
    deliver: Callable[[Snapshot, list[DocumentChange]], None]
    on_dead: DeadCallback | None = None
    active: bool = True
    error_count: int = 0
    unsubscribe: Unsubscribe | None = None
    debounce_task: asyncio.Task[None] | None = None
    retry_task: asyncio.Task[None] | None = None
    pending_snapshot: Snapshot | None = None
    pending_changes: list[DocumentChange] = field(default_factory=list)
    previous_leaderboard: list[LeaderboardEntry] = field(default_factory=list)
    last_docs: dict[str, DocumentSnapshot] = field(default_factory=dict)
    resubscribed: bool = False

    @property
    def key(self) -> tuple[str, StreamType]:
        return (self.room_id, self.stream)

    def detach(self) -> None:
        unsubscribe, self.unsubscribe = self.unsubscribe, None
        if unsubscribe is None:
            return
        try:
            unsubscribe()
        except Exception:
            logger.exception("Store unsubscribe failed for %s", self.path)

    def cancel_timers(self) -> None:
        for task in (self.debounce_task, self.retry_task):
            if task is not None and not task.done():
                task.cancel()
        self.debounce_task = None
        self.retry_task = None
        self.pending_snapshot = None
        self.pending_changes = []


def _fold_changes(changes: list[DocumentChange]) -> list[DocumentChange]:
    """Collapse the change annotations of several pushes into one per doc."""
    first: dict[str, DocumentChange] = {}
    last: dict[str, DocumentChange] = {}
    for change in changes:
        first.setdefault(change.doc.path, change)
        last[change.doc.path] = change

    folded: list[DocumentChange] = []
    for path, final in last.items():
        initial = first[path].type
        if initial == "added" and final.type == "removed":
            continue
        if initial == "added":
            folded.append(DocumentChange("added", final.doc))
        elif final.type == "removed":
            folded.append(final)
        elif initial == "removed":
            folded.append(DocumentChange("modified", final.doc))
        else:
            folded.append(final)
    return folded


def _log_sort_key(entry: WorkoutLogEntry) -> tuple[int, int]:
    if entry.timestamp is None:
        return (1, 0)
    return (0, entry.timestamp)


def _member_sort_key(member: Member) -> tuple[int, int, str]:
    if member.joined_at is None:
        return (1, 0, member.uid)
    return (0, member.joined_at, member.uid)


class RealtimeSync:
    """Turns raw store pushes into debounced, enriched room snapshots.

    Streams are keyed ``(room_id, stream)``; watching the same key again
    replaces the previous listener. Disposed listeners never fire again,
    including for pushes already queued on the event loop.
    """

    def __init__(
        self,
        store: DocumentStore,
        identity: IdentityProvider,
        members_debounce_ms: int | None = None,
        metrics_debounce_ms: int | None = None,
        retry_delay_ms: int | None = None,
        max_retries: int | None = None,
    ) -> None:
        self._store = store
        self._identity = identity
        self._members_debounce_ms = (
            settings.members_debounce_ms if members_debounce_ms is None else max(0, members_debounce_ms)
        )
        self._metrics_debounce_ms = (
            settings.metrics_debounce_ms if metrics_debounce_ms is None else max(0, metrics_debounce_ms)
        )
        self._retry_delay_ms = settings.stream_retry_delay_ms if retry_delay_ms is None else max(0, retry_delay_ms)
        self._max_retries = settings.stream_max_retries if max_retries is None else max(0, max_retries)
        self._listeners: dict[tuple[str, StreamType], _StreamListener] = {}
        self._member_cache: dict[str, list[Member]] = {}
        self._log_tasks: set[asyncio.Task[None]] = set()
        self.stats: dict[str, int] = {
            "snapshotsReceived": 0,
            "flushes": 0,
            "streamErrors": 0,
            "resubscribes": 0,
            "deadStreams": 0,
            "metricPushes": 0,
            "logAppendFailures": 0,
        }

    def _increment_stat(self, key: str, amount: int = 1) -> None:
        self.stats[key] = int(self.stats.get(key, 0)) + amount

    # ------------------------------------------------------------------
    # listener plumbing

    def _watch(
        self,
        room_id: str,
        stream: StreamType,
        path: str,
        debounce_ms: int,
        deliver: Callable[[_StreamListener, Snapshot, list[DocumentChange]], None],
        on_dead: DeadCallback | None,
    ) -> Subscription:
        previous = self._listeners.get((room_id, stream))
        if previous is not None:
            self._dispose(previous)

        listener = _StreamListener(
            room_id=room_id,
            stream=stream,
            path=path,
            debounce_ms=debounce_ms,
            deliver=lambda snapshot, changes: deliver(listener, snapshot, changes),
            on_dead=on_dead,
        )
        self._listeners[listener.key] = listener
        self._attach(listener)
        log_event(logger, "watch", logging.DEBUG, roomId=room_id, stream=stream, debounceMs=debounce_ms)
        return Subscription(lambda: self._dispose(listener))

    def _attach(self, listener: _StreamListener) -> None:
        def on_next(snapshot: Snapshot) -> None:
            if not listener.active:
                return
            listener.error_count = 0
            self._increment_stat("snapshotsReceived")
            if isinstance(snapshot, QuerySnapshot):
                if listener.resubscribed:
                    # a fresh store subscription reports every doc as added
                    changes = diff_collection(listener.last_docs, snapshot.docs)
                else:
                    changes = list(snapshot.changes)
                listener.pending_changes.extend(changes)
                listener.last_docs = {doc.path: doc for doc in snapshot.docs}
            listener.resubscribed = False
            if listener.debounce_ms <= 0:
                self._flush(listener, snapshot)
                return
            listener.pending_snapshot = snapshot
            self._schedule_flush(listener)

        def on_error(exc: Exception) -> None:
            if not listener.active:
                return
            self._handle_stream_error(listener, exc)

        try:
            listener.unsubscribe = self._store.subscribe(listener.path, on_next, on_error)
        except Exception as exc:
            self._handle_stream_error(listener, exc)

    def _schedule_flush(self, listener: _StreamListener) -> None:
        task = listener.debounce_task
        if task is not None and not task.done():
            task.cancel()
        delay_s = listener.debounce_ms / 1000

        async def runner() -> None:
            try:
                await asyncio.sleep(delay_s)
            except asyncio.CancelledError:
                return
            snapshot = listener.pending_snapshot
            listener.pending_snapshot = None
            listener.debounce_task = None
            if snapshot is not None:
                self._flush(listener, snapshot)

        listener.debounce_task = asyncio.create_task(
            runner(),
            name=f"{listener.room_id}:{listener.stream}:debounce",
        )

    def _flush(self, listener: _StreamListener, snapshot: Snapshot) -> None:
        if not listener.active:
            return
        changes = _fold_changes(listener.pending_changes)
        listener.pending_changes = []
        self._increment_stat("flushes")
        try:
            listener.deliver(snapshot, changes)
        except Exception:
            logger.exception("Stream callback failed for %s/%s", listener.room_id, listener.stream)

    def _handle_stream_error(self, listener: _StreamListener, exc: Exception) -> None:
        self._increment_stat("streamErrors")
        listener.detach()
        listener.error_count += 1

        if listener.error_count > self._max_retries:
            self._increment_stat("deadStreams")
            log_event(
                logger,
                "stream_dead",
                logging.ERROR,
                roomId=listener.room_id,
                stream=listener.stream,
                retries=self._max_retries,
                error=str(exc) or type(exc).__name__,
            )
            on_dead = listener.on_dead
            self._dispose(listener)
            if on_dead is not None:
                try:
                    on_dead(
                        StreamDead(
                            room_id=listener.room_id,
                            stream=listener.stream,
                            error=str(exc) or type(exc).__name__,
                            retries=self._max_retries,
                        )
                    )
                except Exception:
                    logger.exception("Dead stream callback failed for %s", listener.path)
            return

        delay_ms = self._retry_delay_ms * 2 ** (listener.error_count - 1)
        log_event(
            logger,
            "stream_retry",
            logging.WARNING,
            roomId=listener.room_id,
            stream=listener.stream,
            attempt=listener.error_count,
            delayMs=delay_ms,
            error=str(exc) or type(exc).__name__,
        )

        async def runner() -> None:
            try:
                await asyncio.sleep(delay_ms / 1000)
            except asyncio.CancelledError:
                return
            listener.retry_task = None
            if not listener.active:
                return
            self._increment_stat("resubscribes")
            listener.resubscribed = True
            self._attach(listener)

        listener.retry_task = asyncio.create_task(
            runner(),
            name=f"{listener.room_id}:{listener.stream}:retry",
        )

    def _dispose(self, listener: _StreamListener) -> None:
        listener.active = False
        listener.cancel_timers()
        listener.detach()
        if self._listeners.get(listener.key) is listener:
            self._listeners.pop(listener.key, None)

    # ------------------------------------------------------------------
    # watchers

    def watch_room(
        self,
        room_id: str,
        callback: Callable[[RoomUpdate], None],
        on_dead: DeadCallback | None = None,
    ) -> Subscription:
        def deliver(listener: _StreamListener, snapshot: Snapshot, _changes: list[DocumentChange]) -> None:
            if not isinstance(snapshot, DocumentSnapshot) or not snapshot.exists:
                callback(RoomUpdate(room_id=room_id, exists=False))
                return
            callback(
                RoomUpdate(
                    room_id=room_id,
                    exists=True,
                    room=Room.from_document(room_id, snapshot.to_dict()),
                )
            )

        return self._watch(room_id, "room", room_path(room_id), 0, deliver, on_dead)

    def watch_members(
        self,
        room_id: str,
        callback: Callable[[MembersUpdate], None],
        on_dead: DeadCallback | None = None,
    ) -> Subscription:
        def deliver(listener: _StreamListener, snapshot: Snapshot, changes: list[DocumentChange]) -> None:
            docs = snapshot.docs if isinstance(snapshot, QuerySnapshot) else []
            members = sorted(
                (Member.from_document(doc.id, doc.to_dict()) for doc in docs),
                key=_member_sort_key,
            )
            diff = MemberChanges()
            for change in changes:
                member = Member.from_document(change.doc.id, change.doc.to_dict())
                getattr(diff, change.type).append(member)
            self._member_cache[room_id] = members
            callback(MembersUpdate(room_id=room_id, members=members, changes=diff))

        return self._watch(
            room_id,
            "members",
            members_collection(room_id),
            self._members_debounce_ms,
            deliver,
            on_dead,
        )

    def watch_metrics(
        self,
        room_id: str,
        callback: Callable[[MetricsUpdate], None],
        on_dead: DeadCallback | None = None,
    ) -> Subscription:
        def deliver(listener: _StreamListener, snapshot: Snapshot, _changes: list[DocumentChange]) -> None:
            docs = snapshot.docs if isinstance(snapshot, QuerySnapshot) else []
            metrics = [ActiveMetrics.from_document(doc.id, doc.to_dict()) for doc in docs]
            leaderboard = build_leaderboard(metrics, self._member_cache.get(room_id))
            deltas = compute_deltas(listener.previous_leaderboard, leaderboard)
            listener.previous_leaderboard = leaderboard
            callback(
                MetricsUpdate(
                    room_id=room_id,
                    leaderboard=leaderboard,
                    deltas=deltas,
                    timestamp=now_ms(),
                )
            )

        return self._watch(
            room_id,
            "metrics",
            metrics_collection(room_id),
            self._metrics_debounce_ms,
            deliver,
            on_dead,
        )

    def watch_workout_log(
        self,
        room_id: str,
        callback: Callable[[WorkoutLogUpdate], None],
        on_dead: DeadCallback | None = None,
    ) -> Subscription:
        def deliver(listener: _StreamListener, snapshot: Snapshot, _changes: list[DocumentChange]) -> None:
            docs = snapshot.docs if isinstance(snapshot, QuerySnapshot) else []
            entries = sorted(
                (WorkoutLogEntry.from_document(doc.id, doc.to_dict()) for doc in docs),
                key=_log_sort_key,
            )
            callback(WorkoutLogUpdate(room_id=room_id, log=entries))

        return self._watch(room_id, "log", log_collection(room_id), 0, deliver, on_dead)

    # ------------------------------------------------------------------
    # writes

    def _require_user(self) -> CurrentUser:
        user = self._identity.current_user()
        if user is None or not user.uid:
            raise Unauthenticated("Utente non autenticato")
        return user

    @staticmethod
    def _require_room_id(room_id: Any) -> str:
        value = sanitize_room_id(room_id)
        if not value:
            raise InvalidArgument("ID room non valido")
        return value

    async def push_metric_update(
        self,
        room_id: str,
        exercise: Any,
        reps: Any,
        weight: Any,
        set_number: Any = None,
    ) -> ServiceResult:
        try:
            user = self._require_user()
            room_key = self._require_room_id(room_id)
            if not isinstance(exercise, str) or not exercise.strip():
                raise InvalidArgument("Esercizio non valido")
            if isinstance(reps, bool) or not isinstance(reps, (int, float)) or reps <= 0:
                raise InvalidArgument("Ripetizioni non valide")
            if isinstance(weight, bool) or not isinstance(weight, (int, float)) or weight < 0:
                raise InvalidArgument("Peso non valido")
            if set_number is not None and (
                isinstance(set_number, bool) or not isinstance(set_number, int) or set_number < 0
            ):
                raise InvalidArgument("Serie non valida")

            exercise_name = exercise.strip()
            volume = weight * reps
            batch = self._store.batch()
            batch.update(
                metrics_path(room_key, user.uid),
                {
                    "currentExercise": exercise_name,
                    "currentSet": set_number or Increment(1),
                    "totalVolume": Increment(volume),
                    "totalSets": Increment(1),
                    "lastSetWeight": weight,
                    "lastSetReps": reps,
                    "lastUpdate": SERVER_TIMESTAMP,
                },
            )
            batch.update(room_path(room_key), {"lastActivity": SERVER_TIMESTAMP})
            try:
                await batch.commit()
            except DocumentNotFound as exc:
                raise NotFound("Non sei nella room") from exc
        except RoomError as exc:
            return ServiceResult.fail(exc.message, exc.code)
        except Exception as exc:
            logger.exception("Metric push failed for room %s", room_id)
            return ServiceResult.fail(str(exc) or "Servizio non disponibile", "unavailable")

        self._increment_stat("metricPushes")
        entry = {
            "uid": user.uid,
            "exercise": exercise_name,
            "set": set_number or 0,
            "reps": reps,
            "weight": weight,
            "volume": volume,
            "timestamp": SERVER_TIMESTAMP,
        }
        task = asyncio.create_task(self._append_log(room_key, entry), name=f"{room_key}:log-append")
        self._log_tasks.add(task)
        task.add_done_callback(self._log_tasks.discard)
        log_event(
            logger,
            "metric_pushed",
            logging.DEBUG,
            roomId=room_key,
            uid=mask_uid(user.uid),
            exercise=exercise_name,
            volume=volume,
        )
        return ServiceResult.ok({"volume": volume})

    async def _append_log(self, room_id: str, entry: dict[str, Any]) -> None:
        try:
            await self._store.add(log_collection(room_id), entry)
        except Exception as exc:
            self._increment_stat("logAppendFailures")
            log_event(logger, "log_append_failed", logging.WARNING, roomId=room_id, error=str(exc))

    async def wait_for_log_writes(self) -> None:
        if self._log_tasks:
            await asyncio.gather(*list(self._log_tasks), return_exceptions=True)

    async def update_current_exercise(self, room_id: str, exercise: str | None) -> ServiceResult:
        try:
            user = self._require_user()
            room_key = self._require_room_id(room_id)
            name = exercise.strip() if isinstance(exercise, str) else ""
            try:
                await self._store.update(
                    metrics_path(room_key, user.uid),
                    {
                        "currentExercise": name or None,
                        "currentSet": 0,
                        "lastUpdate": SERVER_TIMESTAMP,
                    },
                )
            except DocumentNotFound as exc:
                raise NotFound("Non sei nella room") from exc
        except RoomError as exc:
            return ServiceResult.fail(exc.message, exc.code)
        except Exception as exc:
            logger.exception("Exercise update failed for room %s", room_id)
            return ServiceResult.fail(str(exc) or "Servizio non disponibile", "unavailable")
        return ServiceResult.ok({"currentExercise": name or None})

    # ------------------------------------------------------------------
    # teardown and introspection

    def unsubscribe_room(self, room_id: str) -> None:
        for stream in STREAM_TYPES:
            listener = self._listeners.get((room_id, stream))
            if listener is not None:
                self._dispose(listener)
        self._member_cache.pop(room_id, None)
        log_event(logger, "unwatch", logging.DEBUG, roomId=room_id)

    def cleanup(self) -> None:
        for listener in list(self._listeners.values()):
            self._dispose(listener)
        self._listeners.clear()
        self._member_cache.clear()

    @property
    def active_listener_count(self) -> int:
        return len(self._listeners)

    def is_watching_room(self, room_id: str) -> bool:
        return (room_id, "room") in self._listeners

    def cached_members(self, room_id: str) -> list[Member]:
        return list(self._member_cache.get(room_id, []))
