from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request

from gymbro.identity import StaticIdentity, identity_from_headers
from gymbro.realtime_sync import RealtimeSync
from gymbro.room_store import RoomStore
from gymbro.room_types import ServiceResult
from gymbro.schemas.rooms import (
    CreateRoomRequest,
    ExerciseRequest,
    InviteRequest,
    MemberRequest,
    MetricUpdateRequest,
    ReadyRequest,
)

router = APIRouter(tags=["rooms"])

STATUS_BY_CODE = {
    "unauthenticated": 401,
    "invalid-argument": 400,
    "permission-denied": 403,
    "not-found": 404,
    "conflict": 409,
    "already-exists": 409,
    "unavailable": 503,
}


def get_identity(
    x_user_id: str | None = Header(default=None),
    x_user_name: str | None = Header(default=None),
    x_user_photo: str | None = Header(default=None),
) -> StaticIdentity:
    return identity_from_headers(x_user_id, x_user_name, x_user_photo)


def get_room_store(request: Request, identity: StaticIdentity = Depends(get_identity)) -> RoomStore:
    return RoomStore(request.app.state.store, identity, retry=request.app.state.retry_policy)


def get_realtime_sync(request: Request, identity: StaticIdentity = Depends(get_identity)) -> RealtimeSync:
    return RealtimeSync(request.app.state.store, identity)


def _unwrap(result: ServiceResult) -> dict[str, object]:
    if not result.success:
        raise HTTPException(
            status_code=STATUS_BY_CODE.get(result.code or "", 500),
            detail={"error": result.error, "code": result.code},
        )
    return result.to_payload()


@router.post("/api/rooms")
async def create_room(payload: CreateRoomRequest, rooms: RoomStore = Depends(get_room_store)) -> dict[str, object]:
    return _unwrap(
        await rooms.create_room(
            payload.name,
            workout_id=payload.workoutId,
            max_capacity=payload.maxCapacity,
            privacy=payload.privacy,
        )
    )


@router.get("/api/rooms/mine")
async def my_active_rooms(rooms: RoomStore = Depends(get_room_store)) -> dict[str, object]:
    return _unwrap(await rooms.get_my_active_rooms())


@router.get("/api/rooms/invites")
async def my_invites(rooms: RoomStore = Depends(get_room_store)) -> dict[str, object]:
    return _unwrap(await rooms.get_my_invites())


@router.get("/api/rooms/{room_id}")
async def get_room(room_id: str, rooms: RoomStore = Depends(get_room_store)) -> dict[str, object]:
    return _unwrap(await rooms.get_room(room_id))


@router.get("/api/rooms/{room_id}/members")
async def room_members(room_id: str, rooms: RoomStore = Depends(get_room_store)) -> dict[str, object]:
    return _unwrap(await rooms.get_room_members(room_id))


@router.get("/api/rooms/{room_id}/leaderboard")
async def room_leaderboard(room_id: str, rooms: RoomStore = Depends(get_room_store)) -> dict[str, object]:
    return _unwrap(await rooms.get_leaderboard(room_id))


@router.post("/api/rooms/{room_id}/join")
async def join_room(room_id: str, rooms: RoomStore = Depends(get_room_store)) -> dict[str, object]:
    return _unwrap(await rooms.join_room(room_id))


@router.post("/api/rooms/{room_id}/leave")
async def leave_room(room_id: str, rooms: RoomStore = Depends(get_room_store)) -> dict[str, object]:
    return _unwrap(await rooms.leave_room(room_id))


@router.post("/api/rooms/{room_id}/ready")
async def set_ready(
    room_id: str,
    payload: ReadyRequest,
    rooms: RoomStore = Depends(get_room_store),
) -> dict[str, object]:
    return _unwrap(await rooms.set_ready_status(room_id, payload.isReady))


@router.post("/api/rooms/{room_id}/start")
async def start_workout(room_id: str, rooms: RoomStore = Depends(get_room_store)) -> dict[str, object]:
    return _unwrap(await rooms.start_workout(room_id))


@router.post("/api/rooms/{room_id}/end")
async def end_workout(room_id: str, rooms: RoomStore = Depends(get_room_store)) -> dict[str, object]:
    return _unwrap(await rooms.end_workout(room_id))


@router.post("/api/rooms/{room_id}/kick")
async def kick_member(
    room_id: str,
    payload: MemberRequest,
    rooms: RoomStore = Depends(get_room_store),
) -> dict[str, object]:
    return _unwrap(await rooms.kick_member(room_id, payload.uid))


@router.post("/api/rooms/{room_id}/transfer-host")
async def transfer_host(
    room_id: str,
    payload: MemberRequest,
    rooms: RoomStore = Depends(get_room_store),
) -> dict[str, object]:
    return _unwrap(await rooms.transfer_host(room_id, payload.uid))


@router.post("/api/rooms/{room_id}/invites")
async def invite_member(
    room_id: str,
    payload: InviteRequest,
    rooms: RoomStore = Depends(get_room_store),
) -> dict[str, object]:
    return _unwrap(await rooms.invite_member(room_id, payload.inviteeUid))


@router.post("/api/rooms/{room_id}/invites/{invite_id}/accept")
async def accept_invite(
    room_id: str,
    invite_id: str,
    rooms: RoomStore = Depends(get_room_store),
) -> dict[str, object]:
    return _unwrap(await rooms.accept_invite(room_id, invite_id))


@router.post("/api/rooms/{room_id}/invites/{invite_id}/decline")
async def decline_invite(
    room_id: str,
    invite_id: str,
    rooms: RoomStore = Depends(get_room_store),
) -> dict[str, object]:
    return _unwrap(await rooms.decline_invite(room_id, invite_id))


@router.post("/api/rooms/{room_id}/metrics")
async def push_metrics(
    room_id: str,
    payload: MetricUpdateRequest,
    background_tasks: BackgroundTasks,
    sync: RealtimeSync = Depends(get_realtime_sync),
) -> dict[str, object]:
    result = await sync.push_metric_update(
        room_id,
        exercise=payload.exercise,
        reps=payload.reps,
        weight=payload.weight,
        set_number=payload.set,
    )
    background_tasks.add_task(sync.wait_for_log_writes)
    return _unwrap(result)


@router.post("/api/rooms/{room_id}/exercise")
async def set_current_exercise(
    room_id: str,
    payload: ExerciseRequest,
    sync: RealtimeSync = Depends(get_realtime_sync),
) -> dict[str, object]:
    return _unwrap(await sync.update_current_exercise(room_id, payload.exercise))
