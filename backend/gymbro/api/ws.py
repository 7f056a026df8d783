from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from gymbro.identity import identity_from_headers
from gymbro.realtime_sync import RealtimeSync
from gymbro.room_store import RoomStore
from gymbro.room_types import Room, ServiceResult
from gymbro.room_utils import log_event, mask_uid, sanitize_room_id
from gymbro.session_controller import RoomSessionController

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])

SEND_DRAIN_TIMEOUT_S = 2.0


def _increment_stat(stats: dict[str, int], key: str, amount: int = 1) -> None:
    stats[key] = int(stats.get(key, 0)) + amount


async def _send_safe(ws: WebSocket, payload: dict[str, Any]) -> bool:
    try:
        await ws.send_text(json.dumps(payload, ensure_ascii=False, separators=(",", ":")))
    except Exception:
        return False
    return True


async def _sender(ws: WebSocket, queue: asyncio.Queue[dict[str, Any] | None]) -> None:
    while True:
        payload = await queue.get()
        if payload is None:
            return
        if not await _send_safe(ws, payload):
            return


async def _dispatch(controller: RoomSessionController, data: dict[str, Any]) -> ServiceResult | dict[str, Any] | None:
    message_type = str(data.get("type") or "")
    if message_type == "ping":
        return {"type": "pong"}
    if message_type == "ready":
        return await controller.toggle_ready()
    if message_type == "start-workout":
        return await controller.start_workout()
    if message_type == "end-workout":
        return await controller.end_workout()
    if message_type == "leave":
        return await controller.leave_room()
    if message_type == "push-set":
        return await controller.push_set(
            data.get("exercise"),
            reps=data.get("reps"),
            weight=data.get("weight"),
            set_number=data.get("set"),
        )
    if message_type == "set-exercise":
        return await controller.set_exercise(data.get("exercise"))
    if message_type == "ack-finished":
        acknowledged = controller.acknowledge_finished()
        return ServiceResult.ok() if acknowledged else ServiceResult.fail("Allenamento non terminato", "conflict")
    return None


@router.websocket("/api/rooms/{room_id}/ws")
async def room_session_socket(ws: WebSocket, room_id: str) -> None:
    await ws.accept()
    app_state = ws.app.state
    stats: dict[str, int] = app_state.ws_stats
    _increment_stat(stats, "connectAttempts")

    identity = identity_from_headers(
        ws.query_params.get("uid") or ws.headers.get("x-user-id"),
        ws.query_params.get("name") or ws.headers.get("x-user-name"),
        ws.query_params.get("photo") or ws.headers.get("x-user-photo"),
    )
    user = identity.current_user()
    room_key = sanitize_room_id(room_id)
    if user is None or not room_key:
        _increment_stat(stats, "connectRejected")
        await _send_safe(
            ws,
            {
                "type": "error",
                "code": "unauthenticated" if user is None else "invalid-argument",
                "message": "Utente non autenticato" if user is None else "ID room non valido",
            },
        )
        await ws.close(code=1008)
        log_event(logger, "connect_rejected", logging.WARNING, roomId=room_key or "-")
        return

    queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
    sender = asyncio.create_task(_sender(ws, queue), name=f"{room_key}:{mask_uid(user.uid)}:sender")

    def on_room_end(room: Room | None) -> None:
        queue.put_nowait({"type": "room-ended", "room": room.to_payload() if room else None})

    def on_error(message: str) -> None:
        queue.put_nowait({"type": "error", "code": "fatal", "message": message})

    sync = RealtimeSync(app_state.store, identity)
    controller = RoomSessionController(
        room_key,
        user.uid,
        RoomStore(app_state.store, identity, retry=app_state.retry_policy),
        sync,
        render=queue.put_nowait,
        on_room_end=on_room_end,
        on_error=on_error,
    )
    controller.events.on("notice", lambda notice: queue.put_nowait({"type": "notice", **notice}))
    session_closed = asyncio.Event()
    controller.events.on("closed", lambda _room_id: session_closed.set())
    closed_waiter = asyncio.create_task(session_closed.wait())

    app_state.sync_registry.add(sync)
    _increment_stat(stats, "activeConnections")
    stats["peakConnections"] = max(int(stats.get("peakConnections", 0)), stats["activeConnections"])
    log_event(logger, "connected", roomId=room_key, uid=mask_uid(user.uid))

    disconnect_reason = "unknown"
    disconnected = False
    try:
        if not await controller.init():
            disconnect_reason = "init_failed"
        else:
            while not controller.closed:
                receive = asyncio.ensure_future(ws.receive_text())
                await asyncio.wait({receive, closed_waiter}, return_when=asyncio.FIRST_COMPLETED)
                if not receive.done():
                    receive.cancel()
                    break
                raw = receive.result()
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if not isinstance(data, dict):
                    continue
                _increment_stat(stats, "messagesReceived")
                result = await _dispatch(controller, data)
                if isinstance(result, ServiceResult):
                    ack = {"type": "ack", "action": data.get("type"), **result.to_payload()}
                    queue.put_nowait(ack)
                elif result is not None:
                    queue.put_nowait(result)
            disconnect_reason = "session_closed"
    except WebSocketDisconnect:
        disconnected = True
        disconnect_reason = "websocket_disconnect"
    except Exception:
        disconnect_reason = "server_error"
        logger.exception("Unexpected websocket error for room %s", room_key)
    finally:
        closed_waiter.cancel()
        controller.cleanup()
        sync.cleanup()
        await sync.wait_for_log_writes()
        app_state.sync_registry.discard(sync)
        _increment_stat(stats, "activeConnections", -1)
        queue.put_nowait(None)
        try:
            await asyncio.wait_for(sender, timeout=SEND_DRAIN_TIMEOUT_S)
        except asyncio.TimeoutError:
            sender.cancel()
        if not disconnected:
            try:
                await ws.close(code=1000)
            except Exception:
                logger.debug("Socket already closed for room %s", room_key)
        log_event(logger, "disconnected", roomId=room_key, uid=mask_uid(user.uid), reason=disconnect_reason)
