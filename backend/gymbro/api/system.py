from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(tags=["system"])


@router.get("/api/health")
async def health(request: Request) -> dict[str, object]:
    state = request.app.state
    store_ok = await state.store.ping()
    bus_ok = await state.bus.ping()
    sync_stats: dict[str, int] = {}
    for sync in list(state.sync_registry):
        for key, value in sync.stats.items():
            sync_stats[key] = sync_stats.get(key, 0) + int(value)
    ws_stats = state.ws_stats
    return {
        "ok": store_ok,
        "documents": {"backend": state.document_backend, "status": "up" if store_ok else "down"},
        "changeBus": {"kind": state.bus.kind, "status": "up" if bus_ok else "down"},
        "websocket": {
            "activeConnections": ws_stats.get("activeConnections", 0),
            "peakConnections": ws_stats.get("peakConnections", 0),
            "connectAttempts": ws_stats.get("connectAttempts", 0),
            "connectRejected": ws_stats.get("connectRejected", 0),
        },
        "sync": sync_stats,
    }
