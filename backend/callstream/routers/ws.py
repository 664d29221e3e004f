from __future__ import annotations

import json
from typing import Optional

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status
from starlette.concurrency import run_in_threadpool

from callstream.config import get_settings

router = APIRouter(tags=["realtime"])
logger = structlog.get_logger(__name__)


def _frame_type(raw: str) -> Optional[str]:
    try:
        frame = json.loads(raw)
    except ValueError:
        return None
    return frame.get("type") if isinstance(frame, dict) else None


@router.websocket("/ws")
async def subscriber_socket(
    websocket: WebSocket,
    api_key: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
):
    """
    Live tenant updates. Any client frame counts as a heartbeat acknowledgement;
    a ``{"type": "ping"}`` frame is answered with a pong.
    """
    credential = api_key or websocket.headers.get(get_settings().TENANT_API_KEY_HEADER)
    tenant_id = await run_in_threadpool(websocket.app.state.tenant_resolver.resolve_tenant, credential)
    if tenant_id is None:
        logger.warning("ws.rejected", reason="invalid_api_key")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    manager = websocket.app.state.broadcaster
    subscriber = manager.subscribe(tenant_id, websocket, end_user_id=user_id)
    try:
        await websocket.send_json(
            {
                "type": "connected",
                "tenant_id": tenant_id,
                "connection_id": subscriber.id,
                "user_id": user_id,
            }
        )
        while True:
            raw = await websocket.receive_text()
            manager.mark_alive(subscriber)
            if _frame_type(raw) == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        manager.unsubscribe(tenant_id, subscriber)
