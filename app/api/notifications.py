from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from app.core.time import utc_now
from app.services.scheduler import Pipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications")


def get_pipeline() -> Pipeline:
    raise RuntimeError("Pipeline must be provided by app dependency override")


@router.websocket("/ws")
async def notifications_ws(
    ws: WebSocket,
    session_id: Optional[str] = None,
    pipeline: Pipeline = Depends(get_pipeline),
):
    await ws.accept()
    sid = session_id or uuid.uuid4().hex
    connected_at = utc_now()

    async def sink(message: Dict[str, Any]) -> None:
        await ws.send_json(message)

    dispatcher = pipeline.dispatcher
    await dispatcher.connect(sid, sink, connect_ts=connected_at)
    await dispatcher.subscribe(sid)
    await ws.send_json({"event": "SetSessionStartTime", "payload": {"session_id": sid, "since": connected_at.isoformat()}})

    try:
        while True:
            # clients only ping; anything they send is ignored
            await ws.receive_text()
    except WebSocketDisconnect:
        logger.debug("ws_closed session=%s", sid)
    finally:
        await dispatcher.unsubscribe(sid)


@router.post("/test")
async def send_test_notification(
    kind: Literal["incident", "warning112"] = "incident",
    session_id: Optional[str] = None,
    pipeline: Pipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    sent = await pipeline.dispatcher.send_test(kind, session_id=session_id)
    return {"sent": sent, "kind": kind}
