# app/routers/live.py
from __future__ import annotations

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

router = APIRouter(tags=["live"])


@router.websocket("/ws")
async def live_feed(websocket: WebSocket):
    """
    Push channel for dashboards. Server -> client only; anything the client
    sends is ignored. Envelopes: {"type": ..., "data": {...}}.
    """
    hub = websocket.app.state.hub
    await websocket.accept()
    conn = await hub.register(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await hub.unregister(conn)
