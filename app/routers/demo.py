# app/routers/demo.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from app.services.traffic import DEFAULT_INTERVAL_MS, MIN_INTERVAL_MS

router = APIRouter(prefix="/api/demo/traffic", tags=["demo"])


class TrafficStart(BaseModel):
    interval: int = Field(DEFAULT_INTERVAL_MS, ge=MIN_INTERVAL_MS, le=60_000)


@router.post("/start")
async def start_traffic(request: Request, body: Optional[TrafficStart] = None):
    body = body or TrafficStart()
    await request.app.state.traffic.start(body.interval)
    return {"success": True, "message": "Traffic generator started", "interval": body.interval}


@router.post("/stop")
async def stop_traffic(request: Request):
    was_running = await request.app.state.traffic.stop()
    return {"success": True, "message": "Traffic generator stopped" if was_running else "Traffic generator was not running"}


@router.get("/status")
async def traffic_status(request: Request):
    return await request.app.state.traffic.status()
