# =============================================
# File: app/routers/metrics.py
# Purpose: Expose internal metrics, dashboard summary, health and AI insights as JSON
# =============================================
from __future__ import annotations
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from loguru import logger

from app.utils.metrics import snapshot

router = APIRouter(tags=["metrics"])

INSIGHTS_SAMPLE = 50

@router.get("/metrics")
def get_metrics():
    """Return in-process metrics (JSON)."""
    return snapshot()

@router.get("/api/metrics")
async def dashboard_metrics(request: Request):
    """Headline numbers computed from the stored query log."""
    storage = request.app.state.storage
    return await run_in_threadpool(storage.summary)

@router.get("/api/health")
async def api_health(request: Request):
    storage = request.app.state.storage
    broker = request.app.state.gateway.mode
    try:
        await run_in_threadpool(storage.ping)
    except Exception as e:
        logger.error(f"[health] database check failed: {e}")
        return JSONResponse(status_code=500, content={"status": "unhealthy", "database": "error", "redis": broker})
    return {
        "status": "healthy",
        "database": "connected",
        "redis": broker,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

@router.get("/api/insights")
async def insights(request: Request):
    """AI (or heuristic) summary over the most recent queries."""
    storage = request.app.state.storage
    advisor = request.app.state.advisor
    rows = await run_in_threadpool(storage.query_recent_events, INSIGHTS_SAMPLE)
    counts: dict[str, int] = {}
    for r in rows:
        counts[r.query_text] = counts.get(r.query_text, 0) + 1
    queries = []
    seen = set()
    for r in rows:
        if r.query_text in seen:
            continue
        seen.add(r.query_text)
        queries.append({"queryText": r.query_text, "executionTime": r.execution_time, "frequency": counts[r.query_text]})
    return await advisor.generate_insights(queries)
