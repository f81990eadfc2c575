# app/routers/optimizations.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from app.db.models import OPT_APPLIED, OPT_REJECTED
from app.db.repo import InvalidTransition
from app.services.pipeline import TOPIC_OPTIMIZATION_APPLIED

router = APIRouter(prefix="/api/optimizations", tags=["optimizations"])

APPLIED_COUNTER_KEY = "stats:optimizations_applied"


class OptimizationOut(BaseModel):
    id: int
    queryLogId: int
    optimizationType: str
    suggestion: str
    confidence: int
    estimatedImprovement: Optional[int] = None
    status: str
    createdAt: Optional[str] = None


class StatusChangeResponse(BaseModel):
    success: bool
    message: str
    optimization: OptimizationOut


def _opt_out(row) -> OptimizationOut:
    return OptimizationOut(
        id=row.id,
        queryLogId=row.query_log_id,
        optimizationType=row.optimization_type,
        suggestion=row.suggestion,
        confidence=row.confidence,
        estimatedImprovement=row.estimated_improvement,
        status=row.status,
        createdAt=row.created_at.isoformat() if row.created_at else None,
    )


@router.get("/active", response_model=List[OptimizationOut])
async def active_optimizations(request: Request, limit: int = Query(10, ge=1, le=100)) -> List[OptimizationOut]:
    storage = request.app.state.storage
    rows = await run_in_threadpool(storage.query_active_optimizations, limit)
    return [_opt_out(r) for r in rows]


async def _change_status(request: Request, optimization_id: int, status: str) -> OptimizationOut:
    storage = request.app.state.storage
    try:
        row = await run_in_threadpool(storage.update_optimization_status, optimization_id, status)
    except LookupError:
        raise HTTPException(status_code=404, detail="Optimization not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    request.state.log_context = {"optimization_id": optimization_id, "new_status": status}
    return _opt_out(row)


@router.post("/{optimization_id}/apply", response_model=StatusChangeResponse)
async def apply_optimization(optimization_id: int, request: Request) -> StatusChangeResponse:
    """Mark a pending suggestion as applied (no schema change is actually executed)."""
    opt = await _change_status(request, optimization_id, OPT_APPLIED)
    gateway = request.app.state.gateway
    await gateway.increment(APPLIED_COUNTER_KEY, 1)
    await gateway.publish(TOPIC_OPTIMIZATION_APPLIED, {
        "optimizationId": optimization_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })
    return StatusChangeResponse(success=True, message="Optimization applied successfully", optimization=opt)


@router.post("/{optimization_id}/reject", response_model=StatusChangeResponse)
async def reject_optimization(optimization_id: int, request: Request) -> StatusChangeResponse:
    opt = await _change_status(request, optimization_id, OPT_REJECTED)
    return StatusChangeResponse(success=True, message="Optimization rejected", optimization=opt)
