# app/routers/queries.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field, field_validator

from app.services.pipeline import IngestError, QUERY_STREAM_KEY
from app.utils import slog

router = APIRouter(prefix="/api/queries", tags=["queries"])


# --------- Schemas ---------

class IngestRequest(BaseModel):
    """
    Manually reported query execution.
    - query_text: raw SQL or operation description.
    - execution_time_ms: measured duration, non-negative.
    - endpoint: optional originating endpoint ("POST /api/orders" or "/api/orders").
    """
    query_text: str = Field(..., min_length=1, max_length=10_000)
    execution_time_ms: int = Field(..., ge=0)
    endpoint: Optional[str] = Field(None, max_length=512)

    @field_validator("query_text")
    @classmethod
    def _trim_query(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("query_text must not be empty")
        return v


class QueryEventOut(BaseModel):
    id: int
    queryText: str
    executionTime: int
    affectedTables: List[str]
    queryType: str
    status: str
    createdAt: Optional[str] = None


class IngestResponse(BaseModel):
    event: QueryEventOut
    enrichmentScheduled: bool
    steps: Dict[str, bool]


def _event_out(row) -> QueryEventOut:
    return QueryEventOut(
        id=row.id,
        queryText=row.query_text,
        executionTime=row.execution_time,
        affectedTables=list(row.affected_tables or []),
        queryType=row.query_type,
        status=row.status,
        createdAt=row.created_at.isoformat() if row.created_at else None,
    )


# --------- Routes ---------

@router.post("", response_model=IngestResponse, status_code=201)
async def ingest_query(req: IngestRequest, request: Request) -> IngestResponse:
    """Run one query event through the pipeline; enrichment continues in the background."""
    pipeline = request.app.state.pipeline
    request.state.log_context = {"qhash": slog.qhash(req.query_text)}
    try:
        report = await pipeline.ingest(req.query_text, req.execution_time_ms, req.endpoint or "")
    except IngestError:
        raise HTTPException(status_code=503, detail="Query event could not be stored")
    request.state.log_context.update({"query_id": report.event.id, "tier": report.event.status})
    return IngestResponse(
        event=_event_out(report.event),
        enrichmentScheduled=report.enrichment_scheduled,
        steps={s.name: s.ok for s in report.steps},
    )


@router.get("/recent", response_model=List[QueryEventOut])
async def recent_queries(request: Request, limit: int = Query(20, ge=1, le=200)) -> List[QueryEventOut]:
    storage = request.app.state.storage
    rows = await run_in_threadpool(storage.query_recent_events, limit)
    return [_event_out(r) for r in rows]


@router.get("/stream")
async def stream_entries(request: Request, count: int = Query(10, ge=1, le=100)) -> List[Dict[str, Any]]:
    """Newest entries of the durable query stream (best-effort; empty on broker errors)."""
    gateway = request.app.state.gateway
    entries = await gateway.read_stream_recent(QUERY_STREAM_KEY, count)
    return [{"id": eid, **fields} for eid, fields in entries]
