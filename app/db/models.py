# =============================================
# File: app/db/models.py
# Purpose: SQLModel ORM definitions for persisted query events and their AI optimization suggestions.
# =============================================

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field

OPT_PENDING = "pending"
OPT_APPLIED = "applied"
OPT_REJECTED = "rejected"

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class QueryLog(SQLModel, table=True):
    __tablename__ = "query_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    query_text: str
    execution_time: int = Field(ge=0)
    affected_tables: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    query_type: str
    status: str = Field(index=True)
    index_usage: bool = False
    created_at: datetime = Field(default_factory=_utcnow, index=True)

class AiOptimization(SQLModel, table=True):
    __tablename__ = "ai_optimizations"

    id: Optional[int] = Field(default=None, primary_key=True)
    query_log_id: int = Field(foreign_key="query_logs.id", index=True)
    optimization_type: str
    suggestion: str
    confidence: int = Field(ge=0, le=100)
    estimated_improvement: Optional[int] = None
    status: str = Field(default=OPT_PENDING, index=True)
    created_at: datetime = Field(default_factory=_utcnow, index=True)
