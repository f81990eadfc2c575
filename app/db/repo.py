# =============================================
# File: app/db/repo.py
# Purpose: DB repository: engine bootstrap from DB_URL (default SQLite) and the Storage used by the pipeline.
# =============================================

import os
import threading
from contextlib import contextmanager, nullcontext
from typing import Any, Dict, Iterator, List

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine, select

from .models import AiOptimization, QueryLog, OPT_APPLIED, OPT_PENDING, OPT_REJECTED

DEFAULT_DB_URL = "sqlite:///./app.db"

# Rough demo savings per stored optimization (USD)
SAVINGS_PER_OPTIMIZATION = 10.5

_TRANSITIONS = {
    OPT_PENDING: {OPT_APPLIED, OPT_REJECTED},
}


class InvalidTransition(ValueError):
    """Optimization status change not allowed from its current status."""


def make_engine(url: str | None = None) -> Engine:
    url = url or os.getenv("DB_URL", DEFAULT_DB_URL)
    kwargs: Dict[str, Any] = {"echo": False}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        # in-memory DB must be shared by every session/thread
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


class Storage:
    """Synchronous persistence for query logs and optimizations."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        # StaticPool hands every thread the same sqlite3 connection; one transaction at a time
        self._lock = threading.RLock() if isinstance(engine.pool, StaticPool) else None

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._guard(), Session(self.engine) as session:
            yield session

    def _guard(self):
        return self._lock if self._lock is not None else nullcontext()

    def init_db(self) -> None:
        with self._guard():
            SQLModel.metadata.create_all(self.engine)

    def ping(self) -> bool:
        with self._session() as session:
            session.exec(select(QueryLog.id).limit(1)).first()
        return True

    def insert_query_event(self, record: QueryLog) -> QueryLog:
        with self._session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def insert_optimization(self, record: AiOptimization) -> AiOptimization:
        with self._session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def get_optimization(self, optimization_id: int) -> AiOptimization | None:
        with self._session() as session:
            return session.get(AiOptimization, optimization_id)

    def update_optimization_status(self, optimization_id: int, status: str) -> AiOptimization:
        with self._session() as session:
            row = session.get(AiOptimization, optimization_id)
            if row is None:
                raise LookupError(f"optimization {optimization_id} not found")
            if status not in _TRANSITIONS.get(row.status, set()):
                raise InvalidTransition(f"cannot move optimization {optimization_id} from {row.status} to {status}")
            row.status = status
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def query_recent_events(self, limit: int = 20) -> List[QueryLog]:
        with self._session() as session:
            stmt = select(QueryLog).order_by(QueryLog.created_at.desc(), QueryLog.id.desc()).limit(limit)
            return list(session.exec(stmt).all())

    def query_active_optimizations(self, limit: int = 10) -> List[AiOptimization]:
        with self._session() as session:
            stmt = (
                select(AiOptimization)
                .where(AiOptimization.status == OPT_PENDING)
                .order_by(AiOptimization.created_at.desc(), AiOptimization.id.desc())
                .limit(limit)
            )
            return list(session.exec(stmt).all())

    def optimizations_for_event(self, query_log_id: int) -> List[AiOptimization]:
        with self._session() as session:
            stmt = select(AiOptimization).where(AiOptimization.query_log_id == query_log_id).order_by(AiOptimization.id)
            return list(session.exec(stmt).all())

    def summary(self) -> Dict[str, Any]:
        """Dashboard headline numbers."""
        with self._session() as session:
            total = session.exec(select(func.count(QueryLog.id))).one()
            avg = session.exec(select(func.avg(QueryLog.execution_time))).one()
            optimizations = session.exec(select(func.count(AiOptimization.id))).one()
        avg_ms = float(avg or 0.0)
        return {
            "totalQueries": int(total or 0),
            "avgResponseTime": f"{avg_ms:.1f}",
            "aiOptimizations": int(optimizations or 0),
            "costSavings": f"{int(optimizations or 0) * SAVINGS_PER_OPTIMIZATION:.0f}",
        }
