# =============================================
# File: app/services/pipeline.py
# Purpose: Query-event pipeline: classify -> persist -> stream -> publish -> (slow) optimize
# =============================================
from __future__ import annotations
import asyncio
import hashlib
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from loguru import logger

from app.db.models import AiOptimization, QueryLog
from app.db.repo import Storage
from app.services.advisor import Advisor, Suggestion, parse_suggestions
from app.services.classifier import (
    TIER_CRITICAL,
    TIER_SLOW,
    classify_kind,
    classify_tier,
    extract_entities,
)
from app.services.gateway import CacheGateway, DEFAULT_OPTIMIZATION_TTL
from app.utils import metrics, slog
from app.utils.timing import stopwatch

QUERY_STREAM_KEY = "query:events"

TOPIC_QUERY_EVENTS = "query-events"
TOPIC_OPTIMIZATIONS = "optimization-suggestions"
TOPIC_DEMO_METRICS = "demo-metrics"
TOPIC_OPTIMIZATION_APPLIED = "optimization-applied"

SOURCE_CACHE = "cache"
SOURCE_AI = "ai"

PREVIEW_CHARS = 100
DEFAULT_ADVISOR_TIMEOUT = 15.0


class IngestError(RuntimeError):
    """The event could not be persisted; nothing downstream ran."""


@dataclass
class StepResult:
    name: str
    ok: bool
    error: Optional[str] = None


@dataclass
class IngestReport:
    event: QueryLog
    steps: List[StepResult] = field(default_factory=list)
    enrichment_scheduled: bool = False

    def step(self, name: str) -> Optional[StepResult]:
        return next((s for s in self.steps if s.name == name), None)


@dataclass
class EnrichReport:
    query_event_id: int
    cache_key: str
    source: Optional[str] = None
    suggestions: List[Suggestion] = field(default_factory=list)
    optimization_ids: List[int] = field(default_factory=list)
    error: Optional[str] = None


def query_hash(text: str) -> str:
    """Cache key material: md5 of the exact query text (no normalization)."""
    return hashlib.md5((text or "").encode("utf-8")).hexdigest()


def preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _advisor_timeout() -> float:
    try:
        return float(os.getenv("ADVISOR_TIMEOUT_SECONDS", str(DEFAULT_ADVISOR_TIMEOUT)))
    except ValueError:
        return DEFAULT_ADVISOR_TIMEOUT


class EventPipeline:
    """
    Orchestrates one query event from raw signal to fan-out and optional
    enrichment. Only persistence is a hard precondition; every later step is
    isolated and best-effort.
    """

    def __init__(
        self,
        storage: Storage,
        gateway: CacheGateway,
        advisor: Advisor,
        *,
        suggestion_ttl: int = DEFAULT_OPTIMIZATION_TTL,
        preview_chars: int = PREVIEW_CHARS,
        advisor_timeout: Optional[float] = None,
    ) -> None:
        self.storage = storage
        self.gateway = gateway
        self.advisor = advisor
        self.suggestion_ttl = suggestion_ttl
        self.preview_chars = preview_chars
        self.advisor_timeout = advisor_timeout if advisor_timeout is not None else _advisor_timeout()
        self._tasks: Set[asyncio.Task] = set()

    async def _run_storage(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    # ---------------- ingest ----------------

    async def ingest(self, text: str, execution_time_ms: int, endpoint: str = "") -> IngestReport:
        if execution_time_ms < 0:
            raise ValueError("execution_time_ms must be non-negative")
        text = text or ""
        kind = classify_kind(text, endpoint)
        tier = classify_tier(execution_time_ms)
        entities = extract_entities(text, endpoint)

        record = QueryLog(
            query_text=text,
            execution_time=int(execution_time_ms),
            affected_tables=entities,
            query_type=kind,
            status=tier,
            index_usage=False,
        )
        try:
            event = await self._run_storage(self.storage.insert_query_event, record)
        except Exception as e:
            metrics.incr("ingest_failures_total")
            logger.error(f"[pipeline] persisting query event failed: {e}")
            raise IngestError(str(e)) from e

        metrics.record_event(kind, tier, execution_time_ms)
        report = IngestReport(event=event)
        now = datetime.now(timezone.utc)

        stream_id = await self.gateway.append_to_stream(QUERY_STREAM_KEY, {
            "queryId": event.id,
            "queryText": text,
            "executionTime": execution_time_ms,
            "queryType": kind,
            "status": tier,
            "timestamp": int(now.timestamp() * 1000),
        })
        report.steps.append(StepResult("stream", stream_id is not None, None if stream_id else "stream append failed"))

        published = await self.gateway.publish(TOPIC_QUERY_EVENTS, {
            "id": event.id,
            "queryText": preview(text, self.preview_chars),
            "executionTime": execution_time_ms,
            "status": tier,
            "affectedTables": entities,
            "timestamp": now.isoformat(),
        })
        if published:
            metrics.incr("publishes_total")
        report.steps.append(StepResult("publish", published, None if published else "publish dropped"))
        for step in report.steps:
            if not step.ok:
                slog.log_step_failure(event.id, step.name, step.error)

        if tier in (TIER_SLOW, TIER_CRITICAL):
            self._spawn(self.enrich(event.id, text, execution_time_ms))
            report.enrichment_scheduled = True

        slog.log_event(
            "query.ingested",
            query_id=event.id,
            qhash=slog.qhash(text),
            kind=kind,
            tier=tier,
            execution_time_ms=execution_time_ms,
            entities=entities,
            enrichment=report.enrichment_scheduled,
        )
        return report

    def submit(self, text: str, execution_time_ms: int, endpoint: str = "") -> asyncio.Task:
        """Fire-and-forget ingest for instrumentation points; failures are logged only."""
        async def _run() -> None:
            try:
                await self.ingest(text, execution_time_ms, endpoint)
            except IngestError:
                logger.warning(f"[pipeline] event lost for {endpoint or text[:40]}")
            except Exception as e:
                logger.error(f"[pipeline] ingest crashed: {e}")
        return self._spawn(_run())

    # ---------------- enrichment ----------------

    async def _persist_suggestion(self, query_event_id: int, s: Suggestion) -> int:
        row = await self._run_storage(self.storage.insert_optimization, AiOptimization(
            query_log_id=query_event_id,
            optimization_type=s.optimization_type,
            suggestion=s.suggestion,
            confidence=s.confidence,
            estimated_improvement=s.estimated_improvement,
        ))
        return row.id

    async def _publish_suggestion(self, query_event_id: int, s: Suggestion, source: str) -> None:
        payload: Dict[str, Any] = {"queryLogId": query_event_id, **s.to_wire(), "source": source}
        if await self.gateway.publish(TOPIC_OPTIMIZATIONS, payload):
            metrics.incr("publishes_total")
            slog.log_event(
                "optimization.published",
                query_id=query_event_id,
                optimization_type=s.optimization_type,
                source=source,
            )

    async def enrich(self, query_event_id: int, text: str, execution_time_ms: int) -> EnrichReport:
        qh = query_hash(text)
        report = EnrichReport(query_event_id=query_event_id, cache_key=qh)
        try:
            cached = await self.gateway.get_cached_optimization(qh)
            suggestions = parse_suggestions(cached) if cached is not None else []
            if suggestions:
                metrics.incr("cache_hits_total")
                report.source = SOURCE_CACHE
                for s in suggestions:
                    report.optimization_ids.append(await self._persist_suggestion(query_event_id, s))
                    report.suggestions.append(s)
                    await self._publish_suggestion(query_event_id, s, SOURCE_CACHE)
                return report

            metrics.incr("cache_misses_total")
            metrics.incr("advisor_calls_total")
            with stopwatch() as elapsed:
                try:
                    fresh = await asyncio.wait_for(
                        self.advisor.analyze(text, execution_time_ms), timeout=self.advisor_timeout
                    )
                except asyncio.TimeoutError:
                    metrics.incr("advisor_failures_total")
                    raise
            logger.debug(f"[pipeline] advisor returned {len(fresh)} suggestions in {elapsed()}ms")

            report.source = SOURCE_AI
            to_cache: List[Dict[str, Any]] = []
            for s in fresh:
                report.optimization_ids.append(await self._persist_suggestion(query_event_id, s))
                report.suggestions.append(s)
                to_cache.append(s.to_wire())
                await self.gateway.cache_optimization(qh, to_cache, ttl=self.suggestion_ttl)
                await self._publish_suggestion(query_event_id, s, SOURCE_AI)
            metrics.incr("suggestions_total", len(fresh))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            report.error = repr(e)
            logger.error(f"[pipeline] enrichment for query {query_event_id} stopped: {e!r}")
        return report

    async def drain(self) -> None:
        """Wait for in-flight ingests/enrichments (tasks spawned meanwhile included)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
