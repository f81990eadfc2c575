# =============================================
# File: app/services/advisor.py
# Purpose: AI optimization advisor with OpenAI (gpt-4o-mini) + timeouts/retries + offline heuristics
# =============================================
from __future__ import annotations
import asyncio
import json
import os
import re
from typing import Any, Dict, List, Literal, Optional, Protocol, Tuple

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from openai import OpenAI  # OpenAI Python SDK v1

OptimizationType = Literal["index", "rewrite", "cache", "partition"]

DEFAULT_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")
DEFAULT_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.2"))
MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "700"))
TIMEOUT_S = float(os.getenv("LLM_TIMEOUT_SECONDS", "8"))
MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "1"))

SYSTEM_PROMPT = """You are a database optimization expert. Analyze SQL queries and provide specific optimization suggestions.

Context:
- Query execution time: {execution_time}ms
- Database: PostgreSQL

Respond with JSON only:
{{
  "suggestions": [
    {{
      "optimizationType": "index|rewrite|cache|partition",
      "suggestion": "Detailed explanation of the optimization",
      "confidence": 85,
      "estimatedImprovement": 67
    }}
  ]
}}

Focus on practical, actionable recommendations."""

USER_PROMPT = """Analyze this SQL query for optimization opportunities:

Query: {query}
Execution Time: {execution_time}ms

Provide specific suggestions to improve performance."""

INSIGHTS_PROMPT = """You are a database performance analyst. Analyze a collection of queries and provide insights about overall database health and optimization opportunities.

Respond with JSON only:
{
  "summary": "Overall assessment of database performance",
  "topIssues": ["Issue 1", "Issue 2", "Issue 3"],
  "recommendations": ["Recommendation 1", "Recommendation 2", "Recommendation 3"]
}"""


class Suggestion(BaseModel):
    """One optimization proposal; camelCase aliases are the wire/cache format."""
    model_config = ConfigDict(populate_by_name=True)

    optimization_type: OptimizationType = Field(..., alias="optimizationType")
    suggestion: str = Field(..., min_length=1)
    confidence: int = Field(..., ge=0, le=100)
    estimated_improvement: Optional[int] = Field(None, alias="estimatedImprovement")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Advisor(Protocol):
    async def analyze(self, query_text: str, execution_time_ms: int) -> List[Suggestion]: ...


def parse_suggestions(items: Any) -> List[Suggestion]:
    """Validate raw suggestion dicts; invalid items are dropped."""
    out: List[Suggestion] = []
    if not isinstance(items, list):
        return out
    for raw in items:
        if not isinstance(raw, dict):
            continue
        if isinstance(raw.get("optimizationType"), str):
            raw = {**raw, "optimizationType": raw["optimizationType"].strip().lower()}
        if isinstance(raw.get("confidence"), float):
            raw = {**raw, "confidence": round(raw["confidence"])}
        if isinstance(raw.get("estimatedImprovement"), float):
            raw = {**raw, "estimatedImprovement": round(raw["estimatedImprovement"])}
        try:
            out.append(Suggestion.model_validate(raw))
        except ValidationError as e:
            logger.debug(f"[advisor] dropped invalid suggestion: {e.error_count()} errors")
    return out


def _extract_json(text: str) -> Optional[Dict[str, Any]]:
    """Tolerant to small wrappers around the JSON object."""
    if not text:
        return None
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    try:
        data = json.loads(text[start:end + 1])
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


# ---------- offline heuristics ----------

_SELECT_STAR_RE = re.compile(r"\bSELECT\s+(?:\w+\.)?\*", re.IGNORECASE)
_WHERE_COL_RE = re.compile(r"\bWHERE\s+(?:\w+\.)?(\w+)\s*(?:>=|<=|=|>|<|LIKE\b|IN\b)", re.IGNORECASE)
_JOIN_RE = re.compile(r"\bJOIN\b", re.IGNORECASE)
_LEADING_WILDCARD_RE = re.compile(r"LIKE\s+'%", re.IGNORECASE)
_ORDER_RE = re.compile(r"\bORDER\s+BY\s+(?:\w+\.)?(\w+)", re.IGNORECASE)


def heuristic_suggestions(query_text: str, execution_time_ms: int) -> List[Suggestion]:
    """Deterministic rules used when no LLM is configured."""
    text = query_text or ""
    out: List[Suggestion] = []

    m = _WHERE_COL_RE.search(text)
    if m:
        col = m.group(1).lower()
        out.append(Suggestion(
            optimization_type="index",
            suggestion=f"Add an index on {col} to avoid a sequential scan on the filtered column.",
            confidence=80,
            estimated_improvement=60,
        ))
    if _JOIN_RE.search(text):
        out.append(Suggestion(
            optimization_type="index",
            suggestion="Index the join keys on both sides of each JOIN so the planner can use index lookups.",
            confidence=70,
            estimated_improvement=45,
        ))
    if _SELECT_STAR_RE.search(text):
        out.append(Suggestion(
            optimization_type="rewrite",
            suggestion="Select only the columns the caller needs instead of SELECT * to cut I/O and transfer size.",
            confidence=65,
            estimated_improvement=20,
        ))
    if _LEADING_WILDCARD_RE.search(text):
        out.append(Suggestion(
            optimization_type="rewrite",
            suggestion="Leading-wildcard LIKE cannot use a B-tree index; consider a trigram or full-text index.",
            confidence=60,
            estimated_improvement=50,
        ))
    m = _ORDER_RE.search(text)
    if m and not out:
        out.append(Suggestion(
            optimization_type="index",
            suggestion=f"Add an index on {m.group(1).lower()} to serve ORDER BY without an explicit sort.",
            confidence=55,
            estimated_improvement=30,
        ))
    if execution_time_ms > 200:
        out.append(Suggestion(
            optimization_type="cache",
            suggestion="Cache the result of this read for a short TTL; it is slow and likely repeated.",
            confidence=55,
            estimated_improvement=70,
        ))
    return out


# ---------- OpenAI advisor ----------

class OpenAIAdvisor:
    """
    Calls the chat completions API in JSON mode. Missing API key -> heuristics;
    all attempts failing -> [] (never raises).
    """

    def __init__(self, client: Optional[OpenAI] = None, model: str = DEFAULT_MODEL) -> None:
        self._client = client
        self.model = model

    @property
    def online(self) -> bool:
        return self._client is not None or bool(os.getenv("OPENAI_API_KEY"))

    def _get_client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI()
        return self._client

    def _chat_completion_with_retry(self, messages: List[Dict[str, str]]) -> Optional[str]:
        """
        Try calling OpenAI up to MAX_RETRIES+1 times with TIMEOUT_S each.
        Returns the message text or None if all attempts fail.
        """
        attempts = max(1, MAX_RETRIES + 1)
        for attempt in range(attempts):
            try:
                resp = self._get_client().chat.completions.create(
                    model=self.model,
                    response_format={"type": "json_object"},
                    temperature=DEFAULT_TEMPERATURE,
                    max_tokens=MAX_TOKENS,
                    messages=messages,
                    timeout=TIMEOUT_S,
                )
                return (resp.choices[0].message.content or "").strip()
            except Exception as e:
                logger.warning(f"[advisor] attempt {attempt + 1}/{attempts} failed: {e}")
        return None

    async def _complete(self, messages: List[Dict[str, str]]) -> Optional[str]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._chat_completion_with_retry, messages)

    async def analyze(self, query_text: str, execution_time_ms: int) -> List[Suggestion]:
        if not self.online:
            return heuristic_suggestions(query_text, execution_time_ms)

        messages = [
            {"role": "system", "content": SYSTEM_PROMPT.format(execution_time=execution_time_ms)},
            {"role": "user", "content": USER_PROMPT.format(query=query_text, execution_time=execution_time_ms)},
        ]
        try:
            text = await self._complete(messages)
        except Exception as e:
            logger.error(f"[advisor] analyze failed: {e}")
            return []
        data = _extract_json(text or "")
        if data is None:
            return []
        return parse_suggestions(data.get("suggestions"))

    async def generate_insights(self, queries: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Summarize recent queries: {summary, topIssues, recommendations}."""
        if not queries:
            return {"summary": "No queries recorded yet", "topIssues": [], "recommendations": []}
        if not self.online:
            return heuristic_insights(queries)

        lines = [
            f"Query {i + 1}: {q.get('queryText', '')[:100]}... ({q.get('executionTime', 0)}ms, frequency: {q.get('frequency', 1)})"
            for i, q in enumerate(queries)
        ]
        messages = [
            {"role": "system", "content": INSIGHTS_PROMPT},
            {"role": "user", "content": "Analyze these database queries:\n\n" + "\n".join(lines)},
        ]
        try:
            text = await self._complete(messages)
        except Exception as e:
            logger.error(f"[advisor] insights failed: {e}")
            text = None
        data = _extract_json(text or "")
        if data is None:
            return {"summary": "Unable to generate insights", "topIssues": [], "recommendations": []}
        return {
            "summary": str(data.get("summary") or ""),
            "topIssues": [str(x) for x in data.get("topIssues") or []],
            "recommendations": [str(x) for x in data.get("recommendations") or []],
        }


def heuristic_insights(queries: List[Dict[str, Any]]) -> Dict[str, Any]:
    times = [int(q.get("executionTime") or 0) for q in queries]
    slow = [q for q, t in zip(queries, times) if t > 100]
    avg = sum(times) / len(times) if times else 0.0
    counts: Dict[str, int] = {}
    for q in slow:
        key = (q.get("queryText") or "")[:100]
        counts[key] = counts.get(key, 0) + 1
    worst: List[Tuple[str, int]] = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)[:3]
    issues = [f"{n}x slow: {text}" for text, n in worst]
    recs: List[str] = []
    for text, _ in worst:
        for s in heuristic_suggestions(text, 250)[:1]:
            recs.append(s.suggestion)
    return {
        "summary": f"{len(queries)} recent queries, average {avg:.1f}ms, {len(slow)} above 100ms.",
        "topIssues": issues,
        "recommendations": recs,
    }
