# =============================================
# File: app/services/classifier.py
# Purpose: Pure classification of query events (kind, latency tier, entities)
# =============================================
from __future__ import annotations
import re
from typing import List, Optional

KIND_SELECT = "SELECT"
KIND_INSERT = "INSERT"
KIND_UPDATE = "UPDATE"
KIND_DELETE = "DELETE"
KIND_DDL = "DDL"

TIER_FAST = "fast"
TIER_SLOW = "slow"
TIER_CRITICAL = "critical"

SLOW_THRESHOLD_MS = 100
CRITICAL_THRESHOLD_MS = 200

UNKNOWN_ENTITY = "unknown"

# Entities recognized in endpoint paths (/api/products/42 -> products)
ENTITY_VOCABULARY = ("products", "users", "orders", "categories")

_LEADING_KINDS = (KIND_SELECT, KIND_INSERT, KIND_UPDATE, KIND_DELETE)
_DDL_RE = re.compile(r"\b(CREATE|ALTER|DROP)\b")
_METHOD_RE = re.compile(r"\b(POST|PUT|PATCH|DELETE)\b")
_METHOD_KINDS = {
    "POST": KIND_INSERT,
    "PUT": KIND_UPDATE,
    "PATCH": KIND_UPDATE,
    "DELETE": KIND_DELETE,
}
_TABLE_RE = re.compile(r"\b(?:FROM|JOIN|INTO|UPDATE)\s+([A-Za-z_][A-Za-z0-9_]*)", re.IGNORECASE)


def classify_kind(text: str, endpoint_hint: Optional[str] = None) -> str:
    """
    SQL keyword first, then the HTTP method of the originating request.

    `endpoint_hint` may be a bare method ("POST") or "METHOD /path";
    intercepted requests also carry the method in `text` itself.
    """
    query = (text or "").strip().upper()

    for kind in _LEADING_KINDS:
        if query.startswith(kind):
            return kind
    if _DDL_RE.search(query):
        return KIND_DDL

    for source in (query, (endpoint_hint or "").strip().upper()):
        m = _METHOD_RE.search(source)
        if m:
            return _METHOD_KINDS[m.group(1)]

    return KIND_SELECT


def classify_tier(execution_time_ms: int) -> str:
    if execution_time_ms > CRITICAL_THRESHOLD_MS:
        return TIER_CRITICAL
    if execution_time_ms > SLOW_THRESHOLD_MS:
        return TIER_SLOW
    return TIER_FAST


def _endpoint_segments(endpoint: str) -> List[str]:
    # drop query string and method prefix ("GET /api/products?x=1")
    path = (endpoint or "").split("?", 1)[0].strip()
    if " " in path:
        path = path.split()[-1]
    return [seg.lower() for seg in path.split("/") if seg]


def extract_entities(text: str, endpoint: Optional[str] = None) -> List[str]:
    """Tables named after FROM/JOIN/INTO/UPDATE, then known entities in the endpoint path."""
    entities: List[str] = []
    for m in _TABLE_RE.finditer(text or ""):
        name = m.group(1).lower()
        if name not in entities:
            entities.append(name)

    for seg in _endpoint_segments(endpoint or ""):
        if seg in ENTITY_VOCABULARY and seg not in entities:
            entities.append(seg)

    return entities or [UNKNOWN_ENTITY]
