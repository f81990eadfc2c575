# =============================================
# File: app/utils/slog.py
# Purpose: JSON event records on the "qopt" logger (requests, ingests, pipeline steps)
# =============================================
from __future__ import annotations
import hashlib
import json
import logging
import os
import uuid
from typing import Any, Dict, Optional

LOGGER_NAME = "qopt"


def _build_logger() -> logging.Logger:
    log = logging.getLogger(LOGGER_NAME)
    if log.handlers:
        return log
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    log.setLevel(getattr(logging, level, logging.INFO))
    handler = logging.StreamHandler()
    # records are already JSON strings
    handler.setFormatter(logging.Formatter("%(message)s"))
    log.addHandler(handler)
    log.propagate = True  # pytest caplog listens on the root logger
    return log

_logger = _build_logger()


def qhash(text: str) -> str:
    """
    10-char fingerprint of a query for log correlation. Case and whitespace are
    folded, so it groups variants the optimization cache key keeps apart.
    """
    folded = " ".join((text or "").lower().split())
    return hashlib.sha256(folded.encode("utf-8")).hexdigest()[:10]

def new_request_id() -> str:
    return uuid.uuid4().hex

def _emit(record: Dict[str, Any], level: int = logging.INFO) -> None:
    _logger.log(level, json.dumps(record, ensure_ascii=False, default=str))

def log_event(event: str, **fields: Any) -> None:
    """One JSON line: {"event": ..., **fields}; None-valued fields are left out."""
    _emit({"event": event, **{k: v for k, v in fields.items() if v is not None}})

def log_step_failure(query_id: Optional[int], step: str, error: Optional[str]) -> None:
    """A best-effort pipeline step (stream, publish) that did not go through."""
    _emit({"event": "pipeline.step_failed", "query_id": query_id, "step": step, "error": error or ""}, logging.WARNING)

def finalize_request_log(
    request_id: str,
    method: str,
    path: str,
    status: int,
    latency_ms: int,
    client_ip: str | None,
    ctx: Dict[str, Any] | None = None,
) -> None:
    """Access record; router/middleware context (qhash, tier, intercepted...) is merged in."""
    record: Dict[str, Any] = {
        "event": "request.completed",
        "request_id": request_id,
        "method": method,
        "path": path,
        "status": status,
        "latency_ms": latency_ms,
        "client_ip": client_ip or "",
    }
    record.update(ctx or {})
    _emit(record, logging.WARNING if status >= 500 else logging.INFO)
