"""journal_shared.observability — Structured log lines for CloudWatch Logs Insights."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from journal_shared.serialization import _now_z

logger = logging.getLogger(__name__)


def emit_event(
    *,
    component: str,
    event: str,
    user_id: Optional[str] = None,
    blog_id: Optional[str] = None,
    latency_ms: Optional[int] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    payload: Dict[str, Any] = {
        "timestamp": _now_z(),
        "component": component,
        "event": event,
        "user_id": str(user_id or ""),
        "blog_id": str(blog_id or ""),
        "latency_ms": int(max(0, latency_ms or 0)),
        "error_code": str(error_code or ""),
    }
    if extra:
        payload.update(extra)
    logger.info("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=str))
