from __future__ import annotations

import base64
import json
import logging
import os
import time
from contextvars import ContextVar

from fastapi import Request

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
logger = logging.getLogger("helpdesk.api")


def log_json(target: logging.Logger, level: int, event: str, **fields: object) -> None:
    """Emit one compact JSON line; request id is attached when a request is in flight."""
    payload: dict[str, object] = {"event": event, **fields}
    request_id = request_id_ctx.get()
    if request_id is not None and "request_id" not in payload:
        payload["request_id"] = request_id
    target.log(level, json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))


def build_request_id(request: Request, *, header_name: str) -> str:
    incoming = (request.headers.get(header_name) or "").strip()
    if incoming:
        return incoming[:128]
    return base64.urlsafe_b64encode(os.urandom(18)).decode("ascii").rstrip("=")


def log_request_completion(
    *,
    request_id: str,
    method: str,
    path: str,
    status_code: int,
    duration_ms: int,
) -> None:
    log_json(
        logger,
        logging.INFO,
        "http.request.completed",
        request_id=request_id,
        method=method,
        path=path,
        status_code=status_code,
        duration_ms=duration_ms,
    )


def now_ts() -> float:
    return time.time()
