import os
import time
import uuid
import json
import logging
from typing import Callable
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger("nk.request")


def _emit(ctx: dict):
    fmt = os.getenv("NK_REQLOG_FORMAT", "text").lower()
    if fmt == "json":
        try:
            logger.info(json.dumps(ctx, default=str))
        except Exception:
            logger.info("log_json_error=%s fallback_text=%s", ctx.get("error", ""), ctx)
    else:
        line = (
            "req={req} method={method} path={path} status={status} "
            "dur_ms={dur_ms:.2f} caregiver={caregiver}"
        ).format(**ctx)
        if ctx.get("error"):
            line += f" error={ctx['error']}"
            logger.error(line)
        elif (ctx.get("status") or 0) >= 500:
            logger.error(line)
        else:
            logger.info(line)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """One log line per request, tagged with a correlation id (X-Request-ID)
    and the caregiver the request acts for."""

    async def dispatch(self, request: Request, call_next: Callable):
        start = time.perf_counter()
        req_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        ctx = {
            "ts": time.time(),
            "req": req_id,
            "method": request.method,
            "path": request.url.path,
            "status": None,
            "dur_ms": 0.0,
            "caregiver": request.headers.get("X-Caregiver-Id", "-"),
            "error": None,
        }
        try:
            response = await call_next(request)
            ctx["dur_ms"] = (time.perf_counter() - start) * 1000.0
            ctx["status"] = response.status_code
            _emit(ctx)
            response.headers["X-Request-ID"] = req_id
            return response
        except Exception as e:
            ctx["dur_ms"] = (time.perf_counter() - start) * 1000.0
            ctx["status"] = 500
            ctx["error"] = str(e)
            _emit(ctx)
            logger.exception("stacktrace for req=%s", req_id)
            raise
