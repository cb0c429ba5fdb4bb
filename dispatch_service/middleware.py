import json
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response


def _log_request(request: Request, request_id: str, status: int, started: float):
    record = {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "status": status,
        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        "user_sub": request.headers.get("X-User-Sub"),
    }
    print(json.dumps(record, separators=(",", ":")))


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One JSON line per request, correlated by X-Request-Id (taken from the gateway or minted here)."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response: Response = await call_next(request)
        except Exception:
            _log_request(request, request_id, 500, started)
            raise

        response.headers["X-Request-Id"] = request_id
        _log_request(request, request_id, response.status_code, started)
        return response
