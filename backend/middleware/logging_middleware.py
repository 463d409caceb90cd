"""
Request Logging Middleware

- One structured log entry per request with timing and status
- X-Request-ID propagation (incoming header reused, otherwise generated)
- In-process request statistics served by /api/stats
"""

import threading
import time
from collections import deque
from datetime import datetime
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from structured_logging import LogContext, get_logger, log_http_request, new_request_id

logger = get_logger("api.middleware")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request and tags the response with X-Request-ID."""

    # Health checks and docs are not logged
    QUIET_PATHS = {"/health", "/health/models", "/favicon.ico", "/docs", "/redoc", "/openapi.json"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or new_request_id()
        path = request.url.path

        if path in self.QUIET_PATHS:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response

        with LogContext(request_id=request_id):
            start = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception:
                logger.error(
                    "Unhandled error while serving request",
                    extra={"http_method": request.method, "http_path": path},
                    exc_info=True,
                )
                raise

            duration_ms = (time.perf_counter() - start) * 1000
            log_http_request(
                request.method,
                path,
                response.status_code,
                duration_ms,
                client_ip=client_ip(request),
                upload_bytes=request.headers.get("content-length"),
            )

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.2f}ms"
        return response


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RequestStats:
    """Thread-safe request counters and a window of recent response times."""

    def __init__(self, max_response_times: int = 1000):
        self._lock = threading.Lock()
        self.started_at = datetime.utcnow()
        self.total_requests = 0
        self.total_errors = 0
        self.total_response_time_ms = 0.0
        self.requests_by_method = {}
        self.requests_by_status = {}
        self.requests_by_path = {}
        self.response_times = deque(maxlen=max_response_times)

    def record(self, method: str, path: str, status: int, duration_ms: float) -> None:
        # Group by first path segment below /api, e.g. "diagnostics"
        segments = [s for s in path.split("/") if s]
        if segments and segments[0] == "api" and len(segments) > 1:
            group = segments[1]
        else:
            group = segments[0] if segments else "root"

        with self._lock:
            self.total_requests += 1
            if status >= 500:
                self.total_errors += 1
            self.total_response_time_ms += duration_ms
            self.response_times.append(duration_ms)
            self.requests_by_method[method] = self.requests_by_method.get(method, 0) + 1
            self.requests_by_status[status] = self.requests_by_status.get(status, 0) + 1
            self.requests_by_path[group] = self.requests_by_path.get(group, 0) + 1

    def snapshot(self) -> dict:
        with self._lock:
            response_times = sorted(self.response_times)
            total = self.total_requests
            return {
                "total_requests": total,
                "total_errors": self.total_errors,
                "error_rate_percent": round(self.total_errors / max(total, 1) * 100, 2),
                "avg_response_time_ms": round(self.total_response_time_ms / max(total, 1), 2),
                "p50_response_time_ms": round(self._percentile(response_times, 50), 2),
                "p95_response_time_ms": round(self._percentile(response_times, 95), 2),
                "p99_response_time_ms": round(self._percentile(response_times, 99), 2),
                "requests_by_method": dict(self.requests_by_method),
                "requests_by_status": dict(self.requests_by_status),
                "top_paths": dict(
                    sorted(self.requests_by_path.items(), key=lambda x: x[1], reverse=True)[:10]
                ),
                "started_at": self.started_at.isoformat(),
                "uptime_seconds": (datetime.utcnow() - self.started_at).total_seconds(),
            }

    def _percentile(self, data: list, percentile: int) -> float:
        """Calculate percentile of sorted data."""
        if not data:
            return 0.0
        index = (percentile / 100) * (len(data) - 1)
        lower = int(index)
        upper = min(lower + 1, len(data) - 1)
        weight = index - lower
        return data[lower] * (1 - weight) + data[upper] * weight


class RequestStatsMiddleware(BaseHTTPMiddleware):
    """Feeds every request into a RequestStats collector."""

    def __init__(self, app: ASGIApp, stats: Optional[RequestStats] = None):
        super().__init__(app)
        self.stats = stats or get_request_stats()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        response = await call_next(request)
        self.stats.record(
            request.method,
            request.url.path,
            response.status_code,
            (time.time() - start_time) * 1000,
        )
        return response


_request_stats = RequestStats()


def get_request_stats() -> RequestStats:
    return _request_stats
