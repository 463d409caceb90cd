"""
Middleware package for the Radiology Diagnostics API.
"""

from .logging_middleware import (
    RequestLoggingMiddleware,
    RequestStats,
    RequestStatsMiddleware,
    get_request_stats,
)

__all__ = [
    "RequestLoggingMiddleware",
    "RequestStats",
    "RequestStatsMiddleware",
    "get_request_stats",
]
