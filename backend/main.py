"""
Radiology Diagnostics API - Main Application

Routers:
- auth_router.py        - Registration, login, current user
- diagnostics_router.py - Study upload, AI analysis, medical records, model listing
- admin_router.py       - Model registry refresh, model flags, model cache
"""

import time
from contextlib import asynccontextmanager
from datetime import datetime

import psutil
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import CORS_ALLOW_CREDENTIALS, CORS_ORIGINS, HOST, PORT, UPLOADS_DIR, get_config_summary
from database import create_tables
from errors import AuthExpired, AuthMissing, DiagnosticsError
from middleware import RequestLoggingMiddleware, RequestStatsMiddleware, get_request_stats
from model_monitoring import get_system_summary, monitor
from structured_logging import get_logger

# =============================================================================
# IMPORT ROUTERS
# =============================================================================

from routers.auth_router import router as auth_router
from routers.diagnostics_router import router as diagnostics_router
from routers.admin_router import router as admin_router

import shared

logger = get_logger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Radiology Diagnostics API", extra={"config": get_config_summary()})
    shared.startup()
    yield
    shared.shutdown()
    logger.info("Radiology Diagnostics API stopped")


# =============================================================================
# APPLICATION SETUP
# =============================================================================

app = FastAPI(
    title="Radiology Diagnostics API",
    description="AI-assisted diagnostics for X-ray, MRI and CT studies: upload, model routing, inference and medical records.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

UPLOADS_DIR.mkdir(parents=True, exist_ok=True)

# Create database tables on startup
create_tables()

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request logging (one structured entry per call) and request statistics
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RequestStatsMiddleware)


@app.exception_handler(DiagnosticsError)
async def diagnostics_error_handler(request: Request, exc: DiagnosticsError):
    if exc.status_code >= 500:
        logger.error(
            "Request failed",
            extra={
                "error_kind": exc.kind,
                "error": exc.message,
                "context": exc.context,
                "http_path": request.url.path,
            },
        )
    headers = None
    if isinstance(exc, (AuthMissing, AuthExpired)):
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.client_message, "error": exc.kind},
        headers=headers,
    )


# =============================================================================
# REGISTER ROUTERS
# =============================================================================

app.include_router(auth_router)
app.include_router(diagnostics_router)
app.include_router(admin_router)

# =============================================================================
# HEALTH CHECK ENDPOINTS
# =============================================================================

@app.get("/")
def read_root():
    return {
        "message": "Radiology Diagnostics API v1.0",
        "status": "healthy",
        "docs": "/docs"
    }


@app.get("/health")
def health_check():
    """
    Basic health check endpoint.
    Returns system health status including database, memory, disk, and uptime.
    """
    from sqlalchemy import text
    from sqlalchemy.exc import SQLAlchemyError
    from database import SessionLocal

    db_status = "healthy"
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        db_status = f"unhealthy: {str(e)}"
    finally:
        db.close()

    memory = psutil.virtual_memory()
    disk = psutil.disk_usage(str(UPLOADS_DIR.absolute()))

    process = psutil.Process()
    uptime_seconds = time.time() - process.create_time()

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "timestamp": datetime.utcnow().isoformat(),
        "database": db_status,
        "memory": {
            "total_gb": round(memory.total / (1024**3), 2),
            "available_gb": round(memory.available / (1024**3), 2),
            "used_percent": memory.percent,
        },
        "disk": {
            "total_gb": round(disk.total / (1024**3), 2),
            "free_gb": round(disk.free / (1024**3), 2),
            "used_percent": round(disk.percent, 1),
        },
        "cpu": {
            "cores": psutil.cpu_count(),
        },
        "uptime": _format_uptime(uptime_seconds),
        "uptime_seconds": round(uptime_seconds),
    }


def _format_uptime(seconds: float) -> str:
    """Format uptime seconds to human readable string."""
    days, remainder = divmod(int(seconds), 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, secs = divmod(remainder, 60)

    parts = []
    if days > 0:
        parts.append(f"{days}d")
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")

    return " ".join(parts)


@app.get("/health/models")
def model_health_check():
    """
    Registry size, model cache state and per-model inference health.
    """
    registry = shared.get_registry()
    engine = shared.get_engine()

    active = registry.list_active()
    summary = get_system_summary()
    return {
        "status": summary["overall_status"] if active else "degraded",
        "registry": {
            "registered": len(registry.all()),
            "active": len(active),
            "scanned_at": registry.snapshot.scanned_at.isoformat() if registry.snapshot.scanned_at else None,
        },
        "cache": engine.cache_info(),
        "backend": engine.backend.name,
        "models": {
            name: health.to_dict()
            for name, health in monitor.all_health().items()
        },
        "summary": summary,
        "process_memory_mb": round(psutil.Process().memory_info().rss / (1024**2), 1),
    }


@app.get("/api/stats")
def request_stats():
    """Get API request statistics for monitoring."""
    return get_request_stats().snapshot()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=HOST, port=PORT)
