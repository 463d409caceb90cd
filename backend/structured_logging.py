"""
Structured Logging

Every log line is one JSON object. Request-scoped identifiers (request,
user, record, model) live in a context variable and are promoted to the
top level of each entry, so one analysis can be followed from upload
through routing and inference to the stored result.

Usage:
    from structured_logging import get_logger, LogContext

    logger = get_logger(__name__)

    with LogContext(record_id=7, model_id="chest-xray"):
        logger.info("Routing record", extra={"modality": "xray"})

Environment (see config.py): LOG_LEVEL, LOG_OUTPUT ("stdout", "file" or
"stdout,file") and LOG_FILE.
"""

import json
import logging
import os
import socket
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

SERVICE_NAME = "radiology-diagnostics"

# Promoted to the top level of every entry when present
CONTEXT_FIELDS = ("request_id", "user_id", "record_id", "model_id")

_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})


class LogContext:
    """Adds fields to every log line emitted inside the block."""

    def __init__(self, **fields):
        self.fields = fields
        self._token = None

    def __enter__(self):
        self._token = _log_context.set({**_log_context.get(), **self.fields})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        _log_context.reset(self._token)
        return False


def set_context(**fields):
    _log_context.set({**_log_context.get(), **fields})


def get_context() -> Dict[str, Any]:
    return dict(_log_context.get())


def clear_context():
    _log_context.set({})


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    # numpy scalars from inference results
    if hasattr(value, "item"):
        return value.item()
    return str(value)


class JSONFormatter(logging.Formatter):
    """Renders a LogRecord as a single JSON line."""

    MASK = "***MASKED***"
    SENSITIVE = ("password", "token", "secret", "authorization")

    _STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

    def __init__(self, service_name: str = SERVICE_NAME, environment: Optional[str] = None):
        super().__init__()
        self.service_name = service_name
        self.environment = environment or os.getenv("ENVIRONMENT", "development")
        self.hostname = socket.gethostname()

    def format(self, record: logging.LogRecord) -> str:
        context = get_context()
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            "host": self.hostname,
        }
        entry.update({key: context[key] for key in CONTEXT_FIELDS if key in context})

        if record.levelno >= logging.ERROR:
            entry["source"] = {"file": record.pathname, "line": record.lineno, "function": record.funcName}
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        extra = self._extra(record, context, entry)
        if extra:
            entry["extra"] = extra
        return json.dumps(entry, default=str, ensure_ascii=False)

    def _extra(self, record: logging.LogRecord, context: Dict[str, Any], entry: Dict[str, Any]) -> Dict[str, Any]:
        fields = {
            key: value for key, value in record.__dict__.items()
            if key not in self._STANDARD_ATTRS and not key.startswith("_")
        }
        for key, value in context.items():
            fields.setdefault(key, value)

        extra = {}
        for key, value in fields.items():
            if key in entry:
                continue
            if any(word in key.lower() for word in self.SENSITIVE):
                extra[key] = self.MASK
            else:
                extra[key] = _jsonable(value)
        return extra


def json_file_handler(filename: str, max_bytes: int = 10 * 1024 * 1024, backup_count: int = 5) -> RotatingFileHandler:
    """Size-rotated NDJSON file handler."""
    Path(filename).parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(filename, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    handler.setFormatter(JSONFormatter())
    return handler


_configured = False


def setup_logging(level: Optional[str] = None, output: Optional[str] = None, log_file: Optional[str] = None):
    """Install JSON handlers on the root logger. Called lazily by get_logger."""
    global _configured
    from config import LOG_FILE, LOG_LEVEL, LOG_OUTPUT

    level = (level or LOG_LEVEL).upper()
    outputs = {part.strip() for part in (output or LOG_OUTPUT).lower().split(",")}

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    root.handlers.clear()

    if "stdout" in outputs:
        stream = logging.StreamHandler(sys.stdout)
        stream.setFormatter(JSONFormatter())
        root.addHandler(stream)
    if "file" in outputs:
        root.addHandler(json_file_handler(log_file or LOG_FILE))

    _configured = True


def get_logger(name: Optional[str] = None) -> logging.Logger:
    if not _configured:
        setup_logging()
    return logging.getLogger(name or SERVICE_NAME)


def new_request_id() -> str:
    return uuid.uuid4().hex[:12]


# =============================================================================
# EVENT HELPERS
# =============================================================================

def log_http_request(method: str, path: str, status_code: int, duration_ms: float, **extra):
    """One line per finished request; level follows the status class."""
    fields = {
        "http_method": method,
        "http_path": path,
        "http_status": status_code,
        "duration_ms": round(duration_ms, 2),
        **extra,
    }
    logger = get_logger("http")
    if status_code >= 500:
        logger.error("Request failed", extra=fields)
    elif status_code >= 400:
        logger.warning("Request rejected", extra=fields)
    else:
        logger.info("Request completed", extra=fields)


def log_model_inference(
    model_id: str,
    latency_ms: float,
    success: bool,
    label: Optional[str] = None,
    confidence: Optional[float] = None,
    error: Optional[str] = None,
    **extra
):
    fields = {
        "model_id": model_id,
        "latency_ms": round(latency_ms, 2),
        "label": label,
        "confidence": confidence,
        **extra,
    }
    logger = get_logger("inference")
    if success:
        logger.info("Inference completed", extra=fields)
    else:
        logger.error("Inference failed", extra={**fields, "error": error})


def log_database_query(operation: str, table: str, duration_ms: float, error: Optional[str] = None, **extra):
    fields = {"db_operation": operation, "db_table": table, "duration_ms": round(duration_ms, 2), **extra}
    logger = get_logger("db")
    if error:
        logger.error("Database write failed", extra={**fields, "error": error})
    else:
        logger.debug("Database write committed", extra=fields)
