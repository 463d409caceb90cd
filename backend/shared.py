"""
Process-wide pipeline wiring shared by all routers.

The registry, inference engine and worker pool are created once per process
and exposed as FastAPI dependencies, so tests can swap any of them through
app.dependency_overrides. The record store is per-request (one SQLAlchemy
session each) and is passed into the controller explicitly.

Set TESTING=1 (or INFERENCE_BACKEND=mock) to serve the deterministic mock
backend instead of loading real weights.
"""

import threading

from fastapi import Depends
from sqlalchemy.orm import Session

from config import (
    INFERENCE_BACKEND,
    MODEL_CACHE_CAPACITY,
    MODELS_ROOT,
    TESTING_MODE,
    UPLOADS_DIR,
    WORKER_POOL_SIZE,
)
from database import SessionLocal, get_db
from image_store import ImageStore
from inference_controller import InferenceController, InferenceWorkerPool
from inference_engine import InferenceEngine
from model_backends import MockBackend, ModelBackend, TorchBackend
from model_registry import ModelRegistry
from record_store import RecordStore, SQLRecordStore
from structured_logging import get_logger

logger = get_logger(__name__)

_lock = threading.Lock()
_registry = None
_engine = None
_worker_pool = None


def create_backend(name: str = INFERENCE_BACKEND) -> ModelBackend:
    if TESTING_MODE or name == "mock":
        return MockBackend()
    if name == "torch":
        return TorchBackend()
    raise ValueError(f"Unknown INFERENCE_BACKEND '{name}'")


def load_model_overrides():
    """Admin is_active / is_preferred flags persisted in model_descriptors."""
    db = SessionLocal()
    try:
        return SQLRecordStore(db).model_overrides()
    finally:
        db.close()


def get_registry() -> ModelRegistry:
    global _registry
    with _lock:
        if _registry is None:
            _registry = ModelRegistry(MODELS_ROOT, override_loader=load_model_overrides)
            _registry.scan_available_models()
        return _registry


def get_engine() -> InferenceEngine:
    global _engine
    registry = get_registry()
    with _lock:
        if _engine is None:
            backend = create_backend()
            _engine = InferenceEngine(registry, backend, capacity=MODEL_CACHE_CAPACITY)
            _engine.attach()
            logger.info("Inference engine ready", extra={"backend": backend.name, "capacity": MODEL_CACHE_CAPACITY})
        return _engine


def get_worker_pool() -> InferenceWorkerPool:
    global _worker_pool
    with _lock:
        if _worker_pool is None:
            _worker_pool = InferenceWorkerPool(WORKER_POOL_SIZE)
        return _worker_pool


def get_record_store(db: Session = Depends(get_db)) -> RecordStore:
    return SQLRecordStore(db)


def get_controller(
    store: RecordStore = Depends(get_record_store),
    registry: ModelRegistry = Depends(get_registry),
    engine: InferenceEngine = Depends(get_engine),
    pool: InferenceWorkerPool = Depends(get_worker_pool),
) -> InferenceController:
    return InferenceController(
        store=store,
        image_store=ImageStore(store, root=UPLOADS_DIR),
        registry=registry,
        engine=engine,
        pool=pool,
    )


def startup() -> None:
    """Scan models and start the worker pool before the first request."""
    registry = get_registry()
    get_engine()
    pool = get_worker_pool()
    logger.info(
        "Diagnostics pipeline started",
        extra={"registered_models": len(registry.list_active()), "worker_pool_size": pool.size},
    )


def shutdown() -> None:
    global _worker_pool
    with _lock:
        engine, pool = _engine, _worker_pool
        _worker_pool = None
    if pool is not None:
        pool.shutdown(wait=False)
    if engine is not None:
        engine.clear()
