"""
Admin Router - Model Registry Management

Admin-only endpoints to rescan MODELS_ROOT, activate / deactivate or
prefer a model, and inspect the inference engine's model cache.
"""

from fastapi import APIRouter, Depends

from auth import require_roles
from database import User
from errors import ModelNotFound
from inference_engine import InferenceEngine
from model_monitoring import get_model_health
from model_registry import ModelRegistry
from models import ModelUpdate, RefreshResponse
from record_store import RecordStore
from shared import get_engine, get_record_store, get_registry
from structured_logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])


@router.post("/models/refresh", response_model=RefreshResponse)
def refresh_models(
    current_user: User = Depends(require_roles("admin")),
    registry: ModelRegistry = Depends(get_registry),
):
    """Rescan the models directory and swap in the new registry snapshot."""
    registered = registry.refresh()
    logger.info("Model registry refreshed by admin", extra={"registered": registered})
    return {"registered": registered, "message": f"{registered} models registered"}


@router.get("/models")
def list_all_models(
    current_user: User = Depends(require_roles("admin")),
    registry: ModelRegistry = Depends(get_registry),
    store: RecordStore = Depends(get_record_store),
):
    """Every registered model, including inactive ones."""
    models = []
    for descriptor in sorted(registry.all(), key=lambda d: d.id):
        entry = descriptor.public_dict()
        entry.update(store.model_usage(descriptor.id))
        health = get_model_health(descriptor.id)
        entry["health"] = health.to_dict() if health else None
        models.append(entry)
    return {"models": models, "total": len(models)}


@router.patch("/models/{model_id}")
def update_model(
    model_id: str,
    update: ModelUpdate,
    current_user: User = Depends(require_roles("admin")),
    registry: ModelRegistry = Depends(get_registry),
    store: RecordStore = Depends(get_record_store),
):
    """Persist isActive / isPreferred for a model and rescan."""
    current = registry.snapshot.descriptors.get(model_id)
    if current is None:
        raise ModelNotFound(model_id)

    # Seed a missing row from the manifest so flags left unset keep their manifest value
    store.upsert_model(current)
    store.set_model_flags(model_id, is_active=update.is_active, is_preferred=update.is_preferred)
    registry.refresh()

    logger.info(
        "Model flags updated",
        extra={"model_id": model_id, "is_active": update.is_active, "is_preferred": update.is_preferred},
    )
    descriptor = registry.snapshot.descriptors.get(model_id)
    if descriptor is None:
        raise ModelNotFound(model_id)
    return descriptor.public_dict()


@router.get("/models/cache")
def model_cache(
    current_user: User = Depends(require_roles("admin")),
    engine: InferenceEngine = Depends(get_engine),
):
    return engine.cache_info()
