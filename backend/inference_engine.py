"""
Inference Engine

Loads models lazily through a ModelBackend and keeps at most
MODEL_CACHE_CAPACITY of them in an LRU. Each model id has its own lock so a
model is loaded once while other models keep serving.

Every load runs a warm-up forward pass on a zero tensor; a model whose output
length differs from its label count is rejected and never cached.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

import numpy as np

from config import MODEL_CACHE_CAPACITY
from errors import InferenceFailed, ModelLoadFailed, ShapeMismatch
from model_backends import ModelBackend
from model_monitoring import monitor, record_inference
from model_registry import ModelDescriptor, ModelRegistry, RegistrySnapshot
from structured_logging import get_logger

logger = get_logger(__name__)

DISTRIBUTION_TOLERANCE = 1e-4


def to_probabilities(raw: np.ndarray) -> np.ndarray:
    """Softmax the output unless it already is a probability distribution."""
    raw = np.asarray(raw, dtype=np.float64)
    if np.all(raw >= 0) and abs(raw.sum() - 1.0) <= DISTRIBUTION_TOLERANCE:
        return raw / raw.sum()
    shifted = np.exp(raw - raw.max())
    return shifted / shifted.sum()


@dataclass
class CachedModel:
    descriptor: ModelDescriptor
    handle: Any
    loaded_at: float


class InferenceEngine:
    def __init__(self, registry: ModelRegistry, backend: ModelBackend, capacity: int = MODEL_CACHE_CAPACITY):
        if capacity < 1:
            raise ValueError("Model cache capacity must be at least 1")
        self.registry = registry
        self.backend = backend
        self.capacity = capacity
        self._cache: "OrderedDict[str, CachedModel]" = OrderedDict()
        self._cache_lock = threading.Lock()
        self._model_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def attach(self) -> None:
        """Prune cached models whenever the registry publishes a new snapshot."""
        self.registry.add_listener(self._on_snapshot)

    def _on_snapshot(self, snapshot: RegistrySnapshot) -> None:
        self.retain(snapshot.descriptors.keys())

    def _lock_for(self, model_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._model_locks.get(model_id)
            if lock is None:
                lock = self._model_locks[model_id] = threading.Lock()
            return lock

    def _cached(self, descriptor: ModelDescriptor):
        with self._cache_lock:
            entry = self._cache.get(descriptor.id)
            if entry is None:
                return None
            self._cache.move_to_end(descriptor.id)
            return entry.handle

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def load(self, descriptor: ModelDescriptor) -> Any:
        """Return the cached handle for a model, loading and probing it if needed."""
        handle = self._cached(descriptor)
        if handle is not None:
            return handle

        with self._lock_for(descriptor.id):
            handle = self._cached(descriptor)
            if handle is not None:
                return handle

            start = time.perf_counter()
            try:
                handle = self.backend.load(descriptor)
            except Exception as e:
                logger.error(
                    "Model load failed",
                    extra={"model_id": descriptor.id, "error": str(e)},
                    exc_info=True,
                )
                raise ModelLoadFailed(descriptor.id, str(e)) from e

            self._warm_up(descriptor, handle)
            monitor.register_model(descriptor.id)

            evicted: List[CachedModel] = []
            with self._cache_lock:
                if descriptor.id not in self.registry.snapshot:
                    # Unregistered by a refresh while loading; serve this call without caching
                    logger.warning("Model unregistered during load", extra={"model_id": descriptor.id})
                    return handle
                self._cache[descriptor.id] = CachedModel(descriptor, handle, time.time())
                while len(self._cache) > self.capacity:
                    _, entry = self._cache.popitem(last=False)
                    evicted.append(entry)

        for entry in evicted:
            self._release(entry, reason="lru")

        logger.info(
            "Model loaded",
            extra={
                "model_id": descriptor.id,
                "load_time_ms": round((time.perf_counter() - start) * 1000, 2),
                "cache_size": len(self._cache),
            },
        )
        return handle

    def _warm_up(self, descriptor: ModelDescriptor, handle: Any) -> None:
        dummy = np.zeros(descriptor.input_shape.tensor_shape(), dtype=np.float32)
        try:
            output = np.asarray(self.backend.predict(handle, dummy)).reshape(-1)
        except Exception as e:
            self.backend.release(handle)
            raise ModelLoadFailed(descriptor.id, f"warm-up forward pass failed: {e}") from e

        if output.shape[0] != len(descriptor.labels):
            self.backend.release(handle)
            raise ModelLoadFailed(
                descriptor.id,
                f"output dimension {output.shape[0]} does not match {len(descriptor.labels)} labels",
            )

    def _release(self, entry: CachedModel, reason: str) -> None:
        self.backend.release(entry.handle)
        logger.info("Model evicted", extra={"model_id": entry.descriptor.id, "reason": reason})

    def retain(self, model_ids: Iterable[str]) -> None:
        """Evict every cached model whose id is not in model_ids."""
        keep = set(model_ids)
        with self._cache_lock:
            stale = [model_id for model_id in self._cache if model_id not in keep]
            evicted = [self._cache.pop(model_id) for model_id in stale]
        for entry in evicted:
            self._release(entry, reason="unregistered")

    def clear(self) -> None:
        self.retain(())

    def cache_info(self) -> Dict[str, Any]:
        with self._cache_lock:
            cached = list(self._cache.keys())
        return {"capacity": self.capacity, "size": len(cached), "cached": cached}

    # -------------------------------------------------------------------------
    # Prediction
    # -------------------------------------------------------------------------

    def predict(self, model_id: str, tensor: np.ndarray) -> Dict[str, float]:
        """
        Run one forward pass and return {label: probability}.

        Raises ModelNotFound, ModelLoadFailed, ShapeMismatch or InferenceFailed.
        """
        descriptor = self.registry.get(model_id)
        handle = self.load(descriptor)

        expected = descriptor.input_shape.tensor_shape()
        if tuple(tensor.shape) != expected:
            raise ShapeMismatch(expected, tensor.shape)

        start = time.perf_counter()
        try:
            raw = np.asarray(self.backend.predict(handle, tensor), dtype=np.float64).reshape(-1)
            if raw.shape[0] != len(descriptor.labels):
                raise ValueError(f"model returned {raw.shape[0]} scores for {len(descriptor.labels)} labels")
            if not np.all(np.isfinite(raw)):
                raise ValueError("model returned non-finite scores")
        except Exception as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            record_inference(model_id, elapsed_ms, success=False, error=str(e), tensor_shape=list(tensor.shape))
            raise InferenceFailed(model_id, tensor.shape, str(e)) from e

        probabilities = to_probabilities(raw)
        elapsed_ms = (time.perf_counter() - start) * 1000
        scores = {label: float(p) for label, p in zip(descriptor.labels, probabilities)}
        top_label = max(scores, key=scores.get)

        record_inference(model_id, elapsed_ms, success=True, confidence=scores[top_label], label=top_label)
        return scores
