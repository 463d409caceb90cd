"""
Model Monitoring

In-process inference health per model: latency, error rate, mean top-label
confidence and how often each label wins. A sudden shift in the label mix
of a chest model is usually the first sign of a bad weights push or a
scanner sending differently windowed images.

Samples are kept in a bounded window per model, so all figures describe
recent traffic only.
"""

import threading
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Optional

import numpy as np

from structured_logging import get_logger, log_model_inference

logger = get_logger("ml.monitoring")

# (minimum error rate in percent, status), checked in order
STATUS_BY_ERROR_RATE = ((25.0, "unhealthy"), (10.0, "degraded"), (5.0, "warning"))
STATUS_SEVERITY = ("unhealthy", "degraded", "warning")


@dataclass
class InferenceSample:
    at: datetime
    latency_ms: float
    ok: bool
    confidence: Optional[float] = None
    label: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ModelHealth:
    model_id: str
    status: str
    inferences: int = 0
    failures: int = 0
    error_rate: float = 0.0
    avg_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    avg_confidence: float = 0.0
    inferences_last_hour: int = 0
    label_counts: Dict[str, int] = field(default_factory=dict)
    last_inference_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.last_inference_at is not None:
            data["last_inference_at"] = self.last_inference_at.isoformat()
        return data


def status_for(error_rate: float) -> str:
    for threshold, status in STATUS_BY_ERROR_RATE:
        if error_rate >= threshold:
            return status
    return "healthy"


def summarize(model_id: str, samples) -> ModelHealth:
    if not samples:
        return ModelHealth(model_id=model_id, status="no_data")

    ok = [s for s in samples if s.ok]
    failed = [s for s in samples if not s.ok]
    latencies = np.array([s.latency_ms for s in ok], dtype=np.float64)
    confidences = [s.confidence for s in ok if s.confidence is not None]
    hour_ago = datetime.utcnow() - timedelta(hours=1)
    error_rate = round(100.0 * len(failed) / len(samples), 2)

    return ModelHealth(
        model_id=model_id,
        status=status_for(error_rate),
        inferences=len(samples),
        failures=len(failed),
        error_rate=error_rate,
        avg_latency_ms=round(float(latencies.mean()), 2) if latencies.size else 0.0,
        p95_latency_ms=round(float(np.percentile(latencies, 95)), 2) if latencies.size else 0.0,
        avg_confidence=round(float(np.mean(confidences)), 4) if confidences else 0.0,
        inferences_last_hour=sum(1 for s in samples if s.at >= hour_ago),
        label_counts=dict(Counter(s.label for s in ok if s.label is not None)),
        last_inference_at=samples[-1].at,
        last_error=failed[-1].error if failed else None,
    )


class InferenceMonitor:
    """Thread-safe per-model sample windows."""

    def __init__(self, window: int = 1000):
        self.window = window
        self._lock = threading.Lock()
        self._samples: Dict[str, Deque[InferenceSample]] = {}

    def _window_for(self, model_id: str) -> Deque[InferenceSample]:
        samples = self._samples.get(model_id)
        if samples is None:
            samples = self._samples[model_id] = deque(maxlen=self.window)
        return samples

    def register_model(self, model_id: str) -> None:
        """Make a loaded model visible in health output before its first inference."""
        with self._lock:
            self._window_for(model_id)

    def record(
        self,
        model_id: str,
        latency_ms: float,
        ok: bool,
        confidence: Optional[float] = None,
        label: Optional[str] = None,
        error: Optional[str] = None,
    ) -> InferenceSample:
        sample = InferenceSample(datetime.utcnow(), latency_ms, ok, confidence, label, error)
        with self._lock:
            self._window_for(model_id).append(sample)
        return sample

    def health(self, model_id: str) -> Optional[ModelHealth]:
        with self._lock:
            if model_id not in self._samples:
                return None
            samples = list(self._samples[model_id])
        return summarize(model_id, samples)

    def all_health(self) -> Dict[str, ModelHealth]:
        with self._lock:
            snapshot = {model_id: list(samples) for model_id, samples in self._samples.items()}
        return {model_id: summarize(model_id, samples) for model_id, samples in snapshot.items()}

    def summary(self) -> Dict[str, Any]:
        statuses = Counter(h.status for h in self.all_health().values())
        overall = next((s for s in STATUS_SEVERITY if statuses.get(s)), "healthy")
        return {
            "overall_status": overall,
            "total_models": sum(statuses.values()),
            "models_by_status": dict(statuses),
            "timestamp": datetime.utcnow().isoformat(),
        }

    def reset(self, model_id: Optional[str] = None) -> None:
        with self._lock:
            if model_id is None:
                self._samples.clear()
            else:
                self._samples.pop(model_id, None)


monitor = InferenceMonitor()


def record_inference(
    model_id: str,
    latency_ms: float,
    success: bool,
    confidence: Optional[float] = None,
    label: Optional[str] = None,
    error: Optional[str] = None,
    **extra
) -> InferenceSample:
    """Log one forward pass and add it to the global monitor."""
    log_model_inference(model_id, latency_ms, success, label=label, confidence=confidence, error=error, **extra)
    return monitor.record(model_id, latency_ms, success, confidence=confidence, label=label, error=error)


def get_model_health(model_id: str) -> Optional[ModelHealth]:
    return monitor.health(model_id)


def get_system_summary() -> Dict[str, Any]:
    return monitor.summary()
