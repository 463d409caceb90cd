"""
Model backends: the load / predict / release capability the inference
engine drives. Tensors cross this boundary as numpy arrays in NHWC layout.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

import numpy as np
import torch
from torch import nn
from torchvision import models

from model_registry import ModelDescriptor, WeightsFormat
from structured_logging import get_logger

logger = get_logger(__name__)


class ModelBackend(ABC):
    name = "base"

    @abstractmethod
    def load(self, descriptor: ModelDescriptor) -> Any:
        """Load weights and return an opaque handle."""

    @abstractmethod
    def predict(self, handle: Any, tensor: np.ndarray) -> np.ndarray:
        """Forward pass on a [1, H, W, C] tensor. Returns the raw output vector."""

    def release(self, handle: Any) -> None:
        pass


# =============================================================================
# TORCH BACKEND
# =============================================================================

ARCHITECTURES = {
    "resnet18": models.resnet18,
    "resnet34": models.resnet34,
    "resnet50": models.resnet50,
    "efficientnet_b0": models.efficientnet_b0,
    "efficientnet_b3": models.efficientnet_b3,
}


def create_classifier(architecture: str, num_classes: int, channels: int = 3) -> nn.Module:
    """Build an untrained torchvision classifier with a num_classes head."""
    factory = ARCHITECTURES.get(architecture)
    if factory is None:
        raise ValueError(f"Unsupported architecture '{architecture}'")

    model = factory(weights=None)
    if architecture.startswith("resnet"):
        model.fc = nn.Linear(model.fc.in_features, num_classes)
        if channels == 1:
            model.conv1 = nn.Conv2d(1, 64, kernel_size=7, stride=2, padding=3, bias=False)
    else:
        num_features = model.classifier[1].in_features
        model.classifier = nn.Sequential(
            nn.Dropout(p=0.3, inplace=True),
            nn.Linear(num_features, num_classes)
        )
        if channels == 1:
            stem = model.features[0][0]
            model.features[0][0] = nn.Conv2d(
                1, stem.out_channels, kernel_size=3, stride=2, padding=1, bias=False
            )
    return model


def _unwrap_checkpoint(checkpoint):
    for key in ("model_state_dict", "state_dict", "model"):
        if isinstance(checkpoint, dict) and isinstance(checkpoint.get(key), dict):
            return checkpoint[key]
    return checkpoint


class TorchBackend(ModelBackend):
    """TorchScript modules or torchvision architectures with state_dict shards."""

    name = "torch"

    def __init__(self, device: Optional[str] = None):
        self.device = torch.device(device or ("cuda" if torch.cuda.is_available() else "cpu"))

    def load(self, descriptor: ModelDescriptor) -> nn.Module:
        if descriptor.weights_format is WeightsFormat.TORCHSCRIPT:
            model = torch.jit.load(str(descriptor.weights_paths[0]), map_location=self.device)
        else:
            model = create_classifier(
                descriptor.architecture,
                num_classes=len(descriptor.labels),
                channels=descriptor.input_shape.channels,
            )
            state_dict = {}
            for path in descriptor.weights_paths:
                shard = torch.load(str(path), map_location=self.device, weights_only=True)
                state_dict.update(_unwrap_checkpoint(shard))
            # Checkpoints saved from DataParallel prefix every key with "module."
            state_dict = {
                (k[len("module."):] if k.startswith("module.") else k): v
                for k, v in state_dict.items()
            }
            model.load_state_dict(state_dict)

        model = model.to(self.device)
        model.eval()
        logger.info(
            "Loaded torch model",
            extra={"model_id": descriptor.id, "device": str(self.device), "format": descriptor.weights_format.value},
        )
        return model

    def predict(self, handle: nn.Module, tensor: np.ndarray) -> np.ndarray:
        batch = torch.from_numpy(np.ascontiguousarray(tensor.transpose(0, 3, 1, 2))).to(self.device)
        with torch.no_grad():
            output = handle(batch)
        if hasattr(output, "logits"):
            output = output.logits
        if isinstance(output, (tuple, list)):
            output = output[0]
        return output.detach().cpu().numpy().reshape(-1)

    def release(self, handle: nn.Module) -> None:
        del handle
        if self.device.type == "cuda":
            torch.cuda.empty_cache()


# =============================================================================
# MOCK BACKEND
# =============================================================================

class MockBackend(ModelBackend):
    """
    Deterministic stand-in used with TESTING=1 or INFERENCE_BACKEND=mock.
    Scores are derived from the tensor's statistics, so the same image always
    produces the same prediction.
    """

    name = "mock"

    def load(self, descriptor: ModelDescriptor) -> dict:
        return {"model_id": descriptor.id, "num_classes": len(descriptor.labels)}

    def predict(self, handle: dict, tensor: np.ndarray) -> np.ndarray:
        num_classes = handle["num_classes"]
        seed = float(np.abs(tensor).mean()) if tensor.size else 0.0
        positions = np.arange(num_classes, dtype=np.float64)
        return np.cos(positions * (1.0 + seed)) * 2.0
