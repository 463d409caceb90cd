"""
Model Registry

Catalogue of deployable classifiers discovered on disk. Each model lives in
its own directory under MODELS_ROOT:

    {MODELS_ROOT}/{model_id}/model.json   (manifest: metadata + weightsManifest)
    {MODELS_ROOT}/{model_id}/<weight shards referenced by weightsManifest[].paths>

The registry is built once at startup and rebuilt on an explicit admin
refresh. A scan builds a fresh immutable RegistrySnapshot and swaps it in
with a single assignment, so readers never lock.
"""

import json
import re
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from errors import ManifestParseError, ModelNotFound, WeightsMissing
from structured_logging import get_logger

logger = get_logger(__name__)

MANIFEST_NAME = "model.json"


class Modality(str, Enum):
    """Imaging technique of a study."""
    XRAY = "xray"
    MRI = "mri"
    CT = "ct"


class ModelType(str, Enum):
    CLASSIFICATION = "classification"
    SEGMENTATION = "segmentation"


class PreprocessingStep(str, Enum):
    RESIZE = "resize"
    NORMALIZE = "normalize"
    DENOISE = "denoise"
    AUGMENT = "augment"


class WeightsFormat(str, Enum):
    TORCHSCRIPT = "torchscript"
    STATE_DICT = "state_dict"


# Anatomical regions accepted at upload even when no model covers them yet
KNOWN_BODY_PARTS = frozenset({
    "abdomen", "ankle", "brain", "chest", "elbow", "foot", "general", "hand",
    "head", "hip", "knee", "lungs", "neck", "pelvis", "shoulder", "spine", "wrist",
})

DEFAULT_INPUT_SHAPE = {"width": 224, "height": 224, "channels": 3}
DEFAULT_PREPROCESSING = ("resize", "normalize")


@dataclass(frozen=True)
class InputShape:
    width: int
    height: int
    channels: int

    def tensor_shape(self) -> Tuple[int, int, int, int]:
        """Batched NHWC shape the preprocessing pipeline must produce."""
        return (1, self.height, self.width, self.channels)

    def to_dict(self) -> Dict[str, int]:
        return {"width": self.width, "height": self.height, "channels": self.channels}


@dataclass(frozen=True)
class ModelDescriptor:
    """Metadata describing one deployable model."""
    id: str
    name: str
    version: str
    labels: Tuple[str, ...]
    input_shape: InputShape
    applicable_body_parts: FrozenSet[str]
    applicable_imaging_types: FrozenSet[Modality]
    weights_location: Path
    weights_paths: Tuple[Path, ...]
    model_type: ModelType = ModelType.CLASSIFICATION
    preprocessing_steps: Tuple[PreprocessingStep, ...] = ()
    weights_format: WeightsFormat = WeightsFormat.TORCHSCRIPT
    architecture: Optional[str] = None
    description: str = ""
    accuracy: Optional[float] = None
    is_active: bool = True
    is_preferred: bool = False

    def supports(self, modality: str, body_part: str) -> bool:
        return (
            Modality(modality) in self.applicable_imaging_types
            and body_part.lower() in self.applicable_body_parts
        )

    def public_dict(self) -> Dict:
        """Fields safe to expose through the API (no weights location)."""
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "modelType": self.model_type.value,
            "applicableBodyParts": sorted(self.applicable_body_parts),
            "applicableImagingTypes": sorted(m.value for m in self.applicable_imaging_types),
            "labels": list(self.labels),
            "inputShape": self.input_shape.to_dict(),
            "preprocessingSteps": [step.value for step in self.preprocessing_steps],
            "accuracy": self.accuracy,
            "isActive": self.is_active,
            "isPreferred": self.is_preferred,
        }


@dataclass(frozen=True)
class RegistrySnapshot:
    descriptors: Mapping[str, ModelDescriptor] = field(default_factory=lambda: MappingProxyType({}))
    scanned_at: Optional[datetime] = None

    def __contains__(self, model_id: str) -> bool:
        return model_id in self.descriptors


# =============================================================================
# MANIFEST PARSING
# =============================================================================

def version_key(version: str) -> Tuple:
    """Sort key for dotted versions: numeric parts compare as numbers."""
    parts = []
    for part in re.split(r"[.\-+]", str(version)):
        if part.isdigit():
            parts.append((0, int(part), ""))
        else:
            parts.append((1, 0, part))
    return tuple(parts)


def _imaging_types_from_dirname(dirname: str) -> List[str]:
    lowered = dirname.lower()
    tokens = re.split(r"[-_\s]+", lowered)
    if "xray" in lowered or "x-ray" in lowered:
        return ["xray"]
    if "mri" in tokens:
        return ["mri"]
    if "ct" in tokens:
        return ["ct"]
    return []


def _body_parts_from_dirname(dirname: str, imaging_types: Iterable[str]) -> List[str]:
    if "brain" in dirname.lower():
        return ["brain", "head"]
    if any(t in ("xray", "ct") for t in imaging_types):
        return ["chest", "lungs"]
    return ["general"]


def _default_name(model_dir: Path, description: str) -> str:
    if description:
        return description.split(" for ")[0].strip()
    return " ".join(word.capitalize() for word in model_dir.name.split("-"))


def _parse_input_shape(model_dir: Path, raw) -> InputShape:
    raw = raw or DEFAULT_INPUT_SHAPE
    try:
        shape = InputShape(
            width=int(raw["width"]),
            height=int(raw["height"]),
            channels=int(raw["channels"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ManifestParseError(model_dir, f"invalid inputShape {raw!r}") from exc
    if shape.width <= 0 or shape.height <= 0:
        raise ManifestParseError(model_dir, "inputShape width and height must be positive")
    if shape.channels not in (1, 3):
        raise ManifestParseError(model_dir, f"inputShape channels must be 1 or 3, got {shape.channels}")
    return shape


def _parse_steps(model_dir: Path, raw) -> Tuple[PreprocessingStep, ...]:
    steps = []
    for name in raw if raw is not None else DEFAULT_PREPROCESSING:
        try:
            steps.append(PreprocessingStep(str(name).lower()))
        except ValueError:
            logger.warning(
                "Dropping unknown preprocessing step",
                extra={"model_dir": str(model_dir), "step": name},
            )
    return tuple(steps)


def _parse_weight_paths(model_dir: Path, manifest: dict) -> Tuple[Path, ...]:
    weights_manifest = manifest.get("weightsManifest")
    if not isinstance(weights_manifest, list) or not weights_manifest:
        raise ManifestParseError(model_dir, "weightsManifest must be a non-empty list")

    relative = []
    for group in weights_manifest:
        paths = group.get("paths") if isinstance(group, dict) else None
        if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
            raise ManifestParseError(model_dir, "weightsManifest[].paths must be a list of strings")
        relative.extend(paths)
    if not relative:
        raise ManifestParseError(model_dir, "weightsManifest references no weight files")

    missing = [p for p in relative if not (model_dir / p).is_file()]
    if missing:
        raise WeightsMissing(model_dir, missing)
    return tuple(model_dir / p for p in relative)


def parse_manifest(model_dir: Path) -> ModelDescriptor:
    """
    Parse and validate {model_dir}/model.json into a descriptor.

    Raises ManifestParseError for unreadable or invalid manifests and
    WeightsMissing when a referenced weight shard does not exist.
    """
    model_dir = Path(model_dir)
    manifest_path = model_dir / MANIFEST_NAME
    if not manifest_path.is_file():
        raise ManifestParseError(model_dir, f"{MANIFEST_NAME} missing")

    try:
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ManifestParseError(model_dir, str(exc)) from exc
    if not isinstance(manifest, dict):
        raise ManifestParseError(model_dir, "manifest root must be an object")

    metadata = manifest.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ManifestParseError(model_dir, "metadata must be an object")

    labels = metadata.get("labels")
    if not isinstance(labels, list) or not labels or not all(isinstance(l, str) and l for l in labels):
        raise ManifestParseError(model_dir, "metadata.labels must be a non-empty list of strings")
    if len(set(labels)) != len(labels):
        raise ManifestParseError(model_dir, "metadata.labels contains duplicates")

    try:
        model_type = ModelType(metadata.get("modelType", ModelType.CLASSIFICATION.value))
    except ValueError as exc:
        raise ManifestParseError(model_dir, f"unsupported modelType {metadata.get('modelType')!r}") from exc

    try:
        weights_format = WeightsFormat(manifest.get("format", WeightsFormat.TORCHSCRIPT.value))
    except ValueError as exc:
        raise ManifestParseError(model_dir, f"unsupported weights format {manifest.get('format')!r}") from exc

    architecture = metadata.get("architecture")
    if weights_format is WeightsFormat.STATE_DICT and not architecture:
        raise ManifestParseError(model_dir, "state_dict weights require metadata.architecture")

    raw_types = metadata.get("applicableImagingTypes") or _imaging_types_from_dirname(model_dir.name)
    imaging_types = set()
    for raw in raw_types:
        try:
            imaging_types.add(Modality(str(raw).lower()))
        except ValueError:
            logger.warning(
                "Ignoring unsupported imaging type",
                extra={"model_dir": str(model_dir), "imaging_type": raw},
            )
    if not imaging_types:
        raise ManifestParseError(model_dir, "no supported applicableImagingTypes")

    raw_parts = metadata.get("applicableBodyParts") or _body_parts_from_dirname(
        model_dir.name, [m.value for m in imaging_types]
    )
    body_parts = frozenset(str(p).strip().lower() for p in raw_parts if str(p).strip())

    accuracy = metadata.get("accuracy")
    description = metadata.get("description") or f"AI model for {model_dir.name}"

    return ModelDescriptor(
        id=model_dir.name,
        name=metadata.get("name") or _default_name(model_dir, metadata.get("description", "")),
        version=str(metadata.get("version", "1.0")),
        labels=tuple(labels),
        input_shape=_parse_input_shape(model_dir, metadata.get("inputShape")),
        applicable_body_parts=body_parts,
        applicable_imaging_types=frozenset(imaging_types),
        weights_location=model_dir,
        weights_paths=_parse_weight_paths(model_dir, manifest),
        model_type=model_type,
        preprocessing_steps=_parse_steps(model_dir, metadata.get("preprocessingSteps")),
        weights_format=weights_format,
        architecture=architecture,
        description=description,
        accuracy=float(accuracy) if accuracy is not None else None,
        is_active=bool(metadata.get("isActive", True)),
    )


def iter_model_dirs(models_root: Path) -> List[Path]:
    if not models_root.is_dir():
        return []
    return sorted(p for p in models_root.iterdir() if p.is_dir())


# =============================================================================
# REGISTRY
# =============================================================================

# Returns {model_id: {"is_active": bool, "is_preferred": bool}} from persisted admin state
OverrideLoader = Callable[[], Mapping[str, Mapping[str, bool]]]


class ModelRegistry:
    """Enumerates, validates and serves model descriptors."""

    def __init__(self, models_root: Path, override_loader: Optional[OverrideLoader] = None):
        self.models_root = Path(models_root)
        self._override_loader = override_loader
        self._snapshot = RegistrySnapshot()
        self._scan_lock = threading.Lock()
        self._listeners: List[Callable[[RegistrySnapshot], None]] = []

    @property
    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def add_listener(self, callback: Callable[[RegistrySnapshot], None]) -> None:
        """Register a callback invoked with each new snapshot."""
        self._listeners.append(callback)

    def scan_available_models(self) -> int:
        """
        Rebuild the registry from MODELS_ROOT.

        Invalid model directories are logged and skipped. Returns the number
        of descriptors registered.
        """
        with self._scan_lock:
            overrides = self._load_overrides()
            descriptors: Dict[str, ModelDescriptor] = {}

            for model_dir in iter_model_dirs(self.models_root):
                try:
                    descriptor = parse_manifest(model_dir)
                except (ManifestParseError, WeightsMissing) as e:
                    logger.warning(
                        "Skipping model directory",
                        extra={"model_dir": str(model_dir), "error_kind": e.kind, "error": e.message},
                    )
                    continue

                if descriptor.model_type is not ModelType.CLASSIFICATION:
                    logger.info(
                        "Skipping non-classification model",
                        extra={"model_id": descriptor.id, "model_type": descriptor.model_type.value},
                    )
                    continue

                override = overrides.get(descriptor.id)
                if override:
                    descriptor = replace(
                        descriptor,
                        is_active=override.get("is_active", descriptor.is_active),
                        is_preferred=override.get("is_preferred", descriptor.is_preferred),
                    )
                descriptors[descriptor.id] = descriptor

            self._snapshot = RegistrySnapshot(
                descriptors=MappingProxyType(descriptors),
                scanned_at=datetime.utcnow(),
            )

        logger.info(
            "Model registry scanned",
            extra={"models_root": str(self.models_root), "registered": len(descriptors)},
        )
        for callback in self._listeners:
            callback(self._snapshot)
        return len(descriptors)

    def refresh(self) -> int:
        """Admin-triggered rescan."""
        return self.scan_available_models()

    def _load_overrides(self) -> Mapping[str, Mapping[str, bool]]:
        if self._override_loader is None:
            return {}
        return self._override_loader() or {}

    def get(self, model_id: str) -> ModelDescriptor:
        descriptor = self._snapshot.descriptors.get(model_id)
        if descriptor is None or not descriptor.is_active:
            raise ModelNotFound(model_id)
        return descriptor

    def all(self) -> List[ModelDescriptor]:
        """Every registered descriptor, active or not."""
        return list(self._snapshot.descriptors.values())

    def list_active(self) -> List[ModelDescriptor]:
        return [d for d in self._snapshot.descriptors.values() if d.is_active]

    def find_compatible(self, modality: str, body_part: str) -> List[ModelDescriptor]:
        """Active descriptors that accept both the modality and the body part."""
        return [d for d in self.list_active() if d.supports(modality, body_part)]

    def vocabulary(self) -> Dict[str, FrozenSet[str]]:
        """Modalities and body parts accepted at the API boundary."""
        body_parts = set(KNOWN_BODY_PARTS)
        for descriptor in self._snapshot.descriptors.values():
            body_parts.update(descriptor.applicable_body_parts)
        return {
            "modalities": frozenset(m.value for m in Modality),
            "body_parts": frozenset(body_parts),
        }
