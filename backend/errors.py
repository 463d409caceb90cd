"""
Diagnostics Error Taxonomy

Every failure the inference pipeline can surface is a DiagnosticsError
subclass carrying its kind, HTTP status and the message safe to show
clients. main.py registers one exception handler that renders them.

Per-image errors (ImageDecodeFailed, ShapeMismatch, InferenceFailed) are
caught by the controller and folded into record warnings; they only reach
the client when no image in the record succeeded.
"""

from typing import Any, Dict, Optional, Tuple


class DiagnosticsError(Exception):
    """Base class for all pipeline errors."""

    kind = "DiagnosticsError"
    status_code = 500
    # Infrastructure errors hide their details from clients
    expose_details = True
    public_message = "An error occurred during analysis"

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.public_message
        self.context = context
        super().__init__(self.message)

    @property
    def client_message(self) -> str:
        return self.message if self.expose_details else self.public_message

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.client_message}


# =============================================================================
# REQUEST / ACCESS ERRORS
# =============================================================================

class InvalidUpload(DiagnosticsError):
    kind = "InvalidUpload"
    status_code = 400


class AuthMissing(DiagnosticsError):
    kind = "AuthMissing"
    status_code = 401
    public_message = "Could not validate credentials"


class AuthExpired(DiagnosticsError):
    kind = "AuthExpired"
    status_code = 401
    public_message = "Your session has expired. Please log in again."


class Forbidden(DiagnosticsError):
    kind = "Forbidden"
    status_code = 403
    public_message = "You do not have permission to perform this action"


class RecordNotFound(DiagnosticsError):
    kind = "RecordNotFound"
    status_code = 404
    public_message = "Medical record not found"


class InvalidTransition(DiagnosticsError):
    kind = "InvalidTransition"
    status_code = 409

    def __init__(self, current: str, target: str, record_id: Any = None):
        self.current = current
        self.target = target
        super().__init__(
            f"Record {record_id} cannot move from '{current}' to '{target}'",
            record_id=record_id,
        )


class AnalysisCancelled(DiagnosticsError):
    kind = "AnalysisCancelled"
    status_code = 499
    public_message = "Client closed request"


# =============================================================================
# MODEL SELECTION ERRORS
# =============================================================================

class ModelNotFound(DiagnosticsError):
    kind = "ModelNotFound"
    status_code = 400

    def __init__(self, model_id: str):
        self.model_id = model_id
        super().__init__(f"ML model '{model_id}' not found or inactive", model_id=model_id)


class ModelIncompatible(DiagnosticsError):
    kind = "ModelIncompatible"
    status_code = 400

    def __init__(self, model_id: str, modality: str, body_part: str):
        self.model_id = model_id
        super().__init__(
            f"Model '{model_id}' is not applicable for {modality} images of the {body_part}",
            model_id=model_id,
            modality=modality,
            body_part=body_part,
        )


class NoCompatibleModel(DiagnosticsError):
    kind = "NoCompatibleModel"
    status_code = 422

    def __init__(self, modality: str, body_part: str):
        super().__init__(
            f"No active model supports {modality} images of the {body_part}",
            modality=modality,
            body_part=body_part,
        )


# =============================================================================
# PER-IMAGE ERRORS
# =============================================================================

class ImageDecodeFailed(DiagnosticsError):
    kind = "ImageDecodeFailed"
    status_code = 422


class ShapeMismatch(DiagnosticsError):
    kind = "ShapeMismatch"
    status_code = 422

    def __init__(self, expected: Tuple[int, ...], got: Tuple[int, ...]):
        self.expected = tuple(expected)
        self.got = tuple(got)
        super().__init__(f"Expected tensor shape {self.expected}, got {self.got}")


# =============================================================================
# INFRASTRUCTURE ERRORS
# =============================================================================

class ModelLoadFailed(DiagnosticsError):
    kind = "ModelLoadFailed"
    status_code = 500
    expose_details = False
    public_message = "The diagnostic model could not be loaded"

    def __init__(self, model_id: str, reason: str):
        self.model_id = model_id
        self.reason = reason
        super().__init__(f"Failed to load model '{model_id}': {reason}", model_id=model_id)


class InferenceFailed(DiagnosticsError):
    kind = "InferenceFailed"
    status_code = 500
    expose_details = False
    public_message = "Model inference failed"

    def __init__(self, model_id: str, tensor_shape: Tuple[int, ...], reason: str):
        self.model_id = model_id
        self.tensor_shape = tuple(tensor_shape)
        self.reason = reason
        super().__init__(
            f"Inference with '{model_id}' on tensor {self.tensor_shape} failed: {reason}",
            model_id=model_id,
        )


class InferenceTimeout(DiagnosticsError):
    kind = "InferenceTimeout"
    status_code = 504
    public_message = "Analysis did not complete in time"


class MixedModelPredictions(DiagnosticsError):
    kind = "MixedModelPredictions"
    status_code = 500
    expose_details = False


# =============================================================================
# MODEL MANIFEST ERRORS (registry scan / sync tool)
# =============================================================================

class ManifestParseError(DiagnosticsError):
    kind = "ManifestParseError"

    def __init__(self, model_dir: Any, reason: str):
        self.model_dir = model_dir
        super().__init__(f"Invalid manifest in {model_dir}: {reason}")


class WeightsMissing(DiagnosticsError):
    kind = "WeightsMissing"

    def __init__(self, model_dir: Any, missing):
        self.model_dir = model_dir
        self.missing = list(missing)
        super().__init__(f"Missing weight files in {model_dir}: {', '.join(self.missing)}")
