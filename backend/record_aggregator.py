"""
Record Aggregator

Merges per-image predictions of one record into the record-level diagnosis
and builds the human-readable explanation attached to it.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from errors import MixedModelPredictions
from model_registry import ModelDescriptor


@dataclass(frozen=True)
class PerImagePrediction:
    image_id: int
    model_id: str
    condition_scores: Dict[str, float]
    top_label: str
    top_confidence: float
    elapsed_ms: float

    @classmethod
    def from_scores(cls, image_id: int, model_id: str, scores: Dict[str, float], elapsed_ms: float):
        # max() keeps the first of equal scores, i.e. descriptor label order
        top_label = max(scores, key=scores.get)
        return cls(
            image_id=image_id,
            model_id=model_id,
            condition_scores=dict(scores),
            top_label=top_label,
            top_confidence=scores[top_label],
            elapsed_ms=round(elapsed_ms, 2),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "imageId": self.image_id,
            "modelId": self.model_id,
            "conditionScores": self.condition_scores,
            "topLabel": self.top_label,
            "topConfidence": self.top_confidence,
            "elapsedMs": self.elapsed_ms,
        }


def aggregate(predictions: Sequence[PerImagePrediction], labels: Sequence[str]) -> Dict[str, Any]:
    """
    Arithmetic mean of each label's probability across images. The label
    with the highest mean wins; ties go to the earliest label in `labels`.
    """
    if not predictions:
        raise ValueError("Cannot aggregate an empty prediction set")

    model_ids = {p.model_id for p in predictions}
    if len(model_ids) > 1:
        raise MixedModelPredictions(
            f"Predictions come from several models: {', '.join(sorted(model_ids))}"
        )

    count = len(predictions)
    means = {
        label: sum(p.condition_scores.get(label, 0.0) for p in predictions) / count
        for label in labels
    }

    best_label = labels[0]
    for label in labels[1:]:
        if means[label] > means[best_label]:
            best_label = label

    return {
        "label": best_label,
        "confidence": means[best_label],
        "conditionScores": means,
        "modelId": model_ids.pop(),
        "imageCount": count,
    }


# =============================================================================
# EXPLANATION
# =============================================================================

CONDITION_INFO = {
    "pneumonia": {
        "description": "Pneumonia is an infection that inflames the air sacs in one or both lungs, which may fill with fluid.",
        "recommendations": [
            "Consult with a physician for proper evaluation",
            "Additional tests may include blood tests, sputum tests, or chest CT scan",
            "Follow-up imaging recommended after treatment",
        ],
    },
    "covid": {
        "description": "COVID-19 is a respiratory disease caused by the SARS-CoV-2 virus, which can cause various levels of respiratory distress.",
        "recommendations": [
            "Immediate isolation to prevent spread",
            "Follow-up with PCR testing to confirm diagnosis",
            "Monitor oxygen levels and symptoms",
            "Consult with a healthcare provider for treatment options",
        ],
    },
    "tuberculosis": {
        "description": "Tuberculosis is a bacterial infection that mainly affects the lungs.",
        "recommendations": [
            "Urgent medical attention required",
            "Further confirmatory tests recommended",
            "Treatment typically involves antibiotic regimen",
        ],
    },
    "fracture": {
        "description": "A fracture is a break in the continuity of the bone, which can vary in severity.",
        "recommendations": [
            "Immobilize the affected area",
            "Consult with an orthopedic specialist",
            "Follow-up imaging to monitor healing",
            "Physical therapy may be recommended after initial healing",
        ],
    },
    "tumor": {
        "description": "A mass of abnormal tissue was detected and needs clinical characterisation.",
        "recommendations": [
            "Refer to a specialist for further evaluation",
            "Contrast-enhanced imaging or biopsy may be required",
        ],
    },
    "normal": {
        "description": "No abnormalities detected in the image.",
        "recommendations": [
            "Regular check-ups as recommended by your healthcare provider",
            "Maintain preventive healthcare practices",
        ],
    },
}

DEFAULT_RECOMMENDATIONS = ["Consult with a healthcare professional for accurate diagnosis"]


def confidence_level(confidence: float) -> str:
    percent = confidence * 100
    if percent > 90:
        return "very high"
    if percent > 75:
        return "high"
    if percent > 50:
        return "moderate"
    return "low"


def condition_info(label: str) -> Optional[Dict[str, Any]]:
    lowered = label.lower()
    for key, info in CONDITION_INFO.items():
        if re.search(rf"\b{key}", lowered):
            return info
    return None


def explain(label: str, confidence: float, descriptor: ModelDescriptor) -> Dict[str, Any]:
    percent = confidence * 100
    level = confidence_level(confidence)

    details: List[str] = []
    if level == "very high":
        details.append(f"The AI is very confident in this diagnosis ({percent:.1f}% confidence).")
    elif level == "high":
        details.append(f"The AI is confident in this diagnosis ({percent:.1f}% confidence).")
    elif level == "moderate":
        details.append(f"The AI has moderate confidence in this diagnosis ({percent:.1f}% confidence).")
    else:
        details.append(
            f"The AI has low confidence in this diagnosis ({percent:.1f}% confidence). "
            "Consider additional testing."
        )

    model_line = f"This analysis was performed using {descriptor.name} (v{descriptor.version})"
    if descriptor.accuracy is not None:
        model_line += f" with a reported accuracy of {descriptor.accuracy:.1f}%"
    details.append(model_line + ".")

    info = condition_info(label)
    if info:
        details.append(info["description"])

    return {
        "summary": f"AI model detected {label} with {percent:.1f}% confidence.",
        "confidenceLevel": level,
        "details": details,
        "recommendations": list(info["recommendations"]) if info else list(DEFAULT_RECOMMENDATIONS),
    }
