"""
Model Router: picks the classifier for a record from its modality and body part.
"""

from typing import List, Optional

from errors import ModelIncompatible, ModelNotFound, NoCompatibleModel
from model_registry import ModelDescriptor, ModelRegistry, version_key
from record_store import Record


def routing_order(descriptors: List[ModelDescriptor]) -> List[ModelDescriptor]:
    """Preferred first, then highest version, then name."""
    by_name = sorted(descriptors, key=lambda d: d.name)
    by_version = sorted(by_name, key=lambda d: version_key(d.version), reverse=True)
    return sorted(by_version, key=lambda d: not d.is_preferred)


class ModelRouter:
    def __init__(self, registry: ModelRegistry):
        self.registry = registry

    def route(self, modality: str, body_part: str) -> List[ModelDescriptor]:
        return routing_order(self.registry.find_compatible(modality, body_part))

    def select(self, record: Record, model_id: Optional[str] = None) -> ModelDescriptor:
        """
        An explicit model_id bypasses routing: it must exist, be active and
        support the record. Otherwise the head of route() is used.
        """
        if model_id:
            descriptor = self.registry.get(model_id)
            if not descriptor.supports(record.modality, record.body_part):
                raise ModelIncompatible(model_id, record.modality, record.body_part)
            return descriptor

        candidates = self.route(record.modality, record.body_part)
        if not candidates:
            raise NoCompatibleModel(record.modality, record.body_part)
        return candidates[0]
