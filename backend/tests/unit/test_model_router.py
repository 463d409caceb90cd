"""
Unit tests for model routing and explicit model selection.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from errors import ModelIncompatible, ModelNotFound, NoCompatibleModel
from model_registry import ModelRegistry
from model_router import ModelRouter, routing_order
from record_store import Record


def _record(modality="xray", body_part="chest"):
    return Record(id=1, principal_id=1, modality=modality, body_part=body_part, image_ids=[1])


@pytest.fixture
def chest_registry(tmp_path, model_factory):
    model_factory(tmp_path, "chest-a", ["N", "P"], ["xray"], ["chest"], version="1.0", name="Alpha")
    model_factory(tmp_path, "chest-b", ["N", "P"], ["xray"], ["chest"], version="1.10", name="Beta")
    model_factory(tmp_path, "chest-c", ["N", "P"], ["xray"], ["chest"], version="1.10", name="Aardvark")
    model_factory(tmp_path, "chest-off", ["N", "P"], ["xray"], ["chest"], version="9.0", is_active=False)
    registry = ModelRegistry(tmp_path)
    registry.scan_available_models()
    return registry


class TestRoutingOrder:

    def test_highest_version_then_name(self, chest_registry):
        ordered = ModelRouter(chest_registry).route("xray", "chest")

        assert [d.id for d in ordered] == ["chest-c", "chest-b", "chest-a"]

    def test_preferred_model_first(self, tmp_path, model_factory):
        model_factory(tmp_path, "old", ["N", "P"], ["xray"], ["chest"], version="1.0")
        model_factory(tmp_path, "new", ["N", "P"], ["xray"], ["chest"], version="2.0")
        registry = ModelRegistry(
            tmp_path,
            override_loader=lambda: {"old": {"is_active": True, "is_preferred": True}},
        )
        registry.scan_available_models()

        assert [d.id for d in routing_order(registry.list_active())] == ["old", "new"]

    def test_inactive_models_never_routed(self, chest_registry):
        ids = [d.id for d in ModelRouter(chest_registry).route("xray", "chest")]

        assert "chest-off" not in ids

    def test_routing_is_case_insensitive_on_body_part(self, chest_registry):
        assert ModelRouter(chest_registry).route("xray", "CHEST")


class TestSelect:

    def test_select_uses_head_of_route(self, chest_registry):
        assert ModelRouter(chest_registry).select(_record()).id == "chest-c"

    def test_no_compatible_model(self, chest_registry):
        with pytest.raises(NoCompatibleModel) as exc_info:
            ModelRouter(chest_registry).select(_record(body_part="foot"))
        assert exc_info.value.status_code == 422

    def test_explicit_model(self, chest_registry):
        assert ModelRouter(chest_registry).select(_record(), "chest-a").id == "chest-a"

    def test_explicit_unknown_model(self, chest_registry):
        with pytest.raises(ModelNotFound) as exc_info:
            ModelRouter(chest_registry).select(_record(), "missing")
        assert exc_info.value.status_code == 400

    def test_explicit_inactive_model(self, chest_registry):
        with pytest.raises(ModelNotFound):
            ModelRouter(chest_registry).select(_record(), "chest-off")

    def test_explicit_incompatible_model(self, registry):
        with pytest.raises(ModelIncompatible) as exc_info:
            ModelRouter(registry).select(_record(), "mri-model")
        assert exc_info.value.status_code == 400
