"""
Unit tests for the record store. Every test runs against both the
SQLAlchemy store and the in-memory store.
"""

import itertools
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from errors import InvalidTransition, RecordNotFound
from model_registry import parse_manifest
from record_store import (
    InMemoryRecordStore,
    RecordFilters,
    RecordStatus,
    SQLRecordStore,
    check_transition,
)

_storage_names = itertools.count(1)

AGGREGATE = {
    "label": "Pneumonia",
    "confidence": 0.7,
    "conditionScores": {"Normal": 0.3, "Pneumonia": 0.7},
    "modelId": "xray-model",
    "imageCount": 1,
}


@pytest.fixture(params=["sql", "memory"])
def store(request, test_db, test_user):
    if request.param == "sql":
        return SQLRecordStore(test_db)
    return InMemoryRecordStore()


def _new_record(store, principal_id=1, modality="xray", body_part="chest", notes=""):
    storage_path = f"{principal_id}_{next(_storage_names)}_scan.png"
    image = store.add_image(principal_id, storage_path, "scan.png", 10, "image/png")
    return store.create(principal_id, modality, body_part, [image.id], notes=notes)


def _analyze(store, record_id, label="Pneumonia"):
    store.update_status(record_id, RecordStatus.ANALYZING.value)
    return store.complete_analysis(
        record_id,
        predictions=[{"imageId": 1, "modelId": "xray-model"}],
        aggregate=dict(AGGREGATE, label=label),
        warnings=[],
        model_used={"id": "xray-model"},
    )


class TestTransitions:

    @pytest.mark.parametrize("current, target", [
        ("pending", "analyzing"),
        ("pending", "failed"),
        ("analyzing", "analyzed"),
        ("analyzing", "failed"),
        ("analyzing", "pending"),
    ])
    def test_allowed(self, current, target):
        check_transition(1, current, target)

    @pytest.mark.parametrize("current, target", [
        ("pending", "analyzed"),
        ("analyzed", "analyzing"),
        ("analyzed", "pending"),
        ("failed", "analyzing"),
        ("failed", "pending"),
    ])
    def test_forbidden(self, current, target):
        with pytest.raises(InvalidTransition):
            check_transition(1, current, target)


class TestRecords:

    def test_create_and_get(self, store):
        record = _new_record(store, notes="cough for 2 weeks")

        fetched = store.get(record.id)

        assert fetched.status == "pending"
        assert fetched.modality == "xray"
        assert fetched.body_part == "chest"
        assert fetched.notes == "cough for 2 weeks"
        assert fetched.predictions == []
        assert fetched.aggregate_diagnosis is None
        assert len(fetched.image_ids) == 1

    def test_get_missing(self, store):
        with pytest.raises(RecordNotFound):
            store.get(404)

    def test_complete_analysis(self, store):
        record = _new_record(store)

        analyzed = _analyze(store, record.id)

        assert analyzed.status == "analyzed"
        assert analyzed.aggregate_diagnosis["label"] == "Pneumonia"
        assert analyzed.predictions
        assert analyzed.model_used == {"id": "xray-model"}

    def test_complete_requires_analyzing(self, store):
        record = _new_record(store)

        with pytest.raises(InvalidTransition):
            store.complete_analysis(record.id, [], AGGREGATE, [])
        assert store.get(record.id).status == "pending"

    def test_second_claim_is_rejected(self, store):
        record = _new_record(store)
        store.update_status(record.id, RecordStatus.ANALYZING.value)

        with pytest.raises(InvalidTransition):
            store.update_status(record.id, RecordStatus.ANALYZING.value)

    def test_mark_failed(self, store):
        record = _new_record(store)

        failed = store.mark_failed(record.id, "NoCompatibleModel", "No model for xray/foot")

        assert failed.status == "failed"
        assert failed.failure == {"kind": "NoCompatibleModel", "message": "No model for xray/foot"}
        with pytest.raises(InvalidTransition):
            store.update_status(record.id, RecordStatus.ANALYZING.value)

    def test_attach_predictions_and_aggregate_while_analyzing(self, store):
        record = _new_record(store)
        store.update_status(record.id, RecordStatus.ANALYZING.value)

        store.attach_predictions(record.id, [{"imageId": 1}])
        updated = store.set_aggregate(record.id, AGGREGATE, model_used={"id": "xray-model"})

        assert updated.predictions == [{"imageId": 1}]
        assert updated.aggregate_diagnosis["label"] == "Pneumonia"

    def test_attach_predictions_requires_analyzing(self, store):
        record = _new_record(store)

        with pytest.raises(InvalidTransition):
            store.attach_predictions(record.id, [{"imageId": 1}])

    def test_doctor_diagnosis_keeps_ai_result(self, store):
        record = _new_record(store)
        _analyze(store, record.id)

        updated = store.set_doctor_diagnosis(record.id, "Bronchitis", "Clinical correlation", diagnosed_by=5)

        assert updated.doctor_diagnosis == "Bronchitis"
        assert updated.aggregate_diagnosis["label"] == "Pneumonia"
        data = updated.to_dict()
        assert data["doctorDiagnosis"]["condition"] == "Bronchitis"
        assert data["doctorDiagnosis"]["diagnosedBy"] == 5
        assert data["aggregateDiagnosis"]["label"] == "Pneumonia"

    def test_delete(self, store):
        record = _new_record(store)

        store.delete(record.id)

        with pytest.raises(RecordNotFound):
            store.get(record.id)


class TestListing:

    def test_principal_scoping_and_newest_first(self, store):
        first = _new_record(store, principal_id=1)
        second = _new_record(store, principal_id=1)
        _new_record(store, principal_id=2)

        page = store.list(1)

        assert [r.id for r in page.items] == [second.id, first.id]
        assert page.total == 2
        assert store.list(None).total == 3

    def test_pagination(self, store):
        for _ in range(5):
            _new_record(store)

        page = store.list(1, page=2, limit=2)

        assert len(page.items) == 2
        assert page.total == 5
        assert page.pages == 3
        assert page.to_dict()["page"] == 2

    def test_limit_is_capped(self, store):
        assert store.list(1, limit=1000).limit == 100

    def test_filters(self, store):
        xray = _new_record(store, modality="xray", body_part="chest")
        mri = _new_record(store, modality="mri", body_part="brain", notes="headache")
        _analyze(store, xray.id, label="Tuberculosis")

        assert [r.id for r in store.list(1, RecordFilters(status="analyzed")).items] == [xray.id]
        assert [r.id for r in store.list(1, RecordFilters(modality="mri")).items] == [mri.id]
        assert [r.id for r in store.list(1, RecordFilters(search="tubercul")).items] == [xray.id]
        assert [r.id for r in store.list(1, RecordFilters(search="HEADACHE")).items] == [mri.id]
        assert [r.id for r in store.list(1, RecordFilters(search="brain")).items] == [mri.id]

    def test_search_wildcards_match_literally(self, store):
        _new_record(store, notes="follow-up in 2 weeks")
        reduced = _new_record(store, notes="dose reduced 50% after_review")

        assert [r.id for r in store.list(1, RecordFilters(search="%")).items] == [reduced.id]
        assert [r.id for r in store.list(1, RecordFilters(search="d_c")).items] == []
        assert [r.id for r in store.list(1, RecordFilters(search="after_")).items] == [reduced.id]


class TestImages:

    def test_add_get_remove(self, store):
        image = store.add_image(1, "1_1_a.png", "a.png", 42, "image/png")

        assert store.get_image(image.id).size_bytes == 42
        store.remove_image(image.id)
        assert store.get_image(image.id) is None

    def test_image_is_referenced(self, store):
        record = _new_record(store)
        image_id = record.image_ids[0]

        assert store.image_is_referenced(image_id)
        store.delete(record.id)
        assert not store.image_is_referenced(image_id)


class TestModelRows:

    def test_upsert_keeps_admin_toggle(self, store, models_root):
        descriptor = parse_manifest(models_root / "xray-model")

        store.upsert_model(descriptor)
        store.set_model_flags("xray-model", is_active=False)
        store.upsert_model(descriptor)

        assert store.model_overrides()["xray-model"] == {"is_active": False, "is_preferred": False}

    def test_usage_counters(self, store):
        assert store.model_usage("xray-model") == {"usageCount": 0, "lastUsed": None}

        store.record_model_usage("xray-model")
        store.record_model_usage("xray-model")

        usage = store.model_usage("xray-model")
        assert usage["usageCount"] == 2
        assert usage["lastUsed"] is not None
