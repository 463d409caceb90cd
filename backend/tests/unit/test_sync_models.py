"""
Unit tests for the model sync command.
"""

import os
import sys

import pytest
from sqlalchemy.exc import OperationalError

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from record_store import InMemoryRecordStore
from sync_models import (
    EXIT_OK, EXIT_PARSE_ERROR, EXIT_STORE_ERROR, EXIT_WEIGHTS_MISSING,
    main, sync_models,
)


class BrokenStore(InMemoryRecordStore):
    def upsert_model(self, descriptor):
        raise OperationalError("INSERT INTO model_descriptors", {}, Exception("database is locked"))


def _broken_manifest(root, name="broken-model"):
    model_dir = root / name
    model_dir.mkdir(parents=True)
    (model_dir / "model.json").write_text("{not json", encoding="utf-8")


class TestSyncModels:

    def test_all_valid(self, models_root):
        store = InMemoryRecordStore()

        assert sync_models(models_root, store) == EXIT_OK
        assert set(store.model_overrides()) == {"xray-model", "mri-model", "gray-xray-model"}

    def test_sync_keeps_manifest_active_flag(self, models_root):
        store = InMemoryRecordStore()

        sync_models(models_root, store)

        assert store.model_overrides()["gray-xray-model"]["is_active"] is False
        assert store.model_overrides()["xray-model"]["is_active"] is True

    def test_parse_error(self, models_root):
        _broken_manifest(models_root)
        store = InMemoryRecordStore()

        assert sync_models(models_root, store) == EXIT_PARSE_ERROR
        # the valid models are still synced
        assert "xray-model" in store.model_overrides()

    def test_weights_missing(self, models_root, model_factory):
        model_factory(models_root, "no-weights", ["N", "P"], ["ct"], ["chest"], write_weights=False)

        assert sync_models(models_root, InMemoryRecordStore()) == EXIT_WEIGHTS_MISSING

    def test_highest_code_wins(self, models_root, model_factory):
        _broken_manifest(models_root)
        model_factory(models_root, "no-weights", ["N", "P"], ["ct"], ["chest"], write_weights=False)

        assert sync_models(models_root, InMemoryRecordStore()) == EXIT_WEIGHTS_MISSING
        assert sync_models(models_root, BrokenStore()) == EXIT_STORE_ERROR

    def test_store_error(self, models_root):
        assert sync_models(models_root, BrokenStore()) == EXIT_STORE_ERROR

    def test_missing_root_is_empty(self, tmp_path):
        assert sync_models(tmp_path / "nowhere", InMemoryRecordStore()) == EXIT_OK


class TestMain:

    def test_check_writes_nothing(self, models_root):
        assert main(["--models-root", str(models_root), "--check"]) == EXIT_OK

    def test_check_reports_errors(self, models_root):
        _broken_manifest(models_root)

        assert main(["--models-root", str(models_root), "--check"]) == EXIT_PARSE_ERROR

    def test_unknown_argument(self):
        with pytest.raises(SystemExit):
            main(["--bogus"])
