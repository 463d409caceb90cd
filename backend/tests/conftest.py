"""
Pytest configuration and shared fixtures for Radiology Diagnostics tests.

This module provides:
- Test database setup (SQLite in-memory)
- FastAPI TestClient configuration with the pipeline singletons overridden
- Authentication fixtures (patient, doctor, admin users and tokens)
- Model directory fixtures (manifests + weight shards on disk)
- Image fixtures generated with Pillow

TESTING=1 makes shared.py serve the deterministic MockBackend, so no real
weights are ever loaded.
"""

import json
import os
import sys
import tempfile
from datetime import datetime, timedelta
from io import BytesIO
from pathlib import Path
from typing import Dict, Generator, List, Optional

import numpy as np
import pydicom
import pytest
from pydicom.dataset import FileMetaDataset
from pydicom.encaps import encapsulate
from pydicom.uid import JPEG2000Lossless, SecondaryCaptureImageStorage, generate_uid

# =============================================================================
# ENABLE TEST MODE BEFORE ANY IMPORTS
# =============================================================================
# config.py reads these at import time
_TEST_ROOT = tempfile.mkdtemp(prefix="radiology-tests-")
os.environ["TESTING"] = "1"
os.environ.setdefault("UPLOADS_DIR", os.path.join(_TEST_ROOT, "uploads"))
os.environ.setdefault("MODELS_ROOT", os.path.join(_TEST_ROOT, "models"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_TEST_ROOT, 'test.db')}")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Add backend directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from auth import create_access_token, get_password_hash
from database import Base, User
from inference_controller import InferenceWorkerPool
from inference_engine import InferenceEngine
from model_backends import MockBackend, ModelBackend
from model_registry import ModelRegistry
from record_store import SQLRecordStore


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine using SQLite in-memory."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def test_db(test_engine) -> Generator[Session, None, None]:
    """Create a test database session with automatic rollback."""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(scope="function")
def override_get_db(test_db):
    """Override the get_db dependency to use test database."""
    def _override_get_db():
        try:
            yield test_db
        finally:
            pass
    return _override_get_db


# =============================================================================
# MODEL FIXTURES
# =============================================================================

def write_model(
    root: Path,
    model_id: str,
    labels: List[str],
    imaging_types: List[str],
    body_parts: List[str],
    width: int = 224,
    height: int = 224,
    channels: int = 3,
    steps: Optional[List[str]] = None,
    version: str = "1.0",
    accuracy: Optional[float] = None,
    is_active: bool = True,
    name: Optional[str] = None,
    weights: Optional[List[str]] = None,
    write_weights: bool = True,
    model_type: str = "classification",
) -> Path:
    """Write a model directory the way the deployment tooling lays it out."""
    model_dir = Path(root) / model_id
    model_dir.mkdir(parents=True, exist_ok=True)
    weights = weights or ["model.pt"]

    metadata = {
        "name": name or model_id,
        "version": version,
        "description": f"Test model {model_id}",
        "modelType": model_type,
        "labels": labels,
        "applicableBodyParts": body_parts,
        "applicableImagingTypes": imaging_types,
        "inputShape": {"width": width, "height": height, "channels": channels},
        "preprocessingSteps": steps if steps is not None else ["resize", "normalize"],
        "isActive": is_active,
    }
    if accuracy is not None:
        metadata["accuracy"] = accuracy

    manifest = {
        "format": "torchscript",
        "metadata": metadata,
        "weightsManifest": [{"paths": weights}],
    }
    (model_dir / "model.json").write_text(json.dumps(manifest), encoding="utf-8")
    if write_weights:
        for shard in weights:
            (model_dir / shard).write_bytes(b"\x00weights")
    return model_dir


@pytest.fixture(scope="function")
def model_factory():
    """Return the write_model helper."""
    return write_model


XRAY_LABELS = ["Normal", "Pneumonia", "Tuberculosis", "COVID-19"]
MRI_LABELS = ["Normal", "Tumor"]
GRAY_LABELS = ["Normal", "Pneumonia", "Effusion"]


@pytest.fixture(scope="function")
def models_root(tmp_path) -> Path:
    """
    A models directory with:
    - xray-model: chest X-ray classifier, 224x224 RGB
    - mri-model:  brain MRI classifier, 64x64 grayscale
    - gray-xray-model: inactive chest X-ray model that skips normalization
    """
    root = tmp_path / "models"
    write_model(root, "xray-model", XRAY_LABELS, ["xray"], ["chest", "lungs"], accuracy=91.5, name="Chest X-Ray Classifier")
    write_model(root, "mri-model", MRI_LABELS, ["mri"], ["brain", "head"], width=64, height=64, channels=1, name="Brain MRI Classifier")
    write_model(
        root, "gray-xray-model", GRAY_LABELS, ["xray"], ["chest"],
        width=8, height=8, channels=1, steps=["resize"], is_active=False, name="Gray X-Ray",
    )
    return root


class ScriptedBackend(ModelBackend):
    """
    Returns a fixed output per input image. Keyed by the rounded mean pixel
    value of the tensor, which for a solid gray image without normalization
    is the gray level itself. Unknown inputs get uniform scores.
    """

    name = "scripted"

    def __init__(self, outputs: Optional[Dict[int, List[float]]] = None, fail_on: Optional[int] = None):
        self.outputs = outputs or {}
        self.fail_on = fail_on
        self.loads = 0
        self.released = 0

    def load(self, descriptor):
        self.loads += 1
        return {"num_classes": len(descriptor.labels)}

    def predict(self, handle, tensor):
        key = int(round(float(np.mean(tensor))))
        if self.fail_on is not None and key == self.fail_on:
            raise RuntimeError("scripted failure")
        if key in self.outputs:
            return np.array(self.outputs[key], dtype=np.float64)
        return np.full(handle["num_classes"], 1.0 / handle["num_classes"])

    def release(self, handle):
        self.released += 1


@pytest.fixture(scope="function")
def scripted_backend_factory():
    """Return the ScriptedBackend class: scripted_backend_factory(outputs, fail_on=None)."""
    return ScriptedBackend


@pytest.fixture(scope="function")
def backend():
    return MockBackend()


@pytest.fixture(scope="function")
def registry(models_root, test_db) -> ModelRegistry:
    registry = ModelRegistry(
        models_root,
        override_loader=lambda: SQLRecordStore(test_db).model_overrides(),
    )
    registry.scan_available_models()
    return registry


@pytest.fixture(scope="function")
def inference_engine(registry, backend) -> InferenceEngine:
    engine = InferenceEngine(registry, backend, capacity=2)
    engine.attach()
    return engine


@pytest.fixture(scope="function")
def worker_pool() -> Generator[InferenceWorkerPool, None, None]:
    pool = InferenceWorkerPool(size=2)
    yield pool
    pool.shutdown(wait=True)


# =============================================================================
# APPLICATION FIXTURES
# =============================================================================

@pytest.fixture(scope="session")
def app_instance():
    """Create the FastAPI app instance once per test session."""
    from main import app as fastapi_app
    return fastapi_app


@pytest.fixture(scope="function")
def app(app_instance, override_get_db, registry, inference_engine, worker_pool):
    """Configure the app with the test database and pipeline for each test."""
    from database import get_db
    from shared import get_engine, get_registry, get_worker_pool

    app_instance.dependency_overrides[get_db] = override_get_db
    app_instance.dependency_overrides[get_registry] = lambda: registry
    app_instance.dependency_overrides[get_engine] = lambda: inference_engine
    app_instance.dependency_overrides[get_worker_pool] = lambda: worker_pool
    yield app_instance
    app_instance.dependency_overrides.clear()


@pytest.fixture(scope="function")
def client(app) -> Generator[TestClient, None, None]:
    """Create a TestClient for making requests to the app."""
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


@pytest.fixture(scope="function")
def uploads_dir() -> Path:
    from config import UPLOADS_DIR
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    return UPLOADS_DIR


# =============================================================================
# USER FIXTURES
# =============================================================================

def _create_user(db: Session, username: str, role: str, is_active: bool = True) -> User:
    user = User(
        username=username,
        email=f"{username}@hospital.example.com",
        hashed_password=get_password_hash("TestPassword123!"),
        full_name=username.replace("_", " ").title(),
        role=role,
        is_active=is_active,
        created_at=datetime.utcnow(),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture(scope="function")
def test_user_data():
    """Test user data for registration."""
    return {
        "username": "testuser",
        "email": "test@example.com",
        "password": "TestPassword123!",
        "full_name": "Test User",
    }


@pytest.fixture(scope="function")
def test_user(test_db, test_user_data) -> User:
    """Create a patient user in the database."""
    user = User(
        username=test_user_data["username"],
        email=test_user_data["email"],
        hashed_password=get_password_hash(test_user_data["password"]),
        full_name=test_user_data["full_name"],
        is_active=True,
        role="patient",
        created_at=datetime.utcnow()
    )
    test_db.add(user)
    test_db.commit()
    test_db.refresh(user)
    return user


@pytest.fixture(scope="function")
def other_user(test_db) -> User:
    """A second patient, for ownership checks."""
    return _create_user(test_db, "other_patient", "patient")


@pytest.fixture(scope="function")
def doctor_user(test_db) -> User:
    return _create_user(test_db, "dr_house", "doctor")


@pytest.fixture(scope="function")
def admin_user(test_db) -> User:
    return _create_user(test_db, "admin", "admin")


@pytest.fixture(scope="function")
def inactive_user(test_db) -> User:
    return _create_user(test_db, "inactive_user", "patient", is_active=False)


# =============================================================================
# AUTHENTICATION FIXTURES
# =============================================================================

def _token_for(user: User, minutes: int = 30) -> str:
    return create_access_token(data={"sub": user.username}, expires_delta=timedelta(minutes=minutes))


@pytest.fixture(scope="function")
def user_token(test_user) -> str:
    return _token_for(test_user)


@pytest.fixture(scope="function")
def expired_token(test_user) -> str:
    """Generate an expired JWT token for testing expiration."""
    return _token_for(test_user, minutes=-10)


@pytest.fixture(scope="function")
def auth_headers(user_token) -> dict:
    """Get authorization headers for the test user."""
    return {"Authorization": f"Bearer {user_token}"}


@pytest.fixture(scope="function")
def other_auth_headers(other_user) -> dict:
    return {"Authorization": f"Bearer {_token_for(other_user)}"}


@pytest.fixture(scope="function")
def doctor_auth_headers(doctor_user) -> dict:
    return {"Authorization": f"Bearer {_token_for(doctor_user)}"}


@pytest.fixture(scope="function")
def admin_auth_headers(admin_user) -> dict:
    return {"Authorization": f"Bearer {_token_for(admin_user)}"}


@pytest.fixture(scope="function")
def inactive_auth_headers(inactive_user) -> dict:
    return {"Authorization": f"Bearer {_token_for(inactive_user)}"}


# =============================================================================
# IMAGE FIXTURES
# =============================================================================

def make_png(width: int = 224, height: int = 224, color=(128, 64, 200), mode: str = "RGB") -> bytes:
    buffer = BytesIO()
    Image.new(mode, (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture(scope="function")
def image_factory():
    """Return a function producing PNG bytes: image_factory(width, height, color, mode)."""
    return make_png


@pytest.fixture(scope="function")
def sample_image_bytes() -> bytes:
    """A 224x224 RGB PNG."""
    return make_png()


@pytest.fixture(scope="function")
def sample_upload_image(sample_image_bytes):
    """Create a tuple suitable for file upload in tests."""
    return ("chest.png", BytesIO(sample_image_bytes), "image/png")


@pytest.fixture(scope="function")
def invalid_file_bytes():
    """Bytes that no image decoder accepts."""
    return b"This is not a valid image file"


@pytest.fixture(scope="function")
def compressed_dicom_bytes() -> bytes:
    """A JPEG 2000 DICOM whose single fragment is not a valid codestream."""
    meta = FileMetaDataset()
    meta.MediaStorageSOPClassUID = SecondaryCaptureImageStorage
    meta.MediaStorageSOPInstanceUID = generate_uid()
    meta.TransferSyntaxUID = JPEG2000Lossless

    ds = pydicom.Dataset()
    ds.file_meta = meta
    ds.SOPClassUID = meta.MediaStorageSOPClassUID
    ds.SOPInstanceUID = meta.MediaStorageSOPInstanceUID
    ds.Modality = "CR"
    ds.Rows, ds.Columns = 8, 8
    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = "MONOCHROME2"
    ds.BitsAllocated = 16
    ds.BitsStored = 12
    ds.HighBit = 11
    ds.PixelRepresentation = 0
    ds.PixelData = encapsulate([b"\x00\x01" * 32])
    ds["PixelData"].VR = "OB"
    ds["PixelData"].is_undefined_length = True

    buffer = BytesIO()
    pydicom.dcmwrite(buffer, ds, enforce_file_format=True)
    return buffer.getvalue()
