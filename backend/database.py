from sqlalchemy import create_engine, Column, Integer, String, DateTime, Boolean, Text, JSON, Float, ForeignKey
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime

from config import DATABASE_URL

# Handle PostgreSQL URL format differences
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

# Create engine with appropriate connection args
connect_args = {"check_same_thread": False} if "sqlite" in DATABASE_URL else {}
engine = create_engine(DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    full_name = Column(String)
    role = Column(String, default="patient")  # "patient", "doctor", "admin"
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class UploadedImage(Base):
    """Metadata for an original stored by the image store. Immutable once written."""
    __tablename__ = "uploaded_images"

    id = Column(Integer, primary_key=True, index=True)
    principal_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    storage_path = Column(String, nullable=False, unique=True)
    original_name = Column(String, nullable=False)
    mime = Column(String)
    size_bytes = Column(Integer, nullable=False)
    uploaded_at = Column(DateTime, default=datetime.utcnow)


class MedicalRecord(Base):
    """
    One diagnostic study. Stored document-style: predictions, the aggregate
    diagnosis and warnings live in JSON columns owned by the record.
    """
    __tablename__ = "medical_records"

    id = Column(Integer, primary_key=True, index=True)
    principal_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    modality = Column(String, nullable=False, index=True)  # "xray", "mri", "ct"
    body_part = Column(String, nullable=False)
    image_ids = Column(JSON, nullable=False)  # ordered list of uploaded_images.id

    # "pending", "analyzing", "analyzed", "failed"
    status = Column(String, nullable=False, default="pending", index=True)

    predictions = Column(JSON, default=list)  # list of per-image predictions
    aggregate_diagnosis = Column(JSON)  # label, confidence, conditionScores, modelId, explanation
    aggregate_label = Column(String, index=True)  # copy of aggregate_diagnosis.label for search
    warnings = Column(JSON, default=list)  # images skipped during analysis
    failure = Column(JSON)  # kind + message when status is "failed"
    model_used = Column(JSON)  # id, name, version, accuracy

    # Doctor override - never replaces aggregate_diagnosis
    doctor_diagnosis = Column(Text)
    doctor_notes = Column(Text)
    diagnosed_by = Column(Integer, ForeignKey("users.id"))
    diagnosed_at = Column(DateTime)

    patient_history = Column(JSON)  # age, weight, height, symptoms, allergies, medications, familyHistory
    notes = Column(Text, default="")

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ModelDescriptorRecord(Base):
    """
    Persisted view of a model directory, written by sync_models.py and the
    admin endpoints. Registry scans overlay is_active / is_preferred from here.
    """
    __tablename__ = "model_descriptors"

    id = Column(String, primary_key=True)  # model directory name
    name = Column(String, nullable=False)
    version = Column(String, nullable=False, default="1.0")
    description = Column(Text)
    model_type = Column(String, default="classification")
    labels = Column(JSON)
    applicable_body_parts = Column(JSON)
    applicable_imaging_types = Column(JSON)
    input_shape = Column(JSON)
    preprocessing_steps = Column(JSON)
    accuracy = Column(Float)

    is_active = Column(Boolean, default=True)
    is_preferred = Column(Boolean, default=False)
    usage_count = Column(Integer, default=0)
    last_used = Column(DateTime)
    synced_at = Column(DateTime, default=datetime.utcnow)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    Base.metadata.create_all(bind=engine)
