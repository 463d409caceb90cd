"""
Record Store

Persistence boundary for medical records, uploaded-image metadata and the
admin-owned model descriptor rows. The controller receives a RecordStore
explicitly; there is no module-level handle.

Two implementations share the interface:
- SQLRecordStore: SQLAlchemy session, document-style JSON columns
- InMemoryRecordStore: dict-backed, for tests and offline scripts

Status transitions are enforced here. Every state change is a conditional
write against the status the caller observed, so two concurrent claims on
the same record cannot both succeed.
"""

import copy
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import MedicalRecord, ModelDescriptorRecord, UploadedImage
from errors import InvalidTransition, RecordNotFound
from structured_logging import log_database_query

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


class RecordStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    FAILED = "failed"


# analyzing -> pending only releases a claim when the client cancels
ALLOWED_TRANSITIONS = {
    RecordStatus.PENDING: {RecordStatus.ANALYZING, RecordStatus.FAILED},
    RecordStatus.ANALYZING: {RecordStatus.ANALYZED, RecordStatus.FAILED, RecordStatus.PENDING},
    RecordStatus.ANALYZED: set(),
    RecordStatus.FAILED: set(),
}


def check_transition(record_id: Any, current: str, target: str) -> None:
    current, target = RecordStatus(current), RecordStatus(target)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value, record_id)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class StoredImage:
    id: int
    principal_id: int
    storage_path: str
    original_name: str
    size_bytes: int
    mime: Optional[str] = None
    uploaded_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: UploadedImage) -> "StoredImage":
        return cls(
            id=row.id,
            principal_id=row.principal_id,
            storage_path=row.storage_path,
            original_name=row.original_name,
            size_bytes=row.size_bytes,
            mime=row.mime,
            uploaded_at=row.uploaded_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "originalName": self.original_name,
            "mime": self.mime,
            "sizeBytes": self.size_bytes,
            "uploadedAt": _iso(self.uploaded_at),
        }


@dataclass
class Record:
    id: int
    principal_id: int
    modality: str
    body_part: str
    image_ids: List[int]
    status: str = RecordStatus.PENDING.value
    predictions: List[Dict[str, Any]] = field(default_factory=list)
    aggregate_diagnosis: Optional[Dict[str, Any]] = None
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    failure: Optional[Dict[str, Any]] = None
    model_used: Optional[Dict[str, Any]] = None
    doctor_diagnosis: Optional[str] = None
    doctor_notes: Optional[str] = None
    diagnosed_by: Optional[int] = None
    diagnosed_at: Optional[datetime] = None
    patient_history: Optional[Dict[str, Any]] = None
    notes: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: MedicalRecord) -> "Record":
        return cls(
            id=row.id,
            principal_id=row.principal_id,
            modality=row.modality,
            body_part=row.body_part,
            image_ids=list(row.image_ids or []),
            status=row.status,
            predictions=list(row.predictions or []),
            aggregate_diagnosis=row.aggregate_diagnosis,
            warnings=list(row.warnings or []),
            failure=row.failure,
            model_used=row.model_used,
            doctor_diagnosis=row.doctor_diagnosis,
            doctor_notes=row.doctor_notes,
            diagnosed_by=row.diagnosed_by,
            diagnosed_at=row.diagnosed_at,
            patient_history=row.patient_history,
            notes=row.notes or "",
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        doctor = None
        if self.doctor_diagnosis is not None:
            doctor = {
                "condition": self.doctor_diagnosis,
                "notes": self.doctor_notes,
                "diagnosedBy": self.diagnosed_by,
                "diagnosedAt": _iso(self.diagnosed_at),
            }
        return {
            "id": self.id,
            "principalId": self.principal_id,
            "modality": self.modality,
            "bodyPart": self.body_part,
            "imageIds": list(self.image_ids),
            "status": self.status,
            "predictions": self.predictions,
            "aggregateDiagnosis": self.aggregate_diagnosis,
            "warnings": self.warnings,
            "failure": self.failure,
            "modelUsed": self.model_used,
            "doctorDiagnosis": doctor,
            "patientHistory": self.patient_history,
            "notes": self.notes,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class RecordFilters:
    status: Optional[str] = None
    modality: Optional[str] = None
    search: Optional[str] = None


@dataclass
class Page:
    items: List[Record]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "records": [r.to_dict() for r in self.items],
            "total": self.total,
            "page": self.page,
            "pages": self.pages,
            "limit": self.limit,
        }


def normalize_paging(page: int, limit: int):
    page = max(1, int(page or 1))
    limit = min(max(1, int(limit or DEFAULT_PAGE_SIZE)), MAX_PAGE_SIZE)
    return page, limit


def escape_like(term: str) -> str:
    """Make LIKE wildcards in user input match literally (escape char is a backslash)."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def descriptor_row_values(descriptor) -> Dict[str, Any]:
    """Column values for a model_descriptors row built from a ModelDescriptor."""
    return {
        "name": descriptor.name,
        "version": descriptor.version,
        "description": descriptor.description,
        "model_type": descriptor.model_type.value,
        "labels": list(descriptor.labels),
        "applicable_body_parts": sorted(descriptor.applicable_body_parts),
        "applicable_imaging_types": sorted(m.value for m in descriptor.applicable_imaging_types),
        "input_shape": descriptor.input_shape.to_dict(),
        "preprocessing_steps": [s.value for s in descriptor.preprocessing_steps],
        "accuracy": descriptor.accuracy,
        "is_active": descriptor.is_active,
    }


# =============================================================================
# INTERFACE
# =============================================================================

class RecordStore(ABC):

    # --- medical records ---

    @abstractmethod
    def create(
        self,
        principal_id: int,
        modality: str,
        body_part: str,
        image_ids: List[int],
        patient_history: Optional[Dict[str, Any]] = None,
        notes: str = "",
    ) -> Record:
        ...

    @abstractmethod
    def get(self, record_id: int) -> Record:
        """Raises RecordNotFound."""

    @abstractmethod
    def list(
        self,
        principal_id: Optional[int],
        filters: Optional[RecordFilters] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page:
        """Newest first. principal_id=None lists every principal's records."""

    @abstractmethod
    def update_status(self, record_id: int, status: str, **values) -> Record:
        ...

    @abstractmethod
    def attach_predictions(self, record_id: int, predictions: List[Dict[str, Any]]) -> Record:
        ...

    @abstractmethod
    def set_aggregate(
        self,
        record_id: int,
        aggregate: Dict[str, Any],
        model_used: Optional[Dict[str, Any]] = None,
    ) -> Record:
        ...

    @abstractmethod
    def complete_analysis(
        self,
        record_id: int,
        predictions: List[Dict[str, Any]],
        aggregate: Dict[str, Any],
        warnings: List[Dict[str, Any]],
        model_used: Optional[Dict[str, Any]] = None,
    ) -> Record:
        """Write predictions, aggregate, warnings and 'analyzed' in one transaction."""

    @abstractmethod
    def set_doctor_diagnosis(
        self,
        record_id: int,
        diagnosis: str,
        notes: Optional[str],
        diagnosed_by: int,
    ) -> Record:
        ...

    @abstractmethod
    def delete(self, record_id: int) -> None:
        ...

    def mark_failed(self, record_id: int, kind: str, message: str, warnings=None) -> Record:
        values = {"failure": {"kind": kind, "message": message}}
        if warnings is not None:
            values["warnings"] = list(warnings)
        return self.update_status(record_id, RecordStatus.FAILED.value, **values)

    # --- uploaded image metadata ---

    @abstractmethod
    def add_image(
        self,
        principal_id: int,
        storage_path: str,
        original_name: str,
        size_bytes: int,
        mime: Optional[str] = None,
    ) -> StoredImage:
        ...

    @abstractmethod
    def get_image(self, image_id: int) -> Optional[StoredImage]:
        ...

    @abstractmethod
    def remove_image(self, image_id: int) -> None:
        ...

    @abstractmethod
    def image_is_referenced(self, image_id: int) -> bool:
        ...

    # --- model descriptor rows ---

    @abstractmethod
    def model_overrides(self) -> Dict[str, Dict[str, bool]]:
        """{model_id: {"is_active", "is_preferred"}} for the registry overlay."""

    @abstractmethod
    def upsert_model(self, descriptor) -> None:
        ...

    @abstractmethod
    def set_model_flags(
        self,
        model_id: str,
        is_active: Optional[bool] = None,
        is_preferred: Optional[bool] = None,
    ) -> None:
        ...

    @abstractmethod
    def record_model_usage(self, model_id: str) -> None:
        ...

    @abstractmethod
    def model_usage(self, model_id: str) -> Dict[str, Any]:
        ...


# =============================================================================
# SQLALCHEMY IMPLEMENTATION
# =============================================================================

class SQLRecordStore(RecordStore):
    """RecordStore over a SQLAlchemy session. Each operation commits."""

    def __init__(self, db: Session):
        self.db = db

    def _commit(self, operation: str, table: str = MedicalRecord.__tablename__):
        start = time.perf_counter()
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            log_database_query(operation, table, (time.perf_counter() - start) * 1000, error=str(e))
            raise
        log_database_query(operation, table, (time.perf_counter() - start) * 1000)

    def _row(self, record_id: int) -> MedicalRecord:
        row = self.db.query(MedicalRecord).filter(MedicalRecord.id == record_id).first()
        if row is None:
            raise RecordNotFound(f"Medical record {record_id} not found", record_id=record_id)
        return row

    def create(self, principal_id, modality, body_part, image_ids, patient_history=None, notes=""):
        now = datetime.utcnow()
        row = MedicalRecord(
            principal_id=principal_id,
            modality=modality,
            body_part=body_part,
            image_ids=list(image_ids),
            status=RecordStatus.PENDING.value,
            predictions=[],
            warnings=[],
            patient_history=patient_history,
            notes=notes or "",
            created_at=now,
            updated_at=now,
        )
        self.db.add(row)
        self._commit("create")
        self.db.refresh(row)
        return Record.from_row(row)

    def get(self, record_id):
        return Record.from_row(self._row(record_id))

    def list(self, principal_id, filters=None, page=1, limit=DEFAULT_PAGE_SIZE):
        filters = filters or RecordFilters()
        page, limit = normalize_paging(page, limit)

        query = self.db.query(MedicalRecord)
        if principal_id is not None:
            query = query.filter(MedicalRecord.principal_id == principal_id)
        if filters.status:
            query = query.filter(MedicalRecord.status == filters.status)
        if filters.modality:
            query = query.filter(MedicalRecord.modality == filters.modality)
        if filters.search:
            term = f"%{escape_like(filters.search)}%"
            query = query.filter(or_(
                MedicalRecord.body_part.ilike(term, escape="\\"),
                MedicalRecord.aggregate_label.ilike(term, escape="\\"),
                MedicalRecord.doctor_diagnosis.ilike(term, escape="\\"),
                MedicalRecord.notes.ilike(term, escape="\\"),
            ))

        total = query.count()
        rows = (
            query.order_by(MedicalRecord.created_at.desc(), MedicalRecord.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return Page(items=[Record.from_row(r) for r in rows], total=total, page=page, limit=limit)

    def update_status(self, record_id, status, **values):
        row = self._row(record_id)
        current = row.status
        check_transition(record_id, current, status)

        values["status"] = RecordStatus(status).value
        values["updated_at"] = datetime.utcnow()
        if "aggregate_diagnosis" in values:
            aggregate = values["aggregate_diagnosis"] or {}
            values["aggregate_label"] = aggregate.get("label")

        updated = (
            self.db.query(MedicalRecord)
            .filter(MedicalRecord.id == record_id, MedicalRecord.status == current)
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            self.db.rollback()
            raise InvalidTransition(self._row(record_id).status, status, record_id)
        self._commit("update_status")
        return self.get(record_id)

    def _update_fields(self, record_id, required_status, operation, **values):
        row = self._row(record_id)
        if row.status != required_status:
            raise InvalidTransition(row.status, required_status, record_id)
        for key, value in values.items():
            setattr(row, key, value)
        row.updated_at = datetime.utcnow()
        self._commit(operation)
        return Record.from_row(row)

    def attach_predictions(self, record_id, predictions):
        return self._update_fields(
            record_id, RecordStatus.ANALYZING.value, "attach_predictions",
            predictions=list(predictions),
        )

    def set_aggregate(self, record_id, aggregate, model_used=None):
        return self._update_fields(
            record_id, RecordStatus.ANALYZING.value, "set_aggregate",
            aggregate_diagnosis=aggregate,
            aggregate_label=aggregate.get("label"),
            model_used=model_used,
        )

    def complete_analysis(self, record_id, predictions, aggregate, warnings, model_used=None):
        return self.update_status(
            record_id,
            RecordStatus.ANALYZED.value,
            predictions=list(predictions),
            aggregate_diagnosis=aggregate,
            warnings=list(warnings),
            model_used=model_used,
            failure=None,
        )

    def set_doctor_diagnosis(self, record_id, diagnosis, notes, diagnosed_by):
        row = self._row(record_id)
        row.doctor_diagnosis = diagnosis
        row.doctor_notes = notes
        row.diagnosed_by = diagnosed_by
        row.diagnosed_at = datetime.utcnow()
        row.updated_at = row.diagnosed_at
        self._commit("set_doctor_diagnosis")
        return Record.from_row(row)

    def delete(self, record_id):
        row = self._row(record_id)
        self.db.delete(row)
        self._commit("delete")

    def add_image(self, principal_id, storage_path, original_name, size_bytes, mime=None):
        row = UploadedImage(
            principal_id=principal_id,
            storage_path=storage_path,
            original_name=original_name,
            size_bytes=size_bytes,
            mime=mime,
            uploaded_at=datetime.utcnow(),
        )
        self.db.add(row)
        self._commit("add_image", UploadedImage.__tablename__)
        self.db.refresh(row)
        return StoredImage.from_row(row)

    def get_image(self, image_id):
        row = self.db.query(UploadedImage).filter(UploadedImage.id == image_id).first()
        return StoredImage.from_row(row) if row else None

    def remove_image(self, image_id):
        row = self.db.query(UploadedImage).filter(UploadedImage.id == image_id).first()
        if row is not None:
            self.db.delete(row)
            self._commit("remove_image", UploadedImage.__tablename__)

    def image_is_referenced(self, image_id):
        # image_ids is a JSON list; filter in Python to stay portable across SQLite and PostgreSQL
        for (image_ids,) in self.db.query(MedicalRecord.image_ids).all():
            if image_id in (image_ids or []):
                return True
        return False

    def model_overrides(self):
        rows = self.db.query(ModelDescriptorRecord).all()
        return {
            row.id: {"is_active": bool(row.is_active), "is_preferred": bool(row.is_preferred)}
            for row in rows
        }

    def upsert_model(self, descriptor):
        row = self.db.query(ModelDescriptorRecord).filter(ModelDescriptorRecord.id == descriptor.id).first()
        values = descriptor_row_values(descriptor)
        if row is None:
            row = ModelDescriptorRecord(id=descriptor.id, **values)
            self.db.add(row)
        else:
            # Admin toggles survive a re-sync
            values.pop("is_active")
            for key, value in values.items():
                setattr(row, key, value)
        row.synced_at = datetime.utcnow()
        self._commit("upsert_model", ModelDescriptorRecord.__tablename__)

    def set_model_flags(self, model_id, is_active=None, is_preferred=None):
        row = self.db.query(ModelDescriptorRecord).filter(ModelDescriptorRecord.id == model_id).first()
        if row is None:
            row = ModelDescriptorRecord(id=model_id, name=model_id, version="1.0")
            self.db.add(row)
        if is_active is not None:
            row.is_active = is_active
        if is_preferred is not None:
            row.is_preferred = is_preferred
        self._commit("set_model_flags", ModelDescriptorRecord.__tablename__)

    def record_model_usage(self, model_id):
        row = self.db.query(ModelDescriptorRecord).filter(ModelDescriptorRecord.id == model_id).first()
        if row is None:
            row = ModelDescriptorRecord(id=model_id, name=model_id, version="1.0", usage_count=0)
            self.db.add(row)
        row.usage_count = (row.usage_count or 0) + 1
        row.last_used = datetime.utcnow()
        self._commit("record_model_usage", ModelDescriptorRecord.__tablename__)

    def model_usage(self, model_id):
        row = self.db.query(ModelDescriptorRecord).filter(ModelDescriptorRecord.id == model_id).first()
        if row is None:
            return {"usageCount": 0, "lastUsed": None}
        return {"usageCount": row.usage_count or 0, "lastUsed": _iso(row.last_used)}


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryRecordStore(RecordStore):
    """Dict-backed store. Returned objects are copies, like rows read back from a database."""

    def __init__(self):
        self._lock = threading.RLock()
        self._records: Dict[int, Record] = {}
        self._images: Dict[int, StoredImage] = {}
        self._models: Dict[str, Dict[str, Any]] = {}
        self._next_record_id = 1
        self._next_image_id = 1

    def _record(self, record_id) -> Record:
        record = self._records.get(record_id)
        if record is None:
            raise RecordNotFound(f"Medical record {record_id} not found", record_id=record_id)
        return record

    def create(self, principal_id, modality, body_part, image_ids, patient_history=None, notes=""):
        with self._lock:
            now = datetime.utcnow()
            record = Record(
                id=self._next_record_id,
                principal_id=principal_id,
                modality=modality,
                body_part=body_part,
                image_ids=list(image_ids),
                patient_history=copy.deepcopy(patient_history),
                notes=notes or "",
                created_at=now,
                updated_at=now,
            )
            self._records[record.id] = record
            self._next_record_id += 1
            return copy.deepcopy(record)

    def get(self, record_id):
        with self._lock:
            return copy.deepcopy(self._record(record_id))

    def _matches(self, record: Record, filters: RecordFilters) -> bool:
        if filters.status and record.status != filters.status:
            return False
        if filters.modality and record.modality != filters.modality:
            return False
        if filters.search:
            term = filters.search.lower()
            label = (record.aggregate_diagnosis or {}).get("label") or ""
            haystack = (record.body_part, label, record.doctor_diagnosis or "", record.notes or "")
            return any(term in value.lower() for value in haystack)
        return True

    def list(self, principal_id, filters=None, page=1, limit=DEFAULT_PAGE_SIZE):
        filters = filters or RecordFilters()
        page, limit = normalize_paging(page, limit)
        with self._lock:
            matching = [
                r for r in self._records.values()
                if (principal_id is None or r.principal_id == principal_id) and self._matches(r, filters)
            ]
            matching.sort(key=lambda r: (r.created_at, r.id), reverse=True)
            start = (page - 1) * limit
            items = [copy.deepcopy(r) for r in matching[start:start + limit]]
        return Page(items=items, total=len(matching), page=page, limit=limit)

    def update_status(self, record_id, status, **values):
        with self._lock:
            record = self._record(record_id)
            check_transition(record_id, record.status, status)
            for key, value in values.items():
                setattr(record, key, copy.deepcopy(value))
            record.status = RecordStatus(status).value
            record.updated_at = datetime.utcnow()
            return copy.deepcopy(record)

    def _update_fields(self, record_id, required_status, **values):
        with self._lock:
            record = self._record(record_id)
            if record.status != required_status:
                raise InvalidTransition(record.status, required_status, record_id)
            for key, value in values.items():
                setattr(record, key, copy.deepcopy(value))
            record.updated_at = datetime.utcnow()
            return copy.deepcopy(record)

    def attach_predictions(self, record_id, predictions):
        return self._update_fields(record_id, RecordStatus.ANALYZING.value, predictions=list(predictions))

    def set_aggregate(self, record_id, aggregate, model_used=None):
        return self._update_fields(
            record_id, RecordStatus.ANALYZING.value,
            aggregate_diagnosis=aggregate, model_used=model_used,
        )

    def complete_analysis(self, record_id, predictions, aggregate, warnings, model_used=None):
        return self.update_status(
            record_id,
            RecordStatus.ANALYZED.value,
            predictions=list(predictions),
            aggregate_diagnosis=aggregate,
            warnings=list(warnings),
            model_used=model_used,
            failure=None,
        )

    def set_doctor_diagnosis(self, record_id, diagnosis, notes, diagnosed_by):
        with self._lock:
            record = self._record(record_id)
            record.doctor_diagnosis = diagnosis
            record.doctor_notes = notes
            record.diagnosed_by = diagnosed_by
            record.diagnosed_at = datetime.utcnow()
            record.updated_at = record.diagnosed_at
            return copy.deepcopy(record)

    def delete(self, record_id):
        with self._lock:
            self._record(record_id)
            del self._records[record_id]

    def add_image(self, principal_id, storage_path, original_name, size_bytes, mime=None):
        with self._lock:
            image = StoredImage(
                id=self._next_image_id,
                principal_id=principal_id,
                storage_path=storage_path,
                original_name=original_name,
                size_bytes=size_bytes,
                mime=mime,
                uploaded_at=datetime.utcnow(),
            )
            self._images[image.id] = image
            self._next_image_id += 1
            return copy.deepcopy(image)

    def get_image(self, image_id):
        with self._lock:
            image = self._images.get(image_id)
            return copy.deepcopy(image) if image else None

    def remove_image(self, image_id):
        with self._lock:
            self._images.pop(image_id, None)

    def image_is_referenced(self, image_id):
        with self._lock:
            return any(image_id in r.image_ids for r in self._records.values())

    def model_overrides(self):
        with self._lock:
            return {
                model_id: {"is_active": row["is_active"], "is_preferred": row["is_preferred"]}
                for model_id, row in self._models.items()
            }

    def _model_row(self, model_id) -> Dict[str, Any]:
        return self._models.setdefault(model_id, {
            "is_active": True,
            "is_preferred": False,
            "usage_count": 0,
            "last_used": None,
        })

    def upsert_model(self, descriptor):
        with self._lock:
            existing = descriptor.id in self._models
            row = self._model_row(descriptor.id)
            values = descriptor_row_values(descriptor)
            if existing:
                values.pop("is_active")
            row.update(values)
            row["synced_at"] = datetime.utcnow()

    def set_model_flags(self, model_id, is_active=None, is_preferred=None):
        with self._lock:
            row = self._model_row(model_id)
            if is_active is not None:
                row["is_active"] = is_active
            if is_preferred is not None:
                row["is_preferred"] = is_preferred

    def record_model_usage(self, model_id):
        with self._lock:
            row = self._model_row(model_id)
            row["usage_count"] += 1
            row["last_used"] = datetime.utcnow()

    def model_usage(self, model_id):
        with self._lock:
            row = self._models.get(model_id)
            if row is None:
                return {"usageCount": 0, "lastUsed": None}
            return {"usageCount": row["usage_count"], "lastUsed": _iso(row["last_used"])}

    def stored_image_ids(self) -> Iterable[int]:
        with self._lock:
            return list(self._images)
