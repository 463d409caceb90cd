"""
Diagnostics Router

Endpoints for:
- Uploading a study (one or more images) as a pending medical record
- Running AI analysis on a record, or upload-and-analyze for a single image
- Listing, reading, annotating and deleting records
- Listing the models available for a modality / body part
"""

import json
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, File, Form, Query, Request, UploadFile
from pydantic import ValidationError

from auth import get_current_active_user, require_roles
from config import MAX_UPLOAD_BYTES
from database import User
from errors import InvalidUpload
from inference_controller import InferenceController, UploadedFile
from models import AnalyzeRequest, DoctorDiagnosisUpdate, PatientHistory, RecordPage, UploadResponse
from record_store import RecordFilters, RecordStatus
from shared import get_controller
from structured_logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/diagnostics", tags=["Diagnostics"])


async def _read_upload(upload: UploadFile) -> UploadedFile:
    # One byte past the limit is enough for the size check to reject it
    data = await upload.read(MAX_UPLOAD_BYTES + 1)
    return UploadedFile(filename=upload.filename or "", data=data, content_type=upload.content_type)


def _parse_patient_history(raw: Optional[str]):
    if not raw:
        return None
    try:
        history = PatientHistory.model_validate(json.loads(raw))
    except ValidationError as e:
        raise InvalidUpload(f"Invalid patientHistory: {e.errors()[0]['msg']}")
    except ValueError:
        raise InvalidUpload("patientHistory must be a JSON object")
    return history.model_dump(by_alias=True)


# =============================================================================
# UPLOAD & ANALYSIS
# =============================================================================

@router.post("/upload", response_model=UploadResponse, status_code=201)
async def upload_study(
    images: List[UploadFile] = File(...),
    modality: str = Form(...),
    body_part: str = Form(..., alias="bodyPart"),
    patient_history: Optional[str] = Form(None, alias="patientHistory"),
    notes: str = Form(""),
    current_user: User = Depends(get_current_active_user),
    controller: InferenceController = Depends(get_controller),
):
    """Store a study and create a pending medical record."""
    history = _parse_patient_history(patient_history)
    files = [await _read_upload(image) for image in images]

    record = controller.upload(
        current_user.id,
        files,
        modality,
        body_part,
        patient_history=history,
        notes=notes,
    )
    return {"recordId": record.id, "record": record.to_dict()}


@router.post("/analyze/{record_id}")
async def analyze_record(
    record_id: int,
    request: Request,
    body: Optional[AnalyzeRequest] = Body(None),
    current_user: User = Depends(get_current_active_user),
    controller: InferenceController = Depends(get_controller),
):
    """
    Run AI analysis on a pending record.

    An already analyzed record is returned unchanged. Images that cannot be
    processed are listed in the record's `warnings`.
    """
    model_id = body.model_id if body else None
    record = await controller.analyze(
        record_id,
        current_user,
        model_id=model_id,
        is_cancelled=request.is_disconnected,
    )
    return record.to_dict()


@router.post("/analyze-image")
async def analyze_image(
    request: Request,
    image: UploadFile = File(...),
    modality: str = Form(...),
    body_part: str = Form(..., alias="bodyPart"),
    model_id: Optional[str] = Form(None, alias="modelId"),
    current_user: User = Depends(get_current_active_user),
    controller: InferenceController = Depends(get_controller),
):
    """Upload a single image and analyze it in one call."""
    file = await _read_upload(image)
    record = await controller.analyze_single(
        current_user,
        file,
        modality,
        body_part,
        model_id=model_id or None,
        is_cancelled=request.is_disconnected,
    )
    return record.to_dict()


# =============================================================================
# RECORDS
# =============================================================================

@router.get("/records", response_model=RecordPage)
def list_records(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = Query(None),
    modality: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    current_user: User = Depends(get_current_active_user),
    controller: InferenceController = Depends(get_controller),
):
    """Paginated records of the caller, newest first. Admins see every record."""
    if status and status not in {s.value for s in RecordStatus}:
        raise InvalidUpload(f"Unknown status '{status}'")

    filters = RecordFilters(
        status=status,
        modality=modality.lower() if modality else None,
        search=search or None,
    )
    return controller.list_records(current_user, filters, page=page, limit=limit).to_dict()


@router.get("/records/{record_id}")
def get_record(
    record_id: int,
    current_user: User = Depends(get_current_active_user),
    controller: InferenceController = Depends(get_controller),
):
    return controller.get_record(record_id, current_user).to_dict()


@router.patch("/records/{record_id}/diagnosis")
def update_doctor_diagnosis(
    record_id: int,
    update: DoctorDiagnosisUpdate,
    current_user: User = Depends(require_roles("doctor", "admin")),
    controller: InferenceController = Depends(get_controller),
):
    """Attach a clinician's diagnosis to a record."""
    record = controller.set_doctor_diagnosis(
        record_id, current_user, update.doctor_diagnosis, update.notes
    )
    return record.to_dict()


@router.delete("/records/{record_id}")
def delete_record(
    record_id: int,
    current_user: User = Depends(get_current_active_user),
    controller: InferenceController = Depends(get_controller),
):
    controller.delete_record(record_id, current_user)
    return {"message": "Medical record deleted successfully", "recordId": record_id}


# =============================================================================
# MODELS
# =============================================================================

@router.get("/models")
def list_models(
    modality: Optional[str] = Query(None),
    body_part: Optional[str] = Query(None, alias="bodyPart"),
    current_user: User = Depends(get_current_active_user),
    controller: InferenceController = Depends(get_controller),
):
    """Active models, preferred first, with usage statistics."""
    descriptors = controller.list_models(modality, body_part)
    models = []
    for descriptor in descriptors:
        entry = descriptor.public_dict()
        entry.update(controller.store.model_usage(descriptor.id))
        models.append(entry)
    return {"models": models, "total": len(models)}
