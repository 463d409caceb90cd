from pydantic import BaseModel, EmailStr, Field
from typing import Optional, Dict, List, Any
from datetime import datetime


class UserBase(BaseModel):
    username: str
    email: EmailStr
    full_name: Optional[str] = None


class UserCreate(UserBase):
    password: str = Field(..., min_length=8)
    role: Optional[str] = "patient"  # "patient", "doctor", "admin"


class UserResponse(UserBase):
    id: int
    role: str
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class UserLogin(BaseModel):
    username: str
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str


# Diagnostics request bodies - JSON field names are camelCase on the wire
class AnalyzeRequest(BaseModel):
    model_id: Optional[str] = Field(None, alias="modelId")

    class Config:
        populate_by_name = True


class DoctorDiagnosisUpdate(BaseModel):
    doctor_diagnosis: str = Field(..., alias="doctorDiagnosis", min_length=1)
    notes: Optional[str] = None

    class Config:
        populate_by_name = True


class ModelUpdate(BaseModel):
    is_active: Optional[bool] = Field(None, alias="isActive")
    is_preferred: Optional[bool] = Field(None, alias="isPreferred")

    class Config:
        populate_by_name = True


class PatientHistory(BaseModel):
    age: Optional[int] = None
    weight: Optional[float] = None
    height: Optional[float] = None
    symptoms: List[str] = []
    allergies: List[str] = []
    medications: List[str] = []
    family_history: Optional[str] = Field(None, alias="familyHistory")

    class Config:
        populate_by_name = True


# Response views
class RecordPage(BaseModel):
    records: List[Dict[str, Any]]
    total: int
    page: int
    pages: int
    limit: int


class UploadResponse(BaseModel):
    record_id: int = Field(..., alias="recordId")
    record: Dict[str, Any]

    class Config:
        populate_by_name = True


class RefreshResponse(BaseModel):
    registered: int
    message: str
