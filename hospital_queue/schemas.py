from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import EntryStatus, WorkStatus

# --- HELPER FUNCTIONS ---

def validate_not_empty(v: str, field_name: str):
    if not v or not v.strip():
        raise ValueError(f"{field_name} must not be empty.")
    return v.strip()


def normalize_test_type(v: str) -> str:
    return validate_not_empty(v, "Test type").upper()


# --- INPUT SCHEMAS ---

class VisitCreate(BaseModel):
    patient_id: int = Field(..., gt=0)
    doctor_id: int = Field(..., gt=0)
    is_emergency: bool = False
    is_protected: bool = True

    model_config = ConfigDict(json_schema_extra={"example": {"patient_id": 1, "doctor_id": 1, "is_emergency": False}})


class MedicineIn(BaseModel):
    name: str = Field(..., min_length=1)
    dosage: Optional[str] = None

    @field_validator('name')
    def check_name(cls, v):
        return validate_not_empty(v, "Medicine name")


class ReferralIn(BaseModel):
    test_type: str = Field(..., min_length=1, description="XRAY, MRI, LAB ...")
    is_emergency: bool = False

    @field_validator('test_type')
    def check_test_type(cls, v):
        return normalize_test_type(v)


class CompleteServiceRequest(BaseModel):
    diagnosis: Optional[str] = None
    medicines: List[MedicineIn] = Field(default_factory=list)
    referrals: List[ReferralIn] = Field(default_factory=list)

    model_config = ConfigDict(json_schema_extra={"example": {
        "diagnosis": "Viral fever",
        "medicines": [{"name": "Paracetamol", "dosage": "500mg 1-0-1"}],
        "referrals": [{"test_type": "LAB", "is_emergency": False}],
    }})


class CompleteDiagnosticRequest(BaseModel):
    result: Optional[str] = None


class ReasonRequest(BaseModel):
    reason: str = Field(..., min_length=1)

    @field_validator('reason')
    def check_reason(cls, v):
        return validate_not_empty(v, "Reason")


class OverrideRequest(ReasonRequest):
    visit_id: int = Field(..., gt=0)


class WorkStatusUpdate(BaseModel):
    status: WorkStatus


class DelayReasonUpdate(BaseModel):
    reason: Optional[str] = None


# --- OUTPUT SCHEMAS ---

class VisitOut(BaseModel):
    id: int
    patient_id: int
    doctor_id: int
    token_number: int
    visit_day: date
    external_ref: str
    is_emergency: bool
    emergency_reason: Optional[str] = None
    is_protected: bool
    status: EntryStatus
    diagnosis: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class RegistrationOut(BaseModel):
    visit: VisitOut
    token_number: int
    external_ref: str
    entry_id: int


class QueueEntryOut(BaseModel):
    id: int
    visit_id: int
    doctor_id: int
    status: EntryStatus
    priority: int
    token_number: int
    patient_id: int
    patient_name: Optional[str] = None
    is_emergency: bool
    created_at: datetime

    @classmethod
    def from_entry(cls, entry):
        visit = entry.visit
        return cls(
            id=entry.id, visit_id=entry.visit_id, doctor_id=entry.doctor_id,
            status=entry.status, priority=entry.priority,
            token_number=visit.token_number, patient_id=visit.patient_id,
            patient_name=visit.patient.name if visit.patient else None,
            is_emergency=visit.is_emergency, created_at=entry.created_at,
        )


class DiagnosticEntryOut(BaseModel):
    id: int
    visit_id: int
    test_type: str
    status: EntryStatus
    priority: int
    is_emergency: bool
    result: Optional[str] = None
    token_number: Optional[int] = None
    patient_name: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_entry(cls, entry):
        visit = entry.visit
        return cls(
            id=entry.id, visit_id=entry.visit_id, test_type=entry.test_type,
            status=entry.status, priority=entry.priority, is_emergency=entry.is_emergency,
            result=entry.result, token_number=visit.token_number if visit else None,
            patient_name=visit.patient.name if visit and visit.patient else None,
            created_at=entry.created_at,
        )


class QueuePosition(BaseModel):
    position: int
    tokens_ahead: int
    estimated_wait_minutes: int
    current_token: Optional[int] = None


class VisitLookupOut(BaseModel):
    visit: VisitOut
    doctor_name: str
    delay_reason: Optional[str] = None
    queue: QueuePosition
    diagnostics: List[DiagnosticEntryOut] = Field(default_factory=list)


class DoctorOut(BaseModel):
    id: int
    name: str
    department: Optional[str] = None
    opd_room: Optional[str] = None
    work_status: WorkStatus
    delay_reason: Optional[str] = None
    last_action_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class DoctorBoardRow(BaseModel):
    id: int
    name: str
    department: Optional[str] = None
    room: Optional[str] = None
    status: WorkStatus
    delay_reason: Optional[str] = None
    current_token: Optional[int] = None
    queue_length: int


class DiagnosticBoardRow(BaseModel):
    test_type: str
    count: int
    current_token: Optional[int] = None


class PublicBoard(BaseModel):
    opd: List[DoctorBoardRow]
    diagnostics: List[DiagnosticBoardRow]
    timestamp: datetime


class AuditOut(BaseModel):
    id: int
    actor: str
    action: str
    visit_id: Optional[int] = None
    details: Optional[str] = None
    timestamp: datetime
    model_config = ConfigDict(from_attributes=True)


class AdminDashboard(BaseModel):
    doctors: List[DoctorBoardRow]
    opd: List[QueueEntryOut]
    diagnostics: List[DiagnosticEntryOut]
    logs: List[AuditOut]
