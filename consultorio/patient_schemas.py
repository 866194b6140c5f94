"""Schemi Pydantic della cartella clinica (stesse convenzioni di schemas.py)."""
from __future__ import annotations

import datetime as dt
from datetime import datetime
from typing import Any

from pydantic import EmailStr, Field

from .patient_models import DocumentType, PatientStatus, SessionStatus, SessionType
from .schemas import Record, Schema, Text


# =========================
# Pazienti
# =========================
class PatientCreate(Schema):
    full_name: Text
    cpf: str | None = Field(default=None, max_length=14)
    birth_date: dt.date | None = None
    gender: str | None = None
    marital_status: str | None = None
    profession: str | None = None
    address: str | None = None
    phone: Text
    email: EmailStr | None = None
    emergency_contact_name: str | None = None
    emergency_contact_phone: str | None = None
    insurance_provider: str | None = None
    legal_guardian_name: str | None = None
    legal_guardian_cpf: str | None = Field(default=None, max_length=14)
    status: PatientStatus = PatientStatus.ACTIVE
    photo_url: str | None = None
    psychologist_id: int | None = None
    created_by: int | None = None


class PatientUpdate(Schema):
    full_name: Text | None = None
    cpf: str | None = Field(default=None, max_length=14)
    birth_date: dt.date | None = None
    gender: str | None = None
    marital_status: str | None = None
    profession: str | None = None
    address: str | None = None
    phone: Text | None = None
    email: EmailStr | None = None
    emergency_contact_name: str | None = None
    emergency_contact_phone: str | None = None
    insurance_provider: str | None = None
    legal_guardian_name: str | None = None
    legal_guardian_cpf: str | None = Field(default=None, max_length=14)
    status: PatientStatus | None = None
    photo_url: str | None = None


class PatientOut(Record):
    id: int
    full_name: str
    cpf: str | None = None
    birth_date: dt.date | None = None
    phone: str
    email: str | None = None
    status: PatientStatus
    psychologist_id: int | None = None
    created_by: int | None = None
    created_at: datetime
    updated_at: datetime


class PatientTransferOut(Record):
    id: int
    patient_id: int
    from_psychologist_id: int | None = None
    to_psychologist_id: int
    transferred_by_admin_id: int
    reason: str | None = None
    created_at: datetime


# =========================
# Anamnesi
# =========================
class MedicalRecordCreate(Schema):
    patient_id: int
    chief_complaint: str | None = None
    personal_history: str | None = None
    family_history: str | None = None
    current_medications: bool = False
    medication_details: str | None = None
    diagnosis: str | None = None
    icd10_code: str | None = Field(default=None, max_length=16)
    therapeutic_objectives: str | None = None
    psychologist_id: int | None = None


class MedicalRecordUpdate(Schema):
    chief_complaint: str | None = None
    personal_history: str | None = None
    family_history: str | None = None
    current_medications: bool | None = None
    medication_details: str | None = None
    diagnosis: str | None = None
    icd10_code: str | None = Field(default=None, max_length=16)
    therapeutic_objectives: str | None = None
    psychologist_id: int | None = None


# =========================
# Evoluzioni
# =========================
class ClinicalSessionCreate(Schema):
    patient_id: int
    psychologist_id: int
    session_date: dt.date
    session_time: dt.time
    duration_minutes: int = Field(default=50, gt=0)
    session_type: SessionType = SessionType.IN_PERSON
    status: SessionStatus = SessionStatus.COMPLETED
    subjective: str | None = None
    objective: str | None = None
    assessment: str | None = None
    plan: str | None = None
    evolution_notes: Text
    clinical_observations: str | None = None
    next_steps: str | None = None


class ClinicalSessionUpdate(Schema):
    session_date: dt.date | None = None
    session_time: dt.time | None = None
    duration_minutes: int | None = Field(default=None, gt=0)
    session_type: SessionType | None = None
    status: SessionStatus | None = None
    subjective: str | None = None
    objective: str | None = None
    assessment: str | None = None
    plan: str | None = None
    evolution_notes: Text | None = None
    clinical_observations: str | None = None
    next_steps: str | None = None


class ClinicalSessionOut(Record):
    id: int
    patient_id: int
    psychologist_id: int
    session_date: dt.date
    session_time: dt.time
    duration_minutes: int
    session_type: SessionType
    status: SessionStatus
    evolution_notes: str
    version: int
    is_active: bool
    edited_by: int | None = None


# =========================
# Documenti e test
# =========================
class PatientDocumentCreate(Schema):
    patient_id: int
    document_type: DocumentType
    document_name: Text
    file_path: Text
    file_size: int = Field(ge=0)
    mime_type: Text
    uploaded_by: int


class PsychologicalAssessmentCreate(Schema):
    patient_id: int
    psychologist_id: int
    assessment_name: Text
    assessment_date: dt.date
    results: str | None = None
    file_path: str | None = None
    observations: str | None = None


class AuditLogCreate(Schema):
    user_id: int
    action: Text
    resource_type: Text
    resource_id: int
    patient_id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    details: dict[str, Any] | None = None
