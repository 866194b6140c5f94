from __future__ import annotations

import datetime as dt
import enum
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Integer, String, Text, Time, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base
from .models import enum_column, utcnow


class PatientStatus(enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DISCHARGED = "discharged"


class SessionType(enum.Enum):
    IN_PERSON = "in-person"
    ONLINE = "online"


class SessionStatus(enum.Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"


class DocumentType(enum.Enum):
    CONSENT = "consent"
    CONTRACT = "contract"
    REPORT = "report"
    EXAM = "exam"
    OTHER = "other"


class Patient(Base):
    """
    Anagrafica paziente della cartella clinica.
    - cpf univoco (se presente)
    - i pazienti non si cancellano: si passa lo stato a inactive / discharged
    """
    __tablename__ = "patients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    full_name: Mapped[str] = mapped_column(String(160), nullable=False)
    cpf: Mapped[str | None] = mapped_column(String(14), unique=True, nullable=True)
    birth_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(40), nullable=True)
    marital_status: Mapped[str | None] = mapped_column(String(40), nullable=True)
    profession: Mapped[str | None] = mapped_column(String(120), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str] = mapped_column(String(30), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    emergency_contact_name: Mapped[str | None] = mapped_column(String(160), nullable=True)
    emergency_contact_phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    insurance_provider: Mapped[str | None] = mapped_column(String(120), nullable=True)
    legal_guardian_name: Mapped[str | None] = mapped_column(String(160), nullable=True)
    legal_guardian_cpf: Mapped[str | None] = mapped_column(String(14), nullable=True)
    status: Mapped[PatientStatus] = mapped_column(
        enum_column(PatientStatus), default=PatientStatus.ACTIVE, nullable=False
    )
    photo_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    # psicologo responsabile; cambia solo con transfer_patient
    psychologist_id: Mapped[int | None] = mapped_column(
        ForeignKey("psychologists.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class PatientTransfer(Base):
    """Passaggio di un paziente da uno psicologo a un altro (deciso da un admin)."""
    __tablename__ = "patient_transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    from_psychologist_id: Mapped[int | None] = mapped_column(
        ForeignKey("psychologists.id", ondelete="RESTRICT"), nullable=True
    )
    to_psychologist_id: Mapped[int] = mapped_column(ForeignKey("psychologists.id", ondelete="RESTRICT"), nullable=False)
    transferred_by_admin_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class MedicalRecord(Base):
    __tablename__ = "medical_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # una sola anamnesi per paziente
    patient_id: Mapped[int] = mapped_column(
        ForeignKey("patients.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    chief_complaint: Mapped[str | None] = mapped_column(Text, nullable=True)
    personal_history: Mapped[str | None] = mapped_column(Text, nullable=True)
    family_history: Mapped[str | None] = mapped_column(Text, nullable=True)
    current_medications: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    medication_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    diagnosis: Mapped[str | None] = mapped_column(Text, nullable=True)
    icd10_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    therapeutic_objectives: Mapped[str | None] = mapped_column(Text, nullable=True)
    psychologist_id: Mapped[int | None] = mapped_column(
        ForeignKey("psychologists.id", ondelete="RESTRICT"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ClinicalSession(Base):
    """Evoluzione di una seduta (SOAP opzionale + note libere), versionata."""
    __tablename__ = "clinical_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    psychologist_id: Mapped[int] = mapped_column(ForeignKey("psychologists.id", ondelete="RESTRICT"), nullable=False)
    session_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    session_time: Mapped[dt.time] = mapped_column(Time, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=50, nullable=False)
    session_type: Mapped[SessionType] = mapped_column(
        enum_column(SessionType), default=SessionType.IN_PERSON, nullable=False
    )
    status: Mapped[SessionStatus] = mapped_column(
        enum_column(SessionStatus), default=SessionStatus.COMPLETED, nullable=False
    )

    subjective: Mapped[str | None] = mapped_column(Text, nullable=True)
    objective: Mapped[str | None] = mapped_column(Text, nullable=True)
    assessment: Mapped[str | None] = mapped_column(Text, nullable=True)
    plan: Mapped[str | None] = mapped_column(Text, nullable=True)

    evolution_notes: Mapped[str] = mapped_column(Text, nullable=False)
    clinical_observations: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_steps: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    edited_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    history: Mapped[list["SessionHistory"]] = relationship(
        back_populates="session", cascade="all, delete", passive_deletes=True
    )


class SessionHistory(Base):
    __tablename__ = "session_history"
    __table_args__ = (UniqueConstraint("session_id", "version", name="uq_session_history_version"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(ForeignKey("clinical_sessions.id", ondelete="CASCADE"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    evolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    clinical_observations: Mapped[str | None] = mapped_column(Text, nullable=True)
    edited_by: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    edited_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    session: Mapped["ClinicalSession"] = relationship(back_populates="history")


class PatientDocument(Base):
    __tablename__ = "patient_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    document_type: Mapped[DocumentType] = mapped_column(enum_column(DocumentType), nullable=False)
    document_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(80), nullable=False)
    uploaded_by: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class PsychologicalAssessment(Base):
    __tablename__ = "psychological_assessments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    psychologist_id: Mapped[int] = mapped_column(ForeignKey("psychologists.id", ondelete="RESTRICT"), nullable=False)
    assessment_name: Mapped[str] = mapped_column(String(160), nullable=False)
    assessment_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    results: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    observations: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class AuditLog(Base):
    """Traccia degli accessi alla cartella (LGPD). Solo inserimenti."""
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    action: Mapped[str] = mapped_column(String(40), nullable=False)  # view, create, update, archive, ...
    resource_type: Mapped[str] = mapped_column(String(40), nullable=False)
    resource_id: Mapped[int] = mapped_column(Integer, nullable=False)
    patient_id: Mapped[int | None] = mapped_column(
        ForeignKey("patients.id", ondelete="CASCADE"), nullable=True, index=True
    )
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
