"""
Cartella clinica: pazienti, anamnesi, evoluzioni versionate, documenti, test
psicologici e registro degli accessi.

Ogni scrittura sulla cartella lascia una riga in audit_logs nella stessa
transazione; le letture si registrano con record_audit(action="view").
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from .db import db_session
from .errors import ValidationFailed
from .models import Psychologist, User, UserRole
from .patient_models import (
    AuditLog,
    ClinicalSession,
    MedicalRecord,
    Patient,
    PatientDocument,
    PatientStatus,
    PatientTransfer,
    PsychologicalAssessment,
    SessionHistory,
)
from .patient_schemas import (
    AuditLogCreate,
    ClinicalSessionCreate,
    ClinicalSessionUpdate,
    MedicalRecordCreate,
    MedicalRecordUpdate,
    PatientCreate,
    PatientDocumentCreate,
    PatientUpdate,
    PsychologicalAssessmentCreate,
)
from .repository import apply_changes, flush, get_or_404, require_ref
from .schemas import parse

logger = logging.getLogger(__name__)


def _audit(
    s: Session,
    user_id: int,
    action: str,
    resource_type: str,
    resource_id: int,
    patient_id: int | None,
    details: dict[str, Any] | None = None,
) -> None:
    s.add(
        AuditLog(
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            patient_id=patient_id,
            details=details,
        )
    )


# =========================
# Pazienti
# =========================
def create_patient(data: PatientCreate | Mapping[str, Any]) -> Patient:
    payload = parse(PatientCreate, data)
    with db_session() as s:
        require_ref(s, User, payload.created_by, "createdBy")
        require_ref(s, Psychologist, payload.psychologist_id, "psychologistId")
        p = Patient(**payload.model_dump())
        s.add(p)
        flush(s)
        if payload.created_by is not None:
            _audit(s, payload.created_by, "create", "patient", p.id, p.id)
            flush(s)
        logger.info("Paziente creato: %s", p.id)
        return p


def get_patient(patient_id: int) -> Patient | None:
    with db_session() as s:
        return s.get(Patient, patient_id)


def get_patient_by_cpf(cpf: str) -> Patient | None:
    with db_session() as s:
        return s.execute(select(Patient).where(Patient.cpf == cpf.strip())).scalar_one_or_none()


def list_patients(include_inactive: bool = False, psychologist_id: int | None = None) -> list[Patient]:
    """
    Con psychologist_id: i pazienti in carico allo psicologo oppure creati
    dal suo utente (quelli registrati prima dell'assegnazione).
    """
    with db_session() as s:
        q = select(Patient).order_by(Patient.full_name)
        if not include_inactive:
            q = q.where(Patient.status == PatientStatus.ACTIVE)
        if psychologist_id is not None:
            owner = select(Psychologist.user_id).where(Psychologist.id == psychologist_id).scalar_subquery()
            q = q.where(or_(Patient.psychologist_id == psychologist_id, Patient.created_by == owner))
        return list(s.scalars(q))


def update_patient(patient_id: int, data: PatientUpdate | Mapping[str, Any], user_id: int | None = None) -> Patient:
    changes = parse(PatientUpdate, data).model_dump(exclude_unset=True)
    with db_session() as s:
        p = get_or_404(s, Patient, patient_id, "Paziente")
        apply_changes(p, changes)
        if user_id is not None:
            _audit(s, user_id, "update", "patient", p.id, p.id, {"fields": sorted(changes)})
        flush(s)
        return p


def transfer_patient(
    patient_id: int, to_psychologist_id: int, admin_id: int, reason: str | None = None
) -> PatientTransfer:
    """
    Passa il paziente a un altro psicologo.
    - solo un admin può trasferire
    - aggiornamento del paziente, riga in patient_transfers e audit nella stessa transazione
    """
    with db_session() as s:
        p = get_or_404(s, Patient, patient_id, "Paziente")
        require_ref(s, Psychologist, to_psychologist_id, "toPsychologistId")
        admin = require_ref(s, User, admin_id, "adminId")
        if admin.role is not UserRole.ADMIN:
            raise ValidationFailed(
                "Solo un amministratore può trasferire pazienti",
                errors=[{"loc": ("adminId",), "msg": "admin role required"}],
            )
        if p.psychologist_id == to_psychologist_id:
            raise ValidationFailed(
                "Il paziente è già in carico a questo psicologo",
                errors=[{"loc": ("toPsychologistId",), "msg": "already linked"}],
            )
        t = PatientTransfer(
            patient_id=p.id,
            from_psychologist_id=p.psychologist_id,
            to_psychologist_id=to_psychologist_id,
            transferred_by_admin_id=admin_id,
            reason=reason,
        )
        p.psychologist_id = to_psychologist_id
        s.add(t)
        flush(s)
        _audit(
            s,
            admin_id,
            "patient_transfer",
            "patient",
            p.id,
            p.id,
            {"fromPsychologistId": t.from_psychologist_id, "toPsychologistId": to_psychologist_id, "reason": reason},
        )
        flush(s)
        logger.info("Paziente %s trasferito a psicologo %s", p.id, to_psychologist_id)
        return t


def list_transfers(patient_id: int) -> list[PatientTransfer]:
    """Trasferimenti del paziente, dal più recente."""
    with db_session() as s:
        q = (
            select(PatientTransfer)
            .where(PatientTransfer.patient_id == patient_id)
            .order_by(PatientTransfer.created_at.desc(), PatientTransfer.id.desc())
        )
        return list(s.scalars(q))


def patient_counts(patient_id: int) -> dict[str, int]:
    """Contatori della scheda paziente: sedute attive, documenti, test."""
    with db_session() as s:
        get_or_404(s, Patient, patient_id, "Paziente")

        def _count(model, *conditions) -> int:
            return s.scalar(select(func.count()).select_from(model).where(model.patient_id == patient_id, *conditions))

        return {
            "sessions": _count(ClinicalSession, ClinicalSession.is_active.is_(True)),
            "documents": _count(PatientDocument),
            "assessments": _count(PsychologicalAssessment),
        }


# =========================
# Anamnesi
# =========================
def create_medical_record(data: MedicalRecordCreate | Mapping[str, Any]) -> MedicalRecord:
    """Una sola anamnesi per paziente: la seconda è un UniqueViolation."""
    payload = parse(MedicalRecordCreate, data)
    with db_session() as s:
        require_ref(s, Patient, payload.patient_id, "patientId")
        require_ref(s, Psychologist, payload.psychologist_id, "psychologistId")
        r = MedicalRecord(**payload.model_dump())
        s.add(r)
        flush(s)
        return r


def get_medical_record(patient_id: int) -> MedicalRecord | None:
    with db_session() as s:
        return s.execute(select(MedicalRecord).where(MedicalRecord.patient_id == patient_id)).scalar_one_or_none()


def update_medical_record(patient_id: int, data: MedicalRecordUpdate | Mapping[str, Any]) -> MedicalRecord:
    """Aggiorna l'anamnesi del paziente; se non esiste ancora la crea."""
    changes = parse(MedicalRecordUpdate, data).model_dump(exclude_unset=True)
    with db_session() as s:
        require_ref(s, Patient, patient_id, "patientId")
        if "psychologist_id" in changes:
            require_ref(s, Psychologist, changes["psychologist_id"], "psychologistId")
        r = s.execute(select(MedicalRecord).where(MedicalRecord.patient_id == patient_id)).scalar_one_or_none()
        if r is None:
            r = MedicalRecord(patient_id=patient_id)
            s.add(r)
        apply_changes(r, changes)
        flush(s)
        return r


# =========================
# Evoluzioni (sedute)
# =========================
def create_session(data: ClinicalSessionCreate | Mapping[str, Any], user_id: int) -> ClinicalSession:
    payload = parse(ClinicalSessionCreate, data)
    with db_session() as s:
        require_ref(s, Patient, payload.patient_id, "patientId")
        require_ref(s, Psychologist, payload.psychologist_id, "psychologistId")
        require_ref(s, User, user_id, "userId")
        cs = ClinicalSession(**payload.model_dump(), version=1, is_active=True)
        s.add(cs)
        flush(s)
        _audit(s, user_id, "create", "clinical_session", cs.id, cs.patient_id)
        flush(s)
        return cs


def get_session(session_id: int) -> ClinicalSession | None:
    with db_session() as s:
        return s.get(ClinicalSession, session_id)


def list_sessions(patient_id: int, include_archived: bool = False) -> list[ClinicalSession]:
    """Più recenti prima."""
    with db_session() as s:
        q = (
            select(ClinicalSession)
            .where(ClinicalSession.patient_id == patient_id)
            .order_by(ClinicalSession.session_date.desc(), ClinicalSession.session_time.desc())
        )
        if not include_archived:
            q = q.where(ClinicalSession.is_active.is_(True))
        return list(s.scalars(q))


def update_session(
    session_id: int, data: ClinicalSessionUpdate | Mapping[str, Any], user_id: int
) -> ClinicalSession:
    """
    Nuova versione della seduta:
    - le note della versione precedente finiscono in session_history
    - version + 1, editedBy = chi modifica
    """
    changes = parse(ClinicalSessionUpdate, data).model_dump(exclude_unset=True)
    with db_session() as s:
        cs = get_or_404(s, ClinicalSession, session_id, "Seduta")
        require_ref(s, User, user_id, "userId")
        s.add(
            SessionHistory(
                session_id=cs.id,
                version=cs.version,
                evolution_notes=cs.evolution_notes,
                clinical_observations=cs.clinical_observations,
                edited_by=cs.edited_by or user_id,
            )
        )
        apply_changes(cs, changes)
        cs.version += 1
        cs.edited_by = user_id
        _audit(s, user_id, "update", "clinical_session", cs.id, cs.patient_id, {"version": cs.version})
        flush(s)
        return cs


def archive_session(session_id: int, user_id: int) -> ClinicalSession:
    """Le sedute non si cancellano: si archiviano (isActive=False)."""
    with db_session() as s:
        cs = get_or_404(s, ClinicalSession, session_id, "Seduta")
        cs.is_active = False
        cs.edited_by = user_id
        logger.info("Seduta %s archiviata da utente %s", cs.id, user_id)
        _audit(s, user_id, "archive", "clinical_session", cs.id, cs.patient_id, {"archived": True})
        flush(s)
        return cs


def session_history(session_id: int) -> list[SessionHistory]:
    """Versioni precedenti, dalla più recente."""
    with db_session() as s:
        q = select(SessionHistory).where(SessionHistory.session_id == session_id).order_by(SessionHistory.version.desc())
        return list(s.scalars(q))


# =========================
# Documenti e test
# =========================
def create_document(data: PatientDocumentCreate | Mapping[str, Any]) -> PatientDocument:
    payload = parse(PatientDocumentCreate, data)
    with db_session() as s:
        require_ref(s, Patient, payload.patient_id, "patientId")
        require_ref(s, User, payload.uploaded_by, "uploadedBy")
        d = PatientDocument(**payload.model_dump())
        s.add(d)
        flush(s)
        _audit(s, payload.uploaded_by, "upload", "document", d.id, d.patient_id)
        flush(s)
        return d


def list_documents(patient_id: int) -> list[PatientDocument]:
    with db_session() as s:
        q = select(PatientDocument).where(PatientDocument.patient_id == patient_id).order_by(PatientDocument.created_at.desc())
        return list(s.scalars(q))


def delete_document(document_id: int, user_id: int) -> None:
    with db_session() as s:
        d = get_or_404(s, PatientDocument, document_id, "Documento")
        _audit(s, user_id, "delete", "document", d.id, d.patient_id, {"documentName": d.document_name})
        s.delete(d)
        flush(s)


def create_assessment(data: PsychologicalAssessmentCreate | Mapping[str, Any]) -> PsychologicalAssessment:
    payload = parse(PsychologicalAssessmentCreate, data)
    with db_session() as s:
        require_ref(s, Patient, payload.patient_id, "patientId")
        require_ref(s, Psychologist, payload.psychologist_id, "psychologistId")
        a = PsychologicalAssessment(**payload.model_dump())
        s.add(a)
        flush(s)
        return a


def list_assessments(patient_id: int) -> list[PsychologicalAssessment]:
    with db_session() as s:
        q = (
            select(PsychologicalAssessment)
            .where(PsychologicalAssessment.patient_id == patient_id)
            .order_by(PsychologicalAssessment.assessment_date.desc())
        )
        return list(s.scalars(q))


# =========================
# Registro accessi
# =========================
def record_audit(data: AuditLogCreate | Mapping[str, Any]) -> AuditLog:
    payload = parse(AuditLogCreate, data)
    with db_session() as s:
        require_ref(s, User, payload.user_id, "userId")
        require_ref(s, Patient, payload.patient_id, "patientId")
        log = AuditLog(**payload.model_dump())
        s.add(log)
        flush(s)
        return log


def list_audit_logs(patient_id: int) -> list[AuditLog]:
    with db_session() as s:
        q = select(AuditLog).where(AuditLog.patient_id == patient_id).order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        return list(s.scalars(q))
