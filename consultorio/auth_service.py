from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from .auth_security import hash_password, mask_token, new_reset_token, reset_token_expiry, verify_password
from .db import db_session
from .errors import InvalidResetToken, NotFound, ValidationFailed
from .models import (
    Appointment,
    GoogleToken,
    Invoice,
    PasswordResetToken,
    Psychologist,
    RoomBooking,
    Transaction,
    User,
    UserRole,
    UserStatus,
    naive_utc,
)
from .patient_models import (
    AuditLog,
    ClinicalSession,
    MedicalRecord,
    Patient,
    PatientDocument,
    PatientTransfer,
    PsychologicalAssessment,
    SessionHistory,
)
from .repository import apply_changes, as_enum, flush, get_or_404, require_ref, restrict_delete
from .schemas import (
    PASSWORD_MIN_LENGTH,
    PasswordResetTokenCreate,
    PsychologistCreate,
    PsychologistUpdate,
    UserCreate,
    UserUpdate,
    parse,
)

logger = logging.getLogger(__name__)


# =========================
# Utenti
# =========================
def create_user(data: UserCreate | Mapping[str, Any]) -> User:
    """
    Crea un utente.
    - username / email normalizzati (strip + minuscolo) e univoci
    - password (se presente) salvata come hash bcrypt
    L'unicità la garantisce il vincolo del DB, non un controllo preventivo.
    """
    payload = parse(UserCreate, data)
    values = payload.model_dump()
    if payload.password is not None:
        values["password"] = hash_password(payload.password)

    with db_session() as s:
        u = User(**values)
        s.add(u)
        flush(s)
        logger.info("Utente creato: %s (%s)", u.username, u.role.value)
        return u


def get_user(user_id: int) -> User | None:
    with db_session() as s:
        return s.get(User, user_id)


def get_user_by_username(username: str) -> User | None:
    with db_session() as s:
        return s.execute(select(User).where(User.username == username.strip().lower())).scalar_one_or_none()


def get_user_by_email(email: str) -> User | None:
    with db_session() as s:
        return s.execute(select(User).where(User.email == email.strip().lower())).scalar_one_or_none()


def get_user_by_google_id(google_id: str) -> User | None:
    with db_session() as s:
        return s.execute(select(User).where(User.google_id == google_id)).scalar_one_or_none()


def list_users(role: UserRole | str | None = None) -> list[User]:
    with db_session() as s:
        q = select(User).order_by(User.full_name, User.id)
        if role is not None:
            q = q.where(User.role == as_enum(UserRole, role, "role"))
        return list(s.scalars(q))


def update_user(user_id: int, data: UserUpdate | Mapping[str, Any]) -> User:
    changes = parse(UserUpdate, data).model_dump(exclude_unset=True)
    if changes.get("password") is not None:
        changes["password"] = hash_password(changes["password"])

    with db_session() as s:
        u = get_or_404(s, User, user_id, "Utente")
        new_role = changes.get("role")
        if new_role is not None and new_role is not UserRole.PSYCHOLOGIST:
            # il profilo psicologo vale solo per utenti con ruolo psychologist
            profile = s.execute(select(Psychologist.id).where(Psychologist.user_id == user_id)).first()
            if profile is not None:
                raise ValidationFailed(
                    f"L'utente {u.username} ha un profilo psicologo: ruolo {new_role.value} non ammesso.",
                    errors=[{"loc": ("role",), "msg": "user has a psychologist profile"}],
                )
        apply_changes(u, changes)
        flush(s)
        return u


def update_user_password(user_id: int, password_hash: str) -> bool:
    with db_session() as s:
        res = s.execute(update(User).where(User.id == user_id).values(password=password_hash))
        return res.rowcount == 1


def delete_user(user_id: int) -> None:
    """
    RESTRICT: profilo psicologo, note fiscali, token Google, transazioni e
    tutto ciò che l'utente ha firmato nella cartella clinica.
    CASCADE: token di reset e eventi calendario dell'utente.
    """
    with db_session() as s:
        u = get_or_404(s, User, user_id, "Utente")
        restrict_delete(
            s,
            f"l'utente {u.username}",
            {
                "psychologists": Psychologist.user_id == user_id,
                "invoices": Invoice.user_id == user_id,
                "google_tokens": GoogleToken.user_id == user_id,
                "transactions": Transaction.responsible_id == user_id,
                "patients": Patient.created_by == user_id,
                "clinical_sessions": ClinicalSession.edited_by == user_id,
                "session_history": SessionHistory.edited_by == user_id,
                "patient_documents": PatientDocument.uploaded_by == user_id,
                "patient_transfers": PatientTransfer.transferred_by_admin_id == user_id,
                "audit_logs": AuditLog.user_id == user_id,
            },
        )
        s.delete(u)
        flush(s)
        logger.info("Utente cancellato: %s", u.username)


def authenticate(username: str, password: str) -> User | None:
    u = get_user_by_username(username)
    if not u or u.status is not UserStatus.ACTIVE:
        return None
    if not verify_password(password, u.password):
        return None
    return u


# =========================
# Psicologi
# =========================
def create_psychologist(data: PsychologistCreate | Mapping[str, Any]) -> Psychologist:
    """
    Profilo professionale (1:1 con l'utente).
    L'utente deve esistere e avere ruolo psychologist.
    """
    payload = parse(PsychologistCreate, data)
    with db_session() as s:
        u = require_ref(s, User, payload.user_id, "userId")
        if u.role is not UserRole.PSYCHOLOGIST:
            raise ValidationFailed(
                f"L'utente {u.username} ha ruolo {u.role.value}, serve psychologist.",
                errors=[{"loc": ("userId",), "msg": "role must be psychologist"}],
            )
        p = Psychologist(**payload.model_dump())
        s.add(p)
        flush(s)
        return p


def get_psychologist(psychologist_id: int) -> Psychologist | None:
    with db_session() as s:
        return s.get(Psychologist, psychologist_id)


def get_psychologist_by_user_id(user_id: int) -> Psychologist | None:
    with db_session() as s:
        return s.execute(select(Psychologist).where(Psychologist.user_id == user_id)).scalar_one_or_none()


def list_psychologists() -> list[Psychologist]:
    with db_session() as s:
        return list(s.scalars(select(Psychologist).order_by(Psychologist.id)))


def list_psychologists_flat() -> list[dict]:
    """Psicologi con nome e email dell'utente, in camelCase."""
    with db_session() as s:
        rows = s.execute(
            select(
                Psychologist.id,
                Psychologist.user_id,
                User.full_name,
                User.email,
                Psychologist.specialization,
                Psychologist.hourly_rate,
            )
            .join(User, User.id == Psychologist.user_id)
            .order_by(User.full_name)
        ).all()
        return [
            {
                "id": r.id,
                "userId": r.user_id,
                "fullName": r.full_name,
                "email": r.email,
                "specialization": r.specialization,
                "hourlyRate": r.hourly_rate,
            }
            for r in rows
        ]


def update_psychologist(psychologist_id: int, data: PsychologistUpdate | Mapping[str, Any]) -> Psychologist:
    changes = parse(PsychologistUpdate, data).model_dump(exclude_unset=True)
    with db_session() as s:
        p = get_or_404(s, Psychologist, psychologist_id, "Psicologo")
        apply_changes(p, changes)
        flush(s)
        return p


def delete_psychologist(psychologist_id: int) -> None:
    with db_session() as s:
        p = get_or_404(s, Psychologist, psychologist_id, "Psicologo")
        restrict_delete(
            s,
            f"lo psicologo {psychologist_id}",
            {
                "appointments": Appointment.psychologist_id == psychologist_id,
                "room_bookings": RoomBooking.psychologist_id == psychologist_id,
                "patients": Patient.psychologist_id == psychologist_id,
                "medical_records": MedicalRecord.psychologist_id == psychologist_id,
                "clinical_sessions": ClinicalSession.psychologist_id == psychologist_id,
                "psychological_assessments": PsychologicalAssessment.psychologist_id == psychologist_id,
                "patient_transfers": (PatientTransfer.to_psychologist_id == psychologist_id)
                | (PatientTransfer.from_psychologist_id == psychologist_id),
            },
        )
        s.delete(p)
        flush(s)


# =========================
# Recupero password
# =========================
def save_reset_token(data: PasswordResetTokenCreate | Mapping[str, Any]) -> PasswordResetToken:
    payload = parse(PasswordResetTokenCreate, data)
    with db_session() as s:
        require_ref(s, User, payload.user_id, "userId")
        t = PasswordResetToken(**payload.model_dump())
        s.add(t)
        flush(s)
        return t


def issue_reset_token(
    user_id: int, now: datetime | None = None, ttl: timedelta | None = None
) -> PasswordResetToken:
    """Genera e salva un nuovo token (attivo fino a now + ttl)."""
    token = new_reset_token()
    t = save_reset_token({"user_id": user_id, "token": token, "expires_at": reset_token_expiry(now, ttl)})
    logger.info("Token di reset emesso per utente %s: %s", user_id, mask_token(token))
    return t


def check_reset_token(token: str, now: datetime | None = None) -> PasswordResetToken:
    """
    Ritorna il token se attivo (used=False e now <= expiresAt).
    Inesistente, usato o scaduto: stesso InvalidResetToken.
    """
    now = naive_utc(now)
    with db_session() as s:
        t = s.execute(select(PasswordResetToken).where(PasswordResetToken.token == token)).scalar_one_or_none()
        if t is None or t.used or now > t.expires_at:
            logger.debug("Token di reset rifiutato: %s", mask_token(token))
            raise InvalidResetToken()
        return t


def _consume(s: Session, token: str, now: datetime) -> PasswordResetToken:
    # check-and-set atomico: una sola richiesta concorrente può vincere
    res = s.execute(
        update(PasswordResetToken)
        .where(
            PasswordResetToken.token == token,
            PasswordResetToken.used.is_(False),
            PasswordResetToken.expires_at >= now,
        )
        .values(used=True)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        logger.info("Consumo token di reset rifiutato: %s", mask_token(token))
        raise InvalidResetToken()
    return s.execute(select(PasswordResetToken).where(PasswordResetToken.token == token)).scalar_one()


def consume_reset_token(token: str, now: datetime | None = None) -> PasswordResetToken:
    with db_session() as s:
        t = _consume(s, token, naive_utc(now))
        logger.info("Token di reset consumato: %s", mask_token(token))
        return t


def reset_password(token: str, new_password: str, now: datetime | None = None) -> User:
    """Consuma il token e aggiorna la password nella stessa transazione."""
    if len(new_password) < PASSWORD_MIN_LENGTH:
        raise ValidationFailed(
            f"La password deve avere almeno {PASSWORD_MIN_LENGTH} caratteri.",
            errors=[{"loc": ("password",), "msg": "too short"}],
        )
    password_hash = hash_password(new_password)
    with db_session() as s:
        t = _consume(s, token, naive_utc(now))
        u = s.get(User, t.user_id)
        if u is None:
            raise NotFound(f"Utente {t.user_id} non trovato.")
        u.password = password_hash
        flush(s)
        logger.info("Password aggiornata per utente %s", u.username)
        return u


def purge_expired_reset_tokens(now: datetime | None = None) -> int:
    """Cancella i token scaduti o già usati; ritorna quanti."""
    now = naive_utc(now)
    with db_session() as s:
        res = s.execute(
            delete(PasswordResetToken).where(
                (PasswordResetToken.expires_at < now) | (PasswordResetToken.used.is_(True))
            )
        )
        return res.rowcount
