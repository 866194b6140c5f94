"""
Helper comuni ai servizi: verifica delle chiavi esterne, aggiornamenti parziali,
traduzione degli IntegrityError e politica RESTRICT sulle cancellazioni.
"""
from __future__ import annotations

import enum
from typing import Any, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from .db import Base
from .errors import (
    ConcurrentWrite,
    DeleteRestricted,
    NotFound,
    ReferenceViolation,
    ValidationFailed,
    is_lock_error,
    translate_integrity_error,
)

M = TypeVar("M", bound=Base)
E = TypeVar("E", bound=enum.Enum)


def get_or_404(s: Session, model: type[M], obj_id: int, label: str | None = None) -> M:
    obj = s.get(model, obj_id)
    if obj is None:
        raise NotFound(f"{label or model.__name__} {obj_id} non trovato.")
    return obj


def require_ref(s: Session, model: type[M], obj_id: int | None, field: str) -> M | None:
    """Verifica che la FK punti a una riga esistente (None ammesso per colonne opzionali)."""
    if obj_id is None:
        return None
    obj = s.get(model, obj_id)
    if obj is None:
        raise ReferenceViolation(f"{field}={obj_id}: {model.__tablename__} inesistente.")
    return obj


def flush(s: Session) -> None:
    """Flush con traduzione dei vincoli del DB negli errori di dominio."""
    try:
        s.flush()
    except IntegrityError as e:
        raise translate_integrity_error(e) from e
    except OperationalError as e:
        if is_lock_error(e):
            raise ConcurrentWrite(f"Scrittura concorrente, riprovare: {e.orig}") from e
        raise


def as_enum(enum_cls: type[E], value: E | str, field: str) -> E:
    """Converte un valore nell'enum del modello; valore sconosciuto -> ValidationFailed."""
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationFailed(
            f"{field}={value!r} non valido (ammessi: {allowed})",
            errors=[{"loc": (field,), "msg": f"expected one of: {allowed}"}],
        ) from None


def apply_changes(obj: Base, changes: dict[str, Any]) -> None:
    """Applica un aggiornamento parziale; None su colonna NOT NULL è un errore di validazione."""
    columns = obj.__table__.c
    for key, value in changes.items():
        if value is None and not columns[key].nullable:
            raise ValidationFailed(f"{key} non può essere nullo", errors=[{"loc": (key,), "msg": "not nullable"}])
    for key, value in changes.items():
        setattr(obj, key, value)


def restrict_delete(s: Session, label: str, checks: dict[str, Any]) -> None:
    """
    checks: nome -> colonna FK già filtrata, es. {"invoices": Invoice.user_id == 3}.
    Se una qualsiasi tabella ha righe dipendenti la cancellazione è rifiutata.
    """
    blockers: dict[str, int] = {}
    for name, condition in checks.items():
        # la FROM si ricava dalle colonne della condizione
        n = s.execute(select(func.count()).where(condition)).scalar_one()
        if n:
            blockers[name] = n
    if blockers:
        detail = ", ".join(f"{k}={v}" for k, v in blockers.items())
        raise DeleteRestricted(f"Impossibile cancellare {label}: righe collegate ({detail}).", blockers)
