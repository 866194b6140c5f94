"""
Eccezioni di dominio.

Tutte derivano da ConsultorioError; i servizi le sollevano al confine con lo
storage e le propagano invariate al chiamante.
"""
from __future__ import annotations

from typing import Any

from sqlalchemy.exc import IntegrityError, OperationalError


class ConsultorioError(Exception):
    """Base per gli errori del modello dati."""


class ValidationFailed(ConsultorioError, ValueError):
    """Input non valido: nessuna scrittura è stata eseguita."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class UniqueViolation(ConsultorioError):
    """Valore già presente su una colonna univoca (il chiamante può riprovare con un altro valore)."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class ReferenceViolation(ConsultorioError):
    """Chiave esterna verso una riga inesistente."""


class DeleteRestricted(ReferenceViolation):
    """Cancellazione bloccata da righe dipendenti."""

    def __init__(self, message: str, blockers: dict[str, int]) -> None:
        super().__init__(message)
        self.blockers = blockers


class NotFound(ConsultorioError):
    """Nessuna riga per l'id / token richiesto."""


class BookingConflict(ConsultorioError):
    """Intervallo orario sovrapposto a una prenotazione esistente."""


class ConcurrentWrite(ConsultorioError):
    """La transazione ha perso la corsa con un'altra scrittura (SQLite locked, PostgreSQL serialization failure)."""


class InvalidResetToken(ConsultorioError):
    """
    Token di reset inesistente, già usato o scaduto.
    Un solo messaggio per tutti i casi: non si rivela se il token è mai esistito.
    """

    def __init__(self) -> None:
        super().__init__("Token non valido o scaduto.")


_UNIQUE_MARKERS = ("unique constraint", "duplicate key", "unique failed")
_FK_MARKERS = ("foreign key", "violates foreign key")


def translate_integrity_error(exc: IntegrityError) -> ConsultorioError:
    """
    Converte un IntegrityError del driver (SQLite o PostgreSQL) nell'errore di dominio.
    Per le violazioni di unicità prova a estrarre il nome della colonna.
    """
    msg = str(exc.orig).lower()
    if any(m in msg for m in _UNIQUE_MARKERS):
        return UniqueViolation(f"Valore duplicato: {exc.orig}", field=_unique_field(str(exc.orig)))
    if any(m in msg for m in _FK_MARKERS):
        return ReferenceViolation(f"Riferimento non valido: {exc.orig}")
    return ConsultorioError(str(exc.orig))


def _unique_field(message: str) -> str | None:
    # SQLite: "UNIQUE constraint failed: users.email"
    if "failed:" in message:
        cols = message.split("failed:", 1)[1].strip().split(",")
        return cols[-1].strip().split(".")[-1] or None
    # PostgreSQL: 'Key (email)=(x@y) already exists.'
    if "Key (" in message:
        return message.split("Key (", 1)[1].split(")", 1)[0]
    return None


_LOCK_MARKERS = ("database is locked", "could not serialize")


def is_lock_error(exc: OperationalError) -> bool:
    """True se l'OperationalError indica una scrittura concorrente (ripetibile)."""
    msg = str(exc.orig).lower()
    return any(m in msg for m in _LOCK_MARKERS)
