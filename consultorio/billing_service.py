from __future__ import annotations

import datetime as dt
import logging
import re
from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, select

from .db import db_session
from .errors import ValidationFailed
from .models import (
    Appointment,
    Invoice,
    InvoiceStatus,
    Transaction,
    TransactionType,
    User,
    UserRole,
)
from .repository import apply_changes, as_enum, flush, get_or_404, require_ref
from .schemas import REFERENCE_MONTH_PATTERN, InvoiceCreate, TransactionCreate, TransactionUpdate, parse

logger = logging.getLogger(__name__)


# =========================
# Transazioni
# =========================
def create_transaction(data: TransactionCreate | Mapping[str, Any]) -> Transaction:
    """
    Entrata o uscita. L'importo è sempre positivo: il segno lo dà il tipo.
    Il responsabile (ed eventualmente l'appuntamento collegato) devono esistere.
    """
    payload = parse(TransactionCreate, data)
    with db_session() as s:
        require_ref(s, User, payload.responsible_id, "responsibleId")
        require_ref(s, Appointment, payload.related_appointment_id, "relatedAppointmentId")
        t = Transaction(**payload.model_dump())
        s.add(t)
        flush(s)
        return t


def get_transaction(transaction_id: int) -> Transaction | None:
    with db_session() as s:
        return s.get(Transaction, transaction_id)


def list_transactions() -> list[Transaction]:
    with db_session() as s:
        return list(s.scalars(select(Transaction).order_by(Transaction.date.desc(), Transaction.id.desc())))


def find_transactions_by_type(kind: TransactionType | str) -> list[Transaction]:
    with db_session() as s:
        q = (
            select(Transaction)
            .where(Transaction.type == as_enum(TransactionType, kind, "type"))
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return list(s.scalars(q))


def find_transactions_by_date_range(start: dt.date, end: dt.date) -> list[Transaction]:
    """Estremi inclusi."""
    with db_session() as s:
        q = (
            select(Transaction)
            .where(and_(Transaction.date >= start, Transaction.date <= end))
            .order_by(Transaction.date, Transaction.id)
        )
        return list(s.scalars(q))


def update_transaction(transaction_id: int, data: TransactionUpdate | Mapping[str, Any]) -> Transaction:
    changes = parse(TransactionUpdate, data).model_dump(exclude_unset=True)
    with db_session() as s:
        t = get_or_404(s, Transaction, transaction_id, "Transazione")
        if "related_appointment_id" in changes:
            require_ref(s, Appointment, changes["related_appointment_id"], "relatedAppointmentId")
        apply_changes(t, changes)
        flush(s)
        return t


def delete_transaction(transaction_id: int) -> None:
    with db_session() as s:
        t = get_or_404(s, Transaction, transaction_id, "Transazione")
        s.delete(t)


def signed_amount(t: Transaction) -> Decimal:
    return t.amount if t.type is TransactionType.INCOME else -t.amount


def summarize_transactions(transactions: Iterable[Transaction]) -> dict[str, Decimal]:
    """Totali per il cruscotto finanziario: entrate, uscite e saldo."""
    income = Decimal("0.00")
    expense = Decimal("0.00")
    for t in transactions:
        if t.type is TransactionType.INCOME:
            income += t.amount
        else:
            expense += t.amount
    return {"income": income, "expense": expense, "balance": income - expense}


# =========================
# Note fiscali
# =========================
def _check_month(month: str) -> None:
    if not re.match(REFERENCE_MONTH_PATTERN, month):
        raise ValidationFailed(
            f"Mese di riferimento non valido: {month!r} (atteso YYYY-MM)",
            errors=[{"loc": ("referenceMonth",), "msg": "expected YYYY-MM"}],
        )


def create_invoice(data: InvoiceCreate | Mapping[str, Any]) -> Invoice:
    """
    Registra i metadati di una nota fiscale caricata.
    Una sola per utente e mese: il duplicato è un UniqueViolation del DB.
    """
    payload = parse(InvoiceCreate, data)
    with db_session() as s:
        require_ref(s, User, payload.user_id, "userId")
        inv = Invoice(**payload.model_dump())
        s.add(inv)
        flush(s)
        logger.info("Nota fiscale %s registrata per utente %s", inv.reference_month, inv.user_id)
        return inv


def get_invoice(invoice_id: int) -> Invoice | None:
    with db_session() as s:
        return s.get(Invoice, invoice_id)


def list_invoices() -> list[Invoice]:
    with db_session() as s:
        return list(s.scalars(select(Invoice).order_by(Invoice.created_at.desc(), Invoice.id.desc())))


def find_invoices_for_user(user_id: int) -> list[Invoice]:
    with db_session() as s:
        q = select(Invoice).where(Invoice.user_id == user_id).order_by(Invoice.reference_month.desc())
        return list(s.scalars(q))


def find_invoices_by_month(month: str) -> list[Invoice]:
    _check_month(month)
    with db_session() as s:
        q = select(Invoice).where(Invoice.reference_month == month).order_by(Invoice.user_id)
        return list(s.scalars(q))


def get_invoice_for_user_and_month(user_id: int, month: str) -> Invoice | None:
    _check_month(month)
    with db_session() as s:
        q = select(Invoice).where(Invoice.user_id == user_id, Invoice.reference_month == month)
        return s.execute(q).scalar_one_or_none()


def set_invoice_status(invoice_id: int, status: InvoiceStatus | str) -> Invoice:
    with db_session() as s:
        inv = get_or_404(s, Invoice, invoice_id, "Nota fiscale")
        inv.status = as_enum(InvoiceStatus, status, "status")
        flush(s)
        return inv


def delete_invoice(invoice_id: int) -> None:
    with db_session() as s:
        inv = get_or_404(s, Invoice, invoice_id, "Nota fiscale")
        s.delete(inv)


def invoice_submission_status(month: str) -> dict[str, Any]:
    """
    Per il mese indicato: utenti non admin che hanno inviato la nota ('sent')
    e quelli che ancora mancano ('pending'), con i totali.
    """
    _check_month(month)
    with db_session() as s:
        users = s.execute(
            select(User.id, User.full_name, User.email, User.role)
            .where(User.role != UserRole.ADMIN)
            .order_by(User.full_name)
        ).all()
        sent_ids = set(s.scalars(select(Invoice.user_id).where(Invoice.reference_month == month)))

    sent, pending = [], []
    for u in users:
        row = {"id": u.id, "fullName": u.full_name, "email": u.email, "role": u.role.value}
        (sent if u.id in sent_ids else pending).append(row)
    return {
        "referenceMonth": month,
        "sent": sent,
        "pending": pending,
        "totalUsers": len(users),
        "totalSent": len(sent),
        "totalPending": len(pending),
    }
