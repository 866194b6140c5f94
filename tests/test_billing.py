from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from consultorio.billing_service import (
    create_invoice,
    create_transaction,
    find_invoices_by_month,
    find_transactions_by_date_range,
    find_transactions_by_type,
    get_invoice_for_user_and_month,
    invoice_submission_status,
    list_transactions,
    set_invoice_status,
    signed_amount,
    summarize_transactions,
    update_transaction,
)
from consultorio.errors import ReferenceViolation, UniqueViolation, ValidationFailed
from consultorio.models import Invoice, InvoiceStatus, Transaction, TransactionType
from consultorio.schemas import INVOICE_MAX_BYTES, InvoiceOut, TransactionOut, record

from .conftest import count_rows


def _tx(user, amount, kind="income", day=dt.date(2026, 3, 5), **extra):
    data = {
        "description": "Seduta",
        "amount": amount,
        "type": kind,
        "category": "sedute",
        "date": day,
        "responsibleId": user.id,
    }
    data.update(extra)
    return create_transaction(data)


def _invoice(user, month="2026-02", **extra):
    data = {
        "userId": user.id,
        "referenceMonth": month,
        "filePath": f"uploads/{user.id}-{month}.pdf",
        "originalFilename": "nota.pdf",
        "mimeType": "application/pdf",
        "fileSize": 2048,
    }
    data.update(extra)
    return create_invoice(data)


def test_amount_must_be_positive(make_user):
    u = make_user("admin")
    for bad in ("0", "-5", "dieci"):
        with pytest.raises(ValidationFailed):
            _tx(u, bad)
    assert count_rows(Transaction) == 0


def test_summary_and_signed_amount(make_user):
    u = make_user("admin")
    _tx(u, "150.00")
    _tx(u, "200.00")
    rent = _tx(u, "120.50", kind="expense", category="affitto")
    assert signed_amount(rent) == Decimal("-120.50")
    summary = summarize_transactions(list_transactions())
    assert summary == {
        "income": Decimal("350.00"),
        "expense": Decimal("120.50"),
        "balance": Decimal("229.50"),
    }


def test_transaction_queries(make_user):
    u = make_user("admin")
    _tx(u, "10", day=dt.date(2026, 1, 31))
    _tx(u, "20", day=dt.date(2026, 2, 1))
    _tx(u, "30", kind="expense", day=dt.date(2026, 2, 28))
    feb = find_transactions_by_date_range(dt.date(2026, 2, 1), dt.date(2026, 2, 28))
    assert [t.amount for t in feb] == [Decimal("20"), Decimal("30")]
    assert [t.type for t in find_transactions_by_type("expense")] == [TransactionType.EXPENSE]


def test_transaction_references(make_user):
    u = make_user("admin")
    with pytest.raises(ReferenceViolation):
        _tx(u, "10", relatedAppointmentId=999)
    t = _tx(u, "10")
    with pytest.raises(ReferenceViolation):
        update_transaction(t.id, {"relatedAppointmentId": 999})
    assert update_transaction(t.id, {"category": "altro"}).category == "altro"


def test_one_invoice_per_user_and_month(make_user):
    u = make_user()
    _invoice(u)
    with pytest.raises(UniqueViolation):
        _invoice(u)
    _invoice(u, month="2026-03")
    assert count_rows(Invoice) == 2


@pytest.mark.parametrize(
    "extra",
    [
        {"referenceMonth": "2026-13"},
        {"referenceMonth": "02/2026"},
        {"mimeType": "text/plain"},
        {"fileSize": INVOICE_MAX_BYTES + 1},
        {"fileSize": -1},
    ],
)
def test_invalid_invoices(make_user, extra):
    with pytest.raises(ValidationFailed):
        _invoice(make_user(), **extra)


def test_invoice_status_and_lookup(make_user):
    u = make_user()
    inv = _invoice(u, mimeType="IMAGE/PNG")
    assert inv.mime_type == "image/png"
    set_invoice_status(inv.id, "aprovada")
    found = get_invoice_for_user_and_month(u.id, "2026-02")
    assert found.status is InvoiceStatus.APROVADA
    out = record(InvoiceOut, found)
    assert out["referenceMonth"] == "2026-02"
    assert out["status"] == "aprovada"


def test_submission_status_excludes_admins(make_user):
    make_user("admin")
    sent_user = make_user("psychologist")
    late_user = make_user("receptionist")
    _invoice(sent_user)
    status = invoice_submission_status("2026-02")
    assert [r["id"] for r in status["sent"]] == [sent_user.id]
    assert [r["id"] for r in status["pending"]] == [late_user.id]
    assert status["totalUsers"] == 2
    assert len(find_invoices_by_month("2026-02")) == 1
    with pytest.raises(ValidationFailed):
        invoice_submission_status("2026-2")


def test_float_amounts_are_rounded_to_cents(make_user):
    u = make_user("admin")
    t = _tx(u, 0.1 + 0.2)
    assert t.amount == Decimal("0.30")
    assert _tx(u, 99.999).amount == Decimal("100.00")
    with pytest.raises(ValidationFailed):
        _tx(u, 0.001)
    with pytest.raises(ValidationFailed):
        _tx(u, "0.305")


def test_transaction_read_schema(make_user):
    u = make_user("admin")
    out = record(TransactionOut, _tx(u, "75.50", kind="expense", category="materiale"))
    assert out["amount"] == Decimal("75.50")
    assert out["type"] == "expense"
    assert out["responsibleId"] == u.id
    assert out["relatedAppointmentId"] is None


def test_unknown_enum_values_are_validation_errors(make_user):
    inv = _invoice(make_user())
    with pytest.raises(ValidationFailed) as exc:
        set_invoice_status(inv.id, "archiviata")
    assert exc.value.errors[0]["loc"] == ("status",)
    assert get_invoice_for_user_and_month(inv.user_id, "2026-02").status is InvoiceStatus.ENVIADA
    with pytest.raises(ValidationFailed):
        find_transactions_by_type("refund")
