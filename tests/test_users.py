from __future__ import annotations

from decimal import Decimal

import pytest

from consultorio.auth_security import hash_password
from consultorio.auth_service import (
    authenticate,
    create_psychologist,
    create_user,
    delete_psychologist,
    delete_user,
    get_user_by_email,
    get_user_by_google_id,
    get_user_by_username,
    list_psychologists_flat,
    list_users,
    update_psychologist,
    update_user,
    update_user_password,
)
from consultorio.billing_service import create_invoice
from consultorio.errors import DeleteRestricted, ReferenceViolation, UniqueViolation, ValidationFailed
from consultorio.models import Psychologist, User, UserRole
from consultorio.patient_service import create_patient
from consultorio.schemas import PsychologistOut, UserOut, record

from .conftest import count_rows, run_concurrently


def test_create_user_normalizes_and_hashes():
    u = create_user(
        {
            "username": "  Ana.Souza ",
            "email": "Ana@Clinica.com.br",
            "fullName": "Ana Souza",
            "password": "segreta123",
        }
    )
    assert u.username == "ana.souza"
    assert u.email == "ana@clinica.com.br"
    assert u.role is UserRole.PSYCHOLOGIST
    assert u.password != "segreta123"
    assert get_user_by_username("ANA.SOUZA").id == u.id


def test_duplicate_username_leaves_table_unchanged(make_user):
    u = make_user()
    before = count_rows(User)
    with pytest.raises(UniqueViolation) as exc:
        create_user({"username": u.username, "email": "altro@clinica.com.br", "fullName": "Altro"})
    assert exc.value.field == "username"
    assert count_rows(User) == before


def test_duplicate_email_is_rejected(make_user):
    u = make_user()
    with pytest.raises(UniqueViolation):
        create_user({"username": "nuovo", "email": u.email.upper(), "fullName": "Nuovo"})


def test_invalid_email_fails_before_write():
    with pytest.raises(ValidationFailed):
        create_user({"username": "x", "email": "non-una-mail", "fullName": "X"})
    assert count_rows(User) == 0


def test_read_schema_uses_camel_case(make_user):
    u = make_user("receptionist")
    out = record(UserOut, u)
    assert out["fullName"] == u.full_name
    assert out["role"] == "receptionist"
    assert "password" not in out


def test_user_without_password_never_authenticates():
    create_user({"username": "google", "email": "g@clinica.com.br", "fullName": "G", "googleId": "g-1"})
    assert authenticate("google", "") is None


def test_authenticate(make_user):
    u = make_user()
    assert authenticate(u.username, "segreta123").id == u.id
    assert authenticate(u.username, "sbagliata") is None
    update_user(u.id, {"status": "inactive"})
    assert authenticate(u.username, "segreta123") is None


def test_list_users_by_role(make_user):
    make_user("admin")
    make_user("psychologist")
    make_user("psychologist")
    assert len(list_users("psychologist")) == 2
    assert len(list_users()) == 3


def test_psychologist_rate_accepts_string_and_number(make_user):
    a = create_psychologist({"userId": make_user().id, "hourlyRate": "150.00"})
    b = create_psychologist({"userId": make_user().id, "hourlyRate": 150.0})
    assert a.hourly_rate == b.hourly_rate == Decimal("150.00")


@pytest.mark.parametrize("rate", ["abc", "NaN", "-10", True])
def test_psychologist_rate_rejects_bad_values(make_user, rate):
    with pytest.raises(ValidationFailed):
        create_psychologist({"userId": make_user().id, "hourlyRate": rate})
    assert count_rows(Psychologist) == 0


def test_psychologist_requires_existing_user_with_role(make_user):
    with pytest.raises(ReferenceViolation):
        create_psychologist({"userId": 999, "hourlyRate": 100})
    with pytest.raises(ValidationFailed):
        create_psychologist({"userId": make_user("receptionist").id, "hourlyRate": 100})


def test_one_profile_per_user(psychologist):
    with pytest.raises(UniqueViolation):
        create_psychologist({"userId": psychologist.user_id, "hourlyRate": 90})


def test_update_psychologist_and_flat_list(psychologist):
    update_psychologist(psychologist.id, {"hourlyRate": "180.50", "bio": "Adulti e coppie"})
    rows = list_psychologists_flat()
    assert rows[0]["hourlyRate"] == Decimal("180.50")
    assert rows[0]["specialization"] == "TCC"


def test_delete_user_with_invoice_is_restricted(make_user):
    u = make_user()
    create_invoice(
        {
            "userId": u.id,
            "referenceMonth": "2026-02",
            "filePath": "uploads/nota.pdf",
            "originalFilename": "nota.pdf",
            "mimeType": "application/pdf",
            "fileSize": 1024,
        }
    )
    with pytest.raises(DeleteRestricted) as exc:
        delete_user(u.id)
    assert exc.value.blockers == {"invoices": 1}
    assert count_rows(User) == 1


def test_delete_user_with_profile_is_restricted_until_profile_removed(psychologist):
    with pytest.raises(DeleteRestricted):
        delete_user(psychologist.user_id)
    delete_psychologist(psychologist.id)
    delete_user(psychologist.user_id)
    assert count_rows(User) == 0


def test_concurrent_signup_with_same_username_has_one_winner():
    def signup(i):
        create_user({"username": "contesa", "email": f"contesa{i}@clinica.com.br", "fullName": f"Contesa {i}"})

    outcomes = run_concurrently(signup)
    assert outcomes.count("ok") == 1
    assert set(outcomes) == {"ok", "UniqueViolation"}
    assert count_rows(User) == 1


def test_google_id_is_unique_and_looked_up():
    u = create_user({"username": "g1", "email": "g1@clinica.com.br", "fullName": "G1", "googleId": "google-42"})
    with pytest.raises(UniqueViolation) as exc:
        create_user({"username": "g2", "email": "g2@clinica.com.br", "fullName": "G2", "googleId": "google-42"})
    assert exc.value.field == "google_id"
    assert get_user_by_google_id("google-42").id == u.id
    assert get_user_by_google_id("google-43") is None


def test_lookup_by_email_is_normalized(make_user):
    u = make_user()
    assert get_user_by_email(f"  {u.email.upper()} ").id == u.id
    assert get_user_by_email("nessuno@clinica.com.br") is None


def test_update_user_password_stores_given_hash(make_user):
    u = make_user()
    assert update_user_password(u.id, hash_password("nuovapassword")) is True
    assert authenticate(u.username, "nuovapassword").id == u.id
    assert authenticate(u.username, "segreta123") is None
    assert update_user_password(999, hash_password("nuovapassword")) is False


def test_role_change_blocked_while_psychologist_profile_exists(psychologist):
    with pytest.raises(ValidationFailed):
        update_user(psychologist.user_id, {"role": "admin"})
    with pytest.raises(ValidationFailed):
        update_user(psychologist.user_id, {"role": "receptionist", "fullName": "Nuovo nome"})
    assert list_users("psychologist")[0].full_name != "Nuovo nome"
    assert update_user(psychologist.user_id, {"role": "psychologist"}).role is UserRole.PSYCHOLOGIST

    delete_psychologist(psychologist.id)
    assert update_user(psychologist.user_id, {"role": "admin"}).role is UserRole.ADMIN


def test_unknown_role_filter_is_a_validation_error():
    with pytest.raises(ValidationFailed) as exc:
        list_users("superuser")
    assert exc.value.errors[0]["loc"] == ("role",)


def test_psychologist_read_schema(psychologist):
    out = record(PsychologistOut, psychologist)
    assert out["userId"] == psychologist.user_id
    assert out["hourlyRate"] == Decimal("150.00")
    assert out["specialization"] == "TCC"


def test_delete_user_blocked_by_clinical_record(make_user):
    u = make_user("admin")
    create_patient({"fullName": "Mariana Lima", "phone": "11 99999-0000", "createdBy": u.id})
    with pytest.raises(DeleteRestricted) as exc:
        delete_user(u.id)
    assert exc.value.blockers == {"patients": 1, "audit_logs": 1}
    assert count_rows(User) == 1
