from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from consultorio.auth_service import delete_user
from consultorio.calendar_service import (
    can_refresh,
    delete_google_token,
    find_stale_calendar_events,
    get_calendar_event_for_appointment,
    get_google_token,
    link_calendar_event,
    save_google_token,
    token_needs_refresh,
    touch_calendar_event,
    unlink_calendar_event,
)
from consultorio.errors import DeleteRestricted, ReferenceViolation, UniqueViolation
from consultorio.models import CalendarEvent, GoogleToken
from consultorio.schemas import CalendarEventOut, GoogleTokenOut, record
from consultorio.services import create_appointment, delete_appointment

from .conftest import count_rows

NOW = datetime(2026, 3, 1, 8, 0)


@pytest.fixture
def appointment(psychologist, room, day):
    return create_appointment(
        {
            "patientName": "Mariana Lima",
            "psychologistId": psychologist.id,
            "roomId": room.id,
            "date": day,
            "startTime": "09:00",
            "endTime": "10:00",
        }
    )


def test_token_upsert_keeps_one_row_and_refresh_token(make_user):
    u = make_user()
    first = save_google_token(u.id, "access-1", refresh_token="refresh-1", now=NOW)
    assert first.calendar_id == "primary"
    assert first.expiry_date == NOW + timedelta(hours=1)

    second = save_google_token(u.id, "access-2", expiry_date=NOW + timedelta(hours=2), now=NOW)
    assert second.id == first.id
    assert count_rows(GoogleToken) == 1
    stored = get_google_token(u.id)
    assert stored.access_token == "access-2"
    assert stored.refresh_token == "refresh-1"
    assert can_refresh(stored)


def test_token_needs_refresh_uses_margin(make_user):
    t = save_google_token(make_user().id, "access", expiry_date=NOW + timedelta(seconds=30), now=NOW)
    assert token_needs_refresh(t, now=NOW)
    assert not token_needs_refresh(t, now=NOW, margin=timedelta(seconds=10))
    assert not can_refresh(t)


def test_token_for_missing_user():
    with pytest.raises(ReferenceViolation):
        save_google_token(999, "access", now=NOW)


def test_google_token_restricts_user_delete(make_user):
    u = make_user()
    save_google_token(u.id, "access", now=NOW)
    with pytest.raises(DeleteRestricted):
        delete_user(u.id)
    assert delete_google_token(u.id) is True
    assert delete_google_token(u.id) is False
    delete_user(u.id)


def test_link_is_idempotent_for_same_pair(appointment, psychologist):
    first = link_calendar_event(appointment.id, "evt-1", psychologist.user_id, now=NOW)
    again = link_calendar_event(appointment.id, "evt-1", psychologist.user_id, now=NOW + timedelta(minutes=5))
    assert again.id == first.id
    assert again.last_synced == NOW + timedelta(minutes=5)
    assert count_rows(CalendarEvent) == 1


def test_same_event_on_other_appointment_is_rejected(appointment, psychologist, room, day):
    other = create_appointment(
        {
            "patientName": "Paulo",
            "psychologistId": psychologist.id,
            "roomId": room.id,
            "date": day,
            "startTime": "11:00",
            "endTime": "12:00",
        }
    )
    link_calendar_event(appointment.id, "evt-1", psychologist.user_id, now=NOW)
    with pytest.raises(UniqueViolation):
        link_calendar_event(other.id, "evt-1", psychologist.user_id, now=NOW)


def test_stale_touch_and_unlink(appointment, psychologist):
    link_calendar_event(appointment.id, "evt-1", psychologist.user_id, now=NOW)
    later = NOW + timedelta(hours=3)
    assert [e.google_event_id for e in find_stale_calendar_events(timedelta(hours=1), now=later)] == ["evt-1"]
    assert touch_calendar_event("evt-1", now=later)
    assert find_stale_calendar_events(timedelta(hours=1), now=later) == []
    assert get_calendar_event_for_appointment(appointment.id).google_event_id == "evt-1"
    assert unlink_calendar_event("evt-1") is True
    assert touch_calendar_event("evt-1") is False


def test_deleting_appointment_cascades_events(appointment, psychologist):
    link_calendar_event(appointment.id, "evt-1", psychologist.user_id, now=NOW)
    delete_appointment(appointment.id)
    assert count_rows(CalendarEvent) == 0


def test_token_and_event_read_schemas(appointment, psychologist):
    t = save_google_token(psychologist.user_id, "access", refresh_token="refresh", now=NOW)
    out = record(GoogleTokenOut, t)
    assert out["userId"] == psychologist.user_id
    assert out["refreshToken"] == "refresh"
    assert out["expiryDate"] == NOW + timedelta(hours=1)
    assert out["calendarId"] == "primary"

    e = link_calendar_event(appointment.id, "evt-9", psychologist.user_id, now=NOW)
    event_out = record(CalendarEventOut, e)
    assert event_out["googleEventId"] == "evt-9"
    assert event_out["appointmentId"] == appointment.id
    assert event_out["lastSynced"] == NOW
