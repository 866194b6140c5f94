from __future__ import annotations

import datetime as dt

import pytest
from sqlalchemy.exc import OperationalError

from consultorio.auth_service import create_psychologist
from consultorio.billing_service import create_transaction
from consultorio.errors import BookingConflict, DeleteRestricted, NotFound, ReferenceViolation, ValidationFailed
from consultorio.models import Appointment, AppointmentStatus, RoomBooking
from consultorio import services
from consultorio.schemas import AppointmentOut, RoomBookingOut, RoomOut, record
from consultorio.services import (
    agenda_for_day,
    cancel_appointment,
    check_room_availability,
    create_appointment,
    create_room,
    create_room_booking,
    delete_appointment,
    delete_room,
    find_appointments_by_date_range,
    find_appointments_for_psychologist,
    find_room_bookings_by_date,
    find_room_bookings_for_room,
    get_appointment,
    update_appointment,
    update_room_booking,
)

from .conftest import count_rows, run_concurrently


def _appt(psychologist, room, day, start, end, **extra):
    data = {
        "patientName": "Mariana Lima",
        "psychologistId": psychologist.id,
        "roomId": room.id,
        "date": day,
        "startTime": start,
        "endTime": end,
    }
    data.update(extra)
    return create_appointment(data)


def _booking(psychologist, room, day, start, end):
    return create_room_booking(
        {"roomId": room.id, "psychologistId": psychologist.id, "date": day, "startTime": start, "endTime": end}
    )


def test_overlapping_booking_rejected_and_adjacent_allowed(psychologist, room, day):
    _booking(psychologist, room, day, "09:00", "10:00")
    with pytest.raises(BookingConflict):
        _booking(psychologist, room, day, "09:30", "10:30")
    _booking(psychologist, room, day, "10:00", "11:00")
    assert count_rows(RoomBooking) == 2


def test_appointment_round_trip(psychologist, room, day):
    a = _appt(psychologist, room, day, "14:00", "14:50", notes="primo colloquio")
    out = record(AppointmentOut, get_appointment(a.id))
    assert out["status"] == "scheduled"
    assert out["startTime"] == dt.time(14, 0)
    assert out["notes"] == "primo colloquio"
    assert out["psychologistId"] == psychologist.id


def test_appointment_conflicts_with_room_booking(psychologist, room, day):
    _booking(psychologist, room, day, "09:00", "10:00")
    with pytest.raises(BookingConflict):
        _appt(psychologist, room, day, "09:45", "10:15")
    assert count_rows(Appointment) == 0


def test_psychologist_cannot_be_in_two_rooms(psychologist, room, day):
    other = create_room({"name": "Sala 2", "capacity": 4})
    _appt(psychologist, room, day, "09:00", "10:00")
    with pytest.raises(BookingConflict):
        _appt(psychologist, other, day, "09:30", "10:30")


def test_canceled_appointment_frees_the_slot(psychologist, room, day):
    a = _appt(psychologist, room, day, "09:00", "10:00")
    assert cancel_appointment(a.id) is True
    assert cancel_appointment(a.id) is False
    assert check_room_availability(room.id, day, dt.time(9), dt.time(10))
    _appt(psychologist, room, day, "09:00", "10:00")


def test_other_day_or_room_does_not_conflict(psychologist, room, day, make_user):
    other_psy = create_psychologist({"userId": make_user().id, "hourlyRate": 120})
    other_room = create_room({"name": "Sala 2", "capacity": 4})
    _appt(psychologist, room, day, "09:00", "10:00")
    _appt(other_psy, other_room, day, "09:00", "10:00")
    _appt(psychologist, room, day + dt.timedelta(days=1), "09:00", "10:00")
    assert count_rows(Appointment) == 3


def test_end_before_start_is_invalid(psychologist, room, day):
    with pytest.raises(ValidationFailed):
        _appt(psychologist, room, day, "10:00", "09:00")
    with pytest.raises(ValidationFailed):
        _booking(psychologist, room, day, "10:00", "10:00")


def test_missing_room_is_reference_violation(psychologist, day):
    with pytest.raises(ReferenceViolation):
        create_appointment(
            {
                "patientName": "X",
                "psychologistId": psychologist.id,
                "roomId": 999,
                "date": day,
                "startTime": "09:00",
                "endTime": "10:00",
            }
        )


def test_update_rechecks_conflicts(psychologist, room, day):
    _appt(psychologist, room, day, "09:00", "10:00")
    b = _appt(psychologist, room, day, "11:00", "12:00")
    with pytest.raises(BookingConflict):
        update_appointment(b.id, {"startTime": "09:30", "endTime": "10:30"})
    # spostarsi dentro il proprio intervallo non è un conflitto
    moved = update_appointment(b.id, {"startTime": "11:15"})
    assert moved.start_time == dt.time(11, 15)
    with pytest.raises(ValidationFailed):
        update_appointment(b.id, {"endTime": "11:00"})


def test_update_room_booking_excludes_itself(psychologist, room, day):
    b = _booking(psychologist, room, day, "09:00", "10:00")
    update_room_booking(b.id, {"endTime": "10:30"})
    assert find_room_bookings_by_date(day)[0].end_time == dt.time(10, 30)


def test_pending_confirmation_status_round_trips(psychologist, room, day):
    a = _appt(psychologist, room, day, "09:00", "10:00", status="pending-confirmation")
    assert get_appointment(a.id).status is AppointmentStatus.PENDING_CONFIRMATION


def test_queries(psychologist, room, day):
    _appt(psychologist, room, day, "09:00", "10:00")
    _appt(psychologist, room, day + dt.timedelta(days=3), "09:00", "10:00")
    assert len(find_appointments_for_psychologist(psychologist.id)) == 2
    assert len(find_appointments_by_date_range(day, day + dt.timedelta(days=2))) == 1


def test_agenda_for_day(psychologist, room, day):
    _appt(psychologist, room, day, "11:00", "12:00", patientName="Bruno")
    _appt(psychologist, room, day, "09:00", "10:00", patientName="Carla")
    c = _appt(psychologist, room, day, "15:00", "16:00", patientName="Diego")
    cancel_appointment(c.id)
    rows = agenda_for_day(psychologist.id, day)
    assert [r["patientName"] for r in rows] == ["Carla", "Bruno"]
    assert rows[0]["room"] == "Sala 1"
    assert rows[0]["startTime"] == "09:00"


def test_delete_room_restricted(psychologist, room, day):
    _booking(psychologist, room, day, "09:00", "10:00")
    with pytest.raises(DeleteRestricted) as exc:
        delete_room(room.id)
    assert exc.value.blockers == {"room_bookings": 1}


def test_delete_appointment_restricted_by_transaction(psychologist, room, day):
    a = _appt(psychologist, room, day, "09:00", "10:00")
    create_transaction(
        {
            "description": "Seduta",
            "amount": "150.00",
            "type": "income",
            "category": "sedute",
            "date": day,
            "responsibleId": psychologist.user_id,
            "relatedAppointmentId": a.id,
        }
    )
    with pytest.raises(DeleteRestricted):
        delete_appointment(a.id)


def test_delete_missing_appointment_is_not_found():
    with pytest.raises(NotFound):
        delete_appointment(42)


def test_concurrent_overlapping_bookings_leave_one_row(psychologist, room, day):
    starts = ["09:00", "09:15", "09:30", "09:00", "09:45", "09:10", "09:20", "09:05"]
    outcomes = run_concurrently(lambda i: _booking(psychologist, room, day, starts[i], "10:30"))
    assert outcomes.count("ok") == 1
    assert set(outcomes) == {"ok", "BookingConflict"}
    assert count_rows(RoomBooking) == 1


def test_database_lock_is_reported_as_booking_conflict(psychologist, room, day, monkeypatch):
    def locked(s, b):
        raise OperationalError("INSERT INTO room_bookings ...", {}, Exception("database is locked"))

    monkeypatch.setattr(services, "_ensure_booking_slot", locked)
    with pytest.raises(BookingConflict):
        _booking(psychologist, room, day, "09:00", "10:00")
    assert count_rows(RoomBooking) == 0


def test_other_operational_errors_pass_through(psychologist, room, day, monkeypatch):
    def broken(s, b):
        raise OperationalError("SELECT ...", {}, Exception("no such table: room_bookings"))

    monkeypatch.setattr(services, "_ensure_booking_slot", broken)
    with pytest.raises(OperationalError):
        _booking(psychologist, room, day, "09:00", "10:00")


def test_bookings_for_room_and_read_schemas(psychologist, room, day):
    other = create_room({"name": "Sala 2", "capacity": 4, "squareMeters": 18})
    late = _booking(psychologist, room, day, "15:00", "16:00")
    early = _booking(psychologist, room, day, "08:00", "09:00")
    _booking(psychologist, other, day, "08:00", "09:00")
    assert [b.id for b in find_room_bookings_for_room(room.id)] == [early.id, late.id]

    out = record(RoomBookingOut, early)
    assert out["roomId"] == room.id
    assert out["startTime"] == dt.time(8, 0)
    assert out["purpose"] is None

    room_out = record(RoomOut, other)
    assert room_out["squareMeters"] == 18
    assert room_out["hasWifi"] is True
