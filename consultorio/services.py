from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from .db import Base, db_session, engine
from .errors import BookingConflict, ConcurrentWrite, ValidationFailed, is_lock_error
from .models import (
    Appointment,
    AppointmentStatus,
    Psychologist,
    Room,
    RoomBooking,
    Transaction,
)
from .repository import apply_changes, flush, get_or_404, require_ref, restrict_delete
from .schemas import (
    AppointmentCreate,
    AppointmentUpdate,
    RoomBookingCreate,
    RoomBookingUpdate,
    RoomCreate,
    RoomUpdate,
    parse,
)

logger = logging.getLogger(__name__)


# =========================
# Bootstrap DB
# =========================
def init_db() -> None:
    """Crea le tabelle se non esistono (incluse quelle della cartella clinica)."""
    from . import patient_models  # noqa: F401  registra le tabelle nel metadata

    Base.metadata.create_all(bind=engine)


# =========================
# Sale
# =========================
def create_room(data: RoomCreate | Mapping[str, Any]) -> Room:
    payload = parse(RoomCreate, data)
    with db_session() as s:
        r = Room(**payload.model_dump())
        s.add(r)
        flush(s)
        return r


def get_room(room_id: int) -> Room | None:
    with db_session() as s:
        return s.get(Room, room_id)


def list_rooms() -> list[Room]:
    with db_session() as s:
        return list(s.scalars(select(Room).order_by(Room.name)))


def update_room(room_id: int, data: RoomUpdate | Mapping[str, Any]) -> Room:
    changes = parse(RoomUpdate, data).model_dump(exclude_unset=True)
    with db_session() as s:
        r = get_or_404(s, Room, room_id, "Sala")
        apply_changes(r, changes)
        flush(s)
        return r


def delete_room(room_id: int) -> None:
    with db_session() as s:
        r = get_or_404(s, Room, room_id, "Sala")
        restrict_delete(
            s,
            f"la sala {r.name}",
            {
                "appointments": Appointment.room_id == room_id,
                "room_bookings": RoomBooking.room_id == room_id,
            },
        )
        s.delete(r)
        flush(s)


# =========================
# Disponibilità
# =========================
def _lock(s: Session, model: type[Base], obj_id: int, field: str) -> None:
    """
    SELECT ... FOR UPDATE sulla riga padre: serializza le prenotazioni concorrenti
    sulla stessa sala / psicologo (su SQLite la serializzazione la fa il lock del DB).
    """
    row = s.execute(select(model.id).where(model.id == obj_id).with_for_update()).first()
    if row is None:
        require_ref(s, model, obj_id, field)


def _room_busy(
    s: Session,
    room_id: int,
    day: dt.date,
    start: dt.time,
    end: dt.time,
    skip_appointment: int | None = None,
    skip_booking: int | None = None,
) -> bool:
    """
    Sovrapposizione [start, end) con appuntamenti non annullati e prenotazioni
    della stessa sala nello stesso giorno. Intervalli adiacenti non collidono.
    """
    appt = select(Appointment.id).where(
        and_(
            Appointment.room_id == room_id,
            Appointment.date == day,
            Appointment.status != AppointmentStatus.CANCELED,
            Appointment.start_time < end,
            Appointment.end_time > start,
        )
    )
    if skip_appointment is not None:
        appt = appt.where(Appointment.id != skip_appointment)

    booking = select(RoomBooking.id).where(
        and_(
            RoomBooking.room_id == room_id,
            RoomBooking.date == day,
            RoomBooking.start_time < end,
            RoomBooking.end_time > start,
        )
    )
    if skip_booking is not None:
        booking = booking.where(RoomBooking.id != skip_booking)

    return s.execute(appt.limit(1)).first() is not None or s.execute(booking.limit(1)).first() is not None


def _psychologist_busy(
    s: Session,
    psychologist_id: int,
    day: dt.date,
    start: dt.time,
    end: dt.time,
    skip_appointment: int | None = None,
) -> bool:
    q = select(Appointment.id).where(
        and_(
            Appointment.psychologist_id == psychologist_id,
            Appointment.date == day,
            Appointment.status != AppointmentStatus.CANCELED,
            Appointment.start_time < end,
            Appointment.end_time > start,
        )
    )
    if skip_appointment is not None:
        q = q.where(Appointment.id != skip_appointment)
    return s.execute(q.limit(1)).first() is not None


def check_room_availability(
    room_id: int,
    day: dt.date,
    start: dt.time,
    end: dt.time,
    exclude_appointment_id: int | None = None,
    exclude_booking_id: int | None = None,
) -> bool:
    """True se la sala è libera nell'intervallo (sola lettura, nessun lock)."""
    with db_session() as s:
        return not _room_busy(
            s, room_id, day, start, end,
            skip_appointment=exclude_appointment_id,
            skip_booking=exclude_booking_id,
        )


def _ensure_appointment_slot(s: Session, a: Appointment) -> None:
    _lock(s, Room, a.room_id, "roomId")
    _lock(s, Psychologist, a.psychologist_id, "psychologistId")
    if a.status is AppointmentStatus.CANCELED:
        return
    if _room_busy(s, a.room_id, a.date, a.start_time, a.end_time, skip_appointment=a.id):
        logger.info("Appuntamento rifiutato: sala %s occupata il %s %s-%s", a.room_id, a.date, a.start_time, a.end_time)
        raise BookingConflict(f"Sala {a.room_id} occupata il {a.date} tra {a.start_time} e {a.end_time}.")
    if _psychologist_busy(s, a.psychologist_id, a.date, a.start_time, a.end_time, skip_appointment=a.id):
        logger.info("Appuntamento rifiutato: psicologo %s occupato il %s", a.psychologist_id, a.date)
        raise BookingConflict(
            f"Psicologo {a.psychologist_id} già impegnato il {a.date} tra {a.start_time} e {a.end_time}."
        )


def _ensure_booking_slot(s: Session, b: RoomBooking) -> None:
    _lock(s, Room, b.room_id, "roomId")
    require_ref(s, Psychologist, b.psychologist_id, "psychologistId")
    if _room_busy(s, b.room_id, b.date, b.start_time, b.end_time, skip_booking=b.id):
        logger.info("Prenotazione sala rifiutata: sala %s occupata il %s", b.room_id, b.date)
        raise BookingConflict(f"Sala {b.room_id} occupata il {b.date} tra {b.start_time} e {b.end_time}.")


@contextmanager
def _scheduling_session() -> Iterator[Session]:
    """
    db_session per le scritture su agenda e sale: se la transazione perde la corsa
    con un'altra prenotazione (lock del DB) il chiamante riceve BookingConflict.
    """
    try:
        with db_session() as s:
            yield s
    except ConcurrentWrite as e:
        logger.info("Prenotazione rifiutata per scrittura concorrente")
        raise BookingConflict(f"Fascia oraria contesa da un'altra prenotazione: {e}") from e
    except OperationalError as e:
        if not is_lock_error(e):
            raise
        logger.info("Prenotazione rifiutata per scrittura concorrente")
        raise BookingConflict(f"Fascia oraria contesa da un'altra prenotazione: {e.orig}") from e


def _check_range(start: dt.time, end: dt.time) -> None:
    if end <= start:
        raise ValidationFailed(
            "endTime deve essere successivo a startTime",
            errors=[{"loc": ("endTime",), "msg": "endTime <= startTime"}],
        )


# =========================
# Appuntamenti
# =========================
def create_appointment(data: AppointmentCreate | Mapping[str, Any]) -> Appointment:
    """
    Use case: fissare un appuntamento.
    - psicologo e sala devono esistere
    - nessuna sovrapposizione con la sala (appuntamenti + prenotazioni) né con l'agenda dello psicologo
    Controllo e inserimento avvengono nella stessa transazione.
    """
    payload = parse(AppointmentCreate, data)
    with _scheduling_session() as s:
        a = Appointment(**payload.model_dump())
        _ensure_appointment_slot(s, a)
        s.add(a)
        flush(s)
        return a


def get_appointment(appointment_id: int) -> Appointment | None:
    with db_session() as s:
        return s.get(Appointment, appointment_id)


def list_appointments() -> list[Appointment]:
    with db_session() as s:
        return list(s.scalars(select(Appointment).order_by(Appointment.date, Appointment.start_time)))


def find_appointments_for_psychologist(psychologist_id: int) -> list[Appointment]:
    with db_session() as s:
        q = (
            select(Appointment)
            .where(Appointment.psychologist_id == psychologist_id)
            .order_by(Appointment.date, Appointment.start_time)
        )
        return list(s.scalars(q))


def find_appointments_by_date(day: dt.date) -> list[Appointment]:
    with db_session() as s:
        q = select(Appointment).where(Appointment.date == day).order_by(Appointment.start_time)
        return list(s.scalars(q))


def find_appointments_by_date_range(start: dt.date, end: dt.date) -> list[Appointment]:
    """Estremi inclusi."""
    with db_session() as s:
        q = (
            select(Appointment)
            .where(and_(Appointment.date >= start, Appointment.date <= end))
            .order_by(Appointment.date, Appointment.start_time)
        )
        return list(s.scalars(q))


def update_appointment(appointment_id: int, data: AppointmentUpdate | Mapping[str, Any]) -> Appointment:
    """Aggiornamento parziale; se cambiano sala, psicologo, data, orari o stato ricontrolla i conflitti."""
    changes = parse(AppointmentUpdate, data).model_dump(exclude_unset=True)
    with _scheduling_session() as s:
        a = get_or_404(s, Appointment, appointment_id, "Appuntamento")
        apply_changes(a, changes)
        _check_range(a.start_time, a.end_time)
        if changes.keys() & {"room_id", "psychologist_id", "date", "start_time", "end_time", "status"}:
            _ensure_appointment_slot(s, a)
        flush(s)
        return a


def cancel_appointment(appointment_id: int) -> bool:
    """Use case: annullare. False se già annullato."""
    with db_session() as s:
        a = get_or_404(s, Appointment, appointment_id, "Appuntamento")
        if a.status is AppointmentStatus.CANCELED:
            return False
        a.status = AppointmentStatus.CANCELED
        return True


def delete_appointment(appointment_id: int) -> None:
    """RESTRICT sulle transazioni collegate, CASCADE sugli eventi calendario."""
    with db_session() as s:
        a = get_or_404(s, Appointment, appointment_id, "Appuntamento")
        restrict_delete(
            s,
            f"l'appuntamento {appointment_id}",
            {"transactions": Transaction.related_appointment_id == appointment_id},
        )
        s.delete(a)
        flush(s)


# =========================
# Prenotazioni sale
# =========================
def create_room_booking(data: RoomBookingCreate | Mapping[str, Any]) -> RoomBooking:
    payload = parse(RoomBookingCreate, data)
    with _scheduling_session() as s:
        b = RoomBooking(**payload.model_dump())
        _ensure_booking_slot(s, b)
        s.add(b)
        flush(s)
        return b


def get_room_booking(booking_id: int) -> RoomBooking | None:
    with db_session() as s:
        return s.get(RoomBooking, booking_id)


def list_room_bookings() -> list[RoomBooking]:
    with db_session() as s:
        return list(s.scalars(select(RoomBooking).order_by(RoomBooking.date, RoomBooking.start_time)))


def find_room_bookings_for_room(room_id: int) -> list[RoomBooking]:
    with db_session() as s:
        q = (
            select(RoomBooking)
            .where(RoomBooking.room_id == room_id)
            .order_by(RoomBooking.date, RoomBooking.start_time)
        )
        return list(s.scalars(q))


def find_room_bookings_by_date(day: dt.date) -> list[RoomBooking]:
    with db_session() as s:
        q = select(RoomBooking).where(RoomBooking.date == day).order_by(RoomBooking.start_time)
        return list(s.scalars(q))


def find_room_bookings_by_date_range(start: dt.date, end: dt.date) -> list[RoomBooking]:
    with db_session() as s:
        q = (
            select(RoomBooking)
            .where(and_(RoomBooking.date >= start, RoomBooking.date <= end))
            .order_by(RoomBooking.date, RoomBooking.start_time)
        )
        return list(s.scalars(q))


def update_room_booking(booking_id: int, data: RoomBookingUpdate | Mapping[str, Any]) -> RoomBooking:
    changes = parse(RoomBookingUpdate, data).model_dump(exclude_unset=True)
    with _scheduling_session() as s:
        b = get_or_404(s, RoomBooking, booking_id, "Prenotazione")
        apply_changes(b, changes)
        _check_range(b.start_time, b.end_time)
        if changes.keys() & {"room_id", "psychologist_id", "date", "start_time", "end_time"}:
            _ensure_booking_slot(s, b)
        flush(s)
        return b


def delete_room_booking(booking_id: int) -> None:
    with db_session() as s:
        b = get_or_404(s, RoomBooking, booking_id, "Prenotazione")
        s.delete(b)


# =========================
# Agenda
# =========================
def agenda_for_day(psychologist_id: int, day: dt.date) -> list[dict]:
    """
    Versione 'flat' dell'agenda giornaliera: dict camelCase con il nome della sala.
    Esclude gli appuntamenti annullati.
    """
    with db_session() as s:
        q = (
            select(
                Appointment.id,
                Appointment.patient_name,
                Appointment.start_time,
                Appointment.end_time,
                Appointment.status,
                Appointment.notes,
                Room.name.label("room_name"),
            )
            .join(Room, Room.id == Appointment.room_id)
            .where(
                and_(
                    Appointment.psychologist_id == psychologist_id,
                    Appointment.date == day,
                    Appointment.status != AppointmentStatus.CANCELED,
                )
            )
            .order_by(Appointment.start_time.asc())
        )
        rows = s.execute(q).all()
        return [
            {
                "id": r.id,
                "patientName": r.patient_name,
                "startTime": r.start_time.strftime("%H:%M"),
                "endTime": r.end_time.strftime("%H:%M"),
                "status": r.status.value,
                "notes": r.notes,
                "room": r.room_name,
            }
            for r in rows
        ]
