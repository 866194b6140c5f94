"""
Persistenza dell'integrazione Google Calendar: token OAuth per utente e
collegamento appuntamento <-> evento remoto. Nessuna chiamata alle API Google.
"""
from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta

from dotenv import load_dotenv
from sqlalchemy import delete, select

from .db import db_session
from .models import Appointment, CalendarEvent, GoogleToken, User, naive_utc
from .repository import flush, require_ref
from .schemas import CalendarEventCreate, GoogleTokenCreate, parse

load_dotenv()

logger = logging.getLogger(__name__)

# un token che scade entro questo margine va già rinnovato
REFRESH_MARGIN_SECONDS = int(os.getenv("GOOGLE_TOKEN_REFRESH_MARGIN_SECONDS", "60"))
DEFAULT_CALENDAR_ID = "primary"
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


# =========================
# Token OAuth
# =========================
def save_google_token(
    user_id: int,
    access_token: str,
    refresh_token: str | None = None,
    expiry_date: datetime | None = None,
    calendar_id: str | None = None,
    now: datetime | None = None,
) -> GoogleToken:
    """
    Upsert del token dell'utente (una sola riga per utente).
    - senza refresh_token nuovo si conserva quello salvato
    - senza expiry_date: now + 1 ora
    - calendario 'primary' se non indicato all'inserimento
    """
    now = naive_utc(now)
    payload = parse(
        GoogleTokenCreate,
        {
            "user_id": user_id,
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expiry_date": expiry_date or now + DEFAULT_TOKEN_LIFETIME,
            "calendar_id": calendar_id,
        },
    )
    with db_session() as s:
        require_ref(s, User, payload.user_id, "userId")
        existing = s.execute(select(GoogleToken).where(GoogleToken.user_id == payload.user_id)).scalar_one_or_none()
        if existing is None:
            t = GoogleToken(
                user_id=payload.user_id,
                access_token=payload.access_token,
                refresh_token=payload.refresh_token,
                expiry_date=payload.expiry_date,
                calendar_id=payload.calendar_id or DEFAULT_CALENDAR_ID,
            )
            s.add(t)
            flush(s)
            logger.info("Google Calendar collegato per utente %s", payload.user_id)
            return t

        existing.access_token = payload.access_token
        existing.expiry_date = payload.expiry_date
        if payload.refresh_token is not None:
            existing.refresh_token = payload.refresh_token
        if payload.calendar_id is not None:
            existing.calendar_id = payload.calendar_id
        flush(s)
        logger.debug("Token Google aggiornato per utente %s", payload.user_id)
        return existing


def get_google_token(user_id: int) -> GoogleToken | None:
    with db_session() as s:
        return s.execute(select(GoogleToken).where(GoogleToken.user_id == user_id)).scalar_one_or_none()


def delete_google_token(user_id: int) -> bool:
    """Scollega Google Calendar; False se l'utente non era collegato."""
    with db_session() as s:
        res = s.execute(delete(GoogleToken).where(GoogleToken.user_id == user_id))
        return res.rowcount > 0


def token_needs_refresh(token: GoogleToken, now: datetime | None = None, margin: timedelta | None = None) -> bool:
    if margin is None:
        margin = timedelta(seconds=REFRESH_MARGIN_SECONDS)
    return token.expiry_date <= naive_utc(now) + margin


def can_refresh(token: GoogleToken) -> bool:
    return bool(token.refresh_token)


# =========================
# Eventi collegati
# =========================
def link_calendar_event(
    appointment_id: int, google_event_id: str, user_id: int, now: datetime | None = None
) -> CalendarEvent:
    """
    Registra l'evento Google creato per l'appuntamento.
    Stessa coppia già presente: aggiorna solo lastSynced.
    Lo stesso evento su un altro appuntamento è un UniqueViolation.
    """
    payload = parse(
        CalendarEventCreate,
        {"appointment_id": appointment_id, "google_event_id": google_event_id, "user_id": user_id},
    )
    now = naive_utc(now)
    with db_session() as s:
        existing = s.execute(
            select(CalendarEvent).where(
                CalendarEvent.appointment_id == payload.appointment_id,
                CalendarEvent.google_event_id == payload.google_event_id,
            )
        ).scalar_one_or_none()
        if existing is not None:
            existing.last_synced = now
            return existing

        require_ref(s, Appointment, payload.appointment_id, "appointmentId")
        require_ref(s, User, payload.user_id, "userId")
        ev = CalendarEvent(**payload.model_dump(), last_synced=now)
        s.add(ev)
        flush(s)
        return ev


def touch_calendar_event(google_event_id: str, now: datetime | None = None) -> bool:
    with db_session() as s:
        ev = s.execute(
            select(CalendarEvent).where(CalendarEvent.google_event_id == google_event_id)
        ).scalar_one_or_none()
        if ev is None:
            return False
        ev.last_synced = naive_utc(now)
        return True


def get_calendar_event_for_appointment(appointment_id: int, user_id: int | None = None) -> CalendarEvent | None:
    with db_session() as s:
        q = select(CalendarEvent).where(CalendarEvent.appointment_id == appointment_id)
        if user_id is not None:
            q = q.where(CalendarEvent.user_id == user_id)
        return s.execute(q.order_by(CalendarEvent.id).limit(1)).scalar_one_or_none()


def unlink_calendar_event(google_event_id: str) -> bool:
    with db_session() as s:
        res = s.execute(delete(CalendarEvent).where(CalendarEvent.google_event_id == google_event_id))
        return res.rowcount > 0


def find_stale_calendar_events(older_than: timedelta, now: datetime | None = None) -> list[CalendarEvent]:
    """Eventi non sincronizzati da più di older_than."""
    cutoff = naive_utc(now) - older_than
    with db_session() as s:
        q = select(CalendarEvent).where(CalendarEvent.last_synced < cutoff).order_by(CalendarEvent.last_synced)
        return list(s.scalars(q))
