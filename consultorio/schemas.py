"""
Schemi Pydantic del modello dati.

Per ogni entità:
- XxxCreate : solo i campi che il chiamante può scrivere all'inserimento
              (mai id, timestamp o campi calcolati)
- XxxUpdate : stessi campi, tutti opzionali (aggiornamento parziale)
- XxxOut    : record completo letto dal DB

Lato applicazione i nomi sono camelCase (fullName), sul DB snake_case (full_name):
la conversione è quella di pydantic.alias_generators.
"""
from __future__ import annotations

import datetime as dt
import math
from collections.abc import Mapping
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Annotated, Any, TypeVar

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    EmailStr,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .errors import ValidationFailed
from .models import AppointmentStatus, InvoiceStatus, TransactionType, UserRole, UserStatus, naive_utc


REFERENCE_MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"
INVOICE_MIME_TYPES = frozenset({"application/pdf", "image/jpeg", "image/jpg", "image/png"})
INVOICE_MAX_BYTES = 5 * 1024 * 1024
PASSWORD_MIN_LENGTH = 6


def _coerce_decimal(value: Any) -> Any:
    """
    Accetta "150.00" oppure 150.0; una stringa malformata è un errore, mai NaN.
    I float si arrotondano al centesimo (0.1 + 0.2 -> 0.30), le stringhe no.
    """
    if isinstance(value, bool):
        raise ValueError("valore numerico non valido")
    if isinstance(value, str):
        try:
            parsed = Decimal(value.strip())
        except InvalidOperation:
            raise ValueError(f"valore numerico non valido: {value!r}") from None
        if not parsed.is_finite():
            raise ValueError(f"valore numerico non valido: {value!r}")
        return parsed
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError("valore numerico non valido")
        try:
            return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        except InvalidOperation:
            raise ValueError(f"valore numerico fuori scala: {value!r}") from None
    return value


Money = Annotated[Decimal, BeforeValidator(_coerce_decimal), Field(max_digits=10, decimal_places=2)]
UtcDateTime = Annotated[datetime, AfterValidator(naive_utc)]
Text = Annotated[str, Field(min_length=1)]


class Schema(BaseModel):
    # i campi non scrivibili (id, createdAt, ...) vengono scartati, non scritti
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True, use_enum_values=True
    )


S = TypeVar("S", bound=BaseModel)


def parse(schema: type[S], data: S | Mapping[str, Any]) -> S:
    """Valida un dict (chiavi camelCase o snake_case) con lo schema indicato."""
    if isinstance(data, schema):
        return data
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        raise ValidationFailed(
            f"Dati non validi per {schema.__name__}: {e.error_count()} errori",
            errors=e.errors(include_url=False, include_context=False),
        ) from e


def record(schema: type[Record], obj: Any) -> dict[str, Any]:
    """Riga ORM -> dict camelCase."""
    return schema.model_validate(obj).model_dump(by_alias=True)


def _check_time_range(start: dt.time | None, end: dt.time | None) -> None:
    if start is not None and end is not None and end <= start:
        raise ValueError("endTime deve essere successivo a startTime")


# =========================
# Utenti
# =========================
class UserCreate(Schema):
    username: Text
    password: str | None = Field(default=None, min_length=PASSWORD_MIN_LENGTH)
    email: EmailStr
    full_name: Text
    role: UserRole = UserRole.PSYCHOLOGIST
    status: UserStatus = UserStatus.ACTIVE
    profile_image: str | None = None
    google_id: str | None = None
    avatar_url: str | None = None

    @field_validator("username", "email")
    @classmethod
    def _normalize(cls, v: str) -> str:
        return v.strip().lower()


class UserUpdate(Schema):
    username: Text | None = None
    password: str | None = Field(default=None, min_length=PASSWORD_MIN_LENGTH)
    email: EmailStr | None = None
    full_name: Text | None = None
    role: UserRole | None = None
    status: UserStatus | None = None
    profile_image: str | None = None
    google_id: str | None = None
    avatar_url: str | None = None

    @field_validator("username", "email")
    @classmethod
    def _normalize(cls, v: str | None) -> str | None:
        return v.strip().lower() if v is not None else None


class UserOut(Record):
    id: int
    username: str
    email: str
    full_name: str
    role: UserRole
    status: UserStatus
    profile_image: str | None = None
    google_id: str | None = None
    avatar_url: str | None = None


class PsychologistCreate(Schema):
    user_id: int
    specialization: str | None = None
    bio: str | None = None
    hourly_rate: Money = Field(ge=0)


class PsychologistUpdate(Schema):
    specialization: str | None = None
    bio: str | None = None
    hourly_rate: Money | None = Field(default=None, ge=0)


class PsychologistOut(Record):
    id: int
    user_id: int
    specialization: str | None = None
    bio: str | None = None
    hourly_rate: Decimal


# =========================
# Sale e agenda
# =========================
class RoomCreate(Schema):
    name: Text
    capacity: int = Field(gt=0)
    has_wifi: bool = True
    has_air_conditioning: bool = True
    square_meters: int | None = Field(default=None, ge=0)
    image_url: str | None = None


class RoomUpdate(Schema):
    name: Text | None = None
    capacity: int | None = Field(default=None, gt=0)
    has_wifi: bool | None = None
    has_air_conditioning: bool | None = None
    square_meters: int | None = Field(default=None, ge=0)
    image_url: str | None = None


class RoomOut(Record):
    id: int
    name: str
    capacity: int
    has_wifi: bool
    has_air_conditioning: bool
    square_meters: int | None = None
    image_url: str | None = None


class AppointmentCreate(Schema):
    patient_name: Text
    psychologist_id: int
    room_id: int
    date: dt.date
    start_time: dt.time
    end_time: dt.time
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    notes: str | None = None

    @model_validator(mode="after")
    def _time_range(self) -> "AppointmentCreate":
        _check_time_range(self.start_time, self.end_time)
        return self


class AppointmentUpdate(Schema):
    patient_name: Text | None = None
    psychologist_id: int | None = None
    room_id: int | None = None
    date: dt.date | None = None
    start_time: dt.time | None = None
    end_time: dt.time | None = None
    status: AppointmentStatus | None = None
    notes: str | None = None


class AppointmentOut(Record):
    id: int
    patient_name: str
    psychologist_id: int
    room_id: int
    date: dt.date
    start_time: dt.time
    end_time: dt.time
    status: AppointmentStatus
    notes: str | None = None


class RoomBookingCreate(Schema):
    room_id: int
    psychologist_id: int
    date: dt.date
    start_time: dt.time
    end_time: dt.time
    purpose: str | None = None

    @model_validator(mode="after")
    def _time_range(self) -> "RoomBookingCreate":
        _check_time_range(self.start_time, self.end_time)
        return self


class RoomBookingUpdate(Schema):
    room_id: int | None = None
    psychologist_id: int | None = None
    date: dt.date | None = None
    start_time: dt.time | None = None
    end_time: dt.time | None = None
    purpose: str | None = None


class RoomBookingOut(Record):
    id: int
    room_id: int
    psychologist_id: int
    date: dt.date
    start_time: dt.time
    end_time: dt.time
    purpose: str | None = None


# =========================
# Finanze
# =========================
class TransactionCreate(Schema):
    description: Text
    amount: Money = Field(gt=0)
    type: TransactionType
    category: Text
    date: dt.date
    responsible_id: int
    related_appointment_id: int | None = None


class TransactionUpdate(Schema):
    description: Text | None = None
    amount: Money | None = Field(default=None, gt=0)
    type: TransactionType | None = None
    category: Text | None = None
    date: dt.date | None = None
    related_appointment_id: int | None = None


class TransactionOut(Record):
    id: int
    description: str
    amount: Decimal
    type: TransactionType
    category: str
    date: dt.date
    responsible_id: int
    related_appointment_id: int | None = None


class InvoiceCreate(Schema):
    user_id: int
    reference_month: str = Field(pattern=REFERENCE_MONTH_PATTERN)
    file_path: Text
    original_filename: Text
    mime_type: str
    file_size: int = Field(ge=0, le=INVOICE_MAX_BYTES)
    status: InvoiceStatus = InvoiceStatus.ENVIADA

    @field_validator("mime_type")
    @classmethod
    def _mime(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in INVOICE_MIME_TYPES:
            raise ValueError("sono ammessi solo PDF, JPG e PNG")
        return v


class InvoiceOut(Record):
    id: int
    user_id: int
    reference_month: str
    file_path: str
    original_filename: str
    mime_type: str
    file_size: int
    status: InvoiceStatus
    created_at: datetime
    updated_at: datetime


# =========================
# Permessi
# =========================
class PermissionCreate(Schema):
    name: Text
    description: str | None = None


class PermissionUpdate(Schema):
    name: Text | None = None
    description: str | None = None


class PermissionOut(Record):
    id: int
    name: str
    description: str | None = None


class RolePermissionCreate(Schema):
    role: UserRole
    permission_id: int


class RolePermissionOut(Record):
    id: int
    role: UserRole
    permission_id: int


# =========================
# Integrazioni e token
# =========================
class GoogleTokenCreate(Schema):
    user_id: int
    access_token: Text
    refresh_token: str | None = None
    expiry_date: UtcDateTime
    calendar_id: str | None = None


class GoogleTokenOut(Record):
    id: int
    user_id: int
    access_token: str
    refresh_token: str | None = None
    expiry_date: datetime
    calendar_id: str | None = None
    created_at: datetime
    updated_at: datetime


class CalendarEventCreate(Schema):
    appointment_id: int
    google_event_id: Text
    user_id: int


class CalendarEventOut(Record):
    id: int
    appointment_id: int
    google_event_id: str
    user_id: int
    last_synced: datetime


class PasswordResetTokenCreate(Schema):
    user_id: int
    token: str = Field(min_length=16)
    expires_at: UtcDateTime
    used: bool = False


class PasswordResetTokenOut(Record):
    id: int
    user_id: int
    token: str
    expires_at: datetime
    used: bool
    created_at: datetime
