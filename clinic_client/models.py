from __future__ import annotations
import datetime as dt
from enum import Enum
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from .dates import normalize_slot_time


class Role(str, Enum):
    PATIENT = "patient"
    PROVIDER = "provider"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: object) -> "Role | None":
        """Map a role claim to a Role; unknown or missing values give None."""
        if isinstance(value, dict):
            value = value.get("name")
        if not isinstance(value, str):
            return None
        return _ROLE_ALIASES.get(value.strip().lower())


_ROLE_ALIASES = {
    "patient": Role.PATIENT,
    "paciente": Role.PATIENT,
    "provider": Role.PROVIDER,
    "doctor": Role.PROVIDER,
    "medico": Role.PROVIDER,
    "médico": Role.PROVIDER,
    "admin": Role.ADMIN,
}


class Preference(str, Enum):
    LIGHT = "light"
    DARK = "dark"

    @property
    def dark_mode(self) -> bool:
        return self is Preference.DARK

    @classmethod
    def from_dark_mode(cls, dark_mode: bool) -> "Preference":
        return cls.DARK if dark_mode else cls.LIGHT

    def toggled(self) -> "Preference":
        return Preference.LIGHT if self is Preference.DARK else Preference.DARK


class LoadingPhase(str, Enum):
    RESTORING = "restoring"
    READY = "ready"


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    @property
    def status_id(self) -> int:
        return STATUS_IDS[self]


STATUS_IDS = {
    AppointmentStatus.PENDING: 1,
    AppointmentStatus.CONFIRMED: 2,
    AppointmentStatus.CANCELLED: 3,
    AppointmentStatus.COMPLETED: 4,
}
_STATUS_BY_ID = {v: k for k, v in STATUS_IDS.items()}
_STATUS_ALIASES = {
    "pendiente": "pending",
    "confirmada": "confirmed",
    "cancelada": "cancelled",
    "canceled": "cancelled",
    "completada": "completed",
}


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python; either is accepted."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )


class Session(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str | None = None
    role: Role | None = None
    subject: str | None = None  # "sub" claim, the signed-in user's id
    preference: Preference = Preference.LIGHT
    phase: LoadingPhase = LoadingPhase.RESTORING

    @property
    def authenticated(self) -> bool:
        return self.token is not None


class Doctor(WireModel):
    id: str
    display_name: str = Field(
        default="",
        validation_alias=AliasChoices("displayName", "display_name", "full_name"),
    )


class Slot(WireModel):
    time: str  # HH:MM, clinic local time
    available: bool = Field(validation_alias=AliasChoices("available", "is_available"))

    @field_validator("time", mode="before")
    @classmethod
    def _normalize_time(cls, value: object) -> object:
        return normalize_slot_time(value) if isinstance(value, str) else value


class AppointmentDraft(WireModel):
    doctor_id: str | None = None
    date: dt.date | None = None
    selected_slot_time: str | None = None
    reason: str = ""

    def missing_fields(self) -> list[str]:
        missing = []
        if not self.doctor_id:
            missing.append("doctor_id")
        if self.date is None:
            missing.append("date")
        if not self.selected_slot_time:
            missing.append("selected_slot_time")
        if not self.reason.strip():
            missing.append("reason")
        return missing


class BookingSeed(WireModel):
    default_doctor_id: str | None = None
    default_reason: str = ""


class Appointment(WireModel):
    id: str
    doctor_id: str
    patient_id: str | None = None
    scheduled_at: dt.datetime = Field(
        validation_alias=AliasChoices("scheduledAt", "scheduled_at", "appointment_date"),
    )
    reason: str = ""
    status: AppointmentStatus = AppointmentStatus.PENDING
    cancellation_reason: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_parties(cls, data: object) -> object:
        # older payloads nest {"doctor": {"id": ..}} instead of doctorId
        if isinstance(data, dict):
            data = dict(data)
            for party in ("doctor", "patient"):
                nested = data.get(party)
                key = f"{party}Id"
                if isinstance(nested, dict) and key not in data and f"{party}_id" not in data:
                    data[key] = nested.get("id")
        return data

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: object) -> object:
        if isinstance(value, dict):
            value = value.get("name", value.get("id"))
        if isinstance(value, int) and not isinstance(value, bool):
            if value not in _STATUS_BY_ID:
                raise ValueError(f"unknown status id {value}")
            return _STATUS_BY_ID[value]
        if isinstance(value, str):
            value = value.strip().lower()
            return _STATUS_ALIASES.get(value, value)
        return value

    @model_validator(mode="after")
    def _reason_only_when_cancelled(self) -> "Appointment":
        if self.status is not AppointmentStatus.CANCELLED and self.cancellation_reason is not None:
            self.cancellation_reason = None
        return self


class AvailabilityWindow(WireModel):
    """One weekday of a provider's working hours. Monday is day 0."""

    day_of_week: int = Field(ge=0, le=6, validation_alias=AliasChoices("dayOfWeek", "day_of_week"))
    start_time: str = Field(validation_alias=AliasChoices("startTime", "start_time"))
    end_time: str = Field(validation_alias=AliasChoices("endTime", "end_time"))

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _normalize_time(cls, value: object) -> object:
        # stored as HH:MM:SS by the backend
        return normalize_slot_time(value) if isinstance(value, str) else value

    @model_validator(mode="after")
    def _ends_after_start(self) -> "AvailabilityWindow":
        if self.end_time <= self.start_time:
            raise ValueError(f"end_time {self.end_time} must be after start_time {self.start_time}")
        return self

    def covers(self, time: str) -> bool:
        return self.start_time <= normalize_slot_time(time) < self.end_time
