"""Status transitions for existing appointments.

pending   -> confirmed | cancelled
confirmed -> cancelled | completed
cancelled, completed: terminal. A cancelled appointment can be rebooked,
which starts a new booking rather than reopening the old one.

Nothing is changed locally until the backend answers; the appointment in the
response replaces the known one.
"""
from __future__ import annotations
import datetime as dt
import logging
from collections import defaultdict
from .booking import BookingWorkflow
from .client import SchedulingAPI
from .dates import local_date_format
from .errors import ClinicError, TransitionError, ValidationError
from .models import Appointment, AppointmentStatus, BookingSeed, Role, Session
from .session import SessionManager

logger = logging.getLogger(__name__)

PENDING = AppointmentStatus.PENDING
CONFIRMED = AppointmentStatus.CONFIRMED
CANCELLED = AppointmentStatus.CANCELLED
COMPLETED = AppointmentStatus.COMPLETED

PROVIDER_TRANSITIONS = {
    PENDING: {CONFIRMED, CANCELLED},
    CONFIRMED: {CANCELLED, COMPLETED},
}
PATIENT_TRANSITIONS = {
    PENDING: {CANCELLED},
}


def allowed_transitions(appointment: Appointment, session: Session) -> set[AppointmentStatus]:
    """Statuses the signed-in user may request for ``appointment``."""
    if not session.authenticated or session.subject is None:
        return set()
    if session.role is Role.PROVIDER and appointment.doctor_id == session.subject:
        return set(PROVIDER_TRANSITIONS.get(appointment.status, ()))
    if session.role is Role.PATIENT and appointment.patient_id == session.subject:
        return set(PATIENT_TRANSITIONS.get(appointment.status, ()))
    return set()


def schedule_by_day(appointments: list[Appointment]) -> dict[str, list[Appointment]]:
    """Group appointments by the calendar day they are scheduled on."""
    days: dict[str, list[Appointment]] = defaultdict(list)
    for appointment in sorted(appointments, key=lambda a: a.scheduled_at.replace(tzinfo=None)):
        days[local_date_format(appointment.scheduled_at)].append(appointment)
    return dict(days)


class LifecycleController:
    def __init__(self, api: SchedulingAPI, session: SessionManager):
        self.api = api
        self.session = session
        self.appointments: dict[str, Appointment] = {}
        self.last_error: ClinicError | None = None

    def track(self, appointment: Appointment) -> Appointment:
        self.appointments[appointment.id] = appointment
        return appointment

    def get(self, appointment_id: str) -> Appointment:
        try:
            return self.appointments[str(appointment_id)]
        except KeyError:
            raise ValidationError(f"Unknown appointment {appointment_id}", ["appointment_id"]) from None

    async def refresh(self) -> list[Appointment]:
        """Load the signed-in user's appointments."""
        session = self.session.session
        async with self.session.authorized() as token:
            appointments = await self.api.list_my_appointments(token)
        if session.role is Role.PATIENT:
            # the patient's own list may omit patientId
            appointments = [
                a if a.patient_id else a.model_copy(update={"patient_id": session.subject})
                for a in appointments
            ]
        self.appointments = {a.id: a for a in appointments}
        return appointments

    def schedule(self) -> dict[str, list[Appointment]]:
        return schedule_by_day(list(self.appointments.values()))

    def _require(self, appointment: Appointment, target: AppointmentStatus, session: Session) -> None:
        if target not in allowed_transitions(appointment, session):
            role = session.role.value if session.role else "anonymous user"
            raise TransitionError(
                f"A {role} cannot move appointment {appointment.id} from {appointment.status.value} to {target.value}",
                ["status"],
            )

    async def _patch(
        self,
        appointment: Appointment,
        target: AppointmentStatus,
        cancellation_reason: str | None = None,
    ) -> Appointment:
        try:
            async with self.session.authorized() as token:
                updated = await self.api.update_status(token, appointment.id, target, cancellation_reason)
        except ClinicError as exc:
            logger.warning("Moving appointment %s to %s failed: %s", appointment.id, target.value, exc)
            self.last_error = exc
            raise
        self.last_error = None
        logger.info("Appointment %s is now %s", updated.id, updated.status.value)
        return self.track(updated)

    async def confirm(self, appointment_id: str) -> Appointment:
        session = self.session.session
        appointment = self.get(appointment_id)
        self._require(appointment, CONFIRMED, session)
        return await self._patch(appointment, CONFIRMED)

    async def complete(self, appointment_id: str) -> Appointment:
        session = self.session.session
        appointment = self.get(appointment_id)
        self._require(appointment, COMPLETED, session)
        return await self._patch(appointment, COMPLETED)

    async def cancel(self, appointment_id: str, reason: str | None = None) -> Appointment:
        """Providers must give a reason; a patient may cancel a pending one without."""
        session = self.session.session
        appointment = self.get(appointment_id)
        self._require(appointment, CANCELLED, session)

        if session.role is Role.PROVIDER:
            reason = (reason or "").strip()
            if not reason:
                raise ValidationError("A cancellation reason is required", ["reason"])
            return await self._patch(appointment, CANCELLED, reason)

        try:
            async with self.session.authorized() as token:
                await self.api.delete_appointment(token, appointment.id)
        except ClinicError as exc:
            logger.warning("Cancelling appointment %s failed: %s", appointment.id, exc)
            self.last_error = exc
            raise
        self.last_error = None
        # DELETE returns no body
        cancelled = appointment.model_copy(update={"status": CANCELLED, "cancellation_reason": None})
        logger.info("Appointment %s cancelled by patient", appointment.id)
        return self.track(cancelled)

    def rebook(self, appointment: Appointment, today: dt.date | None = None) -> BookingWorkflow:
        """Start a new booking with the cancelled appointment's doctor and reason."""
        if appointment.status is not CANCELLED:
            raise TransitionError(
                f"Only cancelled appointments can be rebooked; {appointment.id} is {appointment.status.value}",
                ["status"],
            )
        seed = BookingSeed(default_doctor_id=appointment.doctor_id, default_reason=appointment.reason)
        return BookingWorkflow(self.api, self.session, seed=seed, today=today)
