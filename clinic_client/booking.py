"""Booking wizard: doctor -> date -> slot -> submit.

Each slot fetch is tagged with the (doctor, date) pair and a sequence number
it was issued for. A response is applied only if it is still the latest fetch
when it arrives; anything older is dropped. There is no request cancellation,
a newer fetch simply supersedes the old one.
"""
from __future__ import annotations
import datetime as dt
import logging
from enum import Enum
from .client import SchedulingAPI
from .dates import local_day, normalize_slot_time
from .errors import ClinicError, ValidationError
from .models import Appointment, AppointmentDraft, BookingSeed, Doctor, Slot
from .session import SessionManager

logger = logging.getLogger(__name__)

SUBMISSION_FAILED_MESSAGE = "Could not create the appointment."

SlotKey = tuple[str, dt.date]


class BookingStep(str, Enum):
    SELECTING_DOCTOR = "selecting_doctor"
    SELECTING_DATE = "selecting_date"
    FETCHING_SLOTS = "fetching_slots"
    SLOTS_READY = "slots_ready"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    SUBMISSION_FAILED = "submission_failed"


class BookingWorkflow:
    def __init__(
        self,
        api: SchedulingAPI,
        session: SessionManager,
        seed: BookingSeed | None = None,
        today: dt.date | None = None,
    ):
        self.api = api
        self.session = session
        self.seed = seed or BookingSeed()
        self.step = BookingStep.SELECTING_DOCTOR
        self.doctors: list[Doctor] = []
        self.doctor_id: str | None = self.seed.default_doctor_id
        self.date: dt.date = today or dt.date.today()
        self.reason: str = self.seed.default_reason
        self.slots: list[Slot] = []
        self.slots_origin: SlotKey | None = None
        self.selected_slot: str | None = None
        self.appointment: Appointment | None = None
        self.last_error: ClinicError | None = None
        self._doctors_loaded = False
        self._fetch_seq = 0
        self._fetch_key: SlotKey | None = None

    @property
    def selection(self) -> SlotKey | None:
        if not self.doctor_id:
            return None
        return self.doctor_id, self.date

    @property
    def draft(self) -> AppointmentDraft:
        return AppointmentDraft(
            doctor_id=self.doctor_id,
            date=self.date,
            selected_slot_time=self.selected_slot,
            reason=self.reason,
        )

    @property
    def failure_reason(self) -> str | None:
        """What to show after a failed submission: the backend's words if it gave any."""
        if self.step is not BookingStep.SUBMISSION_FAILED or self.last_error is None:
            return None
        if self.last_error.status is not None and self.last_error.detail:
            return self.last_error.detail
        return SUBMISSION_FAILED_MESSAGE

    def _ensure_editable(self) -> None:
        if self.step is BookingStep.SUBMITTING:
            raise ValidationError("A submission is already in progress")
        if self.step is BookingStep.SUBMITTED:
            raise ValidationError("This booking was already submitted")

    async def load_doctors(self) -> list[Doctor]:
        """Fetch the doctor directory once; a failure can be retried."""
        if self._doctors_loaded:
            return self.doctors
        try:
            async with self.session.authorized() as token:
                doctors = await self.api.list_doctors(token)
        except ClinicError as exc:
            logger.warning("Loading doctors failed: %s", exc)
            if self.step is BookingStep.SELECTING_DOCTOR:
                self.last_error = exc
            raise
        self.doctors = doctors
        self._doctors_loaded = True
        if self.doctor_id is None and doctors:
            self.doctor_id = doctors[0].id
        # a late directory must not rewind a workflow that already moved on
        if self.step is BookingStep.SELECTING_DOCTOR:
            self.last_error = None
            if self.doctor_id is not None:
                self.step = BookingStep.SELECTING_DATE
        return doctors

    async def on_doctor_or_date_change(self, doctor_id: str, date: dt.date | dt.datetime) -> list[Slot] | None:
        """Make (doctor_id, date) the selection and fetch its slots.

        Returns the available slots, or None when the result was superseded by
        a newer selection before it arrived. Re-selecting the pair that is
        already current does not fetch again.
        """
        self._ensure_editable()
        if not doctor_id:
            raise ValidationError("A doctor must be selected", ["doctor_id"])
        key: SlotKey = (str(doctor_id), local_day(date))
        if key == self._fetch_key:
            return self.slots if self.slots_origin == key else None

        self.doctor_id, self.date = key
        self.slots = []
        self.slots_origin = None
        if self.selected_slot is not None:
            logger.debug("Selection changed; dropping slot %s", self.selected_slot)
            self.selected_slot = None
        self._fetch_seq += 1
        seq = self._fetch_seq
        self._fetch_key = key
        self.step = BookingStep.FETCHING_SLOTS

        try:
            async with self.session.authorized() as token:
                fetched = await self.api.list_slots(token, *key)
        except ClinicError as exc:
            if seq != self._fetch_seq:
                logger.debug("Ignoring failed slot fetch for superseded selection %s", key)
                return None
            self._fetch_key = None
            self.last_error = exc
            self.step = BookingStep.SELECTING_DATE
            raise

        if seq != self._fetch_seq:
            logger.debug("Discarding slots for superseded selection %s", key)
            return None
        self.slots = [slot for slot in fetched if slot.available]
        self.slots_origin = key
        self.last_error = None
        self.step = BookingStep.SLOTS_READY
        return self.slots

    async def select_doctor(self, doctor_id: str) -> list[Slot] | None:
        return await self.on_doctor_or_date_change(doctor_id, self.date)

    async def select_date(self, date: dt.date | dt.datetime) -> list[Slot] | None:
        if not self.doctor_id:
            raise ValidationError("A doctor must be selected", ["doctor_id"])
        return await self.on_doctor_or_date_change(self.doctor_id, date)

    async def reload_slots(self) -> list[Slot] | None:
        """Fetch the current pair again, e.g. after a slot was taken."""
        if self.selection is None:
            raise ValidationError("A doctor must be selected", ["doctor_id"])
        self._fetch_key = None
        return await self.on_doctor_or_date_change(*self.selection)

    def _is_offered(self, key: SlotKey | None, time: str) -> bool:
        return key is not None and key == self.slots_origin and any(slot.time == time for slot in self.slots)

    def select_slot(self, time: str) -> bool:
        """Select ``time`` if it is an available slot for the current selection."""
        if self.step in (BookingStep.SUBMITTING, BookingStep.SUBMITTED):
            return False
        try:
            time = normalize_slot_time(time)
        except ValueError:
            return False
        if not self._is_offered(self.selection, time):
            logger.debug("Ignoring selection of unavailable slot %s", time)
            return False
        self.selected_slot = time
        return True

    def set_reason(self, reason: str) -> None:
        self._ensure_editable()
        self.reason = reason

    async def submit(self, draft: AppointmentDraft | None = None) -> Appointment:
        """Create the appointment. Local validation runs before any request."""
        self._ensure_editable()
        draft = draft or self.draft
        missing = draft.missing_fields()
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}", missing)
        try:
            time = normalize_slot_time(draft.selected_slot_time)
        except ValueError as exc:
            raise ValidationError(str(exc), ["selected_slot_time"]) from exc
        if not self._is_offered((str(draft.doctor_id), draft.date), time):
            raise ValidationError(
                "Selected time is not an available slot for this doctor and date",
                ["selected_slot_time"],
            )

        self.step = BookingStep.SUBMITTING
        try:
            async with self.session.authorized() as token:
                appointment = await self.api.create_appointment(token, draft)
        except ClinicError as exc:
            logger.warning("Appointment submission failed: %s", exc)
            self.last_error = exc
            self.step = BookingStep.SUBMISSION_FAILED
            raise
        self.appointment = appointment
        self.last_error = None
        self.step = BookingStep.SUBMITTED
        logger.info("Created appointment %s for %s", appointment.id, draft.date)
        return appointment
