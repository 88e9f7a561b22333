import asyncio
import datetime as dt
import json
import pathlib
import jwt
import pytest
from clinic_client.dates import wall_clock_timestamp
from clinic_client.models import Appointment, AppointmentStatus, AvailabilityWindow, Doctor, Preference, Slot
from clinic_client.session import SessionManager
from clinic_client.store import MemoryCredentialStore

FIX = pathlib.Path(__file__).parent / "fixtures"
BASE = "https://clinic.test/api"


def load_fixture(name: str):
    return json.loads((FIX / name).read_text())


def make_token(sub: str = "p1", role: str | None = "patient", secret: str = "test-secret") -> str:
    claims = {"sub": sub}
    if role is not None:
        claims["role"] = role
    return jwt.encode(claims, secret, algorithm="HS256")


async def settle() -> None:
    """Let pending tasks run up to their next real suspension point."""
    for _ in range(5):
        await asyncio.sleep(0)


class BrokenStore(MemoryCredentialStore):
    """Credential store whose calls can be made to blow up."""

    def __init__(self, initial=None, fail_get=False, fail_set=False, fail_remove=False):
        super().__init__(initial)
        self.fail_get = fail_get
        self.fail_set = fail_set
        self.fail_remove = fail_remove

    async def get(self, key):
        if self.fail_get:
            raise OSError("disk unreadable")
        return await super().get(key)

    async def set(self, key, value):
        if self.fail_set:
            raise OSError("disk full")
        await super().set(key, value)

    async def remove(self, key):
        if self.fail_remove:
            raise OSError("read-only filesystem")
        await super().remove(key)


class FakeAPI:
    """Stands in for SchedulingAPI; records calls and can hold some of them at a gate."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.doctors = [Doctor(id="D1", display_name="Dr. One"), Doctor(id="D2", display_name="Dr. Two")]
        self.slots: dict[tuple, list[Slot]] = {}
        self.gates: dict[object, asyncio.Event] = {}
        self.preference = Preference.LIGHT
        self.fail: dict[str, Exception] = {}
        self.appointments: list[Appointment] = []
        self.availability: list[AvailabilityWindow] = []
        self.status_response: Appointment | None = None
        self.login_token = make_token()

    def _record(self, name, *args):
        self.calls.append((name, *args))
        exc = self.fail.get(name)
        if exc is not None:
            raise exc

    def called(self, name):
        return [call for call in self.calls if call[0] == name]

    async def login(self, username, password):
        self._record("login", username)
        return self.login_token

    async def get_preference(self, token):
        self._record("get_preference")
        return self.preference

    async def put_preference(self, token, preference):
        self._record("put_preference", preference)
        self.preference = preference
        return preference

    async def list_doctors(self, token):
        gate = self.gates.get("list_doctors")
        if gate is not None:
            await gate.wait()
        self._record("list_doctors")
        return list(self.doctors)

    async def list_slots(self, token, doctor_id, day):
        key = (doctor_id, day)
        self.calls.append(("list_slots", doctor_id, day))
        gate = self.gates.get(key)
        if gate is not None:
            await gate.wait()
        exc = self.fail.get("list_slots")
        if exc is not None:
            raise exc
        return list(self.slots.get(key, []))

    async def create_appointment(self, token, draft):
        self._record("create_appointment", draft)
        return Appointment(
            id="A1",
            doctor_id=draft.doctor_id,
            patient_id="p1",
            scheduled_at=dt.datetime.fromisoformat(wall_clock_timestamp(draft.date, draft.selected_slot_time)),
            reason=draft.reason,
        )

    async def update_status(self, token, appointment_id, status, cancellation_reason=None):
        self._record("update_status", appointment_id, status, cancellation_reason)
        return self.status_response

    async def delete_appointment(self, token, appointment_id):
        self._record("delete_appointment", appointment_id)

    async def list_my_appointments(self, token):
        self._record("list_my_appointments")
        return list(self.appointments)

    async def register(self, full_name, email, password, phone=""):
        self._record("register", email)

    async def change_password(self, token, old_password, new_password):
        self._record("change_password", old_password, new_password)
        return "Password updated"

    async def get_availability(self, token):
        self._record("get_availability")
        return list(self.availability)

    async def set_availability(self, token, windows):
        self._record("set_availability", windows)
        self.availability = list(windows)


async def signed_in(api, sub="p1", role="patient", store=None) -> SessionManager:
    manager = SessionManager(store or MemoryCredentialStore(), api, device_preference=lambda: Preference.LIGHT)
    await manager.bootstrap()
    await manager.sign_in(make_token(sub, role))
    return manager


def appointment(status=AppointmentStatus.PENDING, doctor_id="d1", patient_id="p1", **extra) -> Appointment:
    data = {
        "id": "A7",
        "doctor_id": doctor_id,
        "patient_id": patient_id,
        "scheduled_at": dt.datetime(2024, 3, 10, 9, 0),
        "reason": "checkup",
        "status": status,
    }
    data.update(extra)
    return Appointment(**data)


@pytest.fixture
def fake_api():
    return FakeAPI()
