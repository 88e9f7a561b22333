"""In-memory stand-in for the clinic scheduling API.

Serves the same routes the client consumes, with demo users and doctors, so
the client can be exercised offline:

    uvicorn clinic_client.sandbox:app --port 8000
"""
from __future__ import annotations
import datetime as dt
import itertools
from contextlib import asynccontextmanager
import jwt
from fastapi import Depends, FastAPI, HTTPException, Query, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel
from . import config
from .dates import local_date_format, parse_local_date
from .models import STATUS_IDS, Appointment, AppointmentStatus, AvailabilityWindow, Doctor, Role, Slot, WireModel

SLOT_TIMES = ["09:00", "09:30", "10:00", "10:30", "11:00", "11:30"]

DEMO_USERS = {
    "ana@clinic.test": {"password": "secret", "sub": "p1", "role": "patient"},
    "luis@clinic.test": {"password": "secret", "sub": "p2", "role": "patient"},
    "ruiz@clinic.test": {"password": "secret", "sub": "d1", "role": "provider"},
    "soto@clinic.test": {"password": "secret", "sub": "d2", "role": "provider"},
    "admin@clinic.test": {"password": "secret", "sub": "a1", "role": "admin"},
}
DEMO_DOCTORS = [
    Doctor(id="d1", display_name="Dr. Elena Ruiz"),
    Doctor(id="d2", display_name="Dr. Marco Soto"),
]

_STATUS_BY_ID = {v: k for k, v in STATUS_IDS.items()}
_PROVIDER_MOVES = {
    AppointmentStatus.PENDING: {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED},
    AppointmentStatus.CONFIRMED: {AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED},
}
_ACTIVE = {AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED}


class AppointmentIn(WireModel):
    doctor_id: str
    reason: str
    scheduled_at: str


class StatusIn(WireModel):
    status_id: int
    cancellation_reason: str | None = None


class PreferenceIn(WireModel):
    dark_mode: bool


class RegisterIn(BaseModel):
    full_name: str
    email: str
    password: str
    phone: str = ""


class PasswordChangeIn(BaseModel):
    old_password: str
    new_password: str


class AvailabilityIn(BaseModel):
    day_of_week: int
    start_time: str
    end_time: str


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.configure_logging()
    yield


def create_access_token(sub: str, role: str, secret: str, expires_minutes: int = 60) -> str:
    now = dt.datetime.now(dt.timezone.utc)
    payload = {"sub": sub, "role": role, "iat": now, "exp": now + dt.timedelta(minutes=expires_minutes)}
    return jwt.encode(payload, secret, algorithm="HS256")


def create_app(secret: str | None = None) -> FastAPI:
    secret = secret or config.SANDBOX_SECRET
    app = FastAPI(title="Clinic Scheduling Sandbox", lifespan=lifespan)
    users = {email: dict(user) for email, user in DEMO_USERS.items()}
    appointments: dict[str, Appointment] = {}
    preferences: dict[str, bool] = {}
    availability: dict[str, dict[int, AvailabilityWindow]] = {}
    ids = itertools.count(1)
    user_ids = itertools.count(1)
    auth_scheme = HTTPBearer(auto_error=False)

    app.state.users = users
    app.state.appointments = appointments
    app.state.preferences = preferences
    app.state.availability = availability

    def current_user(credentials: HTTPAuthorizationCredentials | None = Depends(auth_scheme)) -> dict:
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise HTTPException(status_code=401, detail="Not authenticated")
        try:
            return jwt.decode(credentials.credentials, secret, algorithms=["HS256"])
        except jwt.PyJWTError as exc:
            raise HTTPException(status_code=401, detail="Invalid token") from exc

    def current_provider(user: dict = Depends(current_user)) -> dict:
        if Role.parse(user.get("role")) is not Role.PROVIDER:
            raise HTTPException(status_code=409, detail="Only providers have a weekly schedule")
        return user

    def offered_times(doctor_id: str, day: dt.date) -> list[str]:
        week = availability.get(doctor_id)
        if week is None:
            # no schedule saved yet: Monday to Saturday, mornings
            return [] if day.weekday() == 6 else list(SLOT_TIMES)
        window = week.get(day.weekday())
        if window is None:
            return []
        return [time for time in SLOT_TIMES if window.covers(time)]

    def taken(doctor_id: str, when: dt.datetime) -> bool:
        return any(
            a.doctor_id == doctor_id and a.scheduled_at == when and a.status in _ACTIVE
            for a in appointments.values()
        )

    def find(appointment_id: str) -> Appointment:
        if appointment_id not in appointments:
            raise HTTPException(status_code=404, detail="Appointment not found")
        return appointments[appointment_id]

    def dump(appointment: Appointment) -> dict:
        return appointment.model_dump(mode="json", by_alias=True)

    @app.post("/auth/login")
    async def login(form_data: OAuth2PasswordRequestForm = Depends()):
        user = users.get(form_data.username)
        if user is None or user["password"] != form_data.password:
            raise HTTPException(status_code=401, detail="Incorrect email or password")
        return {"access_token": create_access_token(user["sub"], user["role"], secret), "token_type": "bearer"}

    @app.post("/auth/register", status_code=201)
    async def register(body: RegisterIn):
        if body.email in users:
            raise HTTPException(status_code=409, detail="Email already registered")
        sub = f"u{next(user_ids)}"
        users[body.email] = {"password": body.password, "sub": sub, "role": "patient", "full_name": body.full_name}
        return {"id": sub, "email": body.email, "full_name": body.full_name}

    @app.put("/users/me/change-password")
    async def change_password(body: PasswordChangeIn, user: dict = Depends(current_user)):
        account = next((u for u in users.values() if u["sub"] == user["sub"]), None)
        if account is None:
            raise HTTPException(status_code=404, detail="User not found")
        if account["password"] != body.old_password:
            raise HTTPException(status_code=400, detail="Incorrect current password")
        account["password"] = body.new_password
        return {"detail": "Password updated"}

    @app.get("/doctors")
    async def list_doctors(user: dict = Depends(current_user)):
        return [d.model_dump(by_alias=True) for d in DEMO_DOCTORS]

    @app.get("/slots")
    async def list_slots(
        doctor_id: str = Query(..., alias="doctorId"),
        date: str = Query(..., description="YYYY-MM-DD"),
        user: dict = Depends(current_user),
    ):
        try:
            day = parse_local_date(date)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        slots = []
        for time in offered_times(doctor_id, day):
            when = dt.datetime.fromisoformat(f"{local_date_format(day)}T{time}:00")
            slots.append(Slot(time=time, available=not taken(doctor_id, when)).model_dump(by_alias=True))
        return slots

    @app.post("/appointments", status_code=201)
    async def create_appointment(body: AppointmentIn, user: dict = Depends(current_user)):
        if body.doctor_id not in {d.id for d in DEMO_DOCTORS}:
            raise HTTPException(status_code=404, detail="Doctor not found")
        try:
            when = dt.datetime.fromisoformat(body.scheduled_at)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail="scheduledAt must be YYYY-MM-DDTHH:MM:SS") from exc
        if when.tzinfo is not None:
            raise HTTPException(status_code=422, detail="scheduledAt must not carry a UTC offset")
        if when.strftime("%H:%M") not in offered_times(body.doctor_id, when.date()) or taken(body.doctor_id, when):
            raise HTTPException(status_code=409, detail="Slot already taken")
        appointment = Appointment(
            id=str(next(ids)),
            doctor_id=body.doctor_id,
            patient_id=user["sub"],
            scheduled_at=when,
            reason=body.reason,
        )
        appointments[appointment.id] = appointment
        return dump(appointment)

    @app.get("/appointments/me")
    async def my_appointments(user: dict = Depends(current_user)):
        field = "doctor_id" if Role.parse(user.get("role")) is Role.PROVIDER else "patient_id"
        mine = [a for a in appointments.values() if getattr(a, field) == user["sub"]]
        return [dump(a) for a in sorted(mine, key=lambda a: a.scheduled_at)]

    @app.patch("/appointments/{appointment_id}/status")
    async def update_status(appointment_id: str, body: StatusIn, user: dict = Depends(current_user)):
        appointment = find(appointment_id)
        if Role.parse(user.get("role")) is not Role.PROVIDER or appointment.doctor_id != user["sub"]:
            raise HTTPException(status_code=409, detail="Only the appointment's doctor can change its status")
        target = _STATUS_BY_ID.get(body.status_id)
        if target is None:
            raise HTTPException(status_code=422, detail=f"Unknown status id {body.status_id}")
        if target not in _PROVIDER_MOVES.get(appointment.status, set()):
            raise HTTPException(
                status_code=409,
                detail=f"Cannot move appointment from {appointment.status.value} to {target.value}",
            )
        reason = (body.cancellation_reason or "").strip()
        if target is AppointmentStatus.CANCELLED and not reason:
            raise HTTPException(status_code=422, detail="cancellationReason is required")
        updated = appointment.model_copy(
            update={"status": target, "cancellation_reason": reason if target is AppointmentStatus.CANCELLED else None}
        )
        appointments[appointment_id] = updated
        return dump(updated)

    @app.delete("/appointments/{appointment_id}", status_code=204)
    async def cancel_appointment(appointment_id: str, user: dict = Depends(current_user)):
        appointment = find(appointment_id)
        if appointment.patient_id != user["sub"]:
            raise HTTPException(status_code=409, detail="Not your appointment")
        if appointment.status is not AppointmentStatus.PENDING:
            raise HTTPException(status_code=409, detail="Only pending appointments can be cancelled")
        appointments[appointment_id] = appointment.model_copy(update={"status": AppointmentStatus.CANCELLED})
        return Response(status_code=204)

    @app.get("/preferences/me")
    async def get_preferences(user: dict = Depends(current_user)):
        return {"darkMode": preferences.get(user["sub"], False)}

    @app.put("/preferences/me")
    async def put_preferences(body: PreferenceIn, user: dict = Depends(current_user)):
        preferences[user["sub"]] = body.dark_mode
        return {"darkMode": body.dark_mode}

    @app.get("/availability/me")
    async def my_availability(user: dict = Depends(current_provider)):
        week = availability.get(user["sub"], {})
        return [
            {"day_of_week": w.day_of_week, "start_time": f"{w.start_time}:00", "end_time": f"{w.end_time}:00"}
            for _, w in sorted(week.items())
        ]

    @app.post("/availability/set")
    async def set_availability(body: list[AvailabilityIn], user: dict = Depends(current_provider)):
        try:
            windows = [AvailabilityWindow.model_validate(item.model_dump()) for item in body]
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        availability[user["sub"]] = {w.day_of_week: w for w in windows}
        return {"detail": f"Saved {len(windows)} day(s)"}

    return app


app = create_app()
