"""Async client for the clinic scheduling REST API.
Every authenticated call takes the bearer token explicitly; the caller reads it
from the session once, at the start of its operation.
"""
from __future__ import annotations
import datetime as dt
import logging
import httpx
from . import config
from .dates import local_date_format, wall_clock_timestamp
from .errors import AuthError, ClinicError, ConflictError, NetworkError, ValidationError
from .models import Appointment, AppointmentDraft, AppointmentStatus, AvailabilityWindow, Doctor, Preference, Slot

logger = logging.getLogger(__name__)


def _detail(resp: httpx.Response) -> str:
    """Backend reason for a failed response, verbatim when it sent one."""
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("detail"):
        detail = payload["detail"]
        if isinstance(detail, list):
            # FastAPI style [{"loc": .., "msg": ..}, ...]
            return "; ".join(str(item.get("msg", item)) if isinstance(item, dict) else str(item) for item in detail)
        return str(detail)
    return resp.text.strip() or resp.reason_phrase or "Request failed"


def raise_for_status(resp: httpx.Response) -> None:
    if resp.is_success:
        return
    detail = _detail(resp)
    if resp.status_code in (401, 403):
        raise AuthError(detail, resp.status_code)
    if resp.status_code >= 500:
        raise NetworkError(detail, resp.status_code)
    raise ConflictError(detail, resp.status_code)


class SchedulingAPI:
    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or config.API_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT
        self._transport = transport

    def _client(self, token: str | None = None) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            http2=True,
            timeout=self.timeout,
            headers=headers,
            transport=self._transport,
        )

    async def _send(self, method: str, path: str, token: str | None = None, **kwargs) -> httpx.Response:
        try:
            async with self._client(token) as client:
                resp = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"{method} {path} failed: {exc}") from exc
        logger.debug("%s %s -> %s", method, path, resp.status_code)
        raise_for_status(resp)
        return resp

    @staticmethod
    def _json(resp: httpx.Response):
        try:
            return resp.json()
        except ValueError as exc:
            raise ClinicError("Malformed response from the clinic API", resp.status_code) from exc

    async def login(self, username: str, password: str) -> str:
        """Exchange credentials for an access token."""
        if not username or not password:
            raise ValidationError("Username and password are required", ["username", "password"])
        try:
            resp = await self._send("POST", "/auth/login", data={"username": username, "password": password})
        except ConflictError as exc:
            raise AuthError(exc.detail, exc.status) from exc
        token = self._json(resp).get("access_token")
        if not token:
            raise AuthError("Login response carried no access token", resp.status_code)
        return token

    async def register(self, full_name: str, email: str, password: str, phone: str = "") -> None:
        """Create a patient account. The caller logs in separately afterwards."""
        fields = {"full_name": full_name, "email": email, "password": password}
        missing = [name for name, value in fields.items() if not (value or "").strip()]
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}", missing)
        await self._send("POST", "/auth/register", json={**fields, "phone": phone or ""})

    async def change_password(self, token: str, old_password: str, new_password: str) -> str:
        resp = await self._send(
            "PUT",
            "/users/me/change-password",
            token,
            json={"old_password": old_password, "new_password": new_password},
        )
        if not resp.content:
            return ""
        return str(self._json(resp).get("detail", ""))

    async def list_doctors(self, token: str) -> list[Doctor]:
        resp = await self._send("GET", "/doctors", token)
        return [Doctor.model_validate(item) for item in self._json(resp)]

    async def list_slots(self, token: str, doctor_id: str, day: dt.date) -> list[Slot]:
        params = {"doctorId": doctor_id, "date": local_date_format(day)}
        resp = await self._send("GET", "/slots", token, params=params)
        return [Slot.model_validate(item) for item in self._json(resp)]

    async def create_appointment(self, token: str, draft: AppointmentDraft) -> Appointment:
        payload = {
            "doctorId": draft.doctor_id,
            "reason": draft.reason,
            "scheduledAt": wall_clock_timestamp(draft.date, draft.selected_slot_time),
        }
        resp = await self._send("POST", "/appointments", token, json=payload)
        return Appointment.model_validate(self._json(resp))

    async def update_status(
        self,
        token: str,
        appointment_id: str,
        status: AppointmentStatus,
        cancellation_reason: str | None = None,
    ) -> Appointment:
        body: dict[str, object] = {"statusId": status.status_id}
        if cancellation_reason is not None:
            body["cancellationReason"] = cancellation_reason
        resp = await self._send("PATCH", f"/appointments/{appointment_id}/status", token, json=body)
        return Appointment.model_validate(self._json(resp))

    async def delete_appointment(self, token: str, appointment_id: str) -> None:
        await self._send("DELETE", f"/appointments/{appointment_id}", token)

    async def list_my_appointments(self, token: str) -> list[Appointment]:
        resp = await self._send("GET", "/appointments/me", token)
        return [Appointment.model_validate(item) for item in self._json(resp)]

    async def get_preference(self, token: str) -> Preference:
        resp = await self._send("GET", "/preferences/me", token)
        return Preference.from_dark_mode(bool(self._json(resp).get("darkMode")))

    async def put_preference(self, token: str, preference: Preference) -> Preference:
        resp = await self._send("PUT", "/preferences/me", token, json={"darkMode": preference.dark_mode})
        if resp.status_code == 204 or not resp.content:
            return preference
        return Preference.from_dark_mode(bool(self._json(resp).get("darkMode", preference.dark_mode)))

    async def get_availability(self, token: str) -> list[AvailabilityWindow]:
        resp = await self._send("GET", "/availability/me", token)
        return [AvailabilityWindow.model_validate(item) for item in self._json(resp)]

    async def set_availability(self, token: str, windows: list[AvailabilityWindow]) -> None:
        """Replace the provider's weekly hours; days left out are days off."""
        payload = [
            {
                "day_of_week": window.day_of_week,
                "start_time": f"{window.start_time}:00",
                "end_time": f"{window.end_time}:00",
            }
            for window in windows
        ]
        await self._send("POST", "/availability/set", token, json=payload)
