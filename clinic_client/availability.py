"""A provider's weekly working hours, which the backend turns into bookable slots."""
from __future__ import annotations
import logging
from .client import SchedulingAPI
from .errors import ClinicError, ValidationError
from .models import AvailabilityWindow, Role
from .session import SessionManager

logger = logging.getLogger(__name__)


class AvailabilityPlanner:
    def __init__(self, api: SchedulingAPI, session: SessionManager):
        self.api = api
        self.session = session
        self.windows: list[AvailabilityWindow] = []
        self.last_error: ClinicError | None = None

    def _require_provider(self) -> None:
        if self.session.session.role is not Role.PROVIDER:
            raise ValidationError("Only providers manage weekly availability", ["role"])

    async def load(self) -> list[AvailabilityWindow]:
        self._require_provider()
        async with self.session.authorized() as token:
            windows = await self.api.get_availability(token)
        self.windows = sorted(windows, key=lambda w: w.day_of_week)
        return self.windows

    async def save(self, windows: list[AvailabilityWindow | dict]) -> list[AvailabilityWindow]:
        """Replace the whole week. Days not listed are days off."""
        self._require_provider()
        try:
            parsed = [w if isinstance(w, AvailabilityWindow) else AvailabilityWindow.model_validate(w) for w in windows]
        except ValueError as exc:
            raise ValidationError(str(exc), ["windows"]) from exc
        days = [w.day_of_week for w in parsed]
        if len(set(days)) != len(days):
            raise ValidationError("Each weekday can appear only once", ["day_of_week"])
        parsed.sort(key=lambda w: w.day_of_week)

        try:
            async with self.session.authorized() as token:
                await self.api.set_availability(token, parsed)
        except ClinicError as exc:
            logger.warning("Saving weekly availability failed: %s", exc)
            self.last_error = exc
            raise
        self.last_error = None
        self.windows = parsed
        logger.info("Saved availability for %d day(s)", len(parsed))
        return parsed

    def hours_for(self, weekday: int) -> AvailabilityWindow | None:
        return next((w for w in self.windows if w.day_of_week == weekday), None)
