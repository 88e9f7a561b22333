from __future__ import annotations


class ClinicError(RuntimeError):
    """Base error; ``status`` is the HTTP status when one was received."""

    def __init__(self, detail: str, status: int | None = None):
        super().__init__(detail if status is None else f"Clinic API error {status}: {detail}")
        self.status = status
        self.detail = detail


class ValidationError(ClinicError):
    """Local input rejected before any network call."""

    def __init__(self, detail: str, fields: list[str] | None = None):
        super().__init__(detail)
        self.fields = list(fields or [])


class TransitionError(ValidationError):
    """The caller may not request this status change."""


class AuthError(ClinicError):
    """No session, or the backend answered 401/403."""


class NetworkError(ClinicError):
    """Transport failure, timeout or server error. Safe to retry."""


class ConflictError(ClinicError):
    """The backend rejected the request (slot taken, illegal transition, ...)."""
