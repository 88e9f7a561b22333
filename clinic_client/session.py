"""Session and identity state: who is signed in, with what role, under which
display preference.

``SessionManager`` owns the one ``Session`` object. Other components read it
through ``session`` or ``authorized()`` and never write it.
"""
from __future__ import annotations
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable
import jwt
from . import config
from .client import SchedulingAPI
from .errors import AuthError, ClinicError, ValidationError
from .models import LoadingPhase, Preference, Role, Session
from .store import PREFERENCE_KEY, TOKEN_KEY, CredentialStore

logger = logging.getLogger(__name__)

Listener = Callable[[Session], None]


def device_preference() -> Preference:
    try:
        return Preference(config.DEVICE_THEME)
    except ValueError:
        return Preference.LIGHT


def decode_identity(token: str, role_claim: str = "role", subject_claim: str = "sub") -> tuple[Role | None, str | None]:
    """Read (role, subject) from a token's claims without verifying it.

    The backend verifies signatures; the client only needs the claims. Any
    decode failure gives (None, None).
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as exc:
        logger.warning("Could not decode session token: %s", exc)
        return None, None
    subject = claims.get(subject_claim)
    return Role.parse(claims.get(role_claim)), None if subject is None else str(subject)


class SessionManager:
    def __init__(
        self,
        store: CredentialStore,
        api: SchedulingAPI,
        device_preference: Callable[[], Preference] = device_preference,
        role_claim: str | None = None,
        subject_claim: str | None = None,
    ):
        self.store = store
        self.api = api
        self._device_preference = device_preference
        self._role_claim = role_claim or config.ROLE_CLAIM
        self._subject_claim = subject_claim or config.SUBJECT_CLAIM
        self._session = Session()
        self._listeners: list[Listener] = []
        self._bootstrap_lock = asyncio.Lock()
        self._pref_version = 0

    @property
    def session(self) -> Session:
        return self._session

    @property
    def preference(self) -> Preference:
        return self._session.preference

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with the new Session after every transition."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _transition(self, **changes) -> Session:
        self._session = self._session.model_copy(update=changes)
        for listener in list(self._listeners):
            try:
                listener(self._session)
            except Exception:
                logger.exception("Session listener %r failed", listener)
        return self._session

    # storage never fails a session operation; errors degrade to defaults

    async def _store_get(self, key: str) -> str | None:
        try:
            return await self.store.get(key)
        except Exception as exc:
            logger.warning("Could not read %s from credential store: %s", key, exc)
            return None

    async def _store_set(self, key: str, value: str) -> None:
        try:
            await self.store.set(key, value)
        except Exception as exc:
            logger.warning("Could not persist %s: %s", key, exc)

    async def _store_remove(self, key: str) -> None:
        try:
            await self.store.remove(key)
        except Exception as exc:
            logger.warning("Could not remove %s from credential store: %s", key, exc)

    async def _cached_preference(self) -> Preference:
        cached = await self._store_get(PREFERENCE_KEY)
        if cached:
            try:
                return Preference(cached)
            except ValueError:
                logger.warning("Ignoring unknown cached preference %r", cached)
        return self._device_preference()

    async def bootstrap(self) -> Session:
        """Restore the persisted session. Reaches ``ready`` exactly once."""
        async with self._bootstrap_lock:
            if self._session.phase is LoadingPhase.READY:
                return self._session
            version = self._pref_version
            token = await self._store_get(TOKEN_KEY) or None
            role = subject = None
            if token is not None:
                role, subject = decode_identity(token, self._role_claim, self._subject_claim)
                if role is None:
                    logger.warning("Persisted token has no usable role claim; clearing it")
                    if not self._session.authenticated:
                        await self._store_remove(TOKEN_KEY)
                    token = subject = None
            preference = await self._cached_preference()
            changes = {"phase": LoadingPhase.READY}
            # a sign-in or preference change made while restoring is newer than the stored values
            if not self._session.authenticated:
                changes.update(token=token, role=role, subject=subject)
            if version == self._pref_version:
                changes["preference"] = preference
            return self._transition(**changes)

    async def login(self, username: str, password: str) -> Session:
        token = await self.api.login(username, password)
        return await self.sign_in(token)

    async def register(self, full_name: str, email: str, password: str, phone: str = "") -> None:
        """Create an account; the session stays as it is until ``login``."""
        await self.api.register(full_name, email, password, phone)
        logger.info("Registered account for %s", email)

    async def change_password(self, old_password: str, new_password: str, confirm_password: str | None = None) -> str:
        """Change the signed-in user's password and return the backend's message."""
        missing = [
            name
            for name, value in (("old_password", old_password), ("new_password", new_password))
            if not value
        ]
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}", missing)
        if confirm_password is not None and confirm_password != new_password:
            raise ValidationError("New passwords do not match", ["confirm_password"])
        async with self.authorized() as token:
            return await self.api.change_password(token, old_password, new_password)

    async def sign_in(self, token: str) -> Session:
        role, subject = decode_identity(token, self._role_claim, self._subject_claim)
        if role is None:
            raise AuthError("Token carries no recognised role")
        await self._store_set(TOKEN_KEY, token)
        self._transition(token=token, role=role, subject=subject)
        await self._reconcile_preference()
        return self._session

    async def _reconcile_preference(self) -> None:
        # the server's value wins after login, unless the user changed it meanwhile
        version = self._pref_version
        try:
            async with self.authorized() as token:
                remote = await self.api.get_preference(token)
        except ClinicError as exc:
            logger.warning("Preference sync after sign-in failed: %s", exc)
            return
        if not self._session.authenticated or version != self._pref_version:
            return
        if remote is not self._session.preference:
            logger.info("Adopting server preference %s", remote.value)
            await self._apply_preference(remote)

    async def sign_out(self) -> Session:
        await self._store_remove(TOKEN_KEY)
        return self._transition(token=None, role=None, subject=None)

    @asynccontextmanager
    async def authorized(self) -> AsyncIterator[str]:
        """Yield the current token; a rejected token forces sign-out."""
        token = self._session.token
        if token is None:
            raise AuthError("Not signed in")
        try:
            yield token
        except AuthError:
            if self._session.token == token:
                logger.info("Session token rejected by the backend; signing out")
                await self.sign_out()
            raise

    async def _apply_preference(self, value: Preference) -> int:
        self._pref_version += 1
        version = self._pref_version
        self._transition(preference=value)
        await self._store_set(PREFERENCE_KEY, value.value)
        return version

    async def set_preference(self, value: Preference | str) -> Preference:
        """Apply locally at once, then write through; roll back if the write fails."""
        value = Preference(value)
        previous = self._session.preference
        version = await self._apply_preference(value)
        if not self._session.authenticated:
            return value
        try:
            async with self.authorized() as token:
                await self.api.put_preference(token, value)
        except ClinicError:
            if version == self._pref_version:
                logger.warning("Saving preference failed; restoring %s", previous.value)
                await self._apply_preference(previous)
            raise
        return self._session.preference

    async def toggle_preference(self) -> Preference:
        return await self.set_preference(self._session.preference.toggled())
