import asyncio
import jwt
import pytest
import respx
from clinic_client.client import SchedulingAPI
from clinic_client.errors import AuthError, NetworkError, ValidationError
from clinic_client.models import LoadingPhase, Preference, Role
from clinic_client.session import SessionManager, decode_identity
from clinic_client.store import PREFERENCE_KEY, TOKEN_KEY, MemoryCredentialStore
from conftest import BASE, BrokenStore, make_token, settle, signed_in


def manager(api, store=None, device=Preference.LIGHT):
    return SessionManager(store or MemoryCredentialStore(), api, device_preference=lambda: device)


def test_decode_identity_reads_role_and_subject():
    assert decode_identity(make_token("d1", "medico")) == (Role.PROVIDER, "d1")
    assert decode_identity(make_token("p1", "nurse")) == (None, "p1")
    assert decode_identity("not-a-jwt") == (None, None)


def test_subject_claim_can_be_renamed():
    token = jwt.encode({"uid": "d7", "role": "provider"}, "test-secret", algorithm="HS256")

    assert decode_identity(token, subject_claim="uid") == (Role.PROVIDER, "d7")
    assert decode_identity(token) == (Role.PROVIDER, None)


@pytest.mark.asyncio
async def test_bootstrap_restores_token_role_and_cached_preference(fake_api):
    token = make_token("p1", "patient")
    store = MemoryCredentialStore({TOKEN_KEY: token, PREFERENCE_KEY: "dark"})
    seen = []
    mgr = manager(fake_api, store)
    mgr.subscribe(seen.append)

    session = await mgr.bootstrap()

    assert session.phase is LoadingPhase.READY
    assert (session.token, session.role, session.subject) == (token, Role.PATIENT, "p1")
    assert session.preference is Preference.DARK
    assert seen == [session]
    assert fake_api.calls == []


@pytest.mark.asyncio
async def test_bootstrap_runs_once(fake_api):
    mgr = manager(fake_api)
    seen = []
    mgr.subscribe(seen.append)

    first = await mgr.bootstrap()
    second = await mgr.bootstrap()

    assert first is second
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_bootstrap_without_token_uses_device_preference(fake_api):
    session = await manager(fake_api, device=Preference.DARK).bootstrap()

    assert session.token is None
    assert session.role is None
    assert session.preference is Preference.DARK


@pytest.mark.asyncio
async def test_bootstrap_with_undecodable_token_signs_out(fake_api):
    store = MemoryCredentialStore({TOKEN_KEY: "garbage.token.value"})

    session = await manager(fake_api, store).bootstrap()

    assert session.phase is LoadingPhase.READY
    assert session.role is None
    assert session.token is None
    assert TOKEN_KEY not in store.data


@pytest.mark.asyncio
async def test_bootstrap_survives_unreadable_store(fake_api):
    store = BrokenStore({TOKEN_KEY: make_token()}, fail_get=True)

    session = await manager(fake_api, store, device=Preference.DARK).bootstrap()

    assert session.phase is LoadingPhase.READY
    assert session.token is None
    assert session.preference is Preference.DARK


class SlowStore(MemoryCredentialStore):
    """Holds reads until ``release`` is set."""

    def __init__(self, initial=None):
        super().__init__(initial)
        self.release = asyncio.Event()

    async def get(self, key):
        await self.release.wait()
        return await super().get(key)


@pytest.mark.asyncio
async def test_sign_in_during_bootstrap_is_kept(fake_api):
    store = SlowStore({TOKEN_KEY: make_token("p1", "patient"), PREFERENCE_KEY: "light"})
    fake_api.preference = Preference.DARK
    mgr = manager(fake_api, store)

    restoring = asyncio.create_task(mgr.bootstrap())
    await settle()
    fresh = make_token("d1", "provider")
    await mgr.sign_in(fresh)
    store.release.set()
    session = await restoring

    assert session.phase is LoadingPhase.READY
    assert (session.token, session.role, session.subject) == (fresh, Role.PROVIDER, "d1")
    assert session.preference is Preference.DARK
    assert store.data[TOKEN_KEY] == fresh


@pytest.mark.asyncio
async def test_sign_in_persists_token_and_adopts_server_preference(fake_api):
    fake_api.preference = Preference.DARK
    store = MemoryCredentialStore()
    mgr = manager(fake_api, store)
    await mgr.bootstrap()
    token = make_token("d1", "provider")

    session = await mgr.sign_in(token)

    assert store.data[TOKEN_KEY] == token
    assert session.role is Role.PROVIDER
    assert session.preference is Preference.DARK
    assert store.data[PREFERENCE_KEY] == "dark"


@pytest.mark.asyncio
async def test_sign_in_ignores_preference_sync_failure(fake_api):
    fake_api.fail["get_preference"] = NetworkError("offline")
    mgr = manager(fake_api)
    await mgr.bootstrap()

    session = await mgr.sign_in(make_token())

    assert session.authenticated
    assert session.preference is Preference.LIGHT


@pytest.mark.asyncio
async def test_sign_in_rejects_token_without_role(fake_api):
    store = MemoryCredentialStore()
    mgr = manager(fake_api, store)
    await mgr.bootstrap()

    with pytest.raises(AuthError):
        await mgr.sign_in(make_token(role=None))

    assert not mgr.session.authenticated
    assert store.data == {}


@pytest.mark.asyncio
async def test_login_exchanges_credentials_then_signs_in(fake_api):
    fake_api.login_token = make_token("p9", "paciente")
    mgr = manager(fake_api)
    await mgr.bootstrap()

    session = await mgr.login("ana@clinic.test", "secret")

    assert (session.role, session.subject) == (Role.PATIENT, "p9")


@pytest.mark.asyncio
async def test_sign_out_clears_token_even_if_store_fails(fake_api):
    store = BrokenStore()
    mgr = await signed_in(fake_api, store=store)
    store.fail_remove = True

    session = await mgr.sign_out()

    assert session.token is None
    assert session.role is None
    assert session.subject is None


@pytest.mark.asyncio
async def test_set_preference_applies_before_write_through(fake_api):
    mgr = await signed_in(fake_api)
    seen = []
    mgr.subscribe(lambda s: seen.append((s.preference, len(fake_api.called("put_preference")))))

    result = await mgr.set_preference("dark")

    assert result is Preference.DARK
    # the listener saw the new value before the remote write happened
    assert seen[0] == (Preference.DARK, 0)
    assert fake_api.preference is Preference.DARK
    assert mgr.store.data[PREFERENCE_KEY] == "dark"


@pytest.mark.asyncio
async def test_failed_write_through_rolls_back(fake_api):
    mgr = await signed_in(fake_api)
    fake_api.fail["put_preference"] = NetworkError("timeout")
    seen = []
    mgr.subscribe(lambda s: seen.append(s.preference))

    with pytest.raises(NetworkError):
        await mgr.set_preference(Preference.DARK)

    assert mgr.preference is Preference.LIGHT
    assert mgr.store.data[PREFERENCE_KEY] == "light"
    assert seen == [Preference.DARK, Preference.LIGHT]


@pytest.mark.asyncio
async def test_late_write_failure_does_not_undo_newer_change(fake_api):
    mgr = await signed_in(fake_api)
    release = asyncio.Event()
    sent = []

    async def put_preference(token, preference):
        sent.append(preference)
        if len(sent) == 1:
            await release.wait()
            raise NetworkError("timeout")
        return preference

    fake_api.put_preference = put_preference
    first = asyncio.create_task(mgr.set_preference(Preference.DARK))
    await settle()
    assert mgr.preference is Preference.DARK

    await mgr.set_preference(Preference.DARK)
    release.set()
    with pytest.raises(NetworkError):
        await first

    assert sent == [Preference.DARK, Preference.DARK]
    assert mgr.preference is Preference.DARK
    assert mgr.store.data[PREFERENCE_KEY] == "dark"


@pytest.mark.asyncio
async def test_toggle_preference(fake_api):
    mgr = await signed_in(fake_api)

    assert await mgr.toggle_preference() is Preference.DARK
    assert await mgr.toggle_preference() is Preference.LIGHT
    assert [call[1] for call in fake_api.called("put_preference")] == [Preference.DARK, Preference.LIGHT]


@pytest.mark.asyncio
async def test_preference_while_signed_out_stays_local(fake_api):
    mgr = manager(fake_api)
    await mgr.bootstrap()

    assert await mgr.set_preference(Preference.DARK) is Preference.DARK
    assert fake_api.called("put_preference") == []


@pytest.mark.asyncio
async def test_authorized_requires_session(fake_api):
    mgr = manager(fake_api)
    await mgr.bootstrap()

    with pytest.raises(AuthError):
        async with mgr.authorized():
            pytest.fail("should not be reached")


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_transitions(fake_api):
    mgr = manager(fake_api)

    def boom(session):
        raise RuntimeError("listener bug")

    mgr.subscribe(boom)
    unsubscribe = mgr.subscribe(lambda s: None)
    unsubscribe()

    session = await mgr.bootstrap()
    assert session.phase is LoadingPhase.READY


@pytest.mark.asyncio
async def test_rejected_token_forces_sign_out_over_http():
    api = SchedulingAPI(base_url=BASE)
    store = MemoryCredentialStore()
    with respx.mock(base_url=BASE) as m:
        m.get("/preferences/me").respond(200, json={"darkMode": False})
        m.put("/preferences/me").respond(401, json={"detail": "Token expired"})
        mgr = manager(api, store)
        await mgr.bootstrap()
        await mgr.sign_in(make_token())

        with pytest.raises(AuthError):
            await mgr.set_preference(Preference.DARK)

    assert not mgr.session.authenticated
    assert TOKEN_KEY not in store.data
    assert mgr.preference is Preference.LIGHT


@pytest.mark.asyncio
async def test_register_leaves_session_signed_out(fake_api):
    mgr = manager(fake_api)
    await mgr.bootstrap()

    await mgr.register("Eva Diaz", "eva@clinic.test", "pw")

    assert fake_api.called("register") == [("register", "eva@clinic.test")]
    assert not mgr.session.authenticated


@pytest.mark.asyncio
async def test_change_password_checks_confirmation_first(fake_api):
    mgr = await signed_in(fake_api)

    with pytest.raises(ValidationError) as info:
        await mgr.change_password("old", "new", confirm_password="typo")
    assert info.value.fields == ["confirm_password"]
    with pytest.raises(ValidationError):
        await mgr.change_password("", "new")
    assert fake_api.called("change_password") == []

    assert await mgr.change_password("old", "new", confirm_password="new") == "Password updated"
    assert fake_api.called("change_password") == [("change_password", "old", "new")]


@pytest.mark.asyncio
async def test_change_password_needs_session(fake_api):
    mgr = manager(fake_api)
    await mgr.bootstrap()

    with pytest.raises(AuthError):
        await mgr.change_password("old", "new")
