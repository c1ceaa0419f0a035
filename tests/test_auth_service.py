"""AuthService: login, registration, status check, logout and biometric flows."""

import asyncio
import json

import httpx
import pytest

from dentalization.auth_guard import AuthenticationError
from dentalization.exceptions import SessionExpiredError
from dentalization.models import (
    AuthErrorCode,
    BiometricType,
    ERROR_MESSAGES,
    RegistrationRequest,
    UserRecord,
    UserRole,
    VerificationOutcome,
)
from dentalization.services import create_services
from dentalization.services.auth_api import (
    CHECK_EMAIL_PATH,
    FORGOT_PASSWORD_PATH,
    LOGIN_PATH,
    LOGOUT_PATH,
    PROFILE_PATH,
    REGISTER_PATH,
)
from dentalization.services.biometric import PlatformBiometricProvider
from dentalization.services.request_pipeline import REFRESH_PATH

APPOINTMENTS = "/api/appointments"


@pytest.fixture
def auth(services):
    return services["auth_service"]


@pytest.fixture
def login_reply(backend, patient_payload):
    return backend.ok({"token": "access-1", "refreshToken": "refresh-1", "user": patient_payload})


@pytest.fixture
def snapshots(session):
    seen = []
    session.subscribe(seen.append)
    return seen


@pytest.fixture
async def signed_in(auth, backend, login_reply):
    backend.on("POST", LOGIN_PATH, login_reply)
    result = await auth.login("sari@example.com", "Secret123")
    assert result.success
    return result.user


def _patient_registration(**overrides) -> RegistrationRequest:
    data = {
        "email": "  New.Patient@Example.com ",
        "password": "Secret123",
        "first_name": "Sari",
        "last_name": "Wulandari",
        "role": UserRole.PATIENT,
        "phone_number": "0812 3456 7890",
    }
    data.update(overrides)
    return RegistrationRequest(**data)


def _assert_never_stale_while_signed_out(snapshots):
    for snap in snapshots:
        assert not (snap.is_stale and not snap.is_authenticated)


# ---------------------------------------------------------------------------
# Status check (scenarios A, B, C)
# ---------------------------------------------------------------------------

async def test_status_fresh_session_updates_cache(auth, store, backend, session, patient_payload, snapshots):
    await store.store_tokens("access", "refresh")
    await store.store_user_data(UserRecord.model_validate(patient_payload))
    fresh = {**patient_payload, "email": "sari.w@example.com"}
    backend.on("GET", PROFILE_PATH, backend.ok(fresh))

    result = await auth.check_auth_status()

    snap = session.snapshot()
    assert result.outcome == VerificationOutcome.FRESH
    assert snap.is_authenticated and not snap.is_stale
    assert snap.user.email == "sari.w@example.com"
    assert (await store.get_user_data()).email == "sari.w@example.com"
    _assert_never_stale_while_signed_out(snapshots)


async def test_status_rejected_token_clears_everything(auth, store, backend, session, patient_payload):
    await store.store_tokens("access", "refresh")
    await store.store_user_data(UserRecord.model_validate(patient_payload))
    backend.on("GET", PROFILE_PATH, backend.fail(401, "token invalid"))
    backend.on("POST", REFRESH_PATH, backend.fail(401, "refresh token invalid"))

    await auth.check_auth_status()

    snap = session.snapshot()
    assert not snap.is_authenticated
    assert snap.error_code == AuthErrorCode.SESSION_EXPIRED
    assert await store.get_credentials() is None
    assert await store.get_user_data() is None


async def test_status_timeout_keeps_cached_user_as_stale(auth, store, backend, session, patient_payload, snapshots):
    user = UserRecord.model_validate(patient_payload)
    await store.store_tokens("access", "refresh")
    await store.store_user_data(user)

    def timeout(request):
        raise httpx.ReadTimeout("timed out", request=request)

    backend.on("GET", PROFILE_PATH, timeout)

    result = await auth.check_auth_status()

    snap = session.snapshot()
    assert result.outcome == VerificationOutcome.UNREACHABLE
    assert snap.is_authenticated and snap.is_stale
    assert (await store.get_user_data()).model_dump() == user.model_dump()
    _assert_never_stale_while_signed_out(snapshots)


async def test_status_rate_limited_is_stale(auth, store, backend, session, patient_payload):
    await store.store_tokens("access", "refresh")
    await store.store_user_data(UserRecord.model_validate(patient_payload))
    backend.on("GET", PROFILE_PATH, backend.fail(429, "Too many requests"))

    result = await auth.check_auth_status()

    assert result.outcome == VerificationOutcome.RATE_LIMITED
    assert session.snapshot().is_stale


async def test_status_without_stored_session(auth, session, backend):
    await auth.check_auth_status()

    snap = session.snapshot()
    assert not snap.is_authenticated
    assert snap.error is None
    assert backend.requests == []


async def test_is_initializing_flips_exactly_once(auth, session, snapshots):
    assert session.is_initializing

    await auth.check_auth_status()
    await auth.check_auth_status()

    assert not session.is_initializing
    states = [True] + [snap.is_initializing for snap in snapshots]
    transitions = sum(1 for before, after in zip(states, states[1:]) if before != after)
    assert transitions == 1


async def test_status_storage_failure_signs_out(auth, db, session):
    db.close()

    result = await auth.check_auth_status()

    snap = session.snapshot()
    assert result.outcome == VerificationOutcome.INVALID
    assert snap.error_code == AuthErrorCode.STORAGE_ERROR
    assert not snap.is_initializing


# ---------------------------------------------------------------------------
# Login (scenario D)
# ---------------------------------------------------------------------------

async def test_login_persists_tokens_and_user(auth, store, backend, session, login_reply):
    backend.on("POST", LOGIN_PATH, login_reply)

    result = await auth.login("  Sari@Example.com ", "Secret123")

    assert result.success
    snap = session.snapshot()
    assert snap.is_authenticated and snap.error is None and not snap.is_loading
    assert snap.user.id == "17"
    pair = await store.get_credentials()
    assert (pair.access_token, pair.refresh_token) == ("access-1", "refresh-1")
    assert (await store.get_user_data()).id == "17"
    sent = json.loads(backend.calls(LOGIN_PATH)[0].read())
    assert sent == {"email": "sari@example.com", "password": "Secret123"}


async def test_login_passes_through_loading_state(auth, backend, login_reply, snapshots):
    backend.on("POST", LOGIN_PATH, login_reply)

    await auth.login("sari@example.com", "Secret123")

    assert snapshots[0].is_loading
    assert not snapshots[-1].is_loading


async def test_login_wrong_password(auth, store, backend, session):
    backend.on("POST", LOGIN_PATH, backend.fail(401, "Invalid credentials"))

    result = await auth.login("sari@example.com", "wrong")

    assert not result.success
    assert result.error_code == AuthErrorCode.INVALID_CREDENTIALS
    snap = session.snapshot()
    assert not snap.is_authenticated
    assert snap.error == ERROR_MESSAGES[AuthErrorCode.INVALID_CREDENTIALS]
    assert await store.get_credentials() is None


async def test_login_network_failure_is_classified(auth, backend, session):
    def offline(request):
        raise httpx.ConnectError("connection refused", request=request)

    backend.on("POST", LOGIN_PATH, offline)

    result = await auth.login("sari@example.com", "Secret123")

    assert result.error_code == AuthErrorCode.NETWORK_ERROR
    assert "connection refused" not in result.error_message


async def test_login_timeout_is_classified(auth, backend):
    def timeout(request):
        raise httpx.ReadTimeout("timed out", request=request)

    backend.on("POST", LOGIN_PATH, timeout)

    result = await auth.login("sari@example.com", "Secret123")

    assert result.error_code == AuthErrorCode.TIMEOUT_ERROR


async def test_login_rejects_invalid_email_without_network(auth, backend):
    result = await auth.login("not-an-email", "Secret123")

    assert result.error_code == AuthErrorCode.VALIDATION_ERROR
    assert backend.requests == []


async def test_login_with_unusable_response_is_server_error(auth, backend, store):
    backend.on("POST", LOGIN_PATH, backend.ok({"token": "", "user": None}))

    result = await auth.login("sari@example.com", "Secret123")

    assert result.error_code == AuthErrorCode.SERVER_ERROR
    assert await store.get_credentials() is None


async def test_remember_me_ignored_when_biometric_disabled(auth, backend, store, login_reply):
    backend.on("POST", LOGIN_PATH, login_reply)

    await auth.login("sari@example.com", "Secret123", remember_me=True)

    assert await store.get_biometric_credentials() is None


# ---------------------------------------------------------------------------
# Registration (scenario E)
# ---------------------------------------------------------------------------

async def test_register_duplicate_email_is_conflict(auth, backend, session):
    backend.on("POST", REGISTER_PATH, backend.fail(409, "Email already registered"))

    result = await auth.register(_patient_registration())

    assert result.error_code == AuthErrorCode.EMAIL_ALREADY_EXISTS
    assert result.error_message != ERROR_MESSAGES[AuthErrorCode.UNKNOWN_ERROR]
    assert not session.is_authenticated


async def test_register_duplicate_reported_as_400(auth, backend):
    backend.on("POST", REGISTER_PATH, backend.fail(400, "User with this email already exists"))

    result = await auth.register(_patient_registration())

    assert result.error_code == AuthErrorCode.EMAIL_ALREADY_EXISTS


async def test_register_sends_normalised_patient_payload(auth, backend, session, patient_payload):
    backend.on(
        "POST", REGISTER_PATH,
        backend.ok({"token": "a", "refreshToken": "r", "user": patient_payload}, status=201),
    )

    result = await auth.register(_patient_registration())

    assert result.success and session.is_authenticated
    body = json.loads(backend.calls(REGISTER_PATH)[0].read())
    assert body["email"] == "new.patient@example.com"
    assert body["phoneNumber"] == "081234567890"
    assert body["patientDetails"]["emergencyContact"] == {"name": "", "phoneNumber": ""}


async def test_register_retries_server_errors(auth, backend, patient_payload):
    backend.on(
        "POST", REGISTER_PATH,
        backend.fail(503, "Service unavailable"),
        backend.fail(502, "Bad gateway"),
        backend.ok({"token": "a", "refreshToken": "r", "user": patient_payload}),
    )

    result = await auth.register(_patient_registration())

    assert result.success
    assert len(backend.calls(REGISTER_PATH)) == 3


async def test_register_gives_up_after_max_retries(auth, backend, config):
    backend.on("POST", REGISTER_PATH, backend.fail(500, "Internal error"))

    result = await auth.register(_patient_registration())

    assert result.error_code == AuthErrorCode.SERVER_ERROR
    assert len(backend.calls(REGISTER_PATH)) == config.REGISTRATION_MAX_RETRIES + 1


async def test_register_does_not_retry_client_errors(auth, backend):
    backend.on(
        "POST", REGISTER_PATH,
        backend.fail(400, "Phone number is invalid", errors=[{"path": "phoneNumber", "msg": "Invalid"}]),
    )

    result = await auth.register(_patient_registration())

    assert result.error_code == AuthErrorCode.VALIDATION_ERROR
    assert result.error_message == "Phone number is invalid"
    assert result.field_errors == {"phoneNumber": "Invalid"}
    assert len(backend.calls(REGISTER_PATH)) == 1


async def test_register_rejects_weak_password_locally(auth, backend):
    result = await auth.register(_patient_registration(password="short"))

    assert result.error_code == AuthErrorCode.VALIDATION_ERROR
    assert backend.requests == []


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------

async def test_logout_clears_even_when_remote_fails(auth, store, backend, session, signed_in):
    backend.on("POST", LOGOUT_PATH, backend.fail(500, "boom"))

    await auth.logout()

    assert not session.is_authenticated
    assert await store.get_access_token() is None
    assert await store.get_refresh_token() is None
    assert await store.get_user_data() is None
    assert json.loads(backend.calls(LOGOUT_PATH)[0].read()) == {"refreshToken": "refresh-1"}
    assert "Authorization" not in backend.calls(LOGOUT_PATH)[0].headers


async def test_logout_during_refresh_leaves_no_credentials(auth, store, backend, session, signed_in):
    refresh_started = asyncio.Event()
    release = asyncio.Event()

    def appointments(request):
        if request.headers.get("Authorization") == "Bearer access-2":
            return backend.ok(["ok"])
        return backend.fail(401, "jwt expired")

    async def refresh(request):
        refresh_started.set()
        await release.wait()
        return backend.ok({"token": "access-2", "refreshToken": "refresh-2"})

    backend.on("GET", APPOINTMENTS, appointments)
    backend.on("POST", REFRESH_PATH, refresh)
    backend.on("POST", LOGOUT_PATH, backend.ok())

    request = asyncio.create_task(auth.authorized_request("GET", APPOINTMENTS))
    await refresh_started.wait()
    logout = asyncio.create_task(auth.logout())
    while not backend.calls(LOGOUT_PATH):
        await asyncio.sleep(0)
    await asyncio.sleep(0.05)
    release.set()

    with pytest.raises(SessionExpiredError):
        await request
    await logout

    assert not session.is_authenticated
    assert await store.get_credentials() is None
    assert await store.get_refresh_token() is None
    assert len(backend.calls(APPOINTMENTS)) == 1


async def test_logout_is_bounded_by_timeout(auth, store, backend, session, signed_in):
    async def hang(request):
        await asyncio.sleep(10)
        return backend.ok()

    backend.on("POST", LOGOUT_PATH, hang)

    await asyncio.wait_for(auth.logout(), timeout=5)

    assert not session.is_authenticated
    assert await store.get_credentials() is None


async def test_logout_offline(auth, store, backend, session, signed_in):
    def offline(request):
        raise httpx.ConnectError("offline", request=request)

    backend.on("POST", LOGOUT_PATH, offline)

    await auth.logout()

    assert not session.is_authenticated
    assert await store.get_credentials() is None


# ---------------------------------------------------------------------------
# Collaborator surface
# ---------------------------------------------------------------------------

async def test_authorized_request_requires_session(auth, backend):
    with pytest.raises(AuthenticationError):
        await auth.authorized_request("GET", APPOINTMENTS)
    assert backend.requests == []


async def test_authorized_request_uses_bearer(auth, backend, signed_in):
    backend.on("GET", APPOINTMENTS, backend.ok([{"id": 3}]))

    data = await auth.authorized_request("GET", APPOINTMENTS)

    assert data == [{"id": 3}]
    assert backend.calls(APPOINTMENTS)[0].headers["Authorization"] == "Bearer access-1"


async def test_rejected_refresh_forces_logout(auth, backend, session, store, signed_in):
    backend.on("GET", APPOINTMENTS, backend.fail(401, "jwt expired"))
    backend.on("POST", REFRESH_PATH, backend.fail(401, "refresh revoked"))

    with pytest.raises(SessionExpiredError):
        await auth.authorized_request("GET", APPOINTMENTS)

    snap = session.snapshot()
    assert not snap.is_authenticated
    assert snap.error_code == AuthErrorCode.SESSION_EXPIRED
    assert await store.get_credentials() is None


async def test_authorized_request_without_stored_token_forces_logout(auth, store, backend, session, signed_in):
    await store.clear_session()

    with pytest.raises(SessionExpiredError):
        await auth.authorized_request("GET", APPOINTMENTS)

    snap = session.snapshot()
    assert not snap.is_authenticated
    assert snap.error_code == AuthErrorCode.SESSION_EXPIRED
    assert backend.calls(APPOINTMENTS) == []


async def test_get_access_token(auth, signed_in):
    assert await auth.get_access_token() == "access-1"


async def test_authenticated_without_token_forces_logout(auth, store, session, signed_in):
    await store.clear_all()

    assert await auth.get_access_token() is None

    snap = session.snapshot()
    assert not snap.is_authenticated
    assert snap.error_code == AuthErrorCode.SESSION_EXPIRED


# ---------------------------------------------------------------------------
# Password management
# ---------------------------------------------------------------------------

async def test_password_reset_does_not_reveal_unknown_email(auth, backend):
    backend.on("POST", FORGOT_PASSWORD_PATH, backend.fail(404, "User not found"))

    unknown = await auth.request_password_reset("ghost@example.com")
    backend.on("POST", FORGOT_PASSWORD_PATH, backend.ok(None, message="Sent"))
    known = await auth.request_password_reset("sari@example.com")

    assert unknown.success and known.success
    assert unknown.message == known.message


async def test_password_reset_reports_network_failure(auth, backend):
    def offline(request):
        raise httpx.ConnectError("offline", request=request)

    backend.on("POST", FORGOT_PASSWORD_PATH, offline)

    result = await auth.request_password_reset("sari@example.com")

    assert result.error_code == AuthErrorCode.NETWORK_ERROR


async def test_change_password_requires_session(auth, backend):
    result = await auth.change_password("Secret123", "Newsecret456")

    assert result.error_code == AuthErrorCode.SESSION_EXPIRED
    assert backend.requests == []


async def test_check_email_exists(auth, backend):
    backend.on("POST", CHECK_EMAIL_PATH, backend.fail(409, "exists"))
    taken = await auth.check_email_exists("sari@example.com")

    backend.on("POST", CHECK_EMAIL_PATH, backend.ok({"exists": False}))
    free = await auth.check_email_exists("new@example.com")

    assert taken.exists is True
    assert free.exists is False


# ---------------------------------------------------------------------------
# Biometric
# ---------------------------------------------------------------------------

class FakeAuthenticator:
    def __init__(self, accept: bool = True) -> None:
        self.accept = accept
        self.prompts: list[str] = []

    async def __call__(self, prompt: str) -> bool:
        self.prompts.append(prompt)
        return self.accept


@pytest.fixture
def authenticator() -> FakeAuthenticator:
    return FakeAuthenticator()


@pytest.fixture
async def biometric_auth(db, config, session, logger, backend, authenticator):
    container = create_services(
        db=db,
        config=config.model_copy(update={"BIOMETRIC_LOGIN_ENABLED": True}),
        session=session,
        logger=logger,
        transport=backend.transport,
        biometric=PlatformBiometricProvider(BiometricType.FINGERPRINT, authenticator),
    )
    yield container["auth_service"]
    await container["request_pipeline"].close()


async def test_biometric_login_unavailable_when_flag_off(auth, store, backend):
    result = await auth.login_with_biometric()

    assert result.error_code == AuthErrorCode.BIOMETRIC_UNAVAILABLE
    assert backend.requests == []


async def test_biometric_login_releases_credentials_after_assertion(
    biometric_auth, backend, session, login_reply, authenticator,
):
    enabled = await biometric_auth.enable_biometric("Sari@example.com", "Secret123")
    assert enabled.success
    assert session.snapshot().biometric_enabled

    backend.on("POST", LOGIN_PATH, login_reply)
    result = await biometric_auth.login_with_biometric()

    assert result.success
    assert len(authenticator.prompts) == 2
    sent = json.loads(backend.calls(LOGIN_PATH)[0].read())
    assert sent == {"email": "sari@example.com", "password": "Secret123"}


async def test_failed_assertion_never_reaches_backend(biometric_auth, backend, store, authenticator):
    await biometric_auth.enable_biometric("sari@example.com", "Secret123")
    authenticator.accept = False

    result = await biometric_auth.login_with_biometric()

    assert result.error_code == AuthErrorCode.BIOMETRIC_FAILED
    assert backend.calls(LOGIN_PATH) == []


async def test_biometric_login_without_enrolment(biometric_auth, backend, authenticator):
    result = await biometric_auth.login_with_biometric()

    assert result.error_code == AuthErrorCode.BIOMETRIC_UNAVAILABLE
    assert authenticator.prompts == []


async def test_remember_me_enrols_biometric(biometric_auth, backend, store, login_reply):
    backend.on("POST", LOGIN_PATH, login_reply)

    await biometric_auth.login("sari@example.com", "Secret123", remember_me=True)

    creds = await store.get_biometric_credentials()
    assert creds is not None and creds.email == "sari@example.com"


async def test_failed_login_keeps_biometric_enrolment(biometric_auth, backend, store):
    await biometric_auth.enable_biometric("sari@example.com", "Secret123")
    backend.on("POST", LOGIN_PATH, backend.fail(401, "Invalid credentials"))

    await biometric_auth.login("sari@example.com", "typo")

    assert await store.is_biometric_enabled()


async def test_disable_biometric(biometric_auth, store, session):
    await biometric_auth.enable_biometric("sari@example.com", "Secret123")

    result = await biometric_auth.disable_biometric()

    assert result.success
    assert await store.get_biometric_credentials() is None
    assert not session.snapshot().biometric_enabled
