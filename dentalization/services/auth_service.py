"""
Authentication Service.

Single orchestrator for the session lifecycle: login, registration,
status check, logout, biometric login and the password-management flows.

Sits between the UI layer and the Credential Store / Request Pipeline so
that screens remain thin form handlers.  Lower layers raise structured
exceptions; this service is the only place they become user-facing text.
Every method returns a typed ``AuthResult`` (or ``VerificationResult``)
and keeps ``SessionManager`` consistent with the Credential Store.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Awaitable, Callable, Optional

from dentalization.auth import SessionManager
from dentalization.auth_guard import AuthenticationError, require_auth
from dentalization.config import AppConfig
from dentalization.exceptions import (
    AuthRejectedError,
    BiometricError,
    ConflictError,
    DentalizationError,
    RateLimitedError,
    ServerError,
    SessionExpiredError,
    StorageError,
    TransportError,
    ValidationFailedError,
)
from dentalization.logger import StructuredLogger
from dentalization.models.auth_models import (
    ERROR_MESSAGES,
    AuthErrorCode,
    AuthPayload,
    AuthResult,
    BiometricCredentials,
    RegistrationRequest,
    ValidationResult,
    VerificationResult,
)
from dentalization.models.enums import VerificationOutcome
from dentalization.services.auth_api import AuthApi
from dentalization.services.base_service import BaseService
from dentalization.services.biometric import BiometricProvider
from dentalization.services.credential_store import CredentialStore
from dentalization.services.request_pipeline import RequestPipeline
from dentalization.services.session_verifier import SessionVerifier
from dentalization.services.token_provider import TokenProvider


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_EMAIL_RE: re.Pattern[str] = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)

# Matches C0 controls (U+0000-U+001F), DEL (U+007F), and C1 controls (U+0080-U+009F).
_CONTROL_CHAR_RE: re.Pattern[str] = re.compile(r"[\x00-\x1f\x7f-\x9f]")

_MAX_SURFACED_MESSAGE_LENGTH: int = 200

_CHECK_EMAIL_TIMEOUT_S: float = 5.0

_PASSWORD_RESET_NOTICE: str = (
    "If this email is registered, you will receive a password reset link."
)

# Most specific first: SessionExpiredError is an AuthRejectedError.
ERROR_MAP: tuple[tuple[type[DentalizationError], AuthErrorCode], ...] = (
    (SessionExpiredError, AuthErrorCode.SESSION_EXPIRED),
    (ConflictError, AuthErrorCode.EMAIL_ALREADY_EXISTS),
    (ValidationFailedError, AuthErrorCode.VALIDATION_ERROR),
    (AuthRejectedError, AuthErrorCode.INVALID_CREDENTIALS),
    (RateLimitedError, AuthErrorCode.RATE_LIMITED),
    (ServerError, AuthErrorCode.SERVER_ERROR),
    (StorageError, AuthErrorCode.STORAGE_ERROR),
    (BiometricError, AuthErrorCode.BIOMETRIC_FAILED),
)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class AuthService(BaseService):
    """Session state machine.

    Receives all collaborators via ``__init__`` and exposes
    request -> result coroutines for every auth flow.  The collaborator
    surface used by the rest of the application is ``login``, ``register``,
    ``logout``, ``check_auth_status``, ``get_access_token`` and
    ``authorized_request``.

    Parameters
    ----------
    session:
        Injectable session holder; the single source of truth for the UI.
    store:
        Encrypted Credential Store.
    token_provider:
        Read-only access-token view.
    pipeline:
        Authenticated HTTP pipeline; its session-expired notification
        forces this service to the unauthenticated state.
    api:
        Auth endpoint client.
    verifier:
        Startup session verifier.
    biometric:
        Biometric capability provider.
    config:
        Feature flags, timeouts and retry policy.
    logger:
        Structured JSON logger for audit-grade logging.
    sleep:
        Injectable delay used between registration retries.
    """

    def __init__(
        self,
        session: SessionManager,
        store: CredentialStore,
        token_provider: TokenProvider,
        pipeline: RequestPipeline,
        api: AuthApi,
        verifier: SessionVerifier,
        biometric: BiometricProvider,
        config: AppConfig,
        logger: StructuredLogger,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        super().__init__(logger)
        self._session: SessionManager = session
        self._store: CredentialStore = store
        self._token_provider: TokenProvider = token_provider
        self._pipeline: RequestPipeline = pipeline
        self._api: AuthApi = api
        self._verifier: SessionVerifier = verifier
        self._biometric: BiometricProvider = biometric
        self._config: AppConfig = config
        self._sleep = sleep
        self._auth_guard = require_auth(session)

        self._pipeline.add_session_expired_listener(self._on_session_expired)

    @property
    def session(self) -> SessionManager:
        return self._session

    # ==================================================================
    # Validation helpers
    # ==================================================================

    @staticmethod
    def validate_email(email: str) -> ValidationResult:
        """Validate an email address against a simplified RFC 5322 regex.

        Parameters
        ----------
        email:
            The raw email string to validate.

        Returns
        -------
        ValidationResult
            ``is_valid=True`` if the email matches, otherwise a
            human-readable ``error_message``.
        """
        if not email or not email.strip():
            return ValidationResult(
                is_valid=False,
                error_message="Email address is required.",
            )
        if not _EMAIL_RE.match(email.strip()):
            return ValidationResult(
                is_valid=False,
                error_message="Please enter a valid email address.",
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def validate_password(password: str) -> ValidationResult:
        """Enforce the registration password policy.

        Policy: minimum 8 characters, at least 1 uppercase letter,
        1 lowercase letter and 1 digit.
        """
        if len(password) < 8:
            return ValidationResult(
                is_valid=False,
                error_message="Password must be at least 8 characters.",
            )
        if not re.search(r"[A-Z]", password):
            return ValidationResult(
                is_valid=False,
                error_message="Password must contain at least one uppercase letter.",
            )
        if not re.search(r"[a-z]", password):
            return ValidationResult(
                is_valid=False,
                error_message="Password must contain at least one lowercase letter.",
            )
        if not re.search(r"\d", password):
            return ValidationResult(
                is_valid=False,
                error_message="Password must contain at least one digit.",
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def validate_name(name: str, field_label: str) -> ValidationResult:
        """Validate a name field, rejecting control characters."""
        stripped = name.strip()
        if not stripped:
            return ValidationResult(
                is_valid=False,
                error_message=f"{field_label} is required.",
            )
        if _CONTROL_CHAR_RE.search(stripped):
            return ValidationResult(
                is_valid=False,
                error_message=(
                    f"{field_label} contains invalid characters. "
                    "Only printable characters are allowed."
                ),
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def normalize_email(email: str) -> str:
        """Normalise an email address: strip whitespace and lowercase."""
        return email.strip().lower()

    # ==================================================================
    # Login
    # ==================================================================

    async def login(self, email: str, password: str, remember_me: bool = False) -> AuthResult:
        """Authenticate against ``/api/auth/login`` and persist the session.

        Parameters
        ----------
        email:
            The raw email entered by the user.
        password:
            The raw password entered by the user.
        remember_me:
            Keep the credentials for biometric login (only when biometric
            login is enabled and available).

        Returns
        -------
        AuthResult
            ``success=True`` with the user, or a structured error whose
            ``error_message`` is safe to show.
        """
        email_check = self.validate_email(email)
        if not email_check.is_valid:
            return self._reject_input(email_check.error_message)
        if not password:
            return self._reject_input("Password is required.")

        email = self.normalize_email(email)
        self._session.begin_loading()

        try:
            payload = await self._api.login(email, password)
        except DentalizationError as exc:
            return await self._fail(self._classify_error(exc, "login"))

        result = await self._establish_session(payload, "LOGIN")
        if result.success and remember_me and await self._biometric_usable():
            try:
                await self._store.store_biometric_credentials(
                    BiometricCredentials(email=email, password=password),
                )
            except StorageError as exc:
                return await self._fail(self._classify_error(exc, "login"))
            await self._refresh_biometric_state()
        return result

    # ==================================================================
    # Registration
    # ==================================================================

    async def register(self, request: RegistrationRequest) -> AuthResult:
        """Register via ``/api/auth/register`` and persist the new session.

        Transport errors and ``5xx`` answers are retried with exponential
        backoff (``REGISTRATION_RETRY_BASE_DELAY_S * 2**n``, at most
        ``REGISTRATION_MAX_RETRIES`` retries).  Client errors are never
        retried.

        Parameters
        ----------
        request:
            Role-specific registration data.

        Returns
        -------
        AuthResult
            On a duplicate email, ``error_code=EMAIL_ALREADY_EXISTS`` with
            an actionable message.
        """
        for check in (
            self.validate_name(request.first_name, "First name"),
            self.validate_email(request.email),
            self.validate_password(request.password),
        ):
            if not check.is_valid:
                return self._reject_input(check.error_message)

        payload = request.to_payload()
        self._session.begin_loading()

        max_retries = self._config.REGISTRATION_MAX_RETRIES
        attempt = 0
        while True:
            try:
                auth_payload = await self._api.register(payload)
                break
            except (TransportError, ServerError) as exc:
                if not self._is_retryable(exc) or attempt >= max_retries:
                    return await self._fail(self._classify_error(exc, "register"))
                delay = self._config.REGISTRATION_RETRY_BASE_DELAY_S * (2 ** attempt)
                attempt += 1
                self._logger.warning(
                    "Registration attempt %d failed (%s); retrying in %.1fs.",
                    attempt,
                    exc,
                    delay,
                    extra={"event": "REGISTER_RETRY", "attempt": attempt},
                )
                await self._sleep(delay)
            except DentalizationError as exc:
                return await self._fail(self._classify_error(exc, "register"))

        return await self._establish_session(auth_payload, "REGISTER")

    # ==================================================================
    # Status check
    # ==================================================================

    async def check_auth_status(self) -> VerificationResult:
        """Verify the stored session and publish the resulting state.

        ``is_initializing`` flips from ``True`` to ``False`` when the first
        call completes and never returns to ``True``.
        """
        try:
            result = await self._verifier.verify()
        except StorageError as exc:
            self._logger.error(
                "Credential store failed during status check: %s", exc,
                extra={"event": "VERIFY_STORAGE_ERROR"},
            )
            self._session.set_unauthenticated(
                ERROR_MESSAGES[AuthErrorCode.STORAGE_ERROR], AuthErrorCode.STORAGE_ERROR,
            )
            self._session.finish_initializing()
            return VerificationResult(outcome=VerificationOutcome.INVALID, message=str(exc))

        if result.outcome == VerificationOutcome.INVALID or result.user is None:
            if result.message:
                self._session.set_unauthenticated(
                    ERROR_MESSAGES[AuthErrorCode.SESSION_EXPIRED],
                    AuthErrorCode.SESSION_EXPIRED,
                )
            else:
                self._session.set_unauthenticated()
        else:
            self._session.set_authenticated(result.user, stale=result.is_stale)

        await self._refresh_biometric_state()
        self._session.finish_initializing()
        return result

    # ==================================================================
    # Logout
    # ==================================================================

    async def logout(self) -> None:
        """Best-effort server-side logout, then unconditional local clear.

        The remote call is bounded by ``LOGOUT_TIMEOUT_S`` and its failure
        never blocks local cleanup.  The local clear goes through the
        Request Pipeline so that a refresh in flight cannot write its token
        pair back afterwards.  The session always ends unauthenticated; a
        ``StorageError`` from the final clear is re-raised after memory has
        been cleared.
        """
        user_id = "unknown"
        if self._session.is_authenticated:
            user_id = self._session.get_current_user().id

        refresh_token: Optional[str] = None
        try:
            refresh_token = await self._store.get_refresh_token()
        except StorageError as exc:
            self._logger.warning("Could not read refresh token for logout: %s", exc)

        if refresh_token:
            timeout = self._config.LOGOUT_TIMEOUT_S
            try:
                await asyncio.wait_for(self._api.logout(refresh_token, timeout), timeout=timeout)
            except asyncio.TimeoutError:
                self._logger.warning("Server-side logout timed out after %.1fs.", timeout)
            except DentalizationError as exc:
                self._logger.warning("Server-side logout failed: %s", exc)

        try:
            await self._pipeline.invalidate_session()
        finally:
            self._session.set_unauthenticated()
            self._session.set_biometric(available=await self._biometric_usable(), enabled=False)

        self._logger.info(
            "User logged out.",
            extra={"event": "LOGOUT", "user_id": user_id},
        )

    # ==================================================================
    # Biometric
    # ==================================================================

    async def login_with_biometric(self) -> AuthResult:
        """Release stored credentials only after a local biometric assertion.

        Returns ``BIOMETRIC_UNAVAILABLE`` without touching the Credential
        Store when the feature flag is off or the device has no capability.
        A failed assertion stops the flow before any credential is read.
        """
        if not await self._biometric_usable():
            return AuthResult.failure(AuthErrorCode.BIOMETRIC_UNAVAILABLE)

        try:
            if not await self._store.is_biometric_enabled():
                return AuthResult.failure(
                    AuthErrorCode.BIOMETRIC_UNAVAILABLE,
                    "Biometric login has not been enabled on this device.",
                )
            await self._biometric.authenticate("Sign in to Dentalization")
            credentials = await self._store.get_biometric_credentials()
        except BiometricError as exc:
            self._logger.warning(
                "Biometric assertion failed: %s", exc,
                extra={"event": "BIOMETRIC_FAILED"},
            )
            result = AuthResult.failure(AuthErrorCode.BIOMETRIC_FAILED)
            self._session.set_error(result.error_message or "", result.error_code)
            return result
        except StorageError as exc:
            return self._report(self._classify_error(exc, "biometric login"))

        if credentials is None:
            return AuthResult.failure(
                AuthErrorCode.BIOMETRIC_UNAVAILABLE,
                "No stored credentials found. Sign in with your password.",
            )
        return await self.login(credentials.email, credentials.password)

    async def enable_biometric(self, email: str, password: str) -> AuthResult:
        """Store credentials for biometric login after a successful assertion."""
        if not await self._biometric_usable():
            return AuthResult.failure(AuthErrorCode.BIOMETRIC_UNAVAILABLE)

        try:
            await self._biometric.authenticate("Enable biometric sign-in")
            await self._store.store_biometric_credentials(
                BiometricCredentials(email=self.normalize_email(email), password=password),
            )
        except (BiometricError, StorageError) as exc:
            return self._report(self._classify_error(exc, "enable biometric"))

        await self._refresh_biometric_state()
        self._logger.info("Biometric login enabled.", extra={"event": "BIOMETRIC_ENABLED"})
        return AuthResult(success=True)

    async def disable_biometric(self) -> AuthResult:
        try:
            await self._store.clear_biometric_credentials()
        except StorageError as exc:
            return self._report(self._classify_error(exc, "disable biometric"))
        await self._refresh_biometric_state()
        self._logger.info("Biometric login disabled.", extra={"event": "BIOMETRIC_DISABLED"})
        return AuthResult(success=True)

    # ==================================================================
    # Collaborator surface
    # ==================================================================

    async def get_access_token(self) -> Optional[str]:
        """Return the current access token without any network call.

        An authenticated session without a stored token is a bug state and
        forces logout.
        """
        token = await self._token_provider.get_access_token()
        if token is None and self._session.is_authenticated:
            self._logger.error(
                "Authenticated session has no stored access token; forcing logout.",
                extra={"event": "SESSION_INCONSISTENT"},
            )
            await self.logout()
            self._session.set_error(
                ERROR_MESSAGES[AuthErrorCode.SESSION_EXPIRED], AuthErrorCode.SESSION_EXPIRED,
            )
        return token

    async def authorized_request(self, method: str, url: str, **kwargs: Any) -> Any:
        """Authenticated request for collaborators (booking, chat, diagnosis).

        Raises
        ------
        AuthenticationError
            If no session is active.
        SessionExpiredError
            If the session had no stored access token; the session has been
            logged out.
        DentalizationError
            Structured errors from the Request Pipeline, uninterpreted.
        """
        guarded = self._auth_guard(self._send_authorized)
        return await guarded(method, url, **kwargs)

    async def _send_authorized(self, method: str, url: str, **kwargs: Any) -> Any:
        if await self.get_access_token() is None:
            raise SessionExpiredError(ERROR_MESSAGES[AuthErrorCode.SESSION_EXPIRED])
        return await self._pipeline.send(method, url, **kwargs)

    # ==================================================================
    # Password management
    # ==================================================================

    async def request_password_reset(self, email: str) -> AuthResult:
        """Request a reset link.

        Uses an anti-enumeration response: the same success message is
        returned whether or not the email is registered.  Only transport
        failures are reported.
        """
        email_check = self.validate_email(email)
        if not email_check.is_valid:
            return AuthResult.failure(AuthErrorCode.VALIDATION_ERROR, email_check.error_message)

        email = self.normalize_email(email)
        try:
            await self._api.forgot_password(email)
            self._logger.info(
                "Password reset requested.",
                extra={"event": "PASSWORD_RESET_REQUESTED"},
            )
        except TransportError as exc:
            return self._classify_error(exc, "password reset")
        except DentalizationError as exc:
            self._logger.warning("Password reset error: %s", exc)

        return AuthResult(success=True, message=_PASSWORD_RESET_NOTICE)

    async def reset_password(self, token: str, new_password: str) -> AuthResult:
        pw_check = self.validate_password(new_password)
        if not pw_check.is_valid:
            return AuthResult.failure(AuthErrorCode.VALIDATION_ERROR, pw_check.error_message)
        try:
            message = await self._api.reset_password(token, new_password)
        except DentalizationError as exc:
            return self._classify_error(exc, "reset password")
        return AuthResult(success=True, message=message or "Password reset successful.")

    async def verify_email(self, token: str) -> AuthResult:
        try:
            message = await self._api.verify_email(token)
        except DentalizationError as exc:
            return self._classify_error(exc, "verify email")
        return AuthResult(success=True, message=message or "Email verification successful.")

    async def change_password(self, current_password: str, new_password: str) -> AuthResult:
        """Change the password of the signed-in user."""
        pw_check = self.validate_password(new_password)
        if not pw_check.is_valid:
            return AuthResult.failure(AuthErrorCode.VALIDATION_ERROR, pw_check.error_message)
        try:
            message = await self._auth_guard(self._api.change_password)(
                current_password, new_password,
            )
        except AuthenticationError:
            return AuthResult.failure(
                AuthErrorCode.SESSION_EXPIRED, "Sign in before changing your password.",
            )
        except DentalizationError as exc:
            return self._classify_error(exc, "change password")
        return AuthResult(success=True, message=message or "Password changed.")

    async def check_email_exists(self, email: str) -> AuthResult:
        """Ask the backend whether *email* is already registered.

        ``exists`` is ``None`` when the answer could not be determined.
        """
        email_check = self.validate_email(email)
        if not email_check.is_valid:
            return AuthResult.failure(AuthErrorCode.VALIDATION_ERROR, email_check.error_message)
        timeout = min(_CHECK_EMAIL_TIMEOUT_S, self._config.REQUEST_TIMEOUT_S)
        try:
            exists = await self._api.check_email(self.normalize_email(email), timeout)
        except DentalizationError as exc:
            return self._classify_error(exc, "check email")
        return AuthResult(success=True, exists=exists)

    # ==================================================================
    # Internals
    # ==================================================================

    async def _establish_session(self, payload: AuthPayload, event: str) -> AuthResult:
        """Persist tokens and user, then publish the authenticated state."""
        try:
            await self._store.store_tokens(payload.token, payload.refresh_token)
            await self._store.store_user_data(payload.user)
        except StorageError as exc:
            return await self._fail(self._classify_error(exc, event.lower()))

        self._session.set_authenticated(payload.user)
        self._logger.info(
            "User authenticated: %s (role: %s)",
            payload.user.id,
            payload.user.role,
            extra={"event": event, "user_id": payload.user.id},
        )
        return AuthResult(success=True, user=payload.user)

    async def _fail(self, result: AuthResult) -> AuthResult:
        """Discard partial state and publish *result* as unauthenticated."""
        try:
            await self._store.clear_session()
        except StorageError as exc:
            self._logger.error("Could not discard partial session state: %s", exc)
            result = AuthResult.failure(AuthErrorCode.STORAGE_ERROR)
        self._session.set_unauthenticated(result.error_message, result.error_code)
        return result

    def _report(self, result: AuthResult) -> AuthResult:
        self._session.set_error(result.error_message or "", result.error_code)
        return result

    def _reject_input(self, message: Optional[str]) -> AuthResult:
        result = AuthResult.failure(AuthErrorCode.VALIDATION_ERROR, message)
        return self._report(result)

    def _on_session_expired(self) -> None:
        self._logger.warning(
            "Session expired; refresh token rejected.",
            extra={"event": "FORCED_LOGOUT"},
        )
        self._session.set_unauthenticated(
            ERROR_MESSAGES[AuthErrorCode.SESSION_EXPIRED], AuthErrorCode.SESSION_EXPIRED,
        )

    async def _biometric_usable(self) -> bool:
        return self._config.BIOMETRIC_LOGIN_ENABLED and await self._biometric.is_available()

    async def _refresh_biometric_state(self) -> None:
        available = await self._biometric_usable()
        enabled = False
        if available:
            try:
                enabled = await self._store.is_biometric_enabled()
            except StorageError as exc:
                self._logger.warning("Could not read biometric flag: %s", exc)
        self._session.set_biometric(available=available, enabled=enabled)

    @staticmethod
    def _is_retryable(exc: DentalizationError) -> bool:
        if isinstance(exc, TransportError):
            return True
        status = getattr(exc, "status_code", None)
        return status is None or status >= 500

    @staticmethod
    def _safe_backend_message(message: Optional[str]) -> Optional[str]:
        """Return *message* if it is short, printable text; else ``None``."""
        if not message:
            return None
        message = message.strip()
        if not message or len(message) > _MAX_SURFACED_MESSAGE_LENGTH:
            return None
        if _CONTROL_CHAR_RE.search(message) or "<" in message:
            return None
        return message

    def _classify_error(self, exc: DentalizationError, operation: str) -> AuthResult:
        """Map a structured error onto an ``AuthResult`` with one message.

        Parameters
        ----------
        exc:
            The error raised by a lower layer.
        operation:
            Short label used in the audit log.
        """
        if isinstance(exc, TransportError):
            code = AuthErrorCode.TIMEOUT_ERROR if exc.is_timeout else AuthErrorCode.NETWORK_ERROR
            self._logger.warning(
                "Network error during %s: %s", operation, exc,
                extra={"event": "AUTH_NETWORK_ERROR", "operation": operation},
            )
            return AuthResult.failure(code)

        code = AuthErrorCode.UNKNOWN_ERROR
        for error_type, mapped in ERROR_MAP:
            if isinstance(exc, error_type):
                code = mapped
                break

        self._logger.warning(
            "%s failed (%s): %s", operation, code, exc,
            extra={"event": "AUTH_FAILED", "operation": operation, "error_code": str(code)},
        )

        if isinstance(exc, ValidationFailedError):
            return AuthResult.failure(
                code,
                self._safe_backend_message(exc.message),
                field_errors=exc.field_errors,
            )
        return AuthResult.failure(code)
