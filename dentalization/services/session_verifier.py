"""
Session Verifier.

Reconciles the locally persisted session with the backend's view at
process start or resume.  Every attempt ends in exactly one of four
outcomes:

``FRESH``
    The profile endpoint returned a user.  It replaces the cached record.
``INVALID``
    The backend rejected the session (``401`` after the pipeline's
    refresh-and-retry, or a rejected refresh), or there is no usable local
    session.  Credentials are cleared.
``RATE_LIMITED``
    ``429``.  The local session is kept and marked stale; the client-side
    backoff doubles before the next check.
``UNREACHABLE``
    Transport failure, timeout, ``5xx`` or any other non-auth answer.  The
    cached user is kept and marked stale.

Timeouts are never classified as ``INVALID``.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional

from dentalization.exceptions import (
    ApiError,
    AuthRejectedError,
    RateLimitedError,
    TransportError,
)
from dentalization.logger import StructuredLogger
from dentalization.models.auth_models import VerificationResult
from dentalization.models.enums import VerificationOutcome
from dentalization.models.user import UserRecord
from dentalization.services.auth_api import AuthApi
from dentalization.services.base_service import BaseService
from dentalization.services.credential_store import CredentialStore


class SessionVerifier(BaseService):
    """Classifies a stored session against ``GET /api/auth/profile``.

    Successive calls are spaced by a backoff interval that starts at
    *min_interval_s*, doubles on every ``429`` up to *max_backoff_s* and
    resets after a successful verification.

    Parameters
    ----------
    api:
        Auth endpoint client.
    store:
        Credential Store holding the token pair and cached user.
    logger:
        Structured JSON logger.
    min_interval_s, max_backoff_s:
        Bounds of the client-side backoff.
    sleep, clock:
        Injectable for tests; default to ``asyncio.sleep`` and
        ``time.monotonic``.
    """

    def __init__(
        self,
        api: AuthApi,
        store: CredentialStore,
        logger: StructuredLogger,
        min_interval_s: float = 1.0,
        max_backoff_s: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(logger)
        self._api: AuthApi = api
        self._store: CredentialStore = store
        self._min_interval_s: float = min_interval_s
        self._max_backoff_s: float = max_backoff_s
        self._sleep = sleep
        self._clock = clock
        self._backoff_s: float = min_interval_s
        self._last_call: Optional[float] = None

    @property
    def backoff_s(self) -> float:
        """Current minimum spacing between two profile checks."""
        return self._backoff_s

    async def verify(self) -> VerificationResult:
        """Run one verification attempt and return its classification.

        Raises
        ------
        StorageError
            If the Credential Store cannot be read or cleared.
        """
        access_token = await self._store.get_access_token()
        cached_user = await self._store.get_user_data()
        if not access_token or cached_user is None:
            await self._store.clear_all()
            return self._invalid(None)

        await self._throttle()

        try:
            user = await self._api.fetch_profile()
        except AuthRejectedError as exc:
            # Covers SessionExpiredError: the refresh token itself was rejected.
            await self._store.clear_all()
            return self._invalid(exc.message or "Session rejected by the server.")
        except RateLimitedError as exc:
            return self._rate_limited(cached_user, exc)
        except TransportError as exc:
            return self._unreachable(cached_user, exc.message)
        except ApiError as exc:
            if exc.status_code == 404:
                # The account behind the token no longer exists.
                await self._store.clear_all()
                return self._invalid(exc.message or "User not found.")
            return self._unreachable(cached_user, exc.message)

        await self._store.store_user_data(user)
        self._backoff_s = self._min_interval_s
        self._logger.info(
            "Session verified against backend.",
            extra={"event": "VERIFY_FRESH", "user_id": user.id},
        )
        return VerificationResult(outcome=VerificationOutcome.FRESH, user=user)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _throttle(self) -> None:
        now = self._clock()
        if self._last_call is not None:
            wait = self._backoff_s - (now - self._last_call)
            if wait > 0:
                self._logger.debug("Verification backoff: waiting %.2fs.", wait)
                await self._sleep(wait)
        self._last_call = self._clock()

    def _invalid(self, message: Optional[str]) -> VerificationResult:
        self._logger.info(
            "Stored session is invalid: %s", message or "no local session",
            extra={"event": "VERIFY_INVALID"},
        )
        return VerificationResult(outcome=VerificationOutcome.INVALID, message=message)

    def _rate_limited(self, cached_user: UserRecord, exc: RateLimitedError) -> VerificationResult:
        self._backoff_s = min(self._backoff_s * 2, self._max_backoff_s)
        retry_after = max(self._backoff_s, exc.retry_after or 0.0)
        self._logger.warning(
            "Profile check rate limited; backing off %.1fs.", retry_after,
            extra={"event": "VERIFY_RATE_LIMITED"},
        )
        return VerificationResult(
            outcome=VerificationOutcome.RATE_LIMITED,
            user=cached_user,
            message=exc.message,
            retry_after=retry_after,
        )

    def _unreachable(self, cached_user: UserRecord, message: str) -> VerificationResult:
        self._logger.warning(
            "Backend unreachable during verification; using cached session: %s",
            message,
            extra={"event": "VERIFY_UNREACHABLE"},
        )
        return VerificationResult(
            outcome=VerificationOutcome.UNREACHABLE,
            user=cached_user,
            message=message,
        )
