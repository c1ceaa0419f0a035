"""
Request Pipeline.

Explicit middleware around one ``httpx.AsyncClient``: bearer injection on
the way out, one-shot refresh-and-retry on ``401`` on the way back.

Guarantees
----------
- At most one refresh attempt and at most one retry per original call,
  however many times the backend repeats ``401``.
- Refresh is single-flight: concurrent ``401`` responses wait on one
  ``asyncio.Lock``; a waiter whose token was already rotated by another
  refresh retries with the current token instead of refreshing again.
- An explicit refresh rejection clears the Credential Store, notifies
  session-expired listeners and raises ``SessionExpiredError``.  A refresh
  that merely cannot reach the backend raises ``TransportError`` and leaves
  credentials alone.
- Every session end (logout or forced logout) bumps a session epoch.  A
  request that started under an older epoch never writes refreshed tokens
  and is never retried.
- A JWT access token that is already past its ``exp`` is refreshed before
  dispatch instead of waiting for the ``401``.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, NoReturn, Optional, Union

import httpx
from pydantic import ValidationError

from dentalization.config import AppConfig
from dentalization.exceptions import (
    ServerError,
    SessionExpiredError,
    TransportError,
    error_from_response,
)
from dentalization.logger import StructuredLogger
from dentalization.models.auth_models import CredentialPair, TokenResponse
from dentalization.services.base_service import BaseService
from dentalization.services.credential_store import CredentialStore
from dentalization.services.token_provider import TokenProvider

REFRESH_PATH: str = "/api/auth/refresh-token"

SessionExpiredListener = Callable[[], Union[Awaitable[None], None]]


def unwrap_envelope(body: Any) -> Any:
    """Return ``body["data"]`` for ``{success, message, data}`` envelopes."""
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


def parse_json_body(response: httpx.Response) -> Any:
    """Decode a successful response body, unwrapping the backend envelope.

    Returns ``None`` for empty bodies.

    Raises
    ------
    ServerError
        If a non-empty body is not valid JSON.
    """
    if not response.content:
        return None
    try:
        return unwrap_envelope(response.json())
    except ValueError as exc:
        raise ServerError(
            "The server returned a malformed response.",
            status_code=response.status_code,
        ) from exc


class RequestPipeline(BaseService):
    """Authenticated HTTP client for the Dentalization backend.

    Parameters
    ----------
    config:
        Supplies ``API_BASE_URL``, ``REQUEST_TIMEOUT_S`` and the debug
        header settings.
    store:
        Credential Store; written only by the refresh path.
    token_provider:
        Source of the bearer token for outbound requests.
    logger:
        Structured JSON logger.
    transport:
        Optional ``httpx`` transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        config: AppConfig,
        store: CredentialStore,
        token_provider: TokenProvider,
        logger: StructuredLogger,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(logger)
        self._store: CredentialStore = store
        self._token_provider: TokenProvider = token_provider
        self._refresh_lock: asyncio.Lock = asyncio.Lock()
        self._epoch: int = 0
        self._listeners: list[SessionExpiredListener] = []

        headers: dict[str, str] = {"Accept": "application/json"}
        if config.DEBUG_MODE:
            headers["X-App-Version"] = config.APP_VERSION
            headers["X-Debug-Mode"] = "true"

        self._client: httpx.AsyncClient = httpx.AsyncClient(
            base_url=config.API_BASE_URL,
            timeout=config.REQUEST_TIMEOUT_S,
            headers=headers,
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_session_expired_listener(
        self, listener: SessionExpiredListener,
    ) -> Callable[[], None]:
        """Register *listener* for forced logouts; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        authenticated: bool = True,
    ) -> httpx.Response:
        """Dispatch a request, recovering once from an expired access token.

        Non-2xx responses are returned, not raised; use :meth:`send` for
        the raising variant.

        Raises
        ------
        TransportError
            The backend could not be reached (``is_timeout`` for timeouts).
        SessionExpiredError
            The refresh token was rejected, or the session ended while the
            token was being refreshed.
        """
        if not authenticated:
            return await self._dispatch(method, url, None, json, params, headers, timeout)

        epoch = self._epoch
        token = await self._token_provider.get_access_token()
        refreshed = False
        if token and await self._token_provider.is_token_likely_expired():
            self._logger.debug("Access token past its expiry; refreshing before %s %s.", method, url)
            fresh = await self._refresh_after_unauthorized(token, epoch)
            if fresh is not None:
                token, refreshed = fresh, True

        response = await self._dispatch(method, url, token, json, params, headers, timeout)
        if response.status_code != 401 or refreshed:
            return response

        new_token = await self._refresh_after_unauthorized(token, epoch)
        if new_token is None:
            return response

        self._ensure_epoch(epoch)
        self._logger.debug("Retrying %s %s with refreshed token.", method, url)
        return await self._dispatch(method, url, new_token, json, params, headers, timeout)

    async def send(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        authenticated: bool = True,
    ) -> Any:
        """Like :meth:`request`, but return the unwrapped ``data`` body.

        Raises
        ------
        ApiError
            A subclass chosen by :func:`error_from_response` for non-2xx.
        TransportError, SessionExpiredError
            As for :meth:`request`.
        """
        response = await self.request(
            method,
            url,
            json=json,
            params=params,
            headers=headers,
            timeout=timeout,
            authenticated=authenticated,
        )
        if not response.is_success:
            raise error_from_response(response)
        return parse_json_body(response)

    async def invalidate_session(self) -> None:
        """End the current session and wipe the Credential Store.

        The epoch moves first, so a refresh already in flight discards its
        token pair; the wipe then waits for that refresh to leave the lock.

        Raises
        ------
        StorageError
            If the Credential Store cannot be cleared.
        """
        self._epoch += 1
        async with self._refresh_lock:
            await self._store.clear_all()

    async def close(self) -> None:
        """Release the underlying HTTP connection pool."""
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def _ensure_epoch(self, epoch: int) -> None:
        if epoch != self._epoch:
            self._logger.info(
                "Session ended while a request was in flight; not retrying.",
                extra={"event": "REFRESH_DISCARDED"},
            )
            raise SessionExpiredError("You have been signed out.")

    async def _refresh_after_unauthorized(
        self, sent_token: Optional[str], epoch: int,
    ) -> Optional[str]:
        """Return a token to retry with, or ``None`` when no retry is possible."""
        async with self._refresh_lock:
            self._ensure_epoch(epoch)
            refresh_token = await self._store.get_refresh_token()
            if not refresh_token:
                self._logger.info("401 received and no refresh token stored.")
                return None

            current = await self._store.get_access_token()
            if current and current != sent_token:
                # Rotated by a concurrent refresh while this request was in flight.
                return current

            pair = await self._call_refresh(refresh_token)
            self._ensure_epoch(epoch)
            await self._store.store_tokens(pair.access_token, pair.refresh_token)
            self._logger.info("Access token refreshed.", extra={"event": "TOKEN_REFRESHED"})
            return pair.access_token

    async def _call_refresh(self, refresh_token: str) -> CredentialPair:
        response = await self._dispatch(
            "POST", REFRESH_PATH, None, {"refreshToken": refresh_token}, None, None, None,
        )

        if response.is_success:
            try:
                return TokenResponse.model_validate(parse_json_body(response)).to_pair()
            except ValidationError as exc:
                raise ServerError(
                    "The refresh endpoint returned an unusable token pair.",
                    status_code=response.status_code,
                ) from exc

        if 400 <= response.status_code < 500 and response.status_code != 429:
            await self._expire_session(response)

        # 429 and 5xx: the refresh token may still be good; keep credentials.
        raise error_from_response(response)

    async def _expire_session(self, response: httpx.Response) -> NoReturn:
        self._logger.warning(
            "Refresh token rejected (HTTP %d). Forcing logout.",
            response.status_code,
            extra={"event": "SESSION_EXPIRED"},
        )
        self._epoch += 1
        await self._store.clear_all()
        for listener in list(self._listeners):
            try:
                result = listener()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self._logger.error("Session-expired listener failed.", exc_info=True)
        rejected = error_from_response(response)
        raise SessionExpiredError(
            "Your session has expired. Please sign in again.",
            status_code=response.status_code,
            payload=rejected.payload,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _dispatch(
        self,
        method: str,
        url: str,
        token: Optional[str],
        json: Any,
        params: Optional[dict[str, Any]],
        headers: Optional[dict[str, str]],
        timeout: Optional[float],
    ) -> httpx.Response:
        merged: dict[str, str] = dict(headers or {})
        if token:
            merged["Authorization"] = f"Bearer {token}"

        kwargs: dict[str, Any] = {"json": json, "params": params, "headers": merged}
        if timeout is not None:
            kwargs["timeout"] = timeout

        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            self._logger.warning("%s %s timed out.", method, url)
            raise TransportError(f"Request to {url} timed out.", is_timeout=True) from exc
        except httpx.TransportError as exc:
            self._logger.warning("%s %s failed: %s", method, url, exc)
            raise TransportError(f"Cannot reach the server: {exc}") from exc
