"""
Session Core Exception Hierarchy.

Lower layers (Credential Store, Request Pipeline, Auth API) raise these
structured errors uninterpreted.  ``AuthService`` is the only place that
turns them into user-facing messages.

Taxonomy::

    DentalizationError
    ├── StorageError             local persistence medium failed
    ├── BiometricError           biometric assertion failed or unavailable
    ├── TransportError           network unreachable / timeout
    └── ApiError                 backend answered with a non-2xx status
        ├── AuthRejectedError    401 / 403
        │   └── SessionExpiredError   refresh token rejected
        ├── ValidationFailedError     400 / 422 with field messages
        ├── ConflictError             duplicate resource
        ├── RateLimitedError          429
        └── ServerError               5xx and anything unclassified
"""

from __future__ import annotations

from typing import Any, Optional

import httpx


class DentalizationError(Exception):
    """Base class for every error raised by the session core."""


class StorageError(DentalizationError):
    """The local credential storage medium failed (disk, SQLite, salt file)."""


class BiometricError(DentalizationError):
    """A biometric assertion could not be obtained."""


class TransportError(DentalizationError):
    """The backend could not be reached.

    Recoverable and retry-eligible; never a reason to destroy session state.
    """

    def __init__(self, message: str, *, is_timeout: bool = False) -> None:
        super().__init__(message)
        self.message: str = message
        self.is_timeout: bool = is_timeout


class ApiError(DentalizationError):
    """The backend answered with an error status."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message: str = message
        self.status_code: Optional[int] = status_code
        self.payload: dict[str, Any] = payload or {}


class AuthRejectedError(ApiError):
    """Explicit 401/403 or invalid credentials."""


class SessionExpiredError(AuthRejectedError):
    """The refresh token was rejected; credentials have been cleared."""


class ValidationFailedError(ApiError):
    """400/422 carrying field-level messages."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        payload: Optional[dict[str, Any]] = None,
        field_errors: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(message, status_code=status_code, payload=payload)
        self.field_errors: dict[str, str] = field_errors or {}


class ConflictError(ApiError):
    """Duplicate resource, e.g. an email that is already registered."""


class RateLimitedError(ApiError):
    """429 or another throttling signal."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        payload: Optional[dict[str, Any]] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, status_code=status_code, payload=payload)
        self.retry_after: Optional[float] = retry_after


class ServerError(ApiError):
    """5xx or an unclassified error status."""


# ---------------------------------------------------------------------------
# Response classification
# ---------------------------------------------------------------------------

_CONFLICT_MARKERS: tuple[str, ...] = ("already exists", "already registered", "email_exists")


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _field_errors(body: dict[str, Any]) -> dict[str, str]:
    """Collect ``{field: message}`` pairs from the backend's ``errors`` key.

    Accepts both the express-validator list shape
    (``[{"path": "email", "msg": "..."}]``) and a plain mapping.
    """
    raw = body.get("errors")
    errors: dict[str, str] = {}
    if isinstance(raw, dict):
        for field, message in raw.items():
            errors[str(field)] = str(message)
    elif isinstance(raw, list):
        for item in raw:
            if isinstance(item, dict):
                field = item.get("path") or item.get("param") or item.get("field") or "_"
                message = item.get("msg") or item.get("message") or ""
                errors[str(field)] = str(message)
            elif isinstance(item, str):
                errors.setdefault("_", item)
    return errors


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def error_from_response(response: httpx.Response) -> ApiError:
    """Map a non-2xx ``httpx.Response`` onto the error taxonomy."""
    status = response.status_code
    body = _json_body(response)
    message = str(body.get("message") or response.reason_phrase or f"HTTP {status}")
    lowered = message.lower()

    if status == 409 or (status == 400 and any(m in lowered for m in _CONFLICT_MARKERS)):
        return ConflictError(message, status_code=status, payload=body)
    if status in (400, 422):
        return ValidationFailedError(
            message,
            status_code=status,
            payload=body,
            field_errors=_field_errors(body),
        )
    if status in (401, 403):
        return AuthRejectedError(message, status_code=status, payload=body)
    if status == 429:
        return RateLimitedError(
            message,
            status_code=status,
            payload=body,
            retry_after=_retry_after(response),
        )
    return ServerError(message, status_code=status, payload=body)
