"""
Authentication Session Models.

Pydantic models and enumerations for the contracts between
``AuthService`` and its collaborators (UI layer, booking, chat).

Every session operation returns a structured, inspectable result rather
than raw strings or exception side-channels.
"""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

from dentalization.models.enums import UserRole, VerificationOutcome
from dentalization.models.user import UserRecord


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

class AuthErrorCode(StrEnum):
    """Exhaustive enumeration of authentication error categories.

    Used by ``AuthService`` to classify lower-layer errors and by the UI
    layer to decide which feedback (and which extra controls) to show.
    """

    INVALID_CREDENTIALS = "invalid_credentials"
    EMAIL_ALREADY_EXISTS = "email_already_exists"
    NETWORK_ERROR = "network_error"
    TIMEOUT_ERROR = "timeout_error"
    RATE_LIMITED = "rate_limited"
    VALIDATION_ERROR = "validation_error"
    SESSION_EXPIRED = "session_expired"
    STORAGE_ERROR = "storage_error"
    BIOMETRIC_UNAVAILABLE = "biometric_unavailable"
    BIOMETRIC_FAILED = "biometric_failed"
    SERVER_ERROR = "server_error"
    UNKNOWN_ERROR = "unknown_error"


ERROR_MESSAGES: dict[AuthErrorCode, str] = {
    AuthErrorCode.INVALID_CREDENTIALS: "Incorrect email or password.",
    AuthErrorCode.EMAIL_ALREADY_EXISTS: (
        "An account with this email already exists. "
        "Sign in instead, or register with a different email."
    ),
    AuthErrorCode.NETWORK_ERROR: "Cannot reach the server. Check your internet connection.",
    AuthErrorCode.TIMEOUT_ERROR: "The server took too long to respond. Please try again.",
    AuthErrorCode.RATE_LIMITED: "Too many requests. Please wait a moment and try again.",
    AuthErrorCode.VALIDATION_ERROR: "Some of the information entered is invalid.",
    AuthErrorCode.SESSION_EXPIRED: "Your session has expired. Please sign in again.",
    AuthErrorCode.STORAGE_ERROR: (
        "Your session could not be saved on this device. "
        "Check available storage and try again."
    ),
    AuthErrorCode.BIOMETRIC_UNAVAILABLE: "Biometric login is not available on this device.",
    AuthErrorCode.BIOMETRIC_FAILED: "Biometric verification failed. Sign in with your password.",
    AuthErrorCode.SERVER_ERROR: "Server error. Please try again later.",
    AuthErrorCode.UNKNOWN_ERROR: "An unexpected error occurred. Please try again later.",
}


# ---------------------------------------------------------------------------
# Validation result
# ---------------------------------------------------------------------------

class ValidationResult(BaseModel):
    """Result of a single client-side field validation check.

    Attributes
    ----------
    is_valid:
        ``True`` when the value passes the validation rule.
    error_message:
        Human-readable description of the failure, or ``None`` on success.
    """

    is_valid: bool
    error_message: Optional[str] = None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Unified auth response
# ---------------------------------------------------------------------------

class AuthResult(BaseModel):
    """Unified response for every ``AuthService`` operation.

    The UI layer inspects ``success`` to decide the happy-path vs.
    error-path rendering, and uses ``error_code`` to conditionally show
    extra controls (e.g. a "Go to login" button on
    ``EMAIL_ALREADY_EXISTS``).

    Attributes
    ----------
    success:
        ``True`` when the operation completed without error.
    error_code:
        Structured error category (``None`` on success).
    error_message:
        Single human-readable error string (``None`` on success).
    message:
        Informational message on success (e.g. password-reset notice).
    user:
        The authenticated or registered user, when the operation yields one.
    field_errors:
        Per-field validation messages from the backend.
    exists:
        Answer of ``check_email_exists``; ``None`` when undetermined.
    """

    success: bool
    error_code: Optional[AuthErrorCode] = None
    error_message: Optional[str] = None
    message: Optional[str] = None
    user: Optional[UserRecord] = None
    field_errors: dict[str, str] = Field(default_factory=dict)
    exists: Optional[bool] = None

    model_config = {"from_attributes": True}

    @classmethod
    def failure(
        cls,
        code: AuthErrorCode,
        message: Optional[str] = None,
        **extra: Any,
    ) -> "AuthResult":
        """Build a failed result, defaulting to the canned message for *code*."""
        return cls(
            success=False,
            error_code=code,
            error_message=message or ERROR_MESSAGES[code],
            **extra,
        )


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------

class SessionSnapshot(BaseModel):
    """Immutable view of the session state consumed by the UI layer.

    ``is_stale`` is only ever ``True`` together with ``is_authenticated``;
    ``SessionManager`` refuses transitions that would break this.
    """

    is_authenticated: bool = False
    is_loading: bool = False
    is_initializing: bool = True
    is_stale: bool = False
    user: Optional[UserRecord] = None
    error: Optional[str] = None
    error_code: Optional[AuthErrorCode] = None
    biometric_available: bool = False
    biometric_enabled: bool = False

    model_config = {"from_attributes": True, "frozen": True}


class VerificationResult(BaseModel):
    """Terminal classification of one ``SessionVerifier.verify()`` run.

    Attributes
    ----------
    outcome:
        One of ``FRESH``, ``INVALID``, ``RATE_LIMITED``, ``UNREACHABLE``.
    user:
        The backend user on ``FRESH``; the cached user on the stale
        outcomes; ``None`` on ``INVALID``.
    message:
        Diagnostic text for logs and the UI error banner.
    retry_after:
        Seconds the verifier will wait before contacting the backend again.
    """

    outcome: VerificationOutcome
    user: Optional[UserRecord] = None
    message: Optional[str] = None
    retry_after: Optional[float] = None

    model_config = {"from_attributes": True}

    @property
    def is_authenticated(self) -> bool:
        return self.outcome != VerificationOutcome.INVALID

    @property
    def is_stale(self) -> bool:
        return self.outcome in (VerificationOutcome.RATE_LIMITED, VerificationOutcome.UNREACHABLE)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

class CredentialPair(BaseModel):
    """Access and refresh token, always stored and replaced together."""

    access_token: str
    refresh_token: str

    model_config = {"from_attributes": True, "frozen": True}


class TokenResponse(BaseModel):
    """``data`` body of ``POST /api/auth/refresh-token``."""

    token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "extra": "ignore",
    }

    def to_pair(self) -> CredentialPair:
        return CredentialPair(access_token=self.token, refresh_token=self.refresh_token)


class AuthPayload(TokenResponse):
    """``data`` body of the login and register endpoints."""

    user: UserRecord


class BiometricCredentials(BaseModel):
    """Login credentials released only after a biometric assertion."""

    email: str
    password: str

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Registration payloads
# ---------------------------------------------------------------------------

_WHITESPACE_RE: re.Pattern[str] = re.compile(r"\s+")


def _strip_spaces(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return _WHITESPACE_RE.sub("", value)


class _CamelModel(BaseModel):
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "from_attributes": True,
    }


class EmergencyContactInput(_CamelModel):
    name: str = ""
    phone_number: str = ""

    @field_validator("phone_number", mode="after")
    @classmethod
    def _no_spaces(cls, value: str) -> str:
        return _WHITESPACE_RE.sub("", value)


class MedicalInfoInput(_CamelModel):
    allergies: str = ""
    chronic_conditions: str = ""
    additional_info: str = ""


class PatientDetails(_CamelModel):
    """Patient-only registration block, sent nested as ``patientDetails``."""

    bpjs_number: str = ""
    emergency_contact: EmergencyContactInput = Field(default_factory=EmergencyContactInput)
    medical_info: MedicalInfoInput = Field(default_factory=MedicalInfoInput)
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    address: Optional[str] = None


class DoctorDetails(_CamelModel):
    """Doctor-only registration fields, sent flattened at the top level."""

    license_number: str
    specialization: str
    experience: int = 0
    education: Optional[str] = None
    clinic_name: str
    clinic_address: str
    working_hours: Optional[str] = None
    consultation_fee: Optional[float] = None
    bio: str = ""

    @field_validator("license_number", "clinic_name", "clinic_address", mode="after")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class RegistrationRequest(_CamelModel):
    """Role-specific registration request.

    ``to_payload()`` produces the exact JSON body expected by
    ``POST /api/auth/register``: patients always carry a complete
    ``patientDetails`` structure (empty strings where nothing was entered);
    doctors carry their professional fields at the top level.
    """

    email: str
    password: str
    first_name: str
    last_name: str = ""
    role: UserRole
    phone_number: Optional[str] = None
    patient_details: Optional[PatientDetails] = None
    doctor_details: Optional[DoctorDetails] = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "email": self.email.strip().lower(),
            "password": self.password,
            "firstName": self.first_name.strip(),
            "lastName": self.last_name.strip(),
            "role": str(self.role),
        }
        phone = _strip_spaces(self.phone_number)

        if self.role == UserRole.DOCTOR:
            if phone:
                payload["phone"] = phone
            if self.doctor_details is not None:
                payload.update(
                    self.doctor_details.model_dump(by_alias=True, exclude_none=True)
                )
            return payload

        if phone:
            payload["phoneNumber"] = phone
        if self.role == UserRole.PATIENT:
            details = self.patient_details or PatientDetails()
            payload["patientDetails"] = details.model_dump(by_alias=True, exclude_none=True)
        return payload
