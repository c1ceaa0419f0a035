"""
Shared Enumerations for Session Core Models.

StrEnum values compare equal to their string equivalents, so backend
payloads like ``{"role": "PATIENT"}`` validate directly.
"""

from __future__ import annotations
from enum import StrEnum


class UserRole(StrEnum):
    """Roles issued by the backend.

    Role decides which profile shape a user carries and which navigator the
    UI layer mounts after ``check_auth_status`` completes.
    """

    PATIENT = "PATIENT"
    DOCTOR = "DOCTOR"
    ADMIN = "ADMIN"


class VerificationOutcome(StrEnum):
    """Terminal classification of a session verification attempt."""

    FRESH = "FRESH"
    INVALID = "INVALID"
    RATE_LIMITED = "RATE_LIMITED"
    UNREACHABLE = "UNREACHABLE"


class BiometricType(StrEnum):
    """Biometric capabilities a platform provider may expose."""

    FACE_ID = "FACE_ID"
    FINGERPRINT = "FINGERPRINT"
