"""Domain models for the Dentalization session core."""

from dentalization.models.auth_models import (
    AuthErrorCode,
    AuthPayload,
    AuthResult,
    BiometricCredentials,
    CredentialPair,
    DoctorDetails,
    ERROR_MESSAGES,
    PatientDetails,
    RegistrationRequest,
    SessionSnapshot,
    TokenResponse,
    ValidationResult,
    VerificationResult,
)
from dentalization.models.enums import BiometricType, UserRole, VerificationOutcome
from dentalization.models.user import (
    DoctorProfile,
    EmergencyContact,
    InsuranceInfo,
    MedicalHistory,
    PatientProfile,
    UserRecord,
)

__all__ = [
    "AuthErrorCode",
    "AuthPayload",
    "AuthResult",
    "BiometricCredentials",
    "BiometricType",
    "CredentialPair",
    "DoctorDetails",
    "DoctorProfile",
    "ERROR_MESSAGES",
    "EmergencyContact",
    "InsuranceInfo",
    "MedicalHistory",
    "PatientDetails",
    "PatientProfile",
    "RegistrationRequest",
    "SessionSnapshot",
    "TokenResponse",
    "UserRecord",
    "UserRole",
    "ValidationResult",
    "VerificationOutcome",
    "VerificationResult",
]
