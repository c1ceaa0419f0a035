"""
User Model.

``UserRecord`` mirrors the ``/api/auth/profile`` payload.  The nested
profile is role-discriminated: patients carry ``PatientProfile``, doctors
carry ``DoctorProfile``.  Several patient fields arrive from the backend as
JSON strings embedded in JSON (``emergencyContact``, ``medicalHistory``,
``insuranceInfo``); they are parsed here, once, with parse-or-default
semantics so no caller ever re-parses them.

Unknown backend fields are kept (``extra="allow"``) so the cached record
round-trips through the Credential Store without losing data.
"""

from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from dentalization.models.enums import UserRole

_M = TypeVar("_M", bound=BaseModel)

_CAMEL_CONFIG = {
    "from_attributes": True,
    "populate_by_name": True,
    "alias_generator": to_camel,
    "extra": "allow",
}


def _parse_embedded(value: Any, model: Type[_M]) -> Optional[_M]:
    """Parse a nested object that may arrive as a dict or a JSON string.

    Returns ``None`` for empty values and for anything that cannot be
    parsed into *model*.
    """
    if value is None or value == "":
        return None
    if isinstance(value, model):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped.startswith("{"):
            return None
        try:
            value = json.loads(stripped)
        except json.JSONDecodeError:
            return None
    if not isinstance(value, dict):
        return None
    try:
        return model.model_validate(value)
    except ValidationError:
        return None


# ---------------------------------------------------------------------------
# Embedded patient structures
# ---------------------------------------------------------------------------

class EmergencyContact(BaseModel):
    """Patient emergency contact."""

    name: Optional[str] = None
    phone: Optional[str] = None
    relation: Optional[str] = None

    model_config = _CAMEL_CONFIG

    @model_validator(mode="before")
    @classmethod
    def _accept_phone_number(cls, data: Any) -> Any:
        # Registration sends ``phoneNumber``; the profile endpoint sends ``phone``.
        if isinstance(data, dict) and "phone" not in data and "phoneNumber" in data:
            data = {**data, "phone": data["phoneNumber"]}
            data.pop("phoneNumber")
        return data


class MedicalHistory(BaseModel):
    """Patient medical history summary."""

    conditions: Optional[Union[list[str], str]] = None
    smoking_status: Optional[str] = None
    alcohol_consumption: Optional[str] = None

    model_config = _CAMEL_CONFIG


class InsuranceInfo(BaseModel):
    """Patient insurance details."""

    provider: Optional[str] = None
    number: Optional[str] = None

    model_config = _CAMEL_CONFIG


# ---------------------------------------------------------------------------
# Role-specific profiles
# ---------------------------------------------------------------------------

class _ProfileBase(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    profile_picture: Optional[str] = None
    profile_complete: bool = False

    model_config = _CAMEL_CONFIG

    @field_validator("profile_picture", mode="before")
    @classmethod
    def _drop_placeholder_picture(cls, value: Any) -> Any:
        if isinstance(value, str) and (value in ("null", "undefined") or "undefined" in value):
            return None
        return value

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


class PatientProfile(_ProfileBase):
    """Profile attached to ``PATIENT`` users."""

    date_of_birth: Optional[date] = None
    gender: Optional[str] = None
    address: Optional[str] = None
    bpjs_number: Optional[str] = None
    emergency_contact: Optional[EmergencyContact] = None
    medical_history: Optional[MedicalHistory] = None
    insurance_info: Optional[InsuranceInfo] = None

    @field_validator("date_of_birth", mode="before")
    @classmethod
    def _date_only(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str):
            try:
                return date.fromisoformat(value.strip()[:10])
            except ValueError:
                return None
        return value

    @field_validator("emergency_contact", mode="before")
    @classmethod
    def _parse_emergency_contact(cls, value: Any) -> Optional[EmergencyContact]:
        return _parse_embedded(value, EmergencyContact)

    @field_validator("medical_history", mode="before")
    @classmethod
    def _parse_medical_history(cls, value: Any) -> Optional[MedicalHistory]:
        return _parse_embedded(value, MedicalHistory)

    @field_validator("insurance_info", mode="before")
    @classmethod
    def _parse_insurance_info(cls, value: Any) -> Optional[InsuranceInfo]:
        return _parse_embedded(value, InsuranceInfo)


class DoctorProfile(_ProfileBase):
    """Profile attached to ``DOCTOR`` users."""

    specialization: Optional[str] = None
    license_number: Optional[str] = None
    clinic_name: Optional[str] = None
    clinic_address: Optional[str] = None
    experience_years: Optional[int] = None


ProfileRecord = Union[PatientProfile, DoctorProfile]

_PROFILE_BY_ROLE: dict[UserRole, Type[_ProfileBase]] = {
    UserRole.PATIENT: PatientProfile,
    UserRole.DOCTOR: DoctorProfile,
}


# ---------------------------------------------------------------------------
# User record
# ---------------------------------------------------------------------------

class UserRecord(BaseModel):
    """Authenticated user as returned by the backend.

    ``profile`` is chosen by ``role``; roles without a profile shape
    (``ADMIN``) always carry ``None``.
    """

    id: str
    email: Optional[str] = None
    role: UserRole
    status: Optional[str] = None
    profile: Optional[ProfileRecord] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = _CAMEL_CONFIG

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @model_validator(mode="before")
    @classmethod
    def _dispatch_profile(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        raw_profile = data.get("profile")
        if raw_profile is None or isinstance(raw_profile, _ProfileBase):
            return data
        try:
            role = UserRole(data.get("role"))
        except ValueError:
            # Field validation reports the bad role.
            return data
        profile_model = _PROFILE_BY_ROLE.get(role)
        parsed = _parse_embedded(raw_profile, profile_model) if profile_model else None
        return {**data, "profile": parsed}

    @property
    def display_name(self) -> str:
        if self.profile is not None and self.profile.full_name:
            return self.profile.full_name
        return self.email or self.id

    def to_storage_json(self) -> str:
        """Serialise in the backend's camelCase shape for the Credential Store."""
        return self.model_dump_json(by_alias=True)
