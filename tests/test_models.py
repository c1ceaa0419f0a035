"""User record parsing and registration payload shaping."""

from datetime import date

import pytest
from pydantic import ValidationError

from dentalization.models import (
    DoctorDetails,
    DoctorProfile,
    PatientDetails,
    PatientProfile,
    RegistrationRequest,
    TokenResponse,
    UserRecord,
    UserRole,
)


def test_patient_profile_is_parsed_by_role(patient_payload):
    user = UserRecord.model_validate(patient_payload)

    assert user.id == "17"
    assert user.role == UserRole.PATIENT
    assert isinstance(user.profile, PatientProfile)
    assert user.profile.date_of_birth == date(1994, 3, 21)
    assert user.profile.bpjs_number == "0001234567890"
    assert user.display_name == "Sari Wulandari"


def test_embedded_json_strings_are_parsed_once(patient_payload):
    profile = UserRecord.model_validate(patient_payload).profile

    assert profile.emergency_contact.name == "Budi"
    assert profile.emergency_contact.relation == "spouse"
    # Malformed embedded JSON falls back to "absent".
    assert profile.medical_history is None
    assert profile.insurance_info is None


def test_embedded_object_may_arrive_as_dict(patient_payload):
    patient_payload["profile"]["insuranceInfo"] = {"provider": "BPJS", "number": "123"}
    patient_payload["profile"]["emergencyContact"] = {"name": "Ayu", "phoneNumber": "0812"}

    profile = UserRecord.model_validate(patient_payload).profile

    assert profile.insurance_info.provider == "BPJS"
    assert profile.emergency_contact.phone == "0812"


@pytest.mark.parametrize("picture", ["null", "undefined", "https://cdn.example.com/undefined.jpg"])
def test_placeholder_pictures_are_dropped(patient_payload, picture):
    patient_payload["profile"]["profilePicture"] = picture
    assert UserRecord.model_validate(patient_payload).profile.profile_picture is None


def test_real_picture_is_kept(patient_payload):
    patient_payload["profile"]["profilePicture"] = "https://cdn.example.com/sari.jpg"
    profile = UserRecord.model_validate(patient_payload).profile
    assert profile.profile_picture == "https://cdn.example.com/sari.jpg"


def test_invalid_date_of_birth_is_absent(patient_payload):
    patient_payload["profile"]["dateOfBirth"] = "not a date"
    assert UserRecord.model_validate(patient_payload).profile.date_of_birth is None


def test_doctor_profile(doctor_payload):
    user = UserRecord.model_validate(doctor_payload)

    assert isinstance(user.profile, DoctorProfile)
    assert user.profile.license_number == "STR-99812"
    assert user.profile.experience_years == 8


def test_admin_has_no_profile():
    user = UserRecord.model_validate(
        {"id": "a1", "email": "admin@example.com", "role": "ADMIN", "profile": {"firstName": "Root"}},
    )
    assert user.profile is None
    assert user.display_name == "admin@example.com"


def test_unknown_role_is_rejected():
    with pytest.raises(ValidationError):
        UserRecord.model_validate({"id": "x", "role": "NURSE"})


def test_storage_json_round_trips_unknown_fields(patient_payload):
    user = UserRecord.model_validate(patient_payload)

    restored = UserRecord.model_validate_json(user.to_storage_json())

    assert restored.model_dump() == user.model_dump()
    assert restored.model_extra["preferredLanguage"] == "id"


def test_token_response_requires_both_tokens():
    pair = TokenResponse.model_validate({"token": "a", "refreshToken": "r"}).to_pair()
    assert (pair.access_token, pair.refresh_token) == ("a", "r")

    with pytest.raises(ValidationError):
        TokenResponse.model_validate({"token": "a"})
    with pytest.raises(ValidationError):
        TokenResponse.model_validate({"token": "", "refreshToken": "r"})


def test_patient_payload_always_carries_details():
    payload = RegistrationRequest(
        email=" Sari@Example.COM",
        password="Secret123",
        first_name=" Sari ",
        role=UserRole.PATIENT,
        phone_number="0812 345",
    ).to_payload()

    assert payload["email"] == "sari@example.com"
    assert payload["firstName"] == "Sari"
    assert payload["phoneNumber"] == "0812345"
    assert payload["patientDetails"] == PatientDetails().model_dump(by_alias=True, exclude_none=True)
    assert payload["patientDetails"]["bpjsNumber"] == ""


def test_doctor_payload_is_flattened():
    payload = RegistrationRequest(
        email="dr@example.com",
        password="Secret123",
        first_name="Andi",
        role=UserRole.DOCTOR,
        phone_number="0813 999",
        doctor_details=DoctorDetails(
            license_number=" STR-1 ",
            specialization="Endodontics",
            experience=5,
            clinic_name="Senyum",
            clinic_address="Jl. Merdeka 1",
        ),
    ).to_payload()

    assert payload["phone"] == "0813999"
    assert "phoneNumber" not in payload
    assert "patientDetails" not in payload
    assert payload["licenseNumber"] == "STR-1"
    assert payload["clinicAddress"] == "Jl. Merdeka 1"
    assert payload["experience"] == 5
    assert payload["role"] == "DOCTOR"
