"""Shared fixtures: temporary credential database, mock backend, wired services."""

import inspect
import os

# Console-only logging and no .env lookups leaking into the suite.
os.environ.setdefault("LOG_FILE", "")

from typing import Any, Callable, Optional, Union

import httpx
import pytest

from dentalization.auth import SessionManager
from dentalization.config import AppConfig
from dentalization.database import DatabaseManager
from dentalization.logger import StructuredLogger
from dentalization.schema import initialize_schema
from dentalization.services import create_services
from dentalization.services.credential_store import CredentialStore

Handler = Callable[[httpx.Request], Any]
Reply = Union[httpx.Response, Handler]


def envelope(data: Any = None, message: str = "OK", status: int = 200, **headers: str) -> httpx.Response:
    """Backend-style ``{success, message, data}`` response."""
    body = {"success": 200 <= status < 300, "message": message, "data": data}
    return httpx.Response(status, json=body, headers=headers)


def error(status: int, message: str, **extra: Any) -> httpx.Response:
    return httpx.Response(status, json={"success": False, "message": message, **extra})


class FakeBackend:
    """Route table for ``httpx.MockTransport``.

    Each route holds a queue of replies; the last reply repeats once the
    queue is drained.  A reply is either a response or a (sync or async)
    callable taking the request.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[Reply]] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, *replies: Reply) -> None:
        self.routes[(method.upper(), path)] = list(replies)

    def calls(self, path: str, method: Optional[str] = None) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.url.path == path and (method is None or r.method == method.upper())
        ]

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        replies = self.routes.get((request.method, request.url.path))
        if not replies:
            return error(404, f"No route for {request.method} {request.url.path}")
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if callable(reply):
            reply = reply(request)
            if inspect.isawaitable(reply):
                reply = await reply
        # Fresh copy: a repeating reply must not share state between requests.
        return httpx.Response(reply.status_code, headers=reply.headers, content=reply.content)

    ok = staticmethod(envelope)
    fail = staticmethod(error)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def config(tmp_path) -> AppConfig:
    return AppConfig(
        API_BASE_URL="http://dentalization.test",
        CREDENTIAL_DB_PATH=str(tmp_path / "credentials.db"),
        CREDENTIAL_SALT_PATH=str(tmp_path / "salt"),
        CREDENTIAL_KDF_ITERATIONS=1_000,
        REGISTRATION_RETRY_BASE_DELAY_S=0.0,
        VERIFY_MIN_INTERVAL_S=0.0,
        LOGOUT_TIMEOUT_S=0.5,
        LOG_FILE="",
    )


@pytest.fixture
def logger() -> StructuredLogger:
    return StructuredLogger(name="dentalization.tests", log_file="")


@pytest.fixture
def db(config, logger):
    manager = DatabaseManager(sqlite_path=config.CREDENTIAL_DB_PATH, logger=logger)
    initialize_schema(manager.sqlite, logger)
    yield manager
    manager.close()


@pytest.fixture
def store(db, config, logger) -> CredentialStore:
    return CredentialStore(
        db=db,
        logger=logger,
        salt_path=config.salt_path,
        kdf_iterations=config.CREDENTIAL_KDF_ITERATIONS,
    )


@pytest.fixture
def session() -> SessionManager:
    return SessionManager()


@pytest.fixture
async def services(db, config, session, logger, backend):
    container = create_services(
        db=db,
        config=config,
        session=session,
        logger=logger,
        transport=backend.transport,
    )
    yield container
    await container["request_pipeline"].close()


@pytest.fixture
def patient_payload() -> dict[str, Any]:
    return {
        "id": 17,
        "email": "sari@example.com",
        "role": "PATIENT",
        "status": "ACTIVE",
        "profile": {
            "firstName": "Sari",
            "lastName": "Wulandari",
            "phoneNumber": "081234567890",
            "profilePicture": "undefined",
            "dateOfBirth": "1994-03-21T00:00:00.000Z",
            "bpjsNumber": "0001234567890",
            "emergencyContact": '{"name": "Budi", "phone": "0811111111", "relation": "spouse"}',
            "medicalHistory": "not json",
        },
        "createdAt": "2024-01-05T08:00:00Z",
        "preferredLanguage": "id",
    }


@pytest.fixture
def doctor_payload() -> dict[str, Any]:
    return {
        "id": "d-2",
        "email": "dr.andi@example.com",
        "role": "DOCTOR",
        "profile": {
            "firstName": "Andi",
            "lastName": "Pratama",
            "specialization": "Orthodontics",
            "licenseNumber": "STR-99812",
            "clinicName": "Senyum Sehat",
            "experienceYears": 8,
        },
    }
