"""
Auth API Client.

Thin endpoint client for ``/api/auth/*``.  Each method performs exactly
one call through the Request Pipeline and returns typed models; errors
propagate uninterpreted as the structured exception taxonomy.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
from pydantic import BaseModel, ValidationError

from dentalization.exceptions import ServerError, error_from_response
from dentalization.logger import StructuredLogger
from dentalization.models.auth_models import AuthPayload
from dentalization.models.user import UserRecord
from dentalization.services.base_service import BaseService
from dentalization.services.request_pipeline import RequestPipeline, parse_json_body

LOGIN_PATH: str = "/api/auth/login"
REGISTER_PATH: str = "/api/auth/register"
PROFILE_PATH: str = "/api/auth/profile"
LOGOUT_PATH: str = "/api/auth/logout"
FORGOT_PASSWORD_PATH: str = "/api/auth/forgot-password"
RESET_PASSWORD_PATH: str = "/api/auth/reset-password"
VERIFY_EMAIL_PATH: str = "/api/auth/verify-email"
CHANGE_PASSWORD_PATH: str = "/api/auth/change-password"
CHECK_EMAIL_PATH: str = "/api/auth/check-email"


def _validate(model: type[BaseModel], data: Any, what: str) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ServerError(f"The server returned an unusable {what}.") from exc


def _message_of(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("message"), str):
        return body["message"]
    return None


class AuthApi(BaseService):
    """Endpoint client for the backend's auth routes.

    Parameters
    ----------
    pipeline:
        The Request Pipeline every call goes through.
    logger:
        Structured JSON logger.
    """

    def __init__(self, pipeline: RequestPipeline, logger: StructuredLogger) -> None:
        super().__init__(logger)
        self._pipeline: RequestPipeline = pipeline

    async def login(self, email: str, password: str) -> AuthPayload:
        data = await self._pipeline.send(
            "POST",
            LOGIN_PATH,
            json={"email": email, "password": password},
            authenticated=False,
        )
        return _validate(AuthPayload, data, "login response")

    async def register(self, payload: dict[str, Any]) -> AuthPayload:
        data = await self._pipeline.send(
            "POST", REGISTER_PATH, json=payload, authenticated=False,
        )
        return _validate(AuthPayload, data, "registration response")

    async def fetch_profile(self) -> UserRecord:
        """``GET /api/auth/profile``; the body may nest the user under ``user``."""
        data = await self._pipeline.send("GET", PROFILE_PATH)
        if isinstance(data, dict) and "id" not in data and isinstance(data.get("user"), dict):
            data = data["user"]
        return _validate(UserRecord, data, "profile")

    async def logout(self, refresh_token: Optional[str], timeout: float) -> None:
        """``POST /api/auth/logout``; the body token alone identifies the session."""
        await self._pipeline.send(
            "POST",
            LOGOUT_PATH,
            json={"refreshToken": refresh_token},
            timeout=timeout,
            authenticated=False,
        )

    async def forgot_password(self, email: str) -> Optional[str]:
        return await self._post_for_message(
            FORGOT_PASSWORD_PATH, {"email": email}, authenticated=False,
        )

    async def reset_password(self, token: str, new_password: str) -> Optional[str]:
        return await self._post_for_message(
            RESET_PASSWORD_PATH,
            {"token": token, "password": new_password},
            authenticated=False,
        )

    async def verify_email(self, token: str) -> Optional[str]:
        return await self._post_for_message(
            VERIFY_EMAIL_PATH, {"token": token}, authenticated=False,
        )

    async def change_password(self, current_password: str, new_password: str) -> Optional[str]:
        return await self._post_for_message(
            CHANGE_PASSWORD_PATH,
            {"currentPassword": current_password, "newPassword": new_password},
            method="PUT",
        )

    async def check_email(self, email: str, timeout: float) -> Optional[bool]:
        """Ask whether *email* is registered.

        ``409`` means it exists; ``404`` means the backend has no such
        route, so availability is assumed.  Other errors raise.
        """
        response = await self._pipeline.request(
            "POST",
            CHECK_EMAIL_PATH,
            json={"email": email},
            timeout=timeout,
            authenticated=False,
        )
        if response.status_code == 409:
            return True
        if response.status_code == 404:
            self._logger.info("check-email endpoint unavailable; assuming email is free.")
            return False
        if not response.is_success:
            raise error_from_response(response)

        data = parse_json_body(response)
        body = response.json() if response.content else None
        for source in (body, data):
            if isinstance(source, dict) and isinstance(source.get("exists"), bool):
                return source["exists"]
        return None

    async def _post_for_message(
        self,
        path: str,
        body: dict[str, Any],
        *,
        method: str = "POST",
        authenticated: bool = True,
    ) -> Optional[str]:
        response = await self._pipeline.request(
            method, path, json=body, authenticated=authenticated,
        )
        if not response.is_success:
            raise error_from_response(response)
        return _message_of(response)
