# src/mydoctor_client/auth_service.py

import base64
import json
import logging
from typing import Any, Dict, Optional

from .client import ApiClient
from .credential_store import Credential
from .error_handler import NotAuthenticatedError, RetryExhaustedError

lib_logger = logging.getLogger("mydoctor_client")

ROLE_BY_USER_TYPE = {
    "patient": "PATIENT",
    "doctor": "DOCTOR",
}


def _parse_jwt_claims(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode the payload of a JWT without verifying it.

    Returns:
        The claims dict, or None if the token is not a well-formed JWT.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return None

    payload = parts[1]
    payload += "=" * (-len(payload) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    return claims if isinstance(claims, dict) else None


class AuthService:
    """Account endpoints that create, inspect and end the stored session."""

    def __init__(self, client: ApiClient):
        self.client = client

    def _remember_session(self, response: Any) -> None:
        """Persist token and user from an `{"data": {"token", "user"}}` body."""
        data = response.get("data") if isinstance(response, dict) else None
        if not isinstance(data, dict):
            return

        token = data.get("token")
        if token:
            self.client.store.set(
                Credential(access_token=token, refresh_token=data.get("refreshToken"))
            )
        if data.get("user"):
            self.client.store.set_user(data["user"])

    async def login(self, email: str, password: str) -> Any:
        response = await self.client.post(
            "/auth/login", json={"email": email, "password": password}
        )
        self._remember_session(response)
        lib_logger.info(f"Logged in as {email}")
        return response

    async def register(self, data: Dict[str, Any], user_type: str = "patient") -> Any:
        """
        Register a new account.

        The token is only present once registration is complete (doctors
        and pharmacies may need approval first), so storing is best-effort.
        """
        payload = dict(data)
        payload["role"] = data.get("role") or ROLE_BY_USER_TYPE.get(user_type, "PATIENT")

        response = await self.client.post("/auth/register", json=payload)
        self._remember_session(response)
        return response

    async def logout(self) -> None:
        self.client.store.clear()
        lib_logger.info("Logged out, session cleared")

    def current_user(self) -> Optional[Dict[str, Any]]:
        if self.client.store.get() is None:
            return None
        return self.client.store.get_user()

    async def fetch_user(self) -> Any:
        """
        Fetch the logged-in user from the backend.

        The user id is read from the `userId` claim of the stored token and
        the call goes through the refresh protocol like any other. If it is
        still unauthorized after a refresh, the session is cleared before
        the error is raised.

        Raises:
            NotAuthenticatedError: No stored token, or one without a userId.
            RetryExhaustedError: Unauthorized even with a refreshed token.
        """
        credential = self.client.store.get()
        if credential is None:
            raise NotAuthenticatedError("No token found")

        claims = _parse_jwt_claims(credential.access_token) or {}
        user_id = claims.get("userId")
        if not user_id:
            raise NotAuthenticatedError("Stored token does not carry a userId claim")

        try:
            response = await self.client.get(f"/users/{user_id}")
        except RetryExhaustedError:
            self.client.store.clear()
            lib_logger.warning(
                f"User {user_id} still unauthorized after refresh, session cleared"
            )
            raise

        if isinstance(response, dict) and response.get("data"):
            return response["data"]
        return response

    def is_authenticated(self) -> bool:
        return self.client.store.get() is not None

    async def change_password(self, old_password: str, new_password: str) -> Any:
        return await self.client.post(
            "/auth/change-password",
            json={"oldPassword": old_password, "newPassword": new_password},
        )

    async def request_password_reset(self, email: str) -> Any:
        return await self.client.post("/auth/forgot-password", json={"email": email})

    async def verify_password_reset_code(self, email: str, code: str) -> Any:
        return await self.client.post(
            "/auth/verify-reset-code", json={"email": email, "code": code}
        )

    async def reset_password(self, email: str, code: str, new_password: str) -> Any:
        return await self.client.post(
            "/auth/reset-password",
            json={"email": email, "code": code, "newPassword": new_password},
        )

    async def refresh_token(self) -> Credential:
        return await self.client.refresh_credential()
