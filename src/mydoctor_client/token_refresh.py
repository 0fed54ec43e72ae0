# src/mydoctor_client/token_refresh.py

import logging
from typing import Any, Optional

import httpx

from .credential_store import Credential
from .error_handler import RefreshFailedError, mask_credential
from .timeout_config import REFRESH_TOKEN_PATH

lib_logger = logging.getLogger("mydoctor_client")


def _extract_field(body: Any, name: str) -> Optional[str]:
    """Look up `name` under `data` first, then at the top level."""
    if not isinstance(body, dict):
        return None
    nested = body.get("data")
    if isinstance(nested, dict) and nested.get(name):
        return nested[name]
    return body.get(name) or None


def extract_refreshed_token(body: Any) -> Optional[str]:
    """
    Pull the new access token out of a refresh response body.

    Looks at `data.token`, then `token`, then treats the body itself as the
    token when it is a bare string.
    """
    token = _extract_field(body, "token")
    if token is None and isinstance(body, str):
        token = body.strip().strip('"') or None
    if token is not None and not isinstance(token, str):
        return None
    return token


class TokenRefresher:
    """
    Performs the dedicated refresh call.

    The call goes straight to the httpx client, never through the failure
    interceptor, so a rejected refresh can not trigger another refresh. No
    Authorization header is sent; the refresh material travels in the body.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        refresh_path: str = REFRESH_TOKEN_PATH,
    ):
        self._http = http_client
        self.refresh_path = refresh_path

    async def __call__(self, credential: Credential) -> Credential:
        refresh_material = credential.refresh_material
        if not refresh_material:
            raise RefreshFailedError("No refresh token available")

        lib_logger.debug(
            f"Refreshing credential {mask_credential(credential.access_token)} "
            f"via {self.refresh_path}"
        )
        response = await self._http.post(
            self.refresh_path,
            json={"refreshToken": refresh_material},
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()

        try:
            body = response.json()
        except ValueError:
            body = response.text

        new_token = extract_refreshed_token(body)
        if not new_token:
            raise RefreshFailedError(
                f"Refresh response from {self.refresh_path} did not contain a token"
            )

        # Keep the previous refresh token unless the backend rotated it
        new_refresh_token = _extract_field(body, "refreshToken") or credential.refresh_token
        return Credential(access_token=new_token, refresh_token=new_refresh_token)
