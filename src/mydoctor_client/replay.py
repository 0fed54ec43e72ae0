# src/mydoctor_client/replay.py

import logging
from typing import Any, Awaitable, Callable

from .credential_store import Credential
from .dispatcher import ApiRequest
from .error_handler import mask_credential

lib_logger = logging.getLogger("mydoctor_client")

Submit = Callable[[ApiRequest], Awaitable[Any]]


class ReplayEngine:
    """
    Re-issues a call that failed with an expired credential.

    The replayed request carries the new bearer token and an incremented
    attempt count, so another unauthorized answer for the same logical call
    is surfaced instead of starting a second refresh cycle.
    """

    def __init__(self, submit: Submit):
        self._submit = submit

    async def replay(self, request: ApiRequest, credential: Credential) -> Any:
        retried = request.with_authorization(credential.access_token).as_retry()
        lib_logger.debug(
            f"Replaying {retried} with credential {mask_credential(credential.access_token)}"
        )
        return await self._submit(retried)
