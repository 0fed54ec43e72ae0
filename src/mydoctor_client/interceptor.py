# src/mydoctor_client/interceptor.py

import logging
from typing import Any, FrozenSet, Optional

import httpx

from .dispatcher import ApiRequest, RequestDispatcher, bearer_token_of
from .error_handler import RetryExhaustedError, classify_error
from .refresh_coordinator import RefreshCoordinator
from .replay import ReplayEngine
from .timeout_config import REFRESH_TOKEN_PATH

lib_logger = logging.getLogger("mydoctor_client")

DEFAULT_EXPIRED_STATUSES: FrozenSet[int] = frozenset({401})


def extract_payload(response: httpx.Response) -> Any:
    """Decoded response body: JSON when possible, text otherwise, None if empty."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class FailureInterceptor:
    """
    Wraps every dispatched call and routes expired-credential failures into
    the refresh protocol.

    Only an unauthorized status on a call that is neither the refresh call
    itself nor an already replayed call is recovered locally; everything
    else reaches the caller unchanged.
    """

    def __init__(
        self,
        dispatcher: RequestDispatcher,
        coordinator: RefreshCoordinator,
        refresh_path: str = REFRESH_TOKEN_PATH,
        expired_statuses: FrozenSet[int] = DEFAULT_EXPIRED_STATUSES,
    ):
        self._dispatcher = dispatcher
        self._coordinator = coordinator
        self._replay = ReplayEngine(self.execute)
        self.refresh_path = refresh_path
        self.expired_statuses = expired_statuses

    def is_refresh_call(self, request: ApiRequest) -> bool:
        return self.refresh_path in request.path

    async def execute(self, request: ApiRequest) -> Any:
        try:
            response = await self._dispatcher.issue(request)
        except httpx.RequestError as e:
            lib_logger.warning(f"{request} failed: {classify_error(e)} ({e!r})")
            raise

        if response.is_success:
            return extract_payload(response)

        status_code = response.status_code

        # A failed refresh must never try to refresh itself
        if self.is_refresh_call(request) or status_code not in self.expired_statuses:
            lib_logger.debug(f"{request} returned HTTP {status_code}")
            response.raise_for_status()

        if request.already_retried:
            error = RetryExhaustedError.from_response(response)
            lib_logger.warning(f"{request} rejected again after refresh: {classify_error(error)}")
            raise error

        stale_token: Optional[str] = bearer_token_of(response.request)
        if stale_token is None and self._dispatcher.store.get() is None:
            # Anonymous call (e.g. a rejected login): there is no session to refresh
            response.raise_for_status()

        lib_logger.debug(f"{request} returned HTTP {status_code}, credential expired")
        credential = await self._coordinator.fresh_credential(stale_token)
        return await self._replay.replay(request, credential)
