# src/mydoctor_client/client.py

import logging
from pathlib import Path
from typing import Any, FrozenSet, Mapping, Optional, Union

import httpx

from .credential_store import Credential, CredentialStore
from .dispatcher import ApiRequest, RequestDispatcher, buffer_content
from .interceptor import DEFAULT_EXPIRED_STATUSES, FailureInterceptor
from .refresh_coordinator import RefreshCoordinator, Refresher
from .timeout_config import REFRESH_TOKEN_PATH, TimeoutConfig
from .token_refresh import TokenRefresher
from .utils.paths import get_session_file

lib_logger = logging.getLogger("mydoctor_client")


class ApiClient:
    """
    Shared network client for the MyDoctor backend.

    Every call goes dispatcher -> failure interceptor; an expired credential
    is refreshed once for all concurrent callers and the affected calls are
    replayed transparently. Callers only ever see payloads or the error that
    ended the chain.

    Each ApiClient owns its own coordinator, so several clients (for
    example in tests) never share refresh state.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        data_dir: Optional[Union[Path, str]] = None,
        store: Optional[CredentialStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        refresher: Optional[Refresher] = None,
        timeout: Optional[httpx.Timeout] = None,
        refresh_path: str = REFRESH_TOKEN_PATH,
        expired_statuses: FrozenSet[int] = DEFAULT_EXPIRED_STATUSES,
    ):
        """
        Args:
            base_url: Backend URL. Defaults to API_BASE_URL or the live backend.
            data_dir: Directory holding session.json. Ignored if `store` is given.
            store: Credential store to use instead of the file under `data_dir`.
            http_client: Pre-built httpx client. The ApiClient only closes
                clients it created itself.
            refresher: Replacement for the default refresh call.
            timeout: Transport timeout; defaults to TimeoutConfig.default().
            refresh_path: Endpoint of the refresh call.
            expired_statuses: Statuses meaning "credential expired".
        """
        self.base_url = (base_url or TimeoutConfig.base_url()).rstrip("/")
        self.store = store or CredentialStore(get_session_file(data_dir))

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Accept": "application/json"},
            timeout=timeout or TimeoutConfig.default(),
        )

        self.dispatcher = RequestDispatcher(self.http_client, self.store)
        self.coordinator = RefreshCoordinator(
            self.store, refresher or TokenRefresher(self.http_client, refresh_path)
        )
        self.interceptor = FailureInterceptor(
            self.dispatcher,
            self.coordinator,
            refresh_path=refresh_path,
            expired_statuses=expired_statuses,
        )
        lib_logger.debug(f"ApiClient configured with base URL: {self.base_url}")

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self.http_client.aclose()

    async def issue(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        data: Optional[Mapping[str, Any]] = None,
        files: Any = None,
        content: Any = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        """
        Perform one API call and return its decoded payload.

        A streamed `content` body is read into memory first so the call can
        be replayed after a refresh.

        Raises:
            httpx.RequestError: Transport failure (timeout, DNS, connection).
            httpx.HTTPStatusError: Non-2xx status other than a recovered expiry.
            RetryExhaustedError: Still unauthorized after a refresh and replay.
            RefreshFailedError: The credential could not be refreshed.
        """
        request = ApiRequest(
            method=method,
            path=path,
            params=params,
            json=json,
            data=data,
            files=files,
            content=await buffer_content(content),
            headers=headers or {},
        )
        return await self.interceptor.execute(request)

    async def get(self, path: str, **options: Any) -> Any:
        return await self.issue("GET", path, **options)

    async def post(self, path: str, **options: Any) -> Any:
        return await self.issue("POST", path, **options)

    async def put(self, path: str, **options: Any) -> Any:
        return await self.issue("PUT", path, **options)

    async def patch(self, path: str, **options: Any) -> Any:
        return await self.issue("PATCH", path, **options)

    async def delete(self, path: str, **options: Any) -> Any:
        return await self.issue("DELETE", path, **options)

    async def upload(
        self,
        path: str,
        files: Any,
        fields: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """POST a multipart body; httpx supplies the boundary-bearing Content-Type."""
        return await self.issue("POST", path, files=files, data=fields)

    async def refresh_credential(self) -> Credential:
        """
        Refresh the stored credential now.

        Shares the single in-flight refresh with any call that hit an
        expired credential at the same moment.
        """
        return await self.coordinator.fresh_credential()
