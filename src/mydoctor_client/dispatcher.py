# src/mydoctor_client/dispatcher.py

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional

import httpx

from .credential_store import CredentialStore

lib_logger = logging.getLogger("mydoctor_client")

JSON_CONTENT_TYPE = "application/json"


@dataclass(frozen=True)
class ApiRequest:
    """
    One logical API call.

    Instances are never modified: replays derive a new request through
    with_authorization() / as_retry(). `attempt` counts how many times the
    call has been replayed after a credential refresh.
    """

    method: str
    path: str
    params: Optional[Mapping[str, Any]] = None
    json: Any = None
    data: Optional[Mapping[str, Any]] = None
    files: Any = None
    content: Any = None
    headers: Mapping[str, str] = field(default_factory=dict)
    attempt: int = 0

    def __post_init__(self):
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(self, "headers", dict(self.headers))

    @property
    def already_retried(self) -> bool:
        return self.attempt > 0

    @property
    def is_transport_encoded(self) -> bool:
        """
        True when httpx must compute the Content-Type itself.

        Multipart bodies need a generated boundary in the header, and raw or
        form-encoded bodies carry their own encoding.
        """
        return (
            self.files is not None or self.content is not None or self.data is not None
        )

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    def with_authorization(self, token: str) -> "ApiRequest":
        headers: Dict[str, str] = {
            k: v for k, v in self.headers.items() if k.lower() != "authorization"
        }
        headers["Authorization"] = f"Bearer {token}"
        return replace(self, headers=headers)

    def as_retry(self) -> "ApiRequest":
        return replace(self, attempt=self.attempt + 1)

    def __str__(self):
        return f"{self.method} {self.path}"


async def buffer_content(content: Any) -> Any:
    """
    Drain a streamed request body into bytes.

    A generator can only be sent once, but a call that hits an expired
    credential is sent twice. bytes and str bodies are returned unchanged.
    """
    if content is None or isinstance(content, (bytes, str)):
        return content
    if hasattr(content, "__aiter__"):
        return b"".join([chunk async for chunk in content])
    return b"".join(content)


def bearer_token_of(request: httpx.Request) -> Optional[str]:
    """Return the bearer token an outgoing httpx request was sent with."""
    value = request.headers.get("Authorization", "")
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token


class RequestDispatcher:
    """
    Sends ApiRequests over a shared httpx.AsyncClient.

    Attaches the stored credential and settles the Content-Type header, but
    never interprets the response: every status is returned as-is and
    transport errors propagate unchanged.
    """

    def __init__(self, http_client: httpx.AsyncClient, store: CredentialStore):
        self._http = http_client
        self.store = store

    def build_headers(self, request: ApiRequest) -> httpx.Headers:
        headers = httpx.Headers(request.headers)

        # An explicit header wins: replays carry the refreshed token
        if "Authorization" not in headers:
            credential = self.store.get()
            if credential:
                headers["Authorization"] = f"Bearer {credential.access_token}"

        if request.is_transport_encoded:
            # A hand-set multipart Content-Type would lack the boundary
            headers.pop("Content-Type", None)
        elif "Content-Type" not in headers:
            headers["Content-Type"] = JSON_CONTENT_TYPE

        return headers

    async def issue(self, request: ApiRequest) -> httpx.Response:
        lib_logger.debug(f"Dispatching {request} (attempt {request.attempt})")
        return await self._http.request(
            request.method,
            request.path,
            params=request.params,
            json=request.json,
            data=request.data,
            files=request.files,
            content=request.content,
            headers=self.build_headers(request),
        )
