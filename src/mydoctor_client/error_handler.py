# src/mydoctor_client/error_handler.py

import logging
from typing import Optional

import httpx

lib_logger = logging.getLogger("mydoctor_client")


class RefreshFailedError(Exception):
    """
    Raised when the dedicated credential refresh call fails.

    This is terminal for the session: the stored credential has been cleared
    and every caller that was waiting on the refresh receives this same
    error. Callers usually react by sending the user back to login.

    The underlying failure (transport error, rejected refresh token, ...) is
    available as `__cause__`.
    """

    def __init__(self, message: str = "Credential refresh failed"):
        self.message = message
        super().__init__(self.message)


class NotAuthenticatedError(Exception):
    """Raised when an operation needs a logged-in session and there is none."""


class RetryExhaustedError(httpx.HTTPStatusError):
    """
    Raised when a call that was already replayed with a fresh credential is
    rejected as unauthorized again.

    Subclasses httpx.HTTPStatusError and carries the original request and
    response, so callers handling HTTP errors see it unchanged.
    """

    @classmethod
    def from_response(cls, response: httpx.Response) -> "RetryExhaustedError":
        return cls(
            f"Request to '{response.request.url.path}' still unauthorized "
            f"(HTTP {response.status_code}) after a credential refresh",
            request=response.request,
            response=response,
        )


def mask_credential(credential: Optional[str]) -> str:
    """Mask a token for log output, keeping only its last 6 characters."""
    if not credential:
        return "<none>"
    if len(credential) <= 8:
        return "***"
    return f"...{credential[-6:]}"


class ClassifiedError:
    """A structured representation of a failure for logging and reporting."""

    def __init__(
        self,
        error_type: str,
        original_exception: Exception,
        status_code: Optional[int] = None,
    ):
        self.error_type = error_type
        self.original_exception = original_exception
        self.status_code = status_code

    def __str__(self):
        return (
            f"ClassifiedError(type={self.error_type}, status={self.status_code}, "
            f"original_exc={type(self.original_exception).__name__})"
        )


def classify_error(
    e: Exception, expired_statuses: frozenset = frozenset({401})
) -> ClassifiedError:
    """
    Classify an exception raised by the request pipeline.

    Types:
        transport           - network / DNS / timeout (httpx.RequestError)
        refresh_failed      - the refresh call itself failed
        retry_exhausted     - still unauthorized after a replay
        credential_expired  - unauthorized status, eligible for refresh
        server_error        - 5xx
        client_error        - other 4xx
        unknown             - anything else
    """
    if isinstance(e, RefreshFailedError):
        return ClassifiedError("refresh_failed", e)

    if isinstance(e, RetryExhaustedError):
        return ClassifiedError("retry_exhausted", e, e.response.status_code)

    if isinstance(e, httpx.HTTPStatusError):
        status_code = e.response.status_code
        if status_code in expired_statuses:
            return ClassifiedError("credential_expired", e, status_code)
        if status_code >= 500:
            return ClassifiedError("server_error", e, status_code)
        return ClassifiedError("client_error", e, status_code)

    if isinstance(e, httpx.RequestError):
        return ClassifiedError("transport", e)

    return ClassifiedError("unknown", e)
