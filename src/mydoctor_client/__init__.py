from typing import TYPE_CHECKING

from .client import ApiClient
from .credential_store import Credential, CredentialStore
from .dispatcher import ApiRequest
from .error_handler import (
    NotAuthenticatedError,
    RefreshFailedError,
    RetryExhaustedError,
)
from .refresh_coordinator import RefreshCoordinator

# For type checkers, import AuthService statically
# At runtime, it's lazy-loaded via __getattr__
if TYPE_CHECKING:
    from .auth_service import AuthService

__all__ = [
    "ApiClient",
    "ApiRequest",
    "AuthService",
    "Credential",
    "CredentialStore",
    "NotAuthenticatedError",
    "RefreshCoordinator",
    "RefreshFailedError",
    "RetryExhaustedError",
]


def __getattr__(name):
    """Lazy-load AuthService to keep the core import light."""
    if name == "AuthService":
        from .auth_service import AuthService

        return AuthService
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
