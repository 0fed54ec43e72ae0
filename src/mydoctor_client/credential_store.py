# src/mydoctor_client/credential_store.py

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .utils.paths import get_session_file
from .utils.resilient_io import ResilientStateWriter, safe_read_json

lib_logger = logging.getLogger("mydoctor_client")

# Logical keys of the persisted session blob
STORAGE_KEYS = {
    "TOKEN": "token",
    "USER": "user",
}


@dataclass(frozen=True)
class Credential:
    """An issued bearer credential. Replaced wholesale, never edited."""

    access_token: str
    refresh_token: Optional[str] = None

    @property
    def refresh_material(self) -> Optional[str]:
        """
        Value sent to the refresh endpoint.

        The backend accepts the current JWT when no dedicated refresh token
        was issued.
        """
        return self.refresh_token or self.access_token or None

    def to_dict(self) -> Dict[str, Any]:
        return {"access_token": self.access_token, "refresh_token": self.refresh_token}

    @classmethod
    def from_stored(cls, value: Any) -> Optional["Credential"]:
        """Rebuild a credential from its persisted form (dict or bare token string)."""
        if isinstance(value, str) and value:
            return cls(access_token=value)
        if isinstance(value, dict) and value.get("access_token"):
            return cls(
                access_token=value["access_token"],
                refresh_token=value.get("refresh_token") or None,
            )
        return None


class CredentialStore:
    """
    Process-wide holder of the current credential and user metadata.

    Reads are served from memory; every change is written through a
    ResilientStateWriter so it survives restarts. Only one slot exists, so a
    single lock around read-modify-write is all the coordination needed.
    """

    def __init__(self, path: Optional[Union[Path, str]] = None):
        self.path = Path(path) if path else get_session_file()
        self._lock = threading.Lock()
        self._writer = ResilientStateWriter(
            self.path, lib_logger, secure_permissions=True
        )

        state = safe_read_json(self.path, lib_logger)
        self._credential = Credential.from_stored(state.get(STORAGE_KEYS["TOKEN"]))
        user = state.get(STORAGE_KEYS["USER"])
        self._user: Optional[Dict[str, Any]] = user if isinstance(user, dict) else None

        if self._credential:
            lib_logger.debug(f"Loaded stored session from '{self.path.name}'")

    def _snapshot(self) -> Dict[str, Any]:
        return {
            STORAGE_KEYS["TOKEN"]: self._credential.to_dict() if self._credential else None,
            STORAGE_KEYS["USER"]: self._user,
        }

    def get(self) -> Optional[Credential]:
        return self._credential

    def set(self, credential: Credential) -> bool:
        """Store `credential`. Returns False if it only reached memory."""
        with self._lock:
            self._credential = credential
            return self._writer.write(self._snapshot())

    def clear(self) -> None:
        """Remove the credential and the user metadata. Idempotent."""
        with self._lock:
            if self._credential is None and self._user is None and not self.path.exists():
                return
            self._credential = None
            self._user = None
            self._writer.write(self._snapshot())
        lib_logger.debug("Cleared stored session")

    def get_user(self) -> Optional[Dict[str, Any]]:
        return self._user

    def set_user(self, user: Optional[Dict[str, Any]]) -> bool:
        with self._lock:
            self._user = user
            return self._writer.write(self._snapshot())
