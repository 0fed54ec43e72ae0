# src/mydoctor_client/timeout_config.py
"""
Centralized HTTP configuration for the API client.

All values can be overridden via environment variables:
    API_BASE_URL - Backend base URL (default: live backend)
    TIMEOUT_CONNECT - Connection establishment timeout (default: 10s)
    TIMEOUT_READ - Response read timeout (default: 30s)
    TIMEOUT_WRITE - Request body send timeout (default: 30s)
    TIMEOUT_POOL - Connection pool acquisition timeout (default: 30s)
"""

import os
import logging
import httpx

lib_logger = logging.getLogger("mydoctor_client")

LIVE_API_URL = "https://mydoctoradmin.mydoctorplus.it/api"
REFRESH_TOKEN_PATH = "/auth/refresh-token"


class TimeoutConfig:
    """
    Centralized HTTP configuration.

    All values can be overridden via environment variables.
    """

    # Default values (in seconds)
    _CONNECT = 10.0
    _READ = 30.0
    _WRITE = 30.0
    _POOL = 30.0

    @classmethod
    def _get_env_float(cls, key: str, default: float) -> float:
        """Get a float value from environment variable, or return default."""
        value = os.environ.get(key)
        if value is not None:
            try:
                return float(value)
            except ValueError:
                lib_logger.warning(
                    f"Invalid value for {key}: {value}. Using default: {default}"
                )
        return default

    @classmethod
    def base_url(cls) -> str:
        """Backend base URL, without a trailing slash."""
        return (os.environ.get("API_BASE_URL") or LIVE_API_URL).rstrip("/")

    @classmethod
    def connect(cls) -> float:
        return cls._get_env_float("TIMEOUT_CONNECT", cls._CONNECT)

    @classmethod
    def read(cls) -> float:
        return cls._get_env_float("TIMEOUT_READ", cls._READ)

    @classmethod
    def write(cls) -> float:
        return cls._get_env_float("TIMEOUT_WRITE", cls._WRITE)

    @classmethod
    def pool(cls) -> float:
        return cls._get_env_float("TIMEOUT_POOL", cls._POOL)

    @classmethod
    def default(cls) -> httpx.Timeout:
        """
        Timeout configuration for API calls, including the refresh call.

        The refresh coordinator imposes no timeout of its own; a stuck
        refresh is bounded only by these values.
        """
        return httpx.Timeout(
            connect=cls.connect(),
            read=cls.read(),
            write=cls.write(),
            pool=cls.pool(),
        )
