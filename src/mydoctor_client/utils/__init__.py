# src/mydoctor_client/utils/__init__.py

from .paths import get_default_root, get_logs_dir, get_session_file
from .resilient_io import (
    BufferedWriteRegistry,
    ResilientStateWriter,
    safe_read_json,
)

__all__ = [
    "get_default_root",
    "get_logs_dir",
    "get_session_file",
    "BufferedWriteRegistry",
    "ResilientStateWriter",
    "safe_read_json",
]
