# src/mydoctor_client/utils/paths.py
"""
Centralized path management for the client library.

The data root is the MYDOCTOR_DATA_DIR environment variable when set,
otherwise the current working directory.

Library users can override by passing `data_dir` to ApiClient.
"""

import os
from pathlib import Path
from typing import Optional, Union

SESSION_FILENAME = "session.json"


def get_default_root() -> Path:
    """
    Get the default root directory for data files.

    Returns:
        Path to the root directory
    """
    override = os.environ.get("MYDOCTOR_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.cwd()


def get_logs_dir(root: Optional[Union[Path, str]] = None) -> Path:
    """
    Get the logs directory, creating it if needed.

    Args:
        root: Optional root directory. If None, uses get_default_root().
    """
    base = Path(root) if root else get_default_root()
    logs_dir = base / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


def get_session_file(root: Optional[Union[Path, str]] = None) -> Path:
    """
    Get the path of the persisted session file (does not create it).

    Args:
        root: Optional root directory. If None, uses get_default_root().
    """
    base = Path(root) if root else get_default_root()
    return base / SESSION_FILENAME
