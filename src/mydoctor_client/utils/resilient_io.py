# src/mydoctor_client/utils/resilient_io.py
"""
Resilient I/O utilities for the persisted session.

Provides:
1. BufferedWriteRegistry - Global singleton holding writes that failed on
   disk, retried periodically and flushed on interpreter exit.
2. ResilientStateWriter - Memory-first state file: the in-memory copy is
   always updated, the disk copy is written atomically and retried later if
   the write fails.
3. safe_read_json - Read a JSON object from disk, never raises.
"""

import atexit
import json
import os
import shutil
import tempfile
import threading
import time
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union


def _atomic_write(path: Path, content: str, secure_permissions: bool) -> None:
    """Write `content` to a temp file beside `path`, then move it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp_fd = None
    tmp_path = None
    try:
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=path.parent, prefix=".tmp_", suffix=".json", text=True
        )
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
            f.write(content)
            tmp_fd = None  # fdopen closes the fd

        if secure_permissions:
            try:
                os.chmod(tmp_path, 0o600)
            except (OSError, AttributeError):
                # Windows may not support chmod
                pass

        shutil.move(tmp_path, path)
        tmp_path = None
    finally:
        if tmp_fd is not None:
            try:
                os.close(tmp_fd)
            except OSError:
                pass
        if tmp_path and os.path.exists(tmp_path):
            try:
                os.unlink(tmp_path)
            except OSError:
                pass


# =============================================================================
# BUFFERED WRITE REGISTRY (SINGLETON)
# =============================================================================


class BufferedWriteRegistry:
    """
    Global registry for writes that could not reach the disk.

    Each file path keeps only its latest pending state. A daemon thread
    retries pending writes every `retry_interval` seconds and an atexit hook
    makes a final attempt on shutdown.

    Usage:
        registry = BufferedWriteRegistry.get_instance()
        registry.register_pending(path, data, serializer, options)
        results = registry.flush_all()
    """

    _instance: Optional["BufferedWriteRegistry"] = None
    _instance_lock = threading.Lock()

    def __init__(self, retry_interval: float = 30.0):
        self._pending: Dict[str, Tuple[Any, Callable[[Any], str], Dict[str, Any]]] = {}
        self._retry_interval = retry_interval
        self._lock = threading.Lock()
        self._running = False
        self._retry_thread: Optional[threading.Thread] = None
        self._logger = logging.getLogger("mydoctor_client.resilient_io")

        self._start_retry_thread()
        atexit.register(self._atexit_handler)

    @classmethod
    def get_instance(cls, retry_interval: float = 30.0) -> "BufferedWriteRegistry":
        """Get or create the singleton instance."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls(retry_interval)
        return cls._instance

    def _start_retry_thread(self) -> None:
        if self._running:
            return

        self._running = True
        self._retry_thread = threading.Thread(
            target=self._retry_loop,
            name="BufferedWriteRegistry-Retry",
            daemon=True,
        )
        self._retry_thread.start()

    def _retry_loop(self) -> None:
        while self._running:
            time.sleep(self._retry_interval)
            if not self._running:
                break
            self.flush_all()

    def register_pending(
        self,
        path: Union[str, Path],
        data: Any,
        serializer: Callable[[Any], str],
        options: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Register a pending write for later retry.

        An existing pending write for the same path is replaced: only the
        latest state matters.
        """
        path_str = str(Path(path).resolve())
        with self._lock:
            self._pending[path_str] = (data, serializer, options or {})
        self._logger.debug(f"Registered pending write for {Path(path).name}")

    def unregister(self, path: Union[str, Path]) -> None:
        """Drop a pending write (the caller has written the file itself)."""
        path_str = str(Path(path).resolve())
        with self._lock:
            self._pending.pop(path_str, None)

    def _try_write(self, path_str: str) -> bool:
        with self._lock:
            if path_str not in self._pending:
                return True
            data, serializer, options = self._pending[path_str]

        path = Path(path_str)
        try:
            _atomic_write(
                path, serializer(data), bool(options.get("secure_permissions"))
            )
        except (OSError, PermissionError, IOError) as e:
            self._logger.debug(f"Retry failed for {path.name}: {e}")
            return False

        with self._lock:
            # Only drop the entry if nobody registered newer data meanwhile
            if self._pending.get(path_str, (None,))[0] is data:
                self._pending.pop(path_str, None)
        self._logger.debug(f"Retry succeeded for {path.name}")
        return True

    def flush_all(self) -> Dict[str, bool]:
        """Attempt every pending write now. Returns path -> success."""
        with self._lock:
            paths = list(self._pending.keys())
        return {path_str: self._try_write(path_str) for path_str in paths}

    def _atexit_handler(self) -> None:
        self._running = False

        pending_count = self.get_pending_count()
        if pending_count == 0:
            return

        self._logger.info(f"Flushing {pending_count} pending write(s) on shutdown...")
        results = self.flush_all()
        failed = [p for p, ok in results.items() if not ok]
        if failed:
            self._logger.warning(
                f"Shutdown flush: {len(results) - len(failed)} succeeded, {len(failed)} failed"
            )
            for path_str in failed:
                self._logger.warning(f"  Failed to save: {Path(path_str).name}")
        else:
            self._logger.info(f"Shutdown flush: all {len(results)} write(s) succeeded")

    def get_pending_count(self) -> int:
        with self._lock:
            return len(self._pending)


# =============================================================================
# RESILIENT STATE WRITER
# =============================================================================


class ResilientStateWriter:
    """
    Memory-first writer for a single JSON state file.

    - write() always updates the in-memory state
    - the disk write is attempted immediately (atomic temp file + move)
    - while the disk is unhealthy, attempts are spaced by `retry_interval`
      and the latest state is parked in the BufferedWriteRegistry

    Thread-safe.
    """

    def __init__(
        self,
        path: Union[str, Path],
        logger: logging.Logger,
        retry_interval: float = 30.0,
        secure_permissions: bool = False,
    ):
        self.path = Path(path)
        self.logger = logger
        self.retry_interval = retry_interval
        self.secure_permissions = secure_permissions

        self._current_state: Optional[Any] = None
        self._disk_healthy = True
        self._last_attempt: float = 0
        self._failure_count = 0
        self._lock = threading.Lock()

    @staticmethod
    def _serialize(data: Any) -> str:
        return json.dumps(data, indent=2)

    def write(self, data: Any) -> bool:
        """
        Update state and attempt a disk write.

        Returns:
            True if the disk write succeeded, False if the data is held in
            memory only for now.
        """
        with self._lock:
            self._current_state = data

            if not self._disk_healthy:
                if time.time() - self._last_attempt < self.retry_interval:
                    # Too soon to retry; the registry will pick it up
                    BufferedWriteRegistry.get_instance().register_pending(
                        self.path,
                        data,
                        self._serialize,
                        {"secure_permissions": self.secure_permissions},
                    )
                    return False

            return self._try_disk_write()

    def _try_disk_write(self) -> bool:
        self._last_attempt = time.time()

        try:
            _atomic_write(
                self.path,
                self._serialize(self._current_state),
                self.secure_permissions,
            )
        except (OSError, PermissionError, IOError, TypeError, ValueError) as e:
            self._disk_healthy = False
            self._failure_count += 1
            BufferedWriteRegistry.get_instance().register_pending(
                self.path,
                self._current_state,
                self._serialize,
                {"secure_permissions": self.secure_permissions},
            )
            # Rate-limited to avoid flooding
            if self._failure_count == 1 or self._failure_count % 10 == 0:
                self.logger.warning(
                    f"Failed to write {self.path.name}: {e}. "
                    f"Data retained in memory (failure #{self._failure_count})."
                )
            return False

        if not self._disk_healthy:
            self.logger.info(f"Disk writes to {self.path.name} recovered")
            BufferedWriteRegistry.get_instance().unregister(self.path)
        self._disk_healthy = True
        self._failure_count = 0
        return True


def safe_read_json(path: Union[str, Path], logger: logging.Logger) -> Dict[str, Any]:
    """
    Read a JSON object from `path`.

    Returns an empty dict when the file is missing, unreadable, corrupt or
    does not hold an object. Never raises.
    """
    path = Path(path)
    if not path.exists():
        return {}

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable state file {path.name}: {e}")
        return {}

    if not isinstance(data, dict):
        logger.warning(f"Ignoring state file {path.name}: expected a JSON object")
        return {}
    return data
