# src/mydoctor_client/refresh_coordinator.py

"""
Credential Refresh Coordinator

Ensures at most ONE credential refresh is in flight for a credential store,
no matter how many calls fail with an expired credential at the same time.

The first caller to report an expired credential becomes the driver: it
performs the refresh call itself. Every caller arriving while that call is
outstanding is parked in a FIFO queue and woken, in arrival order, with the
driver's outcome: the new credential, or the RefreshFailedError that ended
the session.

State transitions are guarded by a threading.Lock that is never held across
an await, and waiters block on concurrent.futures.Future objects, so the
coordinator behaves the same on a single event loop and across threads that
each run their own loop.

Known limitation: no timeout is imposed on the refresh call beyond the
transport's own, and the waiter queue is unbounded.
"""

import asyncio
import concurrent.futures
import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from .credential_store import Credential, CredentialStore
from .error_handler import RefreshFailedError, mask_credential

lib_logger = logging.getLogger("mydoctor_client")

Refresher = Callable[[Credential], Awaitable[Credential]]


@dataclass
class PendingCall:
    """A caller blocked on someone else's refresh."""

    sequence: int
    enqueued_at: float = field(default_factory=time.time)
    _outcome: concurrent.futures.Future = field(
        default_factory=concurrent.futures.Future, repr=False
    )

    # A waiter whose task was cancelled has already settled its future
    def resolve(self, credential: Credential) -> None:
        if not self._outcome.done():
            self._outcome.set_result(credential)

    def reject(self, error: BaseException) -> None:
        if not self._outcome.done():
            self._outcome.set_exception(error)

    @property
    def settled(self) -> bool:
        return self._outcome.done()

    async def wait(self) -> Credential:
        return await asyncio.wrap_future(self._outcome)


class RefreshCoordinator:
    """
    Single-flight credential refresh with an ordered waiter queue.

    Invariant: the waiter queue is non-empty only while `_refreshing` is
    True. Both are changed together under `_state_lock`.
    """

    def __init__(self, store: CredentialStore, refresher: Refresher):
        self._store = store
        self._refresher = refresher

        self._state_lock = threading.Lock()
        self._refreshing = False
        self._waiters: Deque[PendingCall] = deque()
        self._sequence = itertools.count(1)
        self._refresh_started_at: Optional[float] = None

        # Statistics
        self._total_refreshes = 0
        self._successful_refreshes = 0
        self._failed_refreshes = 0
        self._reused_credentials = 0

    async def fresh_credential(self, stale_token: Optional[str] = None) -> Credential:
        """
        Return a credential newer than `stale_token`.

        Args:
            stale_token: The access token the failed call was sent with, if
                any. When the store already holds a different credential, the
                refresh already happened and that credential is returned.

        Raises:
            RefreshFailedError: The refresh failed; the store has been cleared.
        """
        with self._state_lock:
            current = self._store.get()

            if self._refreshing:
                pending = PendingCall(sequence=next(self._sequence))
                self._waiters.append(pending)
                position = len(self._waiters)
            elif (
                stale_token is not None
                and current is not None
                and current.access_token != stale_token
            ):
                self._reused_credentials += 1
                lib_logger.debug(
                    f"[RefreshCoordinator] Credential already rotated to "
                    f"{mask_credential(current.access_token)}, skipping refresh"
                )
                return current
            else:
                self._refreshing = True
                self._refresh_started_at = time.time()
                self._total_refreshes += 1
                pending = None

        if pending is not None:
            lib_logger.debug(
                f"[RefreshCoordinator] Call #{pending.sequence} queued behind the "
                f"in-flight refresh. Position in queue: {position}"
            )
            return await pending.wait()

        return await self._drive_refresh(current)

    async def _drive_refresh(self, current: Optional[Credential]) -> Credential:
        lib_logger.info("[RefreshCoordinator] Access credential expired, refreshing")

        try:
            if current is None:
                raise RefreshFailedError("No stored credential to refresh")
            new_credential = await self._refresher(current)

        except asyncio.CancelledError:
            # The session is not known to be bad; only release the waiters
            self._finish(
                error=RefreshFailedError("Credential refresh was cancelled"),
                succeeded=False,
            )
            raise

        except Exception as e:
            if isinstance(e, RefreshFailedError):
                error = e
            else:
                error = RefreshFailedError(f"Credential refresh failed: {e}")
                error.__cause__ = e

            # Session teardown happens before any waiter is released
            self._store.clear()
            waiter_count = self._finish(error=error, succeeded=False)
            lib_logger.error(
                f"[RefreshCoordinator] Refresh FAILED: {e}. Session cleared, "
                f"{waiter_count} queued call(s) rejected"
            )
            raise error

        try:
            self._store.set(new_credential)
        except Exception as e:
            error = RefreshFailedError(f"Could not store the refreshed credential: {e}")
            error.__cause__ = e
            waiter_count = self._finish(error=error, succeeded=False)
            lib_logger.error(
                f"[RefreshCoordinator] Storing the refreshed credential FAILED: {e}. "
                f"{waiter_count} queued call(s) rejected"
            )
            raise error

        waiter_count = self._finish(credential=new_credential, succeeded=True)
        lib_logger.info(
            f"[RefreshCoordinator] Refresh SUCCESS, replaying "
            f"{waiter_count} queued call(s)"
        )
        return new_credential

    def _finish(
        self,
        succeeded: bool,
        credential: Optional[Credential] = None,
        error: Optional[BaseException] = None,
    ) -> int:
        """Drain every waiter in arrival order and return to idle, atomically."""
        with self._state_lock:
            waiters: List[PendingCall] = list(self._waiters)
            self._waiters.clear()
            self._refreshing = False
            self._refresh_started_at = None
            if succeeded:
                self._successful_refreshes += 1
            else:
                self._failed_refreshes += 1

            for waiter in waiters:
                if succeeded:
                    waiter.resolve(credential)
                else:
                    waiter.reject(error)

        return len(waiters)

    def is_refreshing(self) -> bool:
        """Check if a refresh is currently in flight."""
        return self._refreshing

    def get_pending_count(self) -> int:
        """Get number of calls waiting on the in-flight refresh."""
        with self._state_lock:
            return len(self._waiters)

    def get_status(self) -> Dict[str, Any]:
        """Get current coordinator status for debugging/monitoring."""
        with self._state_lock:
            return {
                "refreshing": self._refreshing,
                "refresh_duration": (time.time() - self._refresh_started_at)
                if self._refresh_started_at
                else None,
                "pending_count": len(self._waiters),
                "stats": {
                    "total": self._total_refreshes,
                    "successful": self._successful_refreshes,
                    "failed": self._failed_refreshes,
                    "reused": self._reused_credentials,
                },
            }
