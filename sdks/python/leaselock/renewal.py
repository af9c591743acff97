"""Background lease renewal.

A scheduler is started once per successful acquisition and renews the lease
every ``renew_interval`` seconds until it is asked to stop. Stopping is a
handshake: :meth:`stop` sets the stop signal and then waits for the loop to
exit, so no renew call can be in flight when the lock sends its release.
The loop only checks the stop signal between ticks; it is never interrupted
mid-call.
"""

import asyncio
import logging
import threading
from typing import Callable, Optional

from .exceptions import LeaseLockError, LeaseLostError
from .models import LockHandle, LockOptions, LockState
from .store import AsyncLeaseStore, LeaseStore

logger = logging.getLogger(__name__)

LostCallback = Callable[[LeaseLostError], None]


class _RenewalBase:
    """Outcome handling shared by the thread and asyncio schedulers."""

    def __init__(self, handle: LockHandle, options: LockOptions,
                 on_lost: Optional[LostCallback] = None):
        self.handle = handle
        self.options = options
        self.on_lost = on_lost
        self.renewals = 0
        self.consecutive_failures = 0

    def _token_to_renew(self) -> Optional[str]:
        state, token = self.handle.snapshot()
        return token if state == LockState.HELD else None

    def _renewed(self) -> None:
        self.handle.mark_renewed()
        self.renewals += 1
        self.consecutive_failures = 0
        logger.debug("Renewed lease on %s", self.handle.resource_id)

    def _failed(self, error: Exception) -> Optional[LeaseLostError]:
        """Classify a failed renew call. Returns the loss if it is definitive."""
        resource_id = self.handle.resource_id
        if isinstance(error, LeaseLostError):
            return error
        if not isinstance(error, LeaseLockError):
            lost = LeaseLostError(f"Unexpected error renewing lease on {resource_id}: {error!r}")
            lost.__cause__ = error
            return lost

        self.consecutive_failures += 1
        logger.warning(
            "Renewing lease on %s failed (%d in a row): %s",
            resource_id, self.consecutive_failures, error,
        )
        age = self.handle.since_renewal()
        if age is not None and age >= self.options.lease_ttl:
            lost = LeaseLostError(
                f"Lease on {resource_id} was not renewed within its "
                f"{self.options.lease_ttl:g}s TTL"
            )
            lost.__cause__ = error
            return lost
        return None

    def _lose(self, error: LeaseLostError) -> None:
        if not self.handle.mark_failed(error):
            # Release began concurrently; the lock owns teardown from here.
            return
        logger.error("Lost lease on %s: %s", self.handle.resource_id, error)
        if self.on_lost is not None:
            try:
                self.on_lost(error)
            except Exception:
                logger.exception("Lease-lost callback raised")


class RenewalScheduler(_RenewalBase):
    """Renews a lease from a daemon thread."""

    def __init__(self, store: LeaseStore, handle: LockHandle, options: LockOptions,
                 on_lost: Optional[LostCallback] = None):
        super().__init__(handle, options, on_lost)
        self.store = store
        self.finished = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Renewal scheduler already started")
        self._thread = threading.Thread(
            target=self._run,
            name=f"leaselock-renew-{self.handle.resource_id}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Signal the loop to stop and wait until it has exited."""
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()

    def _run(self) -> None:
        try:
            self._loop()
        finally:
            self.finished.set()

    def _loop(self) -> None:
        while not self._stop.wait(self.options.renew_interval):
            token = self._token_to_renew()
            if token is None:
                return
            try:
                self.store.renew_lease(self.handle.resource_id, token)
            except Exception as e:
                lost = self._failed(e)
                if lost is not None:
                    self._lose(lost)
                    return
            else:
                self._renewed()


class AsyncRenewalScheduler(_RenewalBase):
    """Renews a lease from an asyncio task."""

    def __init__(self, store: AsyncLeaseStore, handle: LockHandle, options: LockOptions,
                 on_lost: Optional[LostCallback] = None):
        super().__init__(handle, options, on_lost)
        self.store = store
        self.finished = asyncio.Event()
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("Renewal scheduler already started")
        self._task = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        """Signal the loop to stop and wait until it has exited.

        The wait is shielded: cancelling the caller never cancels the renewal
        task mid-call.
        """
        self._stop.set()
        if self._task is not None:
            await asyncio.shield(self._task)

    async def _sleep(self) -> bool:
        """Wait one interval. Returns True if a stop was requested."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.options.renew_interval)
        except asyncio.TimeoutError:
            return False
        return True

    async def _run(self) -> None:
        try:
            await self._loop()
        finally:
            self.finished.set()

    async def _loop(self) -> None:
        while not await self._sleep():
            token = self._token_to_renew()
            if token is None:
                return
            try:
                await self.store.renew_lease(self.handle.resource_id, token)
            except Exception as e:
                lost = self._failed(e)
                if lost is not None:
                    self._lose(lost)
                    return
            else:
                self._renewed()
