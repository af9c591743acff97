"""Distributed locks built on store leases."""

import asyncio
import io
import logging
import random
import threading
import time
from typing import BinaryIO, Optional

from .exceptions import (
    AcquireCancelledError,
    LeaseConflictError,
    LeaseLockError,
    LeaseLostError,
    LockStateError,
)
from .models import LockHandle, LockOptions, LockState
from .renewal import AsyncRenewalScheduler, LostCallback, RenewalScheduler
from .store import AsyncLeaseStore, LeaseStore, Source

logger = logging.getLogger(__name__)


class _LockBase:
    """State inspection and I/O gating shared by both lock flavors."""

    def __init__(self, options: LockOptions, on_lease_lost: Optional[LostCallback] = None,
                 rng: Optional[random.Random] = None):
        self.options = options
        self.on_lease_lost = on_lease_lost
        self.handle = LockHandle(options.resource_id)
        self._rng = rng or random.Random()
        self._resource_ready = False
        self._scheduler = None

    @property
    def resource_id(self):
        return self.options.resource_id

    @property
    def state(self) -> LockState:
        return self.handle.snapshot()[0]

    @property
    def lease_token(self) -> Optional[str]:
        return self.handle.snapshot()[1]

    @property
    def held(self) -> bool:
        return self.state == LockState.HELD

    @property
    def failed(self) -> bool:
        return self.handle.current_failure() is not None

    @property
    def failure(self) -> Optional[LeaseLostError]:
        return self.handle.current_failure()

    def raise_if_lost(self) -> None:
        """Raise :class:`LeaseLostError` if renewal lost the lease."""
        failure = self.handle.current_failure()
        if failure is not None:
            raise LeaseLostError(f"Lease on {self.resource_id} was lost: {failure}") from failure

    def _retry_delay(self) -> float:
        low, high = self.options.acquire_retry_delay
        return self._rng.uniform(low, high)

    def _gated_token(self) -> str:
        """Return the token for a guarded store call without touching the store."""
        state, token = self.handle.snapshot()
        if state == LockState.FAILED:
            self.raise_if_lost()
        if state != LockState.HELD:
            raise LockStateError(
                f"Lock on {self.resource_id} is not held (state '{state.value}')"
            )
        return token

    def _acquired(self, token: str, scheduler) -> None:
        # The scheduler must be in place before HELD is visible to release().
        self._scheduler = scheduler
        self.handle.mark_held(token)
        scheduler.start()
        logger.info("Acquired lease on %s", self.resource_id)

    def _release_failed(self, error: LeaseLockError) -> None:
        if isinstance(error, (LeaseLostError, LeaseConflictError)):
            logger.warning("Lease on %s was already gone at release: %s", self.resource_id, error)
        else:
            logger.warning(
                "Could not release lease on %s, it will expire after %gs: %s",
                self.resource_id, self.options.lease_ttl, error,
            )


class DistributedLock(_LockBase):
    """Lease-backed lock whose renewal runs on a background thread.

    Typical use::

        with DistributedLock(store, options) as lock:
            if lock.acquire_or_skip():
                lock.write_text("done")

    Leaving the ``with`` block always releases the lease.
    """

    def __init__(self, store: LeaseStore, options: LockOptions,
                 on_lease_lost: Optional[LostCallback] = None,
                 rng: Optional[random.Random] = None):
        """Create a lock. No store call is made until the first acquire.

        Args:
            store: Lease store holding the resource
            options: Resource name, lease TTL, renewal and retry settings
            on_lease_lost: Called from the renewal thread if the lease is lost
            rng: Random source for retry jitter, one per lock by default
        """
        super().__init__(options, on_lease_lost, rng)
        self.store = store
        self._release_mutex = threading.Lock()

    def _try_acquire(self) -> bool:
        if not self._resource_ready:
            self.store.ensure_resource_exists(self.resource_id)
            self._resource_ready = True
        result = self.store.acquire_lease(self.resource_id, self.options.lease_ttl)
        if not result.acquired:
            return False
        self._acquired(result.token, RenewalScheduler(self.store, self.handle, self.options,
                                                      self.on_lease_lost))
        return True

    def acquire_or_skip(self) -> bool:
        """Try once to take the lease.

        Returns:
            True if the lease is now held, False if another holder has it
        """
        self.handle.begin_acquire()
        try:
            acquired = self._try_acquire()
        finally:
            self.handle.abort_acquire()
        if not acquired:
            logger.debug("Lease on %s is taken, skipping", self.resource_id)
        return acquired

    def acquire_or_wait(self, cancel_event: Optional[threading.Event] = None,
                        timeout: Optional[float] = None) -> bool:
        """Block until the lease is held.

        Conflicts are retried after a random delay from
        ``options.acquire_retry_delay``; any other store error propagates.

        Args:
            cancel_event: When set, the wait stops without another attempt
            timeout: Give up after this many seconds

        Returns:
            True once held, False if ``timeout`` elapsed first

        Raises:
            AcquireCancelledError: If ``cancel_event`` was set while waiting
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        self.handle.begin_acquire()
        try:
            attempts = 0
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    raise AcquireCancelledError(f"Waiting for {self.resource_id} was cancelled")
                attempts += 1
                if self._try_acquire():
                    return True
                delay = self._retry_delay()
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        logger.info("Gave up on %s after %d attempts", self.resource_id, attempts)
                        return False
                    delay = min(delay, remaining)
                logger.debug("Lease on %s is taken, retrying in %.3fs", self.resource_id, delay)
                if cancel_event is not None:
                    cancel_event.wait(delay)
                else:
                    time.sleep(delay)
        finally:
            self.handle.abort_acquire()

    def read_under_lock(self, destination: BinaryIO) -> int:
        """Copy the resource into ``destination`` and return the byte count."""
        return self.store.read_object(self.resource_id, self._gated_token(), destination)

    def write_under_lock(self, source: Source) -> None:
        """Replace the resource contents with ``source``."""
        self.store.write_object(self.resource_id, self._gated_token(), source)

    def read_text(self, encoding: str = "utf-8") -> str:
        buffer = io.BytesIO()
        self.read_under_lock(buffer)
        return buffer.getvalue().decode(encoding)

    def write_text(self, text: str, encoding: str = "utf-8") -> None:
        self.write_under_lock(text.encode(encoding))

    def wait_for_loss(self, timeout: Optional[float] = None) -> bool:
        """Block until the lease is lost. Returns False on timeout or release."""
        if self._scheduler is None:
            raise LockStateError(f"Lock on {self.resource_id} was never acquired")
        if self.state == LockState.HELD:
            self._scheduler.finished.wait(timeout)
        return self.failed

    def release(self) -> None:
        """Stop renewal, then release the lease. Safe to call repeatedly."""
        with self._release_mutex:
            previous, token = self.handle.begin_release()
            if previous not in (LockState.HELD, LockState.FAILED):
                return
            try:
                self._scheduler.stop()
                if previous == LockState.HELD:
                    try:
                        self.store.release_lease(self.resource_id, token)
                    except LeaseLockError as e:
                        self._release_failed(e)
            finally:
                self.handle.mark_released()
            logger.info("Released lease on %s", self.resource_id)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        if exc_type is None:
            self.raise_if_lost()


class AsyncDistributedLock(_LockBase):
    """Lease-backed lock whose renewal runs as an asyncio task."""

    def __init__(self, store: AsyncLeaseStore, options: LockOptions,
                 on_lease_lost: Optional[LostCallback] = None,
                 rng: Optional[random.Random] = None):
        super().__init__(options, on_lease_lost, rng)
        self.store = store
        self._release_mutex = asyncio.Lock()
        self._release_task: Optional[asyncio.Future] = None

    async def _try_acquire(self) -> bool:
        if not self._resource_ready:
            await self.store.ensure_resource_exists(self.resource_id)
            self._resource_ready = True
        result = await self.store.acquire_lease(self.resource_id, self.options.lease_ttl)
        if not result.acquired:
            return False
        self._acquired(result.token, AsyncRenewalScheduler(self.store, self.handle, self.options,
                                                           self.on_lease_lost))
        return True

    async def acquire_or_skip(self) -> bool:
        """Try once to take the lease. Returns True if it is now held."""
        self.handle.begin_acquire()
        try:
            acquired = await self._try_acquire()
        finally:
            self.handle.abort_acquire()
        if not acquired:
            logger.debug("Lease on %s is taken, skipping", self.resource_id)
        return acquired

    async def acquire_or_wait(self, timeout: Optional[float] = None) -> bool:
        """Wait until the lease is held.

        Cancelling the awaiting task stops the loop at its next sleep.

        Returns:
            True once held, False if ``timeout`` elapsed first
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        self.handle.begin_acquire()
        try:
            attempts = 0
            while True:
                attempts += 1
                if await self._try_acquire():
                    return True
                delay = self._retry_delay()
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        logger.info("Gave up on %s after %d attempts", self.resource_id, attempts)
                        return False
                    delay = min(delay, remaining)
                logger.debug("Lease on %s is taken, retrying in %.3fs", self.resource_id, delay)
                await asyncio.sleep(delay)
        finally:
            self.handle.abort_acquire()

    async def read_under_lock(self, destination: BinaryIO) -> int:
        return await self.store.read_object(self.resource_id, self._gated_token(), destination)

    async def write_under_lock(self, source: Source) -> None:
        await self.store.write_object(self.resource_id, self._gated_token(), source)

    async def read_text(self, encoding: str = "utf-8") -> str:
        buffer = io.BytesIO()
        await self.read_under_lock(buffer)
        return buffer.getvalue().decode(encoding)

    async def write_text(self, text: str, encoding: str = "utf-8") -> None:
        await self.write_under_lock(text.encode(encoding))

    async def wait_for_loss(self) -> bool:
        """Wait until the lease is lost. Returns False if it was released first."""
        if self._scheduler is None:
            raise LockStateError(f"Lock on {self.resource_id} was never acquired")
        if self.state == LockState.HELD:
            await self._scheduler.finished.wait()
        return self.failed

    async def release(self) -> None:
        """Stop renewal, then release the lease. Safe to call repeatedly.

        Teardown runs in its own task. If the caller is cancelled, that task
        still finishes: the lock stays ``RELEASING`` until renewal has
        stopped and the release call was sent. Calling ``release()`` again
        waits for it.
        """
        async with self._release_mutex:
            if self._release_task is None:
                previous, token = self.handle.begin_release()
                if previous not in (LockState.HELD, LockState.FAILED):
                    return
                self._release_task = asyncio.ensure_future(self._teardown(previous, token))
            await asyncio.shield(self._release_task)

    async def _teardown(self, previous: LockState, token: Optional[str]) -> None:
        try:
            await self._scheduler.stop()
            if previous == LockState.HELD:
                try:
                    await self.store.release_lease(self.resource_id, token)
                except LeaseLockError as e:
                    self._release_failed(e)
        finally:
            self.handle.mark_released()
        logger.info("Released lease on %s", self.resource_id)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()
        if exc_type is None:
            self.raise_if_lost()
