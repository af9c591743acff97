"""LeaseLock data models."""

import re
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from .exceptions import LeaseLostError, LockStateError, ValidationError


FAST_RETRY_DELAY = (0.2, 1.0)
SLOW_RETRY_DELAY = (30.0, 60.0)

_NAME_RE = re.compile(r'^[a-zA-Z0-9._-]+$')


def _validate_name(kind: str, value: str) -> None:
    if not value or len(value) > 128:
        raise ValidationError(f"{kind} must be 1-128 characters")
    if not _NAME_RE.match(value):
        raise ValidationError(
            f"{kind} can only contain alphanumeric characters, dots, hyphens and underscores"
        )


class LockState(str, Enum):
    """Lock lifecycle states."""
    UNLOCKED = "unlocked"
    ACQUIRING = "acquiring"
    HELD = "held"
    RELEASING = "releasing"
    RELEASED = "released"
    FAILED = "failed"


@dataclass(frozen=True)
class ResourceId:
    """Name of the remote object a lease is taken on."""
    container: str
    name: str

    def __post_init__(self):
        _validate_name("Container name", self.container)
        _validate_name("Object name", self.name)

    def __str__(self) -> str:
        return f"{self.container}/{self.name}"


@dataclass(frozen=True)
class LockOptions:
    """Caller supplied settings for one distributed lock.

    Durations are in seconds. ``renew_interval`` defaults to half the lease
    TTL so a single missed renewal never lets the lease lapse.
    """
    resource_id: ResourceId
    lease_ttl: float = 60.0
    renew_interval: Optional[float] = None
    acquire_retry_delay: Tuple[float, float] = FAST_RETRY_DELAY

    def __post_init__(self):
        if self.lease_ttl <= 0:
            raise ValidationError("Lease TTL must be positive")
        if self.renew_interval is None:
            object.__setattr__(self, "renew_interval", self.lease_ttl / 2)
        if not 0 < self.renew_interval < self.lease_ttl:
            raise ValidationError("Renew interval must be positive and shorter than the lease TTL")
        low, high = self.acquire_retry_delay
        if low < 0 or high < low:
            raise ValidationError("Retry delay range must satisfy 0 <= min <= max")


@dataclass
class AcquireResult:
    """Outcome of a single acquire attempt against the store."""
    acquired: bool
    token: Optional[str] = None
    holder_id: Optional[str] = None
    expires_at: Optional[str] = None

    def __bool__(self) -> bool:
        return self.acquired


@dataclass
class LockHandle:
    """Ownership record shared by a lock and its renewal scheduler.

    The token is set only while the state is ``HELD`` or ``RELEASING``. All
    transitions happen under ``_mutex``.
    """
    resource_id: ResourceId
    lease_token: Optional[str] = None
    state: LockState = LockState.UNLOCKED
    acquired_at: Optional[float] = None
    last_renewed_at: Optional[float] = None
    failure: Optional[LeaseLostError] = None
    _mutex: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def snapshot(self) -> Tuple[LockState, Optional[str]]:
        with self._mutex:
            return self.state, self.lease_token

    def current_failure(self) -> Optional[LeaseLostError]:
        with self._mutex:
            return self.failure

    def begin_acquire(self) -> None:
        with self._mutex:
            if self.state != LockState.UNLOCKED:
                raise LockStateError(f"Cannot acquire a lock in state '{self.state.value}'")
            self.state = LockState.ACQUIRING

    def abort_acquire(self) -> None:
        with self._mutex:
            if self.state == LockState.ACQUIRING:
                self.state = LockState.UNLOCKED

    def mark_held(self, token: str) -> None:
        now = time.monotonic()
        with self._mutex:
            self.lease_token = token
            self.state = LockState.HELD
            self.acquired_at = now
            self.last_renewed_at = now

    def mark_renewed(self) -> None:
        with self._mutex:
            self.last_renewed_at = time.monotonic()

    def since_renewal(self) -> Optional[float]:
        """Seconds since the lease was last acquired or renewed."""
        with self._mutex:
            if self.last_renewed_at is None:
                return None
            return time.monotonic() - self.last_renewed_at

    def mark_failed(self, error: LeaseLostError) -> bool:
        """Record a lost lease. Returns False if the lock was no longer held."""
        with self._mutex:
            if self.state != LockState.HELD:
                return False
            self.state = LockState.FAILED
            self.lease_token = None
            self.failure = error
            return True

    def begin_release(self) -> Tuple[LockState, Optional[str]]:
        """Move a held lock to ``RELEASING`` and return the prior state and token."""
        with self._mutex:
            previous = self.state
            if previous == LockState.HELD:
                self.state = LockState.RELEASING
            return previous, self.lease_token

    def mark_released(self) -> None:
        with self._mutex:
            self.lease_token = None
            self.state = LockState.RELEASED
