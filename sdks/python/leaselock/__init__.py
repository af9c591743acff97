"""LeaseLock - distributed locks on top of store leases."""

from .lock import AsyncDistributedLock, DistributedLock
from .memory import AsyncInMemoryLeaseStore, InMemoryLeaseStore
from .store import AsyncHttpLeaseStore, AsyncLeaseStore, HttpLeaseStore, LeaseStore
from .exceptions import (
    LeaseLockError,
    AuthenticationError,
    NetworkError,
    StoreError,
    LeaseConflictError,
    LeaseLostError,
    ValidationError,
    LockStateError,
    AcquireCancelledError,
)
from .models import (
    FAST_RETRY_DELAY,
    SLOW_RETRY_DELAY,
    AcquireResult,
    LockHandle,
    LockOptions,
    LockState,
    ResourceId,
)

__version__ = "1.0.0"
__all__ = [
    "DistributedLock",
    "AsyncDistributedLock",
    "LeaseStore",
    "AsyncLeaseStore",
    "HttpLeaseStore",
    "AsyncHttpLeaseStore",
    "InMemoryLeaseStore",
    "AsyncInMemoryLeaseStore",
    "LeaseLockError",
    "AuthenticationError",
    "NetworkError",
    "StoreError",
    "LeaseConflictError",
    "LeaseLostError",
    "ValidationError",
    "LockStateError",
    "AcquireCancelledError",
    "FAST_RETRY_DELAY",
    "SLOW_RETRY_DELAY",
    "AcquireResult",
    "LockHandle",
    "LockOptions",
    "LockState",
    "ResourceId",
]
