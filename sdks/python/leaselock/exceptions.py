"""LeaseLock exception classes."""

class LeaseLockError(Exception):
    """Base exception for all LeaseLock errors."""
    pass


class AuthenticationError(LeaseLockError):
    """Raised when the store rejects our credentials."""
    pass


class NetworkError(LeaseLockError):
    """Raised when a store call fails transiently (network, timeout, 5xx)."""
    pass


class StoreError(LeaseLockError):
    """Raised when the store refuses an operation for a non-transient reason."""
    pass


class LeaseConflictError(StoreError):
    """Raised when another lease governs the resource."""

    def __init__(self, message: str, holder_id: str = None, expires_at: str = None):
        super().__init__(message)
        self.holder_id = holder_id
        self.expires_at = expires_at


class LeaseLostError(StoreError):
    """Raised when a held lease expired, was taken over, or its resource vanished."""
    pass


class ValidationError(LeaseLockError):
    """Raised when input validation fails."""
    pass


class LockStateError(LeaseLockError):
    """Raised when a lock operation is called in a state that does not allow it."""
    pass


class AcquireCancelledError(LeaseLockError):
    """Raised when a blocking acquire is cancelled before the lease is obtained."""
    pass
