"""In-process lease store.

Honors lease TTLs with a monotonic clock, so several locks in one process
contend exactly as they would against a remote store. Intended for tests and
for single-host deployments.
"""

import threading
import time
import uuid
from typing import BinaryIO, Dict, Optional, Tuple

from .exceptions import LeaseConflictError, LeaseLostError, StoreError
from .models import AcquireResult, ResourceId
from .store import Source, read_source


class InMemoryLeaseStore:
    """Thread-safe lease store backed by dictionaries."""

    def __init__(self):
        self._objects: Dict[ResourceId, bytes] = {}
        # resource -> (token, expires_at, ttl)
        self._leases: Dict[ResourceId, Tuple[str, float, float]] = {}
        self._lock = threading.Lock()

    def _active_token(self, resource_id: ResourceId) -> Optional[str]:
        lease = self._leases.get(resource_id)
        if lease is None:
            return None
        token, expires_at, _ = lease
        if time.monotonic() >= expires_at:
            del self._leases[resource_id]
            return None
        return token

    def _require_token(self, resource_id: ResourceId, token: str, operation: str) -> None:
        if resource_id not in self._objects:
            raise StoreError(f"Resource {resource_id} does not exist")
        if self._active_token(resource_id) != token:
            raise LeaseConflictError(f"{operation} on {resource_id} rejected, lease token is stale")

    def ensure_resource_exists(self, resource_id: ResourceId) -> None:
        with self._lock:
            self._objects.setdefault(resource_id, b"")

    def delete_resource(self, resource_id: ResourceId) -> None:
        """Drop a resource and any lease on it."""
        with self._lock:
            self._objects.pop(resource_id, None)
            self._leases.pop(resource_id, None)

    def acquire_lease(self, resource_id: ResourceId, ttl: float) -> AcquireResult:
        with self._lock:
            if resource_id not in self._objects:
                raise StoreError(f"Resource {resource_id} does not exist")
            if self._active_token(resource_id) is not None:
                return AcquireResult(acquired=False)
            token = str(uuid.uuid4())
            self._leases[resource_id] = (token, time.monotonic() + ttl, ttl)
            return AcquireResult(acquired=True, token=token)

    def renew_lease(self, resource_id: ResourceId, token: str) -> None:
        with self._lock:
            if resource_id not in self._objects:
                raise LeaseLostError(f"Resource {resource_id} no longer exists")
            if self._active_token(resource_id) != token:
                raise LeaseLostError(f"Lease on {resource_id} has expired or changed hands")
            _, _, ttl = self._leases[resource_id]
            self._leases[resource_id] = (token, time.monotonic() + ttl, ttl)

    def release_lease(self, resource_id: ResourceId, token: str) -> None:
        with self._lock:
            if self._active_token(resource_id) == token:
                del self._leases[resource_id]

    def read_object(self, resource_id: ResourceId, token: str, destination: BinaryIO) -> int:
        with self._lock:
            self._require_token(resource_id, token, "read")
            data = self._objects[resource_id]
        destination.write(data)
        return len(data)

    def write_object(self, resource_id: ResourceId, token: str, source: Source) -> None:
        data = read_source(source)
        with self._lock:
            self._require_token(resource_id, token, "write")
            self._objects[resource_id] = data

    def is_leased(self, resource_id: ResourceId) -> bool:
        with self._lock:
            return self._active_token(resource_id) is not None


class AsyncInMemoryLeaseStore:
    """Async facade over an :class:`InMemoryLeaseStore`.

    Pass an existing backend to let sync and async locks contend on the same
    resources.
    """

    def __init__(self, backend: Optional[InMemoryLeaseStore] = None):
        self.backend = backend or InMemoryLeaseStore()

    async def ensure_resource_exists(self, resource_id: ResourceId) -> None:
        self.backend.ensure_resource_exists(resource_id)

    async def acquire_lease(self, resource_id: ResourceId, ttl: float) -> AcquireResult:
        return self.backend.acquire_lease(resource_id, ttl)

    async def renew_lease(self, resource_id: ResourceId, token: str) -> None:
        self.backend.renew_lease(resource_id, token)

    async def release_lease(self, resource_id: ResourceId, token: str) -> None:
        self.backend.release_lease(resource_id, token)

    async def read_object(self, resource_id: ResourceId, token: str, destination: BinaryIO) -> int:
        return self.backend.read_object(resource_id, token, destination)

    async def write_object(self, resource_id: ResourceId, token: str, source: Source) -> None:
        self.backend.write_object(resource_id, token, source)
