"""Shared fixtures: a lease store that records calls and injects faults."""

import time
from typing import Dict, List, Tuple

import pytest

from leaselock import InMemoryLeaseStore, LockOptions, ResourceId


class RecordingStore(InMemoryLeaseStore):
    """In-memory store that timestamps every call and can raise on demand."""

    def __init__(self):
        super().__init__()
        self.calls: List[Tuple[str, float, object]] = []
        self.errors: Dict[str, List[Exception]] = {}

    def fail_next(self, operation: str, *errors: Exception) -> None:
        self.errors.setdefault(operation, []).extend(errors)

    def calls_of(self, operation: str) -> List[Tuple[str, float, object]]:
        return [call for call in self.calls if call[0] == operation]

    def _enter(self, operation: str, token=None) -> None:
        self.calls.append((operation, time.monotonic(), token))
        pending = self.errors.get(operation)
        if pending:
            raise pending.pop(0)

    def ensure_resource_exists(self, resource_id):
        self._enter("ensure")
        super().ensure_resource_exists(resource_id)

    def acquire_lease(self, resource_id, ttl):
        self._enter("acquire")
        return super().acquire_lease(resource_id, ttl)

    def renew_lease(self, resource_id, token):
        self._enter("renew", token)
        super().renew_lease(resource_id, token)

    def release_lease(self, resource_id, token):
        self._enter("release", token)
        super().release_lease(resource_id, token)

    def read_object(self, resource_id, token, destination):
        self._enter("read", token)
        return super().read_object(resource_id, token, destination)

    def write_object(self, resource_id, token, source):
        self._enter("write", token)
        super().write_object(resource_id, token, source)


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def resource_id() -> ResourceId:
    return ResourceId("test-locks", "r1")


@pytest.fixture
def options(resource_id: ResourceId) -> LockOptions:
    """Short timings so tests finish quickly."""
    return LockOptions(
        resource_id=resource_id,
        lease_ttl=2.0,
        renew_interval=0.05,
        acquire_retry_delay=(0.01, 0.05),
    )
