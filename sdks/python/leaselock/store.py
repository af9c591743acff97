"""Lease store contract and HTTP adapters."""

import logging
from typing import BinaryIO, Optional, Protocol, Union

import httpx

from .exceptions import (
    AuthenticationError,
    LeaseConflictError,
    LeaseLostError,
    NetworkError,
    StoreError,
)
from .models import AcquireResult, ResourceId

logger = logging.getLogger(__name__)

LEASE_HEADER = "X-Lease-Id"

# Statuses meaning the lease no longer exists or belongs to someone else.
_LEASE_GONE = (404, 409, 410, 412)
_STALE_TOKEN = (409, 412)

Source = Union[bytes, BinaryIO]


class LeaseStore(Protocol):
    """Capabilities a lock needs from a lease-granting object store."""

    def ensure_resource_exists(self, resource_id: ResourceId) -> None: ...

    def acquire_lease(self, resource_id: ResourceId, ttl: float) -> AcquireResult: ...

    def renew_lease(self, resource_id: ResourceId, token: str) -> None: ...

    def release_lease(self, resource_id: ResourceId, token: str) -> None: ...

    def read_object(self, resource_id: ResourceId, token: str, destination: BinaryIO) -> int: ...

    def write_object(self, resource_id: ResourceId, token: str, source: Source) -> None: ...


class AsyncLeaseStore(Protocol):
    """Async counterpart of :class:`LeaseStore`."""

    async def ensure_resource_exists(self, resource_id: ResourceId) -> None: ...

    async def acquire_lease(self, resource_id: ResourceId, ttl: float) -> AcquireResult: ...

    async def renew_lease(self, resource_id: ResourceId, token: str) -> None: ...

    async def release_lease(self, resource_id: ResourceId, token: str) -> None: ...

    async def read_object(self, resource_id: ResourceId, token: str, destination: BinaryIO) -> int: ...

    async def write_object(self, resource_id: ResourceId, token: str, source: Source) -> None: ...


def read_source(source: Source) -> bytes:
    """Return the bytes of an in-memory buffer or a readable binary stream."""
    if isinstance(source, (bytes, bytearray, memoryview)):
        return bytes(source)
    return source.read()


class _HttpLeaseStoreBase:
    """URL layout and status mapping shared by the sync and async adapters."""

    def __init__(self, base_url: str, token: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def _object_url(self, resource_id: ResourceId) -> str:
        return f"{self.base_url}/objects/{resource_id.container}/{resource_id.name}"

    def _lease_url(self, resource_id: ResourceId, action: str) -> str:
        return f"{self._object_url(resource_id)}/lease/{action}"

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return response.json().get("error", f"HTTP {response.status_code}")
        except ValueError:
            return f"HTTP {response.status_code}: {response.text}"

    def _check(self, response: httpx.Response, operation: str) -> None:
        """Raise the library exception matching an unsuccessful response."""
        status = response.status_code
        if status < 400:
            return
        if status in (401, 403):
            raise AuthenticationError("Invalid or missing authentication token")
        message = f"{operation} failed: {self._error_message(response)}"
        if status >= 500 or status == 429:
            raise NetworkError(message)
        raise StoreError(message)

    def _acquire_result(self, response: httpx.Response, resource_id: ResourceId) -> AcquireResult:
        if response.status_code == 409:
            try:
                data = response.json()
            except ValueError:
                data = {}
            logger.debug("Lease on %s is held by %s", resource_id, data.get("holder_id"))
            return AcquireResult(
                acquired=False,
                holder_id=data.get("holder_id"),
                expires_at=data.get("expires_at"),
            )
        self._check(response, "acquire")
        try:
            data = response.json()
            return AcquireResult(
                acquired=True,
                token=data["lease_id"],
                expires_at=data.get("expires_at"),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise NetworkError(f"Failed to parse response: {e}")

    def _check_renew(self, response: httpx.Response, resource_id: ResourceId) -> None:
        if response.status_code in _LEASE_GONE:
            raise LeaseLostError(f"Lease on {resource_id} is no longer valid: "
                                 f"{self._error_message(response)}")
        self._check(response, "renew")

    def _check_release(self, response: httpx.Response, resource_id: ResourceId) -> None:
        if response.status_code in _LEASE_GONE:
            logger.debug("Lease on %s was already gone at release", resource_id)
            return
        self._check(response, "release")

    def _check_guarded(self, response: httpx.Response, resource_id: ResourceId, operation: str) -> None:
        if response.status_code in _STALE_TOKEN:
            raise LeaseConflictError(f"{operation} on {resource_id} rejected, lease token is stale")
        self._check(response, operation)


class HttpLeaseStore(_HttpLeaseStoreBase):
    """Lease store client for an HTTP object service."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the store client.

        Args:
            base_url: The base URL of the object service
            token: Bearer token for authentication
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport, mainly for tests
        """
        super().__init__(base_url, token)
        self.client = httpx.Client(headers=self._headers(), timeout=timeout, transport=transport)

    def ensure_resource_exists(self, resource_id: ResourceId) -> None:
        try:
            response = self.client.put(
                self._object_url(resource_id), params={"if-absent": "true"}, content=b""
            )
        except httpx.RequestError as e:
            raise NetworkError(f"Network error creating {resource_id}: {e}")
        if response.status_code != 409:
            self._check(response, "create")

    def acquire_lease(self, resource_id: ResourceId, ttl: float) -> AcquireResult:
        try:
            response = self.client.post(
                self._lease_url(resource_id, "acquire"), json={"ttl_seconds": ttl}
            )
        except httpx.RequestError as e:
            raise NetworkError(f"Network error acquiring lease on {resource_id}: {e}")
        return self._acquire_result(response, resource_id)

    def renew_lease(self, resource_id: ResourceId, token: str) -> None:
        try:
            response = self.client.post(
                self._lease_url(resource_id, "renew"), json={"lease_id": token}
            )
        except httpx.RequestError as e:
            raise NetworkError(f"Network error renewing lease on {resource_id}: {e}")
        self._check_renew(response, resource_id)

    def release_lease(self, resource_id: ResourceId, token: str) -> None:
        try:
            response = self.client.post(
                self._lease_url(resource_id, "release"), json={"lease_id": token}
            )
        except httpx.RequestError as e:
            raise NetworkError(f"Network error releasing lease on {resource_id}: {e}")
        self._check_release(response, resource_id)

    def read_object(self, resource_id: ResourceId, token: str, destination: BinaryIO) -> int:
        """Stream the object into ``destination`` and return the byte count."""
        transferred = 0
        try:
            with self.client.stream(
                "GET", self._object_url(resource_id), headers={LEASE_HEADER: token}
            ) as response:
                if response.status_code >= 400:
                    response.read()
                    self._check_guarded(response, resource_id, "read")
                for chunk in response.iter_bytes():
                    destination.write(chunk)
                    transferred += len(chunk)
        except httpx.RequestError as e:
            raise NetworkError(f"Network error reading {resource_id}: {e}")
        return transferred

    def write_object(self, resource_id: ResourceId, token: str, source: Source) -> None:
        try:
            response = self.client.put(
                self._object_url(resource_id),
                headers={LEASE_HEADER: token},
                content=read_source(source),
            )
        except httpx.RequestError as e:
            raise NetworkError(f"Network error writing {resource_id}: {e}")
        self._check_guarded(response, resource_id, "write")

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class AsyncHttpLeaseStore(_HttpLeaseStoreBase):
    """Async lease store client for an HTTP object service."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the async store client.

        Args:
            base_url: The base URL of the object service
            token: Bearer token for authentication
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport, mainly for tests
        """
        super().__init__(base_url, token)
        self.client = httpx.AsyncClient(headers=self._headers(), timeout=timeout, transport=transport)

    async def ensure_resource_exists(self, resource_id: ResourceId) -> None:
        try:
            response = await self.client.put(
                self._object_url(resource_id), params={"if-absent": "true"}, content=b""
            )
        except httpx.RequestError as e:
            raise NetworkError(f"Network error creating {resource_id}: {e}")
        if response.status_code != 409:
            self._check(response, "create")

    async def acquire_lease(self, resource_id: ResourceId, ttl: float) -> AcquireResult:
        try:
            response = await self.client.post(
                self._lease_url(resource_id, "acquire"), json={"ttl_seconds": ttl}
            )
        except httpx.RequestError as e:
            raise NetworkError(f"Network error acquiring lease on {resource_id}: {e}")
        return self._acquire_result(response, resource_id)

    async def renew_lease(self, resource_id: ResourceId, token: str) -> None:
        try:
            response = await self.client.post(
                self._lease_url(resource_id, "renew"), json={"lease_id": token}
            )
        except httpx.RequestError as e:
            raise NetworkError(f"Network error renewing lease on {resource_id}: {e}")
        self._check_renew(response, resource_id)

    async def release_lease(self, resource_id: ResourceId, token: str) -> None:
        try:
            response = await self.client.post(
                self._lease_url(resource_id, "release"), json={"lease_id": token}
            )
        except httpx.RequestError as e:
            raise NetworkError(f"Network error releasing lease on {resource_id}: {e}")
        self._check_release(response, resource_id)

    async def read_object(self, resource_id: ResourceId, token: str, destination: BinaryIO) -> int:
        transferred = 0
        try:
            async with self.client.stream(
                "GET", self._object_url(resource_id), headers={LEASE_HEADER: token}
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    self._check_guarded(response, resource_id, "read")
                async for chunk in response.aiter_bytes():
                    destination.write(chunk)
                    transferred += len(chunk)
        except httpx.RequestError as e:
            raise NetworkError(f"Network error reading {resource_id}: {e}")
        return transferred

    async def write_object(self, resource_id: ResourceId, token: str, source: Source) -> None:
        try:
            response = await self.client.put(
                self._object_url(resource_id),
                headers={LEASE_HEADER: token},
                content=read_source(source),
            )
        except httpx.RequestError as e:
            raise NetworkError(f"Network error writing {resource_id}: {e}")
        self._check_guarded(response, resource_id, "write")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
