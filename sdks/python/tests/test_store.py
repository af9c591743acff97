"""Tests for the HTTP lease store adapters."""

import io
import json

import httpx
import pytest

from leaselock import (
    AsyncHttpLeaseStore,
    AuthenticationError,
    HttpLeaseStore,
    LeaseConflictError,
    LeaseLockError,
    LeaseLostError,
    NetworkError,
    ResourceId,
    StoreError,
)

BASE = "https://store.example"
RID = ResourceId("test-locks", "slot.lck")
OBJECT = f"{BASE}/objects/test-locks/slot.lck"


class FakeService:
    """Routes requests to canned responses and records what was sent."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def on(self, method: str, url: str, response: httpx.Response) -> None:
        self.routes[(method, url)] = response

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url).split("?")[0]
        route = self.routes.get((request.method, url))
        if route is None:
            return httpx.Response(500, json={"error": "no route"})
        if isinstance(route, Exception):
            raise route
        return route


@pytest.fixture
def service() -> FakeService:
    return FakeService()


@pytest.fixture
def http_store(service: FakeService):
    store = HttpLeaseStore(BASE, token="secret", transport=httpx.MockTransport(service))
    yield store
    store.close()


class TestHttpLeaseStore:
    """Request shapes and status mapping of the sync adapter."""

    def test_acquire_returns_token(self, http_store, service) -> None:
        service.on("POST", f"{OBJECT}/lease/acquire",
                   httpx.Response(200, json={"lease_id": "L1", "expires_at": "soon"}))

        result = http_store.acquire_lease(RID, 30.0)

        assert result.acquired
        assert result.token == "L1"
        sent = service.requests[0]
        assert json.loads(sent.content) == {"ttl_seconds": 30.0}
        assert sent.headers["Authorization"] == "Bearer secret"

    def test_acquire_conflict_is_a_result(self, http_store, service) -> None:
        service.on("POST", f"{OBJECT}/lease/acquire",
                   httpx.Response(409, json={"holder_id": "other", "expires_at": "later"}))

        result = http_store.acquire_lease(RID, 30.0)

        assert not result.acquired
        assert result.holder_id == "other"
        assert result.token is None

    @pytest.mark.parametrize("response", [
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={}),
        httpx.Response(200, json=["L1"]),
    ])
    def test_acquire_with_unreadable_body(self, http_store, service, response) -> None:
        """A success status without a usable lease id stays inside the library errors."""
        service.on("POST", f"{OBJECT}/lease/acquire", response)

        with pytest.raises(NetworkError, match="Failed to parse response"):
            http_store.acquire_lease(RID, 30.0)

    def test_acquire_auth_failure(self, http_store, service) -> None:
        service.on("POST", f"{OBJECT}/lease/acquire", httpx.Response(401))

        with pytest.raises(AuthenticationError):
            http_store.acquire_lease(RID, 30.0)

    def test_server_errors_are_transient(self, http_store, service) -> None:
        service.on("POST", f"{OBJECT}/lease/acquire", httpx.Response(503, text="busy"))

        with pytest.raises(NetworkError):
            http_store.acquire_lease(RID, 30.0)

    def test_connection_errors_are_transient(self, http_store, service) -> None:
        service.on("POST", f"{OBJECT}/lease/renew", httpx.ConnectError("refused"))

        with pytest.raises(NetworkError):
            http_store.renew_lease(RID, "L1")

    def test_other_client_errors(self, http_store, service) -> None:
        service.on("POST", f"{OBJECT}/lease/acquire", httpx.Response(400, json={"error": "bad ttl"}))

        with pytest.raises(StoreError, match="bad ttl"):
            http_store.acquire_lease(RID, 30.0)

    @pytest.mark.parametrize("status", [404, 409, 410, 412])
    def test_renew_of_gone_lease_is_lost(self, http_store, service, status: int) -> None:
        service.on("POST", f"{OBJECT}/lease/renew", httpx.Response(status))

        with pytest.raises(LeaseLostError):
            http_store.renew_lease(RID, "L1")

    def test_renew_sends_token(self, http_store, service) -> None:
        service.on("POST", f"{OBJECT}/lease/renew", httpx.Response(200, json={}))

        http_store.renew_lease(RID, "L1")

        assert json.loads(service.requests[0].content) == {"lease_id": "L1"}

    @pytest.mark.parametrize("status", [200, 404, 409, 410])
    def test_release_tolerates_gone_lease(self, http_store, service, status: int) -> None:
        service.on("POST", f"{OBJECT}/lease/release", httpx.Response(status))

        http_store.release_lease(RID, "L1")

    def test_ensure_is_idempotent(self, http_store, service) -> None:
        service.on("PUT", OBJECT, httpx.Response(409))

        http_store.ensure_resource_exists(RID)

        assert service.requests[0].url.params["if-absent"] == "true"

    def test_read_streams_into_destination(self, http_store, service) -> None:
        service.on("GET", OBJECT, httpx.Response(200, content=b"contents"))
        out = io.BytesIO()

        assert http_store.read_object(RID, "L1", out) == 8
        assert out.getvalue() == b"contents"
        assert service.requests[0].headers["X-Lease-Id"] == "L1"

    def test_read_with_stale_token(self, http_store, service) -> None:
        service.on("GET", OBJECT, httpx.Response(412, json={"error": "lease mismatch"}))

        with pytest.raises(LeaseConflictError):
            http_store.read_object(RID, "old", io.BytesIO())

    def test_write_uploads_stream(self, http_store, service) -> None:
        service.on("PUT", OBJECT, httpx.Response(201))

        http_store.write_object(RID, "L1", io.BytesIO(b"new"))

        sent = service.requests[0]
        assert sent.content == b"new"
        assert sent.headers["X-Lease-Id"] == "L1"

    def test_write_with_stale_token(self, http_store, service) -> None:
        service.on("PUT", OBJECT, httpx.Response(409))

        with pytest.raises(LeaseConflictError):
            http_store.write_object(RID, "old", b"x")


class TestAsyncHttpLeaseStore:
    """The async adapter maps responses the same way."""

    @pytest.mark.asyncio
    async def test_lease_lifecycle(self, service) -> None:
        service.on("PUT", OBJECT, httpx.Response(201))
        service.on("POST", f"{OBJECT}/lease/acquire", httpx.Response(200, json={"lease_id": "L9"}))
        service.on("POST", f"{OBJECT}/lease/renew", httpx.Response(200))
        service.on("POST", f"{OBJECT}/lease/release", httpx.Response(200))

        async with AsyncHttpLeaseStore(BASE, transport=httpx.MockTransport(service)) as store:
            await store.ensure_resource_exists(RID)
            result = await store.acquire_lease(RID, 10.0)
            await store.renew_lease(RID, result.token)
            await store.release_lease(RID, result.token)

        assert result.token == "L9"
        assert "Authorization" not in service.requests[0].headers
        assert [r.url.path for r in service.requests][-1].endswith("/lease/release")

    @pytest.mark.asyncio
    async def test_acquire_with_unreadable_body(self, service) -> None:
        service.on("POST", f"{OBJECT}/lease/acquire", httpx.Response(200, text="not json"))

        async with AsyncHttpLeaseStore(BASE, transport=httpx.MockTransport(service)) as store:
            with pytest.raises(LeaseLockError):
                await store.acquire_lease(RID, 10.0)

    @pytest.mark.asyncio
    async def test_renew_expired(self, service) -> None:
        service.on("POST", f"{OBJECT}/lease/renew", httpx.Response(410))

        async with AsyncHttpLeaseStore(BASE, transport=httpx.MockTransport(service)) as store:
            with pytest.raises(LeaseLostError):
                await store.renew_lease(RID, "L1")

    @pytest.mark.asyncio
    async def test_read_and_write(self, service) -> None:
        service.on("GET", OBJECT, httpx.Response(200, content=b"abc"))

        async with AsyncHttpLeaseStore(BASE, transport=httpx.MockTransport(service)) as store:
            out = io.BytesIO()
            assert await store.read_object(RID, "L1", out) == 3
            service.on("PUT", OBJECT, httpx.Response(412))
            with pytest.raises(LeaseConflictError):
                await store.write_object(RID, "L1", b"abc")

        assert out.getvalue() == b"abc"
