"""Environment-driven configuration.

Every field can be set through a ``LEASELOCK_``-prefixed environment variable
or a ``.env`` file, e.g. ``LEASELOCK_BASE_URL`` or ``LEASELOCK_LEASE_TTL``.
"""

from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import FAST_RETRY_DELAY, LockOptions, ResourceId
from .store import AsyncHttpLeaseStore, HttpLeaseStore


class LeaseLockSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LEASELOCK_", env_file=".env", extra="ignore")

    # Store connection
    base_url: str = "http://localhost:8080"
    token: Optional[str] = None
    http_timeout: float = Field(default=30.0, gt=0)

    # Lease timing, in seconds
    lease_ttl: float = Field(default=60.0, gt=0)
    renew_interval: Optional[float] = Field(default=None, gt=0)
    retry_delay_min: float = Field(default=FAST_RETRY_DELAY[0], ge=0)
    retry_delay_max: float = Field(default=FAST_RETRY_DELAY[1], ge=0)

    @model_validator(mode="after")
    def _check_ranges(self):
        if self.retry_delay_max < self.retry_delay_min:
            raise ValueError("retry_delay_max must not be below retry_delay_min")
        if self.renew_interval is not None and self.renew_interval >= self.lease_ttl:
            raise ValueError("renew_interval must be shorter than lease_ttl")
        return self

    def lock_options(self, resource_id: ResourceId) -> LockOptions:
        return LockOptions(
            resource_id=resource_id,
            lease_ttl=self.lease_ttl,
            renew_interval=self.renew_interval,
            acquire_retry_delay=(self.retry_delay_min, self.retry_delay_max),
        )

    def create_store(self) -> HttpLeaseStore:
        return HttpLeaseStore(self.base_url, token=self.token, timeout=self.http_timeout)

    def create_async_store(self) -> AsyncHttpLeaseStore:
        return AsyncHttpLeaseStore(self.base_url, token=self.token, timeout=self.http_timeout)
