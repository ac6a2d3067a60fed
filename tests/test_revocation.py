"""Tests for the credential deny-list.

Covers TTL bookkeeping against the credential's own expiry, the no-op on
already-dead credentials, fail-open lookups and the operator size/clear calls.
"""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from communitypulse.service.credentials import SECONDS_PER_DAY, CredentialIssuer
from communitypulse.storage.errors import RevocationBackendError
from communitypulse.storage.revocation import (
    EXPIRY_BUFFER_SECONDS,
    MemoryRevocationBackend,
    RevocationStore,
)

SECRET = "revocation-test-secret-with-enough-length-0123456789"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class BrokenBackend:
    """Backend whose every call fails like an unreachable Redis."""

    async def revoke_credential(self, credential, ttl_seconds):
        raise RedisConnectionError("connection refused")

    async def is_credential_revoked(self, credential):
        raise RedisConnectionError("connection refused")

    async def count_revoked_credentials(self):
        raise RedisConnectionError("connection refused")

    async def clear_revoked_credentials(self):
        raise RedisConnectionError("connection refused")


class SlowBackend(MemoryRevocationBackend):
    async def is_credential_revoked(self, credential):
        await asyncio.sleep(1)
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def issuer(clock):
    return CredentialIssuer(SECRET, ttl_days=7, clock=clock)


@pytest.fixture
def store(clock):
    return RevocationStore(MemoryRevocationBackend(clock=clock), clock=clock)


class TestTtl:
    """Entry lifetime derives from the credential's expiry claim."""

    def test_fresh_credential_ttl_covers_full_lifetime(self, store, issuer):
        token = issuer.issue("user-1")
        assert store.ttl_for(token) == 7 * SECONDS_PER_DAY + EXPIRY_BUFFER_SECONDS

    def test_ttl_shrinks_as_time_passes(self, store, issuer, clock):
        token = issuer.issue("user-1")
        clock.advance(SECONDS_PER_DAY)
        assert store.ttl_for(token) == 6 * SECONDS_PER_DAY + EXPIRY_BUFFER_SECONDS

    def test_expired_credential_has_no_ttl(self, store, issuer, clock):
        token = issuer.issue("user-1")
        clock.advance(7 * SECONDS_PER_DAY + 5)
        assert store.ttl_for(token) == 0


class TestAdd:
    """Revoking credentials."""

    async def test_revoked_credential_is_reported_until_expiry(self, store, issuer, clock):
        token = issuer.issue("user-1")
        assert await store.add(token) is True
        assert await store.is_revoked(token) is True

        clock.advance(7 * SECONDS_PER_DAY - 1)
        assert await store.is_revoked(token) is True

        clock.advance(EXPIRY_BUFFER_SECONDS + 2)
        assert await store.is_revoked(token) is False
        assert await store.size() == 0

    async def test_expired_credential_creates_no_entry(self, store, issuer, clock):
        token = issuer.issue("user-1")
        clock.advance(8 * SECONDS_PER_DAY)

        assert await store.add(token) is False
        assert await store.size() == 0
        assert await store.is_revoked(token) is False

    async def test_repeated_add_converges(self, store, issuer):
        token = issuer.issue("user-1")
        results = await asyncio.gather(store.add(token), store.add(token))
        assert results == [True, True]
        assert await store.size() == 1

    async def test_other_credentials_unaffected(self, store, issuer):
        revoked = issuer.issue("user-1")
        kept = issuer.issue("user-1")
        await store.add(revoked)
        assert await store.is_revoked(kept) is False

    async def test_backend_failure_on_add_propagates(self, issuer, clock):
        store = RevocationStore(BrokenBackend(), clock=clock)
        with pytest.raises(RevocationBackendError):
            await store.add(issuer.issue("user-1"))


class TestFailOpen:
    """Lookups treat an unavailable backend as "not revoked"."""

    async def test_backend_error_reads_as_not_revoked(self, issuer, clock):
        store = RevocationStore(BrokenBackend(), clock=clock)
        assert await store.is_revoked(issuer.issue("user-1")) is False

    async def test_slow_backend_is_bounded(self, issuer, clock):
        store = RevocationStore(SlowBackend(clock=clock), clock=clock, timeout=0.05)
        assert await store.is_revoked(issuer.issue("user-1")) is False


class TestAdministration:
    """Size and bulk clear."""

    async def test_clear_removes_every_entry(self, store, issuer):
        for _ in range(3):
            await store.add(issuer.issue("user-1"))
        assert await store.size() == 3

        assert await store.clear() == 3
        assert await store.size() == 0

    async def test_size_ignores_lapsed_entries(self, store, issuer, clock):
        await store.add(issuer.issue("user-1"))
        clock.advance(SECONDS_PER_DAY)
        await store.add(issuer.issue("user-2"))

        clock.advance(6 * SECONDS_PER_DAY + EXPIRY_BUFFER_SECONDS + 1)
        assert await store.size() == 1
