from __future__ import annotations

import asyncio
import math
import threading
import time
from typing import Callable, Dict, Optional, Protocol

from redis.exceptions import RedisError

from communitypulse.logging import credential_fingerprint, get_logger
from communitypulse.service.credentials import read_unverified_claims
from communitypulse.service.errors import InvalidCredentialError
from communitypulse.storage.errors import RevocationBackendError

logger = get_logger(__name__)

# Added to the remaining lifetime so the entry outlives the credential's expiry instant
EXPIRY_BUFFER_SECONDS = 1


class RevocationBackend(Protocol):
    async def revoke_credential(self, credential: str, ttl_seconds: int) -> None: ...

    async def is_credential_revoked(self, credential: str) -> bool: ...

    async def count_revoked_credentials(self) -> int: ...

    async def clear_revoked_credentials(self) -> int: ...


class MemoryRevocationBackend:
    """Process-local TTL map used when Redis is not configured."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, float] = {}

    def _purge_expired(self) -> None:
        now = self._clock()
        for key in [k for k, deadline in self._entries.items() if deadline <= now]:
            self._entries.pop(key, None)

    async def revoke_credential(self, credential: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[credential] = self._clock() + ttl_seconds

    async def is_credential_revoked(self, credential: str) -> bool:
        with self._lock:
            deadline = self._entries.get(credential)
            if deadline is None:
                return False
            if deadline <= self._clock():
                self._entries.pop(credential, None)
                return False
            return True

    async def count_revoked_credentials(self) -> int:
        with self._lock:
            self._purge_expired()
            return len(self._entries)

    async def clear_revoked_credentials(self) -> int:
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
            return removed


class RevocationStore:
    """Keyed deny-list of credentials revoked before their natural expiry.

    Entries live exactly as long as the credential could still verify, plus
    ``EXPIRY_BUFFER_SECONDS``, so the keyspace only ever holds credentials that
    were explicitly revoked and are not yet dead.

    ``is_revoked`` fails open: when the backend errors or exceeds ``timeout``
    the credential is treated as not revoked and ``revocation_check_failed`` is
    logged. The credential still has to carry a valid, unexpired signature to
    be admitted.
    """

    def __init__(
        self,
        backend: RevocationBackend,
        *,
        clock: Callable[[], float] = time.time,
        timeout: Optional[float] = 2.0,
    ) -> None:
        self.backend = backend
        self._clock = clock
        self.timeout = timeout

    def ttl_for(self, credential: str) -> int:
        """Seconds the entry must live; ``<= 0`` means the credential is already dead."""
        claims = read_unverified_claims(credential)
        try:
            exp = float(claims["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidCredentialError("Invalid token") from exc
        remaining = exp - self._clock()
        if remaining <= 0:
            return 0
        return math.ceil(remaining) + EXPIRY_BUFFER_SECONDS

    async def _bounded(self, awaitable):
        if self.timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self.timeout)

    async def add(self, credential: str) -> bool:
        """Revoke ``credential``; returns False when it had already expired.

        Backend failures propagate: a logout that could not be recorded must not
        report success.
        """
        ttl = self.ttl_for(credential)
        fingerprint = credential_fingerprint(credential)
        if ttl <= 0:
            logger.info("revocation_skipped_expired", fp=fingerprint)
            return False
        try:
            await self._bounded(self.backend.revoke_credential(credential, ttl))
        except (asyncio.TimeoutError, RedisError, OSError) as exc:
            logger.error("revocation_add_failed", fp=fingerprint, error=str(exc))
            raise RevocationBackendError(str(exc) or "revocation backend timeout") from exc
        logger.info("credential_revoked", fp=fingerprint, ttl_seconds=ttl)
        return True

    async def is_revoked(self, credential: str) -> bool:
        try:
            return bool(
                await self._bounded(self.backend.is_credential_revoked(credential))
            )
        except Exception as exc:
            logger.warning(
                "revocation_check_failed",
                fp=credential_fingerprint(credential),
                error=str(exc) or exc.__class__.__name__,
                policy="fail_open",
            )
            return False

    async def size(self) -> int:
        return int(await self._bounded(self.backend.count_revoked_credentials()))

    async def clear(self) -> int:
        removed = int(await self._bounded(self.backend.clear_revoked_credentials()))
        logger.warning("revocations_cleared", removed=removed)
        return removed


__all__ = [
    "EXPIRY_BUFFER_SECONDS",
    "MemoryRevocationBackend",
    "RevocationBackend",
    "RevocationStore",
]
