from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from communitypulse.logging import get_logger
from communitypulse.service.authz import is_operator
from communitypulse.service.errors import (
    InfrastructureError,
    TenantNotFoundError,
    TenantRequiredError,
)
from communitypulse.storage.models import Tenant, User

logger = get_logger(__name__)


class TenantStore(Protocol):
    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_tenant_by_key(self, key: str, *, active_only: bool = True) -> Optional[Tenant]: ...


class TenantSource(str, Enum):
    HEADER = "header"
    HOME = "home"
    PARAMETER = "parameter"
    NONE = "none"


@dataclass(frozen=True)
class RequestScope:
    """Outcome of tenant resolution: exactly one active tenant, or explicitly none."""

    principal: User
    tenant: Optional[Tenant]
    source: TenantSource

    @property
    def tenant_id(self) -> Optional[str]:
        return self.tenant.id if self.tenant else None


class TenantResolver:
    """Picks the single tenant governing a request.

    Precedence, first match wins:

    1. explicit header naming a tenant by key (case-insensitive); an unknown or
       inactive key does not match and resolution continues
    2. the principal's home tenant
    3. explicit tenant id parameter

    A home tenant or parameter that names a missing or inactive tenant raises
    ``TenantNotFoundError``. With no signal at all, platform operators get an
    explicit no-tenant scope and everyone else gets ``TenantRequiredError``.
    """

    def __init__(self, store: TenantStore) -> None:
        self.store = store

    def _lookup_by_key(self, key: str) -> Optional[Tenant]:
        try:
            return self.store.get_tenant_by_key(key, active_only=True)
        except Exception as exc:
            logger.error("tenant_lookup_failed", key=key, error=str(exc))
            raise InfrastructureError("tenant store unavailable") from exc

    def _lookup_active_by_id(self, tenant_id: str) -> Tenant:
        try:
            tenant = self.store.get_tenant(tenant_id)
        except Exception as exc:
            logger.error("tenant_lookup_failed", tenant_id=tenant_id, error=str(exc))
            raise InfrastructureError("tenant store unavailable") from exc
        if tenant is None or not tenant.is_active:
            raise TenantNotFoundError("Community not found", detail={"tenant_id": tenant_id})
        return tenant

    def resolve(
        self,
        principal: User,
        *,
        tenant_key: Optional[str] = None,
        tenant_id: Optional[str] = None,
        require: bool = False,
    ) -> RequestScope:
        key = (tenant_key or "").strip().lower()
        if key:
            tenant = self._lookup_by_key(key)
            if tenant is not None:
                return self._resolved(principal, tenant, TenantSource.HEADER)
            logger.info("tenant_header_unmatched", key=key, user_id=principal.id)

        if principal.tenant_id:
            tenant = self._lookup_active_by_id(principal.tenant_id)
            return self._resolved(principal, tenant, TenantSource.HOME)

        if tenant_id:
            tenant = self._lookup_active_by_id(tenant_id)
            return self._resolved(principal, tenant, TenantSource.PARAMETER)

        if is_operator(principal) and not require:
            logger.debug("tenant_resolved", user_id=principal.id, source=TenantSource.NONE.value)
            return RequestScope(principal=principal, tenant=None, source=TenantSource.NONE)
        raise TenantRequiredError("Community identification required")

    @staticmethod
    def _resolved(principal: User, tenant: Tenant, source: TenantSource) -> RequestScope:
        logger.debug(
            "tenant_resolved",
            user_id=principal.id,
            tenant_id=tenant.id,
            source=source.value,
        )
        return RequestScope(principal=principal, tenant=tenant, source=source)


__all__ = ["RequestScope", "TenantResolver", "TenantSource", "TenantStore"]
