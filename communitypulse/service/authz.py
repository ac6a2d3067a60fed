from __future__ import annotations

from enum import Enum
from typing import Optional

from communitypulse.service.errors import AuthorizationError
from communitypulse.storage.models import Tenant, User


class Role(str, Enum):
    """Principal roles in strict descending order of privilege."""

    PLATFORM_OPERATOR = "platform_operator"
    TENANT_ADMIN = "tenant_admin"
    TENANT_MEMBER = "tenant_member"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    @classmethod
    def parse(cls, value: str) -> "Role":
        try:
            return cls(value)
        except ValueError:
            return cls.TENANT_MEMBER


_RANKS = {
    Role.PLATFORM_OPERATOR: 3,
    Role.TENANT_ADMIN: 2,
    Role.TENANT_MEMBER: 1,
}


def has_role(principal: User, required: Role) -> bool:
    """Pure predicate; a higher role always satisfies a lower gate."""
    return Role.parse(principal.role).rank >= required.rank


def require_role(principal: User, required: Role) -> None:
    if not has_role(principal, required):
        raise AuthorizationError(
            f"{required.value.replace('_', ' ')} role required",
            reason=f"{required.value}_required",
            detail={"required_role": required.value},
        )


def is_operator(principal: User) -> bool:
    return Role.parse(principal.role) is Role.PLATFORM_OPERATOR


def may_act_in_tenant(principal: User, tenant: Optional[Tenant]) -> bool:
    """Operators act in any tenant; everyone else only in their home tenant."""
    if is_operator(principal):
        return True
    return tenant is not None and principal.tenant_id == tenant.id


def require_tenant_membership(principal: User, tenant: Optional[Tenant]) -> None:
    if not may_act_in_tenant(principal, tenant):
        raise AuthorizationError(
            "not a member of this community",
            reason="tenant_membership_required",
        )


__all__ = [
    "Role",
    "has_role",
    "require_role",
    "is_operator",
    "may_act_in_tenant",
    "require_tenant_membership",
]
