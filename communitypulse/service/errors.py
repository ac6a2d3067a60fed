from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every error carries two stable identifiers:
    - ``error_code``: the coarse category rendered as ``error.code``
      (unauthorized, forbidden, not_found, validation_error, conflict,
      rate_limited, server_error, service_unavailable)
    - ``reason``: the specific cause rendered as ``error.reason`` so clients can
      branch on expired vs. revoked vs. deactivated without parsing messages
    """

    status_code: int = 400
    error_code: str = "validation_error"
    reason: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        if reason is not None:
            self.reason = reason
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    reason = "unauthenticated"


class MissingCredentialError(AuthenticationError):
    reason = "missing_credential"


class InvalidCredentialError(AuthenticationError):
    reason = "invalid_signature"


class CredentialExpiredError(AuthenticationError):
    reason = "credential_expired"


class CredentialRevokedError(AuthenticationError):
    reason = "credential_revoked"


class PrincipalNotFoundError(AuthenticationError):
    reason = "principal_not_found"


class PrincipalDeactivatedError(AuthenticationError):
    reason = "principal_deactivated"


class TenantResolutionError(ServiceError):
    """The request's tenant could not be determined; distinct from auth failures."""
    reason = "tenant_unresolved"


class TenantRequiredError(TenantResolutionError):
    """No tenant signal resolved for a caller that needs one (400)."""
    status_code = 400
    error_code = "validation_error"
    reason = "tenant_required"


class TenantNotFoundError(TenantResolutionError):
    """Tenant missing or inactive; inactive tenants are invisible (404)."""
    status_code = 404
    error_code = "not_found"
    reason = "tenant_not_found"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    reason = "forbidden"


class AuthorizationError(ForbiddenError):
    """Role or tenant-membership gate denied the request (403)."""


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    reason = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    reason = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    reason = "server_error"


class InfrastructureError(ServiceError):
    """A backing store needed to answer the request is unavailable (503)."""
    status_code = 503
    error_code = "service_unavailable"
    reason = "infrastructure_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "MissingCredentialError",
    "InvalidCredentialError",
    "CredentialExpiredError",
    "CredentialRevokedError",
    "PrincipalNotFoundError",
    "PrincipalDeactivatedError",
    "TenantResolutionError",
    "TenantRequiredError",
    "TenantNotFoundError",
    "ForbiddenError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "InfrastructureError",
]
