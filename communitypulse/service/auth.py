from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from communitypulse.config import Settings
from communitypulse.logging import credential_fingerprint, get_logger
from communitypulse.service.authz import Role
from communitypulse.service.credentials import CredentialIssuer, CredentialVerifier
from communitypulse.service.errors import (
    AuthenticationError,
    ConflictError,
    CredentialRevokedError,
    ForbiddenError,
    InfrastructureError,
    MissingCredentialError,
    PrincipalDeactivatedError,
    PrincipalNotFoundError,
    TenantNotFoundError,
    ValidationError,
)
from communitypulse.storage.errors import ConstraintViolation
from communitypulse.storage.models import Tenant, User
from communitypulse.storage.revocation import RevocationStore

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 6


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        name: str,
        *,
        tenant_id: Optional[str] = None,
        role: str = "tenant_member",
        is_active: bool = True,
        apartment_number: str = "",
        phone: str = "",
    ) -> User: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_tenant_by_key(self, key: str, *, active_only: bool = True) -> Optional[Tenant]: ...


class AuthStage(str, Enum):
    """Progress of a single request through the authentication pipeline."""

    UNVERIFIED = "unverified"
    SIGNATURE_VALID = "signature_valid"
    NOT_REVOKED = "not_revoked"
    PRINCIPAL_LOADED = "principal_loaded"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class AuthContext:
    principal: User
    home_tenant: Optional[Tenant]
    credential: str
    claims: dict[str, Any]

    @property
    def user_id(self) -> str:
        return self.principal.id

    @property
    def role(self) -> str:
        return self.principal.role


class AuthService:
    """Credential lifecycle and the per-request authentication pipeline.

    Signature checks live in ``CredentialVerifier`` and deny-list lookups in
    ``RevocationStore``; this class sequences them and loads the principal.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        issuer: CredentialIssuer,
        verifier: CredentialVerifier,
        revocations: RevocationStore,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.issuer = issuer
        self.verifier = verifier
        self.revocations = revocations
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    def _load_principal(self, user_id: str) -> Optional[User]:
        try:
            return self.store.get_user(user_id)
        except Exception as exc:
            # Persistence lookups fail closed; there is no safe default principal
            self.logger.error("principal_lookup_failed", user_id=user_id, error=str(exc))
            raise InfrastructureError("principal store unavailable") from exc

    def _load_home_tenant(self, principal: User) -> Optional[Tenant]:
        if not principal.tenant_id:
            return None
        try:
            return self.store.get_tenant(principal.tenant_id)
        except Exception as exc:
            self.logger.error(
                "tenant_lookup_failed", tenant_id=principal.tenant_id, error=str(exc)
            )
            raise InfrastructureError("tenant store unavailable") from exc

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Run UNVERIFIED -> SIGNATURE_VALID -> NOT_REVOKED -> PRINCIPAL_LOADED -> AUTHENTICATED.

        The first failing transition raises and later stages never run.
        """
        token = self._extract_bearer(authorization)
        if not token:
            self.logger.info(
                "authentication_rejected",
                stage=AuthStage.UNVERIFIED.value,
                reason=MissingCredentialError.reason,
            )
            raise MissingCredentialError("No token provided")
        return await self.authenticate_token(token)

    async def authenticate_token(self, token: str) -> AuthContext:
        fingerprint = credential_fingerprint(token)
        stage = AuthStage.UNVERIFIED
        try:
            claims = self.verifier.verify(token)
            stage = AuthStage.SIGNATURE_VALID

            if await self.revocations.is_revoked(token):
                raise CredentialRevokedError("Token has been invalidated")
            stage = AuthStage.NOT_REVOKED

            principal = self._load_principal(str(claims["sub"]))
            if principal is None:
                raise PrincipalNotFoundError("User not found")
            stage = AuthStage.PRINCIPAL_LOADED

            if not principal.is_active:
                raise PrincipalDeactivatedError("Account is deactivated")
            home_tenant = self._load_home_tenant(principal)
            stage = AuthStage.AUTHENTICATED
        except AuthenticationError as exc:
            self.logger.info(
                "authentication_rejected", stage=stage.value, reason=exc.reason, fp=fingerprint
            )
            raise
        return AuthContext(
            principal=principal,
            home_tenant=home_tenant,
            credential=token,
            claims=claims,
        )

    async def register(
        self,
        *,
        name: str,
        email: str,
        password: str,
        community_subdomain: str,
        apartment_number: str = "",
        phone: str = "",
    ) -> Tuple[User, Tenant, str]:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup disabled", reason="signup_disabled")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                reason="password_too_short",
                detail={"field": "password"},
            )
        if not community_subdomain or not community_subdomain.strip():
            raise ValidationError(
                "community subdomain is required",
                reason="tenant_required",
                detail={"field": "community_subdomain"},
            )
        tenant = self.store.get_tenant_by_key(community_subdomain, active_only=True)
        if tenant is None:
            raise TenantNotFoundError("Community not found or inactive")
        try:
            user = self.store.create_user(
                email,
                name,
                tenant_id=tenant.id,
                role=Role.TENANT_MEMBER.value,
                apartment_number=apartment_number,
                phone=phone,
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "User already exists with this email", detail=exc.detail
            ) from exc
        self.save_password(user.id, password)
        token = self.issuer.issue(user.id)
        self.logger.info("user_registered", user_id=user.id, tenant_id=tenant.id)
        return user, tenant, token

    async def login(self, email: str, password: str) -> Tuple[User, Optional[Tenant], str]:
        user = self.store.get_user_by_email(email)
        if not user or not self.verify_password(user.id, password):
            raise AuthenticationError("Invalid credentials", reason="invalid_credentials")
        if not user.is_active:
            raise PrincipalDeactivatedError("Account is deactivated")
        tenant = self._load_home_tenant(user)
        if user.tenant_id and (tenant is None or not tenant.is_active):
            raise AuthenticationError(
                "Community is deactivated", reason="tenant_deactivated"
            )
        token = self.issuer.issue(user.id)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, tenant, token

    async def logout(self, authorization: Optional[str]) -> bool:
        """Revoke the presented credential; expired credentials are a successful no-op.

        Returns True when a revocation entry was written.
        """
        token = self._extract_bearer(authorization)
        if not token:
            raise MissingCredentialError("No token provided")
        claims = self.verifier.verify(token, allow_expired=True)
        revoked = await self.revocations.add(token)
        self.logger.info(
            "logout_completed",
            user_id=claims.get("sub"),
            revoked=revoked,
            fp=credential_fingerprint(token),
        )
        return revoked

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        """Replace the password after checking the current one.

        Credentials already issued stay valid until they expire or are revoked.
        """
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                reason="password_too_short",
                detail={"field": "new_password"},
            )
        if not self.verify_password(user_id, current_password):
            raise ValidationError(
                "Current password is incorrect",
                reason="invalid_current_password",
                detail={"field": "current_password"},
            )
        self.save_password(user_id, new_password)
        self.logger.info("password_changed", user_id=user_id)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)


__all__ = ["AuthContext", "AuthService", "AuthStage", "AuthStore", "MIN_PASSWORD_LENGTH"]
