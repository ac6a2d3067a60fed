from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from communitypulse.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize('NFKC', cleaned)


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body: stable category ``code`` plus machine-checkable ``reason``."""

    code: str = Field(..., description="Stable error category")
    reason: Optional[str] = Field(default=None, description="Stable cause of the rejection")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Uniform response envelope for every HTTP endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_SUBDOMAIN_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_subdomain(value: str) -> str:
    normalized = (value or "").strip().lower()
    if not _SUBDOMAIN_PATTERN.match(normalized):
        raise ValueError(
            "subdomain must be lowercase letters, digits and single hyphens"
        )
    return normalized


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str
    password: str = Field(..., min_length=6, max_length=128)
    community_subdomain: str = Field(..., min_length=1, max_length=63)
    apartment_number: str = Field(default="", max_length=32)
    phone: str = Field(default="", max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = _normalize_unicode(value).strip()
        if not normalized:
            raise ValueError("name is required")
        return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TenantSummary(BaseModel):
    id: str
    name: str
    subdomain: str
    settings: Dict[str, Any] = Field(default_factory=dict)


class PrincipalResponse(BaseModel):
    id: str
    name: str
    email: str
    role: str
    is_active: bool
    apartment_number: str = ""
    phone: str = ""
    avatar: str = ""
    community: Optional[TenantSummary] = None


class AuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: PrincipalResponse


class LogoutResponse(BaseModel):
    revoked: bool


def _default_tenant_settings() -> Dict[str, Any]:
    return {
        "primary_color": "#3B82F6",
        "categories": [
            "maintenance",
            "security",
            "cleanliness",
            "noise",
            "parking",
            "amenities",
            "other",
        ],
        "notifications": {"email": True, "push": True},
    }


class TenantCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    subdomain: str = Field(..., min_length=1, max_length=63)
    contact_email: str
    description: str = Field(default="", max_length=500)
    settings: Optional[Dict[str, Any]] = None

    @field_validator("subdomain")
    @classmethod
    def _validate_tenant_subdomain(cls, value: str) -> str:
        return _validate_subdomain(value)

    @field_validator("contact_email")
    @classmethod
    def _validate_contact_email(cls, value: str) -> str:
        return _validate_email(value)

    def merged_settings(self) -> Dict[str, Any]:
        merged = _default_tenant_settings()
        merged.update(self.settings or {})
        return merged


class TenantResponse(BaseModel):
    id: str
    name: str
    subdomain: str
    contact_email: str = ""
    description: str = ""
    settings: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    created_at: str


class TenantStatusRequest(BaseModel):
    is_active: bool


class CurrentTenantResponse(BaseModel):
    community: TenantResponse
    stats: Dict[str, int]


class MemberStatusRequest(BaseModel):
    is_active: bool


class MemberRoleRequest(BaseModel):
    role: Literal["tenant_member", "tenant_admin"]


class IssueCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=5000)
    category: str = Field(default="other", max_length=32)


class IssueStatusRequest(BaseModel):
    status: Literal["open", "acknowledged", "in_progress", "resolved"]
    assigned_to: Optional[str] = Field(default=None, max_length=128)
    note: Optional[str] = Field(default=None, max_length=1000)


class CommentCreateRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000)


class NotificationListResponse(BaseModel):
    notifications: List[Dict[str, Any]]
    unread_count: int


class MarkAllReadResponse(BaseModel):
    updated: int


class RevocationStatsResponse(BaseModel):
    entries: int
    backend: str


class RealtimeJoin(BaseModel):
    type: str = Field(..., max_length=32)
    id: Optional[str] = Field(default=None, max_length=128)


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    apartment_number: Optional[str] = Field(default=None, max_length=32)
    phone: Optional[str] = Field(default=None, max_length=32)
    avatar: Optional[str] = Field(default=None, max_length=500)

    @field_validator("name")
    @classmethod
    def _normalize_profile_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        normalized = _normalize_unicode(value).strip()
        if not normalized:
            raise ValueError("name cannot be blank")
        return normalized


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=6, max_length=128)


class NotificationSettings(BaseModel):
    email: Optional[bool] = None
    push: Optional[bool] = None


class TenantSettingsRequest(BaseModel):
    """Partial settings update; omitted fields keep their stored value."""

    primary_color: Optional[str] = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")
    logo: Optional[str] = Field(default=None, max_length=500)
    categories: Optional[List[str]] = Field(default=None, min_length=1, max_length=20)
    notifications: Optional[NotificationSettings] = None

    @field_validator("categories")
    @classmethod
    def _normalize_categories(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return value
        cleaned: List[str] = []
        for category in value:
            item = _normalize_unicode(category).strip().lower()
            if not item or len(item) > 32:
                raise ValueError("categories must be 1-32 characters")
            if item not in cleaned:
                cleaned.append(item)
        return cleaned

    def apply_to(self, current: Dict[str, Any]) -> Dict[str, Any]:
        merged = {**_default_tenant_settings(), **(current or {})}
        for key in ("primary_color", "logo", "categories"):
            value = getattr(self, key)
            if value is not None:
                merged[key] = value
        if self.notifications is not None:
            toggles = dict(merged.get("notifications") or {})
            toggles.update(self.notifications.model_dump(exclude_none=True))
            merged["notifications"] = toggles
        return merged


class MemberListResponse(BaseModel):
    members: List[PrincipalResponse]
    total: int
    page: int
    total_pages: int


class OperatorUserUpdateRequest(BaseModel):
    """Operator edit of any account; an empty or null ``community_id`` detaches the user."""

    role: Optional[Literal["tenant_member", "tenant_admin", "platform_operator"]] = None
    community_id: Optional[str] = Field(default=None, max_length=128)
    is_active: Optional[bool] = None


class PlatformStatsResponse(BaseModel):
    communities: int
    users: int
    issues: int
    open_issues: int
