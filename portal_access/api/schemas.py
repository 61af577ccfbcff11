from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from portal_access.config import MAX_CONFIGURABLE_EXPIRY_DAYS
from portal_access.logging import get_correlation_id
from portal_access.service.admin import LinkDetail, LinkStats, LinkView, mask_token
from portal_access.storage.models import CustomerSession, TenantPortalConfig

MAX_JSON_DEPTH = 10
MAX_ARRAY_ITEMS = 200

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    # link path
    "invalid_token",
    "expired",
    "revoked",
    "already_used",
    # session path
    "invalid_session",
    "session_not_found",
    "verification_required",
    # otp path
    "invalid_code",
    "locked",
    # setup path
    "client_not_found",
    "tenant_not_found",
})


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _validate_dict_field(value: Optional[dict], field_name: str = "field") -> Optional[dict]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValueError(f"{field_name} must be a dict")
    _validate_json_depth(value)
    return value


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9 ().-]{7,24}$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_phone(value: str) -> str:
    normalized = _normalize_unicode(value.strip())
    if not _PHONE_PATTERN.match(normalized):
        raise ValueError("invalid phone number")
    return normalized


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


# ----------------------------------------------------------------------
# customer portal
# ----------------------------------------------------------------------


class SessionResponse(BaseModel):
    session_id: str
    client_id: str
    tenant_id: str
    is_verified: bool
    verification_method: str
    quote_ids: List[str]
    expires_at: datetime
    last_activity_at: Optional[datetime] = None

    @classmethod
    def from_session(cls, session: CustomerSession) -> "SessionResponse":
        return cls(
            session_id=session.id,
            client_id=session.client_id,
            tenant_id=session.tenant_id,
            is_verified=session.is_verified,
            verification_method=session.verification_method,
            quote_ids=list(session.quote_ids),
            expires_at=session.expires_at,
            last_activity_at=session.last_activity_at,
        )


class LinkAccessResponse(BaseModel):
    session_token: str
    session_created: bool
    purpose: str
    quote_id: Optional[str] = None
    allow_multi_job_access: bool
    session: SessionResponse


class OTPRequestBody(BaseModel):
    method: Literal["email", "sms"] = "email"
    target: Optional[str] = Field(default=None, max_length=254)

    @model_validator(mode="after")
    def _validate_target(self):
        if self.target:
            self.target = (
                _validate_email(self.target) if self.method == "email" else _validate_phone(self.target)
            )
        return self


class OTPRequestResponse(BaseModel):
    method: str
    expires_at: datetime
    # null while delivery is still queued
    delivered: Optional[bool] = None


class OTPVerifyBody(BaseModel):
    code: str = Field(..., min_length=1, max_length=12)


class OTPVerifyResponse(BaseModel):
    verified: bool
    attempts_remaining: Optional[int] = None
    session: SessionResponse


# ----------------------------------------------------------------------
# contractor admin
# ----------------------------------------------------------------------


class IssueLinkRequest(BaseModel):
    client_id: str = Field(..., min_length=1, max_length=128)
    purpose: Literal[
        "portal_access", "quote_view", "quote_approval", "payment", "job_status"
    ] = "portal_access"
    quote_id: Optional[str] = Field(default=None, max_length=128)
    email: Optional[str] = None
    phone: Optional[str] = None
    expiry_days: Optional[int] = Field(default=None, ge=1, le=MAX_CONFIGURABLE_EXPIRY_DAYS)
    expiry_hours: Optional[float] = Field(default=None, gt=0)
    is_single_use: bool = False
    allow_multi_job_access: Optional[bool] = None
    metadata: Optional[Dict[str, Any]] = None
    send: bool = False

    @field_validator("email")
    @classmethod
    def _validate_link_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value else None

    @field_validator("phone")
    @classmethod
    def _validate_link_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value) if value else None

    @field_validator("metadata")
    @classmethod
    def _validate_metadata(cls, value: Optional[dict]) -> Optional[dict]:
        return _validate_dict_field(value, "metadata")

    @model_validator(mode="after")
    def _one_expiry_unit(self):
        if self.expiry_days is not None and self.expiry_hours is not None:
            raise ValueError("provide expiry_days or expiry_hours, not both")
        return self


class IssueLinkResponse(BaseModel):
    link_id: str
    url: str
    token: str
    expires_at: datetime
    reused: bool


class LinkSummary(BaseModel):
    id: str
    client_id: str
    purpose: str
    quote_id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    token: str
    status: str
    expires_at: datetime
    days_until_expiry: int
    is_expired: bool
    is_expiring_soon: bool
    is_single_use: bool
    allow_multi_job_access: bool
    access_count: int
    used_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_view(cls, view: LinkView) -> "LinkSummary":
        link = view.link
        return cls(
            id=link.id,
            client_id=link.client_id,
            purpose=link.purpose,
            quote_id=link.quote_id,
            email=link.email,
            phone=link.phone,
            token=view.masked_token,
            status=view.status.value,
            expires_at=link.expires_at,
            days_until_expiry=view.days_until_expiry,
            is_expired=view.is_expired,
            is_expiring_soon=view.is_expiring_soon,
            is_single_use=link.is_single_use,
            allow_multi_job_access=link.allow_multi_job_access,
            access_count=link.access_count,
            used_at=link.used_at,
            last_accessed_at=link.last_accessed_at,
            revoked_at=link.revoked_at,
            created_at=link.created_at,
        )


class LinkStatsResponse(BaseModel):
    active: int
    expired: int
    expiring_soon: int
    total_created: int

    @classmethod
    def from_stats(cls, stats: LinkStats) -> "LinkStatsResponse":
        return cls(
            active=stats.active,
            expired=stats.expired,
            expiring_soon=stats.expiring_soon,
            total_created=stats.total_created,
        )


class LinkListResponse(BaseModel):
    items: List[LinkSummary]
    total: int
    page: int
    limit: int
    stats: LinkStatsResponse


class SessionSummary(BaseModel):
    id: str
    client_id: str
    session_token: str
    is_verified: bool
    verification_method: str
    quote_ids: List[str]
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    activity_count: int
    origin_magic_link_id: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_session(cls, session: CustomerSession) -> "SessionSummary":
        return cls(
            id=session.id,
            client_id=session.client_id,
            session_token=mask_token(session.session_token),
            is_verified=session.is_verified,
            verification_method=session.verification_method,
            quote_ids=list(session.quote_ids),
            expires_at=session.expires_at,
            revoked_at=session.revoked_at,
            last_activity_at=session.last_activity_at,
            activity_count=session.activity_count,
            origin_magic_link_id=session.origin_magic_link_id,
            ip_address=session.ip_address,
            created_at=session.created_at,
        )


class SessionListResponse(BaseModel):
    items: List[SessionSummary]
    total: int
    page: int
    limit: int


class LinkDetailResponse(BaseModel):
    link: LinkSummary
    recent_sessions: List[SessionSummary]

    @classmethod
    def from_detail(cls, detail: LinkDetail) -> "LinkDetailResponse":
        return cls(
            link=LinkSummary.from_view(detail.view),
            recent_sessions=[SessionSummary.from_session(s) for s in detail.recent_sessions],
        )


class ExtendLinkRequest(BaseModel):
    days: int = Field(..., ge=1, le=MAX_CONFIGURABLE_EXPIRY_DAYS)


class BulkExtendResponse(BaseModel):
    extended_count: int
    days: int


class RevokeAllResponse(BaseModel):
    client_id: str
    sessions_revoked: int
    links_revoked: int


class CleanupResponse(BaseModel):
    links_deleted: int
    sessions_deleted: int
    otps_deleted: int
    tenants_swept: int
    failed_tenants: List[str]
    skipped: bool


class ExpiryAnalyticsResponse(BaseModel):
    expired_today: int
    expiring_tomorrow: int
    expiring_in_3_days: int
    expiring_in_7_days: int
    total_expiring: int


class RecentActivity(BaseModel):
    links: int
    sessions: int


class StatisticsResponse(BaseModel):
    total_links: int
    active_links: int
    used_links: int
    active_sessions: int
    verified_sessions: int
    last_30_days: RecentActivity


class PortalSettingsResponse(BaseModel):
    tenant_id: str
    company_name: Optional[str] = None
    default_expiry_days: int
    max_expiry_days: int
    auto_cleanup_enabled: bool
    auto_cleanup_days: int
    require_otp_for_multi_job: bool
    branding: Dict[str, Any]
    updated_at: Optional[datetime] = None

    @classmethod
    def from_config(cls, config: TenantPortalConfig) -> "PortalSettingsResponse":
        return cls(
            tenant_id=config.tenant_id,
            company_name=config.company_name,
            default_expiry_days=config.default_expiry_days,
            max_expiry_days=config.max_expiry_days,
            auto_cleanup_enabled=config.auto_cleanup_enabled,
            auto_cleanup_days=config.auto_cleanup_days,
            require_otp_for_multi_job=config.require_otp_for_multi_job,
            branding=dict(config.branding or {}),
            updated_at=config.updated_at,
        )


class PortalSettingsUpdate(BaseModel):
    company_name: Optional[str] = Field(default=None, max_length=200)
    default_expiry_days: Optional[int] = Field(default=None, ge=1, le=MAX_CONFIGURABLE_EXPIRY_DAYS)
    max_expiry_days: Optional[int] = Field(default=None, ge=1, le=MAX_CONFIGURABLE_EXPIRY_DAYS)
    auto_cleanup_enabled: Optional[bool] = None
    auto_cleanup_days: Optional[int] = Field(default=None, ge=1, le=3650)
    require_otp_for_multi_job: Optional[bool] = None
    branding: Optional[Dict[str, Any]] = None

    @field_validator("branding")
    @classmethod
    def _validate_branding(cls, value: Optional[dict]) -> Optional[dict]:
        return _validate_dict_field(value, "branding")
