from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class LinkPurpose(str, Enum):
    """Intended use of a magic link."""

    PORTAL_ACCESS = "portal_access"
    QUOTE_VIEW = "quote_view"
    QUOTE_APPROVAL = "quote_approval"
    PAYMENT = "payment"
    JOB_STATUS = "job_status"


class VerificationMethod(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    NONE = "none"


class LinkStatus(str, Enum):
    """Contractor-facing classification used for listings and filters."""

    ACTIVE = "active"
    EXPIRED = "expired"
    EXPIRING_SOON = "expiring_soon"


@dataclass
class TenantPortalConfig:
    tenant_id: str
    company_name: Optional[str] = None
    default_expiry_days: int = 7
    max_expiry_days: int = 90
    auto_cleanup_enabled: bool = True
    auto_cleanup_days: int = 30
    require_otp_for_multi_job: bool = True
    branding: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class Client:
    id: str
    tenant_id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Quote:
    id: str
    tenant_id: str
    client_id: str
    title: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class MagicLink:
    id: str
    token: str
    tenant_id: str
    client_id: str
    purpose: str
    expires_at: datetime
    email: Optional[str] = None
    phone: Optional[str] = None
    quote_id: Optional[str] = None
    is_single_use: bool = False
    used_at: Optional[datetime] = None
    access_count: int = 0
    allow_multi_job_access: bool = True
    revoked_at: Optional[datetime] = None
    metadata: Dict = field(default_factory=dict)
    expiry_duration_days: Optional[int] = None
    last_accessed_at: Optional[datetime] = None
    last_access_ip: Optional[str] = None
    last_access_user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_live(self, now: datetime) -> bool:
        """Not revoked and not yet expired."""
        return not self.is_revoked and not self.is_expired(now)

    def is_reusable(self, now: datetime) -> bool:
        return not self.is_single_use and self.is_live(now)

    def remaining_days(self, now: datetime) -> int:
        seconds = (self.expires_at - now).total_seconds()
        return max(0, math.ceil(seconds / 86400))

    def is_expiring_soon(self, now: datetime, within_days: int = 2) -> bool:
        remaining = self.remaining_days(now)
        return 0 < remaining <= within_days


@dataclass
class CustomerSession:
    id: str
    session_token: str
    tenant_id: str
    client_id: str
    expires_at: datetime
    is_verified: bool = False
    verified_at: Optional[datetime] = None
    verification_method: str = VerificationMethod.NONE.value
    quote_ids: List[str] = field(default_factory=list)
    revoked_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    activity_count: int = 0
    origin_magic_link_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_live(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_expired(now)

    def scope_with_link(self, quote_id: Optional[str]) -> List[str]:
        """Quote scope after a link for ``quote_id`` revives this session.

        Unverified sessions only see the quote of the most recent link;
        verified sessions accumulate quotes and never lose one.
        """
        if not quote_id:
            return list(self.quote_ids)
        if not self.is_verified:
            return [quote_id]
        if quote_id in self.quote_ids:
            return list(self.quote_ids)
        return [*self.quote_ids, quote_id]


@dataclass
class OTPVerification:
    id: str
    code: str
    tenant_id: str
    client_id: str
    customer_session_id: str
    delivery_method: str
    delivery_target: str
    expires_at: datetime
    verified_at: Optional[datetime] = None
    attempt_count: int = 0
    max_attempts: int = 3
    locked_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    delivery_error: Optional[str] = None
    verification_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        *,
        code: str,
        tenant_id: str,
        client_id: str,
        customer_session_id: str,
        delivery_method: str,
        delivery_target: str,
        now: datetime,
        ttl_minutes: int = 10,
        max_attempts: int = 3,
    ) -> "OTPVerification":
        return cls(
            id=new_id(),
            code=code,
            tenant_id=tenant_id,
            client_id=client_id,
            customer_session_id=customer_session_id,
            delivery_method=delivery_method,
            delivery_target=delivery_target,
            expires_at=now + timedelta(minutes=ttl_minutes),
            max_attempts=max_attempts,
            created_at=now,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    @property
    def is_consumed(self) -> bool:
        return self.verified_at is not None

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None or self.attempt_count >= self.max_attempts

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempt_count)


@dataclass
class AuditEntry:
    id: str
    tenant_id: str
    category: str
    action: str
    actor_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
