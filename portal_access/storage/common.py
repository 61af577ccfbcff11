"""Query helpers shared between the memory and Postgres stores.

Both backends accept the same query objects so filtering semantics stay
identical: the memory store evaluates ``matches`` in Python, the Postgres
store renders the equivalent ``WHERE`` clause from the same fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Sequence, Tuple, TypeVar

from portal_access.storage.models import CustomerSession, LinkStatus, MagicLink

T = TypeVar("T")

MAX_PAGE_SIZE = 200

# Columns a reissue or extension may rewrite; access tracking and
# revocation are only ever changed by their own targeted updates.
LINK_SETTINGS_FIELDS = (
    "expires_at",
    "expiry_duration_days",
    "quote_id",
    "email",
    "phone",
    "allow_multi_job_access",
    "metadata",
    "updated_at",
)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize naive timestamps (as read back from JSON or drivers) to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def classify_link(link: MagicLink, now: datetime, expiring_soon_days: int = 3) -> LinkStatus:
    """Bucket a link for contractor listings.

    Revoked links are reported as expired; a live link whose expiry falls within
    ``expiring_soon_days`` is expiring soon.
    """
    if link.is_revoked or link.is_expired(now):
        return LinkStatus.EXPIRED
    if link.expires_at <= now + timedelta(days=expiring_soon_days):
        return LinkStatus.EXPIRING_SOON
    return LinkStatus.ACTIVE


def clamp_page(limit: int, offset: int) -> Tuple[int, int]:
    limit = max(1, min(int(limit), MAX_PAGE_SIZE))
    offset = max(0, int(offset))
    return limit, offset


def paginate(items: Sequence[T], limit: int, offset: int) -> List[T]:
    limit, offset = clamp_page(limit, offset)
    return list(items[offset : offset + limit])


@dataclass
class LinkQuery:
    """Filter for magic-link listings and counts.

    ``status`` follows the listing semantics: ``active`` is any live link
    (including ones about to expire), ``expired`` is revoked or past expiry,
    and ``expiring_soon`` is live with expiry inside the soon window.
    """

    now: datetime
    status: Optional[str] = None
    client_id: Optional[str] = None
    purpose: Optional[str] = None
    used: Optional[bool] = None
    exclude_revoked: bool = False
    created_since: Optional[datetime] = None
    expires_after: Optional[datetime] = None
    expires_until: Optional[datetime] = None
    search: Optional[str] = None
    expiring_soon_days: int = 3

    def __post_init__(self) -> None:
        if self.status is not None:
            self.status = LinkStatus(self.status).value

    @property
    def soon_cutoff(self) -> datetime:
        return self.now + timedelta(days=self.expiring_soon_days)

    def matches(self, link: MagicLink) -> bool:
        now = self.now
        if self.client_id is not None and link.client_id != self.client_id:
            return False
        if self.purpose is not None and link.purpose != self.purpose:
            return False
        if self.exclude_revoked and link.is_revoked:
            return False
        if self.used is not None and (link.used_at is not None) != self.used:
            return False
        if self.created_since is not None and link.created_at < self.created_since:
            return False
        if self.expires_after is not None and link.expires_at <= self.expires_after:
            return False
        if self.expires_until is not None and link.expires_at > self.expires_until:
            return False
        if self.status == LinkStatus.ACTIVE.value and not link.is_live(now):
            return False
        if self.status == LinkStatus.EXPIRED.value and link.is_live(now):
            return False
        if self.status == LinkStatus.EXPIRING_SOON.value:
            if not link.is_live(now) or link.expires_at > self.soon_cutoff:
                return False
        if self.search:
            needle = self.search.lower()
            haystack = [link.email or "", link.phone or "", link.client_id, link.quote_id or ""]
            if not any(needle in value.lower() for value in haystack):
                return False
        return True


@dataclass
class SessionQuery:
    now: datetime
    status: Optional[str] = None
    client_id: Optional[str] = None
    origin_magic_link_id: Optional[str] = None
    verified: Optional[bool] = None
    created_since: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.status is not None and self.status not in {"active", "expired"}:
            raise ValueError(f"unsupported session status filter: {self.status}")

    def matches(self, session: CustomerSession) -> bool:
        if self.client_id is not None and session.client_id != self.client_id:
            return False
        if (
            self.origin_magic_link_id is not None
            and session.origin_magic_link_id != self.origin_magic_link_id
        ):
            return False
        if self.verified is not None and session.is_verified != self.verified:
            return False
        if self.created_since is not None and session.created_at < self.created_since:
            return False
        if self.status == "active" and not session.is_live(self.now):
            return False
        if self.status == "expired" and session.is_live(self.now):
            return False
        return True


def link_query_sql(tenant_id: str, query: LinkQuery) -> Tuple[str, List[Any]]:
    """Render a ``LinkQuery`` as a parameterized WHERE clause."""
    clauses = ["tenant_id = %s"]
    params: List[Any] = [tenant_id]
    if query.client_id is not None:
        clauses.append("client_id = %s")
        params.append(query.client_id)
    if query.purpose is not None:
        clauses.append("purpose = %s")
        params.append(query.purpose)
    if query.exclude_revoked:
        clauses.append("revoked_at IS NULL")
    if query.used is True:
        clauses.append("used_at IS NOT NULL")
    elif query.used is False:
        clauses.append("used_at IS NULL")
    if query.created_since is not None:
        clauses.append("created_at >= %s")
        params.append(query.created_since)
    if query.expires_after is not None:
        clauses.append("expires_at > %s")
        params.append(query.expires_after)
    if query.expires_until is not None:
        clauses.append("expires_at <= %s")
        params.append(query.expires_until)
    if query.status == LinkStatus.ACTIVE.value:
        clauses.append("revoked_at IS NULL AND expires_at > %s")
        params.append(query.now)
    elif query.status == LinkStatus.EXPIRED.value:
        clauses.append("(revoked_at IS NOT NULL OR expires_at <= %s)")
        params.append(query.now)
    elif query.status == LinkStatus.EXPIRING_SOON.value:
        clauses.append("revoked_at IS NULL AND expires_at > %s AND expires_at <= %s")
        params.extend([query.now, query.soon_cutoff])
    if query.search:
        pattern = f"%{query.search.lower()}%"
        clauses.append(
            "(lower(coalesce(email, '')) LIKE %s OR lower(coalesce(phone, '')) LIKE %s"
            " OR lower(client_id) LIKE %s OR lower(coalesce(quote_id, '')) LIKE %s)"
        )
        params.extend([pattern, pattern, pattern, pattern])
    return " AND ".join(clauses), params


def session_query_sql(tenant_id: str, query: SessionQuery) -> Tuple[str, List[Any]]:
    clauses = ["tenant_id = %s"]
    params: List[Any] = [tenant_id]
    if query.client_id is not None:
        clauses.append("client_id = %s")
        params.append(query.client_id)
    if query.origin_magic_link_id is not None:
        clauses.append("origin_magic_link_id = %s")
        params.append(query.origin_magic_link_id)
    if query.verified is not None:
        clauses.append("is_verified = %s")
        params.append(query.verified)
    if query.created_since is not None:
        clauses.append("created_at >= %s")
        params.append(query.created_since)
    if query.status == "active":
        clauses.append("revoked_at IS NULL AND expires_at > %s")
        params.append(query.now)
    elif query.status == "expired":
        clauses.append("(revoked_at IS NOT NULL OR expires_at <= %s)")
        params.append(query.now)
    return " AND ".join(clauses), params
