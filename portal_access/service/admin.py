from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Generic, List, Optional, TypeVar

from portal_access.config import Settings
from portal_access.logging import get_logger
from portal_access.service.audit import AuditRecorder
from portal_access.service.cleanup import CleanupReport, CleanupScheduler
from portal_access.service.clock import Clock, SystemClock
from portal_access.service.errors import (
    ClientNotFoundError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from portal_access.service.expiry import ExpiryPolicy
from portal_access.service.links import LinkIssuer
from portal_access.service.notifications import Notifier
from portal_access.service.results import IssueOutcome, IssueStatus
from portal_access.service.revocation import RevocationService, RevokeAllResult
from portal_access.service.store import PortalStore
from portal_access.storage.common import MAX_PAGE_SIZE, LinkQuery, SessionQuery, classify_link
from portal_access.storage.models import (
    Client,
    CustomerSession,
    LinkStatus,
    MagicLink,
    TenantPortalConfig,
)

T = TypeVar("T")

RECENT_SESSION_LIMIT = 10
MASKED_TOKEN_CHARS = 10
SETTINGS_FIELDS = (
    "company_name",
    "default_expiry_days",
    "max_expiry_days",
    "auto_cleanup_enabled",
    "auto_cleanup_days",
    "require_otp_for_multi_job",
    "branding",
)


def mask_token(token: str, visible: int = MASKED_TOKEN_CHARS) -> str:
    return f"{token[:visible]}..."


@dataclass(frozen=True)
class LinkView:
    link: MagicLink
    status: LinkStatus
    days_until_expiry: int
    is_expired: bool
    is_expiring_soon: bool

    @property
    def masked_token(self) -> str:
        return mask_token(self.link.token)

    @classmethod
    def build(cls, link: MagicLink, now: datetime, expiring_soon_days: int) -> "LinkView":
        status = classify_link(link, now, expiring_soon_days)
        return cls(
            link=link,
            status=status,
            days_until_expiry=link.remaining_days(now),
            is_expired=status is LinkStatus.EXPIRED,
            is_expiring_soon=status is LinkStatus.EXPIRING_SOON,
        )


@dataclass(frozen=True)
class Page(Generic[T]):
    items: List[T]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


@dataclass(frozen=True)
class LinkStats:
    active: int
    expired: int
    expiring_soon: int
    total_created: int


@dataclass(frozen=True)
class LinkDetail:
    view: LinkView
    recent_sessions: List[CustomerSession] = field(default_factory=list)


class PortalAdminService:
    """Contractor-facing management of magic links, sessions and portal settings."""

    def __init__(
        self,
        store: PortalStore,
        policy: ExpiryPolicy,
        issuer: LinkIssuer,
        revocation: RevocationService,
        cleanup: CleanupScheduler,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
        audit: Optional[AuditRecorder] = None,
    ) -> None:
        self.store = store
        self.policy = policy
        self.issuer = issuer
        self.revocation = revocation
        self.cleanup = cleanup
        self.settings = settings
        self.clock = clock or SystemClock()
        self.notifier = notifier
        self.audit = audit
        self.logger = get_logger(__name__)

    @property
    def soon_days(self) -> int:
        return self.settings.expiring_soon_days

    def _link_query(self, **kwargs: Any) -> LinkQuery:
        try:
            return LinkQuery(now=self.clock.now(), expiring_soon_days=self.soon_days, **kwargs)
        except ValueError as exc:
            raise ValidationError(
                "status must be one of active, expired, expiring_soon",
                detail={"status": kwargs.get("status")},
            ) from exc

    @staticmethod
    def _page_window(page: int, limit: int) -> tuple[int, int]:
        if page < 1:
            raise ValidationError("page must be at least 1", detail={"page": page})
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(
                f"limit must be between 1 and {MAX_PAGE_SIZE}", detail={"limit": limit}
            )
        return limit, (page - 1) * limit

    def _get_link(self, tenant_id: str, link_id: str) -> MagicLink:
        link = self.store.get_magic_link(link_id, tenant_id=tenant_id)
        if link is None:
            raise NotFoundError("magic link not found", detail={"link_id": link_id})
        return link

    # ------------------------------------------------------------------
    # listings and detail
    # ------------------------------------------------------------------

    def list_links(
        self,
        tenant_id: str,
        *,
        status: Optional[str] = None,
        search: Optional[str] = None,
        client_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[Page[LinkView], LinkStats]:
        self.policy.tenant_config(tenant_id)
        limit, offset = self._page_window(page, limit)
        query = self._link_query(status=status, search=search, client_id=client_id)
        links, total = self.store.list_magic_links(tenant_id, query, limit=limit, offset=offset)
        now = query.now
        views = [LinkView.build(link, now, self.soon_days) for link in links]
        return Page(views, total, page, limit), self.link_stats(tenant_id)

    def link_stats(self, tenant_id: str) -> LinkStats:
        count = self.store.count_magic_links
        return LinkStats(
            active=count(tenant_id, self._link_query(status=LinkStatus.ACTIVE.value)),
            expired=count(tenant_id, self._link_query(status=LinkStatus.EXPIRED.value)),
            expiring_soon=count(
                tenant_id, self._link_query(status=LinkStatus.EXPIRING_SOON.value)
            ),
            total_created=count(tenant_id, self._link_query()),
        )

    def list_sessions(
        self,
        tenant_id: str,
        *,
        status: Optional[str] = None,
        client_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[CustomerSession]:
        self.policy.tenant_config(tenant_id)
        limit, offset = self._page_window(page, limit)
        try:
            query = SessionQuery(now=self.clock.now(), status=status, client_id=client_id)
        except ValueError as exc:
            raise ValidationError(
                "status must be one of active, expired", detail={"status": status}
            ) from exc
        sessions, total = self.store.list_customer_sessions(
            tenant_id, query, limit=limit, offset=offset
        )
        return Page(sessions, total, page, limit)

    def get_link_detail(self, tenant_id: str, link_id: str) -> LinkDetail:
        link = self._get_link(tenant_id, link_id)
        now = self.clock.now()
        sessions, _ = self.store.list_customer_sessions(
            tenant_id,
            SessionQuery(now=now, origin_magic_link_id=link.id),
            limit=RECENT_SESSION_LIMIT,
        )
        return LinkDetail(view=LinkView.build(link, now, self.soon_days), recent_sessions=sessions)

    def get_session_detail(self, tenant_id: str, session_id: str) -> CustomerSession:
        session = self.store.get_customer_session(session_id, tenant_id=tenant_id)
        if session is None:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        return session

    # ------------------------------------------------------------------
    # link lifecycle
    # ------------------------------------------------------------------

    async def issue_link(self, tenant_id: str, client_id: str, **kwargs: Any) -> IssueOutcome:
        outcome = await self.issuer.issue(tenant_id, client_id, **kwargs)
        if outcome.status is IssueStatus.CONFLICT:
            raise ConflictError(
                "another request is issuing a link for this client; retry shortly",
                detail={"client_id": client_id, "attempts": outcome.attempts},
            )
        return outcome

    async def extend_link(
        self,
        tenant_id: str,
        link_id: str,
        days: int,
        *,
        actor_id: Optional[str] = None,
        notify: bool = True,
    ) -> LinkView:
        if days < 1:
            raise ValidationError("days must be at least 1", detail={"days": days})
        config = self.policy.tenant_config(tenant_id)
        link = self._get_link(tenant_id, link_id)
        now = self.clock.now()
        # Reviving a dead reusable link must not create a second live one
        if not link.is_single_use and not link.is_live(now):
            live = self.store.find_reusable_magic_link(
                tenant_id, link.client_id, link.purpose, now
            )
            if live is not None and live.id != link.id:
                raise ConflictError(
                    "client already has an active link for this purpose",
                    detail={"link_id": link.id, "active_link_id": live.id},
                )
        extended = dataclasses.replace(
            link,
            expires_at=self.policy.link_expiry(now, config, days),
            expiry_duration_days=min(days, config.max_expiry_days),
            updated_at=now,
        )
        stored = self.store.refresh_magic_link(extended, reopen=link.is_revoked)
        if stored is None:
            raise ConflictError(
                "link was revoked while it was being extended", detail={"link_id": link.id}
            )
        link = stored
        self.logger.info(
            "magic_link_extended",
            link_id=link.id,
            tenant_id=tenant_id,
            days=link.expiry_duration_days,
            actor_id=actor_id,
        )
        if self.audit:
            self.audit.record(
                "portal",
                "link_extended",
                tenant_id=tenant_id,
                actor_id=actor_id,
                entity_type="magic_link",
                entity_id=link.id,
                metadata={"days": link.expiry_duration_days},
            )
        if notify and self.notifier:
            await self.notifier.send_link_extended(
                link, self.issuer.build_url(link.token), config
            )
        return LinkView.build(link, now, self.soon_days)

    async def regenerate_link(
        self, tenant_id: str, link_id: str, *, actor_id: Optional[str] = None
    ) -> IssueOutcome:
        """Revoke a link and issue a fresh one of the same shape with the default expiry."""
        old = self._get_link(tenant_id, link_id)
        await self.revocation.revoke_link(old.id, tenant_id=tenant_id, actor_id=actor_id)
        metadata = {
            **(old.metadata or {}),
            "regenerated_from": old.id,
            "regenerated_by": actor_id,
        }
        outcome = await self.issue_link(
            tenant_id,
            old.client_id,
            purpose=old.purpose,
            quote_id=old.quote_id,
            email=old.email,
            phone=old.phone,
            is_single_use=old.is_single_use,
            allow_multi_job_access=old.allow_multi_job_access,
            metadata=metadata,
            send=True,
            actor_id=actor_id,
        )
        self.logger.info(
            "magic_link_regenerated",
            old_link_id=old.id,
            new_link_id=outcome.record.id,
            tenant_id=tenant_id,
            actor_id=actor_id,
        )
        return outcome

    async def deactivate_link(
        self, tenant_id: str, link_id: str, *, actor_id: Optional[str] = None
    ) -> MagicLink:
        return await self.revocation.revoke_link(link_id, tenant_id=tenant_id, actor_id=actor_id)

    async def deactivate_session(
        self, tenant_id: str, session_id: str, *, actor_id: Optional[str] = None
    ) -> CustomerSession:
        return await self.revocation.revoke_session(
            session_id, tenant_id=tenant_id, actor_id=actor_id
        )

    async def bulk_extend_expiring(
        self, tenant_id: str, days: int, *, actor_id: Optional[str] = None
    ) -> int:
        if days < 1:
            raise ValidationError("days must be at least 1", detail={"days": days})
        config = self.policy.tenant_config(tenant_id)
        query = self._link_query(status=LinkStatus.EXPIRING_SOON.value, exclude_revoked=True)
        expiring: List[MagicLink] = []
        offset = 0
        while True:
            batch, total = self.store.list_magic_links(
                tenant_id, query, limit=MAX_PAGE_SIZE, offset=offset
            )
            expiring.extend(batch)
            offset += len(batch)
            if not batch or offset >= total:
                break

        now = self.clock.now()
        new_expiry = self.policy.link_expiry(now, config, days)
        extended = 0
        for link in expiring:
            stored = self.store.refresh_magic_link(
                dataclasses.replace(
                    link,
                    expires_at=new_expiry,
                    expiry_duration_days=min(days, config.max_expiry_days),
                    updated_at=now,
                )
            )
            # Links revoked since the listing stay revoked
            if stored is not None:
                extended += 1
        self.logger.info(
            "magic_links_bulk_extended",
            tenant_id=tenant_id,
            count=extended,
            days=days,
            actor_id=actor_id,
        )
        if self.audit and extended:
            self.audit.record(
                "portal",
                "links_bulk_extended",
                tenant_id=tenant_id,
                actor_id=actor_id,
                metadata={"count": extended, "days": days},
            )
        return extended

    async def revoke_all_for_client(
        self, tenant_id: str, client_id: str, *, actor_id: Optional[str] = None
    ) -> RevokeAllResult:
        if self.store.get_client(tenant_id, client_id) is None:
            raise ClientNotFoundError(tenant_id, client_id)
        return await self.revocation.revoke_all_for_client(
            tenant_id, client_id, actor_id=actor_id
        )

    async def run_cleanup(self, tenant_id: Optional[str] = None) -> CleanupReport:
        if tenant_id is not None:
            self.policy.tenant_config(tenant_id)
            return await self.cleanup.run_once([tenant_id], force=True)
        return await self.cleanup.run_once(force=True)

    # ------------------------------------------------------------------
    # analytics
    # ------------------------------------------------------------------

    def expiry_analytics(self, tenant_id: str) -> Dict[str, int]:
        self.policy.tenant_config(tenant_id)
        now = self.clock.now()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)

        def window(after: datetime, until: datetime) -> int:
            return self.store.count_magic_links(
                tenant_id,
                self._link_query(exclude_revoked=True, expires_after=after, expires_until=until),
            )

        tomorrow = window(now, now + timedelta(days=1))
        in_3_days = window(now + timedelta(days=1), now + timedelta(days=3))
        in_7_days = window(now + timedelta(days=3), now + timedelta(days=7))
        return {
            "expired_today": window(start_of_day, now),
            "expiring_tomorrow": tomorrow,
            "expiring_in_3_days": in_3_days,
            "expiring_in_7_days": in_7_days,
            "total_expiring": tomorrow + in_3_days + in_7_days,
        }

    def statistics(self, tenant_id: str) -> Dict[str, Any]:
        self.policy.tenant_config(tenant_id)
        now = self.clock.now()
        since = now - timedelta(days=30)
        links = self.store.count_magic_links
        sessions = self.store.count_customer_sessions
        return {
            "total_links": links(tenant_id, self._link_query()),
            "active_links": links(tenant_id, self._link_query(status=LinkStatus.ACTIVE.value)),
            "used_links": links(tenant_id, self._link_query(used=True)),
            "active_sessions": sessions(tenant_id, SessionQuery(now=now, status="active")),
            "verified_sessions": sessions(
                tenant_id, SessionQuery(now=now, status="active", verified=True)
            ),
            "last_30_days": {
                "links": links(tenant_id, self._link_query(created_since=since)),
                "sessions": sessions(tenant_id, SessionQuery(now=now, created_since=since)),
            },
        }

    # ------------------------------------------------------------------
    # tenant settings and directory
    # ------------------------------------------------------------------

    def get_portal_settings(self, tenant_id: str) -> TenantPortalConfig:
        return self.policy.tenant_config(tenant_id)

    def update_portal_settings(
        self, tenant_id: str, changes: Dict[str, Any], *, actor_id: Optional[str] = None
    ) -> TenantPortalConfig:
        unknown = sorted(set(changes) - set(SETTINGS_FIELDS))
        if unknown:
            raise ValidationError("unknown portal settings", detail={"fields": unknown})
        current = self.policy.tenant_config(tenant_id)
        updates = {k: v for k, v in changes.items() if v is not None}
        updated = dataclasses.replace(current, **updates, updated_at=self.clock.now())
        self.policy.validate_config(updated)
        self.store.upsert_portal_config(updated)
        self.logger.info(
            "portal_settings_updated",
            tenant_id=tenant_id,
            fields=sorted(updates),
            actor_id=actor_id,
        )
        if self.audit:
            self.audit.record(
                "settings",
                "portal_settings_updated",
                tenant_id=tenant_id,
                actor_id=actor_id,
                entity_type="tenant_portal_config",
                entity_id=tenant_id,
                metadata={"fields": sorted(updates)},
            )
        return updated

    def register_tenant(
        self, tenant_id: str, *, company_name: Optional[str] = None, **overrides: Any
    ) -> TenantPortalConfig:
        """Create the portal configuration of a tenant, seeded from global settings."""
        existing = self.store.get_portal_config(tenant_id)
        if existing is not None:
            return existing
        config = dataclasses.replace(
            self.policy.default_config(tenant_id),
            company_name=company_name,
            created_at=self.clock.now(),
            **overrides,
        )
        self.policy.validate_config(config)
        self.store.upsert_portal_config(config)
        self.logger.info("portal_tenant_registered", tenant_id=tenant_id)
        return config

    def upsert_client(
        self,
        tenant_id: str,
        client_id: str,
        name: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Client:
        self.policy.tenant_config(tenant_id)
        return self.store.upsert_client(
            Client(
                id=client_id,
                tenant_id=tenant_id,
                name=name,
                email=email,
                phone=phone,
                created_at=self.clock.now(),
            )
        )
