from __future__ import annotations

import dataclasses
from datetime import datetime
from typing import Any, Dict, Optional

from portal_access.config import Settings
from portal_access.logging import get_logger, token_prefix
from portal_access.service.audit import AuditRecorder
from portal_access.service.clock import Clock, SystemClock
from portal_access.service.errors import ClientNotFoundError, ValidationError
from portal_access.service.expiry import ExpiryPolicy
from portal_access.service.notifications import Notifier
from portal_access.service.results import IssueOutcome, IssueStatus, LinkValidation, Reason
from portal_access.service.sessions import SessionManager
from portal_access.service.store import PortalStore
from portal_access.service.tokens import TokenGenerator
from portal_access.storage.errors import ActiveLinkConflict
from portal_access.storage.models import LinkPurpose, MagicLink, TenantPortalConfig, new_id


def build_portal_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/portal/access/{token}"


class LinkIssuer:
    """Creates magic links, reusing the live link of a (tenant, client, purpose).

    Reusable links are idempotent across resends: the token is kept and only
    the expiry, metadata and contact details are refreshed. The store refuses
    a second live reusable link, so a lost race is retried by reusing the
    winner's link.
    """

    def __init__(
        self,
        store: PortalStore,
        policy: ExpiryPolicy,
        tokens: TokenGenerator,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
        audit: Optional[AuditRecorder] = None,
    ) -> None:
        self.store = store
        self.policy = policy
        self.tokens = tokens
        self.settings = settings
        self.clock = clock or SystemClock()
        self.notifier = notifier
        self.audit = audit
        self.logger = get_logger(__name__)

    def build_url(self, token: str) -> str:
        return build_portal_url(self.settings.portal_base_url, token)

    async def issue(
        self,
        tenant_id: str,
        client_id: str,
        *,
        purpose: str = LinkPurpose.PORTAL_ACCESS.value,
        quote_id: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        expiry_days: Optional[int] = None,
        expiry_hours: Optional[float] = None,
        is_single_use: bool = False,
        allow_multi_job_access: Optional[bool] = None,
        metadata: Optional[Dict[str, Any]] = None,
        send: bool = False,
        actor_id: Optional[str] = None,
    ) -> IssueOutcome:
        try:
            purpose = LinkPurpose(purpose).value
        except ValueError as exc:
            raise ValidationError(
                "unsupported link purpose", detail={"purpose": purpose}
            ) from exc
        config = self.policy.tenant_config(tenant_id)
        client = self.store.get_client(tenant_id, client_id)
        if client is None:
            raise ClientNotFoundError(tenant_id, client_id)
        days = self.policy.resolve_days(
            config, expiry_days=expiry_days, expiry_hours=expiry_hours
        )
        email = email or client.email
        phone = phone or client.phone

        outcome: Optional[IssueOutcome] = None
        attempts = 0
        max_attempts = max(1, self.settings.link_issue_max_retries)
        while attempts < max_attempts:
            attempts += 1
            now = self.clock.now()
            if not is_single_use:
                existing = self.store.find_reusable_magic_link(tenant_id, client_id, purpose, now)
                if existing is not None:
                    link = self._refresh(
                        existing,
                        now,
                        config,
                        days,
                        quote_id=quote_id,
                        email=email,
                        phone=phone,
                        allow_multi_job_access=allow_multi_job_access,
                        metadata=metadata,
                    )
                    if link is not None:
                        outcome = IssueOutcome(
                            IssueStatus.REUSED, link, self.build_url(link.token), attempts
                        )
                        break
            link = MagicLink(
                id=new_id(),
                token=self.tokens.link_token(),
                tenant_id=tenant_id,
                client_id=client_id,
                purpose=purpose,
                expires_at=self.policy.link_expiry(now, config, days),
                email=email,
                phone=phone,
                quote_id=quote_id,
                is_single_use=is_single_use,
                allow_multi_job_access=(
                    True if allow_multi_job_access is None else allow_multi_job_access
                ),
                metadata=dict(metadata or {}),
                expiry_duration_days=days,
                created_at=now,
                updated_at=now,
            )
            try:
                self.store.create_magic_link(link)
            except ActiveLinkConflict as exc:
                self.logger.info(
                    "magic_link_issue_conflict",
                    tenant_id=tenant_id,
                    client_id=client_id,
                    purpose=purpose,
                    existing_link_id=exc.existing_link_id,
                    attempt=attempts,
                )
                continue
            outcome = IssueOutcome(IssueStatus.CREATED, link, self.build_url(link.token), attempts)
            break

        if outcome is None:
            self.logger.warning(
                "magic_link_issue_conflict_exhausted",
                tenant_id=tenant_id,
                client_id=client_id,
                purpose=purpose,
                attempts=attempts,
            )
            return IssueOutcome(IssueStatus.CONFLICT, attempts=attempts)

        link = outcome.record
        self.logger.info(
            "magic_link_reused" if outcome.reused else "magic_link_created",
            link_id=link.id,
            tenant_id=tenant_id,
            client_id=client_id,
            purpose=purpose,
            expires_at=link.expires_at.isoformat(),
            token_prefix=token_prefix(link.token),
        )
        if self.audit:
            self.audit.record(
                "portal",
                "link_reused" if outcome.reused else "link_created",
                tenant_id=tenant_id,
                actor_id=actor_id,
                entity_type="magic_link",
                entity_id=link.id,
                metadata={"client_id": client_id, "purpose": purpose, "expiry_days": days},
            )
        if send and self.notifier:
            await self.notifier.send_magic_link(link, outcome.url, config)
        return outcome

    def _refresh(
        self,
        link: MagicLink,
        now: datetime,
        config: TenantPortalConfig,
        days: int,
        *,
        quote_id: Optional[str],
        email: Optional[str],
        phone: Optional[str],
        allow_multi_job_access: Optional[bool],
        metadata: Optional[Dict[str, Any]],
    ) -> Optional[MagicLink]:
        """Write the new settings onto a live link; None if it was revoked meanwhile."""
        changes: Dict[str, Any] = {"updated_at": now}
        refreshed = self.policy.link_expiry(now, config, days)
        # Reuse never shortens a link that was issued for longer
        if refreshed > link.expires_at:
            changes["expires_at"] = refreshed
            changes["expiry_duration_days"] = days
        if metadata:
            changes["metadata"] = {**(link.metadata or {}), **metadata}
        if quote_id:
            changes["quote_id"] = quote_id
        if email:
            changes["email"] = email
        if phone:
            changes["phone"] = phone
        if allow_multi_job_access is not None:
            changes["allow_multi_job_access"] = allow_multi_job_access
        return self.store.refresh_magic_link(dataclasses.replace(link, **changes))


class LinkValidator:
    """Consumes a token: checks it, records the access and opens a session."""

    def __init__(
        self,
        store: PortalStore,
        sessions: SessionManager,
        *,
        clock: Optional[Clock] = None,
        audit: Optional[AuditRecorder] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.clock = clock or SystemClock()
        self.audit = audit
        self.logger = get_logger(__name__)

    def check(self, link: Optional[MagicLink], now: datetime) -> Optional[Reason]:
        """First failing check, or None for a usable link.

        Expiry is checked ahead of revocation so a past-expiry link always
        reports ``expired``.
        """
        if link is None:
            return Reason.INVALID_TOKEN
        if link.is_expired(now):
            return Reason.EXPIRED
        if link.is_revoked:
            return Reason.REVOKED
        if link.is_single_use and link.used_at is not None:
            return Reason.ALREADY_USED
        return None

    async def validate(
        self,
        token: Optional[str],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LinkValidation:
        now = self.clock.now()
        link = self.store.get_magic_link_by_token(token) if token else None
        reason = self.check(link, now)
        if reason is not None:
            self.logger.info(
                "magic_link_rejected",
                reason_code=reason.value,
                token_prefix=token_prefix(token),
                link_id=link.id if link else None,
            )
            return LinkValidation.failure(reason, link)

        recorded = self.store.record_magic_link_access(link.id, now, ip_address, user_agent)
        if recorded is None:
            # Revoked, expired or spent between the read and the write
            current = self.store.get_magic_link(link.id) or link
            reason = self.check(current, now) or Reason.REVOKED
            self.logger.info(
                "magic_link_rejected",
                reason_code=reason.value,
                token_prefix=token_prefix(token),
                link_id=link.id,
            )
            return LinkValidation.failure(reason, current)
        link = recorded

        access = await self.sessions.create_or_get_session(link, ip_address, user_agent)
        self.logger.info(
            "magic_link_validated",
            link_id=link.id,
            tenant_id=link.tenant_id,
            client_id=link.client_id,
            session_id=access.session.id,
            session_created=access.created,
            access_count=link.access_count,
        )
        if self.audit:
            self.audit.record(
                "portal",
                "link_accessed",
                tenant_id=link.tenant_id,
                entity_type="magic_link",
                entity_id=link.id,
                metadata={"ip_address": ip_address, "session_id": access.session.id},
            )
        return LinkValidation(ok=True, link=link, access=access)
