from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from portal_access.logging import get_logger, token_prefix
from portal_access.service.audit import AuditRecorder
from portal_access.service.clock import Clock, SystemClock
from portal_access.service.results import Reason, SessionAccess, SessionValidation
from portal_access.service.store import PortalStore
from portal_access.service.tokens import SessionTokenSigner
from portal_access.storage.common import MAX_PAGE_SIZE, SessionQuery
from portal_access.storage.models import (
    CustomerSession,
    MagicLink,
    VerificationMethod,
    new_id,
)


class SessionManager:
    """Customer sessions derived from validated magic links.

    One live session is kept per (tenant, client). Unverified sessions only
    ever see the quote of the most recent link; verified sessions accumulate
    quotes and never lose one.
    """

    _REUSE_ATTEMPTS = 3

    def __init__(
        self,
        store: PortalStore,
        signer: SessionTokenSigner,
        *,
        clock: Optional[Clock] = None,
        audit: Optional[AuditRecorder] = None,
    ) -> None:
        self.store = store
        self.signer = signer
        self.clock = clock or SystemClock()
        self.audit = audit
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return self.clock.now()

    async def create_or_get_session(
        self,
        link: MagicLink,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionAccess:
        now = self._now()
        for _ in range(self._REUSE_ATTEMPTS):
            existing = self.store.find_active_customer_session(
                link.tenant_id, link.client_id, now
            )
            if existing is None:
                break
            previous_scope = list(existing.quote_ids)
            # A reused session follows the link that revived it
            touched = self.store.touch_customer_session(
                existing.id,
                now,
                ip_address=ip_address,
                user_agent=user_agent,
                quote_id=link.quote_id,
                expires_at=link.expires_at,
            )
            if touched is None:
                # Revoked after the lookup; never write over a revocation
                continue
            self.logger.info(
                "customer_session_reused",
                session_id=touched.id,
                tenant_id=touched.tenant_id,
                client_id=touched.client_id,
                verified=touched.is_verified,
                scope_changed=touched.quote_ids != previous_scope,
            )
            return SessionAccess(session=touched, created=False)

        session = CustomerSession(
            id=new_id(),
            session_token=self.signer.issue(link.client_id, link.tenant_id),
            tenant_id=link.tenant_id,
            client_id=link.client_id,
            expires_at=link.expires_at,
            quote_ids=[link.quote_id] if link.quote_id else [],
            last_activity_at=now,
            activity_count=1,
            origin_magic_link_id=link.id,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
        )
        self.store.create_customer_session(session)
        self.logger.info(
            "customer_session_created",
            session_id=session.id,
            tenant_id=session.tenant_id,
            client_id=session.client_id,
            token_prefix=token_prefix(session.session_token),
        )
        if self.audit:
            self.audit.record(
                "portal",
                "session_created",
                tenant_id=session.tenant_id,
                entity_type="customer_session",
                entity_id=session.id,
                metadata={"magic_link_id": link.id, "client_id": link.client_id},
            )
        return SessionAccess(session=session, created=True)

    async def validate_session(
        self,
        session_token: Optional[str],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionValidation:
        claims = self.signer.verify(session_token)
        if claims is None:
            return SessionValidation.failure(Reason.INVALID_SESSION)

        session = self.store.get_customer_session_by_token(session_token)
        if session is None:
            return SessionValidation.failure(Reason.INVALID_SESSION)
        if session.client_id != claims.client_id or session.tenant_id != claims.tenant_id:
            self.logger.warning(
                "customer_session_claims_mismatch",
                session_id=session.id,
                token_prefix=token_prefix(session_token),
            )
            return SessionValidation.failure(Reason.INVALID_SESSION)

        now = self._now()
        if session.is_expired(now):
            return SessionValidation.failure(Reason.EXPIRED, session)
        if session.is_revoked:
            return SessionValidation.failure(Reason.REVOKED, session)

        touched = self.store.touch_customer_session(
            session.id, now, ip_address=ip_address, user_agent=user_agent
        )
        if touched is None:
            return SessionValidation.failure(Reason.REVOKED, session)
        return SessionValidation(ok=True, session=touched)

    def require_verified(self, session: CustomerSession) -> SessionValidation:
        if not session.is_verified:
            return SessionValidation.failure(Reason.VERIFICATION_REQUIRED, session)
        return SessionValidation(ok=True, session=session)

    def list_active_sessions(self, tenant_id: str, client_id: str) -> List[CustomerSession]:
        query = SessionQuery(now=self._now(), status="active", client_id=client_id)
        sessions, _ = self.store.list_customer_sessions(
            tenant_id, query, limit=MAX_PAGE_SIZE
        )
        return sessions

    def grant_full_scope(
        self, session: CustomerSession, method: str, *, now: Optional[datetime] = None
    ) -> Optional[CustomerSession]:
        """Mark a session verified with every quote the client owns.

        Existing quotes are kept, so a verified session never shrinks. Returns
        None when the session was revoked before the update landed.
        """
        now = now or self._now()
        all_quotes = self.store.list_quote_ids(session.tenant_id, session.client_id)
        verified = self.store.verify_customer_session(
            session.id, now, VerificationMethod(method).value, all_quotes
        )
        if verified is None:
            self.logger.warning(
                "customer_session_verify_skipped", session_id=session.id, reason="revoked"
            )
            return None
        self.logger.info(
            "customer_session_verified",
            session_id=verified.id,
            tenant_id=verified.tenant_id,
            client_id=verified.client_id,
            method=verified.verification_method,
            quote_count=len(verified.quote_ids),
        )
        return verified
