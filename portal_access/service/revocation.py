from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from portal_access.logging import get_logger
from portal_access.service.audit import AuditRecorder
from portal_access.service.clock import Clock, SystemClock
from portal_access.service.errors import NotFoundError
from portal_access.service.store import PortalStore
from portal_access.storage.models import CustomerSession, MagicLink


@dataclass(frozen=True)
class RevokeAllResult:
    client_id: str
    sessions_revoked: int
    links_revoked: int


class RevocationService:
    """Idempotent revocation of links and sessions.

    Revoking something already revoked keeps the original ``revoked_at`` and
    is not an error.
    """

    def __init__(
        self,
        store: PortalStore,
        *,
        clock: Optional[Clock] = None,
        audit: Optional[AuditRecorder] = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.audit = audit
        self.logger = get_logger(__name__)

    async def revoke_link(
        self,
        link_id: str,
        *,
        tenant_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> MagicLink:
        link = self.store.get_magic_link(link_id, tenant_id=tenant_id)
        if link is None:
            raise NotFoundError("magic link not found", detail={"link_id": link_id})
        if link.revoked_at is not None:
            return link
        revoked = self.store.revoke_magic_link(link.id, self.clock.now())
        if revoked is None:
            # Revoked concurrently; keep the first revocation
            return self.store.get_magic_link(link.id) or link
        link = revoked
        self.logger.info(
            "magic_link_revoked", link_id=link.id, tenant_id=link.tenant_id, actor_id=actor_id
        )
        if self.audit:
            self.audit.record(
                "portal",
                "link_revoked",
                tenant_id=link.tenant_id,
                actor_id=actor_id,
                entity_type="magic_link",
                entity_id=link.id,
            )
        return link

    async def revoke_session(
        self,
        session_id: str,
        *,
        tenant_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> CustomerSession:
        session = self.store.get_customer_session(session_id, tenant_id=tenant_id)
        if session is None:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        if session.revoked_at is not None:
            return session
        revoked = self.store.revoke_customer_session(session.id, self.clock.now())
        if revoked is None:
            return self.store.get_customer_session(session.id) or session
        session = revoked
        self.logger.info(
            "customer_session_revoked",
            session_id=session.id,
            tenant_id=session.tenant_id,
            actor_id=actor_id,
        )
        if self.audit:
            self.audit.record(
                "portal",
                "session_revoked",
                tenant_id=session.tenant_id,
                actor_id=actor_id,
                entity_type="customer_session",
                entity_id=session.id,
            )
        return session

    async def revoke_all_for_client(
        self, tenant_id: str, client_id: str, *, actor_id: Optional[str] = None
    ) -> RevokeAllResult:
        """Emergency lockout: every live session first, then every link.

        Each store call is atomic on its own; a partial run is safe to repeat.
        """
        now = self.clock.now()
        session_ids = self.store.revoke_client_customer_sessions(tenant_id, client_id, now)
        link_ids = self.store.revoke_client_magic_links(tenant_id, client_id, now)
        result = RevokeAllResult(
            client_id=client_id,
            sessions_revoked=len(session_ids),
            links_revoked=len(link_ids),
        )
        self.logger.warning(
            "client_access_revoked",
            tenant_id=tenant_id,
            client_id=client_id,
            sessions_revoked=result.sessions_revoked,
            links_revoked=result.links_revoked,
            actor_id=actor_id,
        )
        if self.audit:
            self.audit.record(
                "security",
                "client_access_revoked",
                tenant_id=tenant_id,
                actor_id=actor_id,
                entity_type="client",
                entity_id=client_id,
                metadata={
                    "sessions_revoked": result.sessions_revoked,
                    "links_revoked": result.links_revoked,
                },
            )
        return result
