from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from portal_access.storage.common import LinkQuery, SessionQuery
from portal_access.storage.models import (
    AuditEntry,
    Client,
    CustomerSession,
    MagicLink,
    OTPVerification,
    Quote,
    TenantPortalConfig,
)


class PortalStore(Protocol):
    """Persistence boundary shared by ``MemoryStore`` and ``PostgresStore``."""

    def get_portal_config(self, tenant_id: str) -> Optional[TenantPortalConfig]: ...

    def upsert_portal_config(self, config: TenantPortalConfig) -> TenantPortalConfig: ...

    def list_portal_configs(self) -> List[TenantPortalConfig]: ...

    def upsert_client(self, client: Client) -> Client: ...

    def get_client(self, tenant_id: str, client_id: str) -> Optional[Client]: ...

    def add_quote(self, quote: Quote) -> Quote: ...

    def list_quote_ids(self, tenant_id: str, client_id: str) -> List[str]: ...

    def create_magic_link(self, link: MagicLink) -> MagicLink: ...

    def get_magic_link(
        self, link_id: str, *, tenant_id: Optional[str] = None
    ) -> Optional[MagicLink]: ...

    def get_magic_link_by_token(self, token: str) -> Optional[MagicLink]: ...

    def find_reusable_magic_link(
        self, tenant_id: str, client_id: str, purpose: str, now: datetime
    ) -> Optional[MagicLink]: ...

    def refresh_magic_link(
        self, link: MagicLink, *, reopen: bool = False
    ) -> Optional[MagicLink]: ...

    def record_magic_link_access(
        self,
        link_id: str,
        now: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[MagicLink]: ...

    def revoke_magic_link(self, link_id: str, now: datetime) -> Optional[MagicLink]: ...

    def list_magic_links(
        self, tenant_id: str, query: LinkQuery, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[MagicLink], int]: ...

    def count_magic_links(self, tenant_id: str, query: LinkQuery) -> int: ...

    def revoke_client_magic_links(
        self, tenant_id: str, client_id: str, now: datetime
    ) -> List[str]: ...

    def delete_magic_links_expired_before(self, tenant_id: str, cutoff: datetime) -> int: ...

    def create_customer_session(self, session: CustomerSession) -> CustomerSession: ...

    def get_customer_session(
        self, session_id: str, *, tenant_id: Optional[str] = None
    ) -> Optional[CustomerSession]: ...

    def get_customer_session_by_token(self, token: str) -> Optional[CustomerSession]: ...

    def find_active_customer_session(
        self, tenant_id: str, client_id: str, now: datetime
    ) -> Optional[CustomerSession]: ...

    def touch_customer_session(
        self,
        session_id: str,
        now: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        quote_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Optional[CustomerSession]: ...

    def verify_customer_session(
        self, session_id: str, now: datetime, method: str, quote_ids: List[str]
    ) -> Optional[CustomerSession]: ...

    def revoke_customer_session(
        self, session_id: str, now: datetime
    ) -> Optional[CustomerSession]: ...

    def list_customer_sessions(
        self, tenant_id: str, query: SessionQuery, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[CustomerSession], int]: ...

    def count_customer_sessions(self, tenant_id: str, query: SessionQuery) -> int: ...

    def revoke_client_customer_sessions(
        self, tenant_id: str, client_id: str, now: datetime
    ) -> List[str]: ...

    def delete_customer_sessions_expired_before(
        self, tenant_id: str, cutoff: datetime
    ) -> int: ...

    def create_otp_within_limit(
        self, otp: OTPVerification, *, window_start: datetime, limit: int
    ) -> Optional[OTPVerification]: ...

    def count_otps_since(self, tenant_id: str, client_id: str, since: datetime) -> int: ...

    def get_latest_otp_for_session(self, session_id: str) -> Optional[OTPVerification]: ...

    def record_otp_failure(self, otp_id: str, now: datetime) -> Optional[OTPVerification]: ...

    def consume_otp(
        self, otp_id: str, now: datetime, ip_address: Optional[str] = None
    ) -> Optional[OTPVerification]: ...

    def record_otp_delivery(
        self, otp_id: str, *, delivered_at: Optional[datetime], error: Optional[str]
    ) -> None: ...

    def delete_otps_created_before(self, tenant_id: str, cutoff: datetime) -> int: ...

    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry: ...

    def list_audit_entries(
        self, tenant_id: str, *, entity_id: Optional[str] = None, limit: int = 50
    ) -> List[AuditEntry]: ...
