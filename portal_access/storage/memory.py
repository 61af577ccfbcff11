from __future__ import annotations

import dataclasses
import json
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from portal_access.logging import get_logger
from portal_access.storage.common import (
    LINK_SETTINGS_FIELDS,
    LinkQuery,
    SessionQuery,
    ensure_utc,
    paginate,
)
from portal_access.storage.errors import ActiveLinkConflict, ConstraintViolation
from portal_access.storage.models import (
    AuditEntry,
    Client,
    CustomerSession,
    MagicLink,
    OTPVerification,
    Quote,
    TenantPortalConfig,
)

R = TypeVar("R")


class MemoryStore:
    """Thread-safe in-memory store for tests and single-process deployments.

    When ``fs_root`` is given, every mutation is written to
    ``<fs_root>/state/portal_store.json`` and reloaded on construction.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.portal_configs: Dict[str, TenantPortalConfig] = {}
        self.clients: Dict[Tuple[str, str], Client] = {}
        self.quotes: Dict[str, Quote] = {}
        self.magic_links: Dict[str, MagicLink] = {}
        self.customer_sessions: Dict[str, CustomerSession] = {}
        self.otps: Dict[str, OTPVerification] = {}
        self.audit_entries: List[AuditEntry] = []
        # Token indexes for exact-match lookups
        self._links_by_token: Dict[str, str] = {}
        self._sessions_by_token: Dict[str, str] = {}
        # RLock so compound operations can call the single-record helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # ------------------------------------------------------------------
    # tenant configuration
    # ------------------------------------------------------------------

    def get_portal_config(self, tenant_id: str) -> Optional[TenantPortalConfig]:
        with self._data_lock:
            cfg = self.portal_configs.get(tenant_id)
            return dataclasses.replace(cfg, branding=dict(cfg.branding)) if cfg else None

    def upsert_portal_config(self, config: TenantPortalConfig) -> TenantPortalConfig:
        with self._data_lock:
            self.portal_configs[config.tenant_id] = config
            self._persist_state()
            return config

    def list_portal_configs(self) -> List[TenantPortalConfig]:
        with self._data_lock:
            return sorted(self.portal_configs.values(), key=lambda c: c.tenant_id)

    # ------------------------------------------------------------------
    # clients and quotes
    # ------------------------------------------------------------------

    def upsert_client(self, client: Client) -> Client:
        with self._data_lock:
            self.clients[(client.tenant_id, client.id)] = client
            self._persist_state()
            return client

    def get_client(self, tenant_id: str, client_id: str) -> Optional[Client]:
        with self._data_lock:
            return self.clients.get((tenant_id, client_id))

    def add_quote(self, quote: Quote) -> Quote:
        with self._data_lock:
            if (quote.tenant_id, quote.client_id) not in self.clients:
                raise ConstraintViolation(
                    "quote client missing",
                    {"tenant_id": quote.tenant_id, "client_id": quote.client_id},
                )
            self.quotes[quote.id] = quote
            self._persist_state()
            return quote

    def list_quote_ids(self, tenant_id: str, client_id: str) -> List[str]:
        with self._data_lock:
            quotes = [
                q
                for q in self.quotes.values()
                if q.tenant_id == tenant_id and q.client_id == client_id
            ]
        quotes.sort(key=lambda q: (q.created_at, q.id))
        return [q.id for q in quotes]

    # ------------------------------------------------------------------
    # magic links
    # ------------------------------------------------------------------

    def create_magic_link(self, link: MagicLink) -> MagicLink:
        """Insert a link, refusing a second live reusable link for the same tuple."""
        with self._data_lock:
            if link.token in self._links_by_token:
                raise ConstraintViolation("magic link token collision", {"link_id": link.id})
            if not link.is_single_use:
                existing = self._find_reusable_locked(
                    link.tenant_id, link.client_id, link.purpose, link.created_at
                )
                if existing is not None:
                    raise ActiveLinkConflict(
                        link.tenant_id, link.client_id, link.purpose, existing.id
                    )
            self.magic_links[link.id] = link
            self._links_by_token[link.token] = link.id
            self._persist_state()
            return link

    def get_magic_link(
        self, link_id: str, *, tenant_id: Optional[str] = None
    ) -> Optional[MagicLink]:
        with self._data_lock:
            link = self.magic_links.get(link_id)
        if link is None or (tenant_id is not None and link.tenant_id != tenant_id):
            return None
        return link

    def get_magic_link_by_token(self, token: str) -> Optional[MagicLink]:
        with self._data_lock:
            link_id = self._links_by_token.get(token)
            return self.magic_links.get(link_id) if link_id else None

    def _find_reusable_locked(
        self, tenant_id: str, client_id: str, purpose: str, now: datetime
    ) -> Optional[MagicLink]:
        candidates = [
            link
            for link in self.magic_links.values()
            if link.tenant_id == tenant_id
            and link.client_id == client_id
            and link.purpose == purpose
            and link.is_reusable(now)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda l: l.created_at)

    def find_reusable_magic_link(
        self, tenant_id: str, client_id: str, purpose: str, now: datetime
    ) -> Optional[MagicLink]:
        with self._data_lock:
            return self._find_reusable_locked(tenant_id, client_id, purpose, now)

    def refresh_magic_link(
        self, link: MagicLink, *, reopen: bool = False
    ) -> Optional[MagicLink]:
        """Copy expiry, contact and scope settings from ``link`` onto the stored row.

        Revoked rows are left alone unless ``reopen`` is set, which also
        clears ``revoked_at``. Returns None when nothing was updated.
        """
        with self._data_lock:
            stored = self.magic_links.get(link.id)
            if stored is None or (stored.revoked_at is not None and not reopen):
                return None
            for name in LINK_SETTINGS_FIELDS:
                setattr(stored, name, getattr(link, name))
            if reopen:
                stored.revoked_at = None
            self._persist_state()
            return stored

    def record_magic_link_access(
        self,
        link_id: str,
        now: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[MagicLink]:
        """Count one use of a live link; None if it is revoked, expired or spent."""
        with self._data_lock:
            link = self.magic_links.get(link_id)
            if link is None or not link.is_live(now):
                return None
            if link.is_single_use and link.used_at is not None:
                return None
            link.access_count += 1
            if link.used_at is None:
                link.used_at = now
            link.last_accessed_at = now
            link.last_access_ip = ip_address
            link.last_access_user_agent = user_agent
            link.updated_at = now
            self._persist_state()
            return link

    def revoke_magic_link(self, link_id: str, now: datetime) -> Optional[MagicLink]:
        with self._data_lock:
            link = self.magic_links.get(link_id)
            if link is None or link.revoked_at is not None:
                return None
            link.revoked_at = now
            link.updated_at = now
            self._persist_state()
            return link

    def list_magic_links(
        self, tenant_id: str, query: LinkQuery, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[MagicLink], int]:
        with self._data_lock:
            matched = [
                link
                for link in self.magic_links.values()
                if link.tenant_id == tenant_id and query.matches(link)
            ]
        matched.sort(key=lambda l: l.created_at, reverse=True)
        return paginate(matched, limit, offset), len(matched)

    def count_magic_links(self, tenant_id: str, query: LinkQuery) -> int:
        with self._data_lock:
            return sum(
                1
                for link in self.magic_links.values()
                if link.tenant_id == tenant_id and query.matches(link)
            )

    def revoke_client_magic_links(
        self, tenant_id: str, client_id: str, now: datetime
    ) -> List[str]:
        with self._data_lock:
            revoked: List[str] = []
            for link in self.magic_links.values():
                if (
                    link.tenant_id == tenant_id
                    and link.client_id == client_id
                    and link.revoked_at is None
                ):
                    link.revoked_at = now
                    link.updated_at = now
                    revoked.append(link.id)
            if revoked:
                self._persist_state()
            return revoked

    def delete_magic_links_expired_before(self, tenant_id: str, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [
                link
                for link in self.magic_links.values()
                if link.tenant_id == tenant_id and link.expires_at < cutoff
            ]
            for link in stale:
                self.magic_links.pop(link.id, None)
                self._links_by_token.pop(link.token, None)
            if stale:
                self._persist_state()
            return len(stale)

    # ------------------------------------------------------------------
    # customer sessions
    # ------------------------------------------------------------------

    def create_customer_session(self, session: CustomerSession) -> CustomerSession:
        with self._data_lock:
            if session.session_token in self._sessions_by_token:
                raise ConstraintViolation(
                    "session token collision", {"session_id": session.id}
                )
            self.customer_sessions[session.id] = session
            self._sessions_by_token[session.session_token] = session.id
            self._persist_state()
            return session

    def get_customer_session(
        self, session_id: str, *, tenant_id: Optional[str] = None
    ) -> Optional[CustomerSession]:
        with self._data_lock:
            session = self.customer_sessions.get(session_id)
        if session is None or (tenant_id is not None and session.tenant_id != tenant_id):
            return None
        return session

    def get_customer_session_by_token(self, token: str) -> Optional[CustomerSession]:
        with self._data_lock:
            session_id = self._sessions_by_token.get(token)
            return self.customer_sessions.get(session_id) if session_id else None

    def find_active_customer_session(
        self, tenant_id: str, client_id: str, now: datetime
    ) -> Optional[CustomerSession]:
        with self._data_lock:
            live = [
                s
                for s in self.customer_sessions.values()
                if s.tenant_id == tenant_id and s.client_id == client_id and s.is_live(now)
            ]
        if not live:
            return None
        return max(live, key=lambda s: s.created_at)

    def touch_customer_session(
        self,
        session_id: str,
        now: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        quote_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Optional[CustomerSession]:
        """Record activity on an unrevoked session.

        ``quote_id`` applies the link scope rule against the stored
        verification state and ``expires_at`` only ever lengthens the
        session. Returns None when the session is missing or revoked.
        """
        with self._data_lock:
            session = self.customer_sessions.get(session_id)
            if session is None or session.revoked_at is not None:
                return None
            if quote_id:
                session.quote_ids = session.scope_with_link(quote_id)
            if expires_at is not None and expires_at > session.expires_at:
                session.expires_at = expires_at
            session.last_activity_at = now
            session.activity_count += 1
            if ip_address:
                session.ip_address = ip_address
            if user_agent:
                session.user_agent = user_agent
            session.updated_at = now
            self._persist_state()
            return session

    def verify_customer_session(
        self, session_id: str, now: datetime, method: str, quote_ids: List[str]
    ) -> Optional[CustomerSession]:
        """Mark an unrevoked session verified; ``quote_ids`` lead, stored extras follow."""
        with self._data_lock:
            session = self.customer_sessions.get(session_id)
            if session is None or session.revoked_at is not None:
                return None
            merged = list(quote_ids)
            merged.extend(q for q in session.quote_ids if q not in merged)
            session.is_verified = True
            session.verified_at = now
            session.verification_method = method
            session.quote_ids = merged
            session.updated_at = now
            self._persist_state()
            return session

    def revoke_customer_session(
        self, session_id: str, now: datetime
    ) -> Optional[CustomerSession]:
        with self._data_lock:
            session = self.customer_sessions.get(session_id)
            if session is None or session.revoked_at is not None:
                return None
            session.revoked_at = now
            session.updated_at = now
            self._persist_state()
            return session

    def list_customer_sessions(
        self, tenant_id: str, query: SessionQuery, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[CustomerSession], int]:
        with self._data_lock:
            matched = [
                s
                for s in self.customer_sessions.values()
                if s.tenant_id == tenant_id and query.matches(s)
            ]
        matched.sort(key=lambda s: s.last_activity_at or s.created_at, reverse=True)
        return paginate(matched, limit, offset), len(matched)

    def count_customer_sessions(self, tenant_id: str, query: SessionQuery) -> int:
        with self._data_lock:
            return sum(
                1
                for s in self.customer_sessions.values()
                if s.tenant_id == tenant_id and query.matches(s)
            )

    def revoke_client_customer_sessions(
        self, tenant_id: str, client_id: str, now: datetime
    ) -> List[str]:
        with self._data_lock:
            revoked: List[str] = []
            for session in self.customer_sessions.values():
                if (
                    session.tenant_id == tenant_id
                    and session.client_id == client_id
                    and session.revoked_at is None
                ):
                    session.revoked_at = now
                    session.updated_at = now
                    revoked.append(session.id)
            if revoked:
                self._persist_state()
            return revoked

    def delete_customer_sessions_expired_before(
        self, tenant_id: str, cutoff: datetime
    ) -> int:
        with self._data_lock:
            stale = [
                s
                for s in self.customer_sessions.values()
                if s.tenant_id == tenant_id and s.expires_at < cutoff
            ]
            for session in stale:
                self.customer_sessions.pop(session.id, None)
                self._sessions_by_token.pop(session.session_token, None)
            if stale:
                self._persist_state()
            return len(stale)

    # ------------------------------------------------------------------
    # one-time codes
    # ------------------------------------------------------------------

    def create_otp_within_limit(
        self, otp: OTPVerification, *, window_start: datetime, limit: int
    ) -> Optional[OTPVerification]:
        """Insert ``otp`` unless ``limit`` codes were already created since ``window_start``.

        The count and insert happen under one lock so concurrent requests from
        the same client cannot overshoot the limit.
        """
        with self._data_lock:
            recent = self._count_otps_since_locked(otp.tenant_id, otp.client_id, window_start)
            if recent >= limit:
                return None
            self.otps[otp.id] = otp
            self._persist_state()
            return otp

    def _count_otps_since_locked(
        self, tenant_id: str, client_id: str, since: datetime
    ) -> int:
        return sum(
            1
            for o in self.otps.values()
            if o.tenant_id == tenant_id and o.client_id == client_id and o.created_at >= since
        )

    def count_otps_since(self, tenant_id: str, client_id: str, since: datetime) -> int:
        with self._data_lock:
            return self._count_otps_since_locked(tenant_id, client_id, since)

    def get_latest_otp_for_session(self, session_id: str) -> Optional[OTPVerification]:
        with self._data_lock:
            candidates = [
                o for o in self.otps.values() if o.customer_session_id == session_id
            ]
        if not candidates:
            return None
        return max(candidates, key=lambda o: o.created_at)

    def record_otp_failure(self, otp_id: str, now: datetime) -> Optional[OTPVerification]:
        """Count a wrong guess, locking the code on the last allowed attempt.

        Returns None once the code is consumed or locked.
        """
        with self._data_lock:
            otp = self.otps.get(otp_id)
            if otp is None or otp.verified_at is not None or otp.locked_at is not None:
                return None
            otp.attempt_count += 1
            if otp.attempt_count >= otp.max_attempts:
                otp.locked_at = now
            self._persist_state()
            return otp

    def consume_otp(
        self, otp_id: str, now: datetime, ip_address: Optional[str] = None
    ) -> Optional[OTPVerification]:
        """Mark a code used; None unless it was unexpired, unused and unlocked."""
        with self._data_lock:
            otp = self.otps.get(otp_id)
            if otp is None or otp.is_consumed or otp.is_locked or otp.is_expired(now):
                return None
            otp.verified_at = now
            otp.verification_ip = ip_address
            self._persist_state()
            return otp

    def record_otp_delivery(
        self, otp_id: str, *, delivered_at: Optional[datetime], error: Optional[str]
    ) -> None:
        with self._data_lock:
            otp = self.otps.get(otp_id)
            if otp is None:
                return
            otp.delivered_at = delivered_at
            otp.delivery_error = error
            self._persist_state()

    def delete_otps_created_before(self, tenant_id: str, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [
                o.id
                for o in self.otps.values()
                if o.tenant_id == tenant_id and o.created_at < cutoff
            ]
            for otp_id in stale:
                self.otps.pop(otp_id, None)
            if stale:
                self._persist_state()
            return len(stale)

    # ------------------------------------------------------------------
    # audit trail
    # ------------------------------------------------------------------

    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        with self._data_lock:
            self.audit_entries.append(entry)
            self._persist_state()
            return entry

    def list_audit_entries(
        self, tenant_id: str, *, entity_id: Optional[str] = None, limit: int = 50
    ) -> List[AuditEntry]:
        with self._data_lock:
            entries = [
                e
                for e in self.audit_entries
                if e.tenant_id == tenant_id and (entity_id is None or e.entity_id == entity_id)
            ]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries[:limit]

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "portal_store.json"

    @staticmethod
    def _serialize_record(record: Any) -> dict:
        data = dataclasses.asdict(record)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize_record(cls: Type[R], data: dict) -> R:
        names = {f.name for f in dataclasses.fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in names:
                continue
            if key.endswith("_at") and isinstance(value, str):
                value = ensure_utc(datetime.fromisoformat(value))
            kwargs[key] = value
        return cls(**kwargs)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "portal_configs": [
                self._serialize_record(c) for c in self.portal_configs.values()
            ],
            "clients": [self._serialize_record(c) for c in self.clients.values()],
            "quotes": [self._serialize_record(q) for q in self.quotes.values()],
            "magic_links": [self._serialize_record(l) for l in self.magic_links.values()],
            "customer_sessions": [
                self._serialize_record(s) for s in self.customer_sessions.values()
            ],
            "otps": [self._serialize_record(o) for o in self.otps.values()],
            "audit_entries": [self._serialize_record(e) for e in self.audit_entries],
        }
        path = self._state_path()
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix=".portal_store_", suffix=".tmp"
            )
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.portal_configs = {
            c["tenant_id"]: self._deserialize_record(TenantPortalConfig, c)
            for c in data.get("portal_configs", [])
        }
        self.clients = {}
        for raw in data.get("clients", []):
            client = self._deserialize_record(Client, raw)
            self.clients[(client.tenant_id, client.id)] = client
        self.quotes = {
            q["id"]: self._deserialize_record(Quote, q) for q in data.get("quotes", [])
        }
        self.magic_links = {
            l["id"]: self._deserialize_record(MagicLink, l)
            for l in data.get("magic_links", [])
        }
        self.customer_sessions = {
            s["id"]: self._deserialize_record(CustomerSession, s)
            for s in data.get("customer_sessions", [])
        }
        self.otps = {
            o["id"]: self._deserialize_record(OTPVerification, o)
            for o in data.get("otps", [])
        }
        self.audit_entries = [
            self._deserialize_record(AuditEntry, e) for e in data.get("audit_entries", [])
        ]
        self._links_by_token = {l.token: l.id for l in self.magic_links.values()}
        self._sessions_by_token = {
            s.session_token: s.id for s in self.customer_sessions.values()
        }
        self.logger.info(
            "memory_store_state_loaded",
            magic_links=len(self.magic_links),
            customer_sessions=len(self.customer_sessions),
        )
        return True
