from __future__ import annotations

import dataclasses
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from portal_access.logging import get_logger
from portal_access.storage.common import (
    LINK_SETTINGS_FIELDS,
    LinkQuery,
    SessionQuery,
    clamp_page,
    ensure_utc,
    link_query_sql,
    session_query_sql,
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

_JSON_COLUMNS = frozenset({"metadata", "branding"})


def _columns(cls: type) -> List[str]:
    return [f.name for f in dataclasses.fields(cls)]


def _record_from_row(cls: Type[R], row: Dict[str, Any]) -> R:
    kwargs = {}
    for name in _columns(cls):
        if name not in row:
            continue
        value = row[name]
        if isinstance(value, datetime):
            value = ensure_utc(value)
        elif name in _JSON_COLUMNS and value is None:
            value = {}
        elif name == "quote_ids" and value is None:
            value = []
        kwargs[name] = value
    return cls(**kwargs)


def _row_values(record: Any, columns: List[str]) -> List[Any]:
    values = []
    for name in columns:
        value = getattr(record, name)
        if name in _JSON_COLUMNS:
            value = Jsonb(value or {})
        elif name == "quote_ids":
            value = list(value or [])
        values.append(value)
    return values


class PostgresStore:
    """Postgres-backed store for portal links, sessions and one-time codes."""

    _LINK_COLUMNS = _columns(MagicLink)
    _SESSION_COLUMNS = _columns(CustomerSession)
    _OTP_COLUMNS = _columns(OTPVerification)
    _CONFIG_COLUMNS = _columns(TenantPortalConfig)
    _AUDIT_COLUMNS = _columns(AuditEntry)

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the portal tables exist before serving requests."""

        required_tables = [
            "portal_tenant_config",
            "portal_client",
            "portal_quote",
            "magic_link",
            "customer_session",
            "otp_verification",
            "portal_audit_log",
        ]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply sql/001_portal_access.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    @staticmethod
    def _insert_sql(table: str, columns: List[str]) -> str:
        placeholders = ", ".join(["%s"] * len(columns))
        return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"

    def _update_returning(self, cls: Type[R], sql: str, params: Any) -> Optional[R]:
        """Run a guarded ``UPDATE ... RETURNING *``; None when no row qualified."""
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return _record_from_row(cls, row) if row else None

    # ------------------------------------------------------------------
    # tenant configuration
    # ------------------------------------------------------------------

    def get_portal_config(self, tenant_id: str) -> Optional[TenantPortalConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM portal_tenant_config WHERE tenant_id = %s", (tenant_id,)
            ).fetchone()
        return _record_from_row(TenantPortalConfig, row) if row else None

    def upsert_portal_config(self, config: TenantPortalConfig) -> TenantPortalConfig:
        columns = self._CONFIG_COLUMNS
        updates = ", ".join(
            f"{c} = EXCLUDED.{c}" for c in columns if c not in {"tenant_id", "created_at"}
        )
        with self._connect() as conn:
            conn.execute(
                self._insert_sql("portal_tenant_config", columns)
                + f" ON CONFLICT (tenant_id) DO UPDATE SET {updates}",
                _row_values(config, columns),
            )
        return config

    def list_portal_configs(self) -> List[TenantPortalConfig]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM portal_tenant_config ORDER BY tenant_id"
            ).fetchall()
        return [_record_from_row(TenantPortalConfig, row) for row in rows]

    # ------------------------------------------------------------------
    # clients and quotes
    # ------------------------------------------------------------------

    def upsert_client(self, client: Client) -> Client:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO portal_client (tenant_id, id, name, email, phone, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (tenant_id, id) DO UPDATE
                SET name = EXCLUDED.name, email = EXCLUDED.email, phone = EXCLUDED.phone
                """,
                (
                    client.tenant_id,
                    client.id,
                    client.name,
                    client.email,
                    client.phone,
                    client.created_at,
                ),
            )
        return client

    def get_client(self, tenant_id: str, client_id: str) -> Optional[Client]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM portal_client WHERE tenant_id = %s AND id = %s",
                (tenant_id, client_id),
            ).fetchone()
        return _record_from_row(Client, row) if row else None

    def add_quote(self, quote: Quote) -> Quote:
        try:
            with self._connect() as conn:
                conn.execute(
                    self._insert_sql("portal_quote", _columns(Quote)),
                    _row_values(quote, _columns(Quote)),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "quote client missing",
                {"tenant_id": quote.tenant_id, "client_id": quote.client_id},
            )
        return quote

    def list_quote_ids(self, tenant_id: str, client_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id FROM portal_quote
                WHERE tenant_id = %s AND client_id = %s
                ORDER BY created_at, id
                """,
                (tenant_id, client_id),
            ).fetchall()
        return [row["id"] for row in rows]

    # ------------------------------------------------------------------
    # magic links
    # ------------------------------------------------------------------

    @staticmethod
    def _reuse_lock_key(tenant_id: str, client_id: str, purpose: str) -> str:
        return f"magic_link:{tenant_id}:{client_id}:{purpose}"

    def _find_reusable(
        self, conn, tenant_id: str, client_id: str, purpose: str, now: datetime
    ) -> Optional[MagicLink]:
        row = conn.execute(
            """
            SELECT * FROM magic_link
            WHERE tenant_id = %s AND client_id = %s AND purpose = %s
              AND revoked_at IS NULL AND NOT is_single_use AND expires_at > %s
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (tenant_id, client_id, purpose, now),
        ).fetchone()
        return _record_from_row(MagicLink, row) if row else None

    def create_magic_link(self, link: MagicLink) -> MagicLink:
        """Insert a link; reusable inserts are serialized per (tenant, client, purpose).

        A transaction-scoped advisory lock makes the existence check and the
        insert a single critical section across all application instances.
        """
        try:
            with self._connect() as conn:
                with conn.transaction():
                    if not link.is_single_use:
                        conn.execute(
                            "SELECT pg_advisory_xact_lock(hashtext(%s))",
                            (self._reuse_lock_key(link.tenant_id, link.client_id, link.purpose),),
                        )
                        existing = self._find_reusable(
                            conn, link.tenant_id, link.client_id, link.purpose, link.created_at
                        )
                        if existing is not None:
                            raise ActiveLinkConflict(
                                link.tenant_id, link.client_id, link.purpose, existing.id
                            )
                    conn.execute(
                        self._insert_sql("magic_link", self._LINK_COLUMNS),
                        _row_values(link, self._LINK_COLUMNS),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("magic link token collision", {"link_id": link.id})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "magic link client missing",
                {"tenant_id": link.tenant_id, "client_id": link.client_id},
            )
        return link

    def get_magic_link(
        self, link_id: str, *, tenant_id: Optional[str] = None
    ) -> Optional[MagicLink]:
        sql = "SELECT * FROM magic_link WHERE id = %s"
        params: List[Any] = [link_id]
        if tenant_id is not None:
            sql += " AND tenant_id = %s"
            params.append(tenant_id)
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return _record_from_row(MagicLink, row) if row else None

    def get_magic_link_by_token(self, token: str) -> Optional[MagicLink]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM magic_link WHERE token = %s", (token,)
            ).fetchone()
        return _record_from_row(MagicLink, row) if row else None

    def find_reusable_magic_link(
        self, tenant_id: str, client_id: str, purpose: str, now: datetime
    ) -> Optional[MagicLink]:
        with self._connect() as conn:
            return self._find_reusable(conn, tenant_id, client_id, purpose, now)

    def refresh_magic_link(
        self, link: MagicLink, *, reopen: bool = False
    ) -> Optional[MagicLink]:
        assignments = [f"{name} = %s" for name in LINK_SETTINGS_FIELDS]
        where = "id = %s"
        if reopen:
            assignments.append("revoked_at = NULL")
        else:
            where += " AND revoked_at IS NULL"
        sql = f"UPDATE magic_link SET {', '.join(assignments)} WHERE {where} RETURNING *"
        params = _row_values(link, list(LINK_SETTINGS_FIELDS)) + [link.id]
        return self._update_returning(MagicLink, sql, params)

    def record_magic_link_access(
        self,
        link_id: str,
        now: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[MagicLink]:
        return self._update_returning(
            MagicLink,
            """
            UPDATE magic_link
            SET access_count = access_count + 1,
                used_at = COALESCE(used_at, %s),
                last_accessed_at = %s,
                last_access_ip = %s,
                last_access_user_agent = %s,
                updated_at = %s
            WHERE id = %s AND revoked_at IS NULL AND expires_at > %s
              AND (NOT is_single_use OR used_at IS NULL)
            RETURNING *
            """,
            (now, now, ip_address, user_agent, now, link_id, now),
        )

    def revoke_magic_link(self, link_id: str, now: datetime) -> Optional[MagicLink]:
        return self._update_returning(
            MagicLink,
            """
            UPDATE magic_link SET revoked_at = %s, updated_at = %s
            WHERE id = %s AND revoked_at IS NULL
            RETURNING *
            """,
            (now, now, link_id),
        )

    def list_magic_links(
        self, tenant_id: str, query: LinkQuery, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[MagicLink], int]:
        where, params = link_query_sql(tenant_id, query)
        limit, offset = clamp_page(limit, offset)
        with self._connect() as conn:
            total = conn.execute(
                f"SELECT count(*) AS n FROM magic_link WHERE {where}", params
            ).fetchone()["n"]
            rows = conn.execute(
                f"SELECT * FROM magic_link WHERE {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                params + [limit, offset],
            ).fetchall()
        return [_record_from_row(MagicLink, row) for row in rows], int(total)

    def count_magic_links(self, tenant_id: str, query: LinkQuery) -> int:
        where, params = link_query_sql(tenant_id, query)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT count(*) AS n FROM magic_link WHERE {where}", params
            ).fetchone()
        return int(row["n"])

    def revoke_client_magic_links(
        self, tenant_id: str, client_id: str, now: datetime
    ) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE magic_link SET revoked_at = %s, updated_at = %s
                WHERE tenant_id = %s AND client_id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (now, now, tenant_id, client_id),
            ).fetchall()
        return [row["id"] for row in rows]

    def delete_magic_links_expired_before(self, tenant_id: str, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM magic_link WHERE tenant_id = %s AND expires_at < %s",
                (tenant_id, cutoff),
            )
            return cur.rowcount

    # ------------------------------------------------------------------
    # customer sessions
    # ------------------------------------------------------------------

    def create_customer_session(self, session: CustomerSession) -> CustomerSession:
        try:
            with self._connect() as conn:
                conn.execute(
                    self._insert_sql("customer_session", self._SESSION_COLUMNS),
                    _row_values(session, self._SESSION_COLUMNS),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("session token collision", {"session_id": session.id})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "session client missing",
                {"tenant_id": session.tenant_id, "client_id": session.client_id},
            )
        return session

    def get_customer_session(
        self, session_id: str, *, tenant_id: Optional[str] = None
    ) -> Optional[CustomerSession]:
        sql = "SELECT * FROM customer_session WHERE id = %s"
        params: List[Any] = [session_id]
        if tenant_id is not None:
            sql += " AND tenant_id = %s"
            params.append(tenant_id)
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return _record_from_row(CustomerSession, row) if row else None

    def get_customer_session_by_token(self, token: str) -> Optional[CustomerSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM customer_session WHERE session_token = %s", (token,)
            ).fetchone()
        return _record_from_row(CustomerSession, row) if row else None

    def find_active_customer_session(
        self, tenant_id: str, client_id: str, now: datetime
    ) -> Optional[CustomerSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM customer_session
                WHERE tenant_id = %s AND client_id = %s
                  AND revoked_at IS NULL AND expires_at > %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (tenant_id, client_id, now),
            ).fetchone()
        return _record_from_row(CustomerSession, row) if row else None

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
        """Activity, scope and expiry in one guarded statement.

        The scope rule reads ``is_verified`` from the row being updated, so a
        concurrent verification is never narrowed back.
        """
        return self._update_returning(
            CustomerSession,
            """
            UPDATE customer_session
            SET quote_ids = CASE
                    WHEN %(quote_id)s::text IS NULL THEN quote_ids
                    WHEN NOT is_verified THEN ARRAY[%(quote_id)s::text]
                    WHEN %(quote_id)s::text = ANY(quote_ids) THEN quote_ids
                    ELSE array_append(quote_ids, %(quote_id)s::text)
                END,
                expires_at = GREATEST(expires_at, COALESCE(%(expires_at)s::timestamptz, expires_at)),
                last_activity_at = %(now)s,
                activity_count = activity_count + 1,
                ip_address = COALESCE(%(ip_address)s, ip_address),
                user_agent = COALESCE(%(user_agent)s, user_agent),
                updated_at = %(now)s
            WHERE id = %(id)s AND revoked_at IS NULL
            RETURNING *
            """,
            {
                "id": session_id,
                "now": now,
                "quote_id": quote_id or None,
                "expires_at": expires_at,
                "ip_address": ip_address or None,
                "user_agent": user_agent or None,
            },
        )

    def verify_customer_session(
        self, session_id: str, now: datetime, method: str, quote_ids: List[str]
    ) -> Optional[CustomerSession]:
        return self._update_returning(
            CustomerSession,
            """
            UPDATE customer_session
            SET is_verified = TRUE,
                verified_at = %(now)s,
                verification_method = %(method)s,
                quote_ids = %(quote_ids)s::text[] || ARRAY(
                    SELECT q FROM unnest(quote_ids) WITH ORDINALITY AS existing(q, n)
                    WHERE NOT (q = ANY(%(quote_ids)s::text[]))
                    ORDER BY n
                ),
                updated_at = %(now)s
            WHERE id = %(id)s AND revoked_at IS NULL
            RETURNING *
            """,
            {"id": session_id, "now": now, "method": method, "quote_ids": list(quote_ids)},
        )

    def revoke_customer_session(
        self, session_id: str, now: datetime
    ) -> Optional[CustomerSession]:
        return self._update_returning(
            CustomerSession,
            """
            UPDATE customer_session SET revoked_at = %s, updated_at = %s
            WHERE id = %s AND revoked_at IS NULL
            RETURNING *
            """,
            (now, now, session_id),
        )

    def list_customer_sessions(
        self, tenant_id: str, query: SessionQuery, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[CustomerSession], int]:
        where, params = session_query_sql(tenant_id, query)
        limit, offset = clamp_page(limit, offset)
        with self._connect() as conn:
            total = conn.execute(
                f"SELECT count(*) AS n FROM customer_session WHERE {where}", params
            ).fetchone()["n"]
            rows = conn.execute(
                f"""
                SELECT * FROM customer_session WHERE {where}
                ORDER BY coalesce(last_activity_at, created_at) DESC
                LIMIT %s OFFSET %s
                """,
                params + [limit, offset],
            ).fetchall()
        return [_record_from_row(CustomerSession, row) for row in rows], int(total)

    def count_customer_sessions(self, tenant_id: str, query: SessionQuery) -> int:
        where, params = session_query_sql(tenant_id, query)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT count(*) AS n FROM customer_session WHERE {where}", params
            ).fetchone()
        return int(row["n"])

    def revoke_client_customer_sessions(
        self, tenant_id: str, client_id: str, now: datetime
    ) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE customer_session SET revoked_at = %s, updated_at = %s
                WHERE tenant_id = %s AND client_id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (now, now, tenant_id, client_id),
            ).fetchall()
        return [row["id"] for row in rows]

    def delete_customer_sessions_expired_before(
        self, tenant_id: str, cutoff: datetime
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM customer_session WHERE tenant_id = %s AND expires_at < %s",
                (tenant_id, cutoff),
            )
            return cur.rowcount

    # ------------------------------------------------------------------
    # one-time codes
    # ------------------------------------------------------------------

    def create_otp_within_limit(
        self, otp: OTPVerification, *, window_start: datetime, limit: int
    ) -> Optional[OTPVerification]:
        """Count-then-insert under a per-client advisory lock."""
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s))",
                    (f"otp:{otp.tenant_id}:{otp.client_id}",),
                )
                row = conn.execute(
                    """
                    SELECT count(*) AS n FROM otp_verification
                    WHERE tenant_id = %s AND client_id = %s AND created_at >= %s
                    """,
                    (otp.tenant_id, otp.client_id, window_start),
                ).fetchone()
                if int(row["n"]) >= limit:
                    return None
                conn.execute(
                    self._insert_sql("otp_verification", self._OTP_COLUMNS),
                    _row_values(otp, self._OTP_COLUMNS),
                )
        return otp

    def count_otps_since(self, tenant_id: str, client_id: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS n FROM otp_verification
                WHERE tenant_id = %s AND client_id = %s AND created_at >= %s
                """,
                (tenant_id, client_id, since),
            ).fetchone()
        return int(row["n"])

    def get_latest_otp_for_session(self, session_id: str) -> Optional[OTPVerification]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_verification WHERE customer_session_id = %s
                ORDER BY created_at DESC LIMIT 1
                """,
                (session_id,),
            ).fetchone()
        return _record_from_row(OTPVerification, row) if row else None

    def record_otp_failure(self, otp_id: str, now: datetime) -> Optional[OTPVerification]:
        return self._update_returning(
            OTPVerification,
            """
            UPDATE otp_verification
            SET attempt_count = attempt_count + 1,
                locked_at = CASE
                    WHEN attempt_count + 1 >= max_attempts THEN %s ELSE locked_at
                END
            WHERE id = %s AND verified_at IS NULL AND locked_at IS NULL
            RETURNING *
            """,
            (now, otp_id),
        )

    def consume_otp(
        self, otp_id: str, now: datetime, ip_address: Optional[str] = None
    ) -> Optional[OTPVerification]:
        return self._update_returning(
            OTPVerification,
            """
            UPDATE otp_verification SET verified_at = %s, verification_ip = %s
            WHERE id = %s AND verified_at IS NULL AND locked_at IS NULL
              AND attempt_count < max_attempts AND expires_at > %s
            RETURNING *
            """,
            (now, ip_address, otp_id, now),
        )

    def record_otp_delivery(
        self, otp_id: str, *, delivered_at: Optional[datetime], error: Optional[str]
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE otp_verification SET delivered_at = %s, delivery_error = %s WHERE id = %s",
                (delivered_at, error, otp_id),
            )

    def delete_otps_created_before(self, tenant_id: str, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM otp_verification WHERE tenant_id = %s AND created_at < %s",
                (tenant_id, cutoff),
            )
            return cur.rowcount

    # ------------------------------------------------------------------
    # audit trail
    # ------------------------------------------------------------------

    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        with self._connect() as conn:
            conn.execute(
                self._insert_sql("portal_audit_log", self._AUDIT_COLUMNS),
                _row_values(entry, self._AUDIT_COLUMNS),
            )
        return entry

    def list_audit_entries(
        self, tenant_id: str, *, entity_id: Optional[str] = None, limit: int = 50
    ) -> List[AuditEntry]:
        sql = "SELECT * FROM portal_audit_log WHERE tenant_id = %s"
        params: List[Any] = [tenant_id]
        if entity_id is not None:
            sql += " AND entity_id = %s"
            params.append(entity_id)
        sql += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_record_from_row(AuditEntry, row) for row in rows]
