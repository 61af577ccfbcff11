import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from portal_access.storage.common import LinkQuery, SessionQuery, classify_link, paginate
from portal_access.storage.errors import ActiveLinkConflict, ConstraintViolation
from portal_access.storage.memory import MemoryStore
from portal_access.storage.models import (
    Client,
    CustomerSession,
    LinkStatus,
    MagicLink,
    OTPVerification,
    Quote,
    TenantPortalConfig,
)

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _link(link_id, *, token=None, purpose="portal_access", single_use=False, expires_in=timedelta(days=7), **kw):
    return MagicLink(
        id=link_id,
        token=token or f"tok-{link_id}",
        tenant_id=kw.pop("tenant_id", "tenant-7"),
        client_id=kw.pop("client_id", "client-42"),
        purpose=purpose,
        expires_at=NOW + expires_in,
        is_single_use=single_use,
        created_at=NOW,
        **kw,
    )


def _otp(otp_id, created_at, session_id="s-1"):
    otp = OTPVerification.new(
        code="123456",
        tenant_id="tenant-7",
        client_id="client-42",
        customer_session_id=session_id,
        delivery_method="email",
        delivery_target="jo@example.com",
        now=created_at,
    )
    otp.id = otp_id
    return otp


class TestMagicLinkConstraints:
    def test_second_live_reusable_link_conflicts(self):
        store = MemoryStore()
        store.create_magic_link(_link("a"))
        with pytest.raises(ActiveLinkConflict) as excinfo:
            store.create_magic_link(_link("b"))
        assert excinfo.value.existing_link_id == "a"

    def test_single_use_links_never_conflict(self):
        store = MemoryStore()
        store.create_magic_link(_link("a"))
        store.create_magic_link(_link("b", single_use=True))
        store.create_magic_link(_link("c", single_use=True))

    def test_revoked_or_expired_links_free_the_slot(self):
        store = MemoryStore()
        store.create_magic_link(_link("a", revoked_at=NOW))
        store.create_magic_link(_link("b", expires_in=timedelta(seconds=0)))
        store.create_magic_link(_link("c"))
        assert store.find_reusable_magic_link("tenant-7", "client-42", "portal_access", NOW).id == "c"

    def test_token_collision_is_refused(self):
        store = MemoryStore()
        store.create_magic_link(_link("a", token="same", single_use=True))
        with pytest.raises(ConstraintViolation):
            store.create_magic_link(_link("b", token="same", single_use=True))

    def test_lookup_by_token_is_exact(self):
        store = MemoryStore()
        store.create_magic_link(_link("a", token="abcdef"))
        assert store.get_magic_link_by_token("abcdef").id == "a"
        assert store.get_magic_link_by_token("abcde") is None
        assert store.get_magic_link_by_token("ABCDEF") is None

    def test_refresh_of_unknown_link_is_a_no_op(self):
        assert MemoryStore().refresh_magic_link(_link("ghost")) is None


class TestOTPLimit:
    def test_limit_is_checked_with_the_insert(self):
        store = MemoryStore()
        window_start = NOW - timedelta(minutes=5)
        for i in range(3):
            assert store.create_otp_within_limit(_otp(f"o{i}", NOW), window_start=window_start, limit=3)
        assert store.create_otp_within_limit(_otp("o4", NOW), window_start=window_start, limit=3) is None
        assert store.count_otps_since("tenant-7", "client-42", window_start) == 3

    def test_codes_outside_window_do_not_count(self):
        store = MemoryStore()
        old = NOW - timedelta(minutes=6)
        for i in range(3):
            store.create_otp_within_limit(_otp(f"o{i}", old), window_start=old, limit=3)
        assert store.create_otp_within_limit(
            _otp("fresh", NOW), window_start=NOW - timedelta(minutes=5), limit=3
        )

    def test_latest_code_per_session(self):
        store = MemoryStore()
        store.create_otp_within_limit(_otp("old", NOW), window_start=NOW, limit=10)
        store.create_otp_within_limit(_otp("new", NOW + timedelta(seconds=1)), window_start=NOW, limit=10)
        assert store.get_latest_otp_for_session("s-1").id == "new"
        assert store.get_latest_otp_for_session("s-other") is None


class TestSessions:
    def test_active_session_lookup_prefers_newest_session(self):
        store = MemoryStore()
        # The older session saw activity more recently; creation order still wins
        for sid, created, activity in (
            ("s-old", NOW - timedelta(days=2), NOW - timedelta(minutes=1)),
            ("s-new", NOW - timedelta(days=1), NOW - timedelta(hours=2)),
        ):
            store.create_customer_session(
                CustomerSession(
                    id=sid,
                    session_token=f"tok-{sid}",
                    tenant_id="tenant-7",
                    client_id="client-42",
                    expires_at=NOW + timedelta(days=1),
                    last_activity_at=activity,
                    created_at=created,
                )
            )
        assert store.find_active_customer_session("tenant-7", "client-42", NOW).id == "s-new"

    def test_bulk_revoke_returns_only_newly_revoked(self):
        store = MemoryStore()
        store.create_customer_session(
            CustomerSession(
                id="s-1",
                session_token="t-1",
                tenant_id="tenant-7",
                client_id="client-42",
                expires_at=NOW + timedelta(days=1),
            )
        )
        assert store.revoke_client_customer_sessions("tenant-7", "client-42", NOW) == ["s-1"]
        assert store.revoke_client_customer_sessions("tenant-7", "client-42", NOW) == []


def _session(session_id="s-1", **kw):
    return CustomerSession(
        id=session_id,
        session_token=f"tok-{session_id}",
        tenant_id="tenant-7",
        client_id="client-42",
        expires_at=kw.pop("expires_at", NOW + timedelta(days=1)),
        created_at=NOW,
        **kw,
    )


class TestGuardedLinkWrites:
    def test_access_is_refused_once_revoked(self):
        store = MemoryStore()
        store.create_magic_link(_link("a"))
        assert store.revoke_magic_link("a", NOW).revoked_at == NOW
        assert store.revoke_magic_link("a", NOW + timedelta(minutes=1)) is None

        assert store.record_magic_link_access("a", NOW, "10.0.0.1", "agent") is None
        assert store.get_magic_link("a").access_count == 0
        assert store.get_magic_link("a").revoked_at == NOW

    def test_single_use_link_is_counted_once(self):
        store = MemoryStore()
        store.create_magic_link(_link("a", single_use=True))
        first = store.record_magic_link_access("a", NOW, "10.0.0.1", "agent")
        assert first.used_at == NOW
        assert store.record_magic_link_access("a", NOW + timedelta(seconds=1)) is None
        assert store.get_magic_link("a").access_count == 1

    def test_refresh_keeps_revocation_unless_reopened(self):
        store = MemoryStore()
        store.create_magic_link(_link("a"))
        store.revoke_magic_link("a", NOW)
        longer = dataclasses.replace(_link("a"), expires_at=NOW + timedelta(days=30))

        assert store.refresh_magic_link(longer) is None
        assert store.get_magic_link("a").revoked_at == NOW

        reopened = store.refresh_magic_link(longer, reopen=True)
        assert reopened.revoked_at is None
        assert reopened.expires_at == NOW + timedelta(days=30)

    def test_refresh_leaves_access_tracking_alone(self):
        store = MemoryStore()
        store.create_magic_link(_link("a"))
        stale = dataclasses.replace(store.get_magic_link("a"))
        store.record_magic_link_access("a", NOW, "10.0.0.1", "agent")

        stale.quote_id = "q-9"
        refreshed = store.refresh_magic_link(stale)

        assert refreshed.quote_id == "q-9"
        assert refreshed.access_count == 1
        assert refreshed.last_access_ip == "10.0.0.1"


class TestGuardedSessionWrites:
    def test_touch_refuses_revoked_session(self):
        store = MemoryStore()
        store.create_customer_session(_session())
        store.revoke_customer_session("s-1", NOW)

        assert store.touch_customer_session("s-1", NOW, ip_address="10.0.0.1") is None
        stored = store.get_customer_session("s-1")
        assert stored.revoked_at == NOW
        assert stored.activity_count == 0

    def test_touch_applies_scope_to_stored_verification(self):
        store = MemoryStore()
        store.create_customer_session(_session(quote_ids=["q-1"]))
        store.verify_customer_session("s-1", NOW, "email", ["q-1"])

        touched = store.touch_customer_session("s-1", NOW, quote_id="q-2")

        assert touched.quote_ids == ["q-1", "q-2"]
        assert touched.activity_count == 1

    def test_touch_never_shortens_expiry(self):
        store = MemoryStore()
        store.create_customer_session(_session(expires_at=NOW + timedelta(days=5)))
        touched = store.touch_customer_session("s-1", NOW, expires_at=NOW + timedelta(days=1))
        assert touched.expires_at == NOW + timedelta(days=5)
        touched = store.touch_customer_session("s-1", NOW, expires_at=NOW + timedelta(days=9))
        assert touched.expires_at == NOW + timedelta(days=9)

    def test_verify_keeps_existing_quotes_after_client_quotes(self):
        store = MemoryStore()
        store.create_customer_session(_session(quote_ids=["q-legacy"]))
        verified = store.verify_customer_session("s-1", NOW, "sms", ["q-1", "q-2"])
        assert verified.quote_ids == ["q-1", "q-2", "q-legacy"]
        assert verified.is_verified and verified.verification_method == "sms"

    def test_verify_refuses_revoked_session(self):
        store = MemoryStore()
        store.create_customer_session(_session())
        store.revoke_customer_session("s-1", NOW)
        assert store.verify_customer_session("s-1", NOW, "email", []) is None
        assert not store.get_customer_session("s-1").is_verified


class TestGuardedOTPWrites:
    def _store_with_code(self):
        store = MemoryStore()
        store.create_otp_within_limit(_otp("o1", NOW), window_start=NOW, limit=10)
        return store

    def test_failures_lock_at_the_limit_and_stop_counting(self):
        store = self._store_with_code()
        assert store.record_otp_failure("o1", NOW).attempt_count == 1
        assert store.record_otp_failure("o1", NOW).locked_at is None
        locked = store.record_otp_failure("o1", NOW)
        assert locked.locked_at == NOW
        assert locked.attempts_remaining == 0

        assert store.record_otp_failure("o1", NOW) is None
        assert store.get_latest_otp_for_session("s-1").attempt_count == 3

    def test_code_is_consumed_once(self):
        store = self._store_with_code()
        consumed = store.consume_otp("o1", NOW, "10.0.0.1")
        assert consumed.verified_at == NOW
        assert consumed.verification_ip == "10.0.0.1"
        assert store.consume_otp("o1", NOW) is None
        assert store.record_otp_failure("o1", NOW) is None

    def test_locked_or_expired_code_cannot_be_consumed(self):
        store = self._store_with_code()
        assert store.consume_otp("o1", NOW + timedelta(minutes=11)) is None
        for _ in range(3):
            store.record_otp_failure("o1", NOW)
        assert store.consume_otp("o1", NOW) is None

    def test_delivery_outcome_is_recorded(self):
        store = self._store_with_code()
        store.record_otp_delivery("o1", delivered_at=None, error="smtp down")
        otp = store.get_latest_otp_for_session("s-1")
        assert (otp.delivered_at, otp.delivery_error) == (None, "smtp down")
        store.record_otp_delivery("o1", delivered_at=NOW, error=None)
        assert store.get_latest_otp_for_session("s-1").delivered_at == NOW


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.upsert_portal_config(TenantPortalConfig(tenant_id="tenant-7", branding={"logo": "x.png"}))
    store.upsert_client(Client(id="client-42", tenant_id="tenant-7", name="Jo"))
    store.add_quote(Quote(id="q-1", tenant_id="tenant-7", client_id="client-42"))
    store.create_magic_link(_link("a", token="persisted-token", metadata={"source": "crm"}))

    reloaded = MemoryStore(fs_root=str(tmp_path))

    assert (tmp_path / "state" / "portal_store.json").exists()
    assert [p.name for p in (tmp_path / "state").iterdir()] == ["portal_store.json"]
    link = reloaded.get_magic_link_by_token("persisted-token")
    assert link.metadata == {"source": "crm"}
    assert link.expires_at == NOW + timedelta(days=7)
    assert link.expires_at.tzinfo is not None
    assert reloaded.get_portal_config("tenant-7").branding == {"logo": "x.png"}
    assert reloaded.list_quote_ids("tenant-7", "client-42") == ["q-1"]


def test_failed_persist_keeps_previous_state(tmp_path, monkeypatch):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_magic_link(_link("a", token="first"))

    def refuse(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("portal_access.storage.memory.os.replace", refuse)
    with pytest.raises(RuntimeError):
        store.create_magic_link(_link("b", token="second", single_use=True))
    monkeypatch.undo()

    assert [p.name for p in (tmp_path / "state").iterdir()] == ["portal_store.json"]
    reloaded = MemoryStore(fs_root=str(tmp_path))
    assert reloaded.get_magic_link_by_token("first") is not None
    assert reloaded.get_magic_link_by_token("second") is None

def test_quote_requires_known_client():
    with pytest.raises(ConstraintViolation):
        MemoryStore().add_quote(Quote(id="q-1", tenant_id="tenant-7", client_id="nobody"))


class TestQueryHelpers:
    def test_classify_link(self):
        assert classify_link(_link("a", expires_in=timedelta(days=10)), NOW) is LinkStatus.ACTIVE
        assert classify_link(_link("a", expires_in=timedelta(days=3)), NOW) is LinkStatus.EXPIRING_SOON
        assert classify_link(_link("a", expires_in=timedelta(0)), NOW) is LinkStatus.EXPIRED
        assert classify_link(_link("a", revoked_at=NOW), NOW) is LinkStatus.EXPIRED

    def test_unknown_statuses_are_rejected(self):
        with pytest.raises(ValueError):
            LinkQuery(now=NOW, status="pending")
        with pytest.raises(ValueError):
            SessionQuery(now=NOW, status="pending")

    def test_paginate_clamps_window(self):
        items = list(range(10))
        assert paginate(items, 3, 8) == [8, 9]
        assert paginate(items, 0, -5) == [0]
