import dataclasses
from datetime import timedelta

import pytest

from portal_access.service.errors import ClientNotFoundError, ConflictError, TenantNotFoundError, ValidationError
from portal_access.service.results import IssueStatus, Reason
from portal_access.storage.errors import ActiveLinkConflict
from portal_access.storage.models import new_id

TENANT = "tenant-7"
CLIENT = "client-42"


class TestLinkIssuer:
    async def test_creates_link_with_tenant_default_expiry(self, portal):
        outcome = await portal.issuer.issue(TENANT, CLIENT)

        assert outcome.status is IssueStatus.CREATED
        assert not outcome.reused
        link = outcome.record
        assert link.expires_at == portal.clock.now() + timedelta(days=7)
        assert link.expiry_duration_days == 7
        assert link.purpose == "portal_access"
        assert link.email == "jo@example.com"
        assert outcome.url == f"https://portal.example.com/portal/access/{link.token}"

    async def test_reuses_live_link_and_keeps_token(self, portal):
        first = await portal.issuer.issue(TENANT, CLIENT)
        portal.clock.advance(days=2)
        second = await portal.issuer.issue(TENANT, CLIENT)

        assert second.status is IssueStatus.REUSED
        assert second.token == first.token
        assert second.record.id == first.record.id
        assert second.expires_at == portal.clock.now() + timedelta(days=7)

    async def test_reuse_never_shortens_expiry(self, portal):
        first = await portal.issuer.issue(TENANT, CLIENT, expiry_days=30)
        original_expiry = first.expires_at
        portal.clock.advance(hours=1)

        second = await portal.issuer.issue(TENANT, CLIENT, expiry_days=2)

        assert second.reused
        assert second.expires_at == original_expiry

    async def test_reuse_expiry_is_capped_by_tenant_maximum(self, portal):
        await portal.issuer.issue(TENANT, CLIENT)
        second = await portal.issuer.issue(TENANT, CLIENT, expiry_days=365)
        assert second.expires_at == portal.clock.now() + timedelta(days=90)

    async def test_reuse_merges_metadata_and_updates_quote(self, portal):
        await portal.issuer.issue(TENANT, CLIENT, metadata={"source": "crm"}, quote_id="q-1")
        second = await portal.issuer.issue(TENANT, CLIENT, metadata={"campaign": "spring"}, quote_id="q-2")

        assert second.record.metadata == {"source": "crm", "campaign": "spring"}
        assert second.record.quote_id == "q-2"

    async def test_purposes_are_independent(self, portal):
        access = await portal.issuer.issue(TENANT, CLIENT, purpose="portal_access")
        payment = await portal.issuer.issue(TENANT, CLIENT, purpose="payment")
        assert payment.status is IssueStatus.CREATED
        assert payment.token != access.token

    async def test_expired_link_is_not_reused(self, portal):
        first = await portal.issuer.issue(TENANT, CLIENT, expiry_days=1)
        portal.clock.advance(days=1)
        second = await portal.issuer.issue(TENANT, CLIENT)
        assert second.status is IssueStatus.CREATED
        assert second.token != first.token

    async def test_revoked_link_is_not_reused(self, portal):
        first = await portal.issuer.issue(TENANT, CLIENT)
        await portal.revocation.revoke_link(first.record.id)
        second = await portal.issuer.issue(TENANT, CLIENT)
        assert second.status is IssueStatus.CREATED
        assert second.token != first.token

    async def test_single_use_links_are_always_fresh(self, portal):
        first = await portal.issuer.issue(TENANT, CLIENT, is_single_use=True)
        second = await portal.issuer.issue(TENANT, CLIENT, is_single_use=True)
        assert second.status is IssueStatus.CREATED
        assert first.token != second.token

    async def test_unsupported_purpose_is_rejected(self, portal):
        with pytest.raises(ValidationError):
            await portal.issuer.issue(TENANT, CLIENT, purpose="invoice")

    async def test_unknown_client_and_tenant(self, portal):
        with pytest.raises(ClientNotFoundError) as excinfo:
            await portal.issuer.issue(TENANT, "client-missing")
        assert excinfo.value.error_code == "client_not_found"
        with pytest.raises(TenantNotFoundError):
            await portal.issuer.issue("tenant-missing", CLIENT)

    async def test_lost_race_is_retried_as_reuse(self, portal, monkeypatch):
        original_create = portal.store.create_magic_link
        rivals = []

        def racing_create(link):
            if not rivals:
                rival = dataclasses.replace(link, id=new_id(), token=portal.tokens.link_token())
                rivals.append(original_create(rival))
            return original_create(link)

        monkeypatch.setattr(portal.store, "create_magic_link", racing_create)

        outcome = await portal.issuer.issue(TENANT, CLIENT)

        assert outcome.status is IssueStatus.REUSED
        assert outcome.record.id == rivals[0].id
        assert outcome.attempts == 2

    async def test_conflict_outcome_after_exhausted_retries(self, portal, monkeypatch):
        calls = []

        def always_conflict(link):
            calls.append(link)
            raise ActiveLinkConflict(link.tenant_id, link.client_id, link.purpose, "other")

        monkeypatch.setattr(portal.store, "create_magic_link", always_conflict)
        monkeypatch.setattr(portal.store, "find_reusable_magic_link", lambda *a, **k: None)

        outcome = await portal.issuer.issue(TENANT, CLIENT)

        assert outcome.status is IssueStatus.CONFLICT
        assert outcome.record is None
        assert len(calls) == portal.settings.link_issue_max_retries

        with pytest.raises(ConflictError):
            await portal.admin.issue_link(TENANT, CLIENT)

    async def test_send_delivers_by_email(self, portal):
        outcome = await portal.issuer.issue(TENANT, CLIENT, send=True)
        assert len(portal.email.sent) == 1
        message = portal.email.sent[0]
        assert message["to"] == "jo@example.com"
        assert outcome.url in message["text"]
        assert "Acme Renovations" in message["subject"]

    async def test_send_falls_back_to_sms_without_email(self, portal):
        client = portal.store.get_client(TENANT, CLIENT)
        client.email = None
        portal.store.upsert_client(client)

        outcome = await portal.issuer.issue(TENANT, CLIENT, send=True)

        assert portal.email.sent == []
        assert len(portal.sms.sent) == 1
        assert outcome.url in portal.sms.sent[0]["message"]

    async def test_failed_delivery_keeps_the_link(self, portal):
        portal.email.ok = False
        outcome = await portal.issuer.issue(TENANT, CLIENT, send=True)
        assert portal.store.get_magic_link(outcome.record.id) is not None

    async def test_issue_is_audited(self, portal):
        outcome = await portal.issuer.issue(TENANT, CLIENT, actor_id="staff-1")
        entries = portal.store.list_audit_entries(TENANT, entity_id=outcome.record.id)
        assert [e.action for e in entries] == ["link_created"]
        assert entries[0].actor_id == "staff-1"


class TestLinkValidator:
    async def test_unknown_token(self, portal):
        result = await portal.validator.validate("deadbeef")
        assert not result.ok
        assert result.reason is Reason.INVALID_TOKEN
        assert result.message

    async def test_missing_token(self, portal):
        result = await portal.validator.validate(None)
        assert result.reason is Reason.INVALID_TOKEN

    async def test_expired_link(self, portal):
        outcome = await portal.issuer.issue(TENANT, CLIENT, expiry_days=1)
        portal.clock.advance(days=1)
        result = await portal.validator.validate(outcome.token)
        assert result.reason is Reason.EXPIRED

    async def test_expired_wins_over_revoked(self, portal):
        outcome = await portal.issuer.issue(TENANT, CLIENT, expiry_days=1)
        await portal.revocation.revoke_link(outcome.record.id)
        portal.clock.advance(days=2)
        result = await portal.validator.validate(outcome.token)
        assert result.reason is Reason.EXPIRED

    async def test_revoked_link(self, portal):
        outcome = await portal.issuer.issue(TENANT, CLIENT)
        await portal.revocation.revoke_link(outcome.record.id)
        result = await portal.validator.validate(outcome.token)
        assert result.reason is Reason.REVOKED

    async def test_single_use_link_works_once(self, portal):
        outcome = await portal.issuer.issue(TENANT, CLIENT, is_single_use=True)
        first = await portal.validator.validate(outcome.token)
        second = await portal.validator.validate(outcome.token)
        assert first.ok
        assert second.reason is Reason.ALREADY_USED

    async def test_reusable_link_records_each_access(self, portal):
        outcome = await portal.issuer.issue(TENANT, CLIENT)
        first = await portal.validator.validate(outcome.token, "10.0.0.1", "agent/1")
        first_used_at = first.link.used_at
        portal.clock.advance(minutes=5)
        second = await portal.validator.validate(outcome.token, "10.0.0.2", "agent/2")

        link = portal.store.get_magic_link(outcome.record.id)
        assert link.access_count == 2
        assert link.used_at == first_used_at
        assert link.last_accessed_at == portal.clock.now()
        assert link.last_access_ip == "10.0.0.2"
        assert link.last_access_user_agent == "agent/2"
        assert first.access.created
        assert not second.access.created
        assert second.session.id == first.session.id

    async def test_validation_opens_unverified_session(self, portal):
        outcome = await portal.issuer.issue(TENANT, CLIENT, quote_id="q-1")
        result = await portal.validator.validate(outcome.token)

        session = result.session
        assert result.ok
        assert not session.is_verified
        assert session.quote_ids == ["q-1"]
        assert session.expires_at == outcome.expires_at
        assert session.origin_magic_link_id == outcome.record.id
        assert portal.signer.verify(session.session_token).client_id == CLIENT

    async def test_check_order_for_null_link(self, portal):
        assert portal.validator.check(None, portal.clock.now()) is Reason.INVALID_TOKEN


class TestRevocationRaces:
    async def test_validation_keeps_a_revocation_made_after_lookup(self, portal, monkeypatch):
        outcome = await portal.issuer.issue(TENANT, CLIENT)
        original = portal.store.get_magic_link_by_token

        def read_then_revoke(token):
            snapshot = dataclasses.replace(original(token))
            portal.store.revoke_client_magic_links(TENANT, CLIENT, portal.clock.now())
            return snapshot

        monkeypatch.setattr(portal.store, "get_magic_link_by_token", read_then_revoke)

        result = await portal.validator.validate(outcome.token)

        assert result.reason is Reason.REVOKED
        stored = portal.store.get_magic_link(outcome.record.id)
        assert stored.revoked_at is not None
        assert stored.access_count == 0
        assert portal.sessions.list_active_sessions(TENANT, CLIENT) == []

    async def test_parallel_use_of_single_use_link_opens_one_session(self, portal, monkeypatch):
        outcome = await portal.issuer.issue(TENANT, CLIENT, is_single_use=True)
        snapshot = dataclasses.replace(outcome.record)
        monkeypatch.setattr(
            portal.store, "get_magic_link_by_token", lambda token: dataclasses.replace(snapshot)
        )

        first = await portal.validator.validate(outcome.token)
        second = await portal.validator.validate(outcome.token)

        assert first.ok
        assert second.reason is Reason.ALREADY_USED
        assert portal.store.get_magic_link(outcome.record.id).access_count == 1

    async def test_reissue_does_not_revive_a_link_revoked_after_lookup(self, portal, monkeypatch):
        first = await portal.issuer.issue(TENANT, CLIENT)
        original = portal.store.find_reusable_magic_link

        def find_then_revoke(tenant_id, client_id, purpose, now):
            found = original(tenant_id, client_id, purpose, now)
            if found is None:
                return None
            snapshot = dataclasses.replace(found)
            portal.store.revoke_magic_link(found.id, now)
            return snapshot

        monkeypatch.setattr(portal.store, "find_reusable_magic_link", find_then_revoke)

        second = await portal.issuer.issue(TENANT, CLIENT, expiry_days=20)

        assert second.status is IssueStatus.CREATED
        assert second.token != first.token
        old = portal.store.get_magic_link(first.record.id)
        assert old.revoked_at is not None
        assert old.expires_at == portal.clock.now() + timedelta(days=7)
