"""HTTP surface of the portal, exercised through the FastAPI app with the in-memory store."""

import pytest
from fastapi.testclient import TestClient

from portal_access.app import app
from portal_access.service.runtime import get_runtime
from portal_access.storage.models import Quote

TENANT = "tenant-7"
CLIENT = "client-42"
ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key", "X-Tenant-ID": TENANT, "X-Actor-ID": "staff-1"}


@pytest.fixture
def client():
    runtime = get_runtime()
    runtime.admin.register_tenant(TENANT, company_name="Acme Renovations")
    runtime.admin.upsert_client(TENANT, CLIENT, "Jo Customer", email="jo@example.com")
    for quote_id in ("q-1", "q-2"):
        runtime.store.add_quote(Quote(id=quote_id, tenant_id=TENANT, client_id=CLIENT))
    return TestClient(app)


def _issue(client, **body):
    payload = {"client_id": CLIENT, **body}
    resp = client.post("/v1/admin/portal/links", json=payload, headers=ADMIN_HEADERS)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _access(client, token):
    resp = client.post(f"/v1/portal/access/{token}")
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def _bearer(session_token):
    return {"Authorization": f"Bearer {session_token}"}


class TestCustomerFlow:
    def test_link_to_verified_session(self, client):
        issued = _issue(client, purpose="quote_view", quote_id="q-1")
        assert issued["reused"] is False
        assert issued["url"].endswith(issued["token"])

        access = _access(client, issued["token"])
        assert access["session_created"] is True
        assert access["session"]["quote_ids"] == ["q-1"]
        assert access["session"]["is_verified"] is False
        headers = _bearer(access["session_token"])

        resp = client.get("/v1/portal/session", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["data"]["session_id"] == access["session"]["session_id"]

        resp = client.get("/v1/portal/quotes", params={"all_projects": "true"}, headers=headers)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "verification_required"

        resp = client.post("/v1/portal/otp/request", json={"method": "email"}, headers=headers)
        assert resp.status_code == 200, resp.text
        assert resp.json()["data"]["delivered"] is True

        otp = get_runtime().store.get_latest_otp_for_session(access["session"]["session_id"])
        resp = client.post("/v1/portal/otp/verify", json={"code": otp.code}, headers=headers)
        assert resp.status_code == 200, resp.text
        session = resp.json()["data"]["session"]
        assert session["is_verified"] is True
        assert sorted(session["quote_ids"]) == ["q-1", "q-2"]

        resp = client.get("/v1/portal/quotes", params={"all_projects": "true"}, headers=headers)
        assert resp.status_code == 200
        assert sorted(resp.json()["data"]["quote_ids"]) == ["q-1", "q-2"]

        resp = client.post("/v1/portal/otp/verify", json={"code": otp.code}, headers=headers)
        assert resp.status_code == 410
        assert resp.json()["error"]["code"] == "already_used"

    def test_wrong_code_reports_attempts_remaining(self, client):
        access = _access(client, _issue(client)["token"])
        headers = _bearer(access["session_token"])
        client.post("/v1/portal/otp/request", json={"method": "email"}, headers=headers)
        otp = get_runtime().store.get_latest_otp_for_session(access["session"]["session_id"])
        wrong = "000000" if otp.code != "000000" else "111111"

        resp = client.post("/v1/portal/otp/verify", json={"code": wrong}, headers=headers)

        assert resp.status_code == 400
        body = resp.json()["error"]
        assert body["code"] == "invalid_code"
        assert body["details"] == {"attempts_remaining": 2}

    def test_otp_requests_are_rate_limited(self, client):
        access = _access(client, _issue(client)["token"])
        headers = _bearer(access["session_token"])
        for _ in range(3):
            assert client.post("/v1/portal/otp/request", json={}, headers=headers).status_code == 200

        resp = client.post("/v1/portal/otp/request", json={}, headers=headers)

        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"

    def test_unknown_token(self, client):
        resp = client.post("/v1/portal/access/not-a-real-token")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_token"

    def test_revoked_link(self, client):
        issued = _issue(client)
        resp = client.post(
            f"/v1/admin/portal/links/{issued['link_id']}/deactivate", headers=ADMIN_HEADERS
        )
        assert resp.status_code == 200

        resp = client.post(f"/v1/portal/access/{issued['token']}")
        assert resp.status_code == 410
        assert resp.json()["error"]["code"] == "revoked"

    def test_missing_or_bad_session_token(self, client):
        assert client.get("/v1/portal/session").status_code == 401
        resp = client.get("/v1/portal/session", headers=_bearer("forged.token.value"))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_session"


class TestAdminSurface:
    def test_admin_key_is_required(self, client):
        resp = client.get("/v1/admin/portal/links", headers={"X-Tenant-ID": TENANT})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_tenant_header_is_required(self, client):
        resp = client.get("/v1/admin/portal/links", headers={"X-Admin-Key": "test-admin-key"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_body_validation_uses_envelope(self, client):
        resp = client.post(
            "/v1/admin/portal/links", json={"client_id": CLIENT, "purpose": "bogus"}, headers=ADMIN_HEADERS
        )
        assert resp.status_code == 400
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)

    def test_unknown_client(self, client):
        resp = client.post(
            "/v1/admin/portal/links", json={"client_id": "client-missing"}, headers=ADMIN_HEADERS
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "client_not_found"

    def test_listing_and_revoke_all(self, client):
        issued = _issue(client)
        _access(client, issued["token"])

        resp = client.get("/v1/admin/portal/links", params={"status": "active"}, headers=ADMIN_HEADERS)
        data = resp.json()["data"]
        assert data["total"] == 1
        assert data["items"][0]["token"].endswith("...")
        assert data["stats"]["active"] == 1

        resp = client.post(f"/v1/admin/portal/clients/{CLIENT}/revoke-all", headers=ADMIN_HEADERS)
        assert resp.json()["data"] == {
            "client_id": CLIENT,
            "sessions_revoked": 1,
            "links_revoked": 1,
        }

    def test_settings_round_trip(self, client):
        resp = client.patch(
            "/v1/admin/portal/settings", json={"default_expiry_days": 14}, headers=ADMIN_HEADERS
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["data"]["default_expiry_days"] == 14

        resp = client.get("/v1/admin/portal/settings", headers=ADMIN_HEADERS)
        assert resp.json()["data"]["default_expiry_days"] == 14

    def test_manual_cleanup(self, client):
        resp = client.post("/v1/admin/portal/cleanup", headers=ADMIN_HEADERS)
        assert resp.status_code == 200
        assert resp.json()["data"]["tenants_swept"] == 1


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"]["status"] == "not_configured"


def test_request_id_is_echoed(client):
    resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"


def test_portal_responses_are_not_cached(client):
    resp = client.post("/v1/portal/access/whatever")
    assert "no-store" in resp.headers["Cache-Control"]
