"""Integration tests for the super-admin surface.

Covers the cookie login, hotel onboarding and listing, billing status,
admin PIN resets, soft delete and purge over HTTP.
"""

import os
import uuid

import pytest
from fastapi.testclient import TestClient

from tablecode import app as app_module
from tablecode.service.runtime import get_runtime
from tablecode.service.sessions import ADMIN_COOKIE_NAME

XHR = {"X-Requested-With": "XMLHttpRequest"}
HOTEL = {
    "name": "Sea View",
    "city": "Goa",
    "phone": "9876543210",
    "pin": "59273841",
    "email": "owner@seaview.example",
    "plan": "STARTER",
}


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def admin_client(client):
    response = client.post("/auth/admin/login", json={"admin_key": os.environ["ADMIN_KEY"]})
    assert response.status_code == 200, response.text
    return client


@pytest.fixture
def hotel(admin_client):
    response = admin_client.post("/admin/hotels", json=HOTEL, headers=XHR)
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestAdminSession:
    def test_login_sets_cookie(self, client):
        response = client.post("/auth/admin/login", json={"admin_key": os.environ["ADMIN_KEY"]})
        assert response.status_code == 200
        set_cookie = response.headers["set-cookie"]
        assert set_cookie.startswith(f"{ADMIN_COOKIE_NAME}=")
        assert "HttpOnly" in set_cookie
        assert client.get("/auth/admin/me", headers=XHR).json()["data"]["authenticated"]

    def test_wrong_key_forbidden(self, client):
        response = client.post("/auth/admin/login", json={"admin_key": "wrong"})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"
        assert ADMIN_COOKIE_NAME not in client.cookies

    def test_admin_login_rate_limited(self, client):
        for _ in range(5):
            assert client.post("/auth/admin/login", json={"admin_key": "wrong"}).status_code == 403
        response = client.post("/auth/admin/login", json={"admin_key": os.environ["ADMIN_KEY"]})
        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1
        assert response.json()["error"]["details"]["retry_after_ms"] > 0

    def test_requests_without_cookie_forbidden(self, client):
        response = client.get("/admin/hotels", headers=XHR)
        assert response.status_code == 403

    def test_requests_without_xhr_header_forbidden(self, admin_client):
        response = admin_client.get("/admin/hotels")
        assert response.status_code == 403

    def test_logout_clears_cookie(self, admin_client):
        response = admin_client.post("/auth/admin/logout")
        assert response.status_code == 200
        assert "Max-Age=0" in response.headers["set-cookie"]
        assert admin_client.get("/auth/admin/me", headers=XHR).status_code == 403


class TestHotelManagement:
    def test_create_returns_pin_once(self, admin_client, hotel):
        assert hotel["pin"] == HOTEL["pin"]
        assert hotel["tenant"]["status"] == "TRIAL"
        assert hotel["menu_url"].endswith(f"/m/{hotel['tenant']['code']}")
        assert "pin_hash" not in hotel["tenant"]

        detail = admin_client.get(f"/admin/hotels/{hotel['tenant']['id']}", headers=XHR)
        body = detail.json()["data"]
        assert "pin" not in body
        assert "pin_hash" not in body["tenant"]
        assert [entry["action"] for entry in body["recent_audit"]] == ["tenant_created"]

    def test_create_validation_error_has_field(self, admin_client):
        response = admin_client.post(
            "/admin/hotels", json={**HOTEL, "pin": "12345678"}, headers=XHR
        )
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"]["field"] == "pin"

    def test_missing_body_field(self, admin_client):
        payload = {key: value for key, value in HOTEL.items() if key != "name"}
        response = admin_client.post("/admin/hotels", json=payload, headers=XHR)
        assert response.status_code == 400
        details = response.json()["error"]["details"]
        assert any(item["field"] == "name" for item in details)

    def test_list_and_search(self, admin_client, hotel):
        admin_client.post("/admin/hotels", json={**HOTEL, "name": "Hill Top", "city": "Ooty"}, headers=XHR)
        everything = admin_client.get("/admin/hotels", headers=XHR).json()["data"]
        assert everything["total"] == 2
        found = admin_client.get("/admin/hotels", params={"search": "ooty"}, headers=XHR).json()["data"]
        assert [item["name"] for item in found["items"]] == ["Hill Top"]
        too_big = admin_client.get("/admin/hotels", params={"limit": 500}, headers=XHR)
        assert too_big.status_code == 400

    def test_invalid_and_unknown_ids(self, admin_client):
        bad = admin_client.get("/admin/hotels/not-a-uuid", headers=XHR)
        assert bad.status_code == 400
        assert bad.json()["error"]["details"] == {"field": "id", "reason": "must be a UUID"}
        missing = admin_client.get(f"/admin/hotels/{uuid.uuid4()}", headers=XHR)
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "not_found"

    def test_edit_details(self, admin_client, hotel):
        response = admin_client.patch(
            f"/admin/hotels/{hotel['tenant']['id']}",
            json={"name": "Sea View Deluxe", "city": "Panaji", "phone": "9123456780", "plan": "PRO"},
            headers=XHR,
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["name"] == "Sea View Deluxe"
        assert data["email"] == ""

    def test_status_change(self, admin_client, hotel):
        tenant_id = hotel["tenant"]["id"]
        response = admin_client.patch(
            f"/admin/hotels/{tenant_id}/status",
            json={"status": "ACTIVE", "paid_until": "2025-12-31T00:00:00Z", "note": "UPI 42"},
            headers=XHR,
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "ACTIVE"
        assert data["last_payment_note"] == "UPI 42"
        assert data["paid_until"].startswith("2025-12-31")

        # paid_until omitted keeps the stored value
        response = admin_client.patch(
            f"/admin/hotels/{tenant_id}/status", json={"status": "GRACE"}, headers=XHR
        )
        assert response.json()["data"]["paid_until"].startswith("2025-12-31")

    def test_admin_pin_reset(self, admin_client, hotel):
        tenant_id = hotel["tenant"]["id"]
        response = admin_client.post(f"/admin/hotels/{tenant_id}/reset-pin", headers=XHR)
        assert response.status_code == 200
        new_pin = response.json()["data"]["pin"]
        assert len(new_pin) == 8 and new_pin != HOTEL["pin"]

        counts = admin_client.get(f"/admin/hotels/{tenant_id}/pin-reset-count", headers=XHR)
        assert counts.json()["data"]["pin_reset_count"] == 1
        assert counts.json()["data"]["last_pin_reset_by"] == "super_admin"

        login = admin_client.post("/auth/login", json={"code": hotel["tenant"]["code"], "pin": new_pin})
        assert login.status_code == 200

    def test_admin_pin_reset_rate_limited(self, admin_client, hotel):
        tenant_id = hotel["tenant"]["id"]
        for _ in range(3):
            assert admin_client.post(f"/admin/hotels/{tenant_id}/reset-pin", headers=XHR).status_code == 200
        response = admin_client.post(f"/admin/hotels/{tenant_id}/reset-pin", headers=XHR)
        assert response.status_code == 429
        assert "Retry-After" in response.headers


class TestDeleteAndPurge:
    def test_soft_delete_then_purge(self, admin_client, hotel):
        tenant_id = hotel["tenant"]["id"]

        early = admin_client.delete(f"/admin/hotels/{tenant_id}/purge", headers=XHR)
        assert early.status_code == 409
        assert early.json()["error"]["code"] == "conflict"

        deleted = admin_client.delete(f"/admin/hotels/{tenant_id}", headers=XHR)
        assert deleted.status_code == 200
        data = deleted.json()["data"]
        assert data["status"] == "DELETED"
        assert data["name"] == "Deleted Hotel"
        assert data["purge_after"]

        again = admin_client.delete(f"/admin/hotels/{tenant_id}", headers=XHR)
        assert again.status_code == 409

        revive = admin_client.patch(
            f"/admin/hotels/{tenant_id}/status", json={"status": "ACTIVE"}, headers=XHR
        )
        assert revive.status_code == 409

        purged = admin_client.delete(f"/admin/hotels/{tenant_id}/purge", headers=XHR)
        assert purged.status_code == 200
        assert purged.json()["data"]["code"] == hotel["tenant"]["code"]
        assert get_runtime().store.find_by_id(tenant_id) is None

        gone = admin_client.delete(f"/admin/hotels/{tenant_id}/purge", headers=XHR)
        assert gone.status_code == 404

    def test_deleted_owner_cannot_log_in(self, admin_client, hotel):
        admin_client.delete(f"/admin/hotels/{hotel['tenant']['id']}", headers=XHR)
        response = admin_client.post(
            "/auth/login", json={"code": hotel["tenant"]["code"], "pin": HOTEL["pin"]}
        )
        assert response.status_code == 401


def test_health_echoes_request_id_and_security_headers(client):
    response = client.get("/health", headers={"X-Request-ID": "req-abc"})
    assert response.status_code == 200
    assert response.json()["data"] == {"status": "healthy"}
    assert response.headers["X-Request-ID"] == "req-abc"
    assert response.headers["Cache-Control"].startswith("no-store")
    assert response.headers["X-Frame-Options"] == "DENY"
