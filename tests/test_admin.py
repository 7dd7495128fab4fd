"""Tests for admin accounts and the dashboard."""

import pytest

from storefront.admin import get_password_hash, verify_password
from storefront.errors import AuthenticationError, AuthFailure, ConflictError, PermissionDeniedError


def test_password_hashing():
    hashed = get_password_hash("s3cret")
    assert hashed != "s3cret"
    assert verify_password("s3cret", hashed)
    assert not verify_password("wrong", hashed)


class TestAdminService:
    @pytest.fixture
    def admins(self, app):
        return app.state.admins

    def test_bootstrap_is_idempotent(self, client, db, admins):
        admins.bootstrap("admin@demo.com", "another-password")
        assert db["admins"].count_documents({}) == 1
        admins.login("admin@demo.com", "admin123")

    def test_duplicate_email(self, client, admins):
        with pytest.raises(ConflictError):
            admins.create("ADMIN@demo.com", "x")

    def test_login_is_case_insensitive_on_email(self, client, admins):
        result = admins.login("Admin@Demo.com", "admin123")
        assert result["admin"]["email"] == "admin@demo.com"
        assert "passwordHash" not in result["admin"]

    def test_inactive_admin_cannot_log_in(self, client, db, admins):
        db["admins"].update_one({"email": "admin@demo.com"}, {"$set": {"isActive": False}})
        with pytest.raises(AuthenticationError) as exc_info:
            admins.login("admin@demo.com", "admin123")
        assert exc_info.value.reason == AuthFailure.INVALID_CREDENTIALS

    def test_non_admin_role_is_refused(self, client, admins):
        admins.create("support@demo.com", "pw", role="support")
        token = admins.login("support@demo.com", "pw")["token"]
        with pytest.raises(PermissionDeniedError):
            admins.verify(token)

    def test_session_token_is_not_an_admin_token(self, client, admins, auth_headers):
        token = auth_headers["Authorization"].split(" ", 1)[1]
        with pytest.raises(AuthenticationError):
            admins.verify(token)


class TestAdminEndpoints:
    def test_login(self, client, db):
        response = client.post("/admin/auth/login", json={"email": "admin@demo.com", "password": "admin123"})
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["token"]
        assert body["admin"]["role"] == "admin"
        assert db["admins"].find_one({"email": "admin@demo.com"})["lastLoginAt"] is not None

    def test_wrong_password(self, client):
        response = client.post("/admin/auth/login", json={"email": "admin@demo.com", "password": "nope"})
        assert response.status_code == 401
        assert response.json()["reason"] == "invalid_credentials"

    def test_invalid_email_format(self, client):
        response = client.post("/admin/auth/login", json={"email": "not-an-email", "password": "x"})
        assert response.status_code == 422

    def test_verify(self, client, admin_headers):
        token = admin_headers["Authorization"].split(" ", 1)[1]
        response = client.post("/admin/auth/verify", json={"token": token})
        assert response.status_code == 200
        assert response.json()["admin"]["email"] == "admin@demo.com"

    def test_verify_garbage(self, client):
        assert client.post("/admin/auth/verify", json={"token": "garbage"}).status_code == 401

    def test_dashboard(self, client, admin_headers, auth_headers, make_product, order_payload):
        product = make_product(price=10.0, stock=5)
        client.post(
            "/orders",
            json=order_payload([{"productId": product["id"], "quantity": 1}], taxAmount=0),
            headers=auth_headers,
        )
        response = client.get("/admin/dashboard/stats", headers=admin_headers)
        assert response.status_code == 200
        stats = response.json()
        assert stats["users"]["totalUsers"] == 1
        assert stats["users"]["activeUsers"] == 1
        assert stats["products"]["totalProducts"] == 1
        assert stats["products"]["totalOrders"] == 1
        assert stats["orders"]["totalOrders"] == 1
        assert stats["orders"]["totalRevenue"] == pytest.approx(10.0)
        assert stats["categories"]["totalCategories"] == 0

    def test_dashboard_refuses_shoppers(self, client, auth_headers):
        assert client.get("/admin/dashboard/stats", headers=auth_headers).status_code == 403

    def test_dashboard_refuses_garbage_token(self, client):
        response = client.get("/admin/dashboard/stats", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 401


class TestAdminUsers:
    def test_lists_users(self, client, admin_headers, login):
        login(telegram_id=11, first_name="Olive")
        login(telegram_id=12, first_name="Pablo")
        listing = client.get("/admin/users", headers=admin_headers).json()
        assert listing["total"] == 2
        assert {u["telegramId"] for u in listing["users"]} == {11, 12}
        assert listing["users"][0]["isActive"] is True
        assert listing["users"][0]["totalOrders"] == 0

    def test_search_and_pagination(self, client, admin_headers, login):
        for tid, name in ((21, "Quinn"), (22, "Rosa"), (23, "Rosalind")):
            login(telegram_id=tid, first_name=name)
        found = client.get("/admin/users", params={"search": "rosa"}, headers=admin_headers).json()
        assert sorted(u["firstName"] for u in found["users"]) == ["Rosa", "Rosalind"]

        page = client.get("/admin/users", params={"limit": 2, "page": 2}, headers=admin_headers).json()
        assert page["totalPages"] == 2
        assert len(page["users"]) == 1

    def test_requires_admin(self, client, auth_headers):
        assert client.get("/admin/users", headers=auth_headers).status_code == 403
        assert client.get("/admin/users").status_code == 401
