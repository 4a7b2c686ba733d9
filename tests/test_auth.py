import pytest
from fastapi import HTTPException

from tenancy import resolve_tenant


class TestAuth:
    def test_register_and_login(self, client):
        resp = client.post("/auth/register", json={
            "username": "acme", "email": "buyer@acme.example.com", "password": "long-enough",
            "company_name": "Acme", "tenant_id": "km",
        })
        assert resp.status_code == 201
        user = resp.json()
        assert user["tenant_id"] == "km"
        assert user["role"] == "b2b_user"
        assert "hashed_password" not in user

        token = client.post("/auth/login", data={"username": "buyer@acme.example.com",
                                                 "password": "long-enough"}).json()["access_token"]
        me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"}).json()
        assert me["username"] == "acme"

    def test_duplicate_registration(self, client, buyer):
        resp = client.post("/auth/register", json={
            "username": "acme", "email": "another@acme.example.com", "password": "long-enough",
        })
        assert resp.status_code == 409

    def test_wrong_password(self, client, buyer):
        resp = client.post("/auth/login", data={"username": "acme", "password": "wrong-pass"})
        assert resp.status_code == 400

    def test_disabled_account(self, client, db, buyer):
        db["user"].update_one({"username": "acme"}, {"$set": {"is_active": False}})
        resp = client.post("/auth/login", data={"username": "acme", "password": "secret-pass"})
        assert resp.status_code == 403

    def test_protected_routes_need_token(self, client):
        assert client.get("/api/products").status_code == 401
        assert client.get("/api/cart", headers={"Authorization": "Bearer garbage"}).status_code == 401

    def test_user_endpoint_reports_currency(self, client, auth, make_user):
        user = make_user("zenica", tenant_id="km")
        assert client.get("/api/user", headers=auth(user)).json()["currency"] == "KM"


class TestTenantResolution:
    def test_user_defaults_to_own_tenant(self):
        tenant = resolve_tenant({"tenant_id": "km", "role": "b2b_user"}, None)
        assert (tenant.tenant_id, tenant.currency, tenant.is_admin) == ("km", "KM", False)

    def test_user_may_name_own_tenant(self):
        assert resolve_tenant({"tenant_id": "eur"}, "eur").tenant_id == "eur"

    def test_user_cannot_cross_tenants(self):
        with pytest.raises(HTTPException) as exc:
            resolve_tenant({"tenant_id": "eur", "role": "b2b_user"}, "km")
        assert exc.value.status_code == 403

    def test_admin_may_switch(self):
        tenant = resolve_tenant({"tenant_id": "eur", "role": "admin"}, "km")
        assert (tenant.tenant_id, tenant.currency, tenant.is_admin) == ("km", "KM", True)

    def test_cross_tenant_request_denied(self, client, auth, buyer):
        assert client.get("/api/products", headers=auth(buyer, "km")).status_code == 403
        assert client.get("/api/products?tenant=km", headers=auth(buyer)).status_code == 403

    def test_unknown_tenant(self, client, auth, buyer):
        assert client.get("/api/products", headers=auth(buyer, "usd")).status_code == 400

    def test_admin_sees_km_storefront(self, client, auth, admin, make_product):
        make_product(price_km="19.50")
        [view] = client.get("/api/products", headers=auth(admin, "km")).json()
        assert view["currency"] == "KM"
        assert view["price"] == "19.50"
