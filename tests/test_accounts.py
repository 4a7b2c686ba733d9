import pytest
from jose import jwt

import accounts
import config
from errors import PermissionDenied, ValidationError


@pytest.fixture
def company(make_user):
    return make_user("acme-hq", tenant_id="km")


def branch_payload(username="acme-mostar"):
    return {
        "username": username, "email": f"{username}@example.com", "password": "branch-pass",
        "branch_name": "Mostar office", "branch_code": "MO-01",
    }


class TestBranches:
    def test_company_creates_branch(self, client, auth, company):
        resp = client.post(f"/api/users/{company['id']}/branches", json=branch_payload(),
                           headers=auth(company))

        assert resp.status_code == 201
        branch = resp.json()["data"]
        assert branch["branch_type"] == "branch"
        assert branch["parent_company_id"] == company["id"]
        assert branch["branch_name"] == "Mostar office"
        assert branch["tenant_id"] == "km"
        assert "hashed_password" not in branch

    def test_branch_can_log_in(self, client, auth, company):
        client.post(f"/api/users/{company['id']}/branches", json=branch_payload(), headers=auth(company))
        resp = client.post("/auth/login", data={"username": "acme-mostar", "password": "branch-pass"})
        assert resp.status_code == 200

    def test_other_customer_cannot_create(self, client, auth, company, make_user):
        outsider = make_user("outsider")
        resp = client.post(f"/api/users/{company['id']}/branches", json=branch_payload(),
                           headers=auth(outsider))
        assert resp.status_code == 403

    def test_admin_can_create(self, db, admin, company):
        branch = accounts.create_branch(db, db["user"].find_one({"username": "backoffice"}),
                                        company["id"], **branch_payload())
        assert branch["parent_company_id"] == company["id"]

    def test_no_branches_under_a_branch(self, db, company):
        owner = db["user"].find_one({"username": "acme-hq"})
        branch = accounts.create_branch(db, owner, company["id"], **branch_payload())
        branch_user = db["user"].find_one({"username": branch["username"]})

        with pytest.raises(ValidationError):
            accounts.create_branch(db, branch_user, branch["id"], **branch_payload("acme-sub"))

    def test_listing_visible_to_company_and_its_branches(self, client, auth, db, company, make_user):
        client.post(f"/api/users/{company['id']}/branches", json=branch_payload(), headers=auth(company))
        client.post(f"/api/users/{company['id']}/branches", json=branch_payload("acme-zenica"),
                    headers=auth(company))
        url = f"/api/users/{company['id']}/branches"

        names = [b["username"] for b in client.get(url, headers=auth(company)).json()["data"]]
        assert names == ["acme-mostar", "acme-zenica"]

        branch = accounts.get_user(db, str(db["user"].find_one({"username": "acme-mostar"})["_id"]))
        assert len(client.get(url, headers=auth(branch)).json()["data"]) == 2

        assert client.get(url, headers=auth(make_user("stranger"))).status_code == 403

    def test_list_denied_for_unrelated_user(self, db, company, make_user):
        stranger = db["user"].find_one({"username": make_user("stranger")["username"]})
        with pytest.raises(PermissionDenied):
            accounts.list_branches(db, stranger, company["id"])


class TestTokens:
    def test_token_carries_only_subject_and_expiry(self, client, buyer):
        token = client.post("/auth/login", data={"username": "acme", "password": "secret-pass"}).json()
        claims = jwt.decode(token["access_token"], config.SECRET_KEY, algorithms=[config.ALGORITHM])
        assert set(claims) == {"sub", "exp"}
        assert claims["sub"] == buyer["id"]


class TestDefaultTenantSetting:
    def test_normalizes_case(self):
        assert config.parse_tenant(" EUR ") == "eur"
        assert config.parse_tenant("Km") == "km"

    def test_rejects_unknown(self):
        with pytest.raises(ValueError):
            config.parse_tenant("usd")
