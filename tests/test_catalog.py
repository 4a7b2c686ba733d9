from decimal import Decimal

import pytest

import catalog
from errors import ConflictError, DuplicateKeysError, ValidationError


class TestPricing:
    def test_eur_price(self):
        assert catalog.tenant_price({"price": "10.00", "price_km": "19.50"}, "eur") == Decimal("10.00")

    def test_km_price(self):
        assert catalog.tenant_price({"price": "10.00", "price_km": "19.50"}, "km") == Decimal("19.50")

    def test_km_falls_back_to_base_price(self):
        assert catalog.tenant_price({"price": "10.00", "price_km": None}, "km") == Decimal("10.00")

    def test_custom_price_wins(self):
        assert catalog.tenant_price({"price": "10.00"}, "eur", "7.5") == Decimal("7.50")


class TestStorefront:
    def test_listing_hides_cost_columns(self, db, make_product):
        make_product(purchase_price="4.00", price_km="19.50")
        [view] = catalog.list_products(db, "eur", "EUR")
        assert "purchase_price" not in view
        assert "price_km" not in view
        assert view["currency"] == "EUR"
        assert view["stock_count"] == 5
        assert view["is_custom_pricing"] is False

    def test_filters(self, db, make_product):
        make_product("WIN-11", "Windows 11 Pro", price="29.00", region="EU")
        make_product("OFF-MAC", "Office for Mac", price="99.00", platform="Mac")

        assert [p["sku"] for p in catalog.list_products(db, region="EU")] == ["WIN-11"]
        assert [p["sku"] for p in catalog.list_products(db, platform="Mac")] == ["OFF-MAC"]
        assert [p["sku"] for p in catalog.list_products(db, search="windows")] == ["WIN-11"]
        assert [p["sku"] for p in catalog.list_products(db, price_max=Decimal("50"))] == ["WIN-11"]
        assert len(catalog.list_products(db, region="all")) == 2

    def test_search_treats_input_literally(self, db, make_product):
        make_product("OFF-1", "Office (2021)")
        assert len(catalog.list_products(db, search="(2021")) == 1

    def test_hidden_product_not_listed(self, db, buyer, make_product):
        product = make_product()
        catalog.set_user_pricing(db, buyer["id"], product["id"], is_visible=False)

        assert catalog.list_products(db, user_id=buyer["id"]) == []
        assert len(catalog.list_products(db)) == 1

    def test_inactive_product_not_listed(self, db, make_product):
        product = make_product()
        catalog.delete_product(db, product["id"])
        assert catalog.list_products(db) == []

    def test_api_lists_in_user_tenant(self, client, auth, make_user, make_product):
        make_product(price="10.00", price_km="19.50")
        user = make_user("mostar", tenant_id="km")
        [view] = client.get("/api/products", headers=auth(user)).json()
        assert view["price"] == "19.50"
        assert view["currency"] == "KM"


    def test_price_filter_reaches_older_products(self, client, db, auth, buyer, make_product):
        cheap = make_product("CHEAP-1", "Budget Antivirus", price="1.00", keys=0)
        for i in range(200):
            catalog.create_product(db, {"sku": f"BULK-{i:03d}", "name": f"Bulk {i}", "price": "50.00"})

        resp = client.get("/api/products", params={"price_max": "5"}, headers=auth(buyer))
        assert [p["id"] for p in resp.json()] == [cheap["id"]]
        assert len(client.get("/api/products", headers=auth(buyer)).json()) == 201

    def test_pagination_after_filters(self, db, buyer, make_product):
        products = [make_product(f"P-{i}", f"Product {i}", keys=0) for i in range(5)]
        catalog.set_user_pricing(db, buyer["id"], products[0]["id"], is_visible=False)
        visible = catalog.list_products(db, user_id=buyer["id"])
        assert len(visible) == 4

        page = catalog.list_products(db, user_id=buyer["id"], limit=2, offset=1)
        assert [p["id"] for p in page] == [p["id"] for p in visible[1:3]]

    def test_price_filter_uses_custom_price(self, db, buyer, make_product):
        product = make_product(price="50.00", keys=0)
        catalog.set_user_pricing(db, buyer["id"], product["id"], Decimal("4.00"))

        matches = catalog.list_products(db, user_id=buyer["id"], price_max=Decimal("5"))
        assert [p["id"] for p in matches] == [product["id"]]
        assert catalog.list_products(db, price_max=Decimal("5")) == []


class TestProducts:
    def test_duplicate_sku(self, db, make_product):
        make_product()
        with pytest.raises(ConflictError):
            catalog.create_product(db, {"sku": "OFF-2021", "name": "Again", "price": "1.00"})

    def test_update_pricing_rejects_unknown_fields(self, db, make_product):
        product = make_product()
        with pytest.raises(ValidationError):
            catalog.update_pricing(db, product["id"], {"name": "nope"})

    def test_update_pricing(self, db, make_product):
        product = make_product()
        updated = catalog.update_pricing(db, product["id"], {"price_km": Decimal("21.00")})
        assert updated["price_km"] == "21.00"
        assert updated["price"] == "10.00"

    def test_toggle_status(self, db, make_product):
        product = make_product()
        assert catalog.toggle_status(db, product["id"])["is_active"] is False
        assert catalog.toggle_status(db, product["id"])["is_active"] is True


class TestLicenseKeys:
    def test_parse_keys_trims_and_dedupes(self):
        assert catalog.parse_keys(" AAA \n\nBBB\nAAA\n") == ["AAA", "BBB"]

    def test_add_and_stats(self, db, make_product):
        product = make_product(keys=0)
        result = catalog.add_keys(db, product["id"], "K1\nK2\nK3")
        assert result == {"added": 3, "duplicates": []}
        assert catalog.key_stats(db, product["id"]) == {
            "product_id": product["id"], "total": 3, "used": 0, "available": 3,
        }

    def test_duplicates_rejected(self, db, make_product):
        product = make_product(keys=0)
        catalog.add_keys(db, product["id"], ["K1"])
        with pytest.raises(DuplicateKeysError) as exc:
            catalog.add_keys(db, product["id"], ["K1", "K2"])
        assert exc.value.extra["duplicates"] == ["K1"]
        assert catalog.key_stats(db, product["id"])["total"] == 1

    def test_duplicates_skipped_on_request(self, db, make_product):
        product = make_product(keys=0)
        catalog.add_keys(db, product["id"], ["K1"])
        result = catalog.add_keys(db, product["id"], ["K1", "K2"], ignore_duplicates=True)
        assert result == {"added": 1, "duplicates": ["K1"]}

    def test_empty_import(self, db, make_product):
        product = make_product(keys=0)
        with pytest.raises(ValidationError):
            catalog.add_keys(db, product["id"], "\n  \n")

    def test_claim_until_sold_out(self, db, make_product):
        product = make_product(keys=2)
        first = catalog.claim_key(db, product["id"], "u1", "o1")
        second = catalog.claim_key(db, product["id"], "u1", "o1")
        assert first["_id"] != second["_id"]
        assert catalog.get_available_key(db, product["id"]) is None
        assert catalog.claim_key(db, product["id"], "u1", "o1") is None

    def test_release_only_for_owning_order(self, db, make_product):
        product = make_product(keys=1)
        key = catalog.claim_key(db, product["id"], "u1", "o1")
        catalog.release_key(db, key["_id"], "other-order")
        assert catalog.product_stock(db, product["id"]) == 0
        catalog.release_key(db, key["_id"], "o1")
        assert catalog.product_stock(db, product["id"]) == 1

    def test_used_key_cannot_be_removed(self, db, make_product):
        product = make_product(keys=1)
        key = catalog.claim_key(db, product["id"], "u1", "o1")
        with pytest.raises(ConflictError):
            catalog.remove_key(db, str(key["_id"]))
