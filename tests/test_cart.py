import cart
import catalog


class TestCart:
    def test_adding_same_product_merges_quantity(self, client, auth, buyer, make_product):
        product = make_product()
        client.post("/api/cart", json={"product_id": product["id"], "quantity": 1}, headers=auth(buyer))
        resp = client.post("/api/cart", json={"product_id": product["id"], "quantity": 2},
                           headers=auth(buyer))

        assert resp.status_code == 201
        assert resp.json()["quantity"] == 3
        lines = client.get("/api/cart", headers=auth(buyer)).json()
        assert len(lines) == 1
        assert lines[0]["quantity"] == 3
        assert lines[0]["product"]["price"] == "10.00"
        assert lines[0]["product"]["stock_count"] == 5

    def test_summary(self, client, auth, buyer, make_product):
        first = make_product("A-1", "Alpha", price="10.00")
        second = make_product("B-1", "Beta", price="2.50")
        client.post("/api/cart", json={"product_id": first["id"], "quantity": 2}, headers=auth(buyer))
        client.post("/api/cart", json={"product_id": second["id"], "quantity": 1}, headers=auth(buyer))

        summary = client.get("/api/cart/summary", headers=auth(buyer)).json()
        assert summary["item_count"] == 3
        assert summary["total_amount"] == "22.50"
        assert summary["currency"] == "EUR"

    def test_unknown_product(self, client, auth, buyer):
        resp = client.post("/api/cart", json={"product_id": "5f0000000000000000000000"},
                           headers=auth(buyer))
        assert resp.status_code == 404

    def test_inactive_product_rejected(self, client, db, auth, buyer, make_product):
        product = make_product()
        catalog.toggle_status(db, product["id"])
        resp = client.post("/api/cart", json={"product_id": product["id"]}, headers=auth(buyer))
        assert resp.status_code == 400

    def test_quantity_below_one_rejected(self, client, auth, buyer, make_product):
        product = make_product()
        item = client.post("/api/cart", json={"product_id": product["id"]}, headers=auth(buyer)).json()
        resp = client.patch(f"/api/cart/{item['id']}", json={"quantity": 0}, headers=auth(buyer))
        assert resp.status_code == 400

    def test_update_and_remove(self, client, auth, buyer, make_product):
        product = make_product()
        item = client.post("/api/cart", json={"product_id": product["id"]}, headers=auth(buyer)).json()

        resp = client.patch(f"/api/cart/{item['id']}", json={"quantity": 4}, headers=auth(buyer))
        assert resp.json()["item"]["quantity"] == 4

        assert client.delete(f"/api/cart/{item['id']}", headers=auth(buyer)).status_code == 200
        assert client.get("/api/cart", headers=auth(buyer)).json() == []

    def test_cannot_touch_other_users_lines(self, client, auth, buyer, make_user, make_product):
        product = make_product()
        item = client.post("/api/cart", json={"product_id": product["id"]}, headers=auth(buyer)).json()
        other = make_user("other")
        assert client.delete(f"/api/cart/{item['id']}", headers=auth(other)).status_code == 404

    def test_clear(self, client, auth, buyer, make_product):
        for sku in ("A-1", "B-1"):
            product = make_product(sku, sku)
            client.post("/api/cart", json={"product_id": product["id"]}, headers=auth(buyer))
        resp = client.delete("/api/cart", headers=auth(buyer))
        assert resp.json()["items_removed"] == 2

    def test_deactivated_product_drops_out_of_cart(self, db, buyer, make_product):
        product = make_product()
        cart.add_item(db, buyer["id"], "eur", product["id"], 1)
        catalog.toggle_status(db, product["id"])
        assert cart.list_items(db, buyer["id"], "eur", "EUR") == []

    def test_carts_are_per_tenant(self, db, admin, make_product):
        product = make_product(price_km="19.00")
        cart.add_item(db, admin["id"], "eur", product["id"], 1)
        cart.add_item(db, admin["id"], "km", product["id"], 2)

        assert cart.summary(db, admin["id"], "eur", "EUR")["total_amount"] == "10.00"
        assert cart.summary(db, admin["id"], "km", "KM")["total_amount"] == "38.00"
