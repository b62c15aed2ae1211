"""Tests for the FastAPI routes."""

import json

import pytest

import order_store
from conftest import auth_headers, checkout_payload


@pytest.fixture
def placed_order(client, customer, shop, product, stripe_sessions):
    response = client.post("/api/stripe/create-checkout-session", json=checkout_payload(shop, product),
                           headers=auth_headers(customer))
    assert response.status_code == 200
    return response.json()


class TestHealthCheck:
    def test_root(self, client):
        assert client.get("/").json()["status"] == "ok"

    def test_health(self, client):
        data = client.get("/api/health").json()
        assert data == {"status": "ok", "environment": "development"}


class TestDelivery:
    def test_calculate_fee(self, client):
        response = client.post("/api/delivery/calculate-fee", json={"postalCode": "h2x 1y4"})
        assert response.status_code == 200
        assert response.json() == {"postalCode": "H2X1Y4", "fee": 800, "matchType": "prefix", "matchedPrefix": "H2X"}

    def test_unknown_postal_code(self, client):
        response = client.post("/api/delivery/calculate-fee", json={"postalCode": "V6B 1A1"})
        assert response.status_code == 404
        assert response.json()["fee"] is None

    def test_missing_postal_code(self, client):
        response = client.post("/api/delivery/calculate-fee", json={})
        assert response.status_code == 400
        assert response.json()["details"][0].startswith("postalCode")

    def test_check_area(self, client):
        assert client.get("/api/delivery/check-area/H3G1A1").json()["inDeliveryArea"] is True
        assert client.get("/api/delivery/check-area/V6B1A1").json()["inDeliveryArea"] is False

    def test_fees_and_stats(self, client):
        fees = client.get("/api/delivery/fees").json()
        assert fees["count"] == len(fees["fees"])
        assert client.get("/api/delivery/stats").json()["count"] == fees["count"]

    def test_search_needs_two_characters(self, client):
        assert client.get("/api/delivery/search/H").status_code == 400
        assert client.get("/api/delivery/search/H2").json()["count"] > 1


class TestAuthentication:
    def test_missing_token(self, client):
        response = client.get("/api/orders")
        assert response.status_code == 401
        assert response.json() == {"error": "Access token required"}

    def test_bad_token(self, client):
        response = client.get("/api/orders", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_profile(self, client, customer):
        data = client.get("/api/auth/profile", headers=auth_headers(customer)).json()
        assert data["id"] == str(customer["_id"])
        assert data["role"] == "customer"


class TestProducts:
    def test_owner_creates_in_own_shop(self, client, owner, shop):
        response = client.post("/api/products", headers=auth_headers(owner), json={
            "name": "Rose Box",
            "variants": [{"tierName": "standard", "price": 3000, "stock": 4}],
        })
        assert response.status_code == 201
        assert response.json()["shopId"] == str(shop["_id"])

    def test_needs_a_price(self, client, owner, shop):
        response = client.post("/api/products", headers=auth_headers(owner), json={"name": "Free Box"})
        assert response.status_code == 400

    def test_customer_cannot_create(self, client, customer, shop):
        response = client.post("/api/products", headers=auth_headers(customer), json={"name": "X"})
        assert response.status_code == 403

    def test_admin_must_name_shop(self, client, admin, shop):
        body = {"name": "Tulips", "price": {"standard": 1500}}
        assert client.post("/api/products", headers=auth_headers(admin), json=body).status_code == 400
        body["shopId"] = str(shop["_id"])
        assert client.post("/api/products", headers=auth_headers(admin), json=body).status_code == 201

    def test_update_other_shop_product(self, client, other_owner, other_shop, product):
        response = client.put(f"/api/products/{product['_id']}", headers=auth_headers(other_owner),
                              json={"name": "Stolen"})
        assert response.status_code == 404

    def test_update_own_product(self, client, owner, product):
        response = client.put(f"/api/products/{product['_id']}", headers=auth_headers(owner),
                              json={"name": "Summer Bouquet", "isBestSeller": True})
        assert response.status_code == 200
        assert response.json()["name"] == "Summer Bouquet"
        assert response.json()["variants"][0]["price"] == 2500

    def test_soft_delete_hides_product(self, client, owner, shop, product):
        response = client.delete(f"/api/products/{product['_id']}", headers=auth_headers(owner))
        assert response.status_code == 200
        assert client.get(f"/api/products/{product['_id']}").status_code == 404
        assert client.get(f"/api/products/shop/{shop['_id']}").json()["total"] == 0

    def test_stock_edit(self, client, owner, product):
        response = client.patch(f"/api/products/{product['_id']}/stock", headers=auth_headers(owner),
                                json={"tierName": "deluxe", "stock": 12})
        assert response.status_code == 200
        assert response.json()["variants"][1]["stock"] == 12
        bad = client.patch(f"/api/products/{product['_id']}/stock", headers=auth_headers(owner),
                           json={"tierName": "deluxe", "stock": -1})
        assert bad.status_code == 400


class TestProductListing:
    @pytest.fixture
    def catalogue(self, shop, make_product):
        return {
            "cheap": make_product(shop, name="Daisies", price=1500, occasions=["thanks"], color="white"),
            "mid": make_product(shop, name="Roses", price=4000, isBestSeller=True, color="red"),
            "sold_out": make_product(shop, name="Orchid", price=6000, variants=[
                {"tierName": "standard", "price": 6000, "stock": 0, "isActive": True},
            ]),
        }

    def names(self, client, shop, query=""):
        items = client.get(f"/api/products/shop/{shop['_id']}{query}").json()["items"]
        return sorted(p["name"] for p in items)

    def test_all_active(self, client, shop, catalogue):
        assert self.names(client, shop) == ["Daisies", "Orchid", "Roses"]

    def test_filters(self, client, shop, catalogue):
        assert self.names(client, shop, "?occasions=thanks") == ["Daisies"]
        assert self.names(client, shop, "?color=red,white") == ["Daisies", "Roses"]
        assert self.names(client, shop, "?bestSeller=true") == ["Roses"]
        assert self.names(client, shop, "?minPrice=3500&maxPrice=5000") == ["Roses"]
        assert self.names(client, shop, "?inStock=false") == ["Orchid"]
        assert self.names(client, shop, "?inStock=true") == ["Daisies", "Roses"]

    def test_inactive_shop(self, client, db, shop, catalogue):
        db["shop"].update_one({"_id": shop["_id"]}, {"$set": {"isActive": False}})
        assert client.get(f"/api/products/shop/{shop['_id']}").status_code == 404


class TestOrderAccess:
    def test_isolation(self, client, placed_order, customer, other_customer, owner, other_owner, other_shop, admin):
        url = f"/api/orders/{placed_order['orderId']}"
        assert client.get(url, headers=auth_headers(customer)).status_code == 200
        assert client.get(url, headers=auth_headers(other_customer)).status_code == 404
        assert client.get(url, headers=auth_headers(other_owner)).status_code == 404
        assert client.get(url, headers=auth_headers(owner)).status_code == 200
        assert client.get(url, headers=auth_headers(admin)).status_code == 200

    def test_hidden_and_missing_look_alike(self, client, placed_order, other_customer):
        hidden = client.get(f"/api/orders/{placed_order['orderId']}", headers=auth_headers(other_customer))
        missing = client.get("/api/orders/64b000000000000000000000", headers=auth_headers(other_customer))
        assert hidden.status_code == missing.status_code == 404
        assert hidden.json() == missing.json()

    def test_listing_is_scoped(self, client, placed_order, customer, other_customer, owner, other_owner, other_shop):
        assert client.get("/api/orders", headers=auth_headers(customer)).json()["total"] == 1
        assert client.get("/api/orders", headers=auth_headers(other_customer)).json()["total"] == 0
        assert client.get("/api/orders", headers=auth_headers(owner)).json()["total"] == 1
        assert client.get("/api/orders", headers=auth_headers(other_owner)).json()["total"] == 0

    def test_shop_listing(self, client, placed_order, shop, owner, other_owner, other_shop, customer):
        url = f"/api/orders/shop/{shop['_id']}"
        assert client.get(url, headers=auth_headers(owner)).json()["total"] == 1
        assert client.get(url, headers=auth_headers(other_owner)).status_code == 404
        assert client.get(url, headers=auth_headers(customer)).status_code == 403

    def test_status_updates(self, client, placed_order, owner, customer):
        url = f"/api/orders/{placed_order['orderId']}/status"
        assert client.put(url, json={"status": "confirmed"}, headers=auth_headers(customer)).status_code == 403
        response = client.put(url, json={"status": "confirmed"}, headers=auth_headers(owner))
        assert response.status_code == 200
        assert response.json()["status"] == "confirmed"
        bad = client.put(url, json={"status": "pending"}, headers=auth_headers(owner))
        assert bad.status_code == 400
        assert "confirmed" in bad.json()["error"]

    def test_print(self, client, placed_order, owner, customer):
        url = f"/api/orders/{placed_order['orderId']}/print"
        assert client.post(url, headers=auth_headers(owner)).status_code == 202
        assert client.post(url, headers=auth_headers(customer)).status_code == 403

    def test_direct_order(self, client, customer, shop, product):
        response = client.post("/api/orders", json=checkout_payload(shop, product), headers=auth_headers(customer))
        assert response.status_code == 201
        assert response.json()["source"] == "direct"

    def test_owner_cannot_place_orders(self, client, owner, shop, product):
        response = client.post("/api/orders", json=checkout_payload(shop, product), headers=auth_headers(owner))
        assert response.status_code == 403


class TestManualPayment:
    @pytest.fixture
    def direct_order(self, client, customer, shop, product):
        response = client.post("/api/orders", json=checkout_payload(shop, product), headers=auth_headers(customer))
        return response.json()

    def test_owner_marks_paid(self, client, direct_order, owner):
        response = client.put(f"/api/orders/{direct_order['id']}/payment", json={"status": "succeeded"},
                              headers=auth_headers(owner))
        assert response.status_code == 200
        payment = response.json()["payment"]
        assert payment["status"] == "succeeded"
        assert payment["paidAt"] is not None
        assert response.json()["status"] == "pending"

    def test_failure_reason(self, client, direct_order, admin):
        response = client.put(f"/api/orders/{direct_order['id']}/payment",
                              json={"status": "failed", "failureReason": "Cheque bounced"}, headers=auth_headers(admin))
        payment = response.json()["payment"]
        assert payment["status"] == "failed"
        assert payment["failureReason"] == "Cheque bounced"

    def test_roles_and_visibility(self, client, direct_order, customer, other_owner, other_shop):
        url = f"/api/orders/{direct_order['id']}/payment"
        assert client.put(url, json={"status": "succeeded"}, headers=auth_headers(customer)).status_code == 403
        assert client.put(url, json={"status": "succeeded"}, headers=auth_headers(other_owner)).status_code == 404

    def test_checkout_orders_are_left_to_the_gateway(self, client, placed_order, owner, db):
        url = f"/api/orders/{placed_order['orderId']}/payment"
        response = client.put(url, json={"status": "succeeded"}, headers=auth_headers(owner))
        assert response.status_code == 400
        assert order_store.get(placed_order["orderId"])["payment"]["status"] == "pending"

    def test_only_pending_payments_change(self, client, direct_order, owner):
        url = f"/api/orders/{direct_order['id']}/payment"
        assert client.put(url, json={"status": "succeeded"}, headers=auth_headers(owner)).status_code == 200
        again = client.put(url, json={"status": "failed"}, headers=auth_headers(owner))
        assert again.status_code == 400
        assert order_store.get(direct_order["id"])["payment"]["status"] == "succeeded"

    def test_unknown_status(self, client, direct_order, owner):
        response = client.put(f"/api/orders/{direct_order['id']}/payment", json={"status": "refunded"},
                              headers=auth_headers(owner))
        assert response.status_code == 400


class TestStripeRoutes:
    def test_checkout_validation_errors(self, client, customer, shop, product, stripe_sessions):
        payload = checkout_payload(shop, product)
        payload["delivery"]["time"] = "25:99"
        response = client.post("/api/stripe/create-checkout-session", json=payload, headers=auth_headers(customer))
        assert response.status_code == 400
        assert any(d.startswith("delivery.time") for d in response.json()["details"])

    def test_checkout_result(self, placed_order):
        assert set(placed_order) == {"orderId", "orderNumber", "sessionId", "url"}

    def test_poll_session(self, client, placed_order, customer, other_customer):
        url = f"/api/stripe/checkout-session/{placed_order['sessionId']}"
        data = client.get(url, headers=auth_headers(customer)).json()
        assert data["order"]["id"] == placed_order["orderId"]
        assert data["session"]["id"] == placed_order["sessionId"]
        assert client.get(url, headers=auth_headers(other_customer)).status_code == 404

    def test_webhook_confirms_order(self, client, placed_order, customer):
        body = json.dumps({"id": "evt_1", "type": "checkout.session.completed", "data": {"object": {
            "id": placed_order["sessionId"], "payment_intent": "pi_1", "amount_total": 5749, "currency": "cad",
        }}})
        response = client.post("/api/stripe/webhook", content=body, headers={"Content-Type": "application/json"})
        assert response.status_code == 200
        assert response.json()["outcome"] == "confirmed"
        order = client.get(f"/api/orders/{placed_order['orderId']}", headers=auth_headers(customer)).json()
        assert order["status"] == "confirmed"

    def test_webhook_bad_signature(self, client, production):
        body = json.dumps({"id": "evt_1", "type": "customer.created", "data": {"object": {}}})
        response = client.post("/api/stripe/webhook", content=body, headers={"Stripe-Signature": "t=1,v1=bad"})
        assert response.status_code == 400


class TestContact:
    def message(self, shop):
        return {"name": "Luc", "email": "luc@fleurs.ca", "subject": "Wedding", "message": "Do you do weddings?",
                "shopId": str(shop["_id"])}

    def test_inbox_flow(self, client, shop, owner, other_owner, other_shop):
        created = client.post("/api/contact", json=self.message(shop))
        assert created.status_code == 201
        contact_id = created.json()["id"]

        inbox = client.get("/api/contact", headers=auth_headers(owner)).json()
        assert inbox["total"] == 1
        assert client.get("/api/contact", headers=auth_headers(other_owner)).json()["total"] == 0

        url = f"/api/contact/{contact_id}/status"
        assert client.patch(url, json={"status": "read"}, headers=auth_headers(other_owner)).status_code == 404
        read = client.patch(url, json={"status": "read"}, headers=auth_headers(owner))
        assert read.status_code == 200
        assert read.json()["readBy"] == str(owner["_id"])
        assert client.patch(url, json={"status": "new"}, headers=auth_headers(owner)).status_code == 400

    def test_unknown_shop(self, client, shop):
        body = dict(self.message(shop), shopId="64b000000000000000000000")
        assert client.post("/api/contact", json=body).status_code == 404

    def test_customers_cannot_read_inbox(self, client, customer):
        assert client.get("/api/contact", headers=auth_headers(customer)).status_code == 403


class TestShops:
    def test_public_listing(self, client, shop, other_shop):
        assert client.get("/api/shops").json()["total"] == 2
        assert client.get(f"/api/shops/{shop['_id']}").json()["name"] == shop["name"]

    def test_my_shops(self, client, owner, shop, other_shop):
        shops = client.get("/api/shops/my", headers=auth_headers(owner)).json()
        assert [s["id"] for s in shops] == [str(shop["_id"])]

    def test_admin_creates_shop(self, client, admin, customer, owner, shop):
        body = {"name": "Nouveau", "ownerId": str(customer["_id"]), "taxRate": 0.14975}
        assert client.post("/api/shops", json=body, headers=auth_headers(admin)).status_code == 201
        assert client.post("/api/shops", json=body, headers=auth_headers(admin)).status_code == 400
        taken = dict(body, ownerId=str(owner["_id"]))
        assert client.post("/api/shops", json=taken, headers=auth_headers(admin)).status_code == 400

    def test_owner_cannot_create_shop(self, client, owner):
        body = {"name": "Mine", "ownerId": str(owner["_id"])}
        assert client.post("/api/shops", json=body, headers=auth_headers(owner)).status_code == 403

    def test_owner_updates_own_shop(self, client, owner, customer, shop, other_shop):
        url = f"/api/shops/{shop['_id']}"
        response = client.put(url, json={"taxRate": 0.15}, headers=auth_headers(owner))
        assert response.status_code == 200
        assert response.json()["taxRate"] == 0.15
        assert client.put(url, json={"ownerId": str(customer["_id"])}, headers=auth_headers(owner)).status_code == 400
        other = f"/api/shops/{other_shop['_id']}"
        assert client.put(other, json={"taxRate": 0.1}, headers=auth_headers(owner)).status_code == 404

    def test_soft_delete(self, client, owner, shop):
        assert client.delete(f"/api/shops/{shop['_id']}", headers=auth_headers(owner)).status_code == 200
        assert client.get(f"/api/shops/{shop['_id']}").status_code == 404


class TestUsers:
    def test_admin_lists_users(self, client, admin, customer, owner):
        data = client.get("/api/auth/users?role=customer", headers=auth_headers(admin)).json()
        assert [u["id"] for u in data["items"]] == [str(customer["_id"])]
        assert client.get("/api/auth/users", headers=auth_headers(owner)).status_code == 403

    def test_role_change(self, client, admin, customer):
        url = f"/api/auth/users/{customer['_id']}/role"
        response = client.put(url, json={"role": "shop_owner"}, headers=auth_headers(admin))
        assert response.status_code == 200
        assert response.json()["role"] == "shop_owner"
        assert client.put(url, json={"role": "emperor"}, headers=auth_headers(admin)).status_code == 400

    def test_self_lockout(self, client, admin):
        role = client.put(f"/api/auth/users/{admin['_id']}/role", json={"role": "customer"},
                          headers=auth_headers(admin))
        assert role.status_code == 403
        gone = client.delete(f"/api/auth/users/{admin['_id']}", headers=auth_headers(admin))
        assert gone.status_code == 403

    def test_deactivated_user_is_locked_out(self, client, admin, customer):
        assert client.delete(f"/api/auth/users/{customer['_id']}", headers=auth_headers(admin)).status_code == 200
        response = client.get("/api/auth/profile", headers=auth_headers(customer))
        assert response.status_code == 403
        assert response.json()["error"] == "Account deactivated"
