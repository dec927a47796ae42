"""Tests for the order ledger: creation checks, payment reconciliation, fulfillment status."""

import pytest

import cart
import database
import orders
from conftest import billing, make_coupon, make_product, order_payload
from errors import ConflictError, NotFoundError, ValidationError


def snapshot(product_id, **kwargs):
    return orders.OrderSnapshot(**order_payload(product_id, **kwargs))


class TestCreateOrder:
    def test_creates_pending_processing_order(self, customer, product):
        order, sends = orders.create_order(customer.id, snapshot(product))

        assert sends == []
        assert order["paymentStatus"] == "pending"
        assert order["orderStatus"] == "processing"
        assert order["user"] == customer.id
        assert order["total"] == 1180.0
        assert order["items"][0]["name"] == "Custom Portrait"
        assert order["shippingDetails"] == {
            "name": "Asha Rao",
            "address": "12 MG Road",
            "city": "Bengaluru",
            "state": "KA",
            "zipCode": "560001",
            "country": "IN",
        }

    def test_duplicate_intent_conflicts(self, customer, product):
        orders.create_order(customer.id, snapshot(product, intent_id="pi_dup"))
        with pytest.raises(ConflictError):
            orders.create_order(customer.id, snapshot(product, intent_id="pi_dup"))
        assert database.db["order"].count_documents({"paymentIntentId": "pi_dup"}) == 1

    def test_unique_index_backs_the_check(self, customer, product, monkeypatch):
        orders.create_order(customer.id, snapshot(product, intent_id="pi_race"))
        # simulate a concurrent request that passed the up-front lookup
        real_find_one = type(database.db["order"]).find_one

        def blind_find_one(self, filter=None, *args, **kwargs):
            if self.name == "order" and filter == {"paymentIntentId": "pi_race"}:
                return None
            return real_find_one(self, filter, *args, **kwargs)

        monkeypatch.setattr(type(database.db["order"]), "find_one", blind_find_one)
        with pytest.raises(ConflictError):
            orders.create_order(customer.id, snapshot(product, intent_id="pi_race"))

    def test_total_must_match(self, customer, product):
        with pytest.raises(ValidationError) as exc:
            orders.create_order(customer.id, snapshot(product, gst=180.0, total=1200.0))
        assert exc.value.reason == "total_mismatch"
        assert database.db["order"].count_documents({}) == 0

    def test_one_cent_total_mismatch_rejected(self, customer):
        odd = make_product(name="Odd", price=1100.01)
        with pytest.raises(ValidationError) as exc:
            orders.create_order(customer.id, snapshot(odd, price=1100.01, quantity=1, gst=198.0, total=1298.02))
        assert exc.value.reason == "total_mismatch"

    def test_gst_must_match_rate(self, customer, product):
        with pytest.raises(ValidationError) as exc:
            orders.create_order(customer.id, snapshot(product, gst=0.0))
        assert exc.value.reason == "gst_mismatch"
        assert database.db["order"].count_documents({}) == 0

    def test_subtotal_must_match_items(self, customer, product):
        payload = order_payload(product)
        payload["subtotal"] = 900.0
        payload["total"] = 900.0 + payload["gst"]
        with pytest.raises(ValidationError) as exc:
            orders.create_order(customer.id, orders.OrderSnapshot(**payload))
        assert exc.value.reason == "subtotal_mismatch"

    def test_discount_requires_coupon(self, customer, product):
        with pytest.raises(ValidationError) as exc:
            orders.create_order(customer.id, snapshot(product, discount=50.0))
        assert exc.value.reason == "discount_without_coupon"

    def test_coupon_scenario(self, customer, product):
        make_coupon("CAP80", value=10, maxDiscountAmount=80)

        order, _ = orders.create_order(customer.id, snapshot(
            product, gst=180.0, discount=80.0, coupon={"code": "cap80", "discount": 80.0}, total=1100.0))

        assert order["total"] == 1100.0
        assert order["coupon"] == {"code": "CAP80", "discount": 80.0}
        assert database.db["coupon"].find_one({"code": "CAP80"})["currentUses"] == 1

    def test_coupon_discount_recomputed(self, customer, product):
        make_coupon("CAP80", value=10, maxDiscountAmount=80)
        with pytest.raises(ValidationError) as exc:
            orders.create_order(customer.id, snapshot(
                product, gst=180.0, discount=100.0, coupon={"code": "CAP80", "discount": 100.0}))
        assert exc.value.reason == "discount_mismatch"
        assert database.db["coupon"].find_one({"code": "CAP80"})["currentUses"] == 0

    def test_rejected_coupon(self, customer, product):
        make_coupon("SMALL", minOrderAmount=5000)
        with pytest.raises(ValidationError) as exc:
            orders.create_order(customer.id, snapshot(
                product, discount=100.0, coupon={"code": "SMALL", "discount": 100.0}))
        assert exc.value.reason == "coupon_below_minimum"

    def test_clears_cart(self, customer, product):
        cart.add_item(customer.id, product, 2)
        orders.create_order(customer.id, snapshot(product))
        assert cart.get(customer.id)["items"] == []

    def test_snapshot_survives_price_change(self, customer, product):
        order, _ = orders.create_order(customer.id, snapshot(product))
        database.db["product"].update_one({"_id": database.to_object_id(product)}, {"$set": {"price": 1.0}})
        assert orders.get_order(str(order["_id"]))["items"][0]["price"] == 500.0


class TestPaymentReconciliation:
    def test_success_applies_once(self, customer, product):
        orders.create_order(customer.id, snapshot(product, intent_id="pi_ok"))

        first = orders.reconcile_payment_event("pi_ok", "succeeded")
        second = orders.reconcile_payment_event("pi_ok", "succeeded")

        assert first.status == "applied"
        assert len(first.notify) == 2
        assert second.status == "duplicate"
        assert second.notify == []
        assert database.db["order"].find_one({"paymentIntentId": "pi_ok"})["paymentStatus"] == "succeeded"

    def test_failure_then_success(self, customer, product):
        orders.create_order(customer.id, snapshot(product, intent_id="pi_retry"))

        assert orders.reconcile_payment_event("pi_retry", "failed").status == "applied"
        assert orders.reconcile_payment_event("pi_retry", "succeeded").status == "applied"

    def test_late_failure_after_success_ignored(self, customer, product):
        orders.create_order(customer.id, snapshot(product, intent_id="pi_late"))
        orders.reconcile_payment_event("pi_late", "succeeded")

        result = orders.reconcile_payment_event("pi_late", "failed")
        assert result.status == "ignored"
        assert result.order["paymentStatus"] == "succeeded"

    def test_refund_only_after_success(self, customer, product):
        orders.create_order(customer.id, snapshot(product, intent_id="pi_refund"))
        assert orders.reconcile_payment_event("pi_refund", "refunded").status == "ignored"

        orders.reconcile_payment_event("pi_refund", "succeeded")
        assert orders.reconcile_payment_event("pi_refund", "refunded").status == "applied"
        assert orders.reconcile_payment_event("pi_refund", "succeeded").status == "ignored"

    def test_unknown_intent_is_buffered_not_an_order(self):
        result = orders.reconcile_payment_event("pi_early", "succeeded", "payment_intent.succeeded")

        assert result.status == "buffered"
        assert result.notify == []
        assert database.db["order"].count_documents({}) == 0
        assert database.db["payment_event"].count_documents({"paymentIntentId": "pi_early"}) == 1

    def test_buffered_event_applied_on_create(self, customer, product):
        orders.reconcile_payment_event("pi_early", "succeeded")
        orders.reconcile_payment_event("pi_early", "succeeded")  # provider retry

        order, sends = orders.create_order(customer.id, snapshot(product, intent_id="pi_early"))

        assert order["paymentStatus"] == "succeeded"
        assert len(sends) == 2
        assert database.db["payment_event"].count_documents({"applied": False}) == 0

    def test_unknown_outcome(self):
        with pytest.raises(ValidationError):
            orders.reconcile_payment_event("pi_x", "paid")


class TestOrderStatus:
    def test_forward_path(self, customer, product):
        order, _ = orders.create_order(customer.id, snapshot(product))
        order_id = str(order["_id"])

        designed, changed = orders.update_order_status(order_id, "designed")
        assert changed and designed["orderStatus"] == "designed"
        delivered, changed = orders.update_order_status(order_id, "delivered")
        assert changed and delivered["orderStatus"] == "delivered"

    def test_independent_of_payment(self, customer, product):
        order, _ = orders.create_order(customer.id, snapshot(product, intent_id="pi_ind"))
        orders.update_order_status(str(order["_id"]), "designed")
        orders.reconcile_payment_event("pi_ind", "failed")

        stored = orders.get_order(str(order["_id"]))
        assert stored["orderStatus"] == "designed"
        assert stored["paymentStatus"] == "failed"

    @pytest.mark.parametrize("path, target", [
        ([], "delivered"),
        (["designed", "delivered"], "processing"),
        (["cancelled"], "designed"),
        (["designed", "delivered"], "cancelled"),
    ])
    def test_illegal_transitions(self, customer, product, path, target):
        order, _ = orders.create_order(customer.id, snapshot(product))
        for status in path:
            orders.update_order_status(str(order["_id"]), status)
        with pytest.raises(ValidationError) as exc:
            orders.update_order_status(str(order["_id"]), target)
        assert exc.value.reason == "invalid_transition"

    def test_same_status_is_noop(self, customer, product):
        order, _ = orders.create_order(customer.id, snapshot(product))
        orders.update_order_status(str(order["_id"]), "designed")
        _, changed = orders.update_order_status(str(order["_id"]), "designed")
        assert changed is False

    def test_unknown_status(self, customer, product):
        order, _ = orders.create_order(customer.id, snapshot(product))
        with pytest.raises(ValidationError):
            orders.update_order_status(str(order["_id"]), "shipped")

    def test_missing_order(self):
        with pytest.raises(NotFoundError):
            orders.update_order_status("65f000000000000000000000", "designed")


class TestOrderEndpoints:
    def test_create(self, client, customer, product):
        response = client.post("/orders", headers=customer.headers, json=order_payload(product))
        assert response.status_code == 201
        body = response.json()
        assert body["paymentStatus"] == "pending"
        assert body["user"] == customer.id

    def test_create_rejects_bad_total(self, client, customer, product):
        response = client.post("/orders", headers=customer.headers,
                               json=order_payload(product, gst=180.0, total=1180.5 + 100))
        assert response.status_code == 400
        assert response.json()["reason"] == "total_mismatch"

    def test_create_duplicate_intent(self, client, customer, product):
        client.post("/orders", headers=customer.headers, json=order_payload(product, intent_id="pi_same"))
        response = client.post("/orders", headers=customer.headers, json=order_payload(product, intent_id="pi_same"))
        assert response.status_code == 409

    def test_create_for_other_user_forbidden(self, client, customer, other_customer, product):
        payload = order_payload(product)
        payload["user"] = other_customer.id
        assert client.post("/orders", headers=customer.headers, json=payload).status_code == 403

    def test_missing_billing_is_400(self, client, customer, product):
        payload = order_payload(product)
        del payload["billingDetails"]
        assert client.post("/orders", headers=customer.headers, json=payload).status_code == 400

    def test_owner_and_admin_can_read(self, client, customer, other_customer, admin, product):
        order = client.post("/orders", headers=customer.headers, json=order_payload(product)).json()

        assert client.get(f"/orders/{order['id']}", headers=customer.headers).status_code == 200
        assert client.get(f"/orders/{order['id']}", headers=admin.headers).status_code == 200
        assert client.get(f"/orders/{order['id']}", headers=other_customer.headers).status_code == 403

        mine = client.get(f"/orders/user-orders/{customer.id}", headers=customer.headers).json()
        assert [o["id"] for o in mine] == [order["id"]]
        assert client.get(f"/orders/user-orders/{customer.id}", headers=other_customer.headers).status_code == 403

    def test_admin_listing(self, client, customer, admin, product):
        for n in range(3):
            client.post("/orders", headers=customer.headers, json=order_payload(product, intent_id=f"pi_{n}"))

        page = client.get("/orders", headers=admin.headers, params={"limit": 2}).json()
        assert page["totalOrders"] == 3
        assert page["totalPages"] == 2
        assert len(page["orders"]) == 2

        found = client.get("/orders", headers=admin.headers, params={"search": "asha@"}).json()
        assert found["totalOrders"] == 3
        none = client.get("/orders", headers=admin.headers, params={"status": "delivered"}).json()
        assert none["totalOrders"] == 0

        assert client.get("/orders", headers=customer.headers).status_code == 403

    def test_update_status_emails_once_per_change(self, client, customer, admin, product, mailer):
        order = client.post("/orders", headers=customer.headers, json=order_payload(product)).json()
        url = f"/orders/update-status/{order['id']}"

        assert client.put(url, headers=admin.headers, json={"status": "designed"}).status_code == 200
        assert client.put(url, headers=admin.headers, json={"status": "delivered"}).status_code == 200
        repeat = client.put(url, headers=admin.headers, json={"status": "delivered"})

        assert repeat.status_code == 200
        assert repeat.json()["orderStatus"] == "delivered"
        updates = [m for m in mailer.to(billing()["email"]) if "Status Update" in m["subject"]]
        assert len(updates) == 2
        assert "delivered" in updates[-1]["html"]

    def test_update_status_illegal_is_400(self, client, customer, admin, product):
        order = client.post("/orders", headers=customer.headers, json=order_payload(product)).json()
        response = client.put(f"/orders/update-status/{order['id']}", headers=admin.headers,
                              json={"status": "delivered"})
        assert response.status_code == 400

    def test_update_status_admin_only(self, client, customer, product):
        order = client.post("/orders", headers=customer.headers, json=order_payload(product)).json()
        response = client.put(f"/orders/update-status/{order['id']}", headers=customer.headers,
                              json={"status": "designed"})
        assert response.status_code == 403

    def test_update_status_missing_order(self, client, admin):
        response = client.put("/orders/update-status/65f000000000000000000000", headers=admin.headers,
                              json={"status": "designed"})
        assert response.status_code == 404


def test_restricted_coupon_uses_product_category(customer):
    logo = make_product(name="Logo", price=1000.0, category="logos")
    make_coupon("LOGOS", value=10, categories=["logos"])

    order, _ = orders.create_order(customer.id, orders.OrderSnapshot(**order_payload(
        logo, price=1000.0, quantity=1, gst=180.0, discount=100.0, coupon={"code": "LOGOS", "discount": 100.0})))
    assert order["discount"] == 100.0
