"""
Tests for kiosk orders, payments, voids and donor customers.
"""
from kioskpay.models import PaymentRecord

CUSTOM_AMOUNT_VARIATION = {
    "type": "ITEM_VARIATION",
    "id": "VAR_CUSTOM",
    "item_variation_data": {"name": "Custom Amount", "pricing_type": "VARIABLE_PRICING"},
}

PAYMENT = {
    "id": "PAY_1",
    "order_id": "ORDER_1",
    "status": "COMPLETED",
    "amount_money": {"amount": 1800, "currency": "USD"},
    "tip_money": {"amount": 200, "currency": "USD"},
    "total_money": {"amount": 2000, "currency": "USD"},
    "receipt_url": "https://squareup.test/receipt/PAY_1",
    "receipt_number": "PAY1",
    "card_details": {"entry_method": "EMV", "card": {"last_4": "1111", "card_brand": "VISA"}},
}


class TestCreateOrder:
    """Orders carry either catalog presets or a custom amount."""

    def test_custom_amount_uses_variable_price_variation(self, client, make_connection, square_api):
        make_connection()
        square_api.add("GET", "/v2/catalog/list", {"objects": [CUSTOM_AMOUNT_VARIATION]})
        square_api.add("POST", "/v2/orders", {"order": {"id": "ORDER_1", "total_money": {"amount": 2500}}})

        response = client.post(
            "/api/square/orders/create",
            json={"organization_id": "org_1", "is_custom_amount": True, "custom_amount": 25},
        )

        assert response.status_code == 200
        assert response.json()["order_id"] == "ORDER_1"
        sent = square_api.last_json("POST", "/v2/orders")
        line_item = sent["order"]["line_items"][0]
        assert line_item["catalog_object_id"] == "VAR_CUSTOM"
        assert line_item["base_price_money"] == {"amount": 2500, "currency": "USD"}
        assert sent["order"]["location_id"] == "LOC_1"

    def test_custom_amount_without_catalog_variation(self, client, make_connection, square_api):
        make_connection()
        square_api.add("GET", "/v2/catalog/list", {"objects": []})
        square_api.add("POST", "/v2/orders", {"order": {"id": "ORDER_2"}})

        client.post(
            "/api/square/orders/create",
            json={"organization_id": "org_1", "is_custom_amount": True, "custom_amount": 18},
        )

        line_item = square_api.last_json("POST", "/v2/orders")["order"]["line_items"][0]
        assert line_item["name"] == "Custom Donation - $18"
        assert "catalog_object_id" not in line_item

    def test_preset_line_items(self, client, make_connection, square_api):
        make_connection()
        square_api.add("POST", "/v2/orders", {"order": {"id": "ORDER_3"}})

        response = client.post(
            "/api/square/orders/create",
            json={"organization_id": "org_1", "line_items": [{"catalogObjectId": "V18", "quantity": "2"}]},
        )

        assert response.json()["line_items_count"] == 1
        line_item = square_api.last_json("POST", "/v2/orders")["order"]["line_items"][0]
        assert line_item == {"quantity": "2", "catalog_object_id": "V18"}

    def test_incomplete_line_item_is_rejected(self, client, make_connection):
        make_connection()
        response = client.post(
            "/api/square/orders/create",
            json={"organization_id": "org_1", "line_items": [{"name": "Mystery"}]},
        )
        assert response.status_code == 400

    def test_nothing_to_order(self, client, make_connection):
        make_connection()
        response = client.post("/api/square/orders/create", json={"organization_id": "org_1"})
        assert response.status_code == 400


class TestCreatePayment:
    def test_payment_is_charged_in_cents_and_recorded(self, client, db_session, make_connection, square_api):
        make_connection()
        square_api.add("POST", "/v2/payments", {"payment": PAYMENT})

        response = client.post(
            "/api/square/payments-create-with-order",
            json={
                "organization_id": "org_1",
                "order_id": "ORDER_1",
                "payment_token": "cnon:card-nonce-ok",
                "amount": 18,
                "tip_amount": 2,
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["payment_id"] == "PAY_1"
        assert body["card_details"] == {"last_4": "1111", "card_brand": "VISA", "entry_method": "EMV"}

        sent = square_api.last_json("POST", "/v2/payments")
        assert sent["amount_money"] == {"amount": 1800, "currency": "USD"}
        assert sent["tip_money"] == {"amount": 200, "currency": "USD"}
        assert sent["autocomplete"] is True

        record = db_session.query(PaymentRecord).one()
        assert record.square_payment_id == "PAY_1"
        assert record.amount_cents == 1800
        assert record.tip_cents == 200

    def test_declined_card_returns_square_status(self, client, make_connection, square_api):
        make_connection()
        square_api.fail("POST", "/v2/payments", status_code=402, code="CARD_DECLINED", detail="Card declined")

        response = client.post(
            "/api/square/payments-create-with-order",
            json={"organization_id": "org_1", "order_id": "ORDER_1", "payment_token": "cnon:declined", "amount": 18},
        )

        assert response.status_code == 402
        assert response.json()["detail"]["square_error"]["code"] == "CARD_DECLINED"

    def test_zero_amount_is_rejected(self, client, make_connection):
        make_connection()
        response = client.post(
            "/api/square/payments-create-with-order",
            json={"organization_id": "org_1", "order_id": "ORDER_1", "payment_token": "cnon:ok", "amount": 0},
        )
        assert response.status_code == 400


class TestVoidPayment:
    def test_void_always_succeeds(self, client, make_connection, square_api):
        make_connection()
        square_api.fail("POST", "/v2/payments/PAY_1/cancel", status_code=400, code="BAD_REQUEST")

        response = client.post("/api/payment/void", json={"organization_id": "org_1", "payment_id": "PAY_1"})

        assert response.json() == {"success": True}
        assert len(square_api.calls("POST", "/v2/payments/PAY_1/cancel")) == 1


class TestCustomers:
    def test_existing_customer_is_returned(self, client, make_connection, square_api):
        make_connection()
        square_api.add("POST", "/v2/customers/search", {"customers": [{"id": "CUST_1"}]})

        response = client.post(
            "/api/square/customers/create-or-get", json={"organization_id": "org_1", "email": "donor@example.com"}
        )

        assert response.json()["created"] is False
        assert response.json()["customer_id"] == "CUST_1"
        assert square_api.calls("POST", "/v2/customers") == []

    def test_new_customer_is_created_after_failed_search(self, client, make_connection, square_api):
        make_connection()
        square_api.fail("POST", "/v2/customers/search", status_code=500, code="INTERNAL_SERVER_ERROR")
        square_api.add("POST", "/v2/customers", {"customer": {"id": "CUST_NEW"}})

        response = client.post(
            "/api/square/customers/create-or-get",
            json={"organization_id": "org_1", "email": "donor@example.com", "given_name": "Dana"},
        )

        assert response.json() == {"customer_id": "CUST_NEW", "customer": {"id": "CUST_NEW"}, "created": True}
        sent = square_api.last_json("POST", "/v2/customers")
        assert sent["email_address"] == "donor@example.com"
        assert sent["given_name"] == "Dana"

    def test_invalid_email_is_rejected(self, client, make_connection):
        make_connection()
        response = client.post(
            "/api/square/customers/create-or-get", json={"organization_id": "org_1", "email": "not-an-email"}
        )
        assert response.status_code == 400
