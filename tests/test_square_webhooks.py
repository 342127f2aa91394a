"""
Tests for the Square subscription webhook endpoint.
"""
import json

from conftest import SQUARE_NOTIFICATION_URL, SQUARE_WEBHOOK_KEY

from kioskpay.domain.billing import square_webhooks
from kioskpay.domain.billing.webhook_idempotency import fallback_event_id
from kioskpay.models_billing import Subscription, SubscriptionEvent, WebhookEvent
from kioskpay.webhook_security import create_webhook_signature

WEBHOOK_PATH = "/api/square/webhooks/subscription"


def post_event(client, event: dict, signature: str = None):
    body = json.dumps(event).encode()
    if signature is None:
        signature = create_webhook_signature(SQUARE_WEBHOOK_KEY, body, notification_url=SQUARE_NOTIFICATION_URL)
    return client.post(
        WEBHOOK_PATH,
        content=body,
        headers={"content-type": "application/json", "x-square-hmacsha256-signature": signature},
    )


def subscription_event(event_id: str, event_type: str, subscription: dict) -> dict:
    return {
        "merchant_id": "MERCHANT_1",
        "type": event_type,
        "event_id": event_id,
        "data": {"type": "subscription", "id": subscription["id"], "object": {"subscription": subscription}},
    }


def add_subscription(db, square_id="sq_sub_1", status="active"):
    subscription = Subscription(
        organization_id="org_1",
        merchant_id="MERCHANT_1",
        square_subscription_id=square_id,
        plan_type="monthly",
        device_count=1,
        status=status,
    )
    db.add(subscription)
    db.commit()
    return subscription


class TestSignature:
    """Unsigned or mis-signed deliveries are rejected."""

    def test_bad_signature_is_rejected_without_writes(self, client, db_session):
        add_subscription(db_session)
        event = subscription_event("evt_bad", "subscription.canceled", {"id": "sq_sub_1", "status": "CANCELED"})

        response = post_event(client, event, signature="bm90LXRoZS1yaWdodC1zaWduYXR1cmU=")

        assert response.status_code == 401
        assert db_session.query(WebhookEvent).count() == 0
        assert db_session.query(SubscriptionEvent).count() == 0
        assert db_session.query(Subscription).one().status == "active"

    def test_missing_signature_is_rejected(self, client):
        response = client.post(WEBHOOK_PATH, content=b"{}", headers={"content-type": "application/json"})
        assert response.status_code == 401


class TestSubscriptionEvents:
    """Event handlers keep the local row in step with Square."""

    def test_pending_cancellation_keeps_status_active(self, client, db_session):
        add_subscription(db_session)
        event = subscription_event(
            "evt_pending",
            "subscription.updated",
            {
                "id": "sq_sub_1",
                "status": "ACTIVE",
                "canceled_date": "2030-03-01",
                "charged_through_date": "2030-03-01",
                "version": 3,
            },
        )

        response = post_event(client, event)

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["pending_cancellation"] is True
        assert result["new_status"] == "active"
        assert result["service_ends_at"] == "2030-03-01T00:00:00"

        subscription = db_session.query(Subscription).one()
        assert subscription.status == "active"
        assert subscription.canceled_at is not None
        assert [e.event_type for e in subscription.events] == ["pending_cancellation"]

    def test_canceled_starts_grace_period(self, client, db_session):
        add_subscription(db_session)
        event = subscription_event("evt_cancel", "subscription.canceled", {"id": "sq_sub_1", "status": "CANCELED"})

        response = post_event(client, event)

        assert response.status_code == 200
        subscription = db_session.query(Subscription).one()
        assert subscription.status == "canceled"
        assert subscription.canceled_at is not None
        assert subscription.grace_period_start is not None

    def test_invoice_payment_activates_pending_subscription(self, client, db_session):
        add_subscription(db_session, status="pending")
        event = {
            "merchant_id": "MERCHANT_1",
            "type": "invoice.payment_made",
            "event_id": "evt_invoice",
            "data": {"type": "invoice", "object": {"invoice": {"id": "inv_1", "subscription_id": "sq_sub_1"}}},
        }

        response = post_event(client, event)

        assert response.json()["result"]["activated"] is True
        assert db_session.query(Subscription).one().status == "active"

    def test_subscription_created_in_dashboard_is_recorded(self, client, db_session, make_connection):
        make_connection(organization_id="org_dash", merchant_id="MERCHANT_1", location_id="LOC_DASH")
        event = subscription_event(
            "evt_created",
            "subscription.created",
            {"id": "sq_new", "status": "ACTIVE", "location_id": "LOC_DASH", "start_date": "2025-01-01"},
        )

        response = post_event(client, event)

        assert response.status_code == 200
        subscription = db_session.query(Subscription).filter_by(square_subscription_id="sq_new").one()
        assert subscription.organization_id == "org_dash"
        assert subscription.status == "active"

    def test_unknown_event_type_is_acknowledged(self, client):
        response = post_event(client, {"type": "team_member.created", "event_id": "evt_other", "data": {}})
        assert response.status_code == 200
        assert response.json()["result"]["handled"] is False

    def test_invoice_order_metadata_links_subscription(self, client, db_session):
        add_subscription(db_session, status="pending")
        invoice = {"id": "inv_2", "order": {"metadata": {"subscription_id": "sq_sub_1"}}}
        event = {
            "merchant_id": "MERCHANT_1",
            "type": "invoice.payment_made",
            "event_id": "evt_invoice_meta",
            "data": {"type": "invoice", "object": {"invoice": invoice}},
        }

        response = post_event(client, event)

        assert response.json()["result"]["activated"] is True
        assert db_session.query(Subscription).one().status == "active"


class TestMalformedPayloads:
    """Signed but malformed deliveries are answered without a server error."""

    def test_non_object_body_is_rejected(self, client, db_session):
        response = post_event(client, [])

        assert response.status_code == 400
        assert db_session.query(WebhookEvent).count() == 0

    def test_subscription_without_id_is_completed(self, client, db_session):
        event = {
            "merchant_id": "MERCHANT_1",
            "type": "subscription.updated",
            "event_id": "evt_noid",
            "data": {"type": "subscription", "object": {"subscription": {"status": "ACTIVE"}}},
        }

        first = post_event(client, event)
        second = post_event(client, event)

        assert first.status_code == 200
        assert first.json()["result"] == {"handled": False, "reason": "missing_subscription_id"}
        assert second.json()["duplicate"] is True
        assert db_session.query(Subscription).count() == 0

    def test_non_object_data_is_ignored(self, client):
        event = {"type": "subscription.canceled", "event_id": "evt_list_data", "data": ["oops"]}

        response = post_event(client, event)

        assert response.status_code == 200
        assert response.json()["result"]["reason"] == "missing_subscription_id"


class TestIdempotency:
    """Redeliveries mutate state once."""

    def test_duplicate_delivery_is_reported(self, client, db_session):
        add_subscription(db_session)
        event = subscription_event("evt_dup", "subscription.paused", {"id": "sq_sub_1", "status": "PAUSED"})

        first = post_event(client, event)
        second = post_event(client, event)

        assert first.status_code == 200
        assert "duplicate" not in first.json()
        assert second.json() == {"received": True, "duplicate": True, "event_id": "evt_dup"}
        assert db_session.query(SubscriptionEvent).filter_by(event_type="paused").count() == 1

    def test_missing_event_id_uses_body_hash(self, client):
        event = {"type": "team_member.created", "data": {}}
        body = json.dumps(event).encode()

        response = post_event(client, event)

        assert response.json()["event_id"] == fallback_event_id(body)

    def test_failed_handler_releases_claim(self, client, db_session, monkeypatch):
        add_subscription(db_session)
        event = subscription_event("evt_retry", "subscription.paused", {"id": "sq_sub_1", "status": "PAUSED"})

        def explode(db, event):
            raise RuntimeError("database went away")

        monkeypatch.setattr(square_webhooks, "handle_square_event", explode)
        failed = post_event(client, event)
        assert failed.status_code == 500
        assert db_session.query(WebhookEvent).count() == 0

        monkeypatch.undo()
        retried = post_event(client, event)
        assert retried.status_code == 200
        assert "duplicate" not in retried.json()
        assert db_session.query(Subscription).one().status == "paused"
