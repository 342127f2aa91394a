"""
Tests for Stripe Checkout, the billing portal and Stripe webhooks.
"""
import json

import pytest
import stripe
from conftest import STRIPE_WEBHOOK_SECRET

from kioskpay.domain.billing import stripe_router
from kioskpay.domain.billing.stripe_service import stripe_service
from kioskpay.models_billing import StripeSubscription, WebhookEvent
from kioskpay.utils import from_unix_timestamp
from kioskpay.webhook_security import create_webhook_signature

PERIOD_START = 1735689600  # 2025-01-01
PERIOD_END = 1739577600  # 2025-02-15
FAR_FUTURE = 1893456000  # 2030-01-01


def remote_subscription(**kwargs) -> dict:
    subscription = {
        "id": "sub_1",
        "object": "subscription",
        "customer": "cus_1",
        "status": "active",
        "cancel_at_period_end": False,
        "cancel_at": None,
        "canceled_at": None,
        "current_period_start": PERIOD_START,
        "current_period_end": PERIOD_END,
        "trial_end": None,
        "metadata": {"organization_id": "org_1"},
    }
    subscription.update(kwargs)
    return subscription


def post_event(client, event: dict, signature: str = None):
    payload = json.dumps(event).encode()
    if signature is None:
        signature = create_webhook_signature(STRIPE_WEBHOOK_SECRET, payload, provider="stripe")
    return client.post(
        "/api/stripe/webhook",
        content=payload,
        headers={"content-type": "application/json", "Stripe-Signature": signature},
    )


def stripe_event(event_id: str, event_type: str, obj: dict) -> dict:
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


def add_stripe_row(db, **kwargs):
    row = StripeSubscription(
        organization_id="org_1",
        stripe_customer_id="cus_1",
        stripe_subscription_id="sub_1",
        status="active",
        cancel_at_period_end=False,
    )
    for key, value in kwargs.items():
        setattr(row, key, value)
    db.add(row)
    db.commit()
    return row


class TestStripeWebhook:
    """Signature-verified, deduplicated Stripe events."""

    def test_bad_signature_returns_400(self, client, db_session):
        event = stripe_event("evt_bad", "customer.subscription.updated", remote_subscription())
        response = post_event(client, event, signature="t=1,v1=deadbeef")

        assert response.status_code == 400
        assert db_session.query(WebhookEvent).count() == 0
        assert db_session.query(StripeSubscription).count() == 0

    def test_subscription_update_creates_row_from_metadata(self, client, db_session):
        event = stripe_event(
            "evt_update", "customer.subscription.updated", remote_subscription(cancel_at_period_end=True)
        )

        response = post_event(client, event)

        assert response.status_code == 200
        body = response.json()
        assert body["received"] is True
        assert body["event_id"] == "evt_update"
        assert body["result"]["pending_cancellation"] is True

        row = db_session.query(StripeSubscription).one()
        assert row.organization_id == "org_1"
        assert row.status == "active"
        assert row.cancel_at_period_end is True
        assert row.current_period_end == from_unix_timestamp(PERIOD_END)

    def test_duplicate_event_is_reported(self, client):
        event = stripe_event("evt_dup", "customer.subscription.created", remote_subscription())

        post_event(client, event)
        second = post_event(client, event)

        assert second.json() == {"received": True, "duplicate": True, "event_id": "evt_dup"}

    def test_deleted_subscription_updates_status(self, client, db_session):
        add_stripe_row(db_session)
        event = stripe_event(
            "evt_deleted", "customer.subscription.deleted", remote_subscription(status="canceled", canceled_at=PERIOD_END)
        )

        response = post_event(client, event)

        assert response.json()["result"]["status"] == "canceled"
        row = db_session.query(StripeSubscription).one()
        assert row.status == "canceled"
        assert row.canceled_at == from_unix_timestamp(PERIOD_END)

    def test_checkout_completed_fetches_subscription(self, client, db_session, monkeypatch):
        monkeypatch.setattr(
            stripe_service, "retrieve_subscription", lambda subscription_id: remote_subscription(status="trialing")
        )
        session = {
            "id": "cs_1",
            "object": "checkout.session",
            "subscription": "sub_1",
            "customer": "cus_checkout",
            "client_reference_id": "org_1",
            "metadata": {"organization_id": "org_1"},
        }

        response = post_event(client, stripe_event("evt_checkout", "checkout.session.completed", session))

        assert response.json()["result"]["action"] == "checkout_completed"
        row = db_session.query(StripeSubscription).one()
        assert row.status == "trialing"
        assert row.stripe_customer_id == "cus_1"

    def test_trial_will_end_is_logged_only(self, client, db_session):
        response = post_event(
            client, stripe_event("evt_trial", "customer.subscription.trial_will_end", remote_subscription())
        )
        assert response.json()["result"] == {"handled": True, "action": "trial_will_end"}
        assert db_session.query(StripeSubscription).count() == 0

    def test_failed_handler_releases_claim(self, client, db_session, monkeypatch):
        def explode(db, event):
            raise RuntimeError("boom")

        monkeypatch.setattr(stripe_router, "handle_stripe_event", explode)
        response = post_event(client, stripe_event("evt_fail", "customer.subscription.updated", remote_subscription()))

        assert response.status_code == 500
        assert db_session.query(WebhookEvent).count() == 0


class TestCheckoutSession:
    """Checkout sessions start a trial subscription on the monthly price."""

    def test_creates_customer_and_session(self, client, monkeypatch):
        captured = {}

        def fake_customer_create(**params):
            captured["customer"] = params
            return {"id": "cus_new"}

        def fake_session_create(**params):
            captured["session"] = params
            return {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}

        monkeypatch.setattr(stripe.Customer, "create", fake_customer_create)
        monkeypatch.setattr(stripe.checkout.Session, "create", fake_session_create)

        response = client.post(
            "/api/stripe/create-checkout-session",
            json={"organization_id": "org_1", "merchant_email": "shul@example.com", "device_id": "ipad-1"},
        )

        assert response.status_code == 200
        assert response.json() == {"checkout_url": "https://checkout.stripe.test/cs_test_1", "session_id": "cs_test_1"}

        params = captured["session"]
        assert params["mode"] == "subscription"
        assert params["customer"] == "cus_new"
        assert params["line_items"] == [{"price": "price_monthly_test", "quantity": 1}]
        assert params["subscription_data"]["trial_period_days"] == 30
        assert params["metadata"] == {"organization_id": "org_1", "device_id": "ipad-1"}
        assert params["success_url"].endswith("/api/stripe/success?session_id={CHECKOUT_SESSION_ID}")
        assert captured["customer"]["metadata"] == {"organization_id": "org_1"}

    def test_reuses_stored_customer(self, client, db_session, monkeypatch):
        add_stripe_row(db_session, stripe_customer_id="cus_existing")
        captured = {}

        def fake_session_create(**params):
            captured.update(params)
            return {"id": "cs_test_2", "url": "https://checkout.stripe.test/cs_test_2"}

        monkeypatch.setattr(stripe.checkout.Session, "create", fake_session_create)

        response = client.post("/api/stripe/create-checkout-session", json={"organization_id": "org_1"})

        assert response.status_code == 200
        assert captured["customer"] == "cus_existing"

    def test_stripe_error_returns_502(self, client, monkeypatch):
        def failing_create(**params):
            raise stripe.StripeError("card network unavailable")

        monkeypatch.setattr(stripe.checkout.Session, "create", failing_create)

        response = client.post("/api/stripe/create-checkout-session", json={"organization_id": "org_1"})

        assert response.status_code == 502

    def test_blank_organization_is_rejected(self, client):
        response = client.post("/api/stripe/create-checkout-session", json={"organization_id": " "})
        assert response.status_code == 400


class TestPortalAndStatus:
    def test_portal_for_stored_customer(self, client, db_session, monkeypatch):
        add_stripe_row(db_session)
        monkeypatch.setattr(
            stripe_service, "create_portal_session", lambda customer_id: {"url": f"https://portal.test/{customer_id}"}
        )

        response = client.post("/api/stripe/create-portal-session", json={"organization_id": "org_1"})

        assert response.json() == {"portal_url": "https://portal.test/cus_1"}

    def test_portal_without_customer_is_404(self, client):
        response = client.post("/api/stripe/create-portal-session", json={"organization_id": "org_missing"})
        assert response.status_code == 404

    def test_status_by_organization(self, client, db_session):
        add_stripe_row(db_session, status="active", current_period_end=from_unix_timestamp(FAR_FUTURE))

        response = client.get("/api/stripe/subscription/status", params={"organization_id": "org_1"})

        body = response.json()
        assert body["has_subscription"] is True
        assert body["analysis"] == "fully_active"
        assert body["can_use_kiosk"] is True
        assert body["subscription"]["stripe_subscription_id"] == "sub_1"

    def test_status_by_session_syncs_row(self, client, db_session, monkeypatch):
        monkeypatch.setattr(
            stripe_service,
            "retrieve_checkout_session",
            lambda session_id: {"id": session_id, "subscription": "sub_1", "customer": "cus_1", "metadata": {}},
        )
        monkeypatch.setattr(
            stripe_service,
            "retrieve_subscription",
            lambda subscription_id: remote_subscription(
                status="trialing", trial_end=FAR_FUTURE, current_period_end=FAR_FUTURE
            ),
        )

        response = client.get("/api/stripe/subscription/status", params={"session_id": "cs_test_1"})

        body = response.json()
        assert body["analysis"] == "trial_active"
        assert body["can_use_kiosk"] is True
        assert db_session.query(StripeSubscription).one().status == "trialing"

    def test_status_without_subscription(self, client):
        response = client.get("/api/stripe/subscription/status", params={"organization_id": "org_none"})
        assert response.json()["has_subscription"] is False

    def test_status_requires_an_identifier(self, client):
        assert client.get("/api/stripe/subscription/status").status_code == 400


class TestReturnPages:
    @pytest.mark.parametrize(
        "path,app_url",
        [
            ("/api/stripe/success?session_id=cs_test_1", "shulpad://subscription-success?session_id=cs_test_1"),
            ("/api/stripe/cancel", "shulpad://subscription-cancelled"),
            ("/api/stripe/portal-return", "shulpad://subscription-manage"),
        ],
    )
    def test_pages_redirect_to_app(self, client, path, app_url):
        response = client.get(path)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert app_url in response.text
