"""
Tests for the webhook claim / complete / release lifecycle.
"""
import json
from datetime import timedelta

from kioskpay.domain.billing.webhook_idempotency import STALE_CLAIM_AFTER, WebhookDeduplicator, fallback_event_id
from kioskpay.models_billing import WebhookEvent
from kioskpay.utils import utcnow


class TestWebhookDeduplicator:
    """Each (provider, event_id) is processed once."""

    def test_first_claim_wins(self, db_session):
        dedupe = WebhookDeduplicator(db_session, "square")
        assert dedupe.claim("evt_1", "subscription.updated") is True
        assert dedupe.claim("evt_1", "subscription.updated") is False
        assert db_session.query(WebhookEvent).count() == 1

    def test_providers_are_independent(self, db_session):
        assert WebhookDeduplicator(db_session, "square").claim("evt_1")
        assert WebhookDeduplicator(db_session, "stripe").claim("evt_1")

    def test_complete_stores_result(self, db_session):
        dedupe = WebhookDeduplicator(db_session, "stripe")
        dedupe.claim("evt_2", "customer.subscription.updated")
        dedupe.complete("evt_2", {"handled": True})

        row = db_session.query(WebhookEvent).filter_by(event_id="evt_2").one()
        assert json.loads(row.processing_result) == {"handled": True}
        assert dedupe.claim("evt_2") is False

    def test_release_allows_retry(self, db_session):
        dedupe = WebhookDeduplicator(db_session, "square")
        dedupe.claim("evt_3")
        dedupe.release("evt_3")

        assert db_session.query(WebhookEvent).count() == 0
        assert dedupe.claim("evt_3") is True

    def test_stale_claim_is_taken_over_once(self, db_session):
        dedupe = WebhookDeduplicator(db_session, "square")
        dedupe.claim("evt_4")
        row = db_session.query(WebhookEvent).filter_by(event_id="evt_4").one()
        row.processed_at = utcnow() - STALE_CLAIM_AFTER - timedelta(minutes=1)
        db_session.commit()

        assert dedupe.claim("evt_4") is True
        assert dedupe.claim("evt_4") is False
        assert db_session.query(WebhookEvent).count() == 1

    def test_recent_claim_is_not_taken_over(self, db_session):
        dedupe = WebhookDeduplicator(db_session, "square")
        dedupe.claim("evt_5")
        assert dedupe.claim("evt_5") is False

    def test_completed_event_is_never_taken_over(self, db_session):
        dedupe = WebhookDeduplicator(db_session, "stripe")
        dedupe.claim("evt_6")
        dedupe.complete("evt_6", {"handled": True})
        row = db_session.query(WebhookEvent).filter_by(event_id="evt_6").one()
        row.processed_at = utcnow() - timedelta(days=1)
        db_session.commit()

        assert dedupe.claim("evt_6") is False


class TestFallbackEventId:
    def test_is_stable_for_identical_bodies(self):
        body = b'{"type": "subscription.updated"}'
        assert fallback_event_id(body) == fallback_event_id(body)
        assert len(fallback_event_id(body)) == 32

    def test_differs_for_different_bodies(self):
        assert fallback_event_id(b"a") != fallback_event_id(b"b")
