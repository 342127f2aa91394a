"""
Webhook idempotency

Providers redeliver events until they see a 2xx, and may deliver the same
event concurrently. An event id is claimed by inserting a webhook_events row;
the (provider, event_id) unique constraint makes the claim atomic. A claim
still processing after STALE_CLAIM_AFTER belongs to a dead worker and goes to
the next delivery. Redis remembers completed events so redeliveries skip the
database.
"""

import hashlib
import json
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...cache import WEBHOOK_PROCESSED_TTL, cache, webhook_processed_key
from ...models_billing import WebhookEvent
from ...utils import utcnow

logger = logging.getLogger(__name__)

PROCESSING = "processing"
STALE_CLAIM_AFTER = timedelta(minutes=5)


def fallback_event_id(raw_body: bytes) -> str:
    """Stable id for payloads without one, so identical redeliveries still dedupe"""
    return hashlib.sha256(raw_body).hexdigest()[:32]


class WebhookDeduplicator:
    """Claim / complete / release lifecycle for one provider's events"""

    def __init__(self, db: Session, provider: str):
        self.db = db
        self.provider = provider

    def _key(self, event_id: str) -> str:
        return webhook_processed_key(self.provider, event_id)

    def _get_row(self, event_id: str) -> Optional[WebhookEvent]:
        return (
            self.db.query(WebhookEvent)
            .filter(WebhookEvent.provider == self.provider, WebhookEvent.event_id == event_id)
            .first()
        )

    def claim(self, event_id: str, event_type: Optional[str] = None) -> bool:
        """True if this delivery should be processed, False for a duplicate"""
        if cache.get(self._key(event_id)):
            logger.info(f"🔄 {self.provider} webhook {event_id} already processed (cache)")
            return False

        self.db.add(
            WebhookEvent(
                provider=self.provider,
                event_id=event_id,
                event_type=event_type,
                processing_result=PROCESSING,
            )
        )
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            if self._take_over_stale_claim(event_id):
                return True
            logger.info(f"🔄 {self.provider} webhook {event_id} already claimed, skipping")
            return False
        return True

    def _take_over_stale_claim(self, event_id: str) -> bool:
        """Re-claim an event whose worker died before completing or releasing it"""
        now = utcnow()
        taken = (
            self.db.query(WebhookEvent)
            .filter(
                WebhookEvent.provider == self.provider,
                WebhookEvent.event_id == event_id,
                WebhookEvent.processing_result == PROCESSING,
                WebhookEvent.processed_at < now - STALE_CLAIM_AFTER,
            )
            .update({WebhookEvent.processed_at: now}, synchronize_session=False)
        )
        self.db.commit()
        if taken:
            logger.warning(f"⚠️ Re-claimed stale {self.provider} webhook {event_id}")
        return bool(taken)

    def complete(self, event_id: str, result: dict) -> None:
        row = self._get_row(event_id)
        if row is not None:
            row.processing_result = json.dumps(result, default=str)
            row.processed_at = utcnow()
            self.db.commit()
        cache.set(self._key(event_id), True, ttl=WEBHOOK_PROCESSED_TTL)

    def release(self, event_id: str) -> None:
        """Forget a claim after a failed handler so the provider's retry is processed"""
        self.db.rollback()
        row = self._get_row(event_id)
        if row is not None:
            self.db.delete(row)
            self.db.commit()
        cache.delete(self._key(event_id))
        logger.warning(f"⚠️ Released {self.provider} webhook {event_id} for retry")
