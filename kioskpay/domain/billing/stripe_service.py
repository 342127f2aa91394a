"""Stripe service - Checkout, billing portal and subscription sync for kiosk billing"""

import json
import logging
from typing import Optional

import stripe
from sqlalchemy.orm import Session

from ...config import BACKEND_BASE_URL, STRIPE_MONTHLY_PRICE_ID, STRIPE_SECRET_KEY, STRIPE_TRIAL_DAYS
from ...models_billing import StripeSubscription
from ...utils import from_unix_timestamp
from .repository import BillingRepository
from .status import detect_stripe_pending_cancellation

logger = logging.getLogger(__name__)


class StripeServiceError(Exception):
    """A Stripe API call failed"""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def to_plain(obj) -> dict:
    """Stripe SDK objects as plain dicts"""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    return json.loads(str(obj))


def _object_id(value) -> Optional[str]:
    """Stripe fields are either an id or an expanded object"""
    if value is None or isinstance(value, str):
        return value
    return to_plain(value).get("id")


def subscription_period(remote: dict) -> tuple:
    """(start, end); newer API versions moved the period onto subscription items"""
    start = remote.get("current_period_start")
    end = remote.get("current_period_end")
    if start is None or end is None:
        items = (remote.get("items") or {}).get("data") or []
        if items:
            start = start or items[0].get("current_period_start")
            end = end or items[0].get("current_period_end")
    return from_unix_timestamp(start), from_unix_timestamp(end)


class StripeService:
    """Service for Stripe API operations"""

    def __init__(self):
        self.api_key = STRIPE_SECRET_KEY
        self.price_id = STRIPE_MONTHLY_PRICE_ID
        self.trial_days = STRIPE_TRIAL_DAYS

        if not self.api_key:
            logger.warning("STRIPE_SECRET_KEY not set; Stripe billing endpoints will fail until configured")
        else:
            stripe.api_key = self.api_key
            logger.info("Stripe client configured")

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _call(self, action: str, func, *args, **kwargs) -> dict:
        if not self.is_available():
            raise StripeServiceError("Stripe is not configured", status_code=503)
        try:
            return to_plain(func(*args, **kwargs))
        except stripe.StripeError as e:
            logger.error(f"❌ Stripe {action} failed: {e}")
            raise StripeServiceError(f"Failed to {action}: {getattr(e, 'user_message', None) or str(e)}") from e

    def create_customer(self, email: str, organization_id: str) -> dict:
        return self._call(
            "create customer",
            stripe.Customer.create,
            email=email,
            metadata={"organization_id": organization_id},
        )

    def create_checkout_session(
        self,
        organization_id: str,
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> dict:
        if not self.price_id:
            raise StripeServiceError("STRIPE_MONTHLY_PRICE_ID not configured", status_code=503)

        metadata = {"organization_id": organization_id}
        if device_id:
            metadata["device_id"] = device_id

        params = {
            "mode": "subscription",
            "line_items": [{"price": self.price_id, "quantity": 1}],
            "allow_promotion_codes": True,
            "billing_address_collection": "auto",
            "client_reference_id": organization_id,
            "success_url": f"{BACKEND_BASE_URL}/api/stripe/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{BACKEND_BASE_URL}/api/stripe/cancel",
            "subscription_data": {
                "trial_period_days": self.trial_days,
                "metadata": {"organization_id": organization_id},
            },
            "metadata": metadata,
        }
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email

        return self._call("create checkout session", stripe.checkout.Session.create, **params)

    def retrieve_checkout_session(self, session_id: str) -> dict:
        return self._call("retrieve checkout session", stripe.checkout.Session.retrieve, session_id)

    def retrieve_subscription(self, subscription_id: str) -> dict:
        return self._call("retrieve subscription", stripe.Subscription.retrieve, subscription_id)

    def create_portal_session(self, customer_id: str) -> dict:
        return self._call(
            "create portal session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=f"{BACKEND_BASE_URL}/api/stripe/portal-return",
        )


def apply_subscription(row: StripeSubscription, remote: dict) -> bool:
    """Copy a Stripe subscription onto the local row; returns the pending-cancellation flag"""
    row.stripe_subscription_id = remote.get("id") or row.stripe_subscription_id
    row.stripe_customer_id = _object_id(remote.get("customer")) or row.stripe_customer_id
    row.status = remote.get("status") or row.status
    row.current_period_start, row.current_period_end = subscription_period(remote)
    row.trial_end = from_unix_timestamp(remote.get("trial_end"))
    row.cancel_at_period_end = bool(remote.get("cancel_at_period_end"))
    row.cancel_at = from_unix_timestamp(remote.get("cancel_at"))
    row.canceled_at = from_unix_timestamp(remote.get("canceled_at"))
    pending, _ = detect_stripe_pending_cancellation(remote)
    return pending


def upsert_subscription(
    db: Session,
    remote: dict,
    organization_id: Optional[str] = None,
    customer_id: Optional[str] = None,
) -> tuple[Optional[StripeSubscription], bool]:
    """
    Store a Stripe subscription, matched by subscription id and then by organization.

    Returns (row, pending_cancellation); row is None when the subscription cannot
    be tied to an organization.
    """
    row = None
    if remote.get("id"):
        row = BillingRepository.get_stripe_by_subscription_id(db, remote["id"])
    organization_id = organization_id or (remote.get("metadata") or {}).get("organization_id")
    if row is None and organization_id:
        row = BillingRepository.get_stripe_by_organization(db, organization_id)
        if row is None:
            row = StripeSubscription(organization_id=organization_id)
            db.add(row)
    if row is None:
        logger.warning(f"⚠️ Stripe subscription {remote.get('id')} has no organization, skipping")
        return None, False

    if customer_id:
        row.stripe_customer_id = customer_id
    pending = apply_subscription(row, remote)
    db.commit()
    db.refresh(row)
    logger.info(f"✅ Stripe subscription {row.stripe_subscription_id} for {row.organization_id} is {row.status}")
    return row, pending


# Singleton instance
stripe_service = StripeService()
