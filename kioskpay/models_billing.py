"""
Billing Models
Kiosk subscriptions (Square and Stripe), promo codes, plans, device registrations
and the webhook dedupe ledger
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base
from .utils import utcnow


class Subscription(Base):
    """Kiosk subscription billed through the merchant's Square account"""

    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(255), nullable=False, index=True)
    merchant_id = Column(String(255), nullable=True, index=True)
    square_subscription_id = Column(String(255), unique=True, nullable=False, index=True)
    square_customer_id = Column(String(255), nullable=True)
    square_card_id = Column(String(255), nullable=True)
    plan_type = Column(String(20), nullable=False, default="monthly")  # monthly | yearly
    device_count = Column(Integer, nullable=False, default=1)
    promo_code = Column(String(50), nullable=True)
    promo_discount_cents = Column(Integer, default=0)
    base_price_cents = Column(Integer, default=0)
    total_price_cents = Column(Integer, default=0)
    status = Column(String(20), nullable=False, default="pending")
    trial_end_date = Column(DateTime, nullable=True)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)
    grace_period_start = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    events = relationship(
        "SubscriptionEvent",
        back_populates="subscription",
        order_by="SubscriptionEvent.id.desc()",
    )

    @property
    def is_free(self) -> bool:
        return self.square_subscription_id.startswith("free_")


class SubscriptionEvent(Base):
    """Audit log of subscription state changes"""

    __tablename__ = "subscription_events"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)
    event_type = Column(String(50), nullable=False)
    event_data = Column(Text, nullable=True)  # JSON
    created_at = Column(DateTime, default=utcnow)

    subscription = relationship("Subscription", back_populates="events")


class PromoCode(Base):
    __tablename__ = "promo_codes"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    discount_type = Column(String(20), nullable=False)  # percentage | fixed_amount
    discount_value = Column(Integer, nullable=False)  # percent, or cents for fixed_amount
    max_uses = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)
    valid_until = Column(DateTime, nullable=True)
    active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, index=True)
    plan_type = Column(String(20), unique=True, nullable=False)
    name = Column(String(100), nullable=False)
    base_price_cents = Column(Integer, nullable=False)
    extra_device_price_cents = Column(Integer, nullable=False)
    square_plan_variation_id = Column(String(255), nullable=True)
    active = Column(Boolean, default=True)


class DeviceRegistration(Base):
    """Kiosk devices seen for an organization (counted against the plan's device limit)"""

    __tablename__ = "device_registrations"
    __table_args__ = (UniqueConstraint("organization_id", "device_id", name="uq_device_per_org"),)

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(255), nullable=False, index=True)
    device_id = Column(String(255), nullable=False)
    last_seen_at = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)


class StripeSubscription(Base):
    """Kiosk subscription billed through Stripe Checkout"""

    __tablename__ = "stripe_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(255), unique=True, nullable=False, index=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, unique=True, index=True)
    status = Column(String(30), nullable=False, default="incomplete")  # raw Stripe status
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, default=False)
    cancel_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class WebhookEvent(Base):
    """One row per provider event id; the unique key is the idempotency guard"""

    __tablename__ = "webhook_events"
    __table_args__ = (UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),)

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(20), nullable=False)  # square | stripe
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=True)
    processing_result = Column(Text, nullable=True)  # "processing" until complete, then JSON
    processed_at = Column(DateTime, default=utcnow)
