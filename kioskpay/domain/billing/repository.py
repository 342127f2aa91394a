"""Billing repository - Database operations for billing"""

import json
from typing import Optional

from sqlalchemy.orm import Session

from ...models_billing import (
    DeviceRegistration,
    PromoCode,
    StripeSubscription,
    Subscription,
    SubscriptionEvent,
    SubscriptionPlan,
)
from ...utils import utcnow

BLOCKING_STATUSES = ("active", "paused")


class BillingRepository:
    """Repository for billing database operations"""

    @staticmethod
    def get_latest_subscription(db: Session, merchant_id: str) -> Optional[Subscription]:
        """Most recently created subscription for a merchant"""
        return (
            db.query(Subscription)
            .filter(Subscription.merchant_id == merchant_id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .first()
        )

    @staticmethod
    def get_latest_for_organization(db: Session, organization_id: str) -> Optional[Subscription]:
        return (
            db.query(Subscription)
            .filter(Subscription.organization_id == organization_id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .first()
        )

    @staticmethod
    def get_blocking_subscription(db: Session, merchant_id: str) -> Optional[Subscription]:
        """An active or paused subscription prevents creating another one"""
        return (
            db.query(Subscription)
            .filter(Subscription.merchant_id == merchant_id, Subscription.status.in_(BLOCKING_STATUSES))
            .first()
        )

    @staticmethod
    def get_current_for_organization(db: Session, organization_id: str) -> Optional[Subscription]:
        return (
            db.query(Subscription)
            .filter(Subscription.organization_id == organization_id, Subscription.status.in_(BLOCKING_STATUSES))
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .first()
        )

    @staticmethod
    def get_by_square_id(db: Session, square_subscription_id: str) -> Optional[Subscription]:
        return (
            db.query(Subscription)
            .filter(Subscription.square_subscription_id == square_subscription_id)
            .first()
        )

    @staticmethod
    def list_for_merchant(db: Session, merchant_id: str) -> list[Subscription]:
        return (
            db.query(Subscription)
            .filter(Subscription.merchant_id == merchant_id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .all()
        )

    @staticmethod
    def log_event(
        db: Session,
        subscription: Optional[Subscription],
        event_type: str,
        event_data: Optional[dict] = None,
    ) -> SubscriptionEvent:
        """Append to the audit log; the caller commits"""
        event = SubscriptionEvent(
            subscription_id=subscription.id if subscription is not None else None,
            event_type=event_type,
            event_data=json.dumps(event_data or {}, default=str),
        )
        db.add(event)
        return event

    @staticmethod
    def get_plan(db: Session, plan_type: str) -> Optional[SubscriptionPlan]:
        return (
            db.query(SubscriptionPlan)
            .filter(SubscriptionPlan.plan_type == plan_type, SubscriptionPlan.active.is_(True))
            .first()
        )

    @staticmethod
    def get_promo_code(db: Session, code: str) -> Optional[PromoCode]:
        return db.query(PromoCode).filter(PromoCode.code == code.upper()).first()

    @staticmethod
    def register_device(db: Session, organization_id: str, device_id: str) -> DeviceRegistration:
        device = (
            db.query(DeviceRegistration)
            .filter(
                DeviceRegistration.organization_id == organization_id,
                DeviceRegistration.device_id == device_id,
            )
            .first()
        )
        if device:
            device.last_seen_at = utcnow()
        else:
            device = DeviceRegistration(organization_id=organization_id, device_id=device_id)
            db.add(device)
        db.commit()
        return device

    @staticmethod
    def count_devices(db: Session, organization_id: str) -> int:
        return db.query(DeviceRegistration).filter(DeviceRegistration.organization_id == organization_id).count()

    # Stripe

    @staticmethod
    def get_stripe_by_organization(db: Session, organization_id: str) -> Optional[StripeSubscription]:
        return db.query(StripeSubscription).filter(StripeSubscription.organization_id == organization_id).first()

    @staticmethod
    def get_stripe_by_subscription_id(db: Session, stripe_subscription_id: str) -> Optional[StripeSubscription]:
        return (
            db.query(StripeSubscription)
            .filter(StripeSubscription.stripe_subscription_id == stripe_subscription_id)
            .first()
        )
