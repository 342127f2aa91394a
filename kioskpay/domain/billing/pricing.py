"""Kiosk plan pricing - device-based plans, promo codes and the new-merchant trial"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...models_billing import PromoCode, Subscription
from ...services.square_connections import SquareConnectionRepository
from ...utils import utcnow
from .repository import BillingRepository

logger = logging.getLogger(__name__)

DEFAULT_PLANS = {
    "monthly": {"base": 4900, "extra": 1500},
    "yearly": {"base": 49000, "extra": 15000},
}

TRIAL_PERIOD = timedelta(days=30)
TRIAL_REASON = "30_DAY_TRIAL"
FULL_PRICE_REASON = "full_price"


@dataclass
class PriceQuote:
    base_price_cents: int
    discount_cents: int
    final_price_cents: int
    reason: str
    is_trial: bool = False
    promo: Optional[PromoCode] = None

    def to_response(self) -> dict:
        """Dollar amounts, as the kiosk displays them"""
        return {
            "initialPrice": self.base_price_cents / 100,
            "discount": self.discount_cents / 100,
            "finalPrice": self.final_price_cents / 100,
            "reason": self.reason,
        }


def plan_prices(db: Session, plan_type: str) -> tuple[int, int]:
    """(base, extra device) cents; a subscription_plans row overrides the defaults"""
    plan = BillingRepository.get_plan(db, plan_type)
    if plan:
        return plan.base_price_cents, plan.extra_device_price_cents
    defaults = DEFAULT_PLANS[plan_type]
    return defaults["base"], defaults["extra"]


def base_price(db: Session, plan_type: str, device_count: int) -> int:
    base, extra = plan_prices(db, plan_type)
    return base + max(0, device_count - 1) * extra


def promo_is_usable(promo: Optional[PromoCode], now: datetime) -> bool:
    if promo is None or not promo.active:
        return False
    if promo.valid_until is not None and promo.valid_until <= now:
        return False
    if promo.max_uses is not None and promo.used_count >= promo.max_uses:
        return False
    return True


def promo_discount(promo: PromoCode, price_cents: int) -> int:
    if promo.discount_type == "percentage":
        return price_cents * promo.discount_value // 100
    return promo.discount_value


def in_trial_period(db: Session, merchant_id: str, now: datetime) -> bool:
    """Merchants get their first 30 days after connecting Square for free"""
    connection = SquareConnectionRepository.get_by_merchant(db, merchant_id)
    if not connection or not connection.created_at:
        return False
    return now < connection.created_at + TRIAL_PERIOD


def quote_price(
    db: Session,
    merchant_id: str,
    plan_type: str,
    device_count: int = 1,
    promo_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PriceQuote:
    now = now or utcnow()
    price = base_price(db, plan_type, device_count)

    if in_trial_period(db, merchant_id, now):
        return PriceQuote(price, price, 0, TRIAL_REASON, is_trial=True)

    if promo_code:
        promo = BillingRepository.get_promo_code(db, promo_code)
        if promo_is_usable(promo, now):
            discount = promo_discount(promo, price)
            return PriceQuote(price, discount, max(0, price - discount), f"promo_{promo.code}", promo=promo)
        logger.info(f"Promo code {promo_code} is not valid for merchant {merchant_id}")

    return PriceQuote(price, 0, price, FULL_PRICE_REASON)


def reprice(
    db: Session,
    subscription: Subscription,
    plan_type: str,
    device_count: int,
    now: Optional[datetime] = None,
) -> PriceQuote:
    """
    Price an existing subscription after a plan or device change

    A redeemed promo stays attached to the subscription and is applied to the
    new price without checking its expiry or use limit again. A free
    subscription still inside its trial stays at 0.
    """
    now = now or utcnow()
    price = base_price(db, plan_type, device_count)

    if subscription.is_free and subscription.trial_end_date and now < subscription.trial_end_date:
        return PriceQuote(price, price, 0, TRIAL_REASON, is_trial=True)

    promo = BillingRepository.get_promo_code(db, subscription.promo_code) if subscription.promo_code else None
    if promo:
        discount = min(price, promo_discount(promo, price))
        return PriceQuote(price, discount, price - discount, f"promo_{promo.code}", promo=promo)

    return PriceQuote(price, 0, price, FULL_PRICE_REASON)
