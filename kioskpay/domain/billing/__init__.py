"""Billing domain - kiosk subscriptions through Square and Stripe"""

from .router import admin_router, kiosk_router
from .router import router as subscriptions_router
from .square_webhooks import router as square_webhooks_router
from .stripe_router import router as stripe_billing_router

__all__ = [
    "admin_router",
    "kiosk_router",
    "square_webhooks_router",
    "stripe_billing_router",
    "subscriptions_router",
]
