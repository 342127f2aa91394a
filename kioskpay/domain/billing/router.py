"""Billing router - FastAPI endpoints for kiosk subscriptions billed through Square"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from ...config import ADMIN_API_KEY
from ...database import get_db
from ...rate_limiter import create_rate_limiter
from ...services.square_client import SquareClient, get_square_client
from ...utils import isoformat
from .schemas import (
    PLAN_TYPES,
    ChangePlanRequest,
    CreateSubscriptionRequest,
    MerchantRequest,
    OrganizationSubscriptionRequest,
    PaymentMethodRequest,
    UpdateSubscriptionRequest,
)
from .subscription_service import SubscriptionService, create_legacy_promo

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscriptions", tags=["Subscriptions"])
kiosk_router = APIRouter(prefix="/api/subscription", tags=["Subscriptions"])
admin_router = APIRouter(prefix="/api/admin", tags=["Admin"])

rate_limit_validate_price = create_rate_limiter(limit=60, window_seconds=60, key_prefix="validate_price")


def get_subscription_service(
    db: Session = Depends(get_db),
    client: SquareClient = Depends(get_square_client),
) -> SubscriptionService:
    """Dependency injection for SubscriptionService"""
    return SubscriptionService(db, client)


def verify_admin_key(x_admin_key: Optional[str] = Header(default=None)):
    if not ADMIN_API_KEY or x_admin_key != ADMIN_API_KEY:
        logger.warning("🚫 Admin endpoint called without a valid X-Admin-Key")
        raise HTTPException(status_code=401, detail="Unauthorized")


# ============================================================================
# SUBSCRIPTION MANAGEMENT
# ============================================================================


@router.get("/validate-price")
async def validate_price(
    merchant_id: str = Query(...),
    plan_type: str = Query(...),
    device_count: int = Query(1, ge=1),
    promo_code: Optional[str] = None,
    service: SubscriptionService = Depends(get_subscription_service),
    _: None = Depends(rate_limit_validate_price),
):
    """Quote a plan price, including trial and promo discounts"""
    if plan_type not in PLAN_TYPES:
        raise HTTPException(status_code=400, detail="Invalid plan_type. Must be 'monthly' or 'yearly'.")
    return service.validate_price(merchant_id, plan_type, device_count, promo_code)


@router.post("/create")
async def create_subscription(
    body: CreateSubscriptionRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.create_subscription(body)


@router.get("/status")
async def subscription_status(
    merchant_id: str = Query(...),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Subscription analysis for the merchant's management screen"""
    return await service.get_status(merchant_id)


@router.post("/cancel")
async def cancel_subscription(
    body: MerchantRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.cancel(body.merchant_id)


@router.post("/pause")
async def pause_subscription(
    body: OrganizationSubscriptionRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.pause(body.organization_id)


@router.post("/resume")
async def resume_subscription(
    body: OrganizationSubscriptionRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.resume(body.organization_id)


@router.post("/change-plan")
async def change_plan(
    body: ChangePlanRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.change_plan(body)


@router.post("/update")
async def update_subscription(
    body: UpdateSubscriptionRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Change plan type or device count; used when the kiosk reports upgrade_needed"""
    return await service.update_subscription(body)


@router.post("/payment-method")
async def update_payment_method(
    body: PaymentMethodRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.update_payment_method(body)


@router.get("/payment-methods")
async def list_payment_methods(
    merchant_id: str = Query(...),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.list_payment_methods(merchant_id)


@router.get("/history")
async def subscription_history(
    merchant_id: str = Query(...),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.history(merchant_id)


@router.get("/merchant-email")
async def merchant_email(
    merchant_id: str = Query(...),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.merchant_email(merchant_id)


# ============================================================================
# KIOSK LAUNCH CHECK
# ============================================================================


@kiosk_router.get("/status")
async def kiosk_subscription_status(
    organization_id: str = Query(...),
    device_id: Optional[str] = None,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Called by the kiosk on launch; registers the device and checks the device limit"""
    return service.kiosk_status(organization_id, device_id)


# ============================================================================
# ADMIN
# ============================================================================


@admin_router.post("/promo-codes/legacy", dependencies=[Depends(verify_admin_key)])
async def create_legacy_promo_code(db: Session = Depends(get_db)):
    promo = create_legacy_promo(db)
    logger.info(f"✅ Legacy promo code {promo.code} active until {promo.valid_until}")
    return {
        "success": True,
        "promo_code": promo.code,
        "discount_type": promo.discount_type,
        "discount_value": promo.discount_value,
        "max_uses": promo.max_uses,
        "valid_until": isoformat(promo.valid_until),
    }
