"""Stripe router - Checkout, billing portal, return pages and webhooks"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse
from sqlalchemy.orm import Session

from ...database import get_db
from ...pages import stripe_cancel_page, stripe_portal_return_page, stripe_success_page
from ...utils import isoformat
from ...webhook_security import verify_stripe_webhook
from .repository import BillingRepository
from .schemas import CheckoutSessionRequest, PortalSessionRequest
from .status import analyze_stripe_subscription
from .stripe_service import StripeServiceError, _object_id, stripe_service, upsert_subscription
from .webhook_idempotency import WebhookDeduplicator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["Stripe"])

SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)


def _raise_service_error(e: StripeServiceError):
    raise HTTPException(status_code=e.status_code, detail=e.message) from e


def serialize_stripe_subscription(row) -> dict:
    return {
        "organization_id": row.organization_id,
        "stripe_customer_id": row.stripe_customer_id,
        "stripe_subscription_id": row.stripe_subscription_id,
        "status": row.status,
        "current_period_start": isoformat(row.current_period_start),
        "current_period_end": isoformat(row.current_period_end),
        "trial_end": isoformat(row.trial_end),
        "cancel_at_period_end": bool(row.cancel_at_period_end),
        "cancel_at": isoformat(row.cancel_at),
        "canceled_at": isoformat(row.canceled_at),
    }


# ============================================================================
# CHECKOUT & PORTAL
# ============================================================================


@router.post("/create-checkout-session")
async def create_checkout_session(body: CheckoutSessionRequest, db: Session = Depends(get_db)):
    """Start a Stripe Checkout subscription with the free trial"""
    row = BillingRepository.get_stripe_by_organization(db, body.organization_id)
    customer_id = row.stripe_customer_id if row else None

    try:
        if not customer_id and body.merchant_email:
            customer_id = stripe_service.create_customer(body.merchant_email, body.organization_id)["id"]
        session = stripe_service.create_checkout_session(
            body.organization_id,
            customer_id=customer_id,
            customer_email=body.merchant_email,
            device_id=body.device_id,
        )
    except StripeServiceError as e:
        _raise_service_error(e)

    logger.info(f"✅ Created Stripe checkout session {session.get('id')} for {body.organization_id}")
    return {"checkout_url": session.get("url"), "session_id": session.get("id")}


@router.post("/create-portal-session")
async def create_portal_session(body: PortalSessionRequest, db: Session = Depends(get_db)):
    if not body.organization_id and not body.session_id:
        raise HTTPException(status_code=400, detail="Either organization_id or session_id is required")

    customer_id = None
    if body.organization_id:
        row = BillingRepository.get_stripe_by_organization(db, body.organization_id)
        customer_id = row.stripe_customer_id if row else None

    try:
        if not customer_id and body.session_id:
            session = stripe_service.retrieve_checkout_session(body.session_id)
            customer_id = _object_id(session.get("customer"))
        if not customer_id:
            raise HTTPException(status_code=404, detail="No customer found for this organization")
        portal = stripe_service.create_portal_session(customer_id)
    except StripeServiceError as e:
        _raise_service_error(e)

    return {"portal_url": portal.get("url")}


@router.get("/subscription/status")
async def stripe_subscription_status(
    session_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """Kiosk polls this after checkout; a session_id pulls the fresh subscription from Stripe"""
    if not session_id and not organization_id:
        raise HTTPException(status_code=400, detail="Either session_id or organization_id is required")

    row = None
    if session_id:
        try:
            session = stripe_service.retrieve_checkout_session(session_id)
            subscription_id = _object_id(session.get("subscription"))
            if subscription_id:
                remote = stripe_service.retrieve_subscription(subscription_id)
                session_org = (session.get("metadata") or {}).get("organization_id") or session.get(
                    "client_reference_id"
                )
                row, _ = upsert_subscription(
                    db,
                    remote,
                    organization_id=session_org or organization_id,
                    customer_id=_object_id(session.get("customer")),
                )
        except StripeServiceError as e:
            _raise_service_error(e)

    if row is None and organization_id:
        row = BillingRepository.get_stripe_by_organization(db, organization_id)
    if row is None:
        return {"has_subscription": False, "can_use_kiosk": False, "status": "none", "analysis": "no_subscription"}

    analysis = analyze_stripe_subscription(row)
    return {"has_subscription": True, **analysis.to_dict(), "subscription": serialize_stripe_subscription(row)}


# ============================================================================
# RETURN PAGES
# ============================================================================


@router.get("/success", response_class=HTMLResponse)
async def checkout_success(session_id: Optional[str] = None):
    return HTMLResponse(content=stripe_success_page(session_id))


@router.get("/cancel", response_class=HTMLResponse)
async def checkout_cancel():
    return HTMLResponse(content=stripe_cancel_page())


@router.get("/portal-return", response_class=HTMLResponse)
async def portal_return():
    return HTMLResponse(content=stripe_portal_return_page())


# ============================================================================
# WEBHOOKS
# ============================================================================


def handle_checkout_completed(db: Session, session: dict) -> dict:
    subscription_id = _object_id(session.get("subscription"))
    organization_id = (session.get("metadata") or {}).get("organization_id") or session.get("client_reference_id")
    if not subscription_id or not organization_id:
        return {"handled": False, "reason": "missing_subscription_or_organization"}

    remote = stripe_service.retrieve_subscription(subscription_id)
    row, pending = upsert_subscription(
        db, remote, organization_id=organization_id, customer_id=_object_id(session.get("customer"))
    )
    return {"handled": True, "action": "checkout_completed", "status": row.status if row else None}


def handle_subscription_event(db: Session, remote: dict, event_type: str) -> dict:
    row, pending = upsert_subscription(db, remote)
    if row is None:
        return {"handled": False, "reason": "unknown_organization"}
    if pending:
        logger.info(f"🗓️ Stripe subscription {row.stripe_subscription_id} is set to cancel")
    return {
        "handled": True,
        "action": event_type.rsplit(".", 1)[-1],
        "status": row.status,
        "pending_cancellation": pending,
    }


def handle_stripe_event(db: Session, event: dict) -> dict:
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type == "checkout.session.completed":
        return handle_checkout_completed(db, obj)
    if event_type in SUBSCRIPTION_EVENTS:
        return handle_subscription_event(db, obj, event_type)
    if event_type == "customer.subscription.trial_will_end":
        logger.info(f"⏳ Trial ending soon for Stripe subscription {obj.get('id')}")
        return {"handled": True, "action": "trial_will_end"}

    logger.info(f"Unhandled Stripe webhook type {event_type}")
    return {"handled": False, "event_type": event_type}


@router.post("/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    _, raw_body = await verify_stripe_webhook(request)
    event = json.loads(raw_body.decode("utf-8"))
    event_id = event.get("id")
    event_type = event.get("type")
    logger.info(f"🔔 Stripe webhook {event_id} type={event_type}")

    dedupe = WebhookDeduplicator(db, "stripe")
    if not dedupe.claim(event_id, event_type):
        return {"received": True, "duplicate": True, "event_id": event_id}

    try:
        result = handle_stripe_event(db, event)
    except Exception as e:
        logger.error(f"❌ Stripe webhook {event_id} failed: {e}")
        dedupe.release(event_id)
        return JSONResponse(status_code=500, content={"detail": "Webhook processing failed", "event_id": event_id})

    dedupe.complete(event_id, result)
    return {"received": True, "event_id": event_id, "result": result}
