"""Square subscription webhooks - keeps local subscription rows in step with Square"""

import json
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ...database import get_db
from ...models_billing import Subscription
from ...services.square_connections import SquareConnectionRepository
from ...utils import isoformat, parse_datetime, utcnow
from ...webhook_security import verify_square_webhook
from .repository import BillingRepository
from .status import SubscriptionStatus, detect_square_pending_cancellation, map_square_status
from .webhook_idempotency import WebhookDeduplicator, fallback_event_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/square/webhooks", tags=["Square Webhooks"])

STATUS_EVENTS = {
    "subscription.activated": (SubscriptionStatus.ACTIVE, "activated"),
    "subscription.resumed": (SubscriptionStatus.ACTIVE, "resumed"),
    "subscription.deactivated": (SubscriptionStatus.DEACTIVATED, "deactivated"),
    "subscription.canceled": (SubscriptionStatus.CANCELED, "canceled"),
    "subscription.paused": (SubscriptionStatus.PAUSED, "paused"),
}


def _event_object(event: dict) -> dict:
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    return obj if isinstance(obj, dict) else {}


def _invoice_subscription_id(invoice: dict) -> str:
    """Subscription invoices carry the id directly or on the order metadata"""
    if invoice.get("subscription_id"):
        return invoice["subscription_id"]
    order = invoice.get("order") or {}
    return (order.get("metadata") or {}).get("subscription_id") or ""


def _create_from_remote(db: Session, remote: dict, event: dict) -> dict:
    """Record a subscription created outside the kiosk (e.g. in the Square Dashboard)"""
    connection = None
    if remote.get("location_id"):
        connection = SquareConnectionRepository.get_by_location(db, remote["location_id"])
    if connection is None and event.get("merchant_id"):
        connection = SquareConnectionRepository.get_by_merchant(db, event["merchant_id"])
    if connection is None:
        logger.warning(f"⚠️ No connection for Square subscription {remote.get('id')}, not recording it")
        BillingRepository.log_event(db, None, "created", {"subscription": remote, "linked": False})
        db.commit()
        return {"handled": True, "action": "subscription_created", "linked": False}

    subscription = Subscription(
        organization_id=connection.organization_id,
        merchant_id=connection.merchant_id or event.get("merchant_id"),
        square_subscription_id=remote["id"],
        square_customer_id=remote.get("customer_id"),
        square_card_id=remote.get("card_id"),
        plan_type="monthly",
        device_count=1,
        status=map_square_status(remote.get("status")).value,
        current_period_start=parse_datetime(remote.get("start_date")),
        current_period_end=parse_datetime(remote.get("charged_through_date")),
        canceled_at=parse_datetime(remote.get("canceled_date")),
    )
    db.add(subscription)
    db.flush()
    BillingRepository.log_event(db, subscription, "created", {"subscription": remote, "source": "webhook"})
    db.commit()
    logger.info(f"🆕 Recorded Square subscription {remote['id']} for {connection.organization_id}")
    return {"handled": True, "action": "subscription_created", "status": subscription.status}


def handle_subscription_created(db: Session, remote: dict, event: dict) -> dict:
    subscription = BillingRepository.get_by_square_id(db, remote.get("id"))
    if subscription is None:
        return _create_from_remote(db, remote, event)
    BillingRepository.log_event(db, subscription, "created", {"subscription": remote})
    db.commit()
    return {"handled": True, "action": "subscription_created", "status": subscription.status}


def handle_subscription_updated(db: Session, remote: dict, event: dict) -> dict:
    subscription = BillingRepository.get_by_square_id(db, remote.get("id"))
    if subscription is None:
        return _create_from_remote(db, remote, event)

    new_status = map_square_status(remote.get("status"))
    pending, service_ends_at = detect_square_pending_cancellation(remote)

    subscription.status = new_status.value
    subscription.current_period_start = (
        parse_datetime(remote.get("start_date")) or subscription.current_period_start
    )
    subscription.current_period_end = (
        parse_datetime(remote.get("charged_through_date")) or subscription.current_period_end
    )
    subscription.canceled_at = parse_datetime(remote.get("canceled_date"))

    event_type = "pending_cancellation" if pending else "status_changed"
    BillingRepository.log_event(
        db,
        subscription,
        event_type,
        {"status": new_status.value, "canceled_date": remote.get("canceled_date"), "version": remote.get("version")},
    )
    db.commit()

    if pending:
        logger.info(f"🗓️ Square subscription {remote.get('id')} cancels at {service_ends_at}")
    return {
        "handled": True,
        "action": "subscription_updated",
        "new_status": new_status.value,
        "pending_cancellation": pending,
        "service_ends_at": isoformat(service_ends_at),
    }


def handle_status_event(db: Session, remote: dict, event_type: str) -> dict:
    status, action = STATUS_EVENTS[event_type]
    subscription = BillingRepository.get_by_square_id(db, remote.get("id"))
    if subscription is None:
        logger.warning(f"⚠️ {event_type} for unknown subscription {remote.get('id')}")
        return {"handled": True, "action": action, "found": False}

    subscription.status = status.value
    if status == SubscriptionStatus.CANCELED:
        now = utcnow()
        subscription.canceled_at = subscription.canceled_at or parse_datetime(remote.get("canceled_date")) or now
        subscription.grace_period_start = subscription.grace_period_start or now
    BillingRepository.log_event(db, subscription, action, {"subscription": remote})
    db.commit()
    return {"handled": True, "action": action, "new_status": status.value}


def handle_invoice_payment_made(db: Session, invoice: dict) -> dict:
    subscription = BillingRepository.get_by_square_id(db, _invoice_subscription_id(invoice))
    if subscription is None:
        return {"handled": True, "action": "payment_made", "found": False}

    activated = subscription.status == SubscriptionStatus.PENDING.value
    if activated:
        subscription.status = SubscriptionStatus.ACTIVE.value
    BillingRepository.log_event(db, subscription, "payment_made", {"invoice_id": invoice.get("id")})
    db.commit()
    return {"handled": True, "action": "payment_made", "activated": activated}


def handle_invoice_payment_failed(db: Session, invoice: dict) -> dict:
    subscription = BillingRepository.get_by_square_id(db, _invoice_subscription_id(invoice))
    logger.error(f"❌ Square invoice {invoice.get('id')} payment failed")
    BillingRepository.log_event(db, subscription, "payment_failed", {"invoice_id": invoice.get("id")})
    db.commit()
    return {"handled": True, "action": "payment_failed", "found": subscription is not None}


def handle_payment_updated(db: Session, payment: dict) -> dict:
    if payment.get("status") != "FAILED":
        return {"handled": False, "reason": "payment_not_failed"}

    subscription: Optional[Subscription] = None
    if payment.get("reference_id"):
        subscription = BillingRepository.get_latest_for_organization(db, payment["reference_id"])
    logger.error(f"❌ Square payment {payment.get('id')} failed")
    BillingRepository.log_event(
        db, subscription, "individual_payment_failed", {"payment_id": payment.get("id")}
    )
    db.commit()
    return {"handled": True, "action": "individual_payment_failed"}


def handle_square_event(db: Session, event: dict) -> dict:
    event_type = event.get("type")
    obj = _event_object(event)

    if event_type == "subscription.created" or event_type == "subscription.updated" or event_type in STATUS_EVENTS:
        remote = obj.get("subscription")
        if not isinstance(remote, dict) or not remote.get("id"):
            logger.warning(f"⚠️ {event_type} without a subscription id, ignoring")
            return {"handled": False, "reason": "missing_subscription_id"}
        if event_type == "subscription.created":
            return handle_subscription_created(db, remote, event)
        if event_type == "subscription.updated":
            return handle_subscription_updated(db, remote, event)
        return handle_status_event(db, remote, event_type)
    if event_type == "invoice.payment_made":
        return handle_invoice_payment_made(db, obj.get("invoice") or obj)
    if event_type == "invoice.payment_failed":
        return handle_invoice_payment_failed(db, obj.get("invoice") or obj)
    if event_type == "payment.updated":
        return handle_payment_updated(db, obj.get("payment") or obj)

    logger.info(f"Unhandled Square webhook type {event_type}")
    return {"handled": False, "event_type": event_type}


@router.post("/subscription")
async def square_subscription_webhook(request: Request, db: Session = Depends(get_db)):
    """Signature-verified, deduplicated Square subscription events"""
    started = time.monotonic()
    _, raw_body = await verify_square_webhook(request)

    try:
        event = json.loads(raw_body.decode("utf-8"))
    except ValueError as e:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from e
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Webhook payload must be a JSON object")

    event_id = event.get("event_id") or fallback_event_id(raw_body)
    event_type = event.get("type")
    logger.info(f"🔔 Square webhook {event_id} type={event_type} merchant={event.get('merchant_id')}")

    dedupe = WebhookDeduplicator(db, "square")
    if not dedupe.claim(event_id, event_type):
        return {"received": True, "duplicate": True, "event_id": event_id}

    try:
        result = handle_square_event(db, event)
    except Exception as e:
        logger.error(f"❌ Square webhook {event_id} failed: {e}")
        dedupe.release(event_id)
        return JSONResponse(status_code=500, content={"detail": "Webhook processing failed", "event_id": event_id})

    dedupe.complete(event_id, result)
    processing_time_ms = int((time.monotonic() - started) * 1000)
    logger.info(f"✅ Square webhook {event_id} processed in {processing_time_ms}ms")
    return {"received": True, "event_id": event_id, "processing_time_ms": processing_time_ms, "result": result}
