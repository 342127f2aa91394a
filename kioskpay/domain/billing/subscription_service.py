"""Subscription service - Business logic for kiosk subscriptions billed through Square"""

import logging
import uuid
from datetime import timedelta
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...config import SQUARE_MONTHLY_PLAN_VARIATION_ID, SQUARE_YEARLY_PLAN_VARIATION_ID
from ...models import SquareConnection
from ...models_billing import PromoCode, Subscription
from ...services.square_client import SquareAPIError, SquareClient
from ...services.square_connections import SquareConnectionRepository, access_token_for, require_connection
from ...utils import isoformat, parse_datetime, utcnow
from .pricing import TRIAL_PERIOD, plan_prices, quote_price, reprice
from .repository import BillingRepository
from .schemas import ChangePlanRequest, CreateSubscriptionRequest, PaymentMethodRequest, UpdateSubscriptionRequest
from .status import SubscriptionStatus, analyze_subscription, local_status, map_square_status

logger = logging.getLogger(__name__)

PLAN_NAMES = {"monthly": "Monthly Plan", "yearly": "Yearly Plan"}
DEFAULT_PLAN_VARIATIONS = {
    "monthly": SQUARE_MONTHLY_PLAN_VARIATION_ID,
    "yearly": SQUARE_YEARLY_PLAN_VARIATION_ID,
}

LEGACY_PROMO_CODE = "LEGACY30FREE"
LEGACY_PROMO_VALIDITY = timedelta(days=90)


def serialize_subscription(subscription: Subscription) -> dict:
    return {
        "id": subscription.square_subscription_id,
        "organization_id": subscription.organization_id,
        "merchant_id": subscription.merchant_id,
        "status": subscription.status,
        "plan_type": subscription.plan_type,
        "device_count": subscription.device_count,
        "base_price": (subscription.base_price_cents or 0) / 100,
        "total_price": (subscription.total_price_cents or 0) / 100,
        "promo_code": subscription.promo_code,
        "is_free": subscription.is_free,
        "trial_end_date": isoformat(subscription.trial_end_date),
        "current_period_start": isoformat(subscription.current_period_start),
        "current_period_end": isoformat(subscription.current_period_end),
        "canceled_at": isoformat(subscription.canceled_at),
        "created_at": isoformat(subscription.created_at),
    }


def _phase_pricing(amount_cents: int) -> dict:
    return {"pricing": {"price_money": {"amount": amount_cents, "currency": "USD"}}}


def no_subscription_response() -> dict:
    return {
        "subscription": None,
        "status": "none",
        "analysis": "no_subscription",
        "can_use_kiosk": False,
        "service_ends_at": None,
        "days_remaining": None,
        "grace_message": None,
        "pending_cancellation": False,
    }


def create_legacy_promo(db: Session) -> PromoCode:
    """LEGACY30FREE for merchants who used the kiosk before billing existed"""
    promo = BillingRepository.get_promo_code(db, LEGACY_PROMO_CODE)
    if promo is None:
        promo = PromoCode(code=LEGACY_PROMO_CODE)
        db.add(promo)
    promo.discount_type = "percentage"
    promo.discount_value = 50
    promo.max_uses = 1000
    promo.valid_until = utcnow() + LEGACY_PROMO_VALIDITY
    promo.active = True
    db.commit()
    db.refresh(promo)
    return promo


class SubscriptionService:
    """Service for Square subscription management"""

    def __init__(self, db: Session, client: SquareClient):
        self.db = db
        self.client = client
        self.repo = BillingRepository()

    def _connection_for_merchant(self, merchant_id: str) -> SquareConnection:
        connection = SquareConnectionRepository.get_by_merchant(self.db, merchant_id)
        if not connection:
            raise HTTPException(status_code=404, detail="Merchant not connected")
        return connection

    def plan_variation_id(self, plan_type: str) -> Optional[str]:
        plan = self.repo.get_plan(self.db, plan_type)
        if plan and plan.square_plan_variation_id:
            return plan.square_plan_variation_id
        return DEFAULT_PLAN_VARIATIONS.get(plan_type)

    def plan_info(self, plan_type: str) -> dict:
        base, extra = plan_prices(self.db, plan_type)
        return {
            "plan_type": plan_type,
            "name": PLAN_NAMES.get(plan_type, plan_type),
            "base_price": base / 100,
            "extra_device_price": extra / 100,
        }

    def validate_price(
        self, merchant_id: str, plan_type: str, device_count: int = 1, promo_code: Optional[str] = None
    ) -> dict:
        return quote_price(self.db, merchant_id, plan_type, device_count, promo_code).to_response()

    async def create_subscription(self, request: CreateSubscriptionRequest) -> dict:
        connection = self._connection_for_merchant(request.merchant_id)

        existing = self.repo.get_blocking_subscription(self.db, request.merchant_id)
        if existing:
            raise HTTPException(status_code=409, detail="Active subscription already exists")

        quote = quote_price(self.db, request.merchant_id, request.plan_type, request.device_count, request.promo_code)
        now = utcnow()
        trial_end = now + TRIAL_PERIOD if quote.is_trial else None

        subscription = Subscription(
            organization_id=connection.organization_id,
            merchant_id=request.merchant_id,
            plan_type=request.plan_type,
            device_count=request.device_count,
            promo_code=quote.promo.code if quote.promo else None,
            promo_discount_cents=0 if quote.is_trial else quote.discount_cents,
            base_price_cents=quote.base_price_cents,
            trial_end_date=trial_end,
            current_period_start=now,
        )

        free = (quote.is_trial and not request.source_id) or (not quote.is_trial and quote.final_price_cents == 0)
        if free:
            subscription.square_subscription_id = f"free_{uuid.uuid4()}"
            subscription.total_price_cents = quote.final_price_cents
            subscription.status = SubscriptionStatus.ACTIVE.value
            logger.info(f"Creating free subscription for merchant {request.merchant_id} ({quote.reason})")
        else:
            if not request.source_id:
                raise HTTPException(status_code=400, detail="A card (source_id) is required for a paid subscription")
            recurring_price = quote.base_price_cents if quote.is_trial else quote.final_price_cents
            remote = await self._create_square_subscription(connection, request, recurring_price, quote.is_trial)
            subscription.square_subscription_id = remote["id"]
            subscription.square_customer_id = remote.get("customer_id")
            subscription.square_card_id = remote.get("card_id")
            subscription.total_price_cents = recurring_price
            subscription.status = map_square_status(remote.get("status")).value
            subscription.current_period_start = parse_datetime(remote.get("start_date")) or now
            subscription.current_period_end = parse_datetime(remote.get("charged_through_date"))

        if quote.promo:
            quote.promo.used_count = (quote.promo.used_count or 0) + 1

        self.db.add(subscription)
        self.db.flush()
        self.repo.log_event(
            self.db,
            subscription,
            "created",
            {"reason": quote.reason, "final_price_cents": quote.final_price_cents, "free": free},
        )
        self.db.commit()
        self.db.refresh(subscription)

        logger.info(f"✅ Created subscription {subscription.square_subscription_id} for {request.merchant_id}")
        return {"success": True, "subscription": serialize_subscription(subscription)}

    async def _create_square_subscription(
        self,
        connection: SquareConnection,
        request: CreateSubscriptionRequest,
        recurring_price_cents: int,
        with_trial: bool,
    ) -> dict:
        variation_id = self.plan_variation_id(request.plan_type)
        if not variation_id:
            raise HTTPException(status_code=503, detail=f"No Square plan configured for {request.plan_type}")

        access_token = access_token_for(connection)
        email = request.customer_email or connection.merchant_email
        try:
            customer = await self.client.create_customer(
                access_token,
                {"given_name": email.split("@")[0], "email_address": email} if email else {"given_name": "Kiosk"},
            )
            card = await self.client.create_card(access_token, request.source_id, customer["id"])

            # A trial is a free first billing period ahead of the recurring phase
            phases = []
            if with_trial:
                phases.append({"ordinal": 0, "periods": 1, "plan_phase_pricing": _phase_pricing(0)})
            phases.append({"ordinal": len(phases), "plan_phase_pricing": _phase_pricing(recurring_price_cents)})

            remote = await self.client.create_subscription(
                access_token,
                {
                    "location_id": connection.location_id,
                    "plan_variation_id": variation_id,
                    "customer_id": customer["id"],
                    "card_id": card["id"],
                    "start_date": utcnow().date().isoformat(),
                    "phases": phases,
                    "source": {"name": "ShulPad"},
                },
            )
        except SquareAPIError as e:
            logger.error(f"❌ Square subscription creation failed for {request.merchant_id}: {e}")
            raise e.as_http_exception() from e

        return {**remote, "customer_id": remote.get("customer_id") or customer["id"], "card_id": card["id"]}

    async def get_status(self, merchant_id: str) -> dict:
        """Analyze the merchant's latest subscription, syncing status from Square"""
        subscription = self.repo.get_latest_subscription(self.db, merchant_id)
        if subscription is None:
            return no_subscription_response()

        plan = self.plan_info(subscription.plan_type)
        if subscription.is_free:
            analysis = analyze_subscription(subscription)
            return {**analysis.to_dict(), "subscription": serialize_subscription(subscription), "plan": plan}

        remote = None
        sync_error = None
        connection = SquareConnectionRepository.get_by_merchant(self.db, merchant_id)
        if connection is None:
            sync_error = "Merchant not connected"
        else:
            try:
                remote = await self.client.retrieve_subscription(
                    access_token_for(connection), subscription.square_subscription_id
                )
            except SquareAPIError as e:
                logger.warning(f"⚠️ Square status sync failed for {subscription.square_subscription_id}: {e}")
                sync_error = e.message

        analysis = analyze_subscription(subscription, remote)
        if remote and analysis.status != subscription.status and not analysis.pending_cancellation:
            logger.info(
                f"🔄 Subscription {subscription.square_subscription_id} status {subscription.status} -> {analysis.status}"
            )
            subscription.status = analysis.status
            if analysis.service_ends_at:
                subscription.current_period_end = analysis.service_ends_at
            self.repo.log_event(self.db, subscription, "status_synced", {"status": analysis.status})
            self.db.commit()

        response = {**analysis.to_dict(), "subscription": serialize_subscription(subscription), "plan": plan}
        if sync_error:
            response["sync_error"] = sync_error
        return response

    async def cancel(self, merchant_id: str) -> dict:
        subscription = self.repo.get_blocking_subscription(self.db, merchant_id)
        if subscription is None:
            raise HTTPException(status_code=404, detail="No active subscription found")

        now = utcnow()
        if subscription.is_free:
            subscription.status = SubscriptionStatus.CANCELED.value
            subscription.canceled_at = now
            subscription.grace_period_start = now
            self.repo.log_event(self.db, subscription, "canceled", {"reason": "user_requested", "free": True})
            self.db.commit()
            logger.info(f"Canceled free subscription {subscription.square_subscription_id}")
            return {"success": True, "subscription": serialize_subscription(subscription)}

        connection = self._connection_for_merchant(merchant_id)
        try:
            remote = await self.client.cancel_subscription(
                access_token_for(connection), subscription.square_subscription_id
            )
        except SquareAPIError as e:
            raise e.as_http_exception() from e

        subscription.status = SubscriptionStatus.CANCELED.value
        subscription.canceled_at = parse_datetime(remote.get("canceled_date")) or now
        subscription.grace_period_start = now
        subscription.current_period_end = (
            parse_datetime(remote.get("charged_through_date")) or subscription.current_period_end
        )
        self.repo.log_event(
            self.db,
            subscription,
            "canceled",
            {"reason": "user_requested", "canceled_date": remote.get("canceled_date")},
        )
        self.db.commit()

        analysis = analyze_subscription(subscription)
        logger.info(f"✅ Canceled subscription {subscription.square_subscription_id}, service ends {analysis.service_ends_at}")
        return {
            "success": True,
            "subscription": serialize_subscription(subscription),
            "service_ends_at": isoformat(analysis.service_ends_at),
            "grace_message": analysis.grace_message,
        }

    def _paid_subscription_for_organization(self, organization_id: str) -> Subscription:
        subscription = self.repo.get_current_for_organization(self.db, organization_id)
        if subscription is None:
            raise HTTPException(status_code=404, detail="No active subscription found")
        if subscription.is_free:
            raise HTTPException(status_code=400, detail="Free subscriptions are not managed through Square")
        return subscription

    async def _set_paused(self, organization_id: str, paused: bool) -> dict:
        subscription = self._paid_subscription_for_organization(organization_id)
        connection = require_connection(self.db, organization_id)
        access_token = access_token_for(connection)
        try:
            if paused:
                remote = await self.client.pause_subscription(access_token, subscription.square_subscription_id)
            else:
                remote = await self.client.resume_subscription(access_token, subscription.square_subscription_id)
        except SquareAPIError as e:
            raise e.as_http_exception() from e

        status = SubscriptionStatus.PAUSED if paused else SubscriptionStatus.ACTIVE
        subscription.status = status.value
        self.repo.log_event(
            self.db, subscription, "paused" if paused else "resumed", {"remote_status": remote.get("status")}
        )
        self.db.commit()
        logger.info(f"Subscription {subscription.square_subscription_id} {status.value}")
        return {"success": True, "subscription": serialize_subscription(subscription)}

    async def pause(self, organization_id: str) -> dict:
        return await self._set_paused(organization_id, True)

    async def resume(self, organization_id: str) -> dict:
        return await self._set_paused(organization_id, False)

    async def change_plan(self, request: ChangePlanRequest) -> dict:
        subscription = self._paid_subscription_for_organization(request.organization_id)
        return await self._apply_change(subscription, request.new_plan_type, request.new_device_count)

    async def update_subscription(self, request: UpdateSubscriptionRequest) -> dict:
        """Plan or device count change by merchant; free subscriptions are repriced locally"""
        subscription = self.repo.get_blocking_subscription(self.db, request.merchant_id)
        if subscription is None:
            raise HTTPException(status_code=404, detail="No active subscription found")
        return await self._apply_change(subscription, request.new_plan_type, request.new_device_count)

    async def _apply_change(
        self, subscription: Subscription, new_plan_type: Optional[str], new_device_count: Optional[int]
    ) -> dict:
        plan_type = new_plan_type or subscription.plan_type
        device_count = new_device_count or subscription.device_count
        plan_changed = plan_type != subscription.plan_type
        devices_changed = device_count != subscription.device_count
        if not plan_changed and not devices_changed:
            raise HTTPException(status_code=400, detail="No changes requested")

        quote = reprice(self.db, subscription, plan_type, device_count)
        if not subscription.is_free:
            await self._reprice_square_subscription(subscription, plan_type, quote.final_price_cents, plan_changed)

        change = {
            "from": subscription.plan_type,
            "to": plan_type,
            "old_devices": subscription.device_count,
            "new_devices": device_count,
            "total_price_cents": quote.final_price_cents,
        }
        subscription.plan_type = plan_type
        subscription.device_count = device_count
        subscription.base_price_cents = quote.base_price_cents
        subscription.promo_discount_cents = 0 if quote.is_trial else quote.discount_cents
        subscription.total_price_cents = quote.final_price_cents
        self.repo.log_event(self.db, subscription, "plan_changed", change)
        self.db.commit()
        logger.info(
            f"✅ Changed {subscription.square_subscription_id}: {change['from']} x{change['old_devices']} -> "
            f"{plan_type} x{device_count} at {quote.final_price_cents} cents"
        )
        return {"success": True, "subscription": serialize_subscription(subscription)}

    async def _reprice_square_subscription(
        self, subscription: Subscription, plan_type: str, price_cents: int, plan_changed: bool
    ):
        """Swap the plan variation, then override the price unless it equals the single-device list price"""
        variation_id = self.plan_variation_id(plan_type)
        if plan_changed and not variation_id:
            raise HTTPException(status_code=503, detail=f"No Square plan configured for {plan_type}")

        connection = require_connection(self.db, subscription.organization_id)
        access_token = access_token_for(connection)
        list_price, _ = plan_prices(self.db, plan_type)
        current_list_price, _ = plan_prices(self.db, subscription.plan_type)
        overridden = subscription.total_price_cents != current_list_price
        try:
            if plan_changed:
                await self.client.swap_plan(access_token, subscription.square_subscription_id, variation_id)
            if price_cents != list_price or overridden:
                remote = await self.client.retrieve_subscription(access_token, subscription.square_subscription_id)
                await self.client.update_subscription(
                    access_token,
                    subscription.square_subscription_id,
                    {
                        "price_override_money": {"amount": price_cents, "currency": "USD"},
                        "version": remote.get("version"),
                    },
                )
        except SquareAPIError as e:
            logger.error(f"❌ Square plan change failed for {subscription.square_subscription_id}: {e}")
            raise e.as_http_exception() from e

    async def update_payment_method(self, request: PaymentMethodRequest) -> dict:
        subscription = self.repo.get_blocking_subscription(self.db, request.merchant_id)
        if subscription is None:
            raise HTTPException(status_code=404, detail="No active subscription found")
        if subscription.is_free:
            raise HTTPException(status_code=400, detail="Cannot update payment method for free subscription")
        if not subscription.square_customer_id:
            raise HTTPException(status_code=400, detail="Subscription has no Square customer")

        connection = self._connection_for_merchant(request.merchant_id)
        access_token = access_token_for(connection)
        try:
            card = await self.client.create_card(access_token, request.source_id, subscription.square_customer_id)
            remote = await self.client.retrieve_subscription(access_token, subscription.square_subscription_id)
            await self.client.update_subscription(
                access_token,
                subscription.square_subscription_id,
                {"card_id": card["id"], "version": remote.get("version")},
            )
        except SquareAPIError as e:
            logger.error(f"❌ Card update failed for {subscription.square_subscription_id}: {e}")
            raise e.as_http_exception() from e

        subscription.square_card_id = card["id"]
        self.repo.log_event(self.db, subscription, "payment_method_updated", {"new_card_id": card["id"]})
        self.db.commit()
        logger.info(f"💳 Updated card on {subscription.square_subscription_id}")
        return {
            "success": True,
            "card": {"id": card["id"], "brand": card.get("card_brand"), "last_four": card.get("last_4")},
        }

    async def list_payment_methods(self, merchant_id: str) -> dict:
        """Cards on file for the subscription's Square customer; the charged card is marked default"""
        subscription = self.repo.get_blocking_subscription(self.db, merchant_id)
        if subscription is None:
            return {"payment_methods": [], "message": "No active subscription found"}
        if not subscription.square_customer_id:
            return {"payment_methods": []}

        connection = SquareConnectionRepository.get_by_merchant(self.db, merchant_id)
        if connection is None:
            return {"payment_methods": [], "message": "Merchant not connected"}

        try:
            cards = await self.client.list_cards(access_token_for(connection), subscription.square_customer_id)
        except SquareAPIError as e:
            logger.warning(f"⚠️ Could not list cards for {merchant_id}: {e}")
            return {"payment_methods": [], "error": "Failed to fetch payment methods"}

        return {
            "payment_methods": [
                {
                    "id": card.get("id"),
                    "brand": card.get("card_brand"),
                    "last_four": card.get("last_4"),
                    "exp_month": card.get("exp_month"),
                    "exp_year": card.get("exp_year"),
                    "billing_postal_code": (card.get("billing_address") or {}).get("postal_code"),
                    "is_default": card.get("id") == subscription.square_card_id,
                }
                for card in cards
            ]
        }

    def history(self, merchant_id: str) -> dict:
        subscriptions = self.repo.list_for_merchant(self.db, merchant_id)
        return {
            "subscriptions": [
                {
                    **serialize_subscription(subscription),
                    "events": [
                        {
                            "event_type": event.event_type,
                            "event_data": event.event_data,
                            "created_at": isoformat(event.created_at),
                        }
                        for event in subscription.events
                    ],
                }
                for subscription in subscriptions
            ]
        }

    def merchant_email(self, merchant_id: str) -> dict:
        connection = self._connection_for_merchant(merchant_id)
        return {"merchant_email": connection.merchant_email, "has_email": bool(connection.merchant_email)}

    def kiosk_status(self, organization_id: str, device_id: Optional[str] = None) -> dict:
        """Launch check: may this kiosk take donations, and is it within the device limit"""
        subscription = self.repo.get_latest_for_organization(self.db, organization_id)
        if subscription is None:
            connection = SquareConnectionRepository.find_by_organization(self.db, organization_id)
            if connection is not None and connection.organization_id != organization_id:
                organization_id = connection.organization_id
                subscription = self.repo.get_latest_for_organization(self.db, organization_id)

        if device_id:
            self.repo.register_device(self.db, organization_id, device_id)
        device_count = self.repo.count_devices(self.db, organization_id)

        if subscription is None:
            return {
                "can_use_kiosk": False,
                "status": "none",
                "analysis": "no_subscription",
                "device_count": device_count,
                "device_limit": 0,
                "upgrade_needed": False,
            }

        analysis = analyze_subscription(subscription)
        device_limit = subscription.device_count or 1
        upgrade_needed = device_count > device_limit
        if upgrade_needed:
            logger.warning(f"⚠️ {organization_id} has {device_count} devices on a {device_limit}-device plan")

        return {
            "can_use_kiosk": analysis.can_use_kiosk and not upgrade_needed,
            "status": local_status(subscription.status).value,
            "analysis": analysis.analysis,
            "device_count": device_count,
            "device_limit": device_limit,
            "upgrade_needed": upgrade_needed,
            "grace_message": analysis.grace_message,
        }
