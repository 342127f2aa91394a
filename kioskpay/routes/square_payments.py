"""
Square orders, payments and customers for kiosk donations
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..database import get_db
from ..models import PaymentRecord
from ..schemas import (
    CustomerCreateOrGetRequest,
    OrderCreateRequest,
    PaymentCreateRequest,
    PaymentVoidRequest,
    dollars_to_cents,
)
from ..services.square_client import SquareAPIError, SquareClient, get_square_client
from ..services.square_connections import access_token_for, require_connection

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/square", tags=["square-payments"])
payment_router = APIRouter(prefix="/api/payment", tags=["square-payments"])

CUSTOM_AMOUNT_VARIATION_NAME = "Custom Amount"
DONOR_NOTE = "Kiosk donor"


async def _custom_amount_line_item(client: SquareClient, access_token: str, custom_amount: float) -> dict:
    """Price override on the catalog's variable-priced "Custom Amount" variation, or an ad-hoc item"""
    amount_money = {"amount": dollars_to_cents(custom_amount), "currency": "USD"}
    try:
        variations = await client.list_catalog(access_token, types="ITEM_VARIATION")
    except SquareAPIError as e:
        logger.warning(f"⚠️ Could not list catalog variations, using ad-hoc item: {e}")
        variations = []

    variation = next(
        (
            obj
            for obj in variations
            if (obj.get("item_variation_data") or {}).get("name") == CUSTOM_AMOUNT_VARIATION_NAME
            and (obj.get("item_variation_data") or {}).get("pricing_type") == "VARIABLE_PRICING"
        ),
        None,
    )
    if variation:
        logger.info(f"Using Custom Amount variation {variation.get('id')} for ${custom_amount}")
        return {
            "quantity": "1",
            "catalog_object_id": variation["id"],
            "base_price_money": amount_money,
            "note": f"Custom donation amount: ${custom_amount:g}",
        }

    return {
        "quantity": "1",
        "name": f"Custom Donation - ${custom_amount:g}",
        "base_price_money": amount_money,
        "note": "Custom donation amount",
    }


def _preset_line_items(body: OrderCreateRequest) -> list:
    line_items = []
    for item in body.line_items:
        if item.catalogObjectId:
            line_items.append({"quantity": item.quantity or "1", "catalog_object_id": item.catalogObjectId})
            continue
        if not item.basePriceMoney or not item.basePriceMoney.amount or not item.name:
            raise HTTPException(
                status_code=400,
                detail="Each line item must have either catalogObjectId or both basePriceMoney and name",
            )
        line_items.append(
            {
                "quantity": item.quantity or "1",
                "name": item.name,
                "base_price_money": {
                    "amount": item.basePriceMoney.amount,
                    "currency": item.basePriceMoney.currency or "USD",
                },
            }
        )
    return line_items


@router.post("/orders/create")
async def create_order(
    body: OrderCreateRequest,
    db: Session = Depends(get_db),
    client: SquareClient = Depends(get_square_client),
):
    connection = require_connection(db, body.organization_id)
    access_token = access_token_for(connection)

    if body.is_custom_amount and body.custom_amount and body.custom_amount > 0:
        line_items = [await _custom_amount_line_item(client, access_token, body.custom_amount)]
    elif body.line_items:
        line_items = _preset_line_items(body)
    else:
        raise HTTPException(status_code=400, detail="Either line_items or custom_amount must be provided")

    order = {"location_id": connection.location_id, "line_items": line_items, "state": body.state}
    if body.customer_id:
        order["customer_id"] = body.customer_id
    if body.reference_id:
        order["reference_id"] = body.reference_id

    try:
        created = await client.create_order(access_token, order, body.idempotency_key)
    except SquareAPIError as e:
        raise e.as_http_exception() from e

    logger.info(
        f"✅ Created order {created.get('id')} for {body.organization_id} "
        f"({len(line_items)} line items, custom={body.is_custom_amount})"
    )
    return {
        "order_id": created.get("id"),
        "order": created,
        "total_money": created.get("total_money"),
        "line_items_count": len(line_items),
    }


def _record_payment(db: Session, organization_id: str, payment: dict):
    """Best-effort local copy; failures never fail the payment"""
    try:
        db.add(
            PaymentRecord(
                organization_id=organization_id,
                square_payment_id=payment.get("id"),
                square_order_id=payment.get("order_id"),
                amount_cents=(payment.get("amount_money") or {}).get("amount", 0),
                tip_cents=(payment.get("tip_money") or {}).get("amount", 0),
                status=payment.get("status"),
                payment_data=json.dumps(payment),
            )
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"⚠️ Failed to log payment record {payment.get('id')}: {e}")


@router.post("/payments-create-with-order")
async def create_payment_with_order(
    body: PaymentCreateRequest,
    db: Session = Depends(get_db),
    client: SquareClient = Depends(get_square_client),
):
    connection = require_connection(db, body.organization_id)

    payment_request = {
        "idempotency_key": body.idempotency_key,
        "source_id": body.payment_token,
        "amount_money": {"amount": dollars_to_cents(body.amount), "currency": "USD"},
        "order_id": body.order_id,
        "location_id": connection.location_id,
        "autocomplete": True,
    }
    if body.tip_amount > 0:
        payment_request["tip_money"] = {"amount": dollars_to_cents(body.tip_amount), "currency": "USD"}
    for field in ("customer_id", "reference_id", "note"):
        value = getattr(body, field)
        if value:
            payment_request[field] = value

    try:
        payment = await client.create_payment(access_token_for(connection), payment_request)
    except SquareAPIError as e:
        raise e.as_http_exception() from e

    logger.info(f"✅ Payment {payment.get('id')} {payment.get('status')} for order {body.order_id}")
    _record_payment(db, body.organization_id, payment)

    card_details = payment.get("card_details")
    return {
        "success": True,
        "payment_id": payment.get("id"),
        "order_id": payment.get("order_id"),
        "status": payment.get("status"),
        "amount_money": payment.get("amount_money"),
        "total_money": payment.get("total_money"),
        "tip_money": payment.get("tip_money"),
        "receipt_url": payment.get("receipt_url"),
        "receipt_number": payment.get("receipt_number"),
        "created_at": payment.get("created_at"),
        "card_details": {
            "last_4": (card_details.get("card") or {}).get("last_4"),
            "card_brand": (card_details.get("card") or {}).get("card_brand"),
            "entry_method": card_details.get("entry_method"),
        }
        if card_details
        else None,
    }


@payment_router.post("/void")
async def void_payment(
    body: PaymentVoidRequest,
    db: Session = Depends(get_db),
    client: SquareClient = Depends(get_square_client),
):
    """Void a card-verification authorization; the kiosk treats this as fire-and-forget"""
    connection = require_connection(db, body.organization_id)
    try:
        await client.cancel_payment(access_token_for(connection), body.payment_id)
        logger.info(f"Voided payment {body.payment_id}")
    except SquareAPIError as e:
        logger.warning(f"⚠️ Failed to void payment {body.payment_id}: {e}")
    return {"success": True}


@router.post("/customers/create-or-get")
async def create_or_get_customer(
    body: CustomerCreateOrGetRequest,
    db: Session = Depends(get_db),
    client: SquareClient = Depends(get_square_client),
):
    connection = require_connection(db, body.organization_id)
    access_token = access_token_for(connection)

    try:
        existing = await client.search_customers_by_email(access_token, body.email)
    except SquareAPIError as e:
        logger.warning(f"⚠️ Customer search failed, will create new: {e}")
        existing = []

    if existing:
        customer = existing[0]
        logger.info(f"Found existing customer {customer.get('id')}")
        return {"customer_id": customer.get("id"), "customer": customer, "created": False}

    customer_data = {"email_address": body.email}
    for field in ("given_name", "family_name", "phone_number", "reference_id"):
        value = getattr(body, field)
        if value:
            customer_data[field] = value
    customer_data["note"] = f"{DONOR_NOTE} - {body.note}" if body.note else DONOR_NOTE

    try:
        customer = await client.create_customer(access_token, customer_data)
    except SquareAPIError as e:
        raise e.as_http_exception() from e

    logger.info(f"✅ Created customer {customer.get('id')}")
    return {"customer_id": customer.get("id"), "customer": customer, "created": True}
