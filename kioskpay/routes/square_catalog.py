"""
Square catalog endpoints
Preset donation amounts are stored as FIXED_PRICING variations of a "Donations" item
"""
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..schemas import CatalogDeleteRequest, CatalogUpsertRequest, dollars_to_cents
from ..services.square_client import SquareAPIError, SquareClient, get_square_client
from ..services.square_connections import access_token_for, require_connection

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/square/catalog", tags=["square-catalog"])

DONATION_ITEM_NAME = "Donations"


def format_amount(amount: float) -> str:
    return f"${amount:.2f}"


def _variation_entry(variation: dict, parent_id: str) -> Optional[dict]:
    variation_data = variation.get("item_variation_data") or {}
    price_money = variation_data.get("price_money")
    if not price_money:
        return None
    amount = price_money.get("amount", 0) / 100
    return {
        "id": variation.get("id"),
        "parent_id": parent_id,
        "name": variation_data.get("name"),
        "amount": amount,
        "formatted_amount": format_amount(amount),
        "type": "preset",
    }


def _variations_for(item: dict, objects: list) -> list:
    """Variations of an item, from related objects or inlined in item_data"""
    related = [
        obj
        for obj in objects
        if obj.get("type") == "ITEM_VARIATION"
        and (obj.get("item_variation_data") or {}).get("item_id") == item.get("id")
    ]
    if related:
        return related
    return (item.get("item_data") or {}).get("variations") or []


def extract_donation_items(objects: list) -> list:
    """Flatten catalog objects into the preset amounts shown on the kiosk"""
    items = [obj for obj in objects if obj.get("type") == "ITEM" and obj.get("item_data")]

    donation_item = next((item for item in items if item["item_data"].get("name") == DONATION_ITEM_NAME), None)
    candidates = [donation_item] if donation_item else []
    if not candidates:
        # Fall back to any item that looks donation-related
        candidates = [
            item
            for item in items
            if "donation" in (item["item_data"].get("name") or "").lower()
            or "donation" in (item["item_data"].get("description") or "").lower()
        ]

    processed = []
    for item in candidates:
        for variation in _variations_for(item, objects):
            entry = _variation_entry(variation, item["id"])
            if entry:
                processed.append(entry)
    return processed


def build_donation_item(body: CatalogUpsertRequest) -> dict:
    item_id = body.parent_item_id or f"#Donations_{uuid.uuid4().hex[:8]}"
    variations = [
        {
            "type": "ITEM_VARIATION",
            "id": f"#Donation_{amount:g}_{index}".replace(".", "_"),
            "present_at_all_locations": True,
            "item_variation_data": {
                "item_id": item_id,
                "name": f"${amount:g} Donation",
                "pricing_type": "FIXED_PRICING",
                "price_money": {"amount": dollars_to_cents(amount), "currency": "USD"},
            },
        }
        for index, amount in enumerate(body.amounts)
    ]
    catalog_object = {
        "type": "ITEM",
        "id": item_id,
        "present_at_all_locations": True,
        "item_data": {
            "name": body.parent_item_name,
            "description": body.parent_item_description,
            "variations": variations,
        },
    }
    if body.parent_item_id and body.parent_item_version is not None:
        catalog_object["version"] = body.parent_item_version
    return catalog_object


@router.get("/list")
async def list_donation_items(
    organization_id: str = Query(...),
    item_id: Optional[str] = None,
    db: Session = Depends(get_db),
    client: SquareClient = Depends(get_square_client),
):
    connection = require_connection(db, organization_id)
    access_token = access_token_for(connection)

    try:
        if item_id:
            data = await client.retrieve_catalog_object(access_token, item_id)
            objects = [data["object"]] if data.get("object") else []
        else:
            data = await client.search_catalog_items(access_token, DONATION_ITEM_NAME)
            objects = data.get("objects") or []
        objects = objects + (data.get("related_objects") or [])
    except SquareAPIError as e:
        raise e.as_http_exception() from e

    donation_items = extract_donation_items(objects)
    logger.info(f"Retrieved {len(donation_items)} donation items for {organization_id}")
    return {"donation_items": donation_items, "raw_items": objects}


@router.post("/upsert")
async def upsert_donation_item(
    body: CatalogUpsertRequest,
    db: Session = Depends(get_db),
    client: SquareClient = Depends(get_square_client),
):
    connection = require_connection(db, body.organization_id)
    logger.info(
        f"Creating/updating donation catalog item for {body.organization_id} "
        f"({len(body.amounts)} amounts, update={bool(body.parent_item_id)})"
    )

    try:
        data = await client.upsert_catalog_object(access_token_for(connection), build_donation_item(body))
    except SquareAPIError as e:
        raise e.as_http_exception() from e

    catalog_object = data.get("catalog_object") or {}
    item_data = catalog_object.get("item_data") or {}
    variations = []
    for variation in item_data.get("variations") or []:
        variation_data = variation.get("item_variation_data") or {}
        amount = (variation_data.get("price_money") or {}).get("amount", 0) / 100
        variations.append(
            {
                "id": variation.get("id"),
                "name": variation_data.get("name"),
                "amount": amount,
                "formatted_amount": format_amount(amount),
            }
        )

    return {
        "parent_item_id": catalog_object.get("id"),
        "parent_item_name": item_data.get("name"),
        "variations": variations,
        "id_mappings": data.get("id_mappings") or [],
        "created_at": catalog_object.get("created_at"),
        "updated_at": catalog_object.get("updated_at"),
        "version": catalog_object.get("version"),
    }


@router.post("/delete")
async def delete_catalog_object(
    body: CatalogDeleteRequest,
    db: Session = Depends(get_db),
    client: SquareClient = Depends(get_square_client),
):
    connection = require_connection(db, body.organization_id)
    try:
        data = await client.delete_catalog_object(access_token_for(connection), body.object_id)
    except SquareAPIError as e:
        raise e.as_http_exception() from e

    logger.info(f"Deleted catalog object {body.object_id} for {body.organization_id}")
    return {"success": True, "deleted_object_ids": data.get("deleted_object_ids") or []}
