"""Request schemas for the Square OAuth, catalog, order and payment endpoints"""

import re
import uuid
from typing import Optional

from pydantic import BaseModel, Field, field_validator

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class OrganizationRequest(BaseModel):
    organization_id: str

    @field_validator("organization_id")
    @classmethod
    def validate_organization_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Organization ID is required")
        return v


class LocationSelectRequest(BaseModel):
    state: str
    location_id: str


# ============================================================================
# CATALOG
# ============================================================================


class CatalogUpsertRequest(OrganizationRequest):
    amounts: list[float]
    parent_item_name: str = "Donations"
    parent_item_description: str = "Donation preset amounts"
    parent_item_id: Optional[str] = None  # set when updating an existing item
    parent_item_version: Optional[int] = None  # required by Square for updates

    @field_validator("amounts")
    @classmethod
    def validate_amounts(cls, v: list[float]) -> list[float]:
        if not v:
            raise ValueError("Amounts must be a non-empty array")
        if any(amount <= 0 for amount in v):
            raise ValueError("All amounts must be positive numbers")
        return v


class CatalogDeleteRequest(OrganizationRequest):
    object_id: str


# ============================================================================
# ORDERS & PAYMENTS
# ============================================================================


class Money(BaseModel):
    amount: int
    currency: str = "USD"


class OrderLineItem(BaseModel):
    catalogObjectId: Optional[str] = None
    quantity: str = "1"
    basePriceMoney: Optional[Money] = None
    name: Optional[str] = None


class OrderCreateRequest(OrganizationRequest):
    line_items: Optional[list[OrderLineItem]] = None
    customer_id: Optional[str] = None
    reference_id: Optional[str] = None
    state: str = "OPEN"
    idempotency_key: str = Field(default_factory=lambda: str(uuid.uuid4()))
    is_custom_amount: bool = False
    custom_amount: Optional[float] = None


class PaymentCreateRequest(OrganizationRequest):
    order_id: str
    payment_token: str
    amount: float  # dollars
    idempotency_key: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tip_amount: float = 0  # dollars
    customer_id: Optional[str] = None
    reference_id: Optional[str] = None
    note: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Valid payment amount is required")
        return v

    @field_validator("tip_amount")
    @classmethod
    def validate_tip(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Tip amount cannot be negative")
        return v


class PaymentVoidRequest(OrganizationRequest):
    payment_id: str


class CustomerCreateOrGetRequest(OrganizationRequest):
    email: str
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    phone_number: Optional[str] = None
    reference_id: Optional[str] = None
    note: Optional[str] = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        if not v:
            raise ValueError("Email is required")
        if not EMAIL_PATTERN.match(v):
            raise ValueError("Invalid email format")
        return v


def dollars_to_cents(amount: float) -> int:
    return int(round(amount * 100))
