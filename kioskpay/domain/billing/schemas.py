"""Billing domain schemas - Pydantic models for validation"""

from typing import Optional

from pydantic import BaseModel, field_validator

PLAN_TYPES = {"monthly", "yearly"}


def _validate_plan_type(v: str) -> str:
    if v not in PLAN_TYPES:
        raise ValueError("plan_type must be 'monthly' or 'yearly'")
    return v


class CreateSubscriptionRequest(BaseModel):
    """Schema for starting a kiosk subscription billed through Square"""

    merchant_id: str
    plan_type: str = "monthly"
    device_count: int = 1
    customer_email: Optional[str] = None
    promo_code: Optional[str] = None
    source_id: Optional[str] = None  # card nonce from the Square In-App Payments SDK

    @field_validator("plan_type")
    @classmethod
    def validate_plan_type(cls, v: str) -> str:
        return _validate_plan_type(v)

    @field_validator("device_count")
    @classmethod
    def validate_device_count(cls, v: int) -> int:
        if v < 1:
            raise ValueError("device_count must be at least 1")
        return v


class MerchantRequest(BaseModel):
    merchant_id: str


class OrganizationSubscriptionRequest(BaseModel):
    organization_id: str


class PlanChangeFields(BaseModel):
    """Either field may be omitted to keep the current value"""

    new_plan_type: Optional[str] = None
    new_device_count: Optional[int] = None

    @field_validator("new_plan_type")
    @classmethod
    def validate_plan_type(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _validate_plan_type(v)

    @field_validator("new_device_count")
    @classmethod
    def validate_device_count(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("new_device_count must be at least 1")
        return v


class ChangePlanRequest(PlanChangeFields):
    organization_id: str


class UpdateSubscriptionRequest(PlanChangeFields):
    merchant_id: str


class PaymentMethodRequest(BaseModel):
    """Replace the card a paid subscription is charged to"""

    merchant_id: str
    source_id: str  # card nonce from the Square In-App Payments SDK

    @field_validator("merchant_id", "source_id")
    @classmethod
    def validate_required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("field is required")
        return v


class CheckoutSessionRequest(BaseModel):
    """Schema for creating a Stripe Checkout session"""

    organization_id: str
    merchant_email: Optional[str] = None
    device_id: Optional[str] = None

    @field_validator("organization_id")
    @classmethod
    def validate_organization_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("organization_id is required")
        return v


class PortalSessionRequest(BaseModel):
    organization_id: Optional[str] = None
    session_id: Optional[str] = None
