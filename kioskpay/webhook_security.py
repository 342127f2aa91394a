"""
Webhook Security Module

Signature verification for the Square and Stripe webhook endpoints.
- Square: base64 HMAC-SHA256 over notification URL + raw body
- Stripe: verified by the Stripe SDK (timestamped v1 signatures)
"""

import base64
import hashlib
import hmac
import logging
import time
from typing import Optional

import stripe
from fastapi import HTTPException, Request

from .config import (
    SQUARE_WEBHOOK_NOTIFICATION_URL,
    SQUARE_WEBHOOK_SIGNATURE_KEY,
    STRIPE_WEBHOOK_SECRET,
)

logger = logging.getLogger(__name__)

SQUARE_SIGNATURE_HEADER = "x-square-hmacsha256-signature"


class WebhookVerificationError(Exception):
    """Raised when webhook signature verification fails"""

    pass


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time"""
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def compute_hmac_sha256_base64(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload and return base64 encoded"""
    signature = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
    return base64.b64encode(signature).decode("utf-8")


def verify_square_signature(
    body: bytes,
    signature: Optional[str],
    notification_url: str,
    signature_key: Optional[str] = None,
) -> bool:
    """
    Verify Square webhook signature
    https://developer.squareup.com/docs/webhooks/step3validate

    Square signs HMAC-SHA256(signature_key, notification_url + request_body)
    """
    key = signature_key if signature_key is not None else SQUARE_WEBHOOK_SIGNATURE_KEY
    if not key:
        logger.error("❌ SQUARE_WEBHOOK_SIGNATURE_KEY not configured, rejecting webhook")
        return False
    if not signature:
        logger.warning("🚫 Square webhook missing signature header")
        return False

    expected = compute_hmac_sha256_base64(key, notification_url.encode("utf-8") + body)
    is_valid = constant_time_compare(expected, signature)
    if not is_valid:
        logger.warning(f"⚠️ Square signature mismatch - Expected: {expected[:12]}..., Got: {signature[:12]}...")
    return is_valid


async def verify_square_webhook(request: Request, raise_on_failure: bool = True) -> tuple[bool, bytes]:
    """
    Verify a Square webhook request

    The signed URL is SQUARE_WEBHOOK_NOTIFICATION_URL when configured (the URL
    registered in the Square Dashboard), otherwise the URL the request arrived on.

    Returns:
        Tuple of (is_valid, raw_body)
    """
    raw_body = await request.body()
    signature = request.headers.get(SQUARE_SIGNATURE_HEADER)
    notification_url = SQUARE_WEBHOOK_NOTIFICATION_URL or str(request.url)

    is_valid = verify_square_signature(raw_body, signature, notification_url)
    if not is_valid and raise_on_failure:
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    if is_valid:
        logger.debug("✅ Square webhook signature verified")
    return is_valid, raw_body


def verify_stripe_payload(payload: bytes, sig_header: Optional[str], secret: Optional[str] = None):
    """
    Verify a Stripe webhook payload and construct the event.

    Raises:
        WebhookVerificationError: If the secret is missing or the signature does not verify
    """
    webhook_secret = secret or STRIPE_WEBHOOK_SECRET
    if not webhook_secret:
        raise WebhookVerificationError("STRIPE_WEBHOOK_SECRET not configured")
    if not sig_header:
        raise WebhookVerificationError("Missing Stripe-Signature header")

    try:
        return stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=webhook_secret)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"🚫 Stripe webhook signature verification failed: {e}")
        raise WebhookVerificationError(f"Invalid webhook signature: {str(e)}") from e
    except ValueError as e:
        raise WebhookVerificationError(f"Invalid payload: {str(e)}") from e


async def verify_stripe_webhook(request: Request) -> tuple[object, bytes]:
    """
    Verify a Stripe webhook request

    Returns:
        Tuple of (stripe_event, raw_body)
    """
    raw_body = await request.body()
    try:
        event = verify_stripe_payload(raw_body, request.headers.get("Stripe-Signature"))
    except WebhookVerificationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    logger.debug("✅ Stripe webhook signature verified")
    return event, raw_body


def create_webhook_signature(
    secret: str, payload: bytes, provider: str = "square", notification_url: str = ""
) -> str:
    """
    Create a webhook signature for testing or replaying events.

    Args:
        secret: Signing secret
        payload: Request body bytes
        provider: 'square' or 'stripe'
        notification_url: Signed URL (Square only)

    Returns:
        Signature string in provider's format
    """
    if provider == "stripe":
        timestamp = int(time.time())
        signed_payload = f"{timestamp}.{payload.decode('utf-8')}"
        sig = compute_hmac_sha256(secret, signed_payload.encode())
        return f"t={timestamp},v1={sig}"
    return compute_hmac_sha256_base64(secret, notification_url.encode("utf-8") + payload)
