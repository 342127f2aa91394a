"""
Square REST API client
Thin async wrapper over httpx for the OAuth, catalog, orders, payments,
customers and subscriptions endpoints used by the kiosk
"""
import logging
import uuid
from typing import Optional
from urllib.parse import urlencode

import httpx
from fastapi import HTTPException

from ..config import (
    SQUARE_API_VERSION,
    SQUARE_APPLICATION_ID,
    SQUARE_APPLICATION_SECRET,
    SQUARE_ENVIRONMENT,
    SQUARE_REDIRECT_URI,
)

logger = logging.getLogger(__name__)

# Note: Sandbox and Production use different hosts for both OAuth and API calls
SQUARE_BASE_URLS = {
    "production": "https://connect.squareup.com",
    "sandbox": "https://connect.squareupsandbox.com",
}

OAUTH_SCOPES = [
    "MERCHANT_PROFILE_READ",
    "PAYMENTS_WRITE",
    "PAYMENTS_WRITE_IN_PERSON",
    "PAYMENTS_READ",
    "ITEMS_READ",
    "ITEMS_WRITE",
    "ORDERS_WRITE",
    "CUSTOMERS_WRITE",
    "CUSTOMERS_READ",
    "SUBSCRIPTIONS_WRITE",
    "SUBSCRIPTIONS_READ",
    "INVOICES_WRITE",
    "INVOICES_READ",
]


class SquareAPIError(Exception):
    """Square returned a non-2xx response (or could not be reached)"""

    def __init__(self, status_code: int, errors: Optional[list] = None, message: Optional[str] = None):
        self.status_code = status_code
        self.errors = errors or []
        first = self.first_error
        self.message = message or first.get("detail") or first.get("code") or "Square API error"
        super().__init__(self.message)

    @property
    def first_error(self) -> dict:
        return self.errors[0] if self.errors else {}

    def to_detail(self) -> dict:
        """Error body returned to the kiosk"""
        first = self.first_error
        return {
            "error": self.message,
            "square_error": {
                "category": first.get("category"),
                "code": first.get("code"),
                "detail": first.get("detail"),
                "field": first.get("field"),
            },
            "square_errors": self.errors,
        }

    def as_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.to_detail())


def new_idempotency_key() -> str:
    return str(uuid.uuid4())


class SquareClient:
    """Client for the Square REST API"""

    def __init__(
        self,
        environment: Optional[str] = None,
        application_id: Optional[str] = None,
        application_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        api_version: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self.environment = environment or SQUARE_ENVIRONMENT
        self.base_url = SQUARE_BASE_URLS.get(self.environment, SQUARE_BASE_URLS["sandbox"])
        self.application_id = application_id or SQUARE_APPLICATION_ID
        self.application_secret = application_secret or SQUARE_APPLICATION_SECRET
        self.redirect_uri = redirect_uri or SQUARE_REDIRECT_URI
        self.api_version = api_version or SQUARE_API_VERSION
        self.transport = transport
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.application_id and self.application_secret)

    async def _request(
        self,
        method: str,
        path: str,
        access_token: Optional[str] = None,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        authorization: Optional[str] = None,
    ) -> dict:
        headers = {
            "Square-Version": self.api_version,
            "Content-Type": "application/json",
        }
        if authorization:
            headers["Authorization"] = authorization
        elif access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, transport=self.transport, timeout=self.timeout
            ) as http_client:
                response = await http_client.request(method, path, json=json, params=params, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"❌ Square request {method} {path} failed: {e}")
            raise SquareAPIError(
                502,
                [{"category": "API_ERROR", "code": "NETWORK_ERROR", "detail": str(e)}],
                message="Could not reach Square",
            ) from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            errors = body.get("errors")
            if not errors and body.get("error"):
                # OAuth endpoints use {"error", "error_description"} instead of an errors list
                errors = [
                    {
                        "category": "AUTHENTICATION_ERROR",
                        "code": body.get("error"),
                        "detail": body.get("error_description") or body.get("message"),
                    }
                ]
            logger.error(f"❌ Square {method} {path} returned {response.status_code}: {errors}")
            raise SquareAPIError(response.status_code, errors)

        if not response.content:
            return {}
        return response.json()

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def authorize_url(self, state: str) -> str:
        query = urlencode(
            {
                "client_id": self.application_id,
                "response_type": "code",
                "scope": " ".join(OAUTH_SCOPES),
                "state": state,
                "redirect_uri": self.redirect_uri,
            }
        )
        return f"{self.base_url}/oauth2/authorize?{query}&session=false"

    async def obtain_token(self, code: str) -> dict:
        return await self._request(
            "POST",
            "/oauth2/token",
            json={
                "client_id": self.application_id,
                "client_secret": self.application_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": self.redirect_uri,
            },
        )

    async def refresh_token(self, refresh_token: str) -> dict:
        return await self._request(
            "POST",
            "/oauth2/token",
            json={
                "client_id": self.application_id,
                "client_secret": self.application_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )

    async def revoke_token(self, access_token: str) -> dict:
        return await self._request(
            "POST",
            "/oauth2/revoke",
            json={"client_id": self.application_id, "access_token": access_token},
            authorization=f"Client {self.application_secret}",
        )

    async def list_locations(self, access_token: str) -> list:
        data = await self._request("GET", "/v2/locations", access_token=access_token)
        return data.get("locations", [])

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    async def search_catalog_items(self, access_token: str, name_prefix: str) -> dict:
        return await self._request(
            "POST",
            "/v2/catalog/search",
            access_token=access_token,
            json={
                "object_types": ["ITEM"],
                "query": {"prefix_query": {"attribute_name": "name", "attribute_prefix": name_prefix}},
                "include_related_objects": True,
            },
        )

    async def list_catalog(self, access_token: str, types: str) -> list:
        data = await self._request("GET", "/v2/catalog/list", access_token=access_token, params={"types": types})
        return data.get("objects", [])

    async def retrieve_catalog_object(self, access_token: str, object_id: str) -> dict:
        return await self._request(
            "GET",
            f"/v2/catalog/object/{object_id}",
            access_token=access_token,
            params={"include_related_objects": "true"},
        )

    async def upsert_catalog_object(self, access_token: str, catalog_object: dict) -> dict:
        return await self._request(
            "POST",
            "/v2/catalog/object",
            access_token=access_token,
            json={"idempotency_key": new_idempotency_key(), "object": catalog_object},
        )

    async def delete_catalog_object(self, access_token: str, object_id: str) -> dict:
        return await self._request("DELETE", f"/v2/catalog/object/{object_id}", access_token=access_token)

    # ------------------------------------------------------------------
    # Orders, payments, customers, cards
    # ------------------------------------------------------------------

    async def create_order(self, access_token: str, order: dict, idempotency_key: str) -> dict:
        data = await self._request(
            "POST",
            "/v2/orders",
            access_token=access_token,
            json={"idempotency_key": idempotency_key, "order": order},
        )
        return data.get("order", {})

    async def create_payment(self, access_token: str, payment_request: dict) -> dict:
        data = await self._request("POST", "/v2/payments", access_token=access_token, json=payment_request)
        return data.get("payment", {})

    async def cancel_payment(self, access_token: str, payment_id: str) -> dict:
        data = await self._request("POST", f"/v2/payments/{payment_id}/cancel", access_token=access_token)
        return data.get("payment", {})

    async def search_customers_by_email(self, access_token: str, email: str) -> list:
        data = await self._request(
            "POST",
            "/v2/customers/search",
            access_token=access_token,
            json={"query": {"filter": {"email_address": {"exact": email}}}, "limit": 1},
        )
        return data.get("customers", [])

    async def create_customer(self, access_token: str, customer: dict) -> dict:
        data = await self._request(
            "POST",
            "/v2/customers",
            access_token=access_token,
            json={"idempotency_key": new_idempotency_key(), **customer},
        )
        return data.get("customer", {})

    async def create_card(self, access_token: str, source_id: str, customer_id: str) -> dict:
        data = await self._request(
            "POST",
            "/v2/cards",
            access_token=access_token,
            json={
                "idempotency_key": new_idempotency_key(),
                "source_id": source_id,
                "card": {"customer_id": customer_id},
            },
        )
        return data.get("card", {})

    async def list_cards(self, access_token: str, customer_id: str) -> list:
        data = await self._request(
            "GET", "/v2/cards", access_token=access_token, params={"customer_id": customer_id}
        )
        return data.get("cards", [])

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def create_subscription(self, access_token: str, subscription_request: dict) -> dict:
        data = await self._request(
            "POST",
            "/v2/subscriptions",
            access_token=access_token,
            json={"idempotency_key": new_idempotency_key(), **subscription_request},
        )
        return data.get("subscription", {})

    async def retrieve_subscription(self, access_token: str, subscription_id: str) -> dict:
        data = await self._request("GET", f"/v2/subscriptions/{subscription_id}", access_token=access_token)
        return data.get("subscription", {})

    async def update_subscription(self, access_token: str, subscription_id: str, changes: dict) -> dict:
        """Sparse update; changes must carry the subscription's current version"""
        data = await self._request(
            "PUT",
            f"/v2/subscriptions/{subscription_id}",
            access_token=access_token,
            json={"subscription": changes},
        )
        return data.get("subscription", {})

    async def cancel_subscription(self, access_token: str, subscription_id: str) -> dict:
        data = await self._request("POST", f"/v2/subscriptions/{subscription_id}/cancel", access_token=access_token)
        return data.get("subscription", {})

    async def pause_subscription(self, access_token: str, subscription_id: str) -> dict:
        data = await self._request(
            "POST",
            f"/v2/subscriptions/{subscription_id}/pause",
            access_token=access_token,
            json={"pause_reason": "Paused from kiosk"},
        )
        return data.get("subscription", {})

    async def resume_subscription(self, access_token: str, subscription_id: str) -> dict:
        data = await self._request(
            "POST",
            f"/v2/subscriptions/{subscription_id}/resume",
            access_token=access_token,
            json={"resume_change_timing": "IMMEDIATE"},
        )
        return data.get("subscription", {})

    async def swap_plan(self, access_token: str, subscription_id: str, new_plan_variation_id: str) -> dict:
        data = await self._request(
            "POST",
            f"/v2/subscriptions/{subscription_id}/swap-plan",
            access_token=access_token,
            json={"new_plan_variation_id": new_plan_variation_id},
        )
        return data.get("subscription", {})


def get_square_client() -> SquareClient:
    """FastAPI dependency for the Square client (overridden in tests)"""
    return SquareClient()
