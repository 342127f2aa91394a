"""
Square OAuth 2.0 connection flow for kiosks

The kiosk opens /authorize in a browser, Square redirects back to /callback,
and the kiosk polls /status with its state until tokens are available.
"""
import json
import logging
import uuid
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..cache import forget_token_verified, remember_token_verified, token_recently_verified
from ..database import get_db
from ..models import SquarePendingToken
from ..organization import is_unset_organization_id
from ..pages import location_select_page, oauth_result_page
from ..rate_limiter import create_rate_limiter
from ..schemas import LocationSelectRequest, OrganizationRequest
from ..security_utils import decrypt_optional, decrypt_token, encrypt_token
from ..services.square_client import SquareAPIError, SquareClient, get_square_client
from ..services.square_connections import (
    PENDING_STATE_TTL,
    SquareConnectionRepository,
    access_token_for,
    active_locations,
    connection_token_payload,
    load_location_data,
    location_choices,
    refresh_connection,
    store_selected_location,
)
from ..utils import isoformat, parse_datetime, utcnow

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/square", tags=["square"])

rate_limit_authorize = create_rate_limiter(limit=20, window_seconds=60, key_prefix="square_authorize")
rate_limit_status = create_rate_limiter(limit=120, window_seconds=60, key_prefix="square_status")

SUCCESS_PATH = "/api/square/success"


def _result_redirect(**params) -> RedirectResponse:
    query = urlencode({k: v for k, v in params.items() if v is not None})
    return RedirectResponse(url=f"{SUCCESS_PATH}?{query}", status_code=302)


def _error_redirect(code: str) -> RedirectResponse:
    return _result_redirect(success="false", error=code)


# Routes
@router.get("/authorize")
async def authorize(
    organization_id: Optional[str] = None,
    device_id: Optional[str] = None,
    db: Session = Depends(get_db),
    client: SquareClient = Depends(get_square_client),
    _: None = Depends(rate_limit_authorize),
):
    """Issue a pending OAuth state for the kiosk and return the Square authorization URL"""
    if is_unset_organization_id(organization_id):
        raise HTTPException(status_code=400, detail="A valid organization_id is required")
    if not client.is_configured():
        raise HTTPException(status_code=500, detail="Square not configured")

    removed = SquareConnectionRepository.delete_stale_pending(db)
    if removed:
        logger.info(f"🧹 Removed {removed} stale pending OAuth states")

    state = str(uuid.uuid4())
    db.add(
        SquarePendingToken(
            state=state,
            organization_id=organization_id,
            device_id=device_id,
            expires_at=utcnow() + PENDING_STATE_TTL,
        )
    )
    db.commit()

    auth_url = client.authorize_url(state)
    logger.info(f"Square OAuth initiated for organization {organization_id} (device {device_id})")
    return {"authUrl": auth_url, "state": state}


@router.get("/callback")
async def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    db: Session = Depends(get_db),
    client: SquareClient = Depends(get_square_client),
):
    """Square redirects here after the merchant approves (or denies) access"""
    if error:
        logger.warning(f"Square OAuth returned error: {error}")
        return _error_redirect(error)
    if not code:
        return _error_redirect("missing_code")
    if not state:
        return _error_redirect("missing_state")

    pending = SquareConnectionRepository.get_pending(db, state)
    if not pending:
        logger.warning(f"🚫 Unknown OAuth state {state[:8]}...")
        return _error_redirect("invalid_state")
    if pending.access_token is None and pending.expires_at and pending.expires_at < utcnow():
        logger.warning(f"🚫 Expired OAuth state {state[:8]}...")
        return _error_redirect("invalid_state")

    try:
        try:
            token_data = await client.obtain_token(code)
        except SquareAPIError as e:
            logger.error(f"❌ Square token exchange failed: {e}")
            return _error_redirect("token_exchange")

        access_token = token_data.get("access_token")
        if not access_token:
            return _error_redirect("token_exchange")
        refresh_token = token_data.get("refresh_token")
        merchant_id = token_data.get("merchant_id")
        expires_at = parse_datetime(token_data.get("expires_at"))

        try:
            locations = await client.list_locations(access_token)
        except SquareAPIError as e:
            logger.error(f"❌ Failed to fetch Square locations: {e}")
            return _error_redirect("location_fetch_failed")

        if not locations:
            return _error_redirect("no_locations")
        active = active_locations(locations)
        if not active:
            return _error_redirect("no_active_locations")

        pending.access_token = encrypt_token(access_token)
        pending.refresh_token = encrypt_token(refresh_token) if refresh_token else None
        pending.merchant_id = merchant_id
        pending.expires_at = expires_at

        if len(active) > 1:
            pending.location_data = json.dumps(location_choices(active))
            db.commit()
            logger.info(f"Merchant {merchant_id} has {len(active)} active locations, asking kiosk to choose")
            return RedirectResponse(
                url=f"/api/square/location-select?{urlencode({'state': state})}", status_code=302
            )

        location = location_choices(active)[0]
        try:
            store_selected_location(db, pending, location)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"❌ Failed to store Square connection: {e}")
            return _error_redirect("database_error")

        return _result_redirect(success="true", location=location.get("name"))
    except Exception as e:
        logger.error(f"❌ Unexpected error in Square OAuth callback: {e}")
        return _error_redirect("server_error")


@router.get("/location-select", response_class=HTMLResponse)
async def location_select_form(state: str, db: Session = Depends(get_db)):
    pending = SquareConnectionRepository.get_pending(db, state)
    locations = load_location_data(pending) if pending else []
    if not locations:
        raise HTTPException(status_code=400, detail="Invalid state or no locations to choose from")
    return HTMLResponse(content=location_select_page(state, locations))


@router.post("/location-select")
async def select_location(body: LocationSelectRequest, db: Session = Depends(get_db)):
    """Store the connection for the location the merchant picked"""
    pending = SquareConnectionRepository.get_pending(db, body.state)
    if not pending:
        raise HTTPException(status_code=404, detail="Invalid or expired state")

    location = next((loc for loc in load_location_data(pending) if loc.get("id") == body.location_id), None)
    if not location:
        raise HTTPException(status_code=400, detail="Location is not available for this merchant")

    try:
        store_selected_location(db, pending, location)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"❌ Failed to store Square connection: {e}")
        raise HTTPException(status_code=500, detail="Failed to save location selection") from e

    redirect_url = f"{SUCCESS_PATH}?{urlencode({'success': 'true', 'location': location.get('name') or ''})}"
    return {"success": True, "redirect_url": redirect_url}


@router.get("/success", response_class=HTMLResponse)
async def oauth_result(success: Optional[str] = None, error: Optional[str] = None, location: Optional[str] = None):
    return HTMLResponse(content=oauth_result_page(success == "true", error=error, location=location))


@router.get("/status")
async def connection_status(
    state: Optional[str] = None,
    organization_id: Optional[str] = None,
    device_id: Optional[str] = None,
    db: Session = Depends(get_db),
    client: SquareClient = Depends(get_square_client),
    _: None = Depends(rate_limit_status),
):
    """
    Connection status polled by the kiosk

    - By state: progress of an OAuth flow started with /authorize
    - By organization_id: whether the stored connection is still usable
    """
    if state:
        return _status_by_state(db, state, device_id)
    if organization_id:
        return await _status_by_organization(db, client, organization_id)
    raise HTTPException(status_code=400, detail="Either state or organization_id is required")


def _status_by_state(db: Session, state: str, device_id: Optional[str]) -> dict:
    pending = SquareConnectionRepository.get_pending(db, state)
    if pending and device_id and pending.device_id and pending.device_id != device_id:
        pending = None
    if not pending:
        return {"connected": False, "message": "invalid_state"}

    if pending.access_token and pending.location_id:
        pending.obtained = True
        db.commit()
        logger.info(f"Kiosk collected tokens for state {state[:8]}... (merchant {pending.merchant_id})")
        return {
            "connected": True,
            "access_token": decrypt_token(pending.access_token),
            "refresh_token": decrypt_optional(pending.refresh_token),
            "merchant_id": pending.merchant_id,
            "location_id": pending.location_id,
            "expires_at": isoformat(pending.expires_at),
            "device_id": pending.device_id,
        }

    if pending.access_token and pending.location_data:
        return {
            "connected": False,
            "message": "location_selection_required",
            "locations": load_location_data(pending),
            "state": state,
        }

    return {"connected": False, "message": "authorization_in_progress"}


async def _status_by_organization(db: Session, client: SquareClient, organization_id: str) -> dict:
    connection = SquareConnectionRepository.find_by_organization(db, organization_id)
    if not connection:
        return {"connected": False, "message": "not_connected"}

    if connection.expires_at and connection.expires_at <= utcnow():
        logger.info(f"Square token expired for {connection.organization_id}")
        return {"connected": False, "needs_refresh": True, "message": "token_expired"}

    if not token_recently_verified(connection.organization_id):
        try:
            await client.list_locations(access_token_for(connection))
        except SquareAPIError as e:
            logger.warning(f"⚠️ Stored Square token failed verification for {connection.organization_id}: {e}")
            return {"connected": False, "needs_refresh": True, "message": "token_invalid"}
        remember_token_verified(connection.organization_id)

    return {**connection_token_payload(connection), "organization_id": connection.organization_id}


@router.post("/refresh")
async def refresh(
    body: OrganizationRequest,
    db: Session = Depends(get_db),
    client: SquareClient = Depends(get_square_client),
):
    connection = SquareConnectionRepository.get_by_organization(db, body.organization_id)
    if not connection:
        raise HTTPException(status_code=404, detail="Not connected to Square")

    try:
        connection = await refresh_connection(db, client, connection)
    except SquareAPIError as e:
        forget_token_verified(body.organization_id)
        raise e.as_http_exception() from e

    return connection_token_payload(connection)


@router.post("/disconnect")
async def disconnect(
    body: OrganizationRequest,
    db: Session = Depends(get_db),
    client: SquareClient = Depends(get_square_client),
):
    """Revoke the merchant's token at Square and forget the connection"""
    connection = SquareConnectionRepository.get_by_organization(db, body.organization_id)
    if not connection:
        raise HTTPException(status_code=404, detail="Not connected to Square")

    try:
        await client.revoke_token(access_token_for(connection))
        logger.info(f"Revoked Square token for {body.organization_id}")
    except SquareAPIError as e:
        # Local disconnect still proceeds so the kiosk can reconnect
        logger.warning(f"⚠️ Square token revoke failed for {body.organization_id}: {e}")

    db.delete(connection)
    db.commit()
    forget_token_verified(body.organization_id)
    logger.info(f"Square disconnected for organization {body.organization_id}")
    return {"success": True}
