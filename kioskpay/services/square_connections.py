"""
Square connection service
Persistence of OAuth connections and pending OAuth state, plus token refresh
"""
import json
import logging
from datetime import timedelta
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ..models import SquareConnection, SquarePendingToken
from ..organization import normalize_organization_id
from ..security_utils import decrypt_optional, decrypt_token, encrypt_token, mask_sensitive_data
from ..utils import isoformat, parse_datetime, utcnow
from .square_client import SquareClient

logger = logging.getLogger(__name__)

PENDING_STATE_TTL = timedelta(minutes=10)
PENDING_STATE_RETENTION = timedelta(hours=24)


class SquareConnectionRepository:
    """Repository for Square connection database operations"""

    @staticmethod
    def get_by_organization(db: Session, organization_id: str) -> Optional[SquareConnection]:
        return db.query(SquareConnection).filter(SquareConnection.organization_id == organization_id).first()

    @staticmethod
    def find_by_organization(db: Session, organization_id: str) -> Optional[SquareConnection]:
        """Exact id first, then the normalized id, then any id scoped under it"""
        connection = SquareConnectionRepository.get_by_organization(db, organization_id)
        if connection:
            return connection

        base_id = normalize_organization_id(organization_id)
        if base_id != organization_id:
            connection = SquareConnectionRepository.get_by_organization(db, base_id)
            if connection:
                return connection

        return (
            db.query(SquareConnection)
            .filter(SquareConnection.organization_id.like(f"{base_id}\\_%", escape="\\"))
            .order_by(SquareConnection.updated_at.desc())
            .first()
        )

    @staticmethod
    def get_by_merchant(db: Session, merchant_id: str) -> Optional[SquareConnection]:
        return db.query(SquareConnection).filter(SquareConnection.merchant_id == merchant_id).first()

    @staticmethod
    def get_by_location(db: Session, location_id: str) -> Optional[SquareConnection]:
        return db.query(SquareConnection).filter(SquareConnection.location_id == location_id).first()

    @staticmethod
    def expiring_before(db: Session, cutoff) -> list[SquareConnection]:
        return (
            db.query(SquareConnection)
            .filter(SquareConnection.expires_at.isnot(None), SquareConnection.expires_at < cutoff)
            .all()
        )

    @staticmethod
    def upsert_connection(
        db: Session,
        organization_id: str,
        merchant_id: Optional[str],
        location_id: Optional[str],
        access_token: str,
        refresh_token: Optional[str],
        expires_at,
        merchant_email: Optional[str] = None,
    ) -> SquareConnection:
        """Create or replace the organization's connection (tokens given in plaintext)"""
        connection = SquareConnectionRepository.get_by_organization(db, organization_id)
        if connection is None:
            connection = SquareConnection(organization_id=organization_id)
            db.add(connection)

        connection.merchant_id = merchant_id
        connection.location_id = location_id
        connection.access_token = encrypt_token(access_token)
        connection.refresh_token = encrypt_token(refresh_token) if refresh_token else None
        connection.expires_at = expires_at
        if merchant_email:
            connection.merchant_email = merchant_email
        connection.updated_at = utcnow()

        db.commit()
        db.refresh(connection)
        return connection

    @staticmethod
    def get_pending(db: Session, state: str) -> Optional[SquarePendingToken]:
        return db.query(SquarePendingToken).filter(SquarePendingToken.state == state).first()

    @staticmethod
    def delete_stale_pending(db: Session) -> int:
        cutoff = utcnow() - PENDING_STATE_RETENTION
        deleted = db.query(SquarePendingToken).filter(SquarePendingToken.created_at < cutoff).delete()
        db.commit()
        return deleted


def require_connection(db: Session, organization_id: Optional[str]) -> SquareConnection:
    """Look up the organization's connection or fail with 404"""
    if not organization_id:
        raise HTTPException(status_code=400, detail="Organization ID is required")
    connection = SquareConnectionRepository.get_by_organization(db, organization_id)
    if not connection:
        logger.error(f"No Square connection found for organization {organization_id}")
        raise HTTPException(status_code=404, detail="Not connected to Square")
    return connection


def access_token_for(connection: SquareConnection) -> str:
    return decrypt_token(connection.access_token)


def connection_token_payload(connection: SquareConnection) -> dict:
    """Token payload returned to the kiosk"""
    return {
        "connected": True,
        "access_token": decrypt_token(connection.access_token),
        "refresh_token": decrypt_optional(connection.refresh_token),
        "merchant_id": connection.merchant_id,
        "location_id": connection.location_id,
        "expires_at": isoformat(connection.expires_at),
    }


def active_locations(locations: list) -> list:
    return [location for location in locations if location.get("status") == "ACTIVE"]


def location_choices(locations: list) -> list:
    """Subset of location fields kept on the pending row for the picker"""
    return [
        {
            "id": location.get("id"),
            "name": location.get("name"),
            "business_name": location.get("business_name"),
            "business_email": location.get("business_email"),
            "address": location.get("address", {}),
            "status": location.get("status"),
        }
        for location in locations
    ]


def load_location_data(pending: SquarePendingToken) -> list:
    if not pending.location_data:
        return []
    try:
        return json.loads(pending.location_data)
    except ValueError:
        logger.warning(f"⚠️ Corrupt location_data for state {pending.state[:8]}...")
        return []


def store_selected_location(db: Session, pending: SquarePendingToken, location: dict) -> SquareConnection:
    """Persist the connection for the chosen location and mark it on the pending row"""
    connection = SquareConnectionRepository.upsert_connection(
        db,
        organization_id=pending.organization_id,
        merchant_id=pending.merchant_id,
        location_id=location["id"],
        access_token=decrypt_token(pending.access_token),
        refresh_token=decrypt_optional(pending.refresh_token),
        expires_at=pending.expires_at,
        merchant_email=location.get("business_email"),
    )
    pending.location_id = location["id"]
    db.commit()
    logger.info(f"✅ Stored Square connection for {pending.organization_id} at location {location['id']}")
    return connection


async def refresh_connection(db: Session, client: SquareClient, connection: SquareConnection) -> SquareConnection:
    """
    Exchange the stored refresh token for a new access token.

    Raises:
        HTTPException(400): no refresh token stored
        SquareAPIError: Square rejected the refresh
    """
    refresh_token = decrypt_optional(connection.refresh_token)
    if not refresh_token:
        raise HTTPException(status_code=400, detail="No refresh token available")

    token_data = await client.refresh_token(refresh_token)
    new_access_token = token_data["access_token"]
    connection.access_token = encrypt_token(new_access_token)
    # Square may or may not rotate the refresh token
    connection.refresh_token = encrypt_token(token_data.get("refresh_token") or refresh_token)
    connection.expires_at = parse_datetime(token_data.get("expires_at"))
    connection.updated_at = utcnow()
    db.commit()
    db.refresh(connection)

    logger.info(
        f"🔄 Refreshed Square token for {connection.organization_id} "
        f"({mask_sensitive_data(new_access_token)}), expires {connection.expires_at}"
    )
    return connection
