"""Scheduled jobs triggered over HTTP by the platform cron"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from ..config import CRON_SECRET
from ..database import get_db
from ..security_utils import TokenDecryptionError
from ..services.square_client import SquareAPIError, SquareClient, get_square_client
from ..services.square_connections import SquareConnectionRepository, refresh_connection
from ..utils import isoformat, utcnow

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cron", tags=["cron"])

REFRESH_WINDOW = timedelta(days=7)


def verify_cron_secret(authorization: Optional[str] = Header(default=None)):
    if not CRON_SECRET:
        return
    if authorization != f"Bearer {CRON_SECRET}":
        logger.warning("🚫 Cron endpoint called without a valid secret")
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.get("/refresh-tokens", dependencies=[Depends(verify_cron_secret)])
async def refresh_expiring_tokens(
    db: Session = Depends(get_db),
    client: SquareClient = Depends(get_square_client),
):
    """Refresh every Square token expiring within the next 7 days"""
    connections = SquareConnectionRepository.expiring_before(db, utcnow() + REFRESH_WINDOW)
    logger.info(f"🔄 Found {len(connections)} Square tokens to refresh")

    results = {"success": 0, "failed": 0, "details": []}
    for connection in connections:
        organization_id = connection.organization_id
        try:
            connection = await refresh_connection(db, client, connection)
        except (SquareAPIError, HTTPException, TokenDecryptionError) as e:
            db.rollback()
            error = e.detail if isinstance(e, HTTPException) else str(e)
            logger.error(f"❌ Token refresh failed for {organization_id}: {error}")
            results["failed"] += 1
            results["details"].append({"organization_id": organization_id, "success": False, "error": error})
            continue

        results["success"] += 1
        results["details"].append(
            {"organization_id": organization_id, "success": True, "expires_at": isoformat(connection.expires_at)}
        )

    logger.info(f"✅ Token refresh finished: {results['success']} refreshed, {results['failed']} failed")
    return results
