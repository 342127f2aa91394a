"""App bootstrap configuration and health check"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..cache import get_cache_stats
from ..config import (
    APP_VERSION,
    BACKEND_BASE_URL,
    SQUARE_APPLICATION_ID,
    SQUARE_ENVIRONMENT,
    SQUARE_REDIRECT_URI,
    SQUARE_WEBHOOK_SIGNATURE_KEY,
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
)
from ..database import get_db
from ..utils import utcnow

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["system"])


@router.get("/config")
async def app_config():
    """Backend URLs and feature flags fetched by the kiosk at launch"""
    config = {
        "backendBaseURL": BACKEND_BASE_URL,
        "redirectURI": SQUARE_REDIRECT_URI,
        "environment": SQUARE_ENVIRONMENT,
        "version": APP_VERSION,
        "features": {
            "squareOAuth": bool(SQUARE_APPLICATION_ID),
            "stripeBilling": bool(STRIPE_SECRET_KEY),
            "webhooks": bool(SQUARE_WEBHOOK_SIGNATURE_KEY or STRIPE_WEBHOOK_SECRET),
        },
    }
    return JSONResponse(content=config, headers={"Cache-Control": "public, max-age=300"})


@router.get("/health")
async def health(db: Session = Depends(get_db)):
    timestamp = utcnow().isoformat() + "Z"
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"❌ Health check failed: {e}")
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "error": "Database connection failed", "timestamp": timestamp},
        )

    return {
        "status": "healthy",
        "database": "connected",
        "cache": get_cache_stats().get("available", False),
        "timestamp": timestamp,
        "version": APP_VERSION,
    }
