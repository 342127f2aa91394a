import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./kioskpay.db")

APP_VERSION = os.getenv("APP_VERSION", "1.0.0")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Public base URL of this backend (used for redirects and the /api/config endpoint)
BACKEND_BASE_URL = os.getenv("BACKEND_BASE_URL", "http://localhost:8000").rstrip("/")

# Custom URL scheme registered by the kiosk iOS app
APP_URL_SCHEME = os.getenv("APP_URL_SCHEME", "shulpad")

# Feature flags
CACHE_ENABLED = os.getenv("CACHE_ENABLED", "true").lower() == "true"
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"

# Shared secrets for operator endpoints
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")
CRON_SECRET = os.getenv("CRON_SECRET")

# Square OAuth Configuration
SQUARE_ENVIRONMENT = os.getenv("SQUARE_ENVIRONMENT", "sandbox")  # sandbox or production
SQUARE_APPLICATION_ID = os.getenv("SQUARE_APPLICATION_ID")
SQUARE_APPLICATION_SECRET = os.getenv("SQUARE_APPLICATION_SECRET")
SQUARE_REDIRECT_URI = os.getenv("SQUARE_REDIRECT_URI", f"{BACKEND_BASE_URL}/api/square/callback")
SQUARE_API_VERSION = os.getenv("SQUARE_API_VERSION", "2025-05-21")
SQUARE_ENCRYPTION_KEY = os.getenv(
    "SQUARE_ENCRYPTION_KEY"
)  # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
SQUARE_WEBHOOK_SIGNATURE_KEY = os.getenv(
    "SQUARE_WEBHOOK_SIGNATURE_KEY"
)  # Webhook signature key from Square Dashboard
# URL registered in the Square Dashboard; part of the signed payload
SQUARE_WEBHOOK_NOTIFICATION_URL = os.getenv("SQUARE_WEBHOOK_NOTIFICATION_URL")

# Square subscription plan variations (fallback when subscription_plans has none)
SQUARE_MONTHLY_PLAN_VARIATION_ID = os.getenv("SQUARE_MONTHLY_PLAN_VARIATION_ID")
SQUARE_YEARLY_PLAN_VARIATION_ID = os.getenv("SQUARE_YEARLY_PLAN_VARIATION_ID")

# Stripe Configuration
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_MONTHLY_PRICE_ID = os.getenv("STRIPE_MONTHLY_PRICE_ID")
STRIPE_TRIAL_DAYS = int(os.getenv("STRIPE_TRIAL_DAYS", "30"))

# CORS - the kiosk app calls the API directly; browsers only hit the OAuth and Stripe pages
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:8000").split(",")
    if origin.strip()
]
