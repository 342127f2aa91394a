"""
Pytest configuration and fixtures.
"""
import json
import os
from datetime import timedelta

# Settings are read at import time, so the environment is prepared first
os.environ.update(
    {
        "DATABASE_URL": "sqlite://",
        "SECRET_KEY": "test-secret-key",
        "SQUARE_ENCRYPTION_KEY": "",
        "CACHE_ENABLED": "false",
        "RATE_LIMIT_ENABLED": "false",
        "DB_LOG_SLOW_QUERIES": "false",
        "BACKEND_BASE_URL": "https://kiosk.test",
        "APP_URL_SCHEME": "shulpad",
        "SQUARE_ENVIRONMENT": "sandbox",
        "SQUARE_APPLICATION_ID": "sq0idp-test",
        "SQUARE_APPLICATION_SECRET": "sq0csp-test",
        "SQUARE_WEBHOOK_SIGNATURE_KEY": "square-webhook-key",
        "SQUARE_WEBHOOK_NOTIFICATION_URL": "https://kiosk.test/api/square/webhooks/subscription",
        "SQUARE_MONTHLY_PLAN_VARIATION_ID": "PLAN_VAR_MONTHLY",
        "SQUARE_YEARLY_PLAN_VARIATION_ID": "PLAN_VAR_YEARLY",
        "STRIPE_SECRET_KEY": "sk_test_fake_key_for_testing",
        "STRIPE_WEBHOOK_SECRET": "whsec_test_fake_secret",
        "STRIPE_MONTHLY_PRICE_ID": "price_monthly_test",
        "STRIPE_TRIAL_DAYS": "30",
        "ADMIN_API_KEY": "admin-test-key",
        "CRON_SECRET": "cron-test-secret",
    }
)

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from kioskpay.database import Base, SessionLocal, engine, get_db  # noqa: E402
from kioskpay.main import app  # noqa: E402
from kioskpay.services.square_client import SquareClient, get_square_client  # noqa: E402
from kioskpay.services.square_connections import SquareConnectionRepository  # noqa: E402
from kioskpay.utils import utcnow  # noqa: E402

SQUARE_WEBHOOK_KEY = os.environ["SQUARE_WEBHOOK_SIGNATURE_KEY"]
SQUARE_NOTIFICATION_URL = os.environ["SQUARE_WEBHOOK_NOTIFICATION_URL"]
STRIPE_WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]
ADMIN_API_KEY = os.environ["ADMIN_API_KEY"]
CRON_SECRET = os.environ["CRON_SECRET"]


class FakeSquare:
    """Canned Square REST responses keyed by (method, path), served through httpx.MockTransport"""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, method: str, path: str, body: dict = None, status_code: int = 200):
        self.routes[(method, path)] = (status_code, body or {})

    def fail(self, method: str, path: str, status_code: int = 400, code: str = "BAD_REQUEST", detail: str = "Bad"):
        self.add(
            method,
            path,
            {"errors": [{"category": "INVALID_REQUEST_ERROR", "code": code, "detail": detail}]},
            status_code=status_code,
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(
                404,
                json={"errors": [{"category": "INVALID_REQUEST_ERROR", "code": "NOT_FOUND", "detail": str(key)}]},
            )
        status_code, body = self.routes[key]
        return httpx.Response(status_code, json=body)

    def calls(self, method: str, path: str) -> list:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def last_json(self, method: str, path: str) -> dict:
        return json.loads(self.calls(method, path)[-1].content)

    def client(self) -> SquareClient:
        return SquareClient(
            environment="sandbox",
            application_id="sq0idp-test",
            application_secret="sq0csp-test",
            redirect_uri="https://kiosk.test/api/square/callback",
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture
def db_session():
    """Fresh in-memory schema per test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def square_api() -> FakeSquare:
    return FakeSquare()


@pytest.fixture
def client(db_session, square_api):
    """Test client sharing the test session and the fake Square API."""

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_square_client] = square_api.client
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_connection(db_session):
    """Factory for stored Square connections; age_days controls the trial window."""

    def _make(
        organization_id: str = "org_1",
        merchant_id: str = "MERCHANT_1",
        location_id: str = "LOC_1",
        age_days: int = 60,
        refresh_token: str = "EQAA-refresh-token",
        expires_in_days: int = 30,
        merchant_email: str = None,
    ):
        connection = SquareConnectionRepository.upsert_connection(
            db_session,
            organization_id=organization_id,
            merchant_id=merchant_id,
            location_id=location_id,
            access_token="EAAA-access-token",
            refresh_token=refresh_token,
            expires_at=utcnow() + timedelta(days=expires_in_days),
            merchant_email=merchant_email,
        )
        connection.created_at = utcnow() - timedelta(days=age_days)
        db_session.commit()
        return connection

    return _make
