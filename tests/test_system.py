"""
Tests for the health check, kiosk config and the token refresh cron.
"""
from conftest import CRON_SECRET

from kioskpay.config import APP_VERSION
from kioskpay.models import SquareConnection
from kioskpay.security_utils import decrypt_token

REFRESHED_TOKEN = {
    "access_token": "EAAA-refreshed",
    "refresh_token": "EQAA-refreshed",
    "expires_at": "2030-01-01T00:00:00Z",
}


class TestSystemEndpoints:
    def test_root(self, client):
        assert client.get("/").json() == {"message": "KioskPay API is running"}

    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["cache"] is False
        assert body["version"] == APP_VERSION
        assert body["timestamp"].endswith("Z")

    def test_config_is_cacheable(self, client):
        response = client.get("/api/config")

        assert response.headers["cache-control"] == "public, max-age=300"
        body = response.json()
        assert body["backendBaseURL"] == "https://kiosk.test"
        assert body["features"] == {"squareOAuth": True, "stripeBilling": True, "webhooks": True}


class TestRefreshTokensCron:
    """Tokens expiring within a week are refreshed in bulk."""

    def test_requires_cron_secret(self, client):
        assert client.get("/api/cron/refresh-tokens").status_code == 401
        response = client.get("/api/cron/refresh-tokens", headers={"Authorization": "Bearer wrong"})
        assert response.status_code == 401

    def test_refreshes_only_expiring_tokens(self, client, db_session, make_connection, square_api):
        make_connection(organization_id="org_soon", merchant_id="M_SOON", expires_in_days=3)
        make_connection(organization_id="org_later", merchant_id="M_LATER", expires_in_days=30)
        square_api.add("POST", "/oauth2/token", REFRESHED_TOKEN)

        response = client.get("/api/cron/refresh-tokens", headers={"Authorization": f"Bearer {CRON_SECRET}"})

        body = response.json()
        assert body["success"] == 1
        assert body["failed"] == 0
        assert body["details"][0]["organization_id"] == "org_soon"
        assert len(square_api.calls("POST", "/oauth2/token")) == 1

        refreshed = db_session.query(SquareConnection).filter_by(organization_id="org_soon").one()
        assert decrypt_token(refreshed.access_token) == "EAAA-refreshed"
        untouched = db_session.query(SquareConnection).filter_by(organization_id="org_later").one()
        assert decrypt_token(untouched.access_token) == "EAAA-access-token"

    def test_missing_refresh_token_is_reported(self, client, make_connection, square_api):
        make_connection(organization_id="org_soon", merchant_id="M_SOON", expires_in_days=3)
        make_connection(organization_id="org_noref", merchant_id="M_NOREF", refresh_token=None, expires_in_days=1)
        square_api.add("POST", "/oauth2/token", REFRESHED_TOKEN)

        body = client.get("/api/cron/refresh-tokens", headers={"Authorization": f"Bearer {CRON_SECRET}"}).json()

        assert body["success"] == 1
        assert body["failed"] == 1
        failed = [detail for detail in body["details"] if not detail["success"]]
        assert failed == [{"organization_id": "org_noref", "success": False, "error": "No refresh token available"}]

    def test_square_rejection_counts_as_failure(self, client, make_connection, square_api):
        make_connection(organization_id="org_soon", merchant_id="M_SOON", expires_in_days=3)
        square_api.add("POST", "/oauth2/token", {"error": "invalid_grant", "error_description": "Revoked"}, 401)

        body = client.get("/api/cron/refresh-tokens", headers={"Authorization": f"Bearer {CRON_SECRET}"}).json()

        assert body == {
            "success": 0,
            "failed": 1,
            "details": [{"organization_id": "org_soon", "success": False, "error": "Revoked"}],
        }
