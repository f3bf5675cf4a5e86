"""
Tests for the HTTP surface.

Validates:
- Bearer credentials are taken from the Authorization header
- The rate-limit key ignores caller-chosen headers
- Gateway responses keep their status codes and headers over HTTP
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from conftest import FakeClock, seed
from skillgrid.access.allowlist import AllowlistRegistry
from skillgrid.api import app as api
from skillgrid.config import GatewayConfig
from skillgrid.gateway import AccessGateway
from skillgrid.store.database import Database


class TestBearerCredential:

    def test_bearer_scheme(self):
        assert api.bearer_credential("Bearer abc-202610191400") == "abc-202610191400"
        assert api.bearer_credential("bearer  tok ") == "tok"

    def test_bare_token(self):
        assert api.bearer_credential("abc") == "abc"

    def test_missing(self):
        assert api.bearer_credential(None) is None
        assert api.bearer_credential("   ") is None


class TestAccessEndpoint:

    def setup_method(self):
        self.db = Database("sqlite://", query_timeout_seconds=0)
        self.db.initialize()
        seed(self.db)
        config = GatewayConfig(
            secret_prefix="s3cret-",
            trusted_caller="dashboard-client",
            allowlist=AllowlistRegistry.default(),
            rate_limit_requests=100,
        )
        self.gateway = api.configure(config, self.db)
        self.headers = {"Authorization": f"Bearer {self.gateway.authenticator.issue()}"}
        # no context manager: lifespan would build a gateway from .env settings
        self.client = TestClient(api.app)

    def teardown_method(self):
        api.state.gateway = None
        api.state.db = None
        self.db.engine.dispose()

    def test_read(self):
        response = self.client.post(
            "/api/v1/access",
            json={"operation": "read", "table": "entities", "columns": ["id"]},
            headers=self.headers,
        )
        assert response.status_code == 200
        assert response.json()["data"] == [{"id": "E1"}, {"id": "E2"}]
        assert response.headers["x-correlation-id"]

    def test_unauthorized(self):
        response = self.client.post(
            "/api/v1/access", json={"operation": "read", "table": "entities"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["kind"] == "Unauthorized"

    def test_sync(self):
        response = self.client.post(
            "/api/v1/access",
            json={
                "operation": "sync",
                "entityId": "E2",
                "assignments": [{"nodeId": "N3", "proficiencyLevel": 4}],
            },
            headers=self.headers,
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "applied": 1, "conflicts": []}

    def test_rotating_caller_header_does_not_escape_rate_limit(self):
        config = GatewayConfig(
            secret_prefix="s3cret-",
            trusted_caller="dashboard-client",
            allowlist=AllowlistRegistry.default(),
            rate_limit_requests=2,
        )
        gateway = AccessGateway.from_config(config, self.db, clock=FakeClock())
        api.state.gateway = gateway
        headers = {"Authorization": f"Bearer {gateway.authenticator.issue()}"}
        body = {"operation": "read", "table": "entities"}

        statuses = [
            self.client.post(
                "/api/v1/access", json=body, headers={**headers, "X-Caller-Id": f"c{i}"}
            ).status_code
            for i in range(5)
        ]

        assert statuses == [200, 200, 429, 429, 429]
        assert len(gateway.rate_limiter._counters) == 1

    def test_health(self):
        response = self.client.get("/health")
        assert response.status_code == 200
        payload = response.json()
        assert payload["status"] == "healthy"
        assert payload["backend"] == "sqlite"
        assert payload["audit_available"] is True
        assert "assignments" in payload["tables"]


class TestUninitializedApi:

    def test_access_before_startup_is_503(self):
        api.state.gateway = None
        client = TestClient(api.app)
        response = client.post("/api/v1/access", json={"operation": "read", "table": "entities"})
        assert response.status_code == 503
        assert client.get("/health").json()["status"] == "starting"
