"""
Integration tests for rate limiting through the gate.
"""

from typing import List

from fastapi.testclient import TestClient


class TestRateLimitingEndpoints:
    """Test tiered rate limiting through API endpoints."""

    def test_auth_tier_rejects_eleventh_request(self, test_client: TestClient, downstream_calls: List[str]) -> None:
        """Test ten logins pass and the eleventh gets 429 with a retry hint."""
        for _ in range(10):
            response = test_client.post("/api/auth/login")
            assert response.status_code == 200

        response = test_client.post("/api/auth/login")

        assert response.status_code == 429
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "RATE_LIMIT_EXCEEDED"
        assert body["error"] == "Too many requests"
        assert 1 <= body["retryAfter"] <= 900
        assert response.headers["Retry-After"] == str(body["retryAfter"])
        assert response.headers["RateLimit-Limit"] == "10"
        assert response.headers["RateLimit-Remaining"] == "0"
        assert len(downstream_calls) == 10

    def test_tiers_are_independent(self, test_client: TestClient) -> None:
        """Test exhausting the auth tier leaves normal routes usable."""
        for _ in range(11):
            test_client.post("/api/auth/login")

        response = test_client.get("/api/search")
        assert response.status_code == 200

    def test_forwarded_for_ignored_by_default(self, test_client: TestClient) -> None:
        """Test callers cannot dodge the limit by rotating X-Forwarded-For."""
        for i in range(10):
            test_client.post("/api/auth/login", headers={"X-Forwarded-For": f"198.51.100.{i}"})

        response = test_client.post("/api/auth/login", headers={"X-Forwarded-For": "198.51.100.99"})
        assert response.status_code == 429

    def test_rate_limit_headers_on_success(self, test_client: TestClient) -> None:
        response = test_client.get("/api/search")

        assert response.status_code == 200
        assert response.headers["RateLimit-Limit"] == "100"
        assert response.headers["RateLimit-Remaining"] == "99"
        assert int(response.headers["RateLimit-Reset"]) <= 900
        assert "Retry-After" not in response.headers

    def test_health_route_is_exempt(self, test_client: TestClient) -> None:
        """Test the health route is never limited and carries no rate limit headers."""
        for _ in range(120):
            response = test_client.get("/api/system/health")
            assert response.status_code == 200
        assert "RateLimit-Limit" not in response.headers

    def test_strict_tier_on_conversion(self, test_client: TestClient) -> None:
        response = test_client.post("/api/convert", json={"message": "MSH"})
        assert response.headers["RateLimit-Limit"] == "30"
