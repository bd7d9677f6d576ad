"""Integration tests for token balance and usage endpoints."""

from kromio.services.rate_limiter import SlidingWindowRateLimiter
from kromio.services.token_service import TokenService


class TestBalanceEndpoint:
    def test_new_user_is_bootstrapped_on_free_plan(self, api_client, services):
        response = api_client.get("/api/v1/tokens/balance")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["balance"]["current"] == 3
        assert data["plan"]["name"] == "free"
        assert "user-1" in services.gateway.profiles

    def test_returns_seeded_balance(self, api_client, services):
        services.gateway.seed("user-1", 42, total_used=8)

        data = api_client.get("/api/v1/tokens/balance").json()

        assert data["balance"]["current"] == 42
        assert data["balance"]["total_used"] == 8

    def test_rate_limited_balance_returns_429_with_retry_after(self, api_client, services, catalog):
        api_client.app.state.token_service = TokenService(
            services.gateway,
            catalog=catalog,
            rate_limiter=SlidingWindowRateLimiter(1, 60.0),
        )
        services.gateway.seed("user-1", 5)

        first = api_client.get("/api/v1/tokens/balance")
        second = api_client.get("/api/v1/tokens/balance")

        assert first.status_code == 200
        assert second.status_code == 429
        assert second.json()["detail"]["error"] == "rate_limited"
        assert int(second.headers["retry-after"]) >= 1


class TestDeductEndpoint:
    def test_deducts_tokens(self, api_client, services):
        services.gateway.seed("user-1", 3)

        response = api_client.post(
            "/api/v1/tokens/deduct", json={"amount": 1, "extension_id": "ext-1"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["tokens_remaining"] == 2
        assert data["message"] == "Successfully deducted 1 token"
        assert services.gateway.profiles["user-1"]["current_tokens"] == 2

    def test_insufficient_tokens_returns_402(self, api_client, services):
        services.gateway.seed("user-1", 1)

        response = api_client.post("/api/v1/tokens/deduct", json={"amount": 3})

        assert response.status_code == 402
        detail = response.json()["detail"]
        assert detail["error"] == "backend_rejected"
        assert detail["tokens_needed"] == 2
        assert services.gateway.profiles["user-1"]["current_tokens"] == 1

    def test_non_positive_amount_returns_422(self, api_client, services):
        services.gateway.seed("user-1", 3)

        response = api_client.post("/api/v1/tokens/deduct", json={"amount": 0})

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "validation"
        assert services.gateway.calls["deduct"] == 0


class TestHistoryEndpoint:
    def test_lists_transactions_newest_first(self, api_client, services):
        services.gateway.seed("user-1", 5)
        api_client.post("/api/v1/tokens/deduct", json={"amount": 1})
        api_client.post("/api/v1/tokens/deduct", json={"amount": 2})

        response = api_client.get("/api/v1/tokens/history", params={"limit": 10})

        assert response.status_code == 200
        data = response.json()
        assert data["total_count"] == 2
        assert [t["amount"] for t in data["transactions"]] == [-2, -1]
        assert data["transactions"][0]["is_deduction"] is True

    def test_zero_limit_returns_422(self, api_client, services):
        services.gateway.seed("user-1", 5)

        response = api_client.get("/api/v1/tokens/history", params={"limit": 0})

        assert response.status_code == 422


class TestValidateEndpoint:
    def test_reports_shortfall(self, api_client, services):
        services.gateway.seed("user-1", 3)

        response = api_client.get("/api/v1/tokens/validate", params={"required_tokens": 5})

        assert response.status_code == 200
        data = response.json()
        assert data["can_perform"] is False
        assert data["shortfall"] == 2
        assert data["message"] == "Insufficient tokens. Need 5, have 3"


class TestPlanDetailsEndpoint:
    def test_returns_plan_permissions_and_usage(self, api_client, services):
        services.gateway.seed("user-1", 2, total_used=1)

        response = api_client.get("/api/v1/tokens/plan-details")

        assert response.status_code == 200
        data = response.json()
        assert data["plan"]["name"] == "free"
        assert data["permissions"]["can_generate"] is True
        assert data["permissions"]["can_upgrade"] is True
        assert data["usage"] == {"current_tokens": 2, "total_used": 1, "reset_date": None}
