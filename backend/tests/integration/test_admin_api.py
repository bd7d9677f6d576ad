"""Integration tests for administrative token and plan endpoints."""

from datetime import UTC, datetime, timedelta

import pytest

from kromio.auth import AuthenticatedUser, require_admin
from kromio.models.subscriptions import Subscription, SubscriptionStatus

ADMIN = AuthenticatedUser(id="admin-1", email="admin@example.com", is_admin=True)


async def _fake_admin() -> AuthenticatedUser:
    return ADMIN


@pytest.fixture
def admin_client(api_client):
    api_client.app.dependency_overrides[require_admin] = _fake_admin
    return api_client


def _add_subscription(store, user_id: str, plan_name: str, **fields) -> Subscription:
    subscription = Subscription(
        id=f"sub-{user_id}",
        user_id=user_id,
        plan_id=f"plan_{plan_name}",
        plan_name=plan_name,
        status=SubscriptionStatus.ACTIVE,
        created_at=datetime.now(UTC),
        **fields,
    )
    store.subscriptions[subscription.id] = subscription
    return subscription


class TestAdminGuard:
    def test_non_admin_gets_403(self, api_client):
        response = api_client.post("/api/v1/admin/plans/allocate-monthly")

        assert response.status_code == 403


class TestAdminTokenEndpoints:
    def test_credit_bonus_tokens(self, admin_client, services):
        services.gateway.seed("user-2", 0)

        response = admin_client.post(
            "/api/v1/admin/tokens/credit", json={"user_id": "user-2", "amount": 10}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["new_balance"] == 10
        assert data["message"] == "Successfully added 10 tokens from bonus"

    def test_credit_rejects_negative_amount(self, admin_client, services):
        services.gateway.seed("user-2", 0)

        response = admin_client.post(
            "/api/v1/admin/tokens/credit", json={"user_id": "user-2", "amount": -5}
        )

        assert response.status_code == 422

    def test_bulk_reset_requires_updates(self, admin_client):
        response = admin_client.post("/api/v1/admin/tokens/bulk-reset", json={"updates": []})

        assert response.status_code == 422
        assert response.json()["detail"]["message"] == "User updates array is required"

    def test_bulk_reset_reports_each_user(self, admin_client, services):
        services.gateway.seed("user-2", 1)

        response = admin_client.post(
            "/api/v1/admin/tokens/bulk-reset",
            json={
                "updates": [
                    {"user_id": "user-2", "token_amount": 4},
                    {"user_id": "ghost", "token_amount": 4},
                ]
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["processed"] == 1
        assert data["failed"] == 1
        assert data["errors"][0]["user_id"] == "ghost"
        assert services.gateway.profiles["user-2"]["current_tokens"] == 5


class TestAdminPlanEndpoints:
    def test_allocate_monthly_tops_up_subscribers(self, admin_client, services):
        services.gateway.seed("user-2", 100, plan_name="freelancer")
        _add_subscription(services.store, "user-2", "freelancer")

        response = admin_client.post("/api/v1/admin/plans/allocate-monthly")

        assert response.status_code == 200
        data = response.json()
        assert data["results"][0]["tokens_allocated"] == 400
        assert services.gateway.profiles["user-2"]["current_tokens"] == 500

    def test_no_pending_upgrades(self, admin_client):
        response = admin_client.get("/api/v1/admin/plans/upgrades/pending")

        assert response.status_code == 200
        assert response.json() == []

    def test_reconcile_unknown_saga_returns_422(self, admin_client):
        response = admin_client.post("/api/v1/admin/plans/upgrades/missing/reconcile")

        assert response.status_code == 422

    def test_expiration_without_subscription(self, admin_client):
        response = admin_client.post("/api/v1/admin/plans/user-2/expiration")

        assert response.status_code == 200
        assert response.json()["action"] == "no_subscription"

    def test_expired_subscription_is_marked_past_due(self, admin_client, services):
        services.gateway.seed("user-2", 100, plan_name="freelancer")
        _add_subscription(
            services.store,
            "user-2",
            "freelancer",
            current_period_end=datetime.now(UTC) - timedelta(days=1),
        )

        response = admin_client.post("/api/v1/admin/plans/user-2/expiration")

        assert response.json()["action"] == "marked_past_due"
        assert services.store.subscriptions["sub-user-2"].status == SubscriptionStatus.PAST_DUE
