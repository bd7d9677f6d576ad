"""Integration tests for billing API endpoints."""

from kromio.errors import TransportError
from kromio.models.plans import BillingCycle
from kromio.models.subscriptions import PaymentReference


def _checkout_event(event_id: str = "evt_1", plan_name: str = "freelancer") -> dict:
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "subscription": "sub_1",
                "customer": "cus_1",
                "client_reference_id": "user-1",
                "metadata": {"user_id": "user-1", "plan_name": plan_name},
            }
        },
    }


class FakeStripeService:
    def __init__(self, event: dict | None = None):
        self.event = event or _checkout_event()
        self.checkout_calls: list[dict] = []

    async def create_checkout_session(self, **kwargs):
        self.checkout_calls.append(kwargs)
        return {"id": "cs_test", "url": "https://checkout.test/session"}

    def verify_webhook_event(self, _payload, signature):
        if signature == "bad":
            raise RuntimeError("bad signature")
        return self.event

    def payment_reference_from_session(self, session):
        metadata = session.get("metadata", {})
        if metadata.get("plan_name") not in {"freelancer", "agency", "enterprise"}:
            raise ValueError("Checkout session has unknown plan")
        return (
            session["client_reference_id"],
            metadata["plan_name"],
            PaymentReference(
                subscription_id=session.get("subscription"),
                customer_id=session.get("customer"),
                billing_cycle=BillingCycle.MONTHLY,
            ),
        )


class TestBillingCheckoutEndpoint:
    def test_checkout_requires_stripe_config(self, api_client):
        response = api_client.post("/api/v1/billing/checkout", json={"plan_name": "freelancer"})

        assert response.status_code == 503

    def test_checkout_returns_url(self, api_client, services):
        stripe = FakeStripeService()
        api_client.app.state.stripe_service = stripe
        services.gateway.seed("user-1", 3)

        response = api_client.post(
            "/api/v1/billing/checkout",
            json={"plan_name": "agency", "billing_cycle": "yearly"},
        )

        assert response.status_code == 200
        assert response.json()["checkout_url"].startswith("https://checkout.test")
        assert stripe.checkout_calls[0]["user_id"] == "user-1"
        assert stripe.checkout_calls[0]["billing_cycle"] == BillingCycle.YEARLY

    def test_checkout_rejects_same_tier(self, api_client, services):
        api_client.app.state.stripe_service = FakeStripeService()
        services.gateway.seed("user-1", 3)

        response = api_client.post("/api/v1/billing/checkout", json={"plan_name": "free"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Can only upgrade to higher tier plans"


class TestBillingWebhookEndpoint:
    def test_rejects_bad_signature(self, api_client):
        api_client.app.state.stripe_service = FakeStripeService()

        response = api_client.post(
            "/api/v1/billing/webhook",
            content=b"{}",
            headers={"Stripe-Signature": "bad"},
        )

        assert response.status_code == 400

    def test_checkout_completed_upgrades_once(self, api_client, services):
        api_client.app.state.stripe_service = FakeStripeService()
        services.gateway.seed("user-1", 3)

        first = api_client.post(
            "/api/v1/billing/webhook", content=b"{}", headers={"Stripe-Signature": "ok"}
        )
        second = api_client.post(
            "/api/v1/billing/webhook", content=b"{}", headers={"Stripe-Signature": "ok"}
        )

        assert first.json() == {"received": True, "processed": True}
        assert second.json() == {"received": True, "processed": False}
        assert services.gateway.profiles["user-1"]["current_tokens"] == 503
        active = services.store.active_for("user-1")
        assert active.plan_name == "freelancer"
        assert active.stripe_subscription_id == "sub_1"

    def test_invalid_session_is_not_processed(self, api_client, services):
        api_client.app.state.stripe_service = FakeStripeService(_checkout_event(plan_name="gold"))
        services.gateway.seed("user-1", 3)

        response = api_client.post(
            "/api/v1/billing/webhook", content=b"{}", headers={"Stripe-Signature": "ok"}
        )

        assert response.json() == {"received": True, "processed": False}
        assert services.store.active_for("user-1") is None

    def test_other_events_are_acknowledged(self, api_client):
        api_client.app.state.stripe_service = FakeStripeService(
            {"id": "evt_2", "type": "invoice.paid", "data": {"object": {}}}
        )

        response = api_client.post(
            "/api/v1/billing/webhook", content=b"{}", headers={"Stripe-Signature": "ok"}
        )

        assert response.json() == {"received": True, "processed": True}

    def test_transient_upgrade_failure_is_redelivered(self, api_client, services):
        api_client.app.state.stripe_service = FakeStripeService()
        services.gateway.seed("user-1", 3)
        services.gateway.failures["fetch_balance"] = TransportError("blip")

        failed = api_client.post(
            "/api/v1/billing/webhook", content=b"{}", headers={"Stripe-Signature": "ok"}
        )

        assert failed.status_code == 503
        assert "evt_1" not in services.store.processed_events
        assert services.store.active_for("user-1") is None

        del services.gateway.failures["fetch_balance"]
        retried = api_client.post(
            "/api/v1/billing/webhook", content=b"{}", headers={"Stripe-Signature": "ok"}
        )

        assert retried.status_code == 200
        assert retried.json() == {"received": True, "processed": True}
        assert services.gateway.profiles["user-1"]["current_tokens"] == 503
        assert services.store.active_for("user-1").plan_name == "freelancer"

    def test_permanent_upgrade_failure_is_not_redelivered(self, api_client, services):
        api_client.app.state.stripe_service = FakeStripeService()
        services.gateway.seed("user-1", 3, plan_name="agency")

        response = api_client.post(
            "/api/v1/billing/webhook", content=b"{}", headers={"Stripe-Signature": "ok"}
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "processed": False}
        assert "evt_1" in services.store.processed_events
