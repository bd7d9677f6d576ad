"""Stripe API wrapper."""

import asyncio
from typing import Any

import stripe

from kromio.config import StripeConfig
from kromio.models.plans import BillingCycle, PlanCatalog
from kromio.models.subscriptions import PaymentReference


class StripeService:
    """Encapsulates Stripe SDK calls used by billing routes."""

    def __init__(self, config: StripeConfig, catalog: PlanCatalog) -> None:
        if not config.secret_key:
            raise ValueError("Stripe secret key is required")

        self.config = config
        self.catalog = catalog
        stripe.api_key = config.secret_key

    def price_id_for_plan(self, plan_name: str, billing_cycle: BillingCycle) -> str | None:
        plan = self.catalog.resolve(plan_name)
        if plan is None:
            return None
        return plan.stripe_price_ids.for_cycle(billing_cycle, test_mode=self.config.use_test_prices)

    async def create_checkout_session(
        self,
        *,
        user_id: str,
        user_email: str | None,
        plan_name: str,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict[str, str]:
        price_id = self.price_id_for_plan(plan_name, billing_cycle)
        if not price_id:
            raise ValueError(f"No Stripe price configured for plan '{plan_name}' ({billing_cycle.value})")

        plan = self.catalog.resolve(plan_name)
        metadata = {
            "user_id": user_id,
            "plan_name": plan.id,
            "billing_cycle": billing_cycle.value,
        }
        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "allow_promotion_codes": True,
            "client_reference_id": user_id,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
            "success_url": success_url or self.config.checkout_success_url,
            "cancel_url": cancel_url or self.config.checkout_cancel_url,
        }
        if user_email:
            params["customer_email"] = user_email

        session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
        return {"id": session.id, "url": session.url}

    def verify_webhook_event(self, payload: bytes, signature: str | None) -> dict:
        if not self.config.webhook_secret:
            raise ValueError("Stripe webhook secret is not configured")
        if not signature:
            raise ValueError("Missing Stripe-Signature header")

        event = stripe.Webhook.construct_event(
            payload=payload,
            sig_header=signature,
            secret=self.config.webhook_secret,
        )
        return dict(event)

    def payment_reference_from_session(
        self, session_obj: dict | Any
    ) -> tuple[str, str, PaymentReference]:
        """Extract (user_id, plan_name, payment reference) from a completed checkout session."""
        session = session_obj if isinstance(session_obj, dict) else session_obj.to_dict_recursive()
        metadata = session.get("metadata", {}) or {}

        user_id = session.get("client_reference_id") or metadata.get("user_id")
        if not user_id:
            raise ValueError("Checkout session is missing user id")

        plan_name = metadata.get("plan_name")
        if not plan_name or self.catalog.resolve(plan_name) is None:
            raise ValueError(f"Checkout session has unknown plan '{plan_name}'")

        try:
            billing_cycle = BillingCycle(metadata.get("billing_cycle") or BillingCycle.MONTHLY)
        except ValueError:
            raise ValueError(
                f"Checkout session has invalid billing cycle '{metadata.get('billing_cycle')}'"
            ) from None

        return (
            str(user_id),
            self.catalog.resolve(plan_name).id,
            PaymentReference(
                subscription_id=session.get("subscription"),
                customer_id=session.get("customer"),
                billing_cycle=billing_cycle,
            ),
        )
