"""Subscription, payment and upgrade-saga models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict

from kromio.models.plans import BillingCycle


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states.

    incomplete/trialing -> active -> {canceled, past_due}; past_due -> active
    or canceled. canceled is terminal. This service only writes active (on
    upgrade) and canceled/past_due (on expiration).
    """

    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"
    TRIALING = "trialing"


class Subscription(BaseModel):
    """Persisted user_subscriptions row."""

    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    plan_id: str | None = None
    plan_name: str
    status: SubscriptionStatus
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    stripe_subscription_id: str | None = None
    stripe_customer_id: str | None = None
    created_at: datetime | None = None


class PaymentReference(BaseModel):
    """Payment provider identifiers backing an upgrade."""

    subscription_id: str | None = None
    customer_id: str | None = None
    billing_cycle: BillingCycle = BillingCycle.MONTHLY


class SagaState(str, Enum):
    """Upgrade saga progress."""

    PENDING = "pending"
    SUBSCRIBED = "subscribed"
    ALLOCATED = "allocated"
    FAILED_ROLLED_BACK = "failed_rolled_back"
    FAILED_NEEDS_RECONCILIATION = "failed_needs_reconciliation"


UNFINISHED_SAGA_STATES = frozenset(
    {SagaState.PENDING, SagaState.SUBSCRIBED, SagaState.FAILED_NEEDS_RECONCILIATION}
)


class UpgradeSaga(BaseModel):
    """Durable log of a create-subscription-then-allocate upgrade."""

    id: str
    user_id: str
    from_plan: str
    to_plan: str
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    state: SagaState = SagaState.PENDING
    subscription_id: str | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime
