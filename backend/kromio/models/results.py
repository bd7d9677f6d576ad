"""Operation results returned by TokenService and PlanService.

Each operation returns either its success model (``success=True``) or a
``ServiceFailure`` (``success=False``); callers branch on ``result.success``.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from kromio.errors import BackendRejected, ErrorKind, RateLimitExceeded, TokenServiceError
from kromio.models.plans import PlanConfig
from kromio.models.subscriptions import Subscription, UpgradeSaga
from kromio.models.tokens import PlanSummary, SubscriptionSummary, TokenBalance, TokenTransaction


class ServiceFailure(BaseModel):
    """Uniform failure value."""

    success: Literal[False] = False
    error: ErrorKind
    message: str
    tokens_needed: int | None = None
    retry_after_seconds: float | None = None
    detail: dict[str, Any] | None = None

    @classmethod
    def from_error(cls, exc: TokenServiceError, **detail: Any) -> "ServiceFailure":
        return cls(
            error=exc.kind,
            message=exc.message,
            tokens_needed=exc.tokens_needed if isinstance(exc, BackendRejected) else None,
            retry_after_seconds=(
                exc.retry_after_seconds if isinstance(exc, RateLimitExceeded) else None
            ),
            detail=detail or None,
        )


class BalanceResult(BaseModel):
    success: Literal[True] = True
    balance: TokenBalance
    plan: PlanSummary
    subscription: SubscriptionSummary | None = None


class DeductionResult(BaseModel):
    success: Literal[True] = True
    tokens_remaining: int | None
    unlimited: bool = False
    transaction_id: str | None = None
    message: str


class AdditionResult(BaseModel):
    success: Literal[True] = True
    tokens_added: int
    new_balance: int
    transaction_id: str | None = None
    message: str


class HistoryResult(BaseModel):
    success: Literal[True] = True
    transactions: list[TokenTransaction]
    total_count: int


class OperationCheck(BaseModel):
    """Read-only answer to "can this user spend N tokens right now"."""

    success: Literal[True] = True
    can_perform: bool
    unlimited: bool = False
    tokens_available: int | None = None
    tokens_required: int
    shortfall: int = 0
    message: str


class PlanDetailsPlan(BaseModel):
    name: str
    tokens_per_month: int | None = None
    is_unlimited: bool = False
    price: float = 0


class PlanDetailsSubscription(BaseModel):
    status: str
    period_end: datetime | None = None
    active: bool


class PlanPermissions(BaseModel):
    can_generate: bool
    can_upgrade: bool
    has_subscription: bool


class PlanUsage(BaseModel):
    current_tokens: int
    total_used: int
    reset_date: datetime | None = None


class PlanDetails(BaseModel):
    success: Literal[True] = True
    plan: PlanDetailsPlan
    subscription: PlanDetailsSubscription | None = None
    permissions: PlanPermissions
    usage: PlanUsage


class UserPlan(BaseModel):
    """Static plan config merged with live balance/subscription data."""

    type: str
    config: PlanConfig
    subscription: SubscriptionSummary | None = None
    tokens: TokenBalance


class UserPlanResult(BaseModel):
    success: Literal[True] = True
    plan: UserPlan


class UpgradeResult(BaseModel):
    success: Literal[True] = True
    subscription: Subscription | None = None
    tokens_allocated: int
    new_balance: int
    saga: UpgradeSaga
    message: str


class SagaReconciliation(BaseModel):
    """Outcome of settling an upgrade saga without a new allocation."""

    success: Literal[True] = True
    saga: UpgradeSaga
    message: str


class AllocationOutcome(BaseModel):
    user_id: str
    plan_name: str | None = None
    tokens_allocated: int = 0
    success: bool


class AllocationError(BaseModel):
    user_id: str
    error: str


class AllocationBatchResult(BaseModel):
    """Per-user outcome of a batch credit run. The batch never aborts early."""

    success: Literal[True] = True
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    results: list[AllocationOutcome] = Field(default_factory=list)
    errors: list[AllocationError] = Field(default_factory=list)

    def record(self, outcome: AllocationOutcome) -> None:
        self.results.append(outcome)
        self.processed += 1

    def record_error(self, user_id: str, error: str) -> None:
        self.errors.append(AllocationError(user_id=user_id, error=error))
        self.failed += 1


class ExpirationAction(str, Enum):
    NO_SUBSCRIPTION = "no_subscription"
    NOT_EXPIRED = "not_expired"
    DOWNGRADED_TO_FREE = "downgraded_to_free"
    MARKED_PAST_DUE = "marked_past_due"


class ExpirationResult(BaseModel):
    success: Literal[True] = True
    action: ExpirationAction
    message: str | None = None


class HealthStatus(BaseModel):
    success: bool
    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "unreachable"]
    rate_limit_keys: int = 0
    timestamp: datetime
    error: str | None = None
