"""Token balance, transaction and accounting receipt models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field


class TransactionType(str, Enum):
    """Kinds of balance mutation recorded in token_transactions."""

    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"
    BONUS = "bonus"
    RESET = "reset"


class TokenSource(str, Enum):
    """Sources a credit may come from."""

    PURCHASE = "purchase"
    BONUS = "bonus"
    REFUND = "refund"
    RESET = "reset"


class PlanSummary(BaseModel):
    """Plan row as reported by get_user_token_info."""

    model_config = ConfigDict(extra="ignore")

    name: str = "free"
    tokens_per_month: int | None = None
    is_unlimited: bool = False
    price_cents: int | None = None


class SubscriptionSummary(BaseModel):
    """Subscription fragment as reported by get_user_token_info."""

    model_config = ConfigDict(extra="ignore")

    status: str
    current_period_end: datetime | None = None

    @property
    def active(self) -> bool:
        return self.status == "active"


class TokenInfo(BaseModel):
    """Raw get_user_token_info payload."""

    model_config = ConfigDict(extra="ignore")

    current_tokens: int | None = None
    total_tokens_used: int | None = None
    tokens_reset_at: datetime | None = None
    plan: PlanSummary | None = None
    subscription: SubscriptionSummary | None = None


class TokenBalance(BaseModel):
    """Normalized balance for one user."""

    current: int = Field(ge=0)
    total_used: int = Field(default=0, ge=0)
    reset_date: datetime | None = None
    is_unlimited: bool = False
    plan_name: str = "free"


class TokenTransaction(BaseModel):
    """Immutable record of a single balance mutation."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str
    amount: int
    type: TransactionType = Field(validation_alias=AliasChoices("type", "transaction_type"))
    description: str = ""
    balance_after: int | None = None
    extension_id: str | None = None
    created_at: datetime
    metadata: dict[str, Any] | None = None

    @computed_field
    @property
    def is_deduction(self) -> bool:
        return self.amount < 0

    @computed_field
    @property
    def is_addition(self) -> bool:
        return self.amount > 0


class TokenResetRequest(BaseModel):
    """One entry of a bulk monthly reset."""

    user_id: str
    token_amount: int
    plan_name: str | None = None


class DeductionReceipt(BaseModel):
    """deduct_tokens RPC response."""

    model_config = ConfigDict(extra="ignore")

    success: bool
    tokens_remaining: int | None = None
    unlimited: bool = False
    transaction_id: str | None = None
    error: str | None = None
    tokens_needed: int | None = None


class CreditReceipt(BaseModel):
    """add_tokens RPC response."""

    model_config = ConfigDict(extra="ignore")

    success: bool = True
    tokens_added: int = 0
    new_balance: int = 0
    transaction_id: str | None = None
    error: str | None = None
