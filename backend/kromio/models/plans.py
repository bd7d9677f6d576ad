"""Plan catalog and permission models."""

import json
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from kromio.models.tokens import PlanSummary

UNLIMITED = -1

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent.parent / "data" / "plans.json"


class PlanFeature(str, Enum):
    """Capability tags a plan may include."""

    EXTENSION_GENERATION = "extension_generation"
    REVISION_UNLIMITED = "revision_unlimited"
    PRIORITY_SUPPORT = "priority_support"
    CUSTOM_BRANDING = "custom_branding"
    TEAM_COLLABORATION = "team_collaboration"
    ADVANCED_ANALYTICS = "advanced_analytics"
    API_ACCESS = "api_access"


class PlanAction(str, Enum):
    """Actions gated by plan permissions."""

    GENERATE_EXTENSION = "generate_extension"
    REVISE_EXTENSION = "revise_extension"
    ACCESS_ANALYTICS = "access_analytics"
    REMOVE_BRANDING = "remove_branding"
    TEAM_COLLABORATION = "team_collaboration"
    API_ACCESS = "api_access"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PlanPrice(BaseModel):
    """Prices in cents."""

    model_config = ConfigDict(frozen=True)

    monthly: int = Field(ge=0)
    yearly: int = Field(ge=0)


class PlanTokens(BaseModel):
    model_config = ConfigDict(frozen=True)

    included: int = Field(ge=0)
    renewal: str = "monthly"
    rollover: bool = False


class PlanLimits(BaseModel):
    """Usage limits; -1 means unlimited."""

    model_config = ConfigDict(frozen=True)

    extensions_per_month: int = Field(ge=UNLIMITED)
    revisions_per_extension: int = Field(ge=UNLIMITED)
    storage_mb: int = Field(ge=UNLIMITED)
    team_members: int = Field(ge=UNLIMITED)


class StripePriceIds(BaseModel):
    model_config = ConfigDict(frozen=True)

    monthly: str | None = None
    yearly: str | None = None
    test_monthly: str | None = None
    test_yearly: str | None = None

    def for_cycle(self, cycle: BillingCycle, *, test_mode: bool = False) -> str | None:
        if test_mode:
            return self.test_monthly if cycle == BillingCycle.MONTHLY else self.test_yearly
        return self.monthly if cycle == BillingCycle.MONTHLY else self.yearly


class PlanConfig(BaseModel):
    """Static catalog entry for one plan tier."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    display_name: str
    description: str = ""
    tier: int = Field(ge=0)
    price: PlanPrice
    tokens: PlanTokens
    limits: PlanLimits
    features: frozenset[PlanFeature] = frozenset()
    restrictions: tuple[str, ...] = ()
    cta: str = ""
    popular: bool = False
    stripe_price_ids: StripePriceIds = Field(default_factory=StripePriceIds)
    aliases: tuple[str, ...] = ()

    def has_feature(self, feature: PlanFeature) -> bool:
        return feature in self.features

    def summary(self) -> PlanSummary:
        """The plan as the balance payload reports it."""
        return PlanSummary(
            name=self.id,
            tokens_per_month=self.tokens.included,
            price_cents=self.price.monthly,
        )


class PlanCatalog(BaseModel):
    """Validated, immutable set of plans ordered by tier."""

    model_config = ConfigDict(frozen=True)

    plans: tuple[PlanConfig, ...]

    @field_validator("plans")
    @classmethod
    def _order_by_tier(cls, plans: tuple[PlanConfig, ...]) -> tuple[PlanConfig, ...]:
        return tuple(sorted(plans, key=lambda plan: plan.tier))

    @model_validator(mode="after")
    def _check_catalog(self) -> "PlanCatalog":
        ids = [plan.id for plan in self.plans]
        if len(set(ids)) != len(ids):
            raise ValueError("plan ids must be unique")
        if "free" not in ids:
            raise ValueError("catalog must define a 'free' plan")

        aliases = [alias for plan in self.plans for alias in plan.aliases]
        if len(set(aliases)) != len(aliases) or set(aliases) & set(ids):
            raise ValueError("plan aliases must be unique and must not shadow plan ids")

        ordered = self.plans
        if [plan.tier for plan in ordered] != list(range(len(ordered))):
            raise ValueError("plan tiers must be unique and contiguous from 0")
        if ordered[0].id != "free":
            raise ValueError("the 'free' plan must be tier 0")

        for lower, higher in zip(ordered, ordered[1:]):
            if higher.price.monthly <= lower.price.monthly or higher.price.yearly <= lower.price.yearly:
                raise ValueError(
                    f"plan '{higher.id}' must be priced above '{lower.id}'"
                )
            if higher.tokens.included < lower.tokens.included:
                raise ValueError(
                    f"plan '{higher.id}' must include at least as many tokens as '{lower.id}'"
                )

        return self

    @classmethod
    def load(cls, path: str | Path | None = None) -> "PlanCatalog":
        """Load and validate a catalog from JSON (packaged default when path is None)."""
        source = Path(path) if path else DEFAULT_CATALOG_PATH
        with source.open(encoding="utf-8") as fh:
            return cls.model_validate(json.load(fh))

    @property
    def free(self) -> PlanConfig:
        return self.plans[0]

    @property
    def highest(self) -> PlanConfig:
        return self.plans[-1]

    def names(self) -> list[str]:
        return [plan.id for plan in self.plans]

    def get(self, name: str) -> PlanConfig | None:
        for plan in self.plans:
            if plan.id == name:
                return plan
        return None

    def resolve(self, name: str | None) -> PlanConfig | None:
        """Look up by id or legacy alias."""
        if not name:
            return None
        for plan in self.plans:
            if plan.id == name or name in plan.aliases:
                return plan
        return None

    def by_price_id(self, price_id: str) -> tuple[PlanConfig, BillingCycle] | None:
        for plan in self.plans:
            ids = plan.stripe_price_ids
            if price_id in (ids.monthly, ids.test_monthly):
                return plan, BillingCycle.MONTHLY
            if price_id in (ids.yearly, ids.test_yearly):
                return plan, BillingCycle.YEARLY
        return None


class PermissionReason(str, Enum):
    """Machine-readable reason attached to a permission decision."""

    PERMISSION_GRANTED = "permission_granted"
    INSUFFICIENT_TOKENS = "insufficient_tokens"
    MONTHLY_LIMIT_REACHED = "monthly_limit_reached"
    UNLIMITED_REVISIONS = "unlimited_revisions"
    REVISION_ALLOWED = "revision_allowed"
    REVISION_LIMIT_REACHED = "revision_limit_reached"
    FEATURE_INCLUDED = "feature_included"
    FEATURE_UNAVAILABLE = "feature_unavailable"
    TEAM_ALLOWED = "team_allowed"
    TEAM_LIMIT_REACHED = "team_limit_reached"
    UNKNOWN_ACTION = "unknown_action"
    PLAN_UNAVAILABLE = "plan_unavailable"


class PermissionContext(BaseModel):
    """Caller-supplied usage figures for a permission check."""

    monthly_usage: int = Field(default=0, ge=0)
    revision_count: int = Field(default=0, ge=0)
    team_members: int = Field(default=1, ge=0)


class PermissionDecision(BaseModel):
    """Ephemeral result of a permission check."""

    allowed: bool
    reason: str
    reason_code: PermissionReason
    requires_upgrade: bool = False
    tokens_needed: int | None = None
    current_tokens: int | None = None
    limit: int | None = None
    current: int | None = None


class UpgradePathCheck(BaseModel):
    valid: bool
    reason: str
