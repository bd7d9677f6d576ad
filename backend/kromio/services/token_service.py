"""Token metering service.

Business rules over the accounting gateway: input validation, per-user rate
limiting, caller identity checks, lazy profile bootstrap and response
normalization. Balance arithmetic is never done here; the remote
``deduct_tokens``/``add_tokens`` procedures are the single authority, so
there is no local check-then-act across the network boundary.

Every public method returns a result model or a ``ServiceFailure``; none of
them raise.
"""

import asyncio
from datetime import UTC, datetime
from typing import Any

import structlog

from kromio.auth import SERVICE_CALLER, AuthenticatedUser
from kromio.config import TokenServiceConfig
from kromio.errors import (
    AuthenticationError,
    ErrorKind,
    ProfileNotFound,
    RateLimitExceeded,
    TokenServiceError,
    ValidationError,
)
from kromio.models.plans import PlanCatalog
from kromio.models.results import (
    AdditionResult,
    AllocationBatchResult,
    AllocationOutcome,
    BalanceResult,
    DeductionResult,
    HealthStatus,
    HistoryResult,
    OperationCheck,
    PlanDetails,
    PlanDetailsPlan,
    PlanDetailsSubscription,
    PlanPermissions,
    PlanUsage,
    ServiceFailure,
)
from kromio.models.subscriptions import Subscription, SubscriptionStatus
from kromio.models.tokens import (
    PlanSummary,
    TokenBalance,
    TokenInfo,
    TokenResetRequest,
    TokenSource,
    TransactionType,
)
from kromio.services.rate_limiter import SlidingWindowRateLimiter
from kromio.services.single_flight import SingleFlight
from kromio.services.subscription_store import SubscriptionStore
from kromio.services.supabase_client import generate_uuid
from kromio.services.token_gateway import TokenGateway

logger = structlog.get_logger(__name__)

FREE_PLAN = "free"

_SOURCE_DESCRIPTIONS = {
    TokenSource.PURCHASE: "Purchased {amount} tokens",
    TokenSource.BONUS: "Bonus {amount} tokens",
    TokenSource.REFUND: "Refund of {amount} tokens",
    TokenSource.RESET: "Monthly token reset: {amount} tokens",
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _plural(amount: int) -> str:
    return f"{amount} token{'s' if amount != 1 else ''}"


class TokenService:
    """Validates, throttles and normalizes token operations for one process."""

    def __init__(
        self,
        gateway: TokenGateway,
        config: TokenServiceConfig | None = None,
        *,
        catalog: PlanCatalog | None = None,
        free_plan_credits: int | None = None,
        subscriptions: SubscriptionStore | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        single_flight: SingleFlight | None = None,
        now_provider=_utcnow,
        sleep=asyncio.sleep,
    ) -> None:
        self.gateway = gateway
        self.config = config or TokenServiceConfig()
        self.catalog = catalog or PlanCatalog.load()
        self.free_plan_credits = free_plan_credits
        self.subscriptions = subscriptions
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            self.config.rate_limit_max_requests,
            self.config.rate_limit_window_seconds,
            max_keys=self.config.rate_limit_max_keys,
        )
        self.single_flight = single_flight or SingleFlight()
        self.now_provider = now_provider
        self.sleep = sleep

    # ------------------------------------------------------------------
    # guards
    # ------------------------------------------------------------------

    @staticmethod
    def _require_user(user_id: str | None) -> None:
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("User ID is required")

    @staticmethod
    def _require_positive_int(value: Any, label: str) -> None:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{label} must be a positive integer")
        if value < 1:
            raise ValidationError(f"{label} must be at least 1")

    def _throttle(
        self, user_id: str, operation: str, caller: AuthenticatedUser | None = None
    ) -> None:
        # System work (webhooks, batch jobs) never spends the user's windows
        if caller is not None and caller.is_service:
            return
        key = f"{user_id}:{operation}"
        if not self.rate_limiter.hit(key):
            raise RateLimitExceeded(retry_after_seconds=self.rate_limiter.retry_after(key))

    @staticmethod
    def _authorize(user_id: str, caller: AuthenticatedUser | None) -> None:
        if caller is None or not caller.can_act_for(user_id):
            logger.warning(
                "token_caller_mismatch",
                user_id=user_id,
                caller_id=caller.id if caller else None,
            )
            raise AuthenticationError()

    def _failure(self, operation: str, exc: TokenServiceError, **context: Any) -> ServiceFailure:
        log = logger.info if exc.kind == ErrorKind.BACKEND_REJECTED else logger.warning
        log(f"token_{operation}_failed", error_kind=exc.kind.value, error=exc.message, **context)
        return ServiceFailure.from_error(exc)

    @staticmethod
    def _unexpected(operation: str, message: str, **context: Any) -> ServiceFailure:
        logger.exception(f"token_{operation}_unexpected_error", **context)
        return ServiceFailure(error=ErrorKind.TRANSPORT, message=message)

    # ------------------------------------------------------------------
    # balance + lazy bootstrap
    # ------------------------------------------------------------------

    async def check_balance(
        self,
        user_id: str,
        *,
        caller: AuthenticatedUser | None = None,
        throttle_key: str = "balance",
    ) -> BalanceResult | ServiceFailure:
        """Current balance, plan and subscription; bootstraps a missing profile.

        Composite operations pass their own ``throttle_key`` so each public
        operation spends exactly one hit from its own window.
        """
        try:
            self._require_user(user_id)
            self._throttle(user_id, throttle_key, caller)
            self._authorize(user_id, caller)
            info = await self._load_token_info(user_id)
            return self._balance_result(info)
        except TokenServiceError as exc:
            return self._failure("balance", exc, user_id=user_id)
        except Exception:
            return self._unexpected("balance", "Failed to check token balance", user_id=user_id)

    async def _load_token_info(self, user_id: str) -> TokenInfo:
        try:
            return await self.gateway.fetch_balance(user_id)
        except ProfileNotFound:
            logger.info("token_profile_missing", user_id=user_id)

        await self.single_flight.do(user_id, lambda: self._bootstrap_profile(user_id))

        attempts = max(1, self.config.bootstrap_retry_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await self.gateway.fetch_balance(user_id)
            except ProfileNotFound:
                if attempt == attempts:
                    raise
                logger.debug("token_profile_refetch_retry", user_id=user_id, attempt=attempt)
                await self.sleep(self.config.bootstrap_retry_delay_seconds)
        raise ProfileNotFound(user_id)

    async def _bootstrap_profile(self, user_id: str) -> bool:
        tokens = await self._default_allotment(FREE_PLAN)
        created = await self.gateway.create_profile(user_id, plan_name=FREE_PLAN, tokens=tokens)
        if not created:
            # Lost a race with another process; the profile is there, which is all we need.
            logger.info("token_profile_already_exists", user_id=user_id)
            return False

        logger.info("token_profile_created", user_id=user_id, tokens=tokens, plan=FREE_PLAN)
        await self._ensure_free_subscription(user_id)
        return True

    async def _ensure_free_subscription(self, user_id: str) -> None:
        if self.subscriptions is None:
            return
        try:
            if await self.subscriptions.get_active_subscription(user_id) is not None:
                return
            now = self.now_provider()
            await self.subscriptions.create_subscription(
                Subscription(
                    id=generate_uuid(),
                    user_id=user_id,
                    plan_id=await self.subscriptions.get_plan_id(FREE_PLAN),
                    plan_name=FREE_PLAN,
                    status=SubscriptionStatus.ACTIVE,
                    current_period_start=now,
                    cancel_at_period_end=False,
                    created_at=now,
                )
            )
        except TokenServiceError as exc:
            logger.warning("token_free_subscription_failed", user_id=user_id, error=exc.message)

    async def _default_allotment(self, plan_name: str) -> int:
        """Env override (free only), then the plans table, then the catalog."""
        if plan_name == FREE_PLAN and self.free_plan_credits:
            return self.free_plan_credits
        try:
            allotment = await self.gateway.plan_allotment(plan_name)
        except TokenServiceError as exc:
            logger.warning("token_plan_allotment_unavailable", plan=plan_name, error=exc.message)
            allotment = None
        if allotment:
            return allotment
        return self._catalog_tokens(plan_name)

    def _catalog_tokens(self, plan_name: str) -> int:
        config = self.catalog.resolve(plan_name)
        if config is None:
            return self.config.fallback_free_tokens
        return config.tokens.included

    def _balance_result(self, info: TokenInfo) -> BalanceResult:
        plan = info.plan or PlanSummary()
        current = info.current_tokens
        if current is None:
            current = self._catalog_tokens(plan.name)
        return BalanceResult(
            balance=TokenBalance(
                current=max(0, current),
                total_used=info.total_tokens_used or 0,
                reset_date=info.tokens_reset_at,
                is_unlimited=plan.is_unlimited,
                plan_name=plan.name,
            ),
            plan=plan,
            subscription=info.subscription,
        )

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------

    async def deduct(
        self,
        user_id: str,
        amount: int = 1,
        description: str = "Extension generation",
        linked_id: str | None = None,
        *,
        caller: AuthenticatedUser | None = None,
    ) -> DeductionResult | ServiceFailure:
        """Spend tokens. The backend alone decides whether the balance suffices."""
        try:
            self._require_user(user_id)
            self._require_positive_int(amount, "Token amount")
            self._throttle(user_id, "deduct", caller)
            self._authorize(user_id, caller)

            receipt = await self.gateway.deduct(user_id, amount, description, linked_id)
            logger.info(
                "token_deducted",
                user_id=user_id,
                amount=amount,
                tokens_remaining=receipt.tokens_remaining,
                unlimited=receipt.unlimited,
                transaction_id=receipt.transaction_id,
            )
            return DeductionResult(
                tokens_remaining=receipt.tokens_remaining,
                unlimited=receipt.unlimited,
                transaction_id=receipt.transaction_id,
                message=f"Successfully deducted {_plural(amount)}",
            )
        except TokenServiceError as exc:
            return self._failure("deduct", exc, user_id=user_id, amount=amount)
        except Exception:
            return self._unexpected("deduct", "Failed to deduct tokens", user_id=user_id)

    async def credit(
        self,
        user_id: str,
        amount: int,
        source: TokenSource | str = TokenSource.PURCHASE,
        metadata: dict[str, Any] | None = None,
        *,
        caller: AuthenticatedUser | None = None,
    ) -> AdditionResult | ServiceFailure:
        """Add tokens. ``reset`` credits come from system jobs and skip the caller check."""
        metadata = metadata or {}
        try:
            self._require_user(user_id)
            self._require_positive_int(amount, "Token amount")
            try:
                source = TokenSource(source)
            except ValueError:
                valid = ", ".join(s.value for s in TokenSource)
                raise ValidationError(f"Invalid token source. Must be one of: {valid}") from None

            self._throttle(user_id, "add", caller)
            if source != TokenSource.RESET:
                self._authorize(user_id, caller)

            receipt = await self.gateway.credit(
                user_id,
                amount,
                TransactionType(source.value),
                self.format_description(source, amount, metadata),
                metadata.get("subscription_id"),
            )
            logger.info(
                "token_credited",
                user_id=user_id,
                amount=amount,
                source=source.value,
                new_balance=receipt.new_balance,
                transaction_id=receipt.transaction_id,
            )
            return AdditionResult(
                tokens_added=receipt.tokens_added,
                new_balance=receipt.new_balance,
                transaction_id=receipt.transaction_id,
                message=f"Successfully added {_plural(amount)} from {source.value}",
            )
        except TokenServiceError as exc:
            return self._failure("add", exc, user_id=user_id, amount=amount)
        except Exception:
            return self._unexpected("add", "Failed to add tokens", user_id=user_id)

    @staticmethod
    def format_description(source: TokenSource, amount: int, metadata: dict[str, Any]) -> str:
        description = _SOURCE_DESCRIPTIONS[source].format(amount=amount)
        if metadata.get("plan_name"):
            description += f" ({metadata['plan_name']} plan)"
        if metadata.get("payment_intent_id"):
            description += f" - Payment: {metadata['payment_intent_id']}"
        return description

    async def bulk_reset(
        self, updates: list[TokenResetRequest]
    ) -> AllocationBatchResult | ServiceFailure:
        """Credit a monthly reset to many users, continuing past individual failures."""
        if not updates:
            return ServiceFailure(error=ErrorKind.VALIDATION, message="User updates array is required")

        batch = AllocationBatchResult()
        for update in updates:
            result = await self.credit(
                update.user_id,
                update.token_amount,
                TokenSource.RESET,
                {"plan_name": update.plan_name, "monthly_reset": True},
                caller=SERVICE_CALLER,
            )
            if result.success:
                batch.record(
                    AllocationOutcome(
                        user_id=update.user_id,
                        plan_name=update.plan_name,
                        tokens_allocated=result.tokens_added,
                        success=True,
                    )
                )
            else:
                batch.record_error(update.user_id, result.message)

        logger.info("token_bulk_reset_completed", processed=batch.processed, failed=batch.failed)
        return batch

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    async def history(
        self, user_id: str, limit: int | None = None, *, caller: AuthenticatedUser | None = None
    ) -> HistoryResult | ServiceFailure:
        """Transactions newest first; limit is clamped to ``history_max_limit``."""
        if limit is None:
            limit = self.config.history_default_limit
        try:
            self._require_user(user_id)
            self._require_positive_int(limit, "History limit")
            limit = min(limit, self.config.history_max_limit)
            self._throttle(user_id, "history", caller)
            self._authorize(user_id, caller)

            transactions = await self.gateway.history(user_id, limit)
            transactions = sorted(transactions, key=lambda tx: tx.created_at, reverse=True)[:limit]
            return HistoryResult(transactions=transactions, total_count=len(transactions))
        except TokenServiceError as exc:
            return self._failure("history", exc, user_id=user_id)
        except Exception:
            return self._unexpected("history", "Failed to fetch token history", user_id=user_id)

    async def validate_operation(
        self,
        user_id: str,
        required_tokens: int = 1,
        *,
        caller: AuthenticatedUser | None = None,
    ) -> OperationCheck | ServiceFailure:
        """Read-only check: could ``user_id`` spend ``required_tokens`` right now."""
        try:
            self._require_user(user_id)
            self._require_positive_int(required_tokens, "Required tokens")
        except TokenServiceError as exc:
            return self._failure("validate", exc, user_id=user_id)

        result = await self.check_balance(user_id, caller=caller, throttle_key="validate")
        if not result.success:
            return result

        balance = result.balance
        if balance.is_unlimited:
            return OperationCheck(
                can_perform=True,
                unlimited=True,
                tokens_available=balance.current,
                tokens_required=required_tokens,
                message="Operation allowed (unlimited plan)",
            )

        shortfall = max(0, required_tokens - balance.current)
        return OperationCheck(
            can_perform=shortfall == 0,
            tokens_available=balance.current,
            tokens_required=required_tokens,
            shortfall=shortfall,
            message=(
                "Operation allowed"
                if shortfall == 0
                else f"Insufficient tokens. Need {required_tokens}, have {balance.current}"
            ),
        )

    async def plan_details(
        self, user_id: str, *, caller: AuthenticatedUser | None = None
    ) -> PlanDetails | ServiceFailure:
        result = await self.check_balance(user_id, caller=caller, throttle_key="plan")
        if not result.success:
            return result

        balance, plan, subscription = result.balance, result.plan, result.subscription
        config = self.catalog.resolve(plan.name)
        can_upgrade = config is None or config.tier < self.catalog.highest.tier
        return PlanDetails(
            plan=PlanDetailsPlan(
                name=plan.name,
                tokens_per_month=plan.tokens_per_month,
                is_unlimited=plan.is_unlimited,
                price=plan.price_cents / 100 if plan.price_cents else 0,
            ),
            subscription=(
                PlanDetailsSubscription(
                    status=subscription.status,
                    period_end=subscription.current_period_end,
                    active=subscription.active,
                )
                if subscription
                else None
            ),
            permissions=PlanPermissions(
                can_generate=balance.is_unlimited or balance.current > 0,
                can_upgrade=can_upgrade,
                has_subscription=subscription is not None,
            ),
            usage=PlanUsage(
                current_tokens=balance.current,
                total_used=balance.total_used,
                reset_date=balance.reset_date,
            ),
        )

    async def health_check(self) -> HealthStatus:
        """Backend connectivity via a trivial read; touches no user data."""
        timestamp = self.now_provider()
        try:
            await self.gateway.ping()
        except TokenServiceError as exc:
            logger.warning("token_health_check_failed", error=exc.message)
            return HealthStatus(
                success=False,
                status="unhealthy",
                database="unreachable",
                rate_limit_keys=len(self.rate_limiter),
                timestamp=timestamp,
                error=exc.message,
            )
        except Exception as exc:
            logger.exception("token_health_check_unexpected_error")
            return HealthStatus(
                success=False,
                status="unhealthy",
                database="unreachable",
                rate_limit_keys=len(self.rate_limiter),
                timestamp=timestamp,
                error=str(exc),
            )
        return HealthStatus(
            success=True,
            status="healthy",
            database="connected",
            rate_limit_keys=len(self.rate_limiter),
            timestamp=timestamp,
        )
