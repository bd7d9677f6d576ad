"""Plan permissions, upgrades, monthly allocation and expiration.

The catalog is static configuration; live plan membership comes from the
balance payload (``check_balance``) and the subscription store. Upgrades
run as a persisted saga so a crash between "subscription created" and
"tokens credited" leaves a record that ``reconcile_upgrade`` can settle.
"""

import calendar
from datetime import UTC, datetime
from typing import Any

import structlog

from kromio.auth import SERVICE_CALLER, AuthenticatedUser
from kromio.errors import ErrorKind, TokenServiceError
from kromio.models.plans import (
    UNLIMITED,
    BillingCycle,
    PermissionContext,
    PermissionDecision,
    PermissionReason,
    PlanAction,
    PlanCatalog,
    PlanConfig,
    PlanFeature,
    UpgradePathCheck,
)
from kromio.models.results import (
    AllocationBatchResult,
    AllocationOutcome,
    ExpirationAction,
    ExpirationResult,
    SagaReconciliation,
    ServiceFailure,
    UpgradeResult,
    UserPlan,
    UserPlanResult,
)
from kromio.models.subscriptions import (
    UNFINISHED_SAGA_STATES,
    PaymentReference,
    SagaState,
    Subscription,
    SubscriptionStatus,
    UpgradeSaga,
)
from kromio.models.tokens import TokenSource
from kromio.services.subscription_store import SubscriptionStore
from kromio.services.supabase_client import generate_uuid
from kromio.services.token_service import TokenService

logger = structlog.get_logger(__name__)

_FEATURE_ACTIONS = {
    PlanAction.ACCESS_ANALYTICS: PlanFeature.ADVANCED_ANALYTICS,
    PlanAction.REMOVE_BRANDING: PlanFeature.CUSTOM_BRANDING,
    PlanAction.API_ACCESS: PlanFeature.API_ACCESS,
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _add_months(moment: datetime, months: int) -> datetime:
    """Calendar-month arithmetic, clamping to the last day of short months."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class PlanService:
    """Plan-level business rules layered over TokenService."""

    def __init__(
        self,
        token_service: TokenService,
        subscriptions: SubscriptionStore,
        catalog: PlanCatalog | None = None,
        *,
        now_provider=_utcnow,
    ) -> None:
        self.token_service = token_service
        self.subscriptions = subscriptions
        self.catalog = catalog or token_service.catalog
        self.now_provider = now_provider

    # ------------------------------------------------------------------
    # catalog
    # ------------------------------------------------------------------

    def get_all_plans(self) -> list[PlanConfig]:
        return list(self.catalog.plans)

    def get_plan_config(self, name: str | None) -> PlanConfig | None:
        return self.catalog.resolve(name)

    def validate_upgrade_path(self, current_plan: str, new_plan: str) -> UpgradePathCheck:
        current = self.catalog.resolve(current_plan)
        target = self.catalog.resolve(new_plan)
        if current is None or target is None:
            return UpgradePathCheck(valid=False, reason="Invalid plan types")
        if target.tier <= current.tier:
            return UpgradePathCheck(valid=False, reason="Can only upgrade to higher tier plans")
        return UpgradePathCheck(valid=True, reason="Upgrade path valid")

    def calculate_period_end(
        self, billing_cycle: BillingCycle | str = BillingCycle.MONTHLY, start: datetime | None = None
    ) -> datetime:
        start = start or self.now_provider()
        if BillingCycle(billing_cycle) == BillingCycle.YEARLY:
            return _add_months(start, 12)
        return _add_months(start, 1)

    def _resolve_plan(self, name: str | None) -> PlanConfig:
        config = self.catalog.resolve(name)
        if config is None:
            logger.warning("plan_unknown_name", plan=name, fallback=self.catalog.free.id)
            return self.catalog.free
        return config

    # ------------------------------------------------------------------
    # user plan + permissions
    # ------------------------------------------------------------------

    async def get_user_plan(
        self,
        user_id: str,
        *,
        caller: AuthenticatedUser | None = None,
        throttle_key: str = "user_plan",
    ) -> UserPlanResult | ServiceFailure:
        """Catalog entry for the user's plan merged with their live balance."""
        result = await self.token_service.check_balance(
            user_id, caller=caller, throttle_key=throttle_key
        )
        if not result.success:
            return result

        config = self._resolve_plan(result.plan.name)
        return UserPlanResult(
            plan=UserPlan(
                type=config.id,
                config=config,
                subscription=result.subscription,
                tokens=result.balance,
            )
        )

    async def can_perform(
        self,
        user_id: str,
        action: PlanAction | str,
        context: PermissionContext | dict[str, Any] | None = None,
        *,
        caller: AuthenticatedUser | None = None,
    ) -> PermissionDecision:
        """Decide whether the user's plan allows ``action`` right now."""
        if not isinstance(context, PermissionContext):
            context = PermissionContext.model_validate(context or {})

        user_plan = await self.get_user_plan(user_id, caller=caller, throttle_key="permission")
        if not user_plan.success:
            logger.warning("plan_permission_lookup_failed", user_id=user_id, error=user_plan.message)
            return PermissionDecision(
                allowed=False,
                reason="Unable to determine user plan",
                reason_code=PermissionReason.PLAN_UNAVAILABLE,
            )

        try:
            action = PlanAction(action)
        except ValueError:
            return PermissionDecision(
                allowed=False,
                reason=f"Unknown action: {action}",
                reason_code=PermissionReason.UNKNOWN_ACTION,
            )

        plan = user_plan.plan
        if action == PlanAction.GENERATE_EXTENSION:
            return self._check_generation(plan, context)
        if action == PlanAction.REVISE_EXTENSION:
            return self._check_revision(plan, context)
        if action == PlanAction.TEAM_COLLABORATION:
            return self._check_team(plan, context)
        return self._check_feature(plan, _FEATURE_ACTIONS[action])

    def _check_generation(self, plan: UserPlan, context: PermissionContext) -> PermissionDecision:
        config, tokens = plan.config, plan.tokens

        # Token check precedes the monthly limit
        if not tokens.is_unlimited and tokens.current < 1:
            return PermissionDecision(
                allowed=False,
                reason="Insufficient tokens",
                reason_code=PermissionReason.INSUFFICIENT_TOKENS,
                requires_upgrade=config.id == self.catalog.free.id,
                tokens_needed=1,
                current_tokens=tokens.current,
            )

        limit = config.limits.extensions_per_month
        if limit != UNLIMITED and context.monthly_usage >= limit:
            return PermissionDecision(
                allowed=False,
                reason="Monthly extension limit reached",
                reason_code=PermissionReason.MONTHLY_LIMIT_REACHED,
                requires_upgrade=True,
                limit=limit,
                current=context.monthly_usage,
            )

        return PermissionDecision(
            allowed=True,
            reason="Permission granted",
            reason_code=PermissionReason.PERMISSION_GRANTED,
        )

    @staticmethod
    def _check_revision(plan: UserPlan, context: PermissionContext) -> PermissionDecision:
        config = plan.config
        if config.has_feature(PlanFeature.REVISION_UNLIMITED):
            return PermissionDecision(
                allowed=True,
                reason="Unlimited revisions included",
                reason_code=PermissionReason.UNLIMITED_REVISIONS,
            )

        limit = config.limits.revisions_per_extension
        if limit != UNLIMITED and context.revision_count >= limit:
            return PermissionDecision(
                allowed=False,
                reason=f"Revision limit reached ({limit} per extension)",
                reason_code=PermissionReason.REVISION_LIMIT_REACHED,
                requires_upgrade=True,
                limit=limit,
                current=context.revision_count,
            )

        return PermissionDecision(
            allowed=True,
            reason="Revision allowed",
            reason_code=PermissionReason.REVISION_ALLOWED,
        )

    @staticmethod
    def _check_feature(plan: UserPlan, feature: PlanFeature) -> PermissionDecision:
        included = plan.config.has_feature(feature)
        return PermissionDecision(
            allowed=included,
            reason="Feature included in plan" if included else "Feature not available in current plan",
            reason_code=(
                PermissionReason.FEATURE_INCLUDED if included else PermissionReason.FEATURE_UNAVAILABLE
            ),
            requires_upgrade=not included,
        )

    @staticmethod
    def _check_team(plan: UserPlan, context: PermissionContext) -> PermissionDecision:
        limit = plan.config.limits.team_members
        if limit != UNLIMITED and context.team_members >= limit:
            return PermissionDecision(
                allowed=False,
                reason=f"Team member limit reached ({limit})",
                reason_code=PermissionReason.TEAM_LIMIT_REACHED,
                requires_upgrade=True,
                limit=limit,
                current=context.team_members,
            )

        return PermissionDecision(
            allowed=True,
            reason="Team collaboration allowed",
            reason_code=PermissionReason.TEAM_ALLOWED,
        )

    # ------------------------------------------------------------------
    # upgrade saga
    # ------------------------------------------------------------------

    async def upgrade_plan(
        self,
        user_id: str,
        target_plan: str,
        payment: PaymentReference | None = None,
        *,
        caller: AuthenticatedUser | None = None,
    ) -> UpgradeResult | ServiceFailure:
        """Create a subscription for ``target_plan`` and credit its included tokens.

        Saga states: PENDING -> SUBSCRIBED -> ALLOCATED. A failed allocation
        deletes the subscription (FAILED_ROLLED_BACK); if that delete also
        fails the saga is left in FAILED_NEEDS_RECONCILIATION.
        """
        payment = payment or PaymentReference()
        try:
            return await self._upgrade(user_id, target_plan, payment, caller)
        except TokenServiceError as exc:
            logger.warning(
                "plan_upgrade_failed", user_id=user_id, target_plan=target_plan, error=exc.message
            )
            return ServiceFailure.from_error(exc)
        except Exception:
            logger.exception("plan_upgrade_unexpected_error", user_id=user_id, target_plan=target_plan)
            return ServiceFailure(error=ErrorKind.TRANSPORT, message="Plan upgrade failed")

    async def _upgrade(
        self,
        user_id: str,
        target_plan: str,
        payment: PaymentReference,
        caller: AuthenticatedUser | None,
    ) -> UpgradeResult | ServiceFailure:
        target = self.catalog.resolve(target_plan)
        if target is None:
            return ServiceFailure(
                error=ErrorKind.VALIDATION,
                message=f"Invalid plan: {target_plan}. Valid plans: {', '.join(self.catalog.names())}",
            )

        current = await self.get_user_plan(user_id, caller=caller)
        if not current.success:
            return current

        path = self.validate_upgrade_path(current.plan.type, target.id)
        if not path.valid:
            return ServiceFailure(error=ErrorKind.VALIDATION, message=path.reason)

        now = self.now_provider()
        saga = UpgradeSaga(
            id=generate_uuid(),
            user_id=user_id,
            from_plan=current.plan.type,
            to_plan=target.id,
            billing_cycle=payment.billing_cycle,
            created_at=now,
            updated_at=now,
        )
        await self.subscriptions.save_saga(saga)
        logger.info(
            "plan_upgrade_started",
            saga_id=saga.id,
            user_id=user_id,
            from_plan=saga.from_plan,
            to_plan=saga.to_plan,
        )

        try:
            subscription = await self.subscriptions.create_subscription(
                Subscription(
                    id=generate_uuid(),
                    user_id=user_id,
                    plan_id=await self.subscriptions.get_plan_id(target.id),
                    plan_name=target.id,
                    status=SubscriptionStatus.ACTIVE,
                    current_period_start=now,
                    current_period_end=self.calculate_period_end(payment.billing_cycle, now),
                    cancel_at_period_end=False,
                    stripe_subscription_id=payment.subscription_id,
                    stripe_customer_id=payment.customer_id,
                    created_at=now,
                )
            )
        except TokenServiceError as exc:
            await self._advance(saga, SagaState.FAILED_ROLLED_BACK, error=exc.message)
            logger.warning("plan_upgrade_subscription_failed", saga_id=saga.id, error=exc.message)
            return ServiceFailure(
                error=exc.kind,
                message="Failed to create subscription",
                detail={"saga_id": saga.id},
            )

        saga = await self._advance(saga, SagaState.SUBSCRIBED, subscription_id=subscription.id)
        return await self._allocate_upgrade(saga, target, subscription)

    async def _allocate_upgrade(
        self, saga: UpgradeSaga, target: PlanConfig, subscription: Subscription | None
    ) -> UpgradeResult | ServiceFailure:
        credit = await self.token_service.credit(
            saga.user_id,
            target.tokens.included,
            TokenSource.PURCHASE,
            {"plan_name": target.id, "subscription_id": saga.subscription_id},
            caller=SERVICE_CALLER,
        )
        if not credit.success:
            logger.warning(
                "plan_upgrade_allocation_failed",
                saga_id=saga.id,
                user_id=saga.user_id,
                error=credit.message,
            )
            saga = await self._rollback(saga, credit.message)
            return ServiceFailure(
                error=credit.error,
                message="Failed to allocate tokens for new plan",
                detail={"saga_id": saga.id, "saga_state": saga.state.value},
            )

        saga = await self._advance(saga, SagaState.ALLOCATED)
        logger.info(
            "plan_upgrade_completed",
            saga_id=saga.id,
            user_id=saga.user_id,
            to_plan=target.id,
            tokens_allocated=credit.tokens_added,
        )
        return UpgradeResult(
            subscription=subscription,
            tokens_allocated=credit.tokens_added,
            new_balance=credit.new_balance,
            saga=saga,
            message=f"Successfully upgraded to {target.display_name}!",
        )

    async def _rollback(self, saga: UpgradeSaga, error: str | None) -> UpgradeSaga:
        if saga.subscription_id is not None:
            try:
                await self.subscriptions.delete_subscription(saga.subscription_id)
            except TokenServiceError as exc:
                logger.error(
                    "plan_upgrade_rollback_failed",
                    saga_id=saga.id,
                    subscription_id=saga.subscription_id,
                    error=exc.message,
                )
                return await self._advance(
                    saga, SagaState.FAILED_NEEDS_RECONCILIATION, error=exc.message
                )

        logger.info("plan_upgrade_rolled_back", saga_id=saga.id, subscription_id=saga.subscription_id)
        return await self._advance(saga, SagaState.FAILED_ROLLED_BACK, error=error)

    async def _advance(self, saga: UpgradeSaga, state: SagaState, **changes: Any) -> UpgradeSaga:
        updated = saga.model_copy(
            update={"state": state, "updated_at": self.now_provider(), **changes}
        )
        await self.subscriptions.save_saga(updated)
        logger.debug("plan_upgrade_saga_transition", saga_id=saga.id, from_state=saga.state, to_state=state)
        return updated

    async def pending_upgrades(self) -> list[UpgradeSaga]:
        return await self.subscriptions.list_sagas(set(UNFINISHED_SAGA_STATES))

    async def reconcile_upgrade(
        self, saga_id: str
    ) -> UpgradeResult | SagaReconciliation | ServiceFailure:
        """Drive an unfinished saga to a terminal state.

        SUBSCRIBED retries the allocation. FAILED_NEEDS_RECONCILIATION retries
        the subscription delete. PENDING never got a subscription, so it is
        closed as rolled back.
        """
        try:
            saga = await self.subscriptions.get_saga(saga_id)
            if saga is None:
                return ServiceFailure(error=ErrorKind.VALIDATION, message=f"Unknown upgrade saga: {saga_id}")

            logger.info("plan_upgrade_reconcile_started", saga_id=saga.id, state=saga.state)
            if saga.state == SagaState.SUBSCRIBED:
                target = self._resolve_plan(saga.to_plan)
                subscription = await self.subscriptions.get_active_subscription(saga.user_id)
                if subscription is not None and subscription.id != saga.subscription_id:
                    subscription = None
                return await self._allocate_upgrade(saga, target, subscription)

            if saga.state in (SagaState.FAILED_NEEDS_RECONCILIATION, SagaState.PENDING):
                saga = await self._rollback(saga, saga.error or "Upgrade abandoned before completion")
                return SagaReconciliation(saga=saga, message=f"Upgrade saga is now {saga.state.value}")

            return ServiceFailure(
                error=ErrorKind.VALIDATION,
                message=f"Upgrade saga is already {saga.state.value}",
            )
        except TokenServiceError as exc:
            logger.warning("plan_upgrade_reconcile_failed", saga_id=saga_id, error=exc.message)
            return ServiceFailure.from_error(exc)
        except Exception:
            logger.exception("plan_upgrade_reconcile_unexpected_error", saga_id=saga_id)
            return ServiceFailure(error=ErrorKind.TRANSPORT, message="Upgrade reconciliation failed")

    # ------------------------------------------------------------------
    # renewal + expiration
    # ------------------------------------------------------------------

    async def allocate_monthly_tokens(
        self, subscriptions: list[Subscription] | None = None
    ) -> AllocationBatchResult | ServiceFailure:
        """Top each subscriber up to their plan's included tokens. No rollover."""
        if subscriptions is None:
            try:
                subscriptions = await self.subscriptions.list_active_subscriptions()
            except TokenServiceError as exc:
                logger.warning("plan_allocation_listing_failed", error=exc.message)
                return ServiceFailure.from_error(exc)

        batch = AllocationBatchResult()
        for subscription in subscriptions:
            config = self._resolve_plan(subscription.plan_name)
            balance = await self.token_service.check_balance(
                subscription.user_id, caller=SERVICE_CALLER
            )
            if not balance.success:
                batch.record_error(
                    subscription.user_id, f"Unable to check current balance: {balance.message}"
                )
                continue

            if balance.balance.is_unlimited:
                batch.skipped += 1
                continue

            deficit = config.tokens.included - balance.balance.current
            if deficit <= 0:
                batch.skipped += 1
                continue

            credit = await self.token_service.credit(
                subscription.user_id,
                deficit,
                TokenSource.RESET,
                {"plan_name": config.id, "subscription_id": subscription.id},
                caller=SERVICE_CALLER,
            )
            if not credit.success:
                batch.record_error(subscription.user_id, credit.message)
                continue

            batch.record(
                AllocationOutcome(
                    user_id=subscription.user_id,
                    plan_name=config.id,
                    tokens_allocated=deficit,
                    success=True,
                )
            )

        logger.info(
            "plan_monthly_allocation_completed",
            processed=batch.processed,
            skipped=batch.skipped,
            failed=batch.failed,
        )
        return batch

    async def handle_expiration(self, user_id: str) -> ExpirationResult | ServiceFailure:
        """Downgrade or mark past-due a subscription whose period has ended."""
        if not user_id:
            return ServiceFailure(error=ErrorKind.VALIDATION, message="User ID is required")

        try:
            subscription = await self.subscriptions.get_active_subscription(user_id)
            if subscription is None:
                return ExpirationResult(action=ExpirationAction.NO_SUBSCRIPTION)

            period_end = subscription.current_period_end
            if period_end is None or self.now_provider() <= period_end:
                return ExpirationResult(action=ExpirationAction.NOT_EXPIRED)

            if subscription.cancel_at_period_end:
                await self._downgrade_to_free(user_id, subscription)
                logger.info("plan_downgraded_to_free", user_id=user_id, subscription_id=subscription.id)
                return ExpirationResult(
                    action=ExpirationAction.DOWNGRADED_TO_FREE,
                    message="Subscription expired and user downgraded to free plan",
                )

            # Payment retries are the provider's job; tokens are left alone
            await self.subscriptions.update_status(subscription.id, SubscriptionStatus.PAST_DUE)
            logger.info("plan_marked_past_due", user_id=user_id, subscription_id=subscription.id)
            return ExpirationResult(
                action=ExpirationAction.MARKED_PAST_DUE,
                message="Subscription marked as past due",
            )
        except TokenServiceError as exc:
            logger.warning("plan_expiration_failed", user_id=user_id, error=exc.message)
            return ServiceFailure.from_error(exc)
        except Exception:
            logger.exception("plan_expiration_unexpected_error", user_id=user_id)
            return ServiceFailure(error=ErrorKind.TRANSPORT, message="Failed to handle plan expiration")

    async def _downgrade_to_free(self, user_id: str, subscription: Subscription) -> None:
        await self.subscriptions.update_status(subscription.id, SubscriptionStatus.CANCELED)

        balance = await self.token_service.check_balance(user_id, caller=SERVICE_CALLER)
        if not balance.success:
            logger.warning("plan_downgrade_balance_unavailable", user_id=user_id, error=balance.message)
            return

        # Never claw back: only top up to the free allotment
        target = self.catalog.free.tokens.included
        current = balance.balance.current
        if balance.balance.is_unlimited or current >= target:
            return

        credit = await self.token_service.credit(
            user_id,
            target - current,
            TokenSource.RESET,
            {"plan_name": self.catalog.free.id, "reason": "downgrade"},
            caller=SERVICE_CALLER,
        )
        if not credit.success:
            logger.warning("plan_downgrade_topup_failed", user_id=user_id, error=credit.message)
