"""Accounting gateway: RPC calls into the Supabase token procedures.

The gateway translates subsystem calls into ``get_user_token_info``,
``deduct_tokens`` and ``add_tokens`` invocations and normalizes driver
failures into ``BackendRejected`` (business rejection) or ``TransportError``
(network/auth). It never retries.
"""

import asyncio
import uuid
from collections import defaultdict
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog
from postgrest.exceptions import APIError
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from kromio.errors import BackendRejected, ProfileNotFound, TokenServiceError
from kromio.models.tokens import (
    CreditReceipt,
    DeductionReceipt,
    PlanSummary,
    SubscriptionSummary,
    TokenInfo,
    TokenTransaction,
    TransactionType,
)
from kromio.services import supabase_client as tables
from kromio.services.supabase_client import DRIVER_ERRORS, is_duplicate_key, translate_error
from kromio.services.subscription_store import InMemorySubscriptionStore

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _rpc_payload(data: Any) -> dict | None:
    # Functions returning `json` give a dict; `returns table` gives a list of rows.
    if isinstance(data, list):
        return data[0] if data else None
    return data or None


def _deduction_or_raise(receipt: DeductionReceipt) -> DeductionReceipt:
    if not receipt.success:
        raise BackendRejected(
            receipt.error or "Insufficient tokens",
            tokens_needed=receipt.tokens_needed,
        )
    return receipt


def _credit_or_raise(receipt: CreditReceipt) -> CreditReceipt:
    if not receipt.success:
        raise BackendRejected(receipt.error or "Failed to add tokens")
    return receipt


class TokenGateway(Protocol):
    """Remote accounting contract consumed by TokenService."""

    async def fetch_balance(self, user_id: str) -> TokenInfo:
        """Fetch balance, plan and subscription. Raises ProfileNotFound."""

    async def deduct(
        self, user_id: str, amount: int, description: str, linked_id: str | None
    ) -> DeductionReceipt:
        """Atomically deduct. Raises BackendRejected when the balance is short."""

    async def credit(
        self,
        user_id: str,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        subscription_id: str | None,
    ) -> CreditReceipt:
        """Atomically add tokens and log the transaction."""

    async def history(self, user_id: str, limit: int) -> list[TokenTransaction]:
        """Most recent transactions first."""

    async def create_profile(self, user_id: str, *, plan_name: str, tokens: int) -> bool:
        """Insert a default profile. Returns False if it already existed."""

    async def plan_allotment(self, plan_name: str) -> int | None:
        """Monthly token allotment the backend has configured for a plan."""

    async def ping(self) -> None:
        """Trivial read used for health checks."""


class SupabaseTokenGateway:
    """Gateway backed by Supabase RPCs and tables."""

    def __init__(self, client: AsyncSupabaseClient) -> None:
        self.client = client

    async def _rpc(self, name: str, params: dict[str, Any], *, user_id: str | None = None) -> Any:
        try:
            response = await self.client.rpc(name, params).execute()
        except DRIVER_ERRORS as exc:
            raise translate_error(exc, user_id=user_id) from exc
        return response.data

    async def fetch_balance(self, user_id: str) -> TokenInfo:
        data = _rpc_payload(
            await self._rpc("get_user_token_info", {"user_uuid": user_id}, user_id=user_id)
        )
        if data is None:
            raise ProfileNotFound(user_id)

        info = TokenInfo.model_validate(data)
        if info.current_tokens is not None:
            return info

        logger.debug("token_info_null_balance", user_id=user_id)
        # A null balance may be a missing profile or a lagging view; ask the table.
        try:
            profile = await tables.get_user_profile(self.client, user_id)
        except DRIVER_ERRORS as exc:
            raise translate_error(exc, user_id=user_id) from exc
        if profile is None:
            raise ProfileNotFound(user_id)
        return info.model_copy(
            update={
                "current_tokens": profile.get("current_tokens"),
                "total_tokens_used": profile.get("total_tokens_used"),
            }
        )

    async def deduct(
        self, user_id: str, amount: int, description: str, linked_id: str | None
    ) -> DeductionReceipt:
        data = await self._rpc(
            "deduct_tokens",
            {
                "user_uuid": user_id,
                "tokens_to_deduct": amount,
                "description": description,
                "ext_id": linked_id,
            },
            user_id=user_id,
        )
        return _deduction_or_raise(DeductionReceipt.model_validate(_rpc_payload(data) or {"success": False}))

    async def credit(
        self,
        user_id: str,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        subscription_id: str | None,
    ) -> CreditReceipt:
        data = await self._rpc(
            "add_tokens",
            {
                "p_user_id": user_id,
                "p_amount": amount,
                "p_type": transaction_type.value,
                "p_description": description,
                "p_subscription_id": subscription_id,
            },
            user_id=user_id,
        )
        return _credit_or_raise(CreditReceipt.model_validate(_rpc_payload(data) or {"success": False}))

    async def history(self, user_id: str, limit: int) -> list[TokenTransaction]:
        try:
            rows = await tables.list_token_transactions(self.client, user_id, limit)
        except DRIVER_ERRORS as exc:
            raise translate_error(exc) from exc
        return [TokenTransaction.model_validate(row) for row in rows]

    async def create_profile(self, user_id: str, *, plan_name: str, tokens: int) -> bool:
        try:
            await tables.insert_user_profile(self.client, user_id, plan_name=plan_name, tokens=tokens)
        except APIError as exc:
            if is_duplicate_key(exc):
                return False
            raise translate_error(exc) from exc
        except DRIVER_ERRORS as exc:
            raise translate_error(exc) from exc
        return True

    async def plan_allotment(self, plan_name: str) -> int | None:
        try:
            row = await tables.get_plan_by_name(self.client, plan_name)
        except DRIVER_ERRORS as exc:
            raise translate_error(exc) from exc
        return row.get("tokens_per_month") if row else None

    async def ping(self) -> None:
        try:
            await tables.ping_plans(self.client)
        except DRIVER_ERRORS as exc:
            raise translate_error(exc) from exc


class InMemoryTokenGateway:
    """In-memory accounting backend used for tests and local fallback.

    Each mutation is applied as one synchronous step and appends a
    transaction carrying the same delta, which mirrors the atomicity the
    real stored procedures provide.
    """

    def __init__(
        self,
        *,
        plans: dict[str, PlanSummary] | None = None,
        subscriptions: InMemorySubscriptionStore | None = None,
        latency: float = 0.0,
        now_provider=_utcnow,
    ) -> None:
        self.profiles: dict[str, dict[str, Any]] = {}
        self.transactions: dict[str, list[TokenTransaction]] = defaultdict(list)
        self.plans: dict[str, PlanSummary] = dict(plans or {})
        self.subscriptions = subscriptions
        self.latency = latency
        self.now_provider = now_provider
        self.failures: dict[str, TokenServiceError] = {}
        self.calls: dict[str, int] = defaultdict(int)

    def seed(self, user_id: str, tokens: int, *, plan_name: str = "free", total_used: int = 0) -> None:
        self.profiles[user_id] = {
            "current_tokens": tokens,
            "total_tokens_used": total_used,
            "plan_name": plan_name,
            "tokens_reset_at": None,
        }

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        failure = self.failures.get(operation)
        if failure is not None:
            raise failure

    def _profile(self, user_id: str) -> dict[str, Any]:
        profile = self.profiles.get(user_id)
        if profile is None:
            raise ProfileNotFound(user_id)
        return profile

    def _plan_name(self, user_id: str, profile: dict[str, Any]) -> str:
        if self.subscriptions is not None:
            active = self.subscriptions.active_for(user_id)
            if active is not None:
                return active.plan_name
        return profile["plan_name"]

    def _plan(self, name: str) -> PlanSummary:
        return self.plans.get(name) or PlanSummary(name=name)

    def _append(
        self,
        user_id: str,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        balance_after: int,
        *,
        extension_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TokenTransaction:
        transaction = TokenTransaction(
            id=str(uuid.uuid4()),
            amount=amount,
            type=transaction_type,
            description=description,
            balance_after=balance_after,
            extension_id=extension_id,
            created_at=self.now_provider(),
            metadata=metadata,
        )
        self.transactions[user_id].append(transaction)
        return transaction

    async def fetch_balance(self, user_id: str) -> TokenInfo:
        await self._enter("fetch_balance")
        profile = self._profile(user_id)
        plan = self._plan(self._plan_name(user_id, profile))
        subscription = None
        if self.subscriptions is not None:
            active = self.subscriptions.active_for(user_id)
            if active is not None:
                subscription = SubscriptionSummary(
                    status=active.status.value,
                    current_period_end=active.current_period_end,
                )
        return TokenInfo(
            current_tokens=profile["current_tokens"],
            total_tokens_used=profile["total_tokens_used"],
            tokens_reset_at=profile["tokens_reset_at"],
            plan=plan,
            subscription=subscription,
        )

    async def deduct(
        self, user_id: str, amount: int, description: str, linked_id: str | None
    ) -> DeductionReceipt:
        await self._enter("deduct")
        profile = self._profile(user_id)
        plan = self._plan(self._plan_name(user_id, profile))
        current = profile["current_tokens"]

        if plan.is_unlimited:
            profile["total_tokens_used"] += amount
            transaction = self._append(
                user_id, -amount, TransactionType.USAGE, description, current,
                extension_id=linked_id, metadata={"unlimited": True},
            )
            return DeductionReceipt(
                success=True, tokens_remaining=current, unlimited=True, transaction_id=transaction.id
            )

        if current < amount:
            return _deduction_or_raise(
                DeductionReceipt(success=False, error="Insufficient tokens", tokens_needed=amount - current)
            )

        profile["current_tokens"] = current - amount
        profile["total_tokens_used"] += amount
        transaction = self._append(
            user_id, -amount, TransactionType.USAGE, description, profile["current_tokens"],
            extension_id=linked_id,
        )
        return DeductionReceipt(
            success=True,
            tokens_remaining=profile["current_tokens"],
            unlimited=False,
            transaction_id=transaction.id,
        )

    async def credit(
        self,
        user_id: str,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        subscription_id: str | None,
    ) -> CreditReceipt:
        await self._enter("credit")
        profile = self._profile(user_id)
        profile["current_tokens"] += amount
        if transaction_type == TransactionType.RESET:
            profile["tokens_reset_at"] = self.now_provider()
        transaction = self._append(
            user_id, amount, transaction_type, description, profile["current_tokens"],
            metadata={"subscription_id": subscription_id} if subscription_id else None,
        )
        return CreditReceipt(
            success=True,
            tokens_added=amount,
            new_balance=profile["current_tokens"],
            transaction_id=transaction.id,
        )

    async def history(self, user_id: str, limit: int) -> list[TokenTransaction]:
        await self._enter("history")
        ordered = sorted(
            reversed(self.transactions.get(user_id, [])),
            key=lambda transaction: transaction.created_at,
            reverse=True,
        )
        return ordered[:limit]

    async def create_profile(self, user_id: str, *, plan_name: str, tokens: int) -> bool:
        await self._enter("create_profile")
        if user_id in self.profiles:
            return False
        self.seed(user_id, tokens, plan_name=plan_name)
        return True

    async def plan_allotment(self, plan_name: str) -> int | None:
        await self._enter("plan_allotment")
        plan = self.plans.get(plan_name)
        return plan.tokens_per_month if plan else None

    async def ping(self) -> None:
        await self._enter("ping")
