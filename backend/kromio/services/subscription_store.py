"""Subscription, upgrade-saga and webhook-idempotency storage."""

from collections import defaultdict
from typing import Protocol

from supabase._async.client import AsyncClient as AsyncSupabaseClient

from kromio.errors import TokenServiceError
from kromio.models.subscriptions import SagaState, Subscription, SubscriptionStatus, UpgradeSaga
from kromio.services import supabase_client as tables
from kromio.services.supabase_client import DRIVER_ERRORS, translate_error


class SubscriptionStore(Protocol):
    """Storage contract for subscription state."""

    async def get_plan_id(self, plan_name: str) -> str | None:
        """Resolve a plans row id by name."""

    async def create_subscription(self, subscription: Subscription) -> Subscription:
        """Insert a subscription row."""

    async def delete_subscription(self, subscription_id: str) -> None:
        """Compensating delete used by upgrade rollback."""

    async def update_status(self, subscription_id: str, status: SubscriptionStatus) -> None:
        """Transition a subscription's status."""

    async def get_active_subscription(self, user_id: str) -> Subscription | None:
        """Most recently created active subscription for the user."""

    async def list_active_subscriptions(self) -> list[Subscription]:
        """All active subscriptions (monthly allocation input)."""

    async def save_saga(self, saga: UpgradeSaga) -> UpgradeSaga:
        """Persist an upgrade saga transition."""

    async def get_saga(self, saga_id: str) -> UpgradeSaga | None:
        """Fetch one saga."""

    async def list_sagas(self, states: set[SagaState]) -> list[UpgradeSaga]:
        """Sagas currently in any of ``states``, oldest first."""

    async def mark_webhook_processed(self, event_id: str) -> bool:
        """Record webhook idempotency key.

        Returns True when the event is new; False if already seen.
        """

    async def release_webhook_event(self, event_id: str) -> None:
        """Forget an idempotency key so the provider's retry is processed."""


class InMemorySubscriptionStore:
    """In-memory store used for tests and local fallback."""

    def __init__(self, plan_ids: dict[str, str] | None = None) -> None:
        self.plan_ids: dict[str, str] | None = plan_ids
        self.subscriptions: dict[str, Subscription] = {}
        self.sagas: dict[str, UpgradeSaga] = {}
        self.saga_history: dict[str, list[SagaState]] = defaultdict(list)
        self.processed_events: set[str] = set()
        self.failures: dict[str, TokenServiceError] = {}

    def _check(self, operation: str) -> None:
        failure = self.failures.get(operation)
        if failure is not None:
            raise failure

    def active_for(self, user_id: str) -> Subscription | None:
        active = [
            sub
            for sub in self.subscriptions.values()
            if sub.user_id == user_id and sub.status == SubscriptionStatus.ACTIVE
        ]
        if not active:
            return None
        # Insertion order breaks created_at ties
        _, latest = max(
            enumerate(active),
            key=lambda pair: (pair[1].created_at is not None, pair[1].created_at, pair[0]),
        )
        return latest

    async def get_plan_id(self, plan_name: str) -> str | None:
        self._check("get_plan_id")
        if self.plan_ids is None:
            return f"plan_{plan_name}"
        return self.plan_ids.get(plan_name)

    async def create_subscription(self, subscription: Subscription) -> Subscription:
        self._check("create_subscription")
        stored = subscription.model_copy(deep=True)
        self.subscriptions[stored.id] = stored
        return stored.model_copy(deep=True)

    async def delete_subscription(self, subscription_id: str) -> None:
        self._check("delete_subscription")
        self.subscriptions.pop(subscription_id, None)

    async def update_status(self, subscription_id: str, status: SubscriptionStatus) -> None:
        self._check("update_status")
        subscription = self.subscriptions.get(subscription_id)
        if subscription is not None:
            self.subscriptions[subscription_id] = subscription.model_copy(update={"status": status})

    async def get_active_subscription(self, user_id: str) -> Subscription | None:
        self._check("get_active_subscription")
        active = self.active_for(user_id)
        return active.model_copy(deep=True) if active else None

    async def list_active_subscriptions(self) -> list[Subscription]:
        self._check("list_active_subscriptions")
        return [
            sub.model_copy(deep=True)
            for sub in self.subscriptions.values()
            if sub.status == SubscriptionStatus.ACTIVE
        ]

    async def save_saga(self, saga: UpgradeSaga) -> UpgradeSaga:
        self._check("save_saga")
        self.sagas[saga.id] = saga.model_copy(deep=True)
        self.saga_history[saga.id].append(saga.state)
        return saga

    async def get_saga(self, saga_id: str) -> UpgradeSaga | None:
        saga = self.sagas.get(saga_id)
        return saga.model_copy(deep=True) if saga else None

    async def list_sagas(self, states: set[SagaState]) -> list[UpgradeSaga]:
        return sorted(
            (saga.model_copy(deep=True) for saga in self.sagas.values() if saga.state in states),
            key=lambda saga: saga.created_at,
        )

    async def mark_webhook_processed(self, event_id: str) -> bool:
        if event_id in self.processed_events:
            return False
        self.processed_events.add(event_id)
        return True

    async def release_webhook_event(self, event_id: str) -> None:
        self._check("release_webhook_event")
        self.processed_events.discard(event_id)


class SupabaseSubscriptionStore:
    """Supabase-backed subscription store."""

    def __init__(self, client: AsyncSupabaseClient) -> None:
        self.client = client

    async def get_plan_id(self, plan_name: str) -> str | None:
        try:
            row = await tables.get_plan_by_name(self.client, plan_name)
        except DRIVER_ERRORS as exc:
            raise translate_error(exc) from exc
        return str(row["id"]) if row else None

    async def create_subscription(self, subscription: Subscription) -> Subscription:
        payload = subscription.model_dump(
            mode="json", exclude={"plan_name", "created_at"}, exclude_none=True
        )
        try:
            row = await tables.insert_subscription(self.client, payload)
        except DRIVER_ERRORS as exc:
            raise translate_error(exc) from exc
        return Subscription.model_validate({**row, "plan_name": subscription.plan_name})

    async def delete_subscription(self, subscription_id: str) -> None:
        try:
            await tables.delete_subscription(self.client, subscription_id)
        except DRIVER_ERRORS as exc:
            raise translate_error(exc) from exc

    async def update_status(self, subscription_id: str, status: SubscriptionStatus) -> None:
        try:
            await tables.update_subscription_status(self.client, subscription_id, status.value)
        except DRIVER_ERRORS as exc:
            raise translate_error(exc) from exc

    async def get_active_subscription(self, user_id: str) -> Subscription | None:
        try:
            row = await tables.get_active_subscription(self.client, user_id)
        except DRIVER_ERRORS as exc:
            raise translate_error(exc) from exc
        return Subscription.model_validate(row) if row else None

    async def list_active_subscriptions(self) -> list[Subscription]:
        try:
            rows = await tables.list_active_subscriptions(self.client)
        except DRIVER_ERRORS as exc:
            raise translate_error(exc) from exc
        return [Subscription.model_validate(row) for row in rows]

    async def save_saga(self, saga: UpgradeSaga) -> UpgradeSaga:
        try:
            await tables.upsert_upgrade_saga(self.client, saga.model_dump(mode="json"))
        except DRIVER_ERRORS as exc:
            raise translate_error(exc) from exc
        return saga

    async def get_saga(self, saga_id: str) -> UpgradeSaga | None:
        try:
            row = await tables.get_upgrade_saga(self.client, saga_id)
        except DRIVER_ERRORS as exc:
            raise translate_error(exc) from exc
        return UpgradeSaga.model_validate(row) if row else None

    async def list_sagas(self, states: set[SagaState]) -> list[UpgradeSaga]:
        try:
            rows = await tables.list_upgrade_sagas(self.client, [state.value for state in states])
        except DRIVER_ERRORS as exc:
            raise translate_error(exc) from exc
        return [UpgradeSaga.model_validate(row) for row in rows]

    async def mark_webhook_processed(self, event_id: str) -> bool:
        try:
            return await tables.record_webhook_event(self.client, event_id)
        except DRIVER_ERRORS as exc:
            raise translate_error(exc) from exc

    async def release_webhook_event(self, event_id: str) -> None:
        try:
            await tables.delete_webhook_event(self.client, event_id)
        except DRIVER_ERRORS as exc:
            raise translate_error(exc) from exc
