"""
Async Supabase table helpers.

Thin typed wrappers around the Supabase async client for the tables the
metering subsystem reads and writes directly: user_profiles, plans,
user_subscriptions, token_transactions, plan_upgrade_sagas and
stripe_webhook_events. Balance mutations never go through these helpers;
they use the accounting RPCs in token_gateway.
"""

import uuid
from datetime import datetime, timezone
from typing import Any

import httpx
from postgrest.exceptions import APIError
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from kromio.errors import BackendRejected, ProfileNotFound, TokenServiceError, TransportError

# Exceptions the Supabase/PostgREST driver raises on a failed call
DRIVER_ERRORS = (APIError, httpx.HTTPError)

# Codes that mean "could not talk to the database as this identity" rather
# than "the database said no"
_TRANSPORT_CODES = {"PGRST301", "PGRST302", "42501"}
_PROFILE_MISSING_MARKERS = ("no user profile found", "not found")
_DUPLICATE_KEY_CODE = "23505"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def translate_error(exc: Exception, *, user_id: str | None = None) -> TokenServiceError:
    """Map a driver exception onto the subsystem's error taxonomy.

    Pass ``user_id`` only for calls where "no rows" means the user's profile
    is missing; it turns PGRST116 into ``ProfileNotFound``.
    """
    if isinstance(exc, TokenServiceError):
        return exc
    if isinstance(exc, APIError):
        code = exc.code or ""
        message = exc.message or str(exc)
        lowered = message.lower()
        if user_id and (
            code == "PGRST116" or any(marker in lowered for marker in _PROFILE_MISSING_MARKERS)
        ):
            return ProfileNotFound(user_id)
        if code in _TRANSPORT_CODES:
            return TransportError(f"Backend refused the connection: {message}")
        return BackendRejected(message, code=code or None)
    if isinstance(exc, httpx.HTTPError):
        return TransportError(f"Backend unreachable: {exc}")
    return TransportError(str(exc))


def is_duplicate_key(exc: APIError) -> bool:
    return exc.code == _DUPLICATE_KEY_CODE or "duplicate key" in (exc.message or "").lower()


# ---------------------------------------------------------------------------
# user_profiles
# ---------------------------------------------------------------------------


async def get_user_profile(
    client: AsyncSupabaseClient, user_id: str
) -> dict | None:
    """Fetch full user profile row. Returns None if not found."""
    response = (
        await client.table("user_profiles")
        .select("*")
        .eq("id", user_id)
        .maybe_single()
        .execute()
    )
    return response.data if response else None


async def insert_user_profile(
    client: AsyncSupabaseClient, user_id: str, *, plan_name: str, tokens: int
) -> dict:
    """Insert a default profile row. Raises APIError (23505) if it already exists."""
    data = {
        "id": user_id,
        "current_tokens": tokens,
        "total_tokens_used": 0,
        "plan_name": plan_name,
        "is_admin": False,
    }
    response = await client.table("user_profiles").insert(data).execute()
    return response.data[0] if response.data else data


# ---------------------------------------------------------------------------
# plans
# ---------------------------------------------------------------------------


async def get_plan_by_name(
    client: AsyncSupabaseClient, plan_name: str
) -> dict | None:
    """Look up a plans row (id, tokens_per_month, ...) by name."""
    response = (
        await client.table("plans")
        .select("id, name, tokens_per_month, is_unlimited, price_cents")
        .eq("name", plan_name)
        .limit(1)
        .execute()
    )
    rows = response.data or []
    return rows[0] if rows else None


async def ping_plans(client: AsyncSupabaseClient) -> None:
    """Cheapest possible read, used for health checks."""
    await client.table("plans").select("id").limit(1).execute()


# ---------------------------------------------------------------------------
# token_transactions
# ---------------------------------------------------------------------------


async def list_token_transactions(
    client: AsyncSupabaseClient, user_id: str, limit: int
) -> list[dict]:
    """Most recent transactions first."""
    response = (
        await client.table("token_transactions")
        .select(
            "id, amount, transaction_type, description, balance_after, "
            "created_at, extension_id, metadata"
        )
        .eq("user_id", user_id)
        .order("created_at", desc=True)
        .limit(limit)
        .execute()
    )
    return response.data or []


# ---------------------------------------------------------------------------
# user_subscriptions
# ---------------------------------------------------------------------------

_SUBSCRIPTION_COLUMNS = "*, plans (name)"


def _flatten_subscription(row: dict) -> dict:
    plan = row.pop("plans", None) or {}
    row.setdefault("plan_name", plan.get("name"))
    return row


async def insert_subscription(
    client: AsyncSupabaseClient, data: dict[str, Any]
) -> dict:
    """Insert a subscription row and return it with its plan name."""
    response = await client.table("user_subscriptions").insert(data).execute()
    return response.data[0]


async def delete_subscription(
    client: AsyncSupabaseClient, subscription_id: str
) -> None:
    await client.table("user_subscriptions").delete().eq("id", subscription_id).execute()


async def update_subscription_status(
    client: AsyncSupabaseClient, subscription_id: str, status: str
) -> None:
    await (
        client.table("user_subscriptions")
        .update({"status": status, "updated_at": _now_iso()})
        .eq("id", subscription_id)
        .execute()
    )


async def get_active_subscription(
    client: AsyncSupabaseClient, user_id: str
) -> dict | None:
    """Most recently created active subscription for a user."""
    response = (
        await client.table("user_subscriptions")
        .select(_SUBSCRIPTION_COLUMNS)
        .eq("user_id", user_id)
        .eq("status", "active")
        .order("created_at", desc=True)
        .limit(1)
        .execute()
    )
    rows = response.data or []
    return _flatten_subscription(rows[0]) if rows else None


async def list_active_subscriptions(client: AsyncSupabaseClient) -> list[dict]:
    response = (
        await client.table("user_subscriptions")
        .select(_SUBSCRIPTION_COLUMNS)
        .eq("status", "active")
        .execute()
    )
    return [_flatten_subscription(row) for row in response.data or []]


# ---------------------------------------------------------------------------
# plan_upgrade_sagas
# ---------------------------------------------------------------------------


async def upsert_upgrade_saga(
    client: AsyncSupabaseClient, data: dict[str, Any]
) -> dict:
    response = (
        await client.table("plan_upgrade_sagas")
        .upsert(data, on_conflict="id")
        .execute()
    )
    return response.data[0] if response.data else data


async def get_upgrade_saga(
    client: AsyncSupabaseClient, saga_id: str
) -> dict | None:
    response = (
        await client.table("plan_upgrade_sagas")
        .select("*")
        .eq("id", saga_id)
        .limit(1)
        .execute()
    )
    rows = response.data or []
    return rows[0] if rows else None


async def list_upgrade_sagas(
    client: AsyncSupabaseClient, states: list[str]
) -> list[dict]:
    response = (
        await client.table("plan_upgrade_sagas")
        .select("*")
        .in_("state", states)
        .order("created_at", desc=False)
        .execute()
    )
    return response.data or []


# ---------------------------------------------------------------------------
# stripe_webhook_events
# ---------------------------------------------------------------------------


async def record_webhook_event(client: AsyncSupabaseClient, event_id: str) -> bool:
    """Record a webhook idempotency key. Returns False if already seen."""
    existing = (
        await client.table("stripe_webhook_events")
        .select("event_id")
        .eq("event_id", event_id)
        .limit(1)
        .execute()
    )
    if existing.data:
        return False

    await client.table("stripe_webhook_events").insert(
        {"event_id": event_id, "processed_at": _now_iso()}
    ).execute()
    return True


async def delete_webhook_event(client: AsyncSupabaseClient, event_id: str) -> None:
    await client.table("stripe_webhook_events").delete().eq("event_id", event_id).execute()


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())
