"""Unit tests for the accounting gateways and driver error translation."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from postgrest.exceptions import APIError

from kromio.errors import BackendRejected, ErrorKind, ProfileNotFound, TransportError
from kromio.models.tokens import PlanSummary, TransactionType
from kromio.services import supabase_client as supabase_client_module
from kromio.services.supabase_client import is_duplicate_key, translate_error
from kromio.services.token_gateway import InMemoryTokenGateway, SupabaseTokenGateway


def _api_error(code: str, message: str = "boom") -> APIError:
    return APIError({"message": message, "code": code, "hint": None, "details": None})


def _client_returning(data) -> MagicMock:
    """Supabase client whose rpc(...).execute() resolves to ``data``."""
    client = MagicMock()
    client.rpc.return_value.execute = AsyncMock(return_value=SimpleNamespace(data=data))
    return client


def _client_raising(exc: Exception) -> MagicMock:
    client = MagicMock()
    client.rpc.return_value.execute = AsyncMock(side_effect=exc)
    return client


class TestTranslateError:
    def test_missing_row_with_user_is_profile_not_found(self):
        err = translate_error(_api_error("PGRST116"), user_id="u1")

        assert isinstance(err, ProfileNotFound)
        assert err.user_id == "u1"

    def test_missing_row_without_user_is_rejection(self):
        err = translate_error(_api_error("PGRST116"))

        assert type(err) is BackendRejected
        assert err.code == "PGRST116"

    def test_profile_message_marker_is_profile_not_found(self):
        err = translate_error(_api_error("P0001", "No user profile found"), user_id="u1")

        assert isinstance(err, ProfileNotFound)

    def test_jwt_failure_is_transport(self):
        err = translate_error(_api_error("PGRST301", "JWT expired"))

        assert isinstance(err, TransportError)
        assert err.kind == ErrorKind.TRANSPORT

    def test_other_api_error_is_rejection(self):
        err = translate_error(_api_error("P0001", "Insufficient tokens"))

        assert isinstance(err, BackendRejected)
        assert err.message == "Insufficient tokens"
        assert err.kind == ErrorKind.BACKEND_REJECTED

    def test_http_error_is_transport(self):
        err = translate_error(httpx.ConnectError("connection refused"))

        assert isinstance(err, TransportError)
        assert "connection refused" in err.message

    def test_subsystem_error_passes_through(self):
        original = BackendRejected("nope")

        assert translate_error(original) is original

    def test_duplicate_key_detection(self):
        assert is_duplicate_key(_api_error("23505"))
        assert is_duplicate_key(_api_error("", "duplicate key value violates unique constraint"))
        assert not is_duplicate_key(_api_error("P0001"))


class TestSupabaseTokenGateway:
    async def test_fetch_balance_calls_rpc_with_user_uuid(self):
        client = _client_returning(
            {"current_tokens": 7, "total_tokens_used": 3, "plan": {"name": "freelancer"}}
        )
        gateway = SupabaseTokenGateway(client)

        info = await gateway.fetch_balance("u1")

        client.rpc.assert_called_once_with("get_user_token_info", {"user_uuid": "u1"})
        assert info.current_tokens == 7
        assert info.plan.name == "freelancer"

    async def test_fetch_balance_accepts_row_list(self):
        gateway = SupabaseTokenGateway(_client_returning([{"current_tokens": 4}]))

        info = await gateway.fetch_balance("u1")

        assert info.current_tokens == 4

    async def test_fetch_balance_empty_payload_is_profile_not_found(self):
        gateway = SupabaseTokenGateway(_client_returning([]))

        with pytest.raises(ProfileNotFound):
            await gateway.fetch_balance("u1")

    async def test_null_balance_without_profile_row_is_profile_not_found(
        self, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setattr(supabase_client_module, "get_user_profile", AsyncMock(return_value=None))
        gateway = SupabaseTokenGateway(_client_returning({"current_tokens": None}))

        with pytest.raises(ProfileNotFound):
            await gateway.fetch_balance("u1")

    async def test_null_balance_is_filled_from_profile_row(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(
            supabase_client_module,
            "get_user_profile",
            AsyncMock(return_value={"current_tokens": 12, "total_tokens_used": 8}),
        )
        gateway = SupabaseTokenGateway(
            _client_returning({"current_tokens": None, "plan": {"name": "free"}})
        )

        info = await gateway.fetch_balance("u1")

        assert info.current_tokens == 12
        assert info.total_tokens_used == 8

    async def test_fetch_balance_driver_error_is_translated(self):
        gateway = SupabaseTokenGateway(_client_raising(httpx.ReadTimeout("timed out")))

        with pytest.raises(TransportError):
            await gateway.fetch_balance("u1")

    async def test_deduct_sends_rpc_parameters(self):
        client = _client_returning(
            {"success": True, "tokens_remaining": 4, "unlimited": False, "transaction_id": "t1"}
        )
        gateway = SupabaseTokenGateway(client)

        receipt = await gateway.deduct("u1", 2, "Extension generation", "ext-9")

        client.rpc.assert_called_once_with(
            "deduct_tokens",
            {
                "user_uuid": "u1",
                "tokens_to_deduct": 2,
                "description": "Extension generation",
                "ext_id": "ext-9",
            },
        )
        assert receipt.tokens_remaining == 4
        assert receipt.transaction_id == "t1"

    async def test_deduct_failed_receipt_raises_with_shortfall(self):
        gateway = SupabaseTokenGateway(
            _client_returning({"success": False, "error": "Insufficient tokens", "tokens_needed": 2})
        )

        with pytest.raises(BackendRejected) as exc_info:
            await gateway.deduct("u1", 5, "Extension generation", None)

        assert exc_info.value.tokens_needed == 2
        assert exc_info.value.message == "Insufficient tokens"

    async def test_credit_sends_prefixed_parameters(self):
        client = _client_returning({"success": True, "tokens_added": 10, "new_balance": 15})
        gateway = SupabaseTokenGateway(client)

        receipt = await gateway.credit("u1", 10, TransactionType.BONUS, "Welcome bonus", "sub-1")

        client.rpc.assert_called_once_with(
            "add_tokens",
            {
                "p_user_id": "u1",
                "p_amount": 10,
                "p_type": "bonus",
                "p_description": "Welcome bonus",
                "p_subscription_id": "sub-1",
            },
        )
        assert receipt.new_balance == 15

    async def test_credit_empty_payload_is_rejection(self):
        gateway = SupabaseTokenGateway(_client_returning(None))

        with pytest.raises(BackendRejected):
            await gateway.credit("u1", 10, TransactionType.BONUS, "Welcome bonus", None)

    async def test_create_profile_duplicate_returns_false(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(
            supabase_client_module,
            "insert_user_profile",
            AsyncMock(side_effect=_api_error("23505", "duplicate key")),
        )
        gateway = SupabaseTokenGateway(MagicMock())

        assert await gateway.create_profile("u1", plan_name="free", tokens=5) is False

    async def test_create_profile_inserts_row(self, monkeypatch: pytest.MonkeyPatch):
        insert = AsyncMock(return_value={"id": "u1"})
        monkeypatch.setattr(supabase_client_module, "insert_user_profile", insert)
        client = MagicMock()
        gateway = SupabaseTokenGateway(client)

        assert await gateway.create_profile("u1", plan_name="free", tokens=5) is True
        insert.assert_awaited_once_with(client, "u1", plan_name="free", tokens=5)

    async def test_plan_allotment_reads_plans_row(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(
            supabase_client_module,
            "get_plan_by_name",
            AsyncMock(return_value={"name": "free", "tokens_per_month": 5}),
        )
        gateway = SupabaseTokenGateway(MagicMock())

        assert await gateway.plan_allotment("free") == 5


class TestInMemoryTokenGateway:
    async def test_unknown_user_is_profile_not_found(self):
        gateway = InMemoryTokenGateway()

        with pytest.raises(ProfileNotFound):
            await gateway.fetch_balance("ghost")

    async def test_deduct_records_usage_transaction(self):
        gateway = InMemoryTokenGateway()
        gateway.seed("u1", 5)

        receipt = await gateway.deduct("u1", 2, "Extension generation", "ext-1")
        history = await gateway.history("u1", 10)

        assert receipt.tokens_remaining == 3
        assert history[0].amount == -2
        assert history[0].type == TransactionType.USAGE
        assert history[0].balance_after == 3
        assert history[0].extension_id == "ext-1"

    async def test_short_balance_is_left_untouched(self):
        gateway = InMemoryTokenGateway()
        gateway.seed("u1", 1)

        with pytest.raises(BackendRejected) as exc_info:
            await gateway.deduct("u1", 3, "Extension generation", None)

        assert exc_info.value.tokens_needed == 2
        assert gateway.profiles["u1"]["current_tokens"] == 1
        assert gateway.transactions["u1"] == []

    async def test_unlimited_plan_does_not_change_balance(self):
        gateway = InMemoryTokenGateway(
            plans={"enterprise": PlanSummary(name="enterprise", is_unlimited=True)}
        )
        gateway.seed("u1", 0, plan_name="enterprise")

        receipt = await gateway.deduct("u1", 4, "Extension generation", None)

        assert receipt.unlimited is True
        assert gateway.profiles["u1"]["current_tokens"] == 0
        assert gateway.profiles["u1"]["total_tokens_used"] == 4

    async def test_injected_failure_is_raised(self):
        gateway = InMemoryTokenGateway()
        gateway.seed("u1", 5)
        gateway.failures["credit"] = TransportError("down")

        with pytest.raises(TransportError):
            await gateway.credit("u1", 1, TransactionType.BONUS, "x", None)

        assert gateway.calls["credit"] == 1

    async def test_create_profile_is_idempotent(self):
        gateway = InMemoryTokenGateway()

        assert await gateway.create_profile("u1", plan_name="free", tokens=5) is True
        assert await gateway.create_profile("u1", plan_name="free", tokens=99) is False
        assert gateway.profiles["u1"]["current_tokens"] == 5
