"""Administrative token and plan operations (user_profiles.is_admin only)."""

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from kromio.api.v1.responses import get_plan_service, get_token_service, raise_for_failure
from kromio.auth import AdminUser
from kromio.models.results import (
    AdditionResult,
    AllocationBatchResult,
    ExpirationResult,
    SagaReconciliation,
    UpgradeResult,
)
from kromio.models.subscriptions import UpgradeSaga
from kromio.models.tokens import TokenResetRequest, TokenSource

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class CreditRequest(BaseModel):
    """Manually credit tokens to a user."""

    user_id: str
    amount: int
    source: TokenSource = TokenSource.BONUS
    plan_name: str | None = None
    payment_intent_id: str | None = None


class BulkResetRequest(BaseModel):
    updates: list[TokenResetRequest] = Field(default_factory=list)


@router.post("/tokens/credit", response_model=AdditionResult)
async def credit_tokens(body: CreditRequest, request: Request, admin: AdminUser) -> AdditionResult:
    service = get_token_service(request)
    logger.info("admin_credit_requested", admin_id=admin.id, user_id=body.user_id, amount=body.amount)
    result = await service.credit(
        body.user_id,
        body.amount,
        body.source,
        {"plan_name": body.plan_name, "payment_intent_id": body.payment_intent_id},
        caller=admin,
    )
    return raise_for_failure(result)


@router.post("/tokens/bulk-reset", response_model=AllocationBatchResult)
async def bulk_reset(
    body: BulkResetRequest, request: Request, admin: AdminUser
) -> AllocationBatchResult:
    service = get_token_service(request)
    logger.info("admin_bulk_reset_requested", admin_id=admin.id, users=len(body.updates))
    return raise_for_failure(await service.bulk_reset(body.updates))


@router.post("/plans/allocate-monthly", response_model=AllocationBatchResult)
async def allocate_monthly(request: Request, admin: AdminUser) -> AllocationBatchResult:
    service = get_plan_service(request)
    logger.info("admin_monthly_allocation_requested", admin_id=admin.id)
    return raise_for_failure(await service.allocate_monthly_tokens())


@router.get("/plans/upgrades/pending", response_model=list[UpgradeSaga])
async def list_pending_upgrades(request: Request, _admin: AdminUser) -> list[UpgradeSaga]:
    return await get_plan_service(request).pending_upgrades()


@router.post(
    "/plans/upgrades/{saga_id}/reconcile",
    response_model=UpgradeResult | SagaReconciliation,
)
async def reconcile_upgrade(
    saga_id: str, request: Request, admin: AdminUser
) -> UpgradeResult | SagaReconciliation:
    service = get_plan_service(request)
    logger.info("admin_reconcile_requested", admin_id=admin.id, saga_id=saga_id)
    return raise_for_failure(await service.reconcile_upgrade(saga_id))


@router.post("/plans/{user_id}/expiration", response_model=ExpirationResult)
async def handle_expiration(user_id: str, request: Request, admin: AdminUser) -> ExpirationResult:
    service = get_plan_service(request)
    logger.info("admin_expiration_requested", admin_id=admin.id, user_id=user_id)
    return raise_for_failure(await service.handle_expiration(user_id))
