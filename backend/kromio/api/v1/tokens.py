"""Token balance and usage endpoints for the authenticated user."""

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from kromio.api.v1.responses import get_token_service, raise_for_failure
from kromio.auth import CurrentUser
from kromio.models.results import (
    BalanceResult,
    DeductionResult,
    HistoryResult,
    OperationCheck,
    PlanDetails,
)

router = APIRouter(prefix="/tokens", tags=["tokens"])


class DeductRequest(BaseModel):
    """Spend tokens on an operation."""

    amount: int = Field(default=1, description="Tokens to deduct")
    description: str = Field(default="Extension generation", max_length=500)
    extension_id: str | None = Field(default=None, description="Artifact the spend is linked to")


@router.get("/balance", response_model=BalanceResult)
async def get_balance(request: Request, user: CurrentUser) -> BalanceResult:
    service = get_token_service(request)
    return raise_for_failure(await service.check_balance(user.id, caller=user))


@router.post("/deduct", response_model=DeductionResult)
async def deduct_tokens(body: DeductRequest, request: Request, user: CurrentUser) -> DeductionResult:
    """Deduct tokens. Insufficient balance answers 402 with ``tokens_needed``."""
    service = get_token_service(request)
    result = await service.deduct(
        user.id,
        body.amount,
        body.description,
        body.extension_id,
        caller=user,
    )
    return raise_for_failure(result)


@router.get("/history", response_model=HistoryResult)
async def get_history(
    request: Request,
    user: CurrentUser,
    limit: int | None = Query(default=None, description="Max rows (clamped to 200)"),
) -> HistoryResult:
    service = get_token_service(request)
    return raise_for_failure(await service.history(user.id, limit, caller=user))


@router.get("/validate", response_model=OperationCheck)
async def validate_operation(
    request: Request,
    user: CurrentUser,
    required_tokens: int = Query(default=1),
) -> OperationCheck:
    service = get_token_service(request)
    return raise_for_failure(
        await service.validate_operation(user.id, required_tokens, caller=user)
    )


@router.get("/plan-details", response_model=PlanDetails)
async def get_plan_details(request: Request, user: CurrentUser) -> PlanDetails:
    service = get_token_service(request)
    return raise_for_failure(await service.plan_details(user.id, caller=user))
