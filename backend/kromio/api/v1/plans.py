"""Plan catalog and permission endpoints."""

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from kromio.api.v1.responses import get_plan_service, raise_for_failure
from kromio.auth import CurrentUser
from kromio.models.plans import PermissionContext, PermissionDecision, PlanConfig
from kromio.models.results import UserPlanResult

router = APIRouter(prefix="/plans", tags=["plans"])


class PermissionRequest(BaseModel):
    """Ask whether the caller's plan allows an action."""

    action: str = Field(description="e.g. generate_extension, revise_extension")
    context: PermissionContext = Field(default_factory=PermissionContext)


@router.get("", response_model=list[PlanConfig])
async def list_plans(request: Request) -> list[PlanConfig]:
    """Public plan catalog, ordered by tier."""
    return get_plan_service(request).get_all_plans()


@router.get("/me", response_model=UserPlanResult)
async def get_my_plan(request: Request, user: CurrentUser) -> UserPlanResult:
    service = get_plan_service(request)
    return raise_for_failure(await service.get_user_plan(user.id, caller=user))


@router.post("/permissions", response_model=PermissionDecision)
async def check_permission(
    body: PermissionRequest, request: Request, user: CurrentUser
) -> PermissionDecision:
    service = get_plan_service(request)
    return await service.can_perform(user.id, body.action, body.context, caller=user)


@router.get("/{name}", response_model=PlanConfig)
async def get_plan(name: str, request: Request) -> PlanConfig:
    plan = get_plan_service(request).get_plan_config(name)
    if plan is None:
        raise HTTPException(status_code=404, detail=f"Unknown plan '{name}'")
    return plan
