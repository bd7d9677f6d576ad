"""Shared helpers for mapping service results onto HTTP responses."""

from typing import Any

from fastapi import HTTPException, Request

from kromio.constants import ERROR_STATUS_CODES
from kromio.models.results import ServiceFailure
from kromio.services.plan_service import PlanService
from kromio.services.token_service import TokenService


def get_token_service(request: Request) -> TokenService:
    service = getattr(request.app.state, "token_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Token service unavailable")
    return service


def get_plan_service(request: Request) -> PlanService:
    service = getattr(request.app.state, "plan_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Plan service unavailable")
    return service


def raise_for_failure(result: Any) -> Any:
    """Return ``result`` unchanged unless it is a ServiceFailure, which becomes an HTTPException."""
    if not isinstance(result, ServiceFailure):
        return result

    headers = None
    if result.retry_after_seconds is not None:
        headers = {"Retry-After": str(max(1, round(result.retry_after_seconds)))}
    raise HTTPException(
        status_code=ERROR_STATUS_CODES[result.error],
        detail=result.model_dump(mode="json", exclude_none=True),
        headers=headers,
    )
