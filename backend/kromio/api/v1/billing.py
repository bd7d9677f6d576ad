"""Billing API endpoints: Stripe checkout and webhook."""

import structlog
from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel, Field

from kromio.api.v1.responses import get_plan_service
from kromio.auth import SERVICE_CALLER, CurrentUser
from kromio.constants import CHECKOUT_COMPLETED_EVENT
from kromio.errors import ErrorKind, TokenServiceError
from kromio.models.plans import BillingCycle
from kromio.models.results import ServiceFailure
from kromio.models.subscriptions import SagaState
from kromio.services.plan_service import PlanService
from kromio.services.stripe_service import StripeService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Checkout session request."""

    plan_name: str = Field(description="Target paid plan")
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    success_url: str | None = Field(default=None, description="Optional override URL")
    cancel_url: str | None = Field(default=None, description="Optional override URL")


class CheckoutResponse(BaseModel):
    """Checkout session response."""

    checkout_url: str
    session_id: str


class WebhookResponse(BaseModel):
    """Stripe webhook processing response."""

    received: bool
    processed: bool


def _get_stripe_service(request: Request) -> StripeService:
    service = getattr(request.app.state, "stripe_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Stripe not configured")
    return service


def _is_retryable(failure: ServiceFailure) -> bool:
    # Sagas awaiting reconciliation already hold a subscription
    if (failure.detail or {}).get("saga_state") == SagaState.FAILED_NEEDS_RECONCILIATION.value:
        return False
    return failure.error in (ErrorKind.TRANSPORT, ErrorKind.RATE_LIMITED)


async def _release_event(plan_service: PlanService, event_id: str) -> None:
    try:
        await plan_service.subscriptions.release_webhook_event(event_id)
    except TokenServiceError as e:
        logger.error("stripe_webhook_release_failed", event_id=event_id, error=e.message)


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    request: Request,
    user: CurrentUser,
) -> CheckoutResponse:
    """Create a Stripe Checkout session for a plan upgrade."""
    plan_service = get_plan_service(request)
    stripe_service = _get_stripe_service(request)

    current = await plan_service.get_user_plan(user.id, caller=user)
    if current.success:
        path = plan_service.validate_upgrade_path(current.plan.type, body.plan_name)
        if not path.valid:
            raise HTTPException(status_code=400, detail=path.reason)

    try:
        checkout = await stripe_service.create_checkout_session(
            user_id=user.id,
            user_email=user.email,
            plan_name=body.plan_name,
            billing_cycle=body.billing_cycle,
            success_url=body.success_url,
            cancel_url=body.cancel_url,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return CheckoutResponse(checkout_url=checkout["url"], session_id=checkout["id"])


@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> WebhookResponse:
    """Apply completed checkouts as plan upgrades. Each event id is processed once.

    Transient upgrade failures release the event id and answer 503 so Stripe
    redelivers the event.
    """
    plan_service = get_plan_service(request)
    stripe_service = _get_stripe_service(request)
    payload = await request.body()

    try:
        event = stripe_service.verify_webhook_event(payload, stripe_signature)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    event_id = str(event.get("id", ""))
    if not event_id:
        raise HTTPException(status_code=400, detail="Stripe event has no id")

    try:
        is_new = await plan_service.subscriptions.mark_webhook_processed(event_id)
    except TokenServiceError as e:
        logger.warning("stripe_webhook_dedupe_failed", event_id=event_id, error=e.message)
        raise HTTPException(status_code=503, detail="Unable to record webhook event")
    if not is_new:
        return WebhookResponse(received=True, processed=False)

    event_type = str(event.get("type", ""))
    data_object = event.get("data", {}).get("object", {})

    if event_type == CHECKOUT_COMPLETED_EVENT:
        try:
            user_id, plan_name, payment = stripe_service.payment_reference_from_session(data_object)
        except ValueError as e:
            logger.warning("stripe_checkout_session_invalid", event_id=event_id, error=str(e))
            return WebhookResponse(received=True, processed=False)

        result = await plan_service.upgrade_plan(user_id, plan_name, payment, caller=SERVICE_CALLER)
        if not result.success:
            logger.error(
                "stripe_checkout_upgrade_failed",
                event_id=event_id,
                user_id=user_id,
                plan=plan_name,
                error=result.message,
            )
            if _is_retryable(result):
                await _release_event(plan_service, event_id)
                raise HTTPException(status_code=503, detail="Upgrade failed, retry the event")
            return WebhookResponse(received=True, processed=False)
    else:
        logger.info("stripe_webhook_ignored", event_id=event_id, event_type=event_type)

    logger.info("stripe_webhook_processed", event_id=event_id, event_type=event_type)
    return WebhookResponse(received=True, processed=True)
