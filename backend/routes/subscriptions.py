"""Subscription Routes - checkout, status, plan changes and cancellation.

Endpoints:
- POST   /api/v1/payments/checkout                        - Checkout session for a first paid plan
- GET    /api/v1/payments/subscription                    - Current subscription (re-synced with Stripe)
- PUT    /api/v1/payments/subscription                    - Upgrade (immediate) or downgrade (period end)
- POST   /api/v1/payments/subscription/complete-upgrade   - Resume a change after payment setup
- DELETE /api/v1/payments/subscription?immediate=         - Cancel now or at period end
- POST   /api/v1/payments/internal/free-contract          - FREE subscription for a new user (internal)
"""
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
import logging

from dependencies import BillingServices, get_services, require_internal_key
from middleware import CurrentUser, require_auth
from models import ProrationPreference, SetupRequired

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/payments", tags=["subscriptions"])


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_type: str = Field(alias="planType")
    email: Optional[str] = None


class PlanChangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_type: str = Field(alias="planType")
    proration_behavior: str = Field(ProrationPreference.AUTO_PRORATE.value, alias="prorationBehavior")


class CompleteSetupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")


class FreeContractRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    username: Optional[str] = None
    email: Optional[str] = None


def payment_required(setup: SetupRequired) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_402_PAYMENT_REQUIRED, content=setup.to_dict())


@router.post("/checkout")
async def create_checkout(
    body: CheckoutRequest,
    user: CurrentUser = Depends(require_auth),
    services: BillingServices = Depends(get_services),
):
    """Create a Stripe checkout session; the subscription is activated by the webhook."""
    return await services.subscriptions.create_checkout_session(
        user.user_id, user.username, body.email or user.email, body.plan_type
    )


@router.get("/subscription")
async def get_subscription(
    user: CurrentUser = Depends(require_auth),
    services: BillingServices = Depends(get_services),
):
    return await services.subscriptions.get_subscription_status(user.user_id)


@router.put("/subscription")
async def change_plan(
    body: PlanChangeRequest,
    user: CurrentUser = Depends(require_auth),
    services: BillingServices = Depends(get_services),
):
    """Upgrades apply now with proration; downgrades are scheduled for the period end.

    Answers 402 with a setup URL when the customer has no usable payment method.
    """
    result = await services.orchestrator.request_plan_change(user.user_id, body.plan_type, body.proration_behavior)
    if isinstance(result, SetupRequired):
        return payment_required(result)
    return {"message": "Plan change processed", **result.to_dict()}


@router.post("/subscription/complete-upgrade")
async def complete_upgrade(
    body: CompleteSetupRequest,
    user: CurrentUser = Depends(require_auth),
    services: BillingServices = Depends(get_services),
):
    result = await services.orchestrator.complete_upgrade(user.user_id, body.session_id)
    if isinstance(result, SetupRequired):
        return payment_required(result)
    return {"message": "Plan change processed", **result.to_dict()}


@router.delete("/subscription")
async def cancel_subscription(
    immediate: bool = False,
    user: CurrentUser = Depends(require_auth),
    services: BillingServices = Depends(get_services),
):
    result = await services.subscriptions.cancel_subscription(user.user_id, immediate=immediate)
    message = "Subscription canceled" if immediate else "Subscription will be canceled at the end of the period"
    return {"message": message, **result}


@router.post(
    "/internal/free-contract",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_internal_key)],
)
async def create_free_contract(
    body: FreeContractRequest,
    services: BillingServices = Depends(get_services),
):
    record = await services.subscriptions.provision_free_subscription(body.user_id, body.username, body.email)
    logger.info(f"Free contract ensured for user {body.user_id}")
    return {"message": "Free subscription ready", "subscription": record.to_public()}
