"""Add-on Routes - catalog, purchase and cancellation of subscription add-ons.

Endpoints:
- GET    /api/v1/payments/addons                 - Add-ons with availability for the caller's plan
- GET    /api/v1/payments/addons/my              - Caller's active add-ons
- POST   /api/v1/payments/addons/purchase        - Buy an add-on (402 when a payment method is needed)
- POST   /api/v1/payments/addons/complete-setup  - Resume a purchase after payment setup
- DELETE /api/v1/payments/addons/{addon_name}    - Cancel an add-on
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from dependencies import BillingServices, get_services
from middleware import CurrentUser, require_auth
from models import SetupRequired, SubscriptionRecord
from routes.subscriptions import payment_required
from services.errors import NotFound

router = APIRouter(prefix="/api/v1/payments/addons", tags=["addons"])


class PurchaseAddOnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    addon_name: str = Field(alias="addOnName")


class CompleteAddOnSetupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")


async def _record_for(user: CurrentUser, services: BillingServices) -> SubscriptionRecord:
    record = await services.repository.get_by_user(user.user_id)
    if record is None:
        raise NotFound("No subscription found for this user", error_code="SUBSCRIPTION_NOT_FOUND")
    return record


@router.get("")
async def list_addons(
    user: CurrentUser = Depends(require_auth),
    services: BillingServices = Depends(get_services),
):
    record = await services.repository.get_by_user(user.user_id)
    return services.resolver.list_available(record)


@router.get("/my")
async def my_addons(
    user: CurrentUser = Depends(require_auth),
    services: BillingServices = Depends(get_services),
):
    record = await _record_for(user, services)
    return services.resolver.list_mine(record)


@router.post("/purchase")
async def purchase_addon(
    body: PurchaseAddOnRequest,
    user: CurrentUser = Depends(require_auth),
    services: BillingServices = Depends(get_services),
):
    record = await _record_for(user, services)
    result = await services.resolver.purchase(record, body.addon_name)
    if isinstance(result, SetupRequired):
        return payment_required(result)
    return {"message": f"Add-on {body.addon_name} purchased", "subscription": result.to_public()}


@router.post("/complete-setup")
async def complete_addon_setup(
    body: CompleteAddOnSetupRequest,
    user: CurrentUser = Depends(require_auth),
    services: BillingServices = Depends(get_services),
):
    record = await _record_for(user, services)
    result = await services.resolver.complete_setup(record, body.session_id)
    if isinstance(result, SetupRequired):
        return payment_required(result)
    return {"message": "Add-on purchased", "subscription": result.to_public()}


@router.delete("/{addon_name}")
async def cancel_addon(
    addon_name: str,
    user: CurrentUser = Depends(require_auth),
    services: BillingServices = Depends(get_services),
):
    record = await _record_for(user, services)
    record = await services.resolver.cancel(record, addon_name)
    return {"message": f"Add-on {addon_name} canceled", "subscription": record.to_public()}
