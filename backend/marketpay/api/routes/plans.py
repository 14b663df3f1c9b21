"""Plan catalog, one-time plan purchase, and the owner's current plan."""

from fastapi import APIRouter, Depends

from marketpay.api.deps import get_checkout_service, get_sync_service
from marketpay.core.auth import AuthUser, require_auth
from marketpay.schemas.payments import CommandAccepted, EntitlementView, PlanView, PurchasePlanRequest
from marketpay.services.checkout_service import CheckoutService
from marketpay.services.sync_service import PaymentSyncService

router = APIRouter()


@router.get("", response_model=list[PlanView])
async def list_plans(checkout: CheckoutService = Depends(get_checkout_service)):
    """Active plans, cheapest first."""
    plans = await checkout.list_plans()
    return [PlanView.model_validate(p) for p in plans]


@router.get("/current", response_model=EntitlementView)
async def current_plan(
    user: AuthUser = Depends(require_auth),
    sync: PaymentSyncService = Depends(get_sync_service),
):
    """The owner's entitlement; a lapsed plan reads as expired."""
    return await sync.entitlement(user.user_id) or EntitlementView()


@router.post("/cancel", response_model=CommandAccepted, status_code=202)
async def cancel_plan(
    user: AuthUser = Depends(require_auth),
    checkout: CheckoutService = Depends(get_checkout_service),
):
    return await checkout.cancel_plan(user.user_id)


@router.post("/{plan_id}/purchase", response_model=CommandAccepted, status_code=202)
async def purchase_plan(
    plan_id: str,
    body: PurchasePlanRequest | None = None,
    user: AuthUser = Depends(require_auth),
    checkout: CheckoutService = Depends(get_checkout_service),
):
    """Start a plan purchase; the subscription activates when the payment settles."""
    instrument_id = body.instrument_id if body else None
    return await checkout.purchase_plan(user.user_id, plan_id, instrument_id=instrument_id)
