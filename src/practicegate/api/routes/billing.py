"""Billing, subscription and usage API routes."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends

from practicegate.api.dependencies.auth import CurrentUserId
from practicegate.api.dependencies.services import (
    AppSettings,
    get_enforcer,
    get_gateway,
    get_subscription_store,
)
from practicegate.billing.entitlements import EntitlementEnforcer
from practicegate.billing.gateway import BillingGateway
from practicegate.billing.models import SubscriptionRecord
from practicegate.billing.schemas import (
    CancelRequest,
    CancelResponse,
    CheckoutRequest,
    CheckoutResponse,
    InvoiceResponse,
    PaymentMethodResponse,
    SubscriptionResponse,
    TierResponse,
    TierUpdateRequest,
    UsageAttemptRequest,
    UsageInfoResponse,
)
from practicegate.billing.store import SubscriptionStore
from practicegate.billing.tier_catalog import ActionKind, list_tiers
from practicegate.core.exceptions import UnauthorizedError

router = APIRouter()

Enforcer = Annotated[EntitlementEnforcer, Depends(get_enforcer)]
Gateway = Annotated[BillingGateway, Depends(get_gateway)]
Store = Annotated[SubscriptionStore, Depends(get_subscription_store)]


def _subscription_response(record: SubscriptionRecord) -> SubscriptionResponse:
    return SubscriptionResponse(
        user_id=record.user_id,
        tier_id=record.tier_id,
        status=record.status,
        cadence=record.cadence,
        current_period_start=record.current_period_start,
        current_period_end=record.current_period_end,
        canceled_at=record.canceled_at,
        has_billing_customer=record.provider_customer_id is not None,
    )


@router.get("/tiers", response_model=list[TierResponse])
async def get_tiers() -> list[TierResponse]:
    """List the tier catalog, cheapest first."""
    return [TierResponse.from_tier(tier) for tier in list_tiers()]


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(user_id: CurrentUserId, store: Store) -> SubscriptionResponse:
    """Current subscription of the caller."""
    return _subscription_response(await store.get(user_id))


@router.get("/subscription/history", response_model=list[SubscriptionResponse])
async def get_subscription_history(
    user_id: CurrentUserId,
    store: Store,
) -> list[SubscriptionResponse]:
    """Every subscription record of the caller, newest first."""
    return [_subscription_response(record) for record in await store.history(user_id)]


@router.post("/subscription/tier", response_model=SubscriptionResponse)
async def update_tier(
    request: TierUpdateRequest,
    user_id: CurrentUserId,
    store: Store,
    settings: AppSettings,
) -> SubscriptionResponse:
    """Manually assign a tier.

    Restricted to elevated operators; ``user_id`` in the body selects the
    target and defaults to the caller.
    """
    if user_id not in settings.elevated_users:
        raise UnauthorizedError("Manual tier assignment requires elevated permissions")

    target: UUID = request.user_id or user_id
    record = await store.set_tier(target, request.tier_id, request.cadence)
    return _subscription_response(record)


@router.get("/usage", response_model=UsageInfoResponse)
async def get_usage(
    user_id: CurrentUserId,
    enforcer: Enforcer,
    action_kind: ActionKind = ActionKind.CONVERSATION,
) -> UsageInfoResponse:
    """Usage of one metered action in the current period."""
    info = await enforcer.get_usage_info(user_id, action_kind)
    return UsageInfoResponse.model_validate(info)


@router.get("/usage/all", response_model=list[UsageInfoResponse])
async def get_all_usage(user_id: CurrentUserId, enforcer: Enforcer) -> list[UsageInfoResponse]:
    """Usage of every metered action in the current period."""
    return [UsageInfoResponse.model_validate(info) for info in await enforcer.get_all_usage(user_id)]


@router.post("/usage/attempt", response_model=UsageInfoResponse)
async def attempt_usage(
    request: UsageAttemptRequest,
    user_id: CurrentUserId,
    enforcer: Enforcer,
) -> UsageInfoResponse:
    """Spend one unit of quota; 429 when the action is not allowed."""
    info = await enforcer.record_usage(user_id, request.action_kind)
    return UsageInfoResponse.model_validate(info)


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: CheckoutRequest,
    user_id: CurrentUserId,
    gateway: Gateway,
    settings: AppSettings,
) -> CheckoutResponse:
    """Start a hosted checkout session for a catalog price."""
    session_id = await gateway.create_checkout_session(
        user_id,
        request.price_id,
        success_url=request.success_url or settings.checkout_success_url,
        cancel_url=request.cancel_url or settings.checkout_cancel_url,
        email=request.email,
    )
    return CheckoutResponse(session_id=session_id)


@router.post("/cancel", response_model=CancelResponse)
async def cancel_subscription(
    request: CancelRequest,
    user_id: CurrentUserId,
    gateway: Gateway,
) -> CancelResponse:
    """Cancel the caller's subscription at the provider.

    The local record changes when the provider's event is reconciled.
    """
    subscription = await gateway.cancel_user_subscription(
        user_id,
        at_period_end=not request.cancel_immediately,
    )
    return CancelResponse(
        provider_subscription_id=subscription.id,
        status=subscription.status,
        cancel_at_period_end=subscription.cancel_at_period_end,
    )


@router.get("/invoice/upcoming", response_model=InvoiceResponse | None)
async def get_upcoming_invoice(user_id: CurrentUserId, gateway: Gateway) -> InvoiceResponse | None:
    """Preview of the caller's next invoice."""
    invoice = await gateway.get_upcoming_invoice(user_id)
    if invoice is None:
        return None
    return InvoiceResponse.model_validate(invoice)


@router.get("/payment-methods", response_model=list[PaymentMethodResponse])
async def list_payment_methods(
    user_id: CurrentUserId,
    gateway: Gateway,
) -> list[PaymentMethodResponse]:
    """Cards on file for the caller."""
    methods = await gateway.list_payment_methods(user_id)
    return [PaymentMethodResponse.model_validate(method) for method in methods]
