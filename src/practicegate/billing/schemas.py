"""Pydantic schemas for the billing and usage API."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from practicegate.billing.models import SubscriptionStatus
from practicegate.billing.tier_catalog import ActionKind, BillingCadence, Capability, Tier


class TierResponse(BaseModel):
    """Catalog tier as shown on the pricing page."""

    id: str
    name: str
    price_monthly: Decimal
    price_annual: Decimal
    seats_included: int
    seat_addon_monthly: Decimal | None = None
    quotas: dict[ActionKind, int]
    capabilities: list[Capability]

    @classmethod
    def from_tier(cls, tier: Tier) -> "TierResponse":
        return cls(
            id=tier.id,
            name=tier.name,
            price_monthly=tier.price_monthly,
            price_annual=tier.price_annual,
            seats_included=tier.seats_included,
            seat_addon_monthly=tier.seat_addon_monthly,
            quotas=dict(tier.quotas),
            capabilities=sorted(tier.capabilities, key=lambda c: c.value),
        )


class SubscriptionResponse(BaseModel):
    """Schema for subscription response."""

    user_id: UUID
    tier_id: str
    status: SubscriptionStatus
    cadence: BillingCadence
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    canceled_at: datetime | None = None
    has_billing_customer: bool = False

    model_config = {"from_attributes": True}


class TierUpdateRequest(BaseModel):
    """Manual tier assignment."""

    user_id: UUID | None = None
    tier_id: str = Field(..., min_length=1, max_length=32)
    cadence: BillingCadence = BillingCadence.MONTHLY


class UsageInfoResponse(BaseModel):
    """Usage of one metered action in the current period."""

    action_kind: ActionKind
    used: int
    quota: int
    remaining: int
    unlimited: bool
    percentage_used: float
    period_start: datetime
    period_end: datetime
    tier_id: str
    status: SubscriptionStatus

    model_config = {"from_attributes": True}


class UsageAttemptRequest(BaseModel):
    """Spend one unit of quota."""

    action_kind: ActionKind = ActionKind.CONVERSATION


class CheckoutRequest(BaseModel):
    """Start a hosted checkout."""

    price_id: str = Field(..., min_length=1, max_length=255)
    email: str | None = Field(None, max_length=320)
    success_url: str | None = Field(None, max_length=2048)
    cancel_url: str | None = Field(None, max_length=2048)


class CheckoutResponse(BaseModel):
    session_id: str


class CancelRequest(BaseModel):
    """Schema for subscription cancellation."""

    cancel_immediately: bool = Field(
        False,
        description="Cancel now instead of at the end of the billing period",
    )


class CancelResponse(BaseModel):
    provider_subscription_id: str
    status: str
    cancel_at_period_end: bool


class InvoiceResponse(BaseModel):
    """Upcoming invoice preview. Amounts are in the currency's minor unit."""

    id: str | None = None
    status: str
    currency: str
    subtotal: int
    total: int
    amount_due: int
    period_start: datetime | None = None
    period_end: datetime | None = None
    next_payment_attempt: datetime | None = None

    model_config = {"from_attributes": True}


class PaymentMethodResponse(BaseModel):
    id: str
    card_brand: str | None = None
    card_last4: str | None = None
    card_exp_month: int | None = None
    card_exp_year: int | None = None

    model_config = {"from_attributes": True}


class WebhookAck(BaseModel):
    """Response to the billing provider."""

    received: bool = True
    outcome: str
