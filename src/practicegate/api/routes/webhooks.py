"""Billing provider webhook endpoints."""

import json
from typing import Annotated

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from practicegate.api.dependencies.services import AppSettings, get_subscription_store
from practicegate.billing.provider import parse_subscription_event
from practicegate.billing.schemas import WebhookAck
from practicegate.billing.store import SubscriptionStore
from practicegate.core.logging import get_logger
from practicegate.core.metrics import track_reconcile

logger = get_logger(__name__)

router = APIRouter()


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    store: Annotated[SubscriptionStore, Depends(get_subscription_store)],
    settings: AppSettings,
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
) -> WebhookAck:
    """Reconcile a signed Stripe subscription event.

    Only signature failures are rejected. Events that cannot be applied are
    acknowledged so Stripe stops redelivering them.
    """
    if not stripe_signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe-Signature header",
        )

    payload = await request.body()
    try:
        stripe.Webhook.construct_event(payload, stripe_signature, settings.stripe_webhook_secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning("webhook_signature_invalid", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        ) from e

    body = json.loads(payload)
    try:
        event = parse_subscription_event(body)
    except (KeyError, ValueError) as e:
        logger.warning(
            "webhook_event_malformed",
            event_id=body.get("id"),
            event_type=body.get("type"),
            error=str(e),
        )
        track_reconcile("malformed")
        return WebhookAck(outcome="malformed")

    if event is None:
        logger.debug("webhook_event_ignored", event_type=body.get("type"))
        return WebhookAck(outcome="ignored")

    result = await store.upsert_from_provider(event)
    track_reconcile(result.outcome.value)
    logger.info(
        "webhook_event_reconciled",
        event_id=event.event_id,
        provider_subscription_id=event.provider_subscription_id,
        outcome=result.outcome.value,
    )
    return WebhookAck(outcome=result.outcome.value)
