# backend/app/routes/v1/payments.py
"""
Payment API Routes - API v1

Versioned payment endpoints under /api/v1/payments.

Endpoints:
    GET /authorizations/{authorization_id}            → Authorization with its event trail (admin)
    POST /authorizations/{authorization_id}/reconcile → Catch up with the processor (admin)
    POST /webhooks/stripe                             → Handle Stripe webhooks
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.params import Path
import stripe

from ...api.dependencies import Principal, get_payment_service, require_role
from ...monitoring.prometheus_metrics import prometheus_metrics
from ...schemas.payment import (
    PaymentAuthorizationDetail,
    PaymentEventResponse,
    ReconcileResponse,
    WebhookAckResponse,
)
from ...services.payment_authorization_service import (
    PaymentAuthorizationService,
    WebhookEnvelope,
)
from ...services.payment_processor import construct_webhook_event
from .bookings import ULID_PATH_PATTERN

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["payments-v1"])


@router.get("/authorizations/{authorization_id}", response_model=PaymentAuthorizationDetail)
async def get_authorization(
    authorization_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role()),
    payment_service: PaymentAuthorizationService = Depends(get_payment_service),
) -> PaymentAuthorizationDetail:
    authorization = await asyncio.to_thread(payment_service.get_authorization, authorization_id)
    events = payment_service.repository.list_events(authorization.id)
    detail = PaymentAuthorizationDetail.model_validate(authorization)
    detail.events = [PaymentEventResponse.model_validate(event) for event in events]
    return detail


@router.post(
    "/authorizations/{authorization_id}/reconcile", response_model=ReconcileResponse
)
async def reconcile_authorization(
    authorization_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: Principal = Depends(require_role()),
    payment_service: PaymentAuthorizationService = Depends(get_payment_service),
) -> ReconcileResponse:
    """Re-query the processor and apply any forward transition it reports."""
    result = await asyncio.to_thread(payment_service.reconcile, authorization_id)
    logger.info(
        "Reconciled authorization %s by %s: %s -> %s",
        authorization_id,
        principal.user_id,
        result.previous_status,
        result.status,
    )
    return ReconcileResponse.model_validate(result)


@router.post("/webhooks/stripe", response_model=WebhookAckResponse)
async def handle_stripe_webhook(
    request: Request,
    payment_service: PaymentAuthorizationService = Depends(get_payment_service),
) -> WebhookAckResponse:
    """
    Handle Stripe webhook events.

    Redelivered events are acknowledged without being applied twice. A
    failure while applying returns an error status so Stripe retries.

    Note:
        This endpoint has no authentication as it uses webhook signature verification
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        logger.warning("Webhook received without signature")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No signature")

    try:
        event = construct_webhook_event(payload, sig_header)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        logger.warning("Rejected webhook with invalid signature or payload: %s", exc)
        prometheus_metrics.record_processor_call("webhook_verify", "rejected")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    envelope = WebhookEnvelope.from_stripe_event(event)
    result = await asyncio.to_thread(payment_service.apply_webhook_event, envelope)
    logger.info(
        "Stripe webhook %s (%s): %s%s",
        envelope.event_id,
        envelope.type,
        result.outcome,
        " (duplicate)" if result.duplicate else "",
    )
    return WebhookAckResponse(
        status="success",
        event_id=result.event_id,
        outcome=result.outcome,
        duplicate=result.duplicate,
    )
