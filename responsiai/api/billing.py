"""
Billing API routes.

- POST /api/billing/webhook: Stripe webhooks (verify, enqueue, acknowledge)
- POST /api/billing/checkout: Create checkout session
- POST /api/billing/portal: Create portal session
- POST /api/billing/cancel: Cancel at period end
- POST /api/billing/resume: Undo a scheduled cancellation
- GET  /api/billing/status: Current plan and subscription state
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel

from responsiai.api.deps import get_container, get_current_user_id
from responsiai.core.container import Container
from responsiai.core.errors import AppError, BillingDisabledError, ServiceUnavailableError
from responsiai.features.billing.verifier import BadSignatureError, StaleEventError
from responsiai.workers.webhook_worker import QueueFullError

logger = logging.getLogger("responsiai.webhooks")

router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    plan: str
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PortalRequest(BaseModel):
    return_url: Optional[str] = None


class UrlResponse(BaseModel):
    url: str


class BillingStatusResponse(BaseModel):
    """User billing status."""
    enabled: bool
    plan_tier: str
    plan_name: str
    monthly_limit: Optional[int]
    status: Optional[str]
    period_end: Optional[str]  # ISO8601
    cancel_at_period_end: bool


@router.post("/webhook")
async def handle_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    container: Container = Depends(get_container),
):
    """
    Handle Stripe webhook events.

    The signature is verified here; processing happens on the worker pool.

    Returns:
        {"received": true}

    Errors:
        400: Invalid signature or payload
        503: Billing disabled or queue full
        500: Processing failed (inline processing only; Stripe redelivers)
    """
    if not container.config.webhook_secret:
        raise BillingDisabledError("Webhook secret is not configured")

    body = await request.body()
    try:
        event = container.pipeline.verify(body, stripe_signature)
    except StaleEventError as e:
        # Acknowledge so the processor stops redelivering an expired signature
        logger.warning(f"[webhook] stale event: {e}", extra={"outcome": "stale"})
        return {"received": True, "stale": True}
    except BadSignatureError as e:
        logger.warning(f"[webhook] rejected: {e}", extra={"outcome": "rejected"})
        raise AppError(str(e), code="invalid_webhook", status_code=400)

    try:
        future = container.workers.submit(event, requeue_on_failure=not container.config.webhook_inline_processing)
    except QueueFullError:
        raise ServiceUnavailableError("Webhook queue is full, retry later")

    if not container.config.webhook_inline_processing:
        return {"received": True, "event_id": event.event_id, "queued": True}

    # Inline mode: answer with the processing result so failures trigger redelivery.
    # shield() keeps the job running if the client disconnects.
    try:
        result = await asyncio.shield(future)
    except Exception as e:
        raise AppError("Webhook processing failed", code="processing_failed", status_code=500) from e
    return {"received": True, "event_id": event.event_id, "outcome": result.outcome}


@router.post("/checkout", response_model=UrlResponse)
async def create_checkout(
    body: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    """
    Create Stripe checkout session.

    Errors:
        503: Billing disabled
        400: Invalid plan
        409: Already on this plan
        502: Stripe API error
    """
    url = await asyncio.to_thread(
        container.billing.start_checkout, user_id, body.plan, body.success_url, body.cancel_url
    )
    return {"url": url}


@router.post("/portal", response_model=UrlResponse)
async def create_portal(
    body: PortalRequest,
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    url = await asyncio.to_thread(container.billing.start_portal, user_id, body.return_url)
    return {"url": url}


@router.post("/cancel")
async def cancel_subscription(
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    """Schedule cancellation at period end. Local state follows the webhook."""
    await asyncio.to_thread(container.billing.set_cancel_at_period_end, user_id, True)
    return {"requested": True, "cancel_at_period_end": True}


@router.post("/resume")
async def resume_subscription(
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    await asyncio.to_thread(container.billing.set_cancel_at_period_end, user_id, False)
    return {"requested": True, "cancel_at_period_end": False}


@router.get("/status", response_model=BillingStatusResponse)
async def get_status(
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    return await asyncio.to_thread(container.billing.get_status, user_id)
