"""
Billing provider webhook endpoint.

SECURITY: Every delivery MUST pass signature verification before processing.

Response contract (drives provider retries):
- 200: accepted, including duplicates, stale events and unknown customers
- 400: payload cannot be parsed
- 401: signature missing or invalid
- 500: processing failed and was rolled back
- 503: webhook secret not configured
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from paygate.api.dependencies import get_billing_settings, get_webhook_processor
from paygate.billing.errors import AuthenticationError, EventParseError
from paygate.config.settings import BillingSettings
from paygate.services.webhook_processor import BillingWebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks/billing", tags=["webhooks"])

SIGNATURE_HEADER = "Stripe-Signature"


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    message: str = "Webhook processed"
    outcome: Optional[str] = None
    event_id: Optional[str] = None


@router.post("", response_model=WebhookResponse)
async def receive_billing_webhook(
    request: Request,
    settings: BillingSettings = Depends(get_billing_settings),
    processor: BillingWebhookProcessor = Depends(get_webhook_processor),
):
    """
    Receive a billing provider event.

    The dedup ledger row is committed before this returns, so a 2xx is only
    sent once the event can no longer be reprocessed.
    """
    if not settings.webhook_secret:
        logger.error("BILLING_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification not configured"
        )

    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    try:
        result = await processor.process(body, signature)
    except AuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.to_dict()
        )
    except EventParseError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=e.to_dict()
        )
    except Exception:
        logger.exception("Webhook processing failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )

    logger.info("Billing webhook handled", extra={
        "event_id": result.event_id,
        "outcome": result.outcome,
        "user_id": result.user_id,
    })

    return WebhookResponse(
        message=result.message,
        outcome=result.outcome,
        event_id=result.event_id,
    )
