"""Provider webhook receiver.

Endpoints:
- POST /webhooks/billing : verify a signed delivery and apply it to the matching record
"""

import structlog
from fastapi import APIRouter, Header, HTTPException, Request, status

from billsync.dependencies import Processor
from billsync.errors import MalformedEvent, PersistenceFailure, SignatureInvalid
from billsync.models import WebhookAck

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = structlog.get_logger(__name__)


@router.post(
    "/billing",
    response_model=WebhookAck,
    summary="Billing webhook",
    description="Receive a signed billing event from the payment provider.",
)
async def billing_webhook(
    request: Request,
    processor: Processor,
    stripe_signature: str | None = Header(None),
    x_signature: str | None = Header(None),
) -> WebhookAck:
    """
    Events that are verified but cannot be acted on are still acknowledged,
    so the provider does not keep re-delivering them.
    """
    payload = await request.body()

    try:
        await processor.handle(payload, stripe_signature or x_signature)
    except SignatureInvalid as e:
        logger.warning("webhook_signature_invalid", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        ) from e
    except MalformedEvent as e:
        logger.warning("webhook_payload_invalid", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook payload",
        ) from e
    except PersistenceFailure as e:
        logger.error("webhook_persist_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to persist billing update",
        ) from e

    return WebhookAck()
