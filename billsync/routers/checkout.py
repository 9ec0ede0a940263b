"""Checkout session creation for paid plans."""

import structlog
from fastapi import APIRouter, HTTPException, status

from billsync.config import get_settings
from billsync.dependencies import Gateway
from billsync.errors import ProviderUnavailable
from billsync.models import CheckoutRequest, CheckoutResponse

router = APIRouter(prefix="/billing", tags=["billing"])
logger = structlog.get_logger(__name__)


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    response_model_by_alias=True,
    summary="Create checkout session",
    description="Start a subscription checkout. The session carries the user id and plan as metadata.",
)
async def create_checkout(body: CheckoutRequest, gateway: Gateway) -> CheckoutResponse:
    """
    The price is taken from ``stripe_price_<plan>`` when configured, otherwise
    from the active price tagged with the plan on the provider.
    """
    settings = get_settings()

    if not body.plan.is_paid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Checkout is only available for paid plans",
        )

    try:
        price_id = settings.price_for_plan(body.plan.value)
        if not price_id:
            price_id = await gateway.find_price_for_plan(body.plan)
        if not price_id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"No price configured for plan {body.plan.value}",
            )

        session_id, url = await gateway.create_checkout_session(
            price_id=price_id,
            user_id=body.user_id,
            plan=body.plan,
            email=body.email,
            success_url=settings.checkout_success_url,
            cancel_url=settings.checkout_cancel_url,
        )
    except ProviderUnavailable as e:
        logger.warning("checkout_provider_unavailable", user_id=body.user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider unavailable",
        ) from e

    logger.info("checkout_session_created", user_id=body.user_id, plan=body.plan.value)
    return CheckoutResponse(session_id=session_id, url=url)
