"""
Billing API routes for membership and subscription management.

All routes except /plans require an authenticated user (request.state.user_id).
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from paygate.api.dependencies import get_plan_registry, get_session_initiator
from paygate.billing.errors import (
    CustomerNotFoundError,
    NoActiveSubscriptionError,
    PlanNotFoundError,
    ProviderAPIError,
    ProviderUnavailableError,
    SubscriptionConflictError,
)
from paygate.config.plans import PlanRegistry
from paygate.entitlements.dependencies import get_membership_service
from paygate.entitlements.guards import membership_view
from paygate.entitlements.service import MembershipService
from paygate.models.base import as_utc
from paygate.models.subscription import SubscriptionStatus
from paygate.platform.user_context import get_current_user_id
from paygate.services.session_initiator import SessionInitiator, SkippedFreePlan

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])


# Request/Response models
class CreateCheckoutRequest(BaseModel):
    """Request to start a checkout."""
    plan_id: Optional[str] = Field(None, description="Plan ID to subscribe to (default plan if omitted)")
    email: Optional[str] = Field(None, description="Email for the billing provider customer")


class CheckoutResponse(BaseModel):
    """Redirect URL, or skipped=True when a free plan was activated directly."""
    plan_id: str
    skipped: bool
    checkout_url: Optional[str] = None
    session_id: Optional[str] = None
    status: Optional[str] = None
    trial_days: int = 0


class PortalRequest(BaseModel):
    return_url: Optional[str] = None


class PortalResponse(BaseModel):
    portal_url: str


class CancelRequest(BaseModel):
    at_period_end: bool = Field(True, description="Cancel at the end of the paid period")


class CancelResponse(BaseModel):
    provider_subscription_id: str
    at_period_end: bool
    provider_status: str
    message: str


class MembershipResponse(BaseModel):
    """Current membership state."""
    user_id: str
    status: str
    view: str
    plan_id: Optional[str] = None
    current_period_end: Optional[str] = None
    cancel_at_period_end: bool = False


class PlanResponse(BaseModel):
    """Plan information."""
    id: str
    name: str
    free: bool
    trial: bool
    trial_days: int
    default: bool
    description: Optional[str] = None


class PlansListResponse(BaseModel):
    """List of available plans."""
    plans: List[PlanResponse]


def _provider_unavailable(e: ProviderUnavailableError) -> HTTPException:
    headers = {"Retry-After": str(int(e.retry_after))} if e.retry_after else {"Retry-After": "5"}
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=e.to_dict(),
        headers=headers,
    )


@router.get("/plans", response_model=PlansListResponse)
async def list_plans(plan_registry: PlanRegistry = Depends(get_plan_registry)):
    """List offerable plans in catalog order."""
    return PlansListResponse(plans=[
        PlanResponse(
            id=plan.id,
            name=plan.name,
            free=plan.free,
            trial=plan.trial,
            trial_days=plan.trial_days,
            default=plan.default,
            description=plan.description,
        )
        for plan in plan_registry
    ])


@router.get("/membership", response_model=MembershipResponse)
async def get_membership(
    user_id: str = Depends(get_current_user_id),
    service: MembershipService = Depends(get_membership_service),
):
    """Current membership status and view for the authenticated user."""
    record = service.get_record(user_id)
    if record is None:
        return MembershipResponse(
            user_id=user_id,
            status=SubscriptionStatus.NONE.value,
            view=membership_view(SubscriptionStatus.NONE).value,
        )

    period_end = as_utc(record.current_period_end)
    return MembershipResponse(
        user_id=user_id,
        status=record.status,
        view=membership_view(record.status_enum).value,
        plan_id=record.plan_id,
        current_period_end=period_end.isoformat() if period_end else None,
        cancel_at_period_end=bool(record.cancel_at_period_end),
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    checkout_request: CreateCheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    initiator: SessionInitiator = Depends(get_session_initiator),
):
    """
    Start a subscription.

    Paid plans return a provider checkout URL to redirect to. Free plans are
    activated immediately and return skipped=True.
    """
    logger.info("Creating checkout", extra={
        "user_id": user_id,
        "plan_id": checkout_request.plan_id,
    })

    try:
        result = await initiator.initiate_checkout(
            user_id,
            plan_id=checkout_request.plan_id,
            email=checkout_request.email,
        )
    except PlanNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except SubscriptionConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.to_dict())
    except ProviderUnavailableError as e:
        raise _provider_unavailable(e)
    except ProviderAPIError as e:
        logger.error("Provider rejected checkout", extra={"user_id": user_id, "error": str(e)})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to create checkout")

    if isinstance(result, SkippedFreePlan):
        return CheckoutResponse(
            plan_id=result.plan_id,
            skipped=True,
            status=result.status.value if result.status else None,
        )

    return CheckoutResponse(
        plan_id=result.plan_id,
        skipped=False,
        checkout_url=result.url,
        session_id=result.session_id,
        trial_days=result.trial_days,
    )


@router.post("/portal", response_model=PortalResponse)
async def create_portal(
    portal_request: Optional[PortalRequest] = None,
    user_id: str = Depends(get_current_user_id),
    initiator: SessionInitiator = Depends(get_session_initiator),
):
    """Open the provider's self-service billing portal."""
    try:
        result = await initiator.initiate_portal(
            user_id,
            return_url=portal_request.return_url if portal_request else None,
        )
    except CustomerNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_dict())
    except ProviderUnavailableError as e:
        raise _provider_unavailable(e)
    except ProviderAPIError as e:
        logger.error("Provider rejected portal session", extra={"user_id": user_id, "error": str(e)})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to open billing portal")

    return PortalResponse(portal_url=result.url)


@router.post("/cancel", response_model=CancelResponse)
async def cancel_subscription(
    cancel_request: Optional[CancelRequest] = None,
    user_id: str = Depends(get_current_user_id),
    initiator: SessionInitiator = Depends(get_session_initiator),
):
    """
    Request subscription cancellation.

    Note: The membership status changes when the provider confirms via webhook.
    """
    at_period_end = cancel_request.at_period_end if cancel_request else True

    try:
        ack = await initiator.cancel(user_id, at_period_end=at_period_end)
    except NoActiveSubscriptionError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_dict())
    except ProviderUnavailableError as e:
        raise _provider_unavailable(e)
    except ProviderAPIError as e:
        logger.error("Provider rejected cancellation", extra={"user_id": user_id, "error": str(e)})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to cancel subscription")

    return CancelResponse(
        provider_subscription_id=ack.provider_subscription_id,
        at_period_end=ack.at_period_end,
        provider_status=ack.provider_status,
        message=(
            "Subscription will end at the close of the current period"
            if at_period_end else "Subscription cancellation requested"
        ),
    )
