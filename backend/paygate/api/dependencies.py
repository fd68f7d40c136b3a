"""
Shared FastAPI dependencies backed by application state.

The plan registry, settings and provider client are built once in the
application lifespan and stored on app.state.
"""

from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from paygate.config.plans import PlanRegistry
from paygate.config.settings import BillingSettings
from paygate.database.session import get_db_session
from paygate.integrations.stripe.billing_client import StripeBillingClient
from paygate.services.session_initiator import SessionInitiator
from paygate.services.webhook_processor import BillingWebhookProcessor


def get_plan_registry(request: Request) -> PlanRegistry:
    registry = getattr(request.app.state, "plan_registry", None)
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Plan registry not loaded"
        )
    return registry


def get_billing_settings(request: Request) -> BillingSettings:
    settings = getattr(request.app.state, "billing_settings", None)
    return settings or BillingSettings()


def get_billing_client(request: Request) -> Optional[StripeBillingClient]:
    return getattr(request.app.state, "billing_client", None)


def get_session_initiator(
    db_session: Session = Depends(get_db_session),
    plan_registry: PlanRegistry = Depends(get_plan_registry),
    settings: BillingSettings = Depends(get_billing_settings),
    client: Optional[StripeBillingClient] = Depends(get_billing_client),
) -> SessionInitiator:
    return SessionInitiator(db_session, plan_registry, client, settings)


def get_webhook_processor(
    db_session: Session = Depends(get_db_session),
    plan_registry: PlanRegistry = Depends(get_plan_registry),
    settings: BillingSettings = Depends(get_billing_settings),
) -> BillingWebhookProcessor:
    return BillingWebhookProcessor(db_session, plan_registry, settings)
