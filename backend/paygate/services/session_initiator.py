"""
Checkout and portal session initiation.

Links a local user to a provider customer and asks the provider for hosted
checkout/portal URLs. Free plans skip the provider entirely: the user is
moved through the reconciler with a synthetic checkout_completed event, so
the same transition table applies to both paths.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Union

from sqlalchemy.orm import Session

from paygate.billing.errors import (
    CustomerNotFoundError,
    NoActiveSubscriptionError,
    ProviderAPIError,
    StaleEventError,
    SubscriptionConflictError,
)
from paygate.billing.events import EventType, NormalizedEvent
from paygate.billing.reconciler import StateReconciler
from paygate.config.plans import Plan, PlanRegistry
from paygate.config.settings import BillingSettings
from paygate.integrations.stripe.billing_client import StripeBillingClient
from paygate.models.base import utcnow
from paygate.models.membership_transition import TransitionSource
from paygate.models.subscription import SubscriptionStatus
from paygate.repositories.customer_repository import BillingCustomerRepository
from paygate.repositories.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)


@dataclass
class CheckoutRedirect:
    """Provider-hosted checkout the user must be redirected to."""
    url: str
    session_id: str
    plan_id: str
    provider_customer_id: str
    trial_days: int = 0


@dataclass
class SkippedFreePlan:
    """Checkout skipped: the user was moved onto a free plan directly."""
    plan_id: str
    status: SubscriptionStatus


@dataclass
class PortalRedirect:
    url: str
    session_id: str


@dataclass
class CancelAck:
    """Cancellation accepted by the provider; the webhook will follow."""
    provider_subscription_id: str
    at_period_end: bool
    provider_status: str


CheckoutResult = Union[CheckoutRedirect, SkippedFreePlan]


class SessionInitiator:
    """
    User-initiated billing actions.

    Only this class talks to the provider on behalf of a user. Provider
    failures propagate (ProviderUnavailableError is retriable).
    """

    def __init__(
        self,
        db_session: Session,
        plan_registry: PlanRegistry,
        client: Optional[StripeBillingClient],
        settings: BillingSettings,
        reconciler: Optional[StateReconciler] = None,
    ):
        self.db = db_session
        self.plans = plan_registry
        self.client = client
        self.settings = settings
        self.reconciler = reconciler or StateReconciler(
            db_session, plan_registry, tie_break=settings.tie_break_policy
        )
        self.records = SubscriptionRepository(db_session)
        self.customers = BillingCustomerRepository(db_session)

    def _require_client(self) -> StripeBillingClient:
        if self.client is None:
            raise ProviderAPIError("Billing provider is not configured")
        return self.client

    async def initiate_checkout(
        self,
        user_id: str,
        plan_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Start a subscription to a plan.

        Args:
            user_id: Local user identity
            plan_id: Plan to subscribe to (registry default if omitted)
            email: Passed to the provider when a customer is created

        Returns:
            CheckoutRedirect for paid plans, SkippedFreePlan for free plans

        Raises:
            PlanNotFoundError: Unknown plan
            SubscriptionConflictError: User already has a live paid subscription
            ProviderUnavailableError: Provider unreachable (retriable)
        """
        plan = self.plans.get(plan_id) if plan_id else self.plans.default_plan
        record = self.records.get_by_user(user_id)

        if record is not None and record.is_live and record.provider_subscription_id:
            raise SubscriptionConflictError(
                f"User already has a {record.status} subscription on plan {record.plan_id}"
            )

        if plan.free:
            return await self._activate_free_plan(user_id, plan)

        client = self._require_client()
        customer_id = await self._resolve_customer(user_id, email)
        trial_days = plan.trial_days if plan.trial and not (record and record.trial_used) else 0

        session = await client.create_checkout_session(
            customer_id=customer_id,
            price_id=plan.price_id,
            success_url=self.settings.checkout_success_url,
            cancel_url=self.settings.checkout_cancel_url,
            user_id=user_id,
            plan_id=plan.id,
            trial_days=trial_days,
        )

        logger.info("Checkout session created", extra={
            "user_id": user_id,
            "plan_id": plan.id,
            "provider_customer_id": customer_id,
            "checkout_session_id": session.id,
            "trial_days": trial_days,
        })

        return CheckoutRedirect(
            url=session.url,
            session_id=session.id,
            plan_id=plan.id,
            provider_customer_id=customer_id,
            trial_days=trial_days,
        )

    async def _activate_free_plan(self, user_id: str, plan: Plan) -> SkippedFreePlan:
        """Move the user onto a free plan without contacting the provider."""
        record = self.records.get_by_user(user_id)
        if (
            record is not None
            and record.plan_id == plan.id
            and record.status_enum == SubscriptionStatus.ACTIVE
        ):
            return SkippedFreePlan(plan_id=plan.id, status=SubscriptionStatus.ACTIVE)

        # Provider clocks may run ahead of ours; order the switch after the last applied event
        occurred_at = utcnow()
        last_at = record.last_event_at_utc if record is not None else None
        if last_at is not None and last_at >= occurred_at:
            occurred_at = last_at + timedelta(microseconds=1)

        event = NormalizedEvent(
            event_id=f"free-plan:{user_id}:{uuid.uuid4().hex}",
            type=EventType.CHECKOUT_COMPLETED,
            occurred_at=occurred_at,
            plan_id=plan.id,
            user_id=user_id,
            source=TransitionSource.FREE_PLAN,
        )
        try:
            result = await self.reconciler.apply(event)
        except StaleEventError as e:
            # A provider event landed after we stamped ours; report what is stored
            current = self.records.get_by_user(user_id)
            logger.warning("Free plan switch superseded by newer event", extra={
                "user_id": user_id,
                "plan_id": plan.id,
                "reason": e.reason,
            })
            return SkippedFreePlan(
                plan_id=current.plan_id if current else plan.id,
                status=current.status_enum if current else SubscriptionStatus.NONE,
            )

        logger.info("Free plan activated without checkout", extra={
            "user_id": user_id,
            "plan_id": plan.id,
            "status": result.new_status.value if result.new_status else None,
        })
        return SkippedFreePlan(plan_id=plan.id, status=result.new_status)

    async def _resolve_customer(self, user_id: str, email: Optional[str]) -> str:
        """Existing provider customer for the user, or a newly created one."""
        client = self._require_client()
        existing = self.customers.get_by_user(user_id)
        if existing is not None:
            customer = await client.retrieve_customer(existing.provider_customer_id)
            if not customer.deleted:
                return customer.id
            logger.warning("Provider customer was deleted, creating a new one", extra={
                "user_id": user_id,
                "provider_customer_id": existing.provider_customer_id,
            })

        customer = await client.create_customer(user_id, email or (existing.email if existing else None))
        try:
            self.customers.link(user_id, customer.id, email)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Provider customer linked", extra={
            "user_id": user_id,
            "provider_customer_id": customer.id,
        })
        return customer.id

    async def initiate_portal(self, user_id: str, return_url: Optional[str] = None) -> PortalRedirect:
        """
        Open the provider's self-service portal.

        Raises:
            CustomerNotFoundError: User never started a paid checkout
        """
        customer = self.customers.get_by_user(user_id)
        if customer is None:
            raise CustomerNotFoundError(f"No billing customer for user {user_id}")

        session = await self._require_client().create_portal_session(
            customer.provider_customer_id,
            return_url or self.settings.portal_return_url,
        )
        logger.info("Portal session created", extra={
            "user_id": user_id,
            "provider_customer_id": customer.provider_customer_id,
        })
        return PortalRedirect(url=session.url, session_id=session.id)

    async def cancel(self, user_id: str, at_period_end: bool = True) -> CancelAck:
        """
        Ask the provider to cancel the user's subscription.

        Local state changes only when the provider's webhook arrives.

        Raises:
            NoActiveSubscriptionError: Nothing live to cancel
        """
        record = self.records.get_by_user(user_id)
        if record is None or not record.is_live or not record.provider_subscription_id:
            raise NoActiveSubscriptionError(f"No active subscription for user {user_id}")

        subscription = await self._require_client().cancel_subscription(
            record.provider_subscription_id,
            at_period_end=at_period_end,
        )
        logger.info("Subscription cancellation requested", extra={
            "user_id": user_id,
            "provider_subscription_id": record.provider_subscription_id,
            "at_period_end": at_period_end,
            "provider_status": subscription.status,
        })
        return CancelAck(
            provider_subscription_id=record.provider_subscription_id,
            at_period_end=at_period_end,
            provider_status=subscription.status,
        )
