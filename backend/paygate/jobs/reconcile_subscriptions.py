"""
Subscription reconciliation job.

Runs periodically to compare live local records with the billing provider.
Catches state drift when webhooks were missed or permanently failed.
Every correction goes through the state reconciler as a synthetic
subscription_updated event, so the transition table and audit trail apply.

Usage:
    python -m paygate.jobs.reconcile_subscriptions
"""

import asyncio
import logging
import sys
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from paygate.billing.errors import BillingError, DuplicateEventError, StaleEventError
from paygate.billing.events import EventType, NormalizedEvent
from paygate.billing.normalizer import PROVIDER_STATUSES
from paygate.billing.reconciler import StateReconciler
from paygate.config.plans import PlanRegistry
from paygate.integrations.stripe.billing_client import StripeBillingClient, ProviderSubscription
from paygate.models.base import utcnow
from paygate.models.membership_transition import TransitionSource
from paygate.models.subscription import LIVE_STATUSES, SubscriptionRecord
from paygate.repositories.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)

# Pause between provider calls to stay under rate limits
REQUEST_INTERVAL_SECONDS = 0.2


@dataclass
class ReconciliationSummary:
    """Track reconciliation run statistics."""
    checked: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def _drift_event(
    record: SubscriptionRecord,
    remote: ProviderSubscription,
    plan_registry: PlanRegistry,
    occurred_at: datetime,
) -> Optional[NormalizedEvent]:
    """Synthetic event describing the provider's view, or None if in sync."""
    status = PROVIDER_STATUSES.get(remote.status)
    if status is None:
        raise BillingError(f"Unknown provider status {remote.status!r}")

    plan = plan_registry.plan_for_price(remote.price_id)
    plan_id = plan.id if plan else remote.price_id

    in_sync = (
        status == record.status_enum
        and (plan_id is None or plan_id == record.plan_id)
        and bool(remote.cancel_at_period_end) == bool(record.cancel_at_period_end)
    )
    if in_sync:
        return None

    period_end = None
    if remote.current_period_end is not None:
        period_end = datetime.fromtimestamp(int(remote.current_period_end), tz=timezone.utc)

    return NormalizedEvent(
        event_id=f"reconcile:{record.provider_subscription_id}:{uuid.uuid4().hex}",
        type=EventType.SUBSCRIPTION_UPDATED,
        occurred_at=occurred_at,
        provider_customer_id=remote.customer_id,
        provider_subscription_id=remote.id,
        plan_id=plan_id,
        status=status,
        period_end=period_end,
        cancel_at_period_end=remote.cancel_at_period_end,
        user_id=record.user_id,
        source=TransitionSource.RECONCILIATION,
    )


async def reconcile_subscriptions(
    db_session: Session,
    client: StripeBillingClient,
    plan_registry: PlanRegistry,
    reconciler: Optional[StateReconciler] = None,
    request_interval: float = REQUEST_INTERVAL_SECONDS,
) -> ReconciliationSummary:
    """
    Compare every live, provider-linked record with the provider.

    Provider failures for one record are logged and counted; the run continues.
    """
    reconciler = reconciler or StateReconciler(db_session, plan_registry)
    summary = ReconciliationSummary()

    records = SubscriptionRepository(db_session).list_with_provider_subscription(
        sorted(LIVE_STATUSES, key=lambda s: s.value)
    )
    logger.info("Found subscriptions to reconcile", extra={"count": len(records)})

    for record in records:
        summary.checked += 1
        try:
            # Stamp before the fetch so webhooks landing meanwhile win
            snapshot_at = utcnow()
            remote = await client.retrieve_subscription(record.provider_subscription_id)
            event = _drift_event(record, remote, plan_registry, snapshot_at)
            if event is None:
                continue

            logger.info("Status drift detected", extra={
                "user_id": record.user_id,
                "provider_subscription_id": record.provider_subscription_id,
                "local_status": record.status,
                "provider_status": remote.status,
            })
            await reconciler.apply(event)
            summary.updated += 1
        except (StaleEventError, DuplicateEventError):
            summary.skipped += 1
        except BillingError as e:
            logger.error("Error reconciling subscription", extra={
                "user_id": record.user_id,
                "provider_subscription_id": record.provider_subscription_id,
                "error": str(e),
            })
            summary.errors += 1

        if request_interval:
            await asyncio.sleep(request_interval)

    logger.info("Reconciliation job completed", extra=summary.to_dict())
    return summary


async def run_reconciliation() -> dict:
    """Build dependencies from the environment and run one pass."""
    from paygate.config.plans import load_plan_registry
    from paygate.config.settings import BillingSettings
    from paygate.database.session import get_session_factory
    from paygate.integrations.stripe.billing_client import get_billing_client

    settings = BillingSettings.from_env()
    if not settings.api_key:
        raise ValueError("BILLING_API_KEY environment variable is required")

    registry = load_plan_registry()
    session = get_session_factory()()
    try:
        async with get_billing_client(
            settings.api_key,
            base_url=settings.api_base_url,
            timeout=settings.api_timeout_seconds,
            max_retries=settings.api_max_retries,
        ) as client:
            reconciler = StateReconciler(session, registry, tie_break=settings.tie_break_policy)
            summary = await reconcile_subscriptions(session, client, registry, reconciler)
        return summary.to_dict()
    finally:
        session.close()


def main():
    """Entry point for running reconciliation job from command line."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        result = asyncio.run(run_reconciliation())
        logger.info("Reconciliation completed: %s", result)
        sys.exit(0)
    except Exception as e:
        logger.error("Reconciliation failed: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
