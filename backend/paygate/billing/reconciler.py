"""
State reconciler: applies normalized provider events to subscription records.

This is the only writer of SubscriptionRecord. Each event is handled under a
per-user lock, checked for staleness against the last applied event, mapped
through the transition table, and committed together with its dedup ledger
row and audit row in a single transaction.

Ordering:
- sequence present on both sides: compare sequences
- otherwise: compare occurred_at with the last applied event time
- equal: resolved by TieBreakPolicy (default: keep the more restrictive state)
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paygate.billing.errors import (
    DuplicateEventError,
    PlanMismatchError,
    StaleEventError,
    UnknownUserError,
)
from paygate.billing.events import EventType, NormalizedEvent
from paygate.billing.locks import KeyedLock
from paygate.config.plans import PlanRegistry
from paygate.models.membership_transition import MembershipTransition
from paygate.models.processed_event import EventOutcome
from paygate.models.subscription import LIVE_STATUSES, SubscriptionRecord, SubscriptionStatus
from paygate.repositories.customer_repository import BillingCustomerRepository
from paygate.repositories.event_ledger import EventLedger
from paygate.repositories.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)


class TieBreakPolicy(str, Enum):
    """How to resolve two events with the same ordering key."""
    RESTRICTIVE = "restrictive"          # apply only if access does not loosen
    LATEST_DELIVERY = "latest_delivery"  # last delivered wins
    FIRST_APPLIED = "first_applied"      # first applied wins


# Higher is more restrictive
RESTRICTIVENESS = {
    SubscriptionStatus.ACTIVE: 0,
    SubscriptionStatus.TRIALING: 0,
    SubscriptionStatus.PAST_DUE: 1,
    SubscriptionStatus.CANCELED: 2,
    SubscriptionStatus.NONE: 2,
}

# Expected status moves for subscription_updated; anything else is applied
# (provider is source of truth) but logged as unexpected.
EXPECTED_UPDATES = {
    SubscriptionStatus.ACTIVE: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.TRIALING: {
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.PAST_DUE: {
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELED,
    },
}

DEFAULT_LOCKS = KeyedLock()


@dataclass
class ReconciliationResult:
    """Result of reconciling one event."""
    event_id: str
    outcome: str
    user_id: Optional[str] = None
    previous_status: Optional[SubscriptionStatus] = None
    new_status: Optional[SubscriptionStatus] = None
    record: Optional[SubscriptionRecord] = None
    warnings: List[str] = field(default_factory=list)
    rejection: Optional[Exception] = field(default=None, repr=False)

    @property
    def applied(self) -> bool:
        return self.outcome == EventOutcome.APPLIED


class StateReconciler:
    """
    Applies NormalizedEvent instances to the subscription record store.

    Raises from apply():
    - UnknownUserError: no local user for the provider customer (ledgered)
    - StaleEventError: superseded by an applied event (ledgered)
    - DuplicateEventError: event id already in the ledger
    """

    def __init__(
        self,
        db_session: Session,
        plan_registry: PlanRegistry,
        tie_break: TieBreakPolicy = TieBreakPolicy.RESTRICTIVE,
        locks: Optional[KeyedLock] = None,
    ):
        self.db = db_session
        self.plans = plan_registry
        self.tie_break = TieBreakPolicy(tie_break)
        self.locks = locks or DEFAULT_LOCKS
        self.records = SubscriptionRepository(db_session)
        self.customers = BillingCustomerRepository(db_session)
        self.ledger = EventLedger(db_session)

    async def apply(self, event: NormalizedEvent) -> ReconciliationResult:
        """
        Reconcile one event.

        Args:
            event: Normalized event

        Returns:
            ReconciliationResult (applied, ignored or noop)
        """
        if event.is_noop:
            result = self._commit(event, lambda: self._finish_without_change(
                event, None, EventOutcome.NOOP
            ))
            logger.debug("Ignoring unhandled event type", extra=event.log_context())
            return result

        user_id = self._resolve_user(event)
        if user_id is None:
            error = UnknownUserError(event.provider_customer_id, event.event_id)
            self._commit(event, lambda: self._finish_without_change(
                event, None, EventOutcome.UNKNOWN_USER, rejection=error
            ))
            logger.warning("Event for unknown provider customer discarded", extra=event.log_context())
            raise error

        async with self.locks.hold(user_id):
            result = self._commit(event, lambda: self._reconcile(event, user_id))

        if result.rejection is not None:
            raise result.rejection
        return result

    def _commit(self, event: NormalizedEvent, work) -> ReconciliationResult:
        try:
            result = work()
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            if self.ledger.is_processed(event.event_id):
                logger.info("Concurrent duplicate delivery", extra=event.log_context())
                raise DuplicateEventError(event.event_id) from None
            logger.error("Integrity error while reconciling event", extra=event.log_context())
            raise
        except Exception:
            self.db.rollback()
            raise
        return result

    def _resolve_user(self, event: NormalizedEvent) -> Optional[str]:
        if event.user_id:
            return event.user_id
        if not event.provider_customer_id:
            return None
        customer = self.customers.get_by_provider_customer_id(event.provider_customer_id)
        return customer.user_id if customer else None

    def _finish_without_change(
        self,
        event: NormalizedEvent,
        record: Optional[SubscriptionRecord],
        outcome: str,
        user_id: Optional[str] = None,
        rejection: Optional[Exception] = None,
    ) -> ReconciliationResult:
        self.ledger.record(
            event_id=event.event_id,
            event_type=event.type.value,
            outcome=outcome,
            provider_customer_id=event.provider_customer_id,
        )
        status = record.status_enum if record else None
        return ReconciliationResult(
            event_id=event.event_id,
            outcome=outcome,
            user_id=user_id,
            previous_status=status,
            new_status=status,
            record=record,
            rejection=rejection,
        )

    def _reconcile(self, event: NormalizedEvent, user_id: str) -> ReconciliationResult:
        # Re-checked under the lock: a concurrent delivery may have won
        if self.ledger.is_processed(event.event_id):
            raise DuplicateEventError(event.event_id)

        record = self.records.get_by_user(user_id, for_update=True)

        if record is None and event.type != EventType.CHECKOUT_COMPLETED:
            logger.info("No subscription record for event, ignoring", extra={
                **event.log_context(), "user_id": user_id,
            })
            return self._finish_without_change(event, None, EventOutcome.IGNORED, user_id)

        if record is not None:
            reason = self._stale_reason(record, event)
            if reason:
                logger.info("Stale event dropped", extra={
                    **event.log_context(),
                    "user_id": user_id,
                    "reason": reason,
                    "last_event_id": record.last_event_id,
                })
                return self._finish_without_change(
                    event, record, EventOutcome.STALE, user_id,
                    rejection=StaleEventError(event.event_id, reason),
                )

        changes = self._transition(record, event)
        if changes is None:
            logger.info("Event has no effect in current state", extra={
                **event.log_context(),
                "user_id": user_id,
                "status": record.status if record else None,
            })
            return self._finish_without_change(event, record, EventOutcome.IGNORED, user_id)

        warnings = changes.pop("_warnings")
        previous_status = record.status_enum if record else SubscriptionStatus.NONE
        previous_plan = record.plan_id if record else None

        changes.update(
            last_event_id=event.event_id,
            last_event_sequence=event.sequence,
            last_event_at=event.occurred_at,
        )
        record = self.records.upsert(user_id, **changes)
        new_status = record.status_enum

        self.ledger.record(
            event_id=event.event_id,
            event_type=event.type.value,
            outcome=EventOutcome.APPLIED,
            provider_customer_id=event.provider_customer_id,
        )
        self.db.add(MembershipTransition(
            user_id=user_id,
            event_id=event.event_id,
            event_type=event.type.value,
            source=event.source,
            from_status=previous_status.value,
            to_status=new_status.value,
            from_plan_id=previous_plan,
            to_plan_id=record.plan_id,
            extra_metadata={
                "provider_subscription_id": record.provider_subscription_id,
                "sequence": event.sequence,
                "warnings": warnings,
            },
        ))

        logger.info("Membership transition applied", extra={
            **event.log_context(),
            "user_id": user_id,
            "from_status": previous_status.value,
            "to_status": new_status.value,
            "from_plan": previous_plan,
            "to_plan": record.plan_id,
        })

        return ReconciliationResult(
            event_id=event.event_id,
            outcome=EventOutcome.APPLIED,
            user_id=user_id,
            previous_status=previous_status,
            new_status=new_status,
            record=record,
            warnings=warnings,
        )

    def _stale_reason(self, record: SubscriptionRecord, event: NormalizedEvent) -> Optional[str]:
        """Why the event must not be applied, or None."""
        if (
            event.type != EventType.CHECKOUT_COMPLETED
            and event.provider_subscription_id
            and record.provider_subscription_id
            and event.provider_subscription_id != record.provider_subscription_id
        ):
            return f"superseded subscription {event.provider_subscription_id}"

        if event.sequence is not None and record.last_event_sequence is not None:
            if event.sequence < record.last_event_sequence:
                return (
                    f"sequence {event.sequence} older than applied "
                    f"{record.last_event_sequence}"
                )
            if event.sequence > record.last_event_sequence:
                return None
        else:
            last_at = record.last_event_at_utc
            if last_at is None:
                return None
            if event.occurred_at < last_at:
                return f"occurred_at {event.occurred_at.isoformat()} older than applied {last_at.isoformat()}"
            if event.occurred_at > last_at:
                return None

        return self._tie_break_reason(record, event)

    def _tie_break_reason(self, record: SubscriptionRecord, event: NormalizedEvent) -> Optional[str]:
        if self.tie_break == TieBreakPolicy.LATEST_DELIVERY:
            return None
        if self.tie_break == TieBreakPolicy.FIRST_APPLIED:
            return "tie with applied event, keeping first applied"

        changes = self._transition(record, event)
        if changes is None:
            return None
        current = record.status_enum
        candidate = SubscriptionStatus(changes.get("status", current))
        if RESTRICTIVENESS[candidate] >= RESTRICTIVENESS[current]:
            return None
        return f"tie with applied event, keeping more restrictive {current.value}"

    def _resolve_plan(
        self,
        event: NormalizedEvent,
        record: Optional[SubscriptionRecord],
        warnings: List[str],
    ) -> Optional[str]:
        """Plan id to store, or None to leave the record's plan unchanged."""
        if event.plan_id is None:
            return None
        if self.plans.has(event.plan_id):
            return event.plan_id

        mismatch = PlanMismatchError(event.plan_id, event.event_id)
        warnings.append(str(mismatch))
        logger.warning("Plan mismatch, keeping current plan", extra={
            **event.log_context(),
            "plan_id": event.plan_id,
            "current_plan": record.plan_id if record else None,
        })
        return None

    def _transition(
        self,
        record: Optional[SubscriptionRecord],
        event: NormalizedEvent,
    ) -> Optional[Dict[str, Any]]:
        """
        Compute field changes for an event.

        Returns:
            Dict of column values (plus `_warnings`), or None when the event
            has no effect in the current state
        """
        current = record.status_enum if record else SubscriptionStatus.NONE
        warnings: List[str] = []
        changes: Dict[str, Any] = {"_warnings": warnings}

        if event.provider_customer_id:
            changes["provider_customer_id"] = event.provider_customer_id

        if event.type == EventType.CHECKOUT_COMPLETED:
            plan_id = self._resolve_plan(event, record, warnings)
            # Trial eligibility only follows a plan the event actually names
            plan = self.plans.get(plan_id) if plan_id is not None else None
            if plan_id is None:
                plan_id = record.plan_id if record else self.plans.default_plan.id
                logger.info("Checkout plan unresolved, falling back without trial", extra={
                    **event.log_context(),
                    "fallback_plan": plan_id,
                })

            trial_used = bool(record.trial_used) if record else False
            if plan is not None and plan.trial and not trial_used:
                changes["status"] = SubscriptionStatus.TRIALING
                changes["trial_used"] = True
            else:
                changes["status"] = SubscriptionStatus.ACTIVE

            if current in LIVE_STATUSES:
                warnings.append(f"checkout completed while {current.value}, starting new cycle")
                logger.warning("Checkout completed on live subscription", extra={
                    **event.log_context(),
                    "status": current.value,
                })

            changes.update(
                plan_id=plan_id,
                provider_subscription_id=event.provider_subscription_id,
                current_period_end=event.period_end,
                cancel_at_period_end=False,
            )
            return changes

        if event.type == EventType.SUBSCRIPTION_UPDATED:
            target = event.status or current
            if target != current and target not in EXPECTED_UPDATES.get(current, set()):
                warnings.append(f"unexpected transition {current.value} -> {target.value}")
                logger.warning("Unexpected status transition applied from provider", extra={
                    **event.log_context(),
                    "from_status": current.value,
                    "to_status": target.value,
                })
            changes["status"] = target

            plan_id = self._resolve_plan(event, record, warnings)
            if plan_id is not None:
                changes["plan_id"] = plan_id
            if event.period_end is not None:
                changes["current_period_end"] = event.period_end
            if event.cancel_at_period_end is not None:
                changes["cancel_at_period_end"] = event.cancel_at_period_end
            if event.provider_subscription_id and not record.provider_subscription_id:
                changes["provider_subscription_id"] = event.provider_subscription_id
            return changes

        if event.type == EventType.SUBSCRIPTION_DELETED:
            if current not in LIVE_STATUSES:
                return None
            changes.update(status=SubscriptionStatus.CANCELED, cancel_at_period_end=False)
            if event.period_end is not None:
                changes["current_period_end"] = event.period_end
            return changes

        if event.type == EventType.PAYMENT_FAILED:
            if current not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
                return None
            changes["status"] = SubscriptionStatus.PAST_DUE
            return changes

        if event.type == EventType.PAYMENT_SUCCEEDED:
            if current == SubscriptionStatus.PAST_DUE:
                changes["status"] = SubscriptionStatus.ACTIVE
            elif current not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
                return None
            if event.period_end is not None:
                changes["current_period_end"] = event.period_end
            return changes

        return None
