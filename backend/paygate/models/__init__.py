"""
Database models for subscriptions, provider customers and the dedup ledger.
"""

from paygate.models.base import TimestampMixin
from paygate.models.subscription import SubscriptionRecord, SubscriptionStatus, LIVE_STATUSES
from paygate.models.billing_customer import BillingCustomer
from paygate.models.processed_event import ProcessedEvent, EventOutcome
from paygate.models.membership_transition import MembershipTransition, TransitionSource

__all__ = [
    "TimestampMixin",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "LIVE_STATUSES",
    "BillingCustomer",
    "ProcessedEvent",
    "EventOutcome",
    "MembershipTransition",
    "TransitionSource",
]
