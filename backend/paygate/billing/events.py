"""
Canonical internal event type.

Raw provider payloads are converted into NormalizedEvent at the webhook
boundary; nothing downstream sees the provider's JSON shape.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from paygate.models.membership_transition import TransitionSource
from paygate.models.subscription import SubscriptionStatus


class EventType(str, Enum):
    """Normalized event types."""
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    NOOP = "noop"


@dataclass(frozen=True)
class NormalizedEvent:
    """One provider event, validated and typed."""
    event_id: str
    type: EventType
    occurred_at: datetime
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    plan_id: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    period_end: Optional[datetime] = None
    sequence: Optional[int] = None
    cancel_at_period_end: Optional[bool] = None
    # Local anchor, only set on internally synthesized events
    user_id: Optional[str] = None
    source: str = TransitionSource.WEBHOOK
    raw_type: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        if not self.event_id:
            raise ValueError("event_id is required")
        if self.occurred_at.tzinfo is None:
            raise ValueError("occurred_at must be timezone-aware")

    @property
    def is_noop(self) -> bool:
        return self.type == EventType.NOOP

    def log_context(self) -> dict:
        return {
            "event_id": self.event_id,
            "event_type": self.type.value,
            "provider_customer_id": self.provider_customer_id,
            "provider_subscription_id": self.provider_subscription_id,
            "sequence": self.sequence,
            "source": self.source,
        }
