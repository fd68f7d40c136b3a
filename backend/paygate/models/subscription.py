"""
SubscriptionRecord model: the local membership state of a user.

CRITICAL: One record per user. Written only by the state reconciler,
read-only everywhere else. Records are never hard-deleted by reconciliation;
ended subscriptions move to `canceled` so the audit trail survives.
"""

from enum import Enum as PyEnum

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Enum,
    Index, UniqueConstraint
)

from paygate.models.base import Base, TimestampMixin, generate_uuid, as_utc


class SubscriptionStatus(str, PyEnum):
    """Membership status values (closed set)."""
    NONE = "none"              # Never subscribed or fully ended
    ACTIVE = "active"          # Paid and current
    TRIALING = "trialing"      # Inside a provider-managed trial
    PAST_DUE = "past_due"      # Payment collection issue
    CANCELED = "canceled"      # Had a subscription, now ended


LIVE_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
})


class SubscriptionRecord(Base, TimestampMixin):
    """
    Canonical membership state for one user.

    CRITICAL DESIGN:
    - ONE record per user (unique user_id)
    - provider_subscription_id unique when set
    - last_event_* columns drive out-of-order protection
    """

    __tablename__ = "subscription_records"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    user_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Local user identity (one record per user)"
    )

    provider_customer_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Billing provider customer ID (null for free-plan-only users)"
    )
    provider_subscription_id = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Billing provider subscription ID"
    )

    plan_id = Column(
        String(100),
        nullable=False,
        comment="Plan registry ID"
    )

    status = Column(
        Enum(
            *[s.value for s in SubscriptionStatus],
            name="membership_status"
        ),
        default=SubscriptionStatus.NONE.value,
        nullable=False,
        index=True,
        comment="Current membership status"
    )

    current_period_end = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="End of current billing period"
    )
    cancel_at_period_end = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Provider will end the subscription at period end"
    )
    trial_used = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="User has already consumed a trial"
    )

    # Ordering anchors for the last applied event
    last_event_id = Column(
        String(255),
        nullable=True,
        comment="ID of the last applied provider event"
    )
    last_event_sequence = Column(
        Integer,
        nullable=True,
        comment="Provider ordering hint of the last applied event"
    )
    last_event_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="occurred_at of the last applied event"
    )

    __table_args__ = (
        Index("ix_subscription_records_status_updated", "status", "updated_at"),
        UniqueConstraint("user_id", name="uq_subscription_records_user"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(user_id={self.user_id}, plan_id={self.plan_id}, "
            f"status={self.status})>"
        )

    @property
    def status_enum(self) -> SubscriptionStatus:
        return SubscriptionStatus(self.status)

    @property
    def is_live(self) -> bool:
        """True while the provider still has an open subscription."""
        return self.status_enum in LIVE_STATUSES

    @property
    def last_event_at_utc(self):
        return as_utc(self.last_event_at)

    def to_dict(self) -> dict:
        period_end = as_utc(self.current_period_end)
        return {
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "status": self.status,
            "provider_customer_id": self.provider_customer_id,
            "provider_subscription_id": self.provider_subscription_id,
            "current_period_end": period_end.isoformat() if period_end else None,
            "cancel_at_period_end": bool(self.cancel_at_period_end),
            "trial_used": bool(self.trial_used),
        }
