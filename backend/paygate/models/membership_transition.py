"""
MembershipTransition model for the immutable audit trail.

CRITICAL: This table is APPEND-ONLY.
Every reconciled change is recorded with its before/after status and plan.
"""

from sqlalchemy import Column, String, DateTime, JSON, Index, func

from paygate.models.base import Base, generate_uuid


class TransitionSource:
    """Where a reconciled event came from."""
    WEBHOOK = "webhook"
    FREE_PLAN = "free_plan"
    RECONCILIATION = "reconciliation"


class MembershipTransition(Base):
    """Audit row for one applied event."""

    __tablename__ = "membership_transitions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    user_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="User whose record changed"
    )
    event_id = Column(
        String(255),
        nullable=False,
        comment="Event that caused the change"
    )
    event_type = Column(
        String(64),
        nullable=False
    )
    source = Column(
        String(32),
        nullable=False,
        default=TransitionSource.WEBHOOK
    )

    from_status = Column(String(32), nullable=True)
    to_status = Column(String(32), nullable=False)
    from_plan_id = Column(String(100), nullable=True)
    to_plan_id = Column(String(100), nullable=True)

    extra_metadata = Column(
        JSON,
        nullable=True,
        comment="Warnings and provider references"
    )

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now()
    )

    __table_args__ = (
        Index("ix_membership_transitions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<MembershipTransition(user_id={self.user_id}, "
            f"{self.from_status}->{self.to_status})>"
        )
