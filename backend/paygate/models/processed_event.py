"""
ProcessedEvent model: the webhook dedup ledger.

Used for idempotency - ensures provider events are reconciled exactly once.
Rows are purged after the retention window (see jobs.ledger_retention).
"""

from sqlalchemy import Column, String, DateTime, Index

from paygate.models.base import Base, generate_uuid, utcnow


class EventOutcome:
    """Ledger outcome constants."""
    APPLIED = "applied"
    STALE = "stale"
    UNKNOWN_USER = "unknown_user"
    IGNORED = "ignored"
    NOOP = "noop"


class ProcessedEvent(Base):
    """
    Tracks processed provider events for deduplication.

    Providers deliver webhooks at least once. The unique constraint on
    event_id is the final guard against concurrent double processing.
    """

    __tablename__ = "processed_events"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Provider-assigned event ID"
    )

    event_type = Column(
        String(64),
        nullable=False,
        comment="Normalized event type"
    )

    provider_customer_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Provider customer the event referenced"
    )

    outcome = Column(
        String(32),
        nullable=False,
        comment="How the event was handled"
    )

    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 hash of payload for debugging"
    )

    processed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="When the event was processed"
    )

    __table_args__ = (
        Index("idx_processed_events_processed_at", "processed_at"),
    )

    def __repr__(self) -> str:
        return f"<ProcessedEvent(event_id={self.event_id}, outcome={self.outcome})>"
