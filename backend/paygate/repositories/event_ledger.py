"""
Dedup ledger repository.

Records every provider event id that has been handled, whatever the outcome,
so redeliveries inside the retention window are acknowledged without being
reconciled again.
"""

import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

from sqlalchemy.orm import Session

from paygate.models.base import utcnow
from paygate.models.processed_event import ProcessedEvent

logger = logging.getLogger(__name__)


def payload_hash(payload: Union[bytes, Dict[str, Any], None]) -> Optional[str]:
    """SHA-256 of the payload, for debugging duplicate deliveries."""
    if payload is None:
        return None
    if isinstance(payload, dict):
        payload = json.dumps(payload, sort_keys=True).encode()
    return hashlib.sha256(payload).hexdigest()


class EventLedger:
    """Repository for ProcessedEvent rows."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def is_processed(self, event_id: str) -> bool:
        """
        Check if an event has already been handled.

        Args:
            event_id: Provider event ID

        Returns:
            True if duplicate, False otherwise
        """
        existing = self.db.query(ProcessedEvent.id).filter(
            ProcessedEvent.event_id == event_id
        ).first()
        return existing is not None

    def get(self, event_id: str) -> Optional[ProcessedEvent]:
        return self.db.query(ProcessedEvent).filter(
            ProcessedEvent.event_id == event_id
        ).first()

    def record(
        self,
        event_id: str,
        event_type: str,
        outcome: str,
        provider_customer_id: Optional[str] = None,
        payload: Union[bytes, Dict[str, Any], None] = None,
        processed_at: Optional[datetime] = None,
    ) -> ProcessedEvent:
        """
        Add a ledger row. Not committed; the caller's transaction owns it.
        """
        entry = ProcessedEvent(
            event_id=event_id,
            event_type=event_type,
            outcome=outcome,
            provider_customer_id=provider_customer_id,
            payload_hash=payload_hash(payload),
            processed_at=processed_at or utcnow(),
        )
        self.db.add(entry)
        return entry

    def purge_older_than(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """
        Delete ledger rows older than the retention window.

        Returns:
            Number of rows deleted
        """
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        deleted = self.db.query(ProcessedEvent).filter(
            ProcessedEvent.processed_at < cutoff
        ).delete(synchronize_session=False)
        return deleted
