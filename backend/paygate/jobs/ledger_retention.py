"""
Dedup ledger retention job.

Deletes processed-event rows older than the retention window. The window
must exceed the provider's redelivery window (default 30 days).

Run as a daily cron job:
    python -m paygate.jobs.ledger_retention

Configuration:
- BILLING_DEDUP_RETENTION_DAYS: Retention period in days (default: 30)
"""

import logging
import sys
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from paygate.repositories.event_ledger import EventLedger

logger = logging.getLogger(__name__)


def purge_processed_events(
    db_session: Session,
    retention_days: int,
    now: Optional[datetime] = None,
) -> int:
    """
    Delete ledger rows older than retention_days.

    Returns:
        Number of rows deleted
    """
    if retention_days < 1:
        raise ValueError("retention_days must be at least 1")

    try:
        deleted = EventLedger(db_session).purge_older_than(retention_days, now=now)
        db_session.commit()
    except Exception:
        db_session.rollback()
        raise

    logger.info("Dedup ledger purged", extra={
        "deleted": deleted,
        "retention_days": retention_days,
    })
    return deleted


def main():
    """Entry point for running the purge from command line."""
    from paygate.config.settings import BillingSettings
    from paygate.database.session import get_session_factory

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    settings = BillingSettings.from_env()
    session = get_session_factory()()
    try:
        purge_processed_events(session, settings.dedup_retention_days)
    except Exception as e:
        logger.error("Ledger purge failed: %s", e)
        sys.exit(1)
    finally:
        session.close()


if __name__ == "__main__":
    main()
