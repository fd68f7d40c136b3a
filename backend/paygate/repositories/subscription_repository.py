"""
Subscription record repository for data access operations.

Encapsulates all database operations for subscription records with:
- Lookups by user and by provider subscription
- Row locking for read-modify-write in the reconciler
- Audit listing of records and their transitions

Methods flush but never commit; the caller owns the transaction.
"""

import logging
from datetime import datetime
from typing import Optional, List, Union

from sqlalchemy.orm import Session

from paygate.models.subscription import SubscriptionRecord, SubscriptionStatus
from paygate.models.membership_transition import MembershipTransition

logger = logging.getLogger(__name__)

_UPSERT_FIELDS = frozenset({
    "provider_customer_id",
    "provider_subscription_id",
    "plan_id",
    "status",
    "current_period_end",
    "cancel_at_period_end",
    "trial_used",
    "last_event_id",
    "last_event_sequence",
    "last_event_at",
})


class SubscriptionRepository:
    """Repository for subscription record data access."""

    def __init__(self, db_session: Session):
        """
        Initialize repository with database session.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db = db_session

    def get_by_user(self, user_id: str, for_update: bool = False) -> Optional[SubscriptionRecord]:
        """
        Get the record for a user.

        Args:
            user_id: Local user identity
            for_update: Lock the row until the transaction ends

        Returns:
            SubscriptionRecord if found, None otherwise
        """
        query = self.db.query(SubscriptionRecord).filter(
            SubscriptionRecord.user_id == user_id
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_by_provider_subscription_id(
        self,
        provider_subscription_id: str,
        for_update: bool = False
    ) -> Optional[SubscriptionRecord]:
        """
        Get the record holding a provider subscription.

        Args:
            provider_subscription_id: Billing provider subscription ID
            for_update: Lock the row until the transaction ends

        Returns:
            SubscriptionRecord if found, None otherwise
        """
        query = self.db.query(SubscriptionRecord).filter(
            SubscriptionRecord.provider_subscription_id == provider_subscription_id
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def upsert(self, user_id: str, **fields) -> SubscriptionRecord:
        """
        Create or update the record for a user.

        Args:
            user_id: Local user identity
            **fields: Column values to set

        Returns:
            The persisted (flushed) record

        Raises:
            ValueError: Unknown field name
        """
        unknown = set(fields) - _UPSERT_FIELDS
        if unknown:
            raise ValueError(f"Unknown subscription record fields: {sorted(unknown)}")

        if isinstance(fields.get("status"), SubscriptionStatus):
            fields["status"] = fields["status"].value

        record = self.get_by_user(user_id)
        if record is None:
            record = SubscriptionRecord(
                user_id=user_id,
                status=SubscriptionStatus.NONE.value,
                cancel_at_period_end=False,
                trial_used=False,
            )
            self.db.add(record)
            logger.debug("Creating subscription record", extra={"user_id": user_id})

        for name, value in fields.items():
            setattr(record, name, value)

        self.db.flush()
        return record

    def delete(self, user_id: str) -> bool:
        """
        Hard-delete a user's record.

        Administrative erasure only; reconciliation never deletes records.

        Returns:
            True if a record was deleted
        """
        record = self.get_by_user(user_id)
        if record is None:
            return False
        self.db.delete(record)
        self.db.flush()
        logger.warning("Subscription record deleted", extra={"user_id": user_id})
        return True

    def list_for_audit(
        self,
        status: Optional[Union[SubscriptionStatus, str]] = None,
        updated_since: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[SubscriptionRecord]:
        """
        List records for audit and reconciliation, most recently updated first.

        Args:
            status: Optional status filter
            updated_since: Only records updated at or after this time
            limit: Page size
            offset: Page offset
        """
        query = self.db.query(SubscriptionRecord)

        if status is not None:
            value = status.value if isinstance(status, SubscriptionStatus) else status
            query = query.filter(SubscriptionRecord.status == value)
        if updated_since is not None:
            query = query.filter(SubscriptionRecord.updated_at >= updated_since)

        return query.order_by(
            SubscriptionRecord.updated_at.desc(),
            SubscriptionRecord.user_id
        ).offset(offset).limit(limit).all()

    def list_with_provider_subscription(
        self,
        statuses: List[SubscriptionStatus]
    ) -> List[SubscriptionRecord]:
        """Records in the given statuses that are linked to a provider subscription."""
        return self.db.query(SubscriptionRecord).filter(
            SubscriptionRecord.provider_subscription_id.isnot(None),
            SubscriptionRecord.status.in_([s.value for s in statuses])
        ).order_by(SubscriptionRecord.user_id).all()

    def get_transitions(self, user_id: str, limit: int = 50) -> List[MembershipTransition]:
        """Audit trail for a user, newest first."""
        return self.db.query(MembershipTransition).filter(
            MembershipTransition.user_id == user_id
        ).order_by(
            MembershipTransition.created_at.desc()
        ).limit(limit).all()
