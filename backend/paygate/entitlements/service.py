"""
Membership service: guard evaluation against the local record store.

Read-only and lock-free. Never contacts the billing provider, so access
decisions stay available while the provider is unreachable.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from paygate.entitlements.guards import GuardDecision, GuardSpec, evaluate_guard
from paygate.models.subscription import SubscriptionRecord
from paygate.repositories.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)


class MembershipService:
    """Evaluates guards for users."""

    def __init__(self, db_session: Session):
        self.records = SubscriptionRepository(db_session)

    def get_record(self, user_id: str) -> Optional[SubscriptionRecord]:
        return self.records.get_by_user(user_id)

    def evaluate_guard(self, user_id: str, spec: GuardSpec) -> GuardDecision:
        decision = evaluate_guard(self.get_record(user_id), spec)
        logger.debug("Guard evaluated", extra={
            "user_id": user_id,
            "guard": type(spec).__name__,
            "decision": decision.decision.value,
            "status": decision.status.value,
        })
        return decision
