"""
FastAPI dependencies that enforce guards on routes.

Usage:
    @router.get("/pro/reports", dependencies=[Depends(require_guard(member_with_plan("pro")))])
    async def pro_reports():
        ...

    @router.get("/account")
    async def account(decision: GuardDecision = Depends(require_guard(member_any()))):
        ...
"""

import logging
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from paygate.database.session import get_db_session
from paygate.entitlements.guards import GuardDecision, GuardSpec
from paygate.entitlements.service import MembershipService
from paygate.platform.user_context import get_current_user_id

logger = logging.getLogger(__name__)


class MembershipRequiredError(HTTPException):
    """HTTP 402 Payment Required with guard details."""

    def __init__(self, decision: GuardDecision, guard: str, upgrade_url: Optional[str] = None):
        self.decision = decision
        self.guard = guard
        super().__init__(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=self.to_dict(upgrade_url),
        )

    def to_dict(self, upgrade_url: Optional[str] = None) -> dict:
        return {
            "error": "membership_required",
            "guard": self.guard,
            "reason": self.decision.reason,
            "status": self.decision.status.value,
            "view": self.decision.view.value,
            "plan_id": self.decision.plan_id,
            "upgrade_url": upgrade_url,
        }


def get_membership_service(db_session: Session = Depends(get_db_session)) -> MembershipService:
    return MembershipService(db_session)


def require_guard(spec: GuardSpec, upgrade_url: Optional[str] = "/api/billing/plans") -> Callable:
    """
    Build a dependency that denies with 402 unless the guard allows.

    The dependency returns the GuardDecision so handlers can pick the view.
    """
    def dependency(
        request: Request,
        user_id: str = Depends(get_current_user_id),
        service: MembershipService = Depends(get_membership_service),
    ) -> GuardDecision:
        decision = service.evaluate_guard(user_id, spec)
        if not decision.allowed:
            logger.info("Access denied by guard", extra={
                "user_id": user_id,
                "guard": type(spec).__name__,
                "reason": decision.reason,
                "status": decision.status.value,
                "endpoint": request.url.path,
                "method": request.method,
            })
            raise MembershipRequiredError(decision, type(spec).__name__, upgrade_url)
        return decision

    return dependency
