"""
Membership guards.

Pure guard evaluation lives in guards.py; service.py binds it to the record
store and dependencies.py to FastAPI routes.
"""

from paygate.entitlements.guards import (
    Decision,
    GuardDecision,
    GuardSpec,
    MemberAny,
    MemberWithPlan,
    MemberWithStatus,
    MembershipView,
    NonMember,
    evaluate_guard,
    member_any,
    member_with_plan,
    member_with_status,
    non_member,
)

__all__ = [
    "Decision",
    "GuardDecision",
    "GuardSpec",
    "MemberAny",
    "MemberWithPlan",
    "MemberWithStatus",
    "MembershipView",
    "NonMember",
    "evaluate_guard",
    "member_any",
    "member_with_plan",
    "member_with_status",
    "non_member",
]
