"""
Guard specifications and their pure evaluator.

A guard is one of a closed set of tagged variants. evaluate_guard() is the
single place that interprets them: no I/O, no mutation, no provider calls.

Rules:
- NonMember: allow when no record or status none
- MemberAny: allow on active, trialing, past_due, canceled
- MemberWithStatus(s): allow on exact status match
- MemberWithPlan(ids): allow when active/trialing and plan_id in ids
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, Optional, Union

from paygate.models.subscription import SubscriptionRecord, SubscriptionStatus


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class MembershipView(str, Enum):
    """What the caller should render for this user."""
    NON_MEMBER = "non_member"
    MEMBER = "member"
    PLAN = "plan"  # plan-filtered member view


MEMBER_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.CANCELED,
})

ON_PLAN_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
})


@dataclass(frozen=True)
class MemberAny:
    pass


@dataclass(frozen=True)
class MemberWithStatus:
    status: SubscriptionStatus


@dataclass(frozen=True)
class MemberWithPlan:
    plan_ids: FrozenSet[str]


@dataclass(frozen=True)
class NonMember:
    pass


GuardSpec = Union[MemberAny, MemberWithStatus, MemberWithPlan, NonMember]


def member_any() -> MemberAny:
    return MemberAny()


def member_with_status(status: Union[SubscriptionStatus, str]) -> MemberWithStatus:
    return MemberWithStatus(SubscriptionStatus(status))


def member_with_plan(plan_ids: Union[str, Iterable[str]]) -> MemberWithPlan:
    if isinstance(plan_ids, str):
        plan_ids = [plan_ids]
    ids = frozenset(plan_ids)
    if not ids:
        raise ValueError("member_with_plan requires at least one plan id")
    return MemberWithPlan(ids)


def non_member() -> NonMember:
    return NonMember()


@dataclass(frozen=True)
class GuardDecision:
    """Outcome of a guard evaluation."""
    decision: Decision
    view: MembershipView
    status: SubscriptionStatus
    plan_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.decision == Decision.ALLOW


def membership_view(status: SubscriptionStatus) -> MembershipView:
    if status in ON_PLAN_STATUSES:
        return MembershipView.PLAN
    if status in MEMBER_STATUSES:
        return MembershipView.MEMBER
    return MembershipView.NON_MEMBER


def evaluate_guard(record: Optional[SubscriptionRecord], spec: GuardSpec) -> GuardDecision:
    """
    Decide access for a (possibly absent) subscription record.

    Args:
        record: The user's record, or None if they never subscribed
        spec: Guard variant

    Returns:
        GuardDecision with allow/deny, view and a reason on deny
    """
    status = record.status_enum if record is not None else SubscriptionStatus.NONE
    plan_id = record.plan_id if record is not None and status != SubscriptionStatus.NONE else None
    reason = None

    if isinstance(spec, NonMember):
        allowed = status == SubscriptionStatus.NONE
        if not allowed:
            reason = "already_member"
    elif isinstance(spec, MemberAny):
        allowed = status in MEMBER_STATUSES
        if not allowed:
            reason = "membership_required"
    elif isinstance(spec, MemberWithStatus):
        allowed = status == spec.status
        if not allowed:
            reason = f"status_{spec.status.value}_required"
    elif isinstance(spec, MemberWithPlan):
        allowed = status in ON_PLAN_STATUSES and plan_id in spec.plan_ids
        if not allowed:
            reason = "plan_required" if status in ON_PLAN_STATUSES else f"subscription_{status.value}"
    else:
        raise TypeError(f"Unknown guard spec: {spec!r}")

    return GuardDecision(
        decision=Decision.ALLOW if allowed else Decision.DENY,
        view=membership_view(status),
        status=status,
        plan_id=plan_id,
        reason=reason,
    )
