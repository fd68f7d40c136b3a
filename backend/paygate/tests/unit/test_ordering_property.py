"""
Property tests for delivery order independence.

However provider events are shuffled or redelivered, the final record must
match the event with the highest sequence, and every event id is reconciled
at most once.
"""

import asyncio
from datetime import timedelta

from hypothesis import given, settings, strategies as st
from sqlalchemy.orm import sessionmaker

from paygate.billing.errors import DuplicateEventError, StaleEventError
from paygate.billing.events import EventType, NormalizedEvent
from paygate.billing.locks import KeyedLock
from paygate.billing.reconciler import StateReconciler
from paygate.models.processed_event import ProcessedEvent
from paygate.models.subscription import SubscriptionStatus
from paygate.repositories.customer_repository import BillingCustomerRepository
from paygate.repositories.subscription_repository import SubscriptionRepository
from paygate.tests.conftest import BASE_TIME, build_plan_registry, build_test_engine

STATUSES = [
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.CANCELED,
]


def _update(sequence: int, status: SubscriptionStatus) -> NormalizedEvent:
    return NormalizedEvent(
        event_id=f"evt_seq_{sequence}",
        type=EventType.SUBSCRIPTION_UPDATED,
        occurred_at=BASE_TIME + timedelta(seconds=sequence),
        provider_customer_id="cus_prop",
        provider_subscription_id="sub_prop",
        status=status,
        sequence=sequence,
    )


async def _deliver_all(reconciler, deliveries):
    for event in deliveries:
        try:
            await reconciler.apply(event)
        except (DuplicateEventError, StaleEventError):
            pass


@st.composite
def delivery_plans(draw):
    sequences = draw(st.lists(st.integers(min_value=1, max_value=10_000), min_size=1, max_size=8, unique=True))
    events = [_update(seq, draw(st.sampled_from(STATUSES))) for seq in sequences]
    redelivered = draw(st.lists(st.sampled_from(events), max_size=4))
    deliveries = draw(st.permutations(events + redelivered))
    return events, deliveries


@settings(max_examples=40, deadline=None)
@given(plan=delivery_plans())
def test_final_state_matches_highest_sequence(plan):
    events, deliveries = plan
    engine = build_test_engine()
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        BillingCustomerRepository(session).link("user-prop", "cus_prop")
        session.commit()
        reconciler = StateReconciler(session, build_plan_registry(), locks=KeyedLock())

        checkout = NormalizedEvent(
            event_id="evt_checkout",
            type=EventType.CHECKOUT_COMPLETED,
            occurred_at=BASE_TIME,
            provider_customer_id="cus_prop",
            provider_subscription_id="sub_prop",
            plan_id="pro",
        )
        asyncio.run(_deliver_all(reconciler, [checkout] + list(deliveries)))

        newest = max(events, key=lambda e: e.sequence)
        record = SubscriptionRepository(session).get_by_user("user-prop")
        assert record.status_enum == newest.status
        assert record.last_event_sequence == newest.sequence
        assert record.plan_id == "pro"
        assert session.query(ProcessedEvent).count() == len(events) + 1
    finally:
        session.close()
        engine.dispose()
