"""
Unit tests for checkout, portal and cancel session initiation.

The provider client is a MagicMock with the client's spec, so async
methods are AsyncMocks and any unexpected provider call is visible.
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from paygate.billing.errors import (
    CustomerNotFoundError,
    NoActiveSubscriptionError,
    PlanNotFoundError,
    ProviderAPIError,
    ProviderUnavailableError,
    StaleEventError,
    SubscriptionConflictError,
)
from paygate.billing.events import EventType, NormalizedEvent
from paygate.billing.locks import KeyedLock
from paygate.billing.reconciler import StateReconciler
from paygate.config.settings import BillingSettings
from paygate.integrations.stripe.billing_client import (
    ProviderCustomer,
    ProviderSession,
    ProviderSubscription,
    StripeBillingClient,
)
from paygate.models.base import utcnow
from paygate.models.membership_transition import TransitionSource
from paygate.models.subscription import SubscriptionStatus
from paygate.repositories.customer_repository import BillingCustomerRepository
from paygate.repositories.subscription_repository import SubscriptionRepository
from paygate.services.session_initiator import (
    CheckoutRedirect,
    SessionInitiator,
    SkippedFreePlan,
)


@pytest.fixture
def settings():
    return BillingSettings(api_key="sk_test", app_base_url="https://app.test")


@pytest.fixture
def client():
    client = MagicMock(spec=StripeBillingClient)
    client.create_customer.return_value = ProviderCustomer(id="cus_new", email="a@example.com")
    client.retrieve_customer.return_value = ProviderCustomer(id="cus_test")
    client.create_checkout_session.return_value = ProviderSession(
        id="cs_1", url="https://checkout.test/cs_1"
    )
    client.create_portal_session.return_value = ProviderSession(
        id="bps_1", url="https://portal.test/bps_1"
    )
    return client


@pytest.fixture
def reconciler(db_session, plan_registry):
    return StateReconciler(db_session, plan_registry, locks=KeyedLock())


@pytest.fixture
def initiator(db_session, plan_registry, client, settings, reconciler):
    return SessionInitiator(db_session, plan_registry, client, settings, reconciler=reconciler)


async def _subscribe(reconciler, make_event, plan_id="pro"):
    await reconciler.apply(make_event(
        EventType.CHECKOUT_COMPLETED, plan_id=plan_id, provider_subscription_id="sub_1"
    ))


class TestFreePlan:
    """Free plans skip the provider entirely."""

    @pytest.mark.asyncio
    async def test_free_plan_never_contacts_provider(self, initiator, client, db_session):
        result = await initiator.initiate_checkout("user-1", "free")

        assert isinstance(result, SkippedFreePlan)
        assert result.status == SubscriptionStatus.ACTIVE
        client.create_customer.assert_not_called()
        client.create_checkout_session.assert_not_called()

        record = SubscriptionRepository(db_session).get_by_user("user-1")
        assert record.status == "active"
        assert record.plan_id == "free"
        assert record.provider_subscription_id is None
        assert record.provider_customer_id is None

    @pytest.mark.asyncio
    async def test_default_plan_is_used_when_omitted(self, initiator, client):
        result = await initiator.initiate_checkout("user-1")

        assert isinstance(result, SkippedFreePlan)
        assert result.plan_id == "free"

    @pytest.mark.asyncio
    async def test_free_plan_goes_through_transition_table(self, initiator, db_session):
        await initiator.initiate_checkout("user-1", "free")

        transitions = SubscriptionRepository(db_session).get_transitions("user-1")
        assert len(transitions) == 1
        assert transitions[0].source == TransitionSource.FREE_PLAN
        assert transitions[0].event_type == "checkout_completed"
        assert (transitions[0].from_status, transitions[0].to_status) == ("none", "active")

    @pytest.mark.asyncio
    async def test_repeat_free_checkout_is_idempotent(self, initiator, db_session):
        await initiator.initiate_checkout("user-1", "free")
        result = await initiator.initiate_checkout("user-1", "free")

        assert result.status == SubscriptionStatus.ACTIVE
        assert len(SubscriptionRepository(db_session).get_transitions("user-1")) == 1

    @pytest.mark.asyncio
    async def test_free_plan_works_without_client(self, db_session, plan_registry, settings, reconciler):
        initiator = SessionInitiator(db_session, plan_registry, None, settings, reconciler=reconciler)

        result = await initiator.initiate_checkout("user-1", "free")

        assert result.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_free_plan_after_event_stamped_ahead_of_local_clock(
        self, initiator, reconciler, make_event, link_customer, db_session
    ):
        link_customer("user-1", "cus_test")
        await _subscribe(reconciler, make_event)
        await reconciler.apply(NormalizedEvent(
            event_id="evt_deleted_ahead",
            type=EventType.SUBSCRIPTION_DELETED,
            occurred_at=utcnow() + timedelta(seconds=5),
            provider_customer_id="cus_test",
            provider_subscription_id="sub_1",
            status=SubscriptionStatus.CANCELED,
        ))

        result = await initiator.initiate_checkout("user-1", "free")

        assert result.status == SubscriptionStatus.ACTIVE
        record = SubscriptionRepository(db_session).get_by_user("user-1")
        assert record.status == "active"
        assert record.plan_id == "free"

    @pytest.mark.asyncio
    async def test_free_plan_superseded_reports_stored_state(
        self, initiator, reconciler, make_event, link_customer
    ):
        link_customer("user-1", "cus_test")
        await _subscribe(reconciler, make_event)
        await reconciler.apply(make_event(
            EventType.SUBSCRIPTION_DELETED, offset=30, provider_subscription_id="sub_1"
        ))

        with patch.object(
            initiator.reconciler, "apply",
            side_effect=StaleEventError("evt_free", "newer event applied"),
        ):
            result = await initiator.initiate_checkout("user-1", "free")

        assert result == SkippedFreePlan(plan_id="pro", status=SubscriptionStatus.CANCELED)


class TestPaidCheckout:
    """Paid plans redirect to provider-hosted checkout."""

    @pytest.mark.asyncio
    async def test_creates_and_links_customer(self, initiator, client, db_session):
        result = await initiator.initiate_checkout("user-1", "pro", email="a@example.com")

        assert isinstance(result, CheckoutRedirect)
        assert result.url == "https://checkout.test/cs_1"
        assert result.provider_customer_id == "cus_new"
        client.create_customer.assert_awaited_once_with("user-1", "a@example.com")

        kwargs = client.create_checkout_session.await_args.kwargs
        assert kwargs["price_id"] == "price_pro"
        assert kwargs["plan_id"] == "pro"
        assert kwargs["trial_days"] == 0
        assert kwargs["success_url"].startswith("https://app.test/billing/success")

        customer = BillingCustomerRepository(db_session).get_by_user("user-1")
        assert customer.provider_customer_id == "cus_new"

    @pytest.mark.asyncio
    async def test_reuses_existing_customer(self, initiator, client, link_customer):
        link_customer("user-1", "cus_test")

        result = await initiator.initiate_checkout("user-1", "pro")

        assert result.provider_customer_id == "cus_test"
        client.retrieve_customer.assert_awaited_once_with("cus_test")
        client.create_customer.assert_not_called()

    @pytest.mark.asyncio
    async def test_deleted_customer_is_recreated(self, initiator, client, link_customer, db_session):
        link_customer("user-1", "cus_test")
        client.retrieve_customer.return_value = ProviderCustomer(id="cus_test", deleted=True)

        result = await initiator.initiate_checkout("user-1", "pro")

        assert result.provider_customer_id == "cus_new"
        customer = BillingCustomerRepository(db_session).get_by_user("user-1")
        assert customer.provider_customer_id == "cus_new"

    @pytest.mark.asyncio
    async def test_trial_offered_on_first_subscription(self, initiator, client):
        result = await initiator.initiate_checkout("user-1", "basic")

        assert result.trial_days == 14
        assert client.create_checkout_session.await_args.kwargs["trial_days"] == 14

    @pytest.mark.asyncio
    async def test_trial_not_offered_twice(self, initiator, client, reconciler, make_event, link_customer):
        link_customer("user-1", "cus_test")
        await _subscribe(reconciler, make_event, "basic")
        await reconciler.apply(make_event(
            EventType.SUBSCRIPTION_DELETED, offset=10, provider_subscription_id="sub_1"
        ))

        result = await initiator.initiate_checkout("user-1", "basic")

        assert result.trial_days == 0

    @pytest.mark.asyncio
    async def test_live_subscription_conflicts(self, initiator, client, reconciler, make_event, link_customer):
        link_customer("user-1", "cus_test")
        await _subscribe(reconciler, make_event, "pro")

        with pytest.raises(SubscriptionConflictError):
            await initiator.initiate_checkout("user-1", "basic")

        client.create_checkout_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_plan(self, initiator):
        with pytest.raises(PlanNotFoundError):
            await initiator.initiate_checkout("user-1", "enterprise")

    @pytest.mark.asyncio
    async def test_provider_unavailable_propagates(self, initiator, client):
        client.create_customer.side_effect = ProviderUnavailableError("timeout", retry_after=3)

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await initiator.initiate_checkout("user-1", "pro")

        assert exc_info.value.retry_after == 3

    @pytest.mark.asyncio
    async def test_paid_plan_without_client(self, db_session, plan_registry, settings, reconciler):
        initiator = SessionInitiator(db_session, plan_registry, None, settings, reconciler=reconciler)

        with pytest.raises(ProviderAPIError, match="not configured"):
            await initiator.initiate_checkout("user-1", "pro")


class TestPortalAndCancel:
    """Tests for portal sessions and cancellation requests."""

    @pytest.mark.asyncio
    async def test_portal_requires_customer(self, initiator):
        with pytest.raises(CustomerNotFoundError):
            await initiator.initiate_portal("user-1")

    @pytest.mark.asyncio
    async def test_portal_session(self, initiator, client, link_customer):
        link_customer("user-1", "cus_test")

        result = await initiator.initiate_portal("user-1")

        assert result.url == "https://portal.test/bps_1"
        client.create_portal_session.assert_awaited_once_with("cus_test", "https://app.test/account")

    @pytest.mark.asyncio
    async def test_cancel_without_subscription(self, initiator):
        with pytest.raises(NoActiveSubscriptionError):
            await initiator.cancel("user-1")

    @pytest.mark.asyncio
    async def test_cancel_leaves_local_state_to_webhook(
        self, initiator, client, reconciler, make_event, link_customer, db_session
    ):
        link_customer("user-1", "cus_test")
        await _subscribe(reconciler, make_event, "pro")
        client.cancel_subscription.return_value = ProviderSubscription(
            id="sub_1", customer_id="cus_test", status="active", cancel_at_period_end=True
        )

        ack = await initiator.cancel("user-1")

        assert ack.provider_subscription_id == "sub_1"
        assert ack.at_period_end
        client.cancel_subscription.assert_awaited_once_with("sub_1", at_period_end=True)
        assert SubscriptionRepository(db_session).get_by_user("user-1").status == "active"
