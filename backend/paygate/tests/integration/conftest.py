"""
Fixtures for API integration tests.

The app is built through main.create_app with an in-memory database, an
explicit plan registry and a mocked provider client.
"""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from paygate.config.settings import BillingSettings
from paygate.database.session import get_db_session
from paygate.integrations.stripe.billing_client import (
    ProviderCustomer,
    ProviderSession,
    StripeBillingClient,
)
from paygate.platform.user_context import get_current_user_id
from paygate.tests.conftest import WEBHOOK_SECRET

TEST_USER_ID = "user-1"


@pytest.fixture
def billing_settings():
    return BillingSettings(
        webhook_secret=WEBHOOK_SECRET,
        api_key="sk_test",
        app_base_url="https://app.test",
    )


@pytest.fixture
def provider_client():
    client = MagicMock(spec=StripeBillingClient)
    client.create_customer.return_value = ProviderCustomer(id="cus_new")
    client.retrieve_customer.return_value = ProviderCustomer(id="cus_test")
    client.create_checkout_session.return_value = ProviderSession(
        id="cs_1", url="https://checkout.test/cs_1"
    )
    client.create_portal_session.return_value = ProviderSession(
        id="bps_1", url="https://portal.test/bps_1"
    )
    return client


@pytest.fixture
def app(db_session, plan_registry, billing_settings, provider_client):
    from main import create_app

    application = create_app(
        plan_registry=plan_registry,
        settings=billing_settings,
        billing_client=provider_client,
    )

    def override_db():
        yield db_session

    application.dependency_overrides[get_db_session] = override_db
    return application


@pytest.fixture
def client(app):
    """Client without a user context (webhooks, public routes)."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def user_client(app):
    """Client authenticated as TEST_USER_ID."""
    app.dependency_overrides[get_current_user_id] = lambda: TEST_USER_ID
    with TestClient(app) as test_client:
        yield test_client
