"""
Unit tests for the billing provider client.

Tests cover:
- RetryConfig backoff
- Retry on transient errors and timeouts
- Error classification (retriable vs rejected)
- Request encoding for checkout, portal and cancel
"""

from urllib.parse import parse_qs
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from paygate.billing.errors import ProviderAPIError, ProviderUnavailableError
from paygate.integrations.stripe.billing_client import (
    RetryConfig,
    StripeBillingClient,
    _flatten_params,
    get_billing_client,
)


def _client_with(handler, max_retries: int = 2) -> StripeBillingClient:
    """Client whose HTTP transport is served by handler(request)."""
    client = StripeBillingClient(
        api_key="sk_test_123",
        base_url="https://billing.test/v1",
        retry_config=RetryConfig(max_retries=max_retries),
    )
    client._client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        headers={"Authorization": "Bearer sk_test_123"},
    )
    return client


@pytest.fixture
def no_sleep():
    with patch("paygate.integrations.stripe.billing_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


class TestRetryConfig:
    """Tests for RetryConfig dataclass."""

    def test_default_values(self):
        config = RetryConfig()

        assert config.max_retries == 3
        assert 429 in config.retryable_status_codes
        assert 503 in config.retryable_status_codes
        assert 400 not in config.retryable_status_codes

    def test_exponential_backoff_is_capped(self):
        config = RetryConfig(initial_delay_seconds=1.0, max_delay_seconds=5.0, jitter_factor=0)

        assert config.calculate_delay(0) == 1.0
        assert config.calculate_delay(1) == 2.0
        assert config.calculate_delay(5) == 5.0

    def test_retry_after_takes_precedence(self):
        config = RetryConfig(max_delay_seconds=8.0)

        assert config.calculate_delay(0, retry_after=3.0) == 3.0
        assert config.calculate_delay(0, retry_after=60.0) == 8.0


class TestClientInitialization:
    """Tests for client construction."""

    def test_requires_api_key(self):
        with pytest.raises(ValueError, match="api_key is required"):
            StripeBillingClient(api_key="")

    def test_factory_applies_retries(self):
        client = get_billing_client("sk_test", base_url="https://billing.test/v1/", max_retries=5)

        assert client.retry_config.max_retries == 5
        assert client.base_url == "https://billing.test/v1"


class TestRetries:
    """Tests for transient failure handling."""

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, no_sleep):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503, json={"error": {"message": "overloaded"}})
            return httpx.Response(200, json={"id": "cus_1", "email": "a@example.com"})

        client = _client_with(handler, max_retries=2)
        customer = await client.retrieve_customer("cus_1")

        assert customer.id == "cus_1"
        assert len(calls) == 3
        assert no_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_unavailable(self, no_sleep):
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "2"}, json={"error": {"message": "slow down"}})

        client = _client_with(handler, max_retries=1)

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await client.retrieve_subscription("sub_1")

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 2.0
        assert exc_info.value.to_dict()["retriable"] is True
        no_sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_timeout_raises_unavailable(self, no_sleep):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = _client_with(handler, max_retries=2)

        with pytest.raises(ProviderUnavailableError, match="timeout"):
            await client.retrieve_customer("cus_1")

        assert no_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_connection_error_raises_unavailable(self, no_sleep):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = _client_with(handler, max_retries=0)

        with pytest.raises(ProviderUnavailableError):
            await client.retrieve_customer("cus_1")

        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, no_sleep):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"error": {"message": "No such price: price_x"}})

        client = _client_with(handler)

        with pytest.raises(ProviderAPIError) as exc_info:
            await client.create_portal_session("cus_1", "https://app.test/account")

        assert not isinstance(exc_info.value, ProviderUnavailableError)
        assert exc_info.value.status_code == 400
        assert "No such price" in str(exc_info.value)
        assert len(calls) == 1


class TestOperations:
    """Tests for request encoding and response parsing."""

    @pytest.mark.asyncio
    async def test_create_checkout_session(self):
        captured = {}

        def handler(request):
            captured["request"] = request
            return httpx.Response(200, json={"id": "cs_1", "url": "https://checkout.test/cs_1"})

        client = _client_with(handler)
        session = await client.create_checkout_session(
            customer_id="cus_1",
            price_id="price_basic",
            success_url="https://app.test/ok",
            cancel_url="https://app.test/cancel",
            user_id="user-1",
            plan_id="basic",
            trial_days=14,
        )

        assert session.url == "https://checkout.test/cs_1"
        request = captured["request"]
        assert request.method == "POST"
        assert request.url.path == "/v1/checkout/sessions"
        assert request.headers["Authorization"] == "Bearer sk_test_123"
        assert request.headers["Idempotency-Key"]
        form = parse_qs(request.content.decode())
        assert form["mode"] == ["subscription"]
        assert form["line_items[0][price]"] == ["price_basic"]
        assert form["metadata[plan_id]"] == ["basic"]
        assert form["subscription_data[trial_period_days]"] == ["14"]

    @pytest.mark.asyncio
    async def test_create_customer_is_idempotent_per_user(self):
        captured = {}

        def handler(request):
            captured["request"] = request
            return httpx.Response(200, json={"id": "cus_new", "metadata": {"user_id": "user-1"}})

        client = _client_with(handler)
        customer = await client.create_customer("user-1", "a@example.com")

        assert customer.id == "cus_new"
        assert captured["request"].headers["Idempotency-Key"] == "customer-user-1"

    @pytest.mark.asyncio
    async def test_cancel_immediately_uses_delete(self):
        captured = {}

        def handler(request):
            captured["request"] = request
            return httpx.Response(200, json={
                "id": "sub_1",
                "customer": "cus_1",
                "status": "canceled",
                "items": {"data": [{"price": {"id": "price_pro"}}]},
            })

        client = _client_with(handler)
        subscription = await client.cancel_subscription("sub_1", at_period_end=False)

        assert captured["request"].method == "DELETE"
        assert subscription.status == "canceled"
        assert subscription.price_id == "price_pro"

    @pytest.mark.asyncio
    async def test_cancel_at_period_end_posts_flag(self):
        captured = {}

        def handler(request):
            captured["request"] = request
            return httpx.Response(200, json={
                "id": "sub_1",
                "customer": {"id": "cus_1"},
                "status": "active",
                "cancel_at_period_end": True,
            })

        client = _client_with(handler)
        subscription = await client.cancel_subscription("sub_1")

        assert captured["request"].method == "POST"
        assert parse_qs(captured["request"].content.decode())["cancel_at_period_end"] == ["true"]
        assert subscription.customer_id == "cus_1"
        assert subscription.cancel_at_period_end

    @pytest.mark.asyncio
    async def test_close(self):
        client = _client_with(lambda request: httpx.Response(200, json={}))

        async with client:
            pass

        assert client._client.is_closed


class TestFlattenParams:
    def test_nested_and_none_values(self):
        pairs = _flatten_params({
            "customer": "cus_1",
            "email": None,
            "metadata": {"user_id": "u1"},
            "line_items": [{"price": "p", "quantity": 1}],
            "flag": False,
        })

        assert dict(pairs) == {
            "customer": "cus_1",
            "metadata[user_id]": "u1",
            "line_items[0][price]": "p",
            "line_items[0][quantity]": "1",
            "flag": "false",
        }

