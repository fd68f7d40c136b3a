"""
Billing provider REST client (Stripe-compatible API).

Covers the outbound operations the service needs:
- customers (create / retrieve)
- hosted checkout sessions
- billing portal sessions
- subscription cancel / retrieve

Every request has an explicit timeout. Transient failures (429, 5xx,
timeouts, transport errors) are retried with exponential backoff and
surface as ProviderUnavailableError once retries are exhausted.

Documentation: https://docs.stripe.com/api
"""

import asyncio
import logging
import random
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx

from paygate.billing.errors import ProviderAPIError, ProviderUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.stripe.com/v1"


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    initial_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1
    retryable_status_codes: tuple = (429, 500, 502, 503, 504)

    def calculate_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Calculate delay before next retry attempt.

        Args:
            attempt: Current attempt number (0-indexed)
            retry_after: Optional Retry-After header value in seconds
        """
        if retry_after is not None:
            return min(retry_after, self.max_delay_seconds)

        base_delay = self.initial_delay_seconds * (self.backoff_multiplier ** attempt)
        jitter = random.uniform(0, base_delay * self.jitter_factor)
        return min(base_delay + jitter, self.max_delay_seconds)


@dataclass
class ProviderCustomer:
    id: str
    email: Optional[str] = None
    deleted: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderSession:
    """Hosted checkout or portal session."""
    id: str
    url: str


@dataclass
class ProviderSubscription:
    id: str
    customer_id: Optional[str]
    status: str
    price_id: Optional[str] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


def _flatten_params(params: Dict[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    """Encode nested dicts/lists with bracket notation (metadata[user_id]=...)."""
    pairs: List[Tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(_flatten_params(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                item_name = f"{name}[{index}]"
                if isinstance(item, dict):
                    pairs.extend(_flatten_params(item, item_name))
                else:
                    pairs.append((item_name, str(item)))
        elif isinstance(value, bool):
            pairs.append((name, "true" if value else "false"))
        else:
            pairs.append((name, str(value)))
    return pairs


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> Tuple[str, Optional[dict]]:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500], None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return error["message"], body
    return f"Provider API error: {response.status_code}", body


class StripeBillingClient:
    """
    Client for billing provider operations.

    SECURITY: The API key is sent as a bearer token and never logged.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        retry_config: Optional[RetryConfig] = None,
    ):
        """
        Initialize billing client.

        Args:
            api_key: Provider secret API key
            base_url: API root (overridable for test doubles)
            timeout: Per-request timeout in seconds
            retry_config: Retry behaviour for transient failures
        """
        if not api_key:
            raise ValueError("api_key is required")

        self.base_url = base_url.rstrip("/")
        self.retry_config = retry_config or RetryConfig()
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
            headers={"Authorization": f"Bearer {api_key}"},
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        """
        Execute one API call with retries.

        Raises:
            ProviderUnavailableError: Transient failure after all retries
            ProviderAPIError: Request rejected by the provider
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = {}
        content = None
        query = None
        if method == "POST":
            content = urlencode(_flatten_params(params or {}))
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            headers["Idempotency-Key"] = idempotency_key or str(uuid.uuid4())
        elif params:
            query = _flatten_params(params)

        config = self.retry_config
        last_error: Optional[ProviderUnavailableError] = None

        for attempt in range(config.max_retries + 1):
            retry_after = None
            try:
                response = await self._client.request(
                    method, url, content=content, params=query, headers=headers
                )
            except httpx.TimeoutException as e:
                logger.warning("Provider API timeout", extra={
                    "path": path, "attempt": attempt, "error": str(e)
                })
                last_error = ProviderUnavailableError(f"Request timeout: {e}")
            except httpx.RequestError as e:
                logger.warning("Provider API request error", extra={
                    "path": path, "attempt": attempt, "error": str(e)
                })
                last_error = ProviderUnavailableError(f"Request error: {e}")
            else:
                if response.status_code < 400:
                    return response.json()

                message, body = _error_message(response)
                if response.status_code in config.retryable_status_codes:
                    retry_after = _retry_after(response)
                    logger.warning("Provider API transient error", extra={
                        "path": path,
                        "attempt": attempt,
                        "status_code": response.status_code,
                    })
                    last_error = ProviderUnavailableError(
                        message, status_code=response.status_code, retry_after=retry_after
                    )
                else:
                    logger.error("Provider API error", extra={
                        "path": path,
                        "status_code": response.status_code,
                        "error_message": message,
                    })
                    raise ProviderAPIError(message, status_code=response.status_code, response=body)

            if attempt < config.max_retries:
                await asyncio.sleep(config.calculate_delay(attempt, retry_after))

        logger.error("Provider API unavailable after retries", extra={
            "path": path,
            "attempts": config.max_retries + 1,
        })
        raise last_error

    async def create_customer(self, user_id: str, email: Optional[str] = None) -> ProviderCustomer:
        data = await self._request(
            "POST", "customers",
            {"email": email, "metadata": {"user_id": user_id}},
            idempotency_key=f"customer-{user_id}",
        )
        return ProviderCustomer(
            id=data["id"],
            email=data.get("email"),
            metadata=data.get("metadata") or {},
        )

    async def retrieve_customer(self, customer_id: str) -> ProviderCustomer:
        data = await self._request("GET", f"customers/{customer_id}")
        return ProviderCustomer(
            id=data["id"],
            email=data.get("email"),
            deleted=bool(data.get("deleted", False)),
            metadata=data.get("metadata") or {},
        )

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        user_id: str,
        plan_id: str,
        trial_days: int = 0,
    ) -> ProviderSession:
        """
        Create a hosted checkout session for a subscription.

        user_id and plan_id travel in metadata so the completed-checkout
        webhook can be linked back to the plan registry.
        """
        params: Dict[str, Any] = {
            "mode": "subscription",
            "customer": customer_id,
            "client_reference_id": user_id,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "line_items": [{"price": price_id, "quantity": 1}],
            "metadata": {"user_id": user_id, "plan_id": plan_id},
            "subscription_data": {
                "metadata": {"user_id": user_id, "plan_id": plan_id},
            },
        }
        if trial_days > 0:
            params["subscription_data"]["trial_period_days"] = trial_days

        data = await self._request("POST", "checkout/sessions", params)
        return ProviderSession(id=data["id"], url=data["url"])

    async def create_portal_session(self, customer_id: str, return_url: str) -> ProviderSession:
        data = await self._request(
            "POST", "billing_portal/sessions",
            {"customer": customer_id, "return_url": return_url},
        )
        return ProviderSession(id=data["id"], url=data["url"])

    async def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> ProviderSubscription:
        """
        Cancel a subscription, by default at the end of the current period.

        The local record is not touched; the provider's webhook drives it.
        """
        if at_period_end:
            data = await self._request(
                "POST", f"subscriptions/{subscription_id}",
                {"cancel_at_period_end": True},
                idempotency_key=f"cancel-{subscription_id}-period-end",
            )
        else:
            data = await self._request("DELETE", f"subscriptions/{subscription_id}")
        return self._parse_subscription(data)

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        data = await self._request("GET", f"subscriptions/{subscription_id}")
        return self._parse_subscription(data)

    @staticmethod
    def _parse_subscription(data: dict) -> ProviderSubscription:
        items = (data.get("items") or {}).get("data") or []
        item = items[0] if items else {}
        customer = data.get("customer")
        return ProviderSubscription(
            id=data["id"],
            customer_id=customer.get("id") if isinstance(customer, dict) else customer,
            status=data.get("status", ""),
            price_id=(item.get("price") or {}).get("id"),
            current_period_end=data.get("current_period_end", item.get("current_period_end")),
            cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
            metadata=data.get("metadata") or {},
        )


def get_billing_client(
    api_key: str,
    base_url: str = DEFAULT_BASE_URL,
    timeout: float = 10.0,
    max_retries: int = 3,
) -> StripeBillingClient:
    """Factory function to create a billing client."""
    return StripeBillingClient(
        api_key=api_key,
        base_url=base_url,
        timeout=timeout,
        retry_config=RetryConfig(max_retries=max_retries),
    )
