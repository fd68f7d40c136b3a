"""
Error taxonomy for billing event handling and provider calls.

Webhook-facing errors:
- AuthenticationError / EventParseError: reject delivery (non-2xx, provider retries)
- DuplicateEventError / StaleEventError / UnknownUserError: acknowledged, not applied
- PlanMismatchError: warning only, event is partially applied

Caller-facing errors:
- ProviderUnavailableError: retriable, surfaced to the user-initiated action
- ProviderAPIError: non-retriable provider rejection
"""

from typing import Optional


class BillingError(Exception):
    """Base exception for billing errors."""

    code = "billing_error"

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {"error": self.code, "message": str(self)}


class AuthenticationError(BillingError):
    """Webhook signature did not verify. Security-relevant, never processed."""

    code = "invalid_signature"


class EventParseError(BillingError):
    """Webhook payload could not be turned into an event."""

    code = "invalid_payload"


class DuplicateEventError(BillingError):
    """Event already processed. Treated as a successful no-op."""

    code = "duplicate_event"

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event {event_id} already processed")


class UnknownUserError(BillingError):
    """No local user is mapped to the provider customer."""

    code = "unknown_user"

    def __init__(self, provider_customer_id: Optional[str], event_id: Optional[str] = None):
        self.provider_customer_id = provider_customer_id
        self.event_id = event_id
        super().__init__(f"No user mapped to provider customer {provider_customer_id}")


class StaleEventError(BillingError):
    """Event superseded by a newer one already applied."""

    code = "stale_event"

    def __init__(self, event_id: str, reason: str):
        self.event_id = event_id
        self.reason = reason
        super().__init__(f"Event {event_id} is stale: {reason}")


class PlanMismatchError(BillingError):
    """Event references a plan missing from the plan registry."""

    code = "plan_mismatch"

    def __init__(self, plan_id: Optional[str], event_id: Optional[str] = None):
        self.plan_id = plan_id
        self.event_id = event_id
        super().__init__(f"Plan {plan_id!r} is not in the plan registry")


class ProviderAPIError(BillingError):
    """Billing provider rejected the request."""

    code = "provider_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[dict] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class ProviderUnavailableError(ProviderAPIError):
    """Billing provider unreachable or overloaded. Safe to retry."""

    code = "provider_unavailable"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retriable"] = True
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        return data


class PlanNotFoundError(BillingError):
    """Requested plan does not exist."""

    code = "plan_not_found"


class PlanConfigError(BillingError):
    """Plan catalog failed validation."""

    code = "plan_config_invalid"


class CustomerNotFoundError(BillingError):
    """User has no billing provider customer yet."""

    code = "customer_not_found"


class NoActiveSubscriptionError(BillingError):
    """User has no live provider subscription."""

    code = "no_active_subscription"


class SubscriptionConflictError(BillingError):
    """User already holds a live provider subscription; plan changes go through the portal."""

    code = "subscription_exists"
