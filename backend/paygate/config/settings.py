"""
Service settings read from the environment.

All values are resolved once at startup into an immutable BillingSettings.
Invalid values fail fast with ValueError.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

from paygate.billing.reconciler import TieBreakPolicy

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.stripe.com/v1"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ValueError(f"{name} must be at least {minimum}, got {raw!r}")
    return value


@dataclass(frozen=True)
class BillingSettings:
    """Runtime configuration for webhook handling and provider calls."""
    webhook_secret: Optional[str] = None
    api_key: Optional[str] = None
    api_base_url: str = DEFAULT_API_BASE_URL
    api_timeout_seconds: float = 10.0
    api_max_retries: int = 3
    webhook_tolerance_seconds: int = 300
    dedup_retention_days: int = 30
    tie_break_policy: TieBreakPolicy = TieBreakPolicy.RESTRICTIVE
    app_base_url: str = "http://localhost:8000"

    @property
    def checkout_success_url(self) -> str:
        return f"{self.app_base_url.rstrip('/')}/billing/success?session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def checkout_cancel_url(self) -> str:
        return f"{self.app_base_url.rstrip('/')}/billing/cancelled"

    @property
    def portal_return_url(self) -> str:
        return f"{self.app_base_url.rstrip('/')}/account"

    @classmethod
    def from_env(cls) -> "BillingSettings":
        policy_raw = os.getenv("BILLING_TIE_BREAK_POLICY", TieBreakPolicy.RESTRICTIVE.value)
        try:
            policy = TieBreakPolicy(policy_raw.strip().lower())
        except ValueError:
            raise ValueError(
                f"BILLING_TIE_BREAK_POLICY must be one of "
                f"{[p.value for p in TieBreakPolicy]}, got {policy_raw!r}"
            ) from None

        settings = cls(
            webhook_secret=os.getenv("BILLING_WEBHOOK_SECRET") or None,
            api_key=os.getenv("BILLING_API_KEY") or None,
            api_base_url=os.getenv("BILLING_API_BASE_URL", DEFAULT_API_BASE_URL),
            api_timeout_seconds=_env_float("BILLING_API_TIMEOUT_SECONDS", 10.0),
            api_max_retries=_env_int("BILLING_API_MAX_RETRIES", 3),
            webhook_tolerance_seconds=_env_int("BILLING_WEBHOOK_TOLERANCE_SECONDS", 300),
            dedup_retention_days=_env_int("BILLING_DEDUP_RETENTION_DAYS", 30, minimum=1),
            tie_break_policy=policy,
            app_base_url=os.getenv("APP_BASE_URL", "http://localhost:8000"),
        )

        if not settings.webhook_secret:
            logger.warning("BILLING_WEBHOOK_SECRET not configured - webhooks will be rejected")
        if not settings.api_key:
            logger.warning("BILLING_API_KEY not configured - paid checkout disabled")

        return settings
