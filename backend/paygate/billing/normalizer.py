"""
Event normalizer for billing provider webhooks.

SECURITY: Every delivery MUST verify its signature before it is parsed.
The provider signs `"{timestamp}.{raw body}"` with HMAC-SHA256 using the
endpoint secret and sends `Stripe-Signature: t=<unix>,v1=<hex>[,v1=<hex>]`.

Pipeline: verify_signature -> parse_event -> dedup against the ledger.
Unrecognized provider event types become EventType.NOOP, not errors.
"""

import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from paygate.billing.errors import AuthenticationError, DuplicateEventError, EventParseError
from paygate.billing.events import EventType, NormalizedEvent
from paygate.config.plans import PlanRegistry
from paygate.models.subscription import SubscriptionStatus
from paygate.repositories.event_ledger import EventLedger

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300

PROVIDER_EVENT_TYPES = {
    "checkout.session.completed": EventType.CHECKOUT_COMPLETED,
    "customer.subscription.created": EventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.updated": EventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventType.SUBSCRIPTION_DELETED,
    "invoice.payment_failed": EventType.PAYMENT_FAILED,
    "invoice.paid": EventType.PAYMENT_SUCCEEDED,
    "invoice.payment_succeeded": EventType.PAYMENT_SUCCEEDED,
}

PROVIDER_STATUSES = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def _parse_signature_header(header: str) -> Tuple[Optional[int], List[str]]:
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> None:
    """
    Verify a provider webhook signature.

    Args:
        payload: Raw request body bytes
        signature_header: Signature header value
        secret: Endpoint signing secret
        tolerance_seconds: Maximum age of the signed timestamp
        now: Current unix time (for tests)

    Raises:
        AuthenticationError: Signature missing, malformed, expired or wrong
    """
    if not secret:
        raise AuthenticationError("Webhook signing secret not configured")
    if not signature_header:
        raise AuthenticationError("Missing signature header")

    timestamp, signatures = _parse_signature_header(signature_header)
    if timestamp is None or not signatures:
        raise AuthenticationError("Malformed signature header")

    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    expected = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()

    # Constant-time comparison to prevent timing attacks
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise AuthenticationError("Signature mismatch")

    current = now if now is not None else time.time()
    if abs(current - timestamp) > tolerance_seconds:
        raise AuthenticationError("Signature timestamp outside tolerance")


def compute_signature_header(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a valid signature header. Used by tests and local tooling."""
    ts = int(timestamp if timestamp is not None else time.time())
    digest = hmac.new(
        secret.encode("utf-8"),
        f"{ts}.".encode("utf-8") + payload,
        hashlib.sha256
    ).hexdigest()
    return f"t={ts},v1={digest}"


def _from_unix(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        raise EventParseError(f"Invalid timestamp: {value!r}") from None


def _id_of(value: Any) -> Optional[str]:
    """Provider references are either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _first_item(obj: Dict[str, Any], key: str) -> Dict[str, Any]:
    items = (obj.get(key) or {}).get("data") or []
    return items[0] if items and isinstance(items[0], dict) else {}


class EventNormalizer:
    """
    Converts verified provider webhooks into NormalizedEvent instances.
    """

    def __init__(
        self,
        plan_registry: PlanRegistry,
        webhook_secret: Optional[str],
        ledger: Optional[EventLedger] = None,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    ):
        self.plans = plan_registry
        self.webhook_secret = webhook_secret
        self.ledger = ledger
        self.tolerance_seconds = tolerance_seconds

    def normalize(
        self,
        payload: bytes,
        signature_header: Optional[str],
        now: Optional[float] = None,
    ) -> NormalizedEvent:
        """
        Verify, parse and dedup one delivery.

        Raises:
            AuthenticationError: Bad signature (respond non-2xx, do not process)
            EventParseError: Unrecoverable payload (respond non-2xx)
            DuplicateEventError: Already processed (respond 2xx, do nothing)
        """
        try:
            verify_signature(
                payload, signature_header, self.webhook_secret,
                tolerance_seconds=self.tolerance_seconds, now=now,
            )
        except AuthenticationError as e:
            logger.warning("Webhook signature rejected", extra={
                "reason": str(e),
                "security_event": True,
            })
            raise

        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error("Invalid JSON in webhook body", extra={"error": str(e)})
            raise EventParseError("Invalid JSON body") from e

        event = self.parse_event(data)

        if self.ledger is not None and self.ledger.is_processed(event.event_id):
            logger.info("Duplicate webhook skipped", extra=event.log_context())
            raise DuplicateEventError(event.event_id)

        return event

    def parse_event(self, data: Any) -> NormalizedEvent:
        """
        Map a decoded provider event onto NormalizedEvent.

        Raises:
            EventParseError: Missing id/type/created or malformed fields
        """
        if not isinstance(data, dict):
            raise EventParseError("Event payload must be a JSON object")

        event_id = data.get("id")
        raw_type = data.get("type")
        if not event_id or not isinstance(event_id, str):
            raise EventParseError("Event id missing")
        if not raw_type or not isinstance(raw_type, str):
            raise EventParseError("Event type missing")
        occurred_at = _from_unix(data.get("created"))
        if occurred_at is None:
            raise EventParseError("Event timestamp missing")

        sequence = data.get("sequence")
        if sequence is not None and (isinstance(sequence, bool) or not isinstance(sequence, int)):
            raise EventParseError(f"Invalid sequence: {sequence!r}")

        event_type = PROVIDER_EVENT_TYPES.get(raw_type, EventType.NOOP)
        if event_type == EventType.NOOP:
            logger.debug("Unhandled provider event type", extra={
                "event_id": event_id,
                "provider_type": raw_type,
            })
            return NormalizedEvent(
                event_id=event_id,
                type=EventType.NOOP,
                occurred_at=occurred_at,
                sequence=sequence,
                raw_type=raw_type,
            )

        obj = (data.get("data") or {}).get("object")
        if not isinstance(obj, dict):
            raise EventParseError("Event data.object missing")

        if event_type == EventType.CHECKOUT_COMPLETED:
            fields = self._checkout_fields(obj)
        elif event_type in (EventType.SUBSCRIPTION_UPDATED, EventType.SUBSCRIPTION_DELETED):
            fields = self._subscription_fields(obj, event_type)
        else:
            fields = self._invoice_fields(obj)

        if not fields.get("provider_customer_id"):
            raise EventParseError(f"Event {event_id} has no customer reference")

        return NormalizedEvent(
            event_id=event_id,
            type=event_type,
            occurred_at=occurred_at,
            sequence=sequence,
            raw_type=raw_type,
            **fields
        )

    def _resolve_plan_id(self, price_id: Optional[str], metadata: Dict[str, Any]) -> Optional[str]:
        """
        Price lookup first, then metadata, then the raw price reference.

        An unknown raw reference is passed through so the reconciler can flag
        the plan mismatch instead of silently dropping it.
        """
        plan = self.plans.plan_for_price(price_id)
        if plan is not None:
            return plan.id
        if metadata.get("plan_id"):
            return str(metadata["plan_id"])
        return price_id

    def _checkout_fields(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        metadata = obj.get("metadata") or {}
        price_id = (_first_item(obj, "line_items").get("price") or {}).get("id")
        return {
            "provider_customer_id": _id_of(obj.get("customer")),
            "provider_subscription_id": _id_of(obj.get("subscription")),
            "plan_id": self._resolve_plan_id(price_id, metadata),
        }

    def _subscription_fields(self, obj: Dict[str, Any], event_type: EventType) -> Dict[str, Any]:
        metadata = obj.get("metadata") or {}
        item = _first_item(obj, "items")
        price_id = (item.get("price") or {}).get("id")

        raw_status = obj.get("status")
        status = PROVIDER_STATUSES.get(raw_status) if raw_status else None
        if raw_status and status is None:
            raise EventParseError(f"Unknown subscription status: {raw_status!r}")
        if event_type == EventType.SUBSCRIPTION_DELETED:
            status = SubscriptionStatus.CANCELED

        period_end = obj.get("current_period_end", item.get("current_period_end"))
        return {
            "provider_customer_id": _id_of(obj.get("customer")),
            "provider_subscription_id": obj.get("id"),
            "plan_id": self._resolve_plan_id(price_id, metadata),
            "status": status,
            "period_end": _from_unix(period_end),
            "cancel_at_period_end": bool(obj.get("cancel_at_period_end", False)),
        }

    def _invoice_fields(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        line = _first_item(obj, "lines")
        subscription_id = _id_of(obj.get("subscription"))
        if subscription_id is None:
            details = ((obj.get("parent") or {}).get("subscription_details") or {})
            subscription_id = _id_of(details.get("subscription"))
        return {
            "provider_customer_id": _id_of(obj.get("customer")),
            "provider_subscription_id": subscription_id,
            "period_end": _from_unix((line.get("period") or {}).get("end")),
        }
