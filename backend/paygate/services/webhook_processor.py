"""
Billing webhook processor with idempotency support.

Processes provider webhooks with:
- Signature verification and payload normalization
- Event deduplication using the provider event ID
- Out-of-order event handling (delegated to the reconciler)
- Audit logging of every applied transition

Only signature and parse failures are reported back to the provider as
errors. Duplicate, stale, unknown-customer and ignored events are
acknowledged so the provider stops retrying.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from paygate.billing.errors import DuplicateEventError, StaleEventError, UnknownUserError
from paygate.billing.normalizer import EventNormalizer
from paygate.billing.reconciler import StateReconciler
from paygate.config.plans import PlanRegistry
from paygate.config.settings import BillingSettings
from paygate.models.processed_event import EventOutcome
from paygate.repositories.event_ledger import EventLedger

logger = logging.getLogger(__name__)

OUTCOME_DUPLICATE = "duplicate"


@dataclass
class WebhookProcessingResult:
    """Result of webhook processing."""
    processed: bool
    message: str
    outcome: str
    event_id: Optional[str] = None
    user_id: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    skipped_reason: Optional[str] = None


class BillingWebhookProcessor:
    """
    Runs one webhook delivery through normalizer and reconciler.

    Raises (caller maps to non-2xx):
        AuthenticationError: bad signature
        EventParseError: unrecoverable payload
    Any other exception means the transaction was rolled back and the
    provider should retry.
    """

    def __init__(
        self,
        db_session: Session,
        plan_registry: PlanRegistry,
        settings: BillingSettings,
        reconciler: Optional[StateReconciler] = None,
    ):
        """
        Initialize webhook processor.

        Args:
            db_session: Database session
            plan_registry: Plan catalog used to resolve prices to plans
            settings: Webhook secret, tolerance and tie-break policy
            reconciler: Optional reconciler override
        """
        self.db = db_session
        self.normalizer = EventNormalizer(
            plan_registry,
            settings.webhook_secret,
            ledger=EventLedger(db_session),
            tolerance_seconds=settings.webhook_tolerance_seconds,
        )
        self.reconciler = reconciler or StateReconciler(
            db_session, plan_registry, tie_break=settings.tie_break_policy
        )

    async def process(
        self,
        payload: bytes,
        signature_header: Optional[str],
        now: Optional[float] = None,
    ) -> WebhookProcessingResult:
        """
        Verify, normalize and reconcile one delivery.

        Args:
            payload: Raw request body
            signature_header: Provider signature header
            now: Current unix time override for signature tolerance

        Returns:
            WebhookProcessingResult describing how the event was handled
        """
        try:
            event = self.normalizer.normalize(payload, signature_header, now=now)
        except DuplicateEventError as e:
            return WebhookProcessingResult(
                processed=False,
                message="Duplicate webhook - already processed",
                outcome=OUTCOME_DUPLICATE,
                event_id=e.event_id,
                skipped_reason=OUTCOME_DUPLICATE,
            )

        try:
            result = await self.reconciler.apply(event)
        except DuplicateEventError:
            return WebhookProcessingResult(
                processed=False,
                message="Duplicate webhook - already processed",
                outcome=OUTCOME_DUPLICATE,
                event_id=event.event_id,
                skipped_reason=OUTCOME_DUPLICATE,
            )
        except StaleEventError as e:
            return WebhookProcessingResult(
                processed=False,
                message="Stale event - superseded by a newer event",
                outcome=EventOutcome.STALE,
                event_id=event.event_id,
                skipped_reason=e.reason,
            )
        except UnknownUserError:
            logger.warning("Webhook acknowledged for unknown customer", extra={
                **event.log_context(),
                "alert": True,
            })
            return WebhookProcessingResult(
                processed=False,
                message="No local user for provider customer",
                outcome=EventOutcome.UNKNOWN_USER,
                event_id=event.event_id,
                skipped_reason=EventOutcome.UNKNOWN_USER,
            )
        except Exception as e:
            logger.error("Error reconciling webhook", extra={
                **event.log_context(),
                "error": str(e),
            })
            raise

        return WebhookProcessingResult(
            processed=result.applied,
            message="Webhook processed" if result.applied else "Webhook acknowledged, no change",
            outcome=result.outcome,
            event_id=event.event_id,
            user_id=result.user_id,
            previous_status=result.previous_status.value if result.previous_status else None,
            new_status=result.new_status.value if result.new_status else None,
            skipped_reason=None if result.applied else result.outcome,
        )
