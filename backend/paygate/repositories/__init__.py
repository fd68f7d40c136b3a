"""Data access layer."""

from paygate.repositories.subscription_repository import SubscriptionRepository
from paygate.repositories.customer_repository import BillingCustomerRepository
from paygate.repositories.event_ledger import EventLedger

__all__ = ["SubscriptionRepository", "BillingCustomerRepository", "EventLedger"]
