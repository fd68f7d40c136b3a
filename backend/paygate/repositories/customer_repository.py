"""
Billing customer repository: user <-> provider customer mapping.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from paygate.models.billing_customer import BillingCustomer

logger = logging.getLogger(__name__)


class BillingCustomerRepository:
    """Repository for provider customer mappings."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_by_user(self, user_id: str) -> Optional[BillingCustomer]:
        return self.db.query(BillingCustomer).filter(
            BillingCustomer.user_id == user_id
        ).first()

    def get_by_provider_customer_id(self, provider_customer_id: str) -> Optional[BillingCustomer]:
        return self.db.query(BillingCustomer).filter(
            BillingCustomer.provider_customer_id == provider_customer_id
        ).first()

    def link(
        self,
        user_id: str,
        provider_customer_id: str,
        email: Optional[str] = None
    ) -> BillingCustomer:
        """
        Persist the mapping for a user.

        An existing mapping for the user is repointed to the new customer.
        """
        customer = self.get_by_user(user_id)
        if customer is None:
            customer = BillingCustomer(
                user_id=user_id,
                provider_customer_id=provider_customer_id,
                email=email,
            )
            self.db.add(customer)
        else:
            if customer.provider_customer_id != provider_customer_id:
                logger.warning("Provider customer replaced for user", extra={
                    "user_id": user_id,
                    "old_customer_id": customer.provider_customer_id,
                    "new_customer_id": provider_customer_id,
                })
            customer.provider_customer_id = provider_customer_id
            if email:
                customer.email = email

        self.db.flush()
        return customer
