"""
BillingCustomer model: maps a local user to a billing provider customer.

This is the only anchor used to resolve inbound provider events to a user.
Events for customers without a row here are discarded.
"""

from sqlalchemy import Column, String

from paygate.models.base import Base, TimestampMixin, generate_uuid


class BillingCustomer(Base, TimestampMixin):
    """One provider customer per user."""

    __tablename__ = "billing_customers"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    user_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Local user identity"
    )

    provider_customer_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Billing provider customer ID"
    )

    email = Column(
        String(320),
        nullable=True,
        comment="Email sent to the provider when the customer was created"
    )

    def __repr__(self) -> str:
        return f"<BillingCustomer(user_id={self.user_id}, customer={self.provider_customer_id})>"
