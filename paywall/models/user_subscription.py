"""
UserSubscription model.

CRITICAL: exactly one row per user. The row is created on the first successful
payment event and mutated by webhooks, in-app purchase reconciliation,
cancel/pause/resume and downgrade. It is never deleted except on full account
deletion.
"""

from enum import Enum

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, String, UniqueConstraint
)
from sqlalchemy.orm import relationship

from paywall.models.base import Base, TimestampMixin, generate_uuid


class SubscriptionStatus(str, Enum):
    """Subscription status values shared by both payment rails."""
    ACTIVE = "active"
    TRIALING = "trialing"
    INCOMPLETE = "incomplete"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELED = "canceled"


# Statuses that keep premium access without consulting the payment provider
ENTITLED_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.INCOMPLETE.value,
    SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.PAUSED.value,
})


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class PaymentProvider(str, Enum):
    STRIPE = "stripe"
    APPLE = "apple"
    OTHER = "other"


class EntitlementSource(str, Enum):
    """Who wrote the current entitlement."""
    SERVER = "server"                  # webhook or validated receipt
    LOCAL_FALLBACK = "local_fallback"  # granted before validation succeeded


class UserSubscription(Base, TimestampMixin):
    """
    Subscription record for a single user.

    Status is driven by two asynchronous rails (card processor webhooks and
    platform in-app purchases); entitlement_source marks grants written by
    the local fallback so the correction job can find them.
    """

    __tablename__ = "user_subscriptions"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    user_id = Column(
        String(36),
        nullable=False,
        unique=True,
        index=True,
        comment="One subscription row per user"
    )
    tier_id = Column(
        String(50),
        ForeignKey("subscription_tiers.tier_id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    billing_cycle = Column(String(20), nullable=True)
    status = Column(
        String(20),
        nullable=False,
        default=SubscriptionStatus.ACTIVE.value,
        index=True
    )

    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    paused_at = Column(DateTime(timezone=True), nullable=True)
    resume_at = Column(DateTime(timezone=True), nullable=True)

    payment_provider = Column(
        String(20),
        nullable=True,
        comment="stripe, apple or other"
    )
    stripe_subscription_id = Column(String(100), nullable=True)

    entitlement_source = Column(
        String(20),
        nullable=False,
        default=EntitlementSource.SERVER.value
    )
    fallback_granted_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set while the row is an unconfirmed local-fallback grant"
    )

    tier = relationship("SubscriptionTier", back_populates="subscriptions")

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_user_subscriptions_user"),
        Index("ix_user_subscriptions_fallback", "entitlement_source", "fallback_granted_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserSubscription(user_id={self.user_id}, tier_id={self.tier_id}, "
            f"status={self.status})>"
        )

    @property
    def is_fallback_grant(self) -> bool:
        return self.entitlement_source == EntitlementSource.LOCAL_FALLBACK.value
