"""
SubscriptionTier model.

Tiers are GLOBAL reference data (not user-scoped) and read-mostly.
max_resources NULL means unlimited; the authorization RPC reports the same
condition on the wire as -1.
"""

from sqlalchemy import Boolean, Column, Integer, JSON, Numeric, String, Text
from sqlalchemy.orm import relationship

from paywall.models.base import Base, TimestampMixin

UNLIMITED_SENTINEL = -1


class SubscriptionTier(Base, TimestampMixin):
    """Defines a pricing tier and its resource limit."""

    __tablename__ = "subscription_tiers"

    tier_id = Column(
        String(50),
        primary_key=True,
        comment="Stable identifier (free, premium)"
    )
    name = Column(
        String(50),
        nullable=False,
        comment="Tier name (free, premium)"
    )
    description = Column(Text, nullable=True)

    max_resources = Column(
        Integer,
        nullable=True,
        comment="Maximum tracked resources (NULL = unlimited)"
    )
    monthly_price = Column(Numeric(10, 2), nullable=False, default=0)
    annual_price = Column(Numeric(10, 2), nullable=False, default=0)
    features = Column(JSON, nullable=False, default=list)

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    display_order = Column(Integer, nullable=False, default=0)

    subscriptions = relationship(
        "UserSubscription",
        back_populates="tier",
        lazy="dynamic"
    )

    def __repr__(self) -> str:
        return f"<SubscriptionTier(tier_id={self.tier_id}, max_resources={self.max_resources})>"

    @property
    def is_unlimited(self) -> bool:
        return self.max_resources is None or self.max_resources == UNLIMITED_SENTINEL

    @property
    def is_free(self) -> bool:
        return not self.monthly_price and not self.annual_price
