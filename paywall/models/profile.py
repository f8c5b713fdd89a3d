"""
Profile model (entitlement-relevant columns only).
"""

from sqlalchemy import Column, String

from paywall.models.base import Base, TimestampMixin


class Profile(Base, TimestampMixin):
    """User profile; id equals the auth user id."""

    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True)
    email = Column(String(255), nullable=True)
    payment_provider = Column(String(20), nullable=True)
    apple_original_transaction_id = Column(String(100), nullable=True)

    def __repr__(self) -> str:
        return f"<Profile(id={self.id}, payment_provider={self.payment_provider})>"
