"""
Provider transaction audit trail (Apple in-app purchases).

Append-only. The most recent row per user is the authoritative expiry source
when the subscription is canceled and the provider is apple.
"""

from sqlalchemy import Column, DateTime, Index, String

from paywall.models.base import Base, TimestampMixin, generate_uuid


class NotificationType:
    """Notification types written to the audit trail."""
    PURCHASE = "PURCHASE"            # written by the client-side fallback
    SUBSCRIBED = "SUBSCRIBED"
    DID_RENEW = "DID_RENEW"
    DID_FAIL_TO_RENEW = "DID_FAIL_TO_RENEW"
    EXPIRED = "EXPIRED"
    GRACE_PERIOD_EXPIRED = "GRACE_PERIOD_EXPIRED"
    REFUND = "REFUND"
    REVOKED = "REVOKED"
    VALIDATED = "VALIDATED"          # written by the receipt validator

    # Sent by the server with authoritative information from the platform
    SERVER_CONFIRMED = frozenset({SUBSCRIBED, DID_RENEW, VALIDATED})
    REVOKING = frozenset({EXPIRED, GRACE_PERIOD_EXPIRED, REFUND, REVOKED})


class ProviderTransaction(Base, TimestampMixin):
    """Single purchase/renewal/notification event from the platform."""

    __tablename__ = "apple_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    transaction_id = Column(String(100), nullable=False)
    original_transaction_id = Column(String(100), nullable=True, index=True)
    product_id = Column(String(200), nullable=True)
    purchase_date = Column(DateTime(timezone=True), nullable=True)
    expiration_date = Column(DateTime(timezone=True), nullable=True)
    notification_type = Column(String(50), nullable=True)

    __table_args__ = (
        Index("ix_apple_transactions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ProviderTransaction(user_id={self.user_id}, "
            f"transaction_id={self.transaction_id}, type={self.notification_type})>"
        )
