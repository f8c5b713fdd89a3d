"""
Tracked resources counted against the tier limit.

Both resource kinds (tracked subscriptions and recurring items) share the
table; soft-deleted rows do not count.
"""

from sqlalchemy import Column, DateTime, Index, String

from paywall.models.base import Base, TimestampMixin, generate_uuid


class TrackedResource(Base, TimestampMixin):
    """A user-created resource subject to the tier limit."""

    __tablename__ = "tracked_resources"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    kind = Column(String(50), nullable=False)
    name = Column(String(255), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_tracked_resources_user_kind", "user_id", "kind"),
    )

    def __repr__(self) -> str:
        return f"<TrackedResource(user_id={self.user_id}, kind={self.kind})>"
