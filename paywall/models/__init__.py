"""
Database models for tiers, user subscriptions and entitlement audit data.

Tiers are global reference data; every other model is scoped by user_id.
"""

from paywall.models.base import TimestampMixin, ensure_utc, utcnow
from paywall.models.tier import SubscriptionTier, UNLIMITED_SENTINEL
from paywall.models.user_subscription import (
    UserSubscription,
    SubscriptionStatus,
    BillingCycle,
    PaymentProvider,
    EntitlementSource,
    ENTITLED_STATUSES,
)
from paywall.models.provider_transaction import ProviderTransaction, NotificationType
from paywall.models.profile import Profile
from paywall.models.tracked_resource import TrackedResource

__all__ = [
    "TimestampMixin",
    "ensure_utc",
    "utcnow",
    "SubscriptionTier",
    "UNLIMITED_SENTINEL",
    "UserSubscription",
    "SubscriptionStatus",
    "BillingCycle",
    "PaymentProvider",
    "EntitlementSource",
    "ENTITLED_STATUSES",
    "ProviderTransaction",
    "NotificationType",
    "Profile",
    "TrackedResource",
]
