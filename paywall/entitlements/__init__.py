"""
Entitlement resolution for the paywall.

This package provides:
- TTLCache / CacheKeys: process-local cache with per-user group invalidation
- LimitGate (entitlements.limits): cached "may add one more" check per resource kind
- EntitlementResolver (entitlements.resolver): tier and premium status
- Error taxonomy shared by all paywall components

Import LimitGate and EntitlementResolver from their modules; they depend on
the repository and service layers.
"""

from paywall.entitlements.cache import (
    CacheKeys,
    CacheTTL,
    TTLCache,
    get_entitlement_cache,
)
from paywall.entitlements.errors import (
    AlreadyPremiumError,
    AuthenticationRequiredError,
    AuthorizationUnavailableError,
    IAPError,
    IAPErrorCode,
    LimitExceededError,
    PaywallError,
    TierNotFoundError,
)
from paywall.entitlements.models import (
    AppleExpiry,
    LimitCheck,
    LimitStatus,
    ResourceKind,
    StripeExpiry,
    Tier,
    TierSnapshot,
    build_provider_expiry,
    resolve_premium,
)

__all__ = [
    "CacheKeys",
    "CacheTTL",
    "TTLCache",
    "get_entitlement_cache",
    "AlreadyPremiumError",
    "AuthenticationRequiredError",
    "AuthorizationUnavailableError",
    "IAPError",
    "IAPErrorCode",
    "LimitExceededError",
    "PaywallError",
    "TierNotFoundError",
    "AppleExpiry",
    "LimitCheck",
    "LimitStatus",
    "ResourceKind",
    "StripeExpiry",
    "Tier",
    "TierSnapshot",
    "build_provider_expiry",
    "resolve_premium",
]
