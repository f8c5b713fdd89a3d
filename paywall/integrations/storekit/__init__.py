"""
Platform billing SDK surface (StoreKit and compatible bindings).
"""

from paywall.integrations.storekit.models import (
    Product,
    Purchase,
    PurchaseErrorEvent,
    normalize_product,
)
from paywall.integrations.storekit.platform import BillingPlatform, ListenerSubscription

__all__ = [
    "Product",
    "Purchase",
    "PurchaseErrorEvent",
    "normalize_product",
    "BillingPlatform",
    "ListenerSubscription",
]
