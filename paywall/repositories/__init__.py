"""Entitlement data gateway and its adapters."""

from paywall.repositories.entitlement_repository import (
    EntitlementRepository,
    RepositoryError,
    SqlEntitlementRepository,
    SubscriptionGrant,
)
from paywall.repositories.remote_repository import RemoteEntitlementRepository

__all__ = [
    "EntitlementRepository",
    "RepositoryError",
    "SqlEntitlementRepository",
    "SubscriptionGrant",
    "RemoteEntitlementRepository",
]
