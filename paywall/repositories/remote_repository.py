"""
PostgREST implementation of the entitlement gateway.

Reads tables and calls stored procedures through SupabaseClient. Row level
security scopes every query to the token's user; the correction job uses a
service role client.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from paywall.config.billing_config import BillingConfig, get_billing_config
from paywall.entitlements.models import (
    AuthorizationResult,
    ProviderTransactionRecord,
    ResourceKind,
    SubscriptionRecord,
    Tier,
)
from paywall.integrations.supabase.client import SupabaseAPIError, SupabaseClient, rows
from paywall.models import EntitlementSource, NotificationType, SubscriptionStatus
from paywall.repositories.entitlement_repository import (
    EntitlementRepository,
    RepositoryError,
    SubscriptionGrant,
)

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_TABLE = "user_subscriptions"
TIERS_TABLE = "subscription_tiers"
TRANSACTIONS_TABLE = "apple_transactions"
PROFILES_TABLE = "profiles"
RESOURCES_TABLE = "tracked_resources"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class RemoteEntitlementRepository(EntitlementRepository):
    """Entitlement gateway backed by Supabase tables and procedures."""

    def __init__(self, client: SupabaseClient, config: Optional[BillingConfig] = None):
        self.client = client
        self.config = config or get_billing_config()

    async def _call(self, operation: str, coro) -> Any:
        try:
            return await coro
        except SupabaseAPIError as e:
            raise RepositoryError(f"{operation} failed: {e}") from e

    async def can_user_add(self, resource: ResourceKind, user_id: str) -> AuthorizationResult:
        payload = await self._call(
            resource.rpc_name,
            self.client.rpc(resource.rpc_name, {"p_user_id": user_id}),
        )
        try:
            return AuthorizationResult.from_payload(payload)
        except ValueError as e:
            raise RepositoryError(str(e)) from e

    async def count_resources(self, resource: ResourceKind, user_id: str) -> int:
        payload = await self._call("count_resources", self.client.select(
            RESOURCES_TABLE,
            {
                "user_id": f"eq.{user_id}",
                "kind": f"eq.{resource.value}",
                "deleted_at": "is.null",
            },
            columns="id",
        ))
        return len(rows(payload))

    async def get_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        try:
            payload = await self.client.select(
                SUBSCRIPTIONS_TABLE,
                {"user_id": f"eq.{user_id}"},
                columns=f"*, {TIERS_TABLE}(*)",
                single=True,
            )
        except SupabaseAPIError as e:
            if e.is_not_found:
                return None
            raise RepositoryError(f"get_subscription failed: {e}") from e
        if not payload:
            return None
        return SubscriptionRecord.from_mapping(payload)

    async def get_latest_provider_transaction(
        self, user_id: str
    ) -> Optional[ProviderTransactionRecord]:
        payload = await self._call("get_latest_provider_transaction", self.client.select(
            TRANSACTIONS_TABLE,
            {"user_id": f"eq.{user_id}"},
            order="created_at.desc",
            limit=1,
        ))
        found = rows(payload)
        return ProviderTransactionRecord.from_mapping(found[0]) if found else None

    async def get_tier(self, tier_id: str) -> Optional[Tier]:
        payload = await self._call("get_tier", self.client.select(
            TIERS_TABLE, {"tier_id": f"eq.{tier_id}"}, limit=1,
        ))
        found = rows(payload)
        return Tier.from_mapping(found[0]) if found else None

    async def list_active_tiers(self) -> List[Tier]:
        payload = await self._call("list_active_tiers", self.client.select(
            TIERS_TABLE, {"is_active": "eq.true"}, order="display_order.asc",
        ))
        return [Tier.from_mapping(row) for row in rows(payload)]

    async def downgrade_to_free(self, user_id: str) -> bool:
        await self._call(
            "downgrade_to_free",
            self.client.rpc("downgrade_to_free", {"p_user_id": user_id}),
        )
        return True

    async def upsert_fallback_subscription(self, grant: SubscriptionGrant) -> None:
        row: Dict[str, Any] = {
            "user_id": grant.user_id,
            "tier_id": grant.tier_id,
            "status": SubscriptionStatus.ACTIVE.value,
            "billing_cycle": grant.billing_cycle,
            "current_period_start": _iso(grant.period_start),
            "current_period_end": _iso(grant.period_end),
            "cancel_at_period_end": False,
            "canceled_at": None,
            "payment_provider": grant.payment_provider,
            "entitlement_source": EntitlementSource.LOCAL_FALLBACK.value,
            "fallback_granted_at": _iso(grant.period_start),
        }
        await self._call(
            "upsert_fallback_subscription",
            self.client.upsert(SUBSCRIPTIONS_TABLE, row, on_conflict="user_id"),
        )

    async def update_profile_provider(
        self,
        user_id: str,
        payment_provider: str,
        original_transaction_id: Optional[str],
    ) -> None:
        await self._call("update_profile_provider", self.client.update(
            PROFILES_TABLE,
            {
                "payment_provider": payment_provider,
                "apple_original_transaction_id": original_transaction_id,
            },
            {"id": f"eq.{user_id}"},
        ))

    async def record_provider_transaction(self, record: ProviderTransactionRecord) -> None:
        await self._call("record_apple_transaction", self.client.rpc(
            "record_apple_transaction",
            {
                "p_user_id": record.user_id,
                "p_transaction_id": record.transaction_id,
                "p_original_transaction_id": record.original_transaction_id,
                "p_product_id": record.product_id,
                "p_purchase_date": _iso(record.purchase_date),
                "p_expiration_date": _iso(record.expiration_date),
                "p_notification_type": record.notification_type,
            },
        ))

    async def list_fallback_grants(
        self, granted_before: datetime, limit: int
    ) -> List[SubscriptionRecord]:
        payload = await self._call("list_fallback_grants", self.client.select(
            SUBSCRIPTIONS_TABLE,
            {
                "entitlement_source": f"eq.{EntitlementSource.LOCAL_FALLBACK.value}",
                "fallback_granted_at": f"lt.{granted_before.isoformat()}",
            },
            order="fallback_granted_at.asc",
            limit=limit,
        ))
        return [SubscriptionRecord.from_mapping(row) for row in rows(payload)]

    async def has_server_confirmation(self, user_id: str, since: datetime) -> bool:
        types = ",".join(sorted(NotificationType.SERVER_CONFIRMED))
        payload = await self._call("has_server_confirmation", self.client.select(
            TRANSACTIONS_TABLE,
            {
                "user_id": f"eq.{user_id}",
                "created_at": f"gt.{since.isoformat()}",
                "notification_type": f"in.({types})",
            },
            columns="id",
            limit=1,
        ))
        return bool(rows(payload))

    async def revoke_fallback_grant(self, user_id: str, now: datetime) -> bool:
        payload = await self._call("revoke_fallback_grant", self.client.update(
            SUBSCRIPTIONS_TABLE,
            {
                "status": SubscriptionStatus.CANCELED.value,
                "cancel_at_period_end": False,
                "current_period_end": now.isoformat(),
                "canceled_at": now.isoformat(),
                "entitlement_source": EntitlementSource.SERVER.value,
                "fallback_granted_at": None,
            },
            {
                "user_id": f"eq.{user_id}",
                "entitlement_source": f"eq.{EntitlementSource.LOCAL_FALLBACK.value}",
            },
        ))
        if not rows(payload):
            return False

        # No fallback PURCHASE row may outlive the revocation
        await self._call("expire_fallback_transactions", self.client.update(
            TRANSACTIONS_TABLE,
            {"expiration_date": now.isoformat()},
            {
                "user_id": f"eq.{user_id}",
                "notification_type": f"eq.{NotificationType.PURCHASE}",
                "expiration_date": f"gt.{now.isoformat()}",
            },
        ))
        latest = await self.get_latest_provider_transaction(user_id)
        await self.record_provider_transaction(ProviderTransactionRecord(
            user_id=user_id,
            transaction_id=latest.transaction_id if latest is not None else "",
            original_transaction_id=latest.original_transaction_id if latest is not None else None,
            product_id=latest.product_id if latest is not None else None,
            expiration_date=now,
            notification_type=NotificationType.REVOKED,
            created_at=now,
        ))
        return True

    async def mark_server_verified(self, user_id: str) -> bool:
        payload = await self._call("mark_server_verified", self.client.update(
            SUBSCRIPTIONS_TABLE,
            {
                "entitlement_source": EntitlementSource.SERVER.value,
                "fallback_granted_at": None,
            },
            {
                "user_id": f"eq.{user_id}",
                "entitlement_source": f"eq.{EntitlementSource.LOCAL_FALLBACK.value}",
            },
        ))
        return bool(rows(payload))
