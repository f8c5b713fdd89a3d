"""
Entitlement data gateway.

EntitlementRepository is the only seam between the entitlement layer and the
subscription database. Two implementations exist:
- SqlEntitlementRepository: SQLAlchemy ORM over the subscription tables
- RemoteEntitlementRepository (remote_repository.py): PostgREST + RPC

All methods are async; the SQL adapter runs its queries on the caller's
session synchronously.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from paywall.config.billing_config import BillingConfig, get_billing_config
from paywall.entitlements.errors import PaywallError
from paywall.entitlements.models import (
    AuthorizationResult,
    ProviderTransactionRecord,
    ResourceKind,
    SubscriptionRecord,
    Tier,
    resolve_premium,
)
from paywall.models import (
    EntitlementSource,
    NotificationType,
    PaymentProvider,
    Profile,
    ProviderTransaction,
    SubscriptionStatus,
    SubscriptionTier,
    TrackedResource,
    UserSubscription,
    ensure_utc,
    utcnow,
)

logger = logging.getLogger(__name__)


class RepositoryError(PaywallError):
    """A read or write against the subscription store failed."""
    pass


@dataclass
class SubscriptionGrant:
    """Entitlement written by the client-side fallback before validation succeeds."""
    user_id: str
    tier_id: str
    billing_cycle: str
    period_start: datetime
    period_end: datetime
    payment_provider: str = PaymentProvider.APPLE.value


class EntitlementRepository(ABC):
    """Read/write access to tiers, subscriptions and the provider audit trail."""

    @abstractmethod
    async def can_user_add(self, resource: ResourceKind, user_id: str) -> AuthorizationResult:
        """Authoritative "may this user add one more <resource>" decision."""

    @abstractmethod
    async def count_resources(self, resource: ResourceKind, user_id: str) -> int:
        """Number of live (not soft-deleted) resources of this kind."""

    @abstractmethod
    async def get_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        """The user's subscription joined with its tier, or None if no row exists."""

    @abstractmethod
    async def get_latest_provider_transaction(
        self, user_id: str
    ) -> Optional[ProviderTransactionRecord]:
        """Most recent provider transaction for the user."""

    @abstractmethod
    async def get_tier(self, tier_id: str) -> Optional[Tier]:
        pass

    @abstractmethod
    async def list_active_tiers(self) -> List[Tier]:
        pass

    @abstractmethod
    async def downgrade_to_free(self, user_id: str) -> bool:
        """Atomically move the user to the free tier."""

    @abstractmethod
    async def upsert_fallback_subscription(self, grant: SubscriptionGrant) -> None:
        """Write an active subscription marked as a local-fallback grant."""

    @abstractmethod
    async def update_profile_provider(
        self,
        user_id: str,
        payment_provider: str,
        original_transaction_id: Optional[str],
    ) -> None:
        pass

    @abstractmethod
    async def record_provider_transaction(self, record: ProviderTransactionRecord) -> None:
        """Append to the provider transaction audit trail."""

    @abstractmethod
    async def list_fallback_grants(
        self, granted_before: datetime, limit: int
    ) -> List[SubscriptionRecord]:
        """Local-fallback grants written before the given time."""

    @abstractmethod
    async def has_server_confirmation(self, user_id: str, since: datetime) -> bool:
        """Whether the server recorded a confirming notification after `since`."""

    @abstractmethod
    async def revoke_fallback_grant(self, user_id: str, now: datetime) -> bool:
        """
        Cancel a still-unconfirmed local-fallback grant effective now.

        Returns:
            True if a fallback grant was revoked
        """

    @abstractmethod
    async def mark_server_verified(self, user_id: str) -> bool:
        """Clear the fallback marker once the server confirmed the purchase."""


def _tier_from_model(tier: SubscriptionTier) -> Tier:
    return Tier(
        tier_id=tier.tier_id,
        name=tier.name,
        max_resources=None if tier.is_unlimited else tier.max_resources,
        description=tier.description,
        monthly_price=float(tier.monthly_price or 0),
        annual_price=float(tier.annual_price or 0),
        features=list(tier.features or []),
        is_active=bool(tier.is_active),
        display_order=tier.display_order or 0,
    )


def _subscription_from_model(row: UserSubscription) -> SubscriptionRecord:
    return SubscriptionRecord(
        user_id=row.user_id,
        tier_id=row.tier_id,
        status=row.status,
        billing_cycle=row.billing_cycle,
        current_period_start=ensure_utc(row.current_period_start),
        current_period_end=ensure_utc(row.current_period_end),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        canceled_at=ensure_utc(row.canceled_at),
        paused_at=ensure_utc(row.paused_at),
        resume_at=ensure_utc(row.resume_at),
        payment_provider=row.payment_provider,
        entitlement_source=row.entitlement_source,
        fallback_granted_at=ensure_utc(row.fallback_granted_at),
        tier=_tier_from_model(row.tier) if row.tier is not None else None,
    )


def _transaction_from_model(row: ProviderTransaction) -> ProviderTransactionRecord:
    return ProviderTransactionRecord(
        user_id=row.user_id,
        transaction_id=row.transaction_id,
        original_transaction_id=row.original_transaction_id,
        product_id=row.product_id,
        purchase_date=ensure_utc(row.purchase_date),
        expiration_date=ensure_utc(row.expiration_date),
        notification_type=row.notification_type,
        created_at=ensure_utc(row.created_at),
    )


class SqlEntitlementRepository(EntitlementRepository):
    """
    SQLAlchemy implementation.

    Mirrors the server-side procedures (authorization, downgrade) in Python
    so the correction job and tests can run directly against the tables.
    """

    def __init__(self, db_session: Session, config: Optional[BillingConfig] = None):
        """
        Initialize repository with database session.

        Args:
            db_session: SQLAlchemy database session
            config: Billing configuration (defaults to the process-wide one)
        """
        self.db = db_session
        self.config = config or get_billing_config()

    def _get_subscription_row(self, user_id: str) -> Optional[UserSubscription]:
        return self.db.query(UserSubscription).options(
            joinedload(UserSubscription.tier)
        ).filter(
            UserSubscription.user_id == user_id
        ).first()

    def _latest_transaction_row(self, user_id: str) -> Optional[ProviderTransaction]:
        return self.db.query(ProviderTransaction).filter(
            ProviderTransaction.user_id == user_id
        ).order_by(ProviderTransaction.created_at.desc()).first()

    def _count(self, resource: ResourceKind, user_id: str) -> int:
        return self.db.query(func.count(TrackedResource.id)).filter(
            TrackedResource.user_id == user_id,
            TrackedResource.kind == resource.value,
            TrackedResource.deleted_at.is_(None),
        ).scalar() or 0

    def _free_tier(self) -> Tier:
        row = self.db.query(SubscriptionTier).filter(
            SubscriptionTier.tier_id == self.config.tiers.free_tier_id
        ).first()
        if row is not None:
            return _tier_from_model(row)
        default = self.config.tiers.default_free
        return Tier(
            tier_id=self.config.tiers.free_tier_id,
            name=default.name,
            max_resources=default.max_resources,
            description=default.description,
            features=list(default.features),
        )

    async def can_user_add(self, resource: ResourceKind, user_id: str) -> AuthorizationResult:
        try:
            row = self._get_subscription_row(user_id)
            subscription = _subscription_from_model(row) if row is not None else None
            latest = None
            if (
                subscription is not None
                and subscription.status == SubscriptionStatus.CANCELED.value
                and subscription.payment_provider == PaymentProvider.APPLE.value
            ):
                txn = self._latest_transaction_row(user_id)
                latest = _transaction_from_model(txn) if txn is not None else None

            if resolve_premium(subscription, latest) and subscription.tier is not None:
                tier = subscription.tier
            else:
                tier = self._free_tier()

            count = self._count(resource, user_id)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Authorization query failed: {e}") from e

        allowed = tier.max_resources is None or count < tier.max_resources
        return AuthorizationResult(
            allowed=allowed,
            current_count=count,
            limit_count=tier.max_resources,
            tier=tier.name,
        )

    async def count_resources(self, resource: ResourceKind, user_id: str) -> int:
        try:
            return self._count(resource, user_id)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Count query failed: {e}") from e

    async def get_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        try:
            row = self._get_subscription_row(user_id)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Subscription query failed: {e}") from e
        return _subscription_from_model(row) if row is not None else None

    async def get_latest_provider_transaction(
        self, user_id: str
    ) -> Optional[ProviderTransactionRecord]:
        try:
            row = self._latest_transaction_row(user_id)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Transaction query failed: {e}") from e
        return _transaction_from_model(row) if row is not None else None

    async def get_tier(self, tier_id: str) -> Optional[Tier]:
        try:
            row = self.db.query(SubscriptionTier).filter(
                SubscriptionTier.tier_id == tier_id
            ).first()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Tier query failed: {e}") from e
        return _tier_from_model(row) if row is not None else None

    async def list_active_tiers(self) -> List[Tier]:
        try:
            rows = self.db.query(SubscriptionTier).filter(
                SubscriptionTier.is_active.is_(True)
            ).order_by(SubscriptionTier.display_order.asc()).all()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Tier query failed: {e}") from e
        return [_tier_from_model(row) for row in rows]

    async def downgrade_to_free(self, user_id: str) -> bool:
        try:
            row = self.db.query(UserSubscription).filter(
                UserSubscription.user_id == user_id
            ).first()
            if row is None:
                return True
            row.tier_id = self.config.tiers.free_tier_id
            row.status = SubscriptionStatus.ACTIVE.value
            row.billing_cycle = None
            row.cancel_at_period_end = False
            row.canceled_at = None
            row.paused_at = None
            row.resume_at = None
            row.entitlement_source = EntitlementSource.SERVER.value
            row.fallback_granted_at = None
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"Downgrade failed: {e}") from e

        logger.info("Downgraded user to free tier", extra={"user_id": user_id})
        return True

    async def upsert_fallback_subscription(self, grant: SubscriptionGrant) -> None:
        try:
            row = self.db.query(UserSubscription).filter(
                UserSubscription.user_id == grant.user_id
            ).first()
            if row is None:
                row = UserSubscription(user_id=grant.user_id)
                self.db.add(row)
            row.tier_id = grant.tier_id
            row.status = SubscriptionStatus.ACTIVE.value
            row.billing_cycle = grant.billing_cycle
            row.current_period_start = grant.period_start
            row.current_period_end = grant.period_end
            row.cancel_at_period_end = False
            row.canceled_at = None
            row.payment_provider = grant.payment_provider
            row.entitlement_source = EntitlementSource.LOCAL_FALLBACK.value
            row.fallback_granted_at = grant.period_start
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"Fallback upsert failed: {e}") from e

    async def update_profile_provider(
        self,
        user_id: str,
        payment_provider: str,
        original_transaction_id: Optional[str],
    ) -> None:
        try:
            profile = self.db.query(Profile).filter(Profile.id == user_id).first()
            if profile is None:
                profile = Profile(id=user_id)
                self.db.add(profile)
            profile.payment_provider = payment_provider
            profile.apple_original_transaction_id = original_transaction_id
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"Profile update failed: {e}") from e

    async def record_provider_transaction(self, record: ProviderTransactionRecord) -> None:
        try:
            self.db.add(ProviderTransaction(
                user_id=record.user_id,
                transaction_id=record.transaction_id,
                original_transaction_id=record.original_transaction_id,
                product_id=record.product_id,
                purchase_date=record.purchase_date,
                expiration_date=record.expiration_date,
                notification_type=record.notification_type,
                created_at=record.created_at or utcnow(),
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"Transaction insert failed: {e}") from e

    async def list_fallback_grants(
        self, granted_before: datetime, limit: int
    ) -> List[SubscriptionRecord]:
        try:
            rows = self.db.query(UserSubscription).options(
                joinedload(UserSubscription.tier)
            ).filter(
                UserSubscription.entitlement_source == EntitlementSource.LOCAL_FALLBACK.value,
                UserSubscription.fallback_granted_at < granted_before,
            ).order_by(UserSubscription.fallback_granted_at.asc()).limit(limit).all()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Fallback grant query failed: {e}") from e
        return [_subscription_from_model(row) for row in rows]

    async def has_server_confirmation(self, user_id: str, since: datetime) -> bool:
        try:
            row = self.db.query(ProviderTransaction.id).filter(
                ProviderTransaction.user_id == user_id,
                ProviderTransaction.created_at > since,
                ProviderTransaction.notification_type.in_(NotificationType.SERVER_CONFIRMED),
            ).first()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Confirmation query failed: {e}") from e
        return row is not None

    async def revoke_fallback_grant(self, user_id: str, now: datetime) -> bool:
        try:
            row = self.db.query(UserSubscription).filter(
                UserSubscription.user_id == user_id,
                UserSubscription.entitlement_source == EntitlementSource.LOCAL_FALLBACK.value,
            ).first()
            if row is None:
                return False
            row.status = SubscriptionStatus.CANCELED.value
            row.cancel_at_period_end = False
            row.current_period_end = now
            row.canceled_at = now
            row.entitlement_source = EntitlementSource.SERVER.value
            row.fallback_granted_at = None

            # No fallback PURCHASE row may outlive the revocation
            self.db.query(ProviderTransaction).filter(
                ProviderTransaction.user_id == user_id,
                ProviderTransaction.notification_type == NotificationType.PURCHASE,
                ProviderTransaction.expiration_date > now,
            ).update({ProviderTransaction.expiration_date: now}, synchronize_session=False)

            latest = self._latest_transaction_row(user_id)
            self.db.add(ProviderTransaction(
                user_id=user_id,
                transaction_id=latest.transaction_id if latest is not None else "",
                original_transaction_id=(
                    latest.original_transaction_id if latest is not None else None
                ),
                product_id=latest.product_id if latest is not None else None,
                expiration_date=now,
                notification_type=NotificationType.REVOKED,
                created_at=now,
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"Revoke failed: {e}") from e
        return True

    async def mark_server_verified(self, user_id: str) -> bool:
        try:
            row = self.db.query(UserSubscription).filter(
                UserSubscription.user_id == user_id,
                UserSubscription.entitlement_source == EntitlementSource.LOCAL_FALLBACK.value,
            ).first()
            if row is None:
                return False
            row.entitlement_source = EntitlementSource.SERVER.value
            row.fallback_granted_at = None
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"Verify failed: {e}") from e
        return True
