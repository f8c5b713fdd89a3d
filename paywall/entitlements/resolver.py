"""
Entitlement resolver - authoritative tier and premium status for the current user.

is_premium_user() is the single source of truth for premium access:
1. tier is not premium => False
2. status in {active, trialing, incomplete, past_due, paused} => True
3. status canceled => the payment provider's paid-through date decides
   - apple: expiration of the most recent provider transaction
   - stripe/other: current_period_end while cancel_at_period_end
   - no source => False

CRITICAL: Entitlement writes happen elsewhere (webhooks, purchase
reconciliation). After any of them, call refresh_tier_info() so callers stop
seeing the cached state.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from paywall.auth.session import SessionProvider
from paywall.config.billing_config import BillingConfig, get_billing_config
from paywall.entitlements.cache import CacheKeys, TTLCache
from paywall.entitlements.errors import AlreadyPremiumError, TierNotFoundError
from paywall.entitlements.limits import LimitGate
from paywall.entitlements.models import Tier, TierSnapshot, resolve_premium
from paywall.models import (
    BillingCycle,
    ENTITLED_STATUSES,
    PaymentProvider,
    SubscriptionStatus,
)
from paywall.repositories.entitlement_repository import EntitlementRepository
from paywall.services.payment_service import PaymentService

logger = logging.getLogger(__name__)


class EntitlementResolver:
    """
    Resolves tier and premium status, and starts tier changes.

    Usage:
        resolver = EntitlementResolver(session, repository, cache, payment_service,
                                       limit_gates=[subscription_gate, recurring_gate])
        if await resolver.is_premium_user():
            ...
        await resolver.refresh_tier_info(expect_premium=True)
    """

    def __init__(
        self,
        session: SessionProvider,
        repository: EntitlementRepository,
        cache: TTLCache,
        payment_service: PaymentService,
        config: Optional[BillingConfig] = None,
        limit_gates: Sequence[LimitGate] = (),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.session = session
        self.repository = repository
        self.cache = cache
        self.payment_service = payment_service
        self.config = config or get_billing_config()
        self.limit_gates = list(limit_gates)
        self._sleep = sleep

    def _config_free_tier(self) -> Tier:
        default = self.config.tiers.default_free
        return Tier(
            tier_id=self.config.tiers.free_tier_id,
            name=default.name,
            max_resources=default.max_resources,
            description=default.description,
            monthly_price=default.monthly_price,
            annual_price=default.annual_price,
            features=list(default.features),
        )

    async def _free_tier(self) -> Tier:
        try:
            tier = await self.repository.get_tier(self.config.tiers.free_tier_id)
        except Exception as e:
            logger.warning("Free tier lookup failed, using configured default", extra={
                "error": str(e)
            })
            return self._config_free_tier()
        return tier or self._config_free_tier()

    async def get_current_tier(self) -> Tier:
        """
        Tier of the current user's subscription.

        A user without a subscription row is on the free tier.

        Raises:
            AuthenticationRequiredError: If nobody is signed in
            TierNotFoundError: If the subscription or its tier cannot be read
        """
        user_id = await self.session.require_user_id()
        key = CacheKeys.tier(user_id)

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            subscription = await self.repository.get_subscription(user_id)
        except Exception as e:
            logger.error("Failed to get tier", extra={"user_id": user_id, "error": str(e)})
            raise TierNotFoundError("Failed to get tier information") from e

        if subscription is None:
            tier = await self._free_tier()
        elif subscription.tier is not None:
            tier = subscription.tier
        else:
            try:
                tier = await self.repository.get_tier(subscription.tier_id)
            except Exception as e:
                raise TierNotFoundError(
                    "Failed to get tier information", tier_id=subscription.tier_id
                ) from e
            if tier is None:
                raise TierNotFoundError(
                    f"Tier {subscription.tier_id} not found", tier_id=subscription.tier_id
                )

        self.cache.set(key, tier, self.config.cache_ttl.medium)
        return tier

    async def is_premium_user(self) -> bool:
        """
        Whether the current user has premium access right now.

        Lookup failures resolve to False and are not cached.

        Raises:
            AuthenticationRequiredError: If nobody is signed in
        """
        user_id = await self.session.require_user_id()
        key = CacheKeys.is_premium(user_id)

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            subscription = await self.repository.get_subscription(user_id)
            latest = None
            if (
                subscription is not None
                and subscription.status == SubscriptionStatus.CANCELED.value
                and subscription.payment_provider == PaymentProvider.APPLE.value
            ):
                latest = await self.repository.get_latest_provider_transaction(user_id)
            is_premium = resolve_premium(subscription, latest)
        except Exception as e:
            logger.warning("Premium check failed, treating as free", extra={
                "user_id": user_id,
                "error": str(e),
            })
            return False

        self.cache.set(key, is_premium, self.config.cache_ttl.medium)
        return is_premium

    async def upgrade_to_premium(
        self, cycle: Union[BillingCycle, str] = BillingCycle.MONTHLY
    ) -> Dict[str, Any]:
        """
        Start a premium checkout with the card processor.

        Entitlement is not granted here; it flips when the processor's webhook
        lands. Follow with refresh_tier_info(expect_premium=True).

        Raises:
            AlreadyPremiumError: If the user already has premium
            PaymentInitiationError: If the checkout could not be started
        """
        user_id = await self.session.require_user_id()
        if await self.is_premium_user():
            raise AlreadyPremiumError()

        payload = await self.payment_service.initiate_subscription(cycle)
        self.cache.invalidate_user(user_id, reason="upgrade_initiated")
        return payload

    async def downgrade_to_free(self) -> bool:
        """Move the current user to the free tier and refresh every limit gate."""
        user_id = await self.session.require_user_id()
        try:
            result = await self.repository.downgrade_to_free(user_id)
        except Exception as e:
            logger.error("Downgrade failed", extra={"user_id": user_id, "error": str(e)})
            raise

        self.cache.invalidate_user(user_id, reason="downgrade")
        for gate in self.limit_gates:
            await gate.refresh(force_clear=True)

        logger.info("User downgraded to free", extra={"user_id": user_id})
        return result

    async def refresh_tier_info(
        self, expect_premium: Optional[bool] = None
    ) -> Optional[TierSnapshot]:
        """
        Re-read tier and premium status after an upstream write.

        Waits the settle delay, then retries with escalating backoff. When
        expect_premium is given, an observation that disagrees counts as a
        failed attempt.

        Never raises.

        Returns:
            The last observed snapshot, or None if nothing could be read
        """
        refresh = self.config.refresh
        try:
            user_id = await self.session.get_user_id()
        except Exception as e:
            logger.warning("Tier refresh skipped", extra={"error": str(e)})
            return None
        if not user_id:
            return None

        self.cache.invalidate_user(user_id, reason="tier_refresh")
        if refresh.settle_delay_seconds > 0:
            await self._sleep(refresh.settle_delay_seconds)

        snapshot: Optional[TierSnapshot] = None
        for attempt in range(max(1, refresh.max_attempts)):
            if attempt > 0:
                self.cache.invalidate_user(user_id, reason="tier_refresh_retry")
                await self._sleep(refresh.backoff_for(attempt - 1))

            try:
                tier = await self.get_current_tier()
                is_premium = await self.is_premium_user()
            except Exception as e:
                logger.warning("Tier refresh attempt failed", extra={
                    "user_id": user_id,
                    "attempt": attempt + 1,
                    "error": str(e),
                })
                continue

            snapshot = TierSnapshot(tier=tier, is_premium=is_premium)
            if expect_premium is None or is_premium == expect_premium:
                return snapshot

            logger.info("Tier not yet updated upstream", extra={
                "user_id": user_id,
                "attempt": attempt + 1,
                "expected_premium": expect_premium,
            })

        return snapshot

    async def get_available_tiers(self) -> List[Tier]:
        """Active tiers ordered for display."""
        key = CacheKeys.available_tiers()
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            tiers = await self.repository.list_active_tiers()
        except Exception as e:
            logger.error("Failed to list tiers", extra={"error": str(e)})
            raise TierNotFoundError("Failed to get available tiers") from e

        self.cache.set(key, tiers, self.config.cache_ttl.very_long)
        return tiers

    async def get_tier_by_id(self, tier_id: str) -> Optional[Tier]:
        for tier in await self.get_available_tiers():
            if tier.tier_id == tier_id:
                return tier
        return None

    async def get_premium_tier(self) -> Tier:
        tier = await self.get_tier_by_id(self.config.tiers.premium_tier_id)
        if tier is None:
            raise TierNotFoundError(
                "Premium tier not found", tier_id=self.config.tiers.premium_tier_id
            )
        return tier

    async def has_active_payment_subscription(self) -> bool:
        """Whether a payment provider currently bills the user."""
        user_id = await self.session.require_user_id()
        try:
            subscription = await self.repository.get_subscription(user_id)
        except Exception as e:
            logger.warning("Subscription lookup failed", extra={
                "user_id": user_id,
                "error": str(e),
            })
            return False
        if subscription is None or not subscription.payment_provider:
            return False
        return subscription.status in ENTITLED_STATUSES

    async def clear_user_cache(self, user_id: Optional[str] = None) -> None:
        user_id = user_id or await self.session.get_user_id()
        if user_id:
            self.cache.invalidate_user(user_id, reason="manual_clear")
