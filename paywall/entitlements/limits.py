"""
Limit enforcement gate.

One LimitGate per resource kind answers "may the current user create one
more?" and wraps the create action so it only runs when the answer is yes.

Policy:
- Positive and negative outcomes are cached at MEDIUM TTL
- An unlimited tier (limit -1 / NULL) always allows
- When the authorization channel fails the gate FAILS OPEN if
  limits.fail_open is set; the degraded result is never cached
"""

import inspect
import logging
from typing import Any, Callable, Optional

from paywall.auth.session import SessionProvider
from paywall.config.billing_config import BillingConfig, get_billing_config
from paywall.entitlements.cache import CacheKeys, TTLCache
from paywall.entitlements.errors import (
    AuthenticationRequiredError,
    AuthorizationUnavailableError,
    LimitExceededError,
    TierNotFoundError,
)
from paywall.entitlements.models import PREMIUM_TIER_IDS, LimitCheck, LimitStatus, ResourceKind
from paywall.repositories.entitlement_repository import EntitlementRepository

logger = logging.getLogger(__name__)

FAIL_OPEN_REASON = "Unable to check limit, proceeding..."


class LimitGate:
    """
    Cached tier-limit check for one resource kind.

    Usage:
        gate = LimitGate(ResourceKind.SUBSCRIPTION, session, repository, cache)
        created = await gate.enforce(create_subscription, payload)
        await gate.refresh()
    """

    def __init__(
        self,
        resource: ResourceKind,
        session: SessionProvider,
        repository: EntitlementRepository,
        cache: TTLCache,
        config: Optional[BillingConfig] = None,
    ):
        self.resource = resource
        self.session = session
        self.repository = repository
        self.cache = cache
        self.config = config or get_billing_config()

    @property
    def clears_all_on_refresh(self) -> bool:
        return self.resource.value in self.config.limits.full_clear_on_refresh

    def _blocked_reason(self, tier: str, limit: Optional[int]) -> str:
        return (
            f"You've reached your {tier} plan limit of {limit} {self.resource.label}s. "
            f"Delete one or upgrade to add more."
        )

    def _fail_open_result(self, user_id: str, error: Exception) -> LimitCheck:
        logger.warning("Limit check failed, allowing action (fail-open)", extra={
            "user_id": user_id,
            "resource": self.resource.value,
            "error": str(error),
        })
        return LimitCheck(
            can_add=True,
            current_count=0,
            limit=self.config.limits.fail_open_default_limit,
            is_premium=False,
            tier_name=self.config.tiers.free_tier_id,
            reason=FAIL_OPEN_REASON,
            fail_open=True,
        )

    async def check_can_add(self) -> LimitCheck:
        """
        Check whether the current user may add one more resource.

        Returns:
            LimitCheck; blocked results carry a non-empty reason

        Raises:
            AuthenticationRequiredError: If nobody is signed in
            AuthorizationUnavailableError: If the check failed and fail-open is off
        """
        user_id = await self.session.require_user_id()
        key = CacheKeys.limit_check(user_id, self.resource.value)

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            auth = await self.repository.can_user_add(self.resource, user_id)
        except Exception as e:
            if not self.config.limits.fail_open:
                logger.error("Limit check failed", extra={
                    "user_id": user_id,
                    "resource": self.resource.value,
                    "error": str(e),
                })
                raise AuthorizationUnavailableError(
                    f"Unable to check {self.resource.label} limit", resource=self.resource.value
                ) from e
            return self._fail_open_result(user_id, e)

        can_add = auth.allowed or auth.limit_count is None
        result = LimitCheck(
            can_add=can_add,
            current_count=auth.current_count,
            limit=auth.limit_count,
            is_premium=auth.tier.lower() in PREMIUM_TIER_IDS,
            tier_name=auth.tier,
            reason=None if can_add else self._blocked_reason(auth.tier, auth.limit_count),
        )
        self.cache.set(key, result, self.config.cache_ttl.medium)

        if not can_add:
            logger.info("Resource limit reached", extra={
                "user_id": user_id,
                "resource": self.resource.value,
                "current_count": auth.current_count,
                "limit": auth.limit_count,
            })
        return result

    async def enforce(self, action: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Run action only if the user may add one more resource.

        Args:
            action: Sync or async callable performing the create
            *args, **kwargs: Passed through to action

        Returns:
            Whatever action returns

        Raises:
            LimitExceededError: If the user is at their limit
        """
        check = await self.check_can_add()
        if not check.can_add:
            raise LimitExceededError(
                reason=check.reason or self._blocked_reason(check.tier_name, check.limit),
                current_count=check.current_count,
                limit=check.limit,
                is_premium=check.is_premium,
                resource=self.resource.value,
            )

        result = action(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def refresh(self, force_clear: bool = False) -> None:
        """
        Drop the user's cached entitlement state and pre-fetch the limit status.

        Call after any create/delete or tier change. Best-effort: failures
        are logged, never raised.

        Args:
            force_clear: Also clear every cached entry for every user. Always
                on for resource kinds listed in limits.full_clear_on_refresh.
        """
        try:
            user_id = await self.session.get_user_id()
            if not user_id:
                return
            self.cache.invalidate_user(user_id, reason=f"{self.resource.value}_refresh")
            if force_clear or self.clears_all_on_refresh:
                self.cache.clear()
            await self.get_limit_status()
        except Exception as e:
            logger.warning("Limit refresh failed", extra={
                "resource": self.resource.value,
                "error": str(e),
            })

    async def get_limit_status(self) -> LimitStatus:
        """
        Current usage against the tier limit.

        Raises:
            AuthenticationRequiredError: If nobody is signed in
            TierNotFoundError: If the limit could not be determined
        """
        user_id = await self.session.require_user_id()
        key = CacheKeys.limit_status(user_id, self.resource.value)

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            check = await self.check_can_add()
        except AuthenticationRequiredError:
            raise
        except Exception as e:
            raise TierNotFoundError(f"Unable to determine {self.resource.label} limit") from e

        remaining = None
        if check.limit is not None:
            remaining = max(0, check.limit - check.current_count)

        status = LimitStatus(
            current_count=check.current_count,
            max_allowed=check.limit,
            remaining_count=remaining,
            is_premium=check.is_premium,
            can_add_more=check.can_add,
            tier_name=check.tier_name,
        )
        if not check.fail_open:
            self.cache.set(key, status, self.config.cache_ttl.medium)
        return status

    async def get_remaining_slots(self) -> Optional[int]:
        """Slots left before the limit; None means unlimited."""
        status = await self.get_limit_status()
        return status.remaining_count

    async def is_at_limit(self) -> bool:
        status = await self.get_limit_status()
        return not status.can_add_more

    async def can_add_multiple(self, count: int) -> bool:
        """Whether `count` more resources fit under the limit."""
        status = await self.get_limit_status()
        if status.max_allowed is None:
            return True
        return status.current_count + count <= status.max_allowed

    async def get_resource_count(self) -> int:
        """Live resource count, cached briefly; 0 when the count cannot be read."""
        user_id = await self.session.require_user_id()
        key = CacheKeys.resource_count(user_id, self.resource.value)

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            count = await self.repository.count_resources(self.resource, user_id)
        except Exception as e:
            logger.warning("Resource count failed", extra={
                "user_id": user_id,
                "resource": self.resource.value,
                "error": str(e),
            })
            return 0

        self.cache.set(key, count, self.config.cache_ttl.short)
        return count
