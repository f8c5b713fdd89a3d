"""
Purchase reconciliation engine for platform in-app purchases.

Owns the billing platform connection and turns purchase events into
subscription state:

1. Purchase update: resolve the user, extract receipt data, validate it
   remotely; if validation does not succeed, grant entitlement locally
   (local fallback) so a paying user is never kept waiting on the
   validation channel. Then invalidate caches and finish the transaction.
2. Purchase error: cancellations go to the cancellation callback,
   "already owned" triggers a silent restore, everything else is logged.

CRITICAL: Every delivered transaction is finished exactly once, whatever
happens while handling it, or the platform redelivers it forever.

Local-fallback grants are marked in the subscription row; the correction
job (jobs/reconcile_fallback_grants.py) revokes those the server never
confirms.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence

from dateutil.relativedelta import relativedelta

from paywall.auth.session import SessionProvider
from paywall.config.billing_config import BillingConfig, get_billing_config
from paywall.entitlements.cache import CacheKeys, TTLCache
from paywall.entitlements.errors import IAPError, IAPErrorCode
from paywall.entitlements.limits import LimitGate
from paywall.entitlements.models import ProviderTransactionRecord
from paywall.entitlements.resolver import EntitlementResolver
from paywall.integrations.storekit.models import (
    Product,
    Purchase,
    PurchaseErrorEvent,
    normalize_product,
)
from paywall.integrations.storekit.platform import BillingPlatform, ListenerSubscription
from paywall.models import (
    BillingCycle,
    NotificationType,
    PaymentProvider,
    SubscriptionStatus,
    utcnow,
)
from paywall.repositories.entitlement_repository import EntitlementRepository, SubscriptionGrant
from paywall.services.receipt_validator import ReceiptValidator

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class PurchaseResult:
    """
    Synchronous outcome of purchase_subscription().

    A successful request is only pending: the real outcome arrives through
    the purchase listener.
    """
    success: bool
    pending: bool = False
    cancelled: bool = False
    error: Optional[IAPError] = None


@dataclass
class RestoreResult:
    success: bool
    purchases: List[Purchase] = field(default_factory=list)
    error: Optional[IAPError] = None


@dataclass
class SubscriptionStatusInfo:
    """Store-side view of the current subscription (not server validated)."""
    original_transaction_id: str
    transaction_id: str
    product_id: str
    is_active: bool = True
    start_date: Optional[datetime] = None


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day to the target month's length."""
    return value + relativedelta(months=months)


def billing_cycle_for(product_id: str) -> BillingCycle:
    """Billing cycle from the product naming convention (monthly unless yearly)."""
    if "monthly" in product_id:
        return BillingCycle.MONTHLY
    if "yearly" in product_id:
        return BillingCycle.ANNUAL
    return BillingCycle.MONTHLY


class ListenerHandle:
    """
    Ownership of the platform connection and its two listeners.

    Release it (or leave its ``async with`` block) to disconnect.
    """

    def __init__(self, engine: "PurchaseReconciliationEngine"):
        self._engine = engine
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        if self._released:
            return
        await self._engine.disconnect()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()


class PurchaseReconciliationEngine:
    """
    Reconciles platform purchase events with server subscription state.

    Usage:
        engine = PurchaseReconciliationEngine(platform, session, repository,
                                              validator, cache, resolver=resolver,
                                              limit_gates=gates)
        async with await engine.initialize():
            result = await engine.purchase_subscription(product_id)
    """

    def __init__(
        self,
        platform: BillingPlatform,
        session: SessionProvider,
        repository: EntitlementRepository,
        validator: ReceiptValidator,
        cache: TTLCache,
        resolver: Optional[EntitlementResolver] = None,
        limit_gates: Sequence[LimitGate] = (),
        config: Optional[BillingConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.platform = platform
        self.session = session
        self.repository = repository
        self.validator = validator
        self.cache = cache
        self.resolver = resolver
        self.limit_gates = list(limit_gates)
        self.config = config or get_billing_config()
        self._clock = clock

        self._state = ConnectionState.DISCONNECTED
        self._handle: Optional[ListenerHandle] = None
        self._update_subscription: Optional[ListenerSubscription] = None
        self._error_subscription: Optional[ListenerSubscription] = None
        self._cancellation_callback: Optional[Callable[[], Any]] = None
        self._init_lock = asyncio.Lock()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_initialized(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def set_purchase_cancellation_callback(self, callback: Optional[Callable[[], Any]]) -> None:
        """Callback (sync or async) invoked when the user cancels a purchase sheet."""
        self._cancellation_callback = callback

    def _is_configured_product(self, product_id: Optional[str]) -> bool:
        return bool(product_id) and self.config.apple_iap.is_valid_product_id(product_id)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> Optional[ListenerHandle]:
        """
        Open the platform connection and register the listeners once.

        Returns:
            The listener handle, the existing one if already connected, or
            None on platforms without in-app purchases

        Raises:
            IAPError: INIT_FAILED if the connection could not be opened
        """
        if not self.platform.is_supported:
            logger.info("Skipping IAP initialization - platform not supported")
            return None

        async with self._init_lock:
            if self._state == ConnectionState.CONNECTED and self._handle is not None:
                return self._handle

            self._state = ConnectionState.CONNECTING
            try:
                connected = await self.platform.init_connection()
                if connected is False:
                    raise RuntimeError("Billing connection refused")
            except Exception as e:
                self._state = ConnectionState.DISCONNECTED
                logger.error("Failed to initialize IAP", extra={"error": str(e)})
                raise IAPError(
                    IAPErrorCode.INIT_FAILED,
                    "Failed to initialize in-app purchases",
                    debug_message=str(e),
                ) from e

            self._update_subscription = self.platform.add_purchase_updated_listener(
                self._handle_purchase_update
            )
            self._error_subscription = self.platform.add_purchase_error_listener(
                self._handle_purchase_error
            )
            self._state = ConnectionState.CONNECTED
            self._handle = ListenerHandle(self)
            logger.info("IAP initialized")
            return self._handle

    async def disconnect(self) -> None:
        """Remove listeners and close the connection. Idempotent; errors are logged."""
        for attr in ("_update_subscription", "_error_subscription"):
            subscription = getattr(self, attr)
            if subscription is None:
                continue
            try:
                subscription.remove()
            except Exception as e:
                logger.warning("Failed to remove purchase listener", extra={"error": str(e)})
            setattr(self, attr, None)

        if self._state != ConnectionState.DISCONNECTED:
            try:
                await self.platform.end_connection()
            except Exception as e:
                logger.error("Failed to close IAP connection", extra={"error": str(e)})
            logger.info("IAP connection closed")

        self._state = ConnectionState.DISCONNECTED
        if self._handle is not None:
            self._handle._released = True
            self._handle = None

    # ------------------------------------------------------------------
    # Catalogue and purchase
    # ------------------------------------------------------------------

    async def get_products(self) -> List[Product]:
        """Configured products from the store; [] on failure."""
        product_ids = list(self.config.apple_iap.product_ids)
        try:
            raw_products = await self.platform.fetch_products(product_ids)
        except Exception as e:
            logger.error("Failed to fetch products", extra={"error": str(e)})
            return []

        products = []
        for raw in raw_products or []:
            try:
                products.append(normalize_product(raw))
            except ValueError as e:
                logger.warning("Skipping malformed product", extra={"error": str(e)})
        return products

    async def purchase_subscription(self, product_id: str) -> PurchaseResult:
        """
        Request a subscription purchase.

        Returns immediately with pending=True; the purchase listener
        reconciles the outcome. Never raises.
        """
        try:
            if not self.is_initialized:
                await self.initialize()
                if not self.is_initialized:
                    return PurchaseResult(success=False, error=IAPError(
                        IAPErrorCode.NOT_INITIALIZED,
                        "In-app purchases are not available",
                    ))

            if not self._is_configured_product(product_id):
                logger.error("Invalid product id", extra={"product_id": product_id})
                return PurchaseResult(success=False, error=IAPError(
                    IAPErrorCode.INVALID_PRODUCT,
                    f"Invalid product ID: {product_id}",
                ))

            await self.platform.request_purchase(product_id)
            logger.info("Purchase requested", extra={"product_id": product_id})
            return PurchaseResult(success=True, pending=True)

        except Exception as e:
            error = IAPError.from_exception(e)
            if error.is_cancellation:
                logger.info("User cancelled purchase", extra={"product_id": product_id})
                return PurchaseResult(success=False, cancelled=True, error=IAPError(
                    IAPErrorCode.USER_CANCELLED, "Purchase cancelled by user"
                ))
            logger.error("Purchase failed", extra={
                "product_id": product_id,
                "code": error.code.value,
                "error": error.message,
            })
            return PurchaseResult(success=False, error=error)

    # ------------------------------------------------------------------
    # Listener handlers
    # ------------------------------------------------------------------

    async def _finish(self, purchase: Purchase) -> None:
        try:
            await self.platform.finish_transaction(purchase)
        except Exception as e:
            logger.error("Failed to finish transaction", extra={
                "transaction_id": purchase.transaction_id,
                "error": str(e),
            })

    def _is_local_transaction(self, purchase: Purchase) -> bool:
        """Xcode and simulator transactions carry very short ids."""
        if not purchase.transaction_id:
            return False
        limit = self.config.apple_iap.local_transaction_id_max_length
        return len(str(purchase.transaction_id)) <= limit

    async def _extract_receipt(self, purchase: Purchase) -> Optional[str]:
        """
        Receipt data in order of preference: embedded in the transaction,
        per-transaction token, legacy app receipt. Absence is tolerated.
        """
        if purchase.embedded_receipt:
            return purchase.embedded_receipt

        if purchase.transaction_id:
            try:
                token = await self.platform.get_transaction_token(purchase.transaction_id)
                if token:
                    return token
            except Exception as e:
                logger.debug("Transaction token unavailable", extra={
                    "transaction_id": purchase.transaction_id,
                    "error": str(e),
                })

        try:
            return await self.platform.get_receipt() or None
        except Exception as e:
            logger.debug("App receipt unavailable", extra={"error": str(e)})
            return None

    async def _apply_local_fallback(self, purchase: Purchase, user_id: str) -> bool:
        """
        Grant entitlement directly from the purchase.

        Returns:
            False if the existing row is canceled-at-period-end (the webhook
            owns that state), True once the grant is written

        Raises:
            RepositoryError: If the subscription upsert fails
        """
        cycle = billing_cycle_for(purchase.product_id or "")
        now = self._clock()
        period_end = add_months(now, 12 if cycle == BillingCycle.ANNUAL else 1)

        try:
            existing = await self.repository.get_subscription(user_id)
        except Exception as e:
            logger.warning("Existing subscription lookup failed, upserting anyway", extra={
                "user_id": user_id,
                "error": str(e),
            })
            existing = None

        if (
            existing is not None
            and existing.status == SubscriptionStatus.CANCELED.value
            and existing.cancel_at_period_end
        ):
            logger.info("Canceled subscription still in paid period, leaving it to webhook", extra={
                "user_id": user_id,
            })
            return False

        await self.repository.upsert_fallback_subscription(SubscriptionGrant(
            user_id=user_id,
            tier_id=self.config.tiers.premium_tier_id,
            billing_cycle=cycle.value,
            period_start=now,
            period_end=period_end,
            payment_provider=PaymentProvider.APPLE.value,
        ))

        original_transaction_id = purchase.original_transaction_id or purchase.transaction_id or ""
        try:
            await self.repository.update_profile_provider(
                user_id, PaymentProvider.APPLE.value, original_transaction_id
            )
        except Exception as e:
            logger.warning("Failed to update profile", extra={"user_id": user_id, "error": str(e)})

        if purchase.transaction_id and purchase.transaction_id != "0":
            try:
                await self.repository.record_provider_transaction(ProviderTransactionRecord(
                    user_id=user_id,
                    transaction_id=purchase.transaction_id,
                    original_transaction_id=original_transaction_id,
                    product_id=purchase.product_id,
                    purchase_date=now,
                    expiration_date=period_end,
                    notification_type=NotificationType.PURCHASE,
                    created_at=now,
                ))
            except Exception as e:
                logger.warning("Failed to record transaction", extra={
                    "user_id": user_id,
                    "transaction_id": purchase.transaction_id,
                    "error": str(e),
                })

        logger.info("Granted local fallback entitlement", extra={
            "user_id": user_id,
            "product_id": purchase.product_id,
            "billing_cycle": cycle.value,
        })
        return True

    async def _refresh_entitlements(self) -> None:
        """Refresh every limit gate and the tier info in parallel; failures are logged."""
        tasks = [gate.refresh(force_clear=True) for gate in self.limit_gates]
        if self.resolver is not None:
            tasks.append(self.resolver.refresh_tier_info())
        if not tasks:
            return
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Entitlement refresh failed", extra={"error": str(result)})

    async def _handle_purchase_update(self, purchase: Purchase) -> None:
        try:
            user_id = await self.session.get_user_id()
            if not user_id:
                logger.error("Purchase update without authenticated user", extra={
                    "transaction_id": purchase.transaction_id,
                })
                return

            is_local = self._is_local_transaction(purchase)
            receipt = None if is_local else await self._extract_receipt(purchase)

            validated = False
            if receipt:
                result = await self.validator.validate(receipt, user_id)
                validated = result.success
            elif not is_local:
                logger.warning("No receipt data for purchase", extra={
                    "user_id": user_id,
                    "transaction_id": purchase.transaction_id,
                })

            if not validated:
                try:
                    await self._apply_local_fallback(purchase, user_id)
                except Exception as e:
                    logger.error("Local fallback failed", extra={
                        "user_id": user_id,
                        "transaction_id": purchase.transaction_id,
                        "error": str(e),
                    })

            self.cache.invalidate_user(user_id, reason="purchase_update")
            await self._refresh_entitlements()

        except Exception as e:
            logger.error("Failed to process purchase", extra={
                "transaction_id": purchase.transaction_id,
                "error": str(e),
            })
        finally:
            await self._finish(purchase)

    async def _notify_cancellation(self) -> None:
        if self._cancellation_callback is None:
            return
        try:
            result = self._cancellation_callback()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning("Cancellation callback failed", extra={"error": str(e)})

    async def _restore_already_owned(self) -> None:
        try:
            user_id = await self.session.get_user_id()
            if not user_id:
                return
            purchases = await self.platform.get_available_purchases()
            active = next(
                (p for p in purchases if self._is_configured_product(p.product_id)), None
            )
            if active is None:
                return

            try:
                receipt = await self.platform.get_receipt()
                if receipt:
                    await self.validator.validate(receipt, user_id)
            except Exception as e:
                logger.debug("App receipt unavailable for restore", extra={"error": str(e)})

            self.cache.invalidate_user(user_id, reason="already_owned")
            await self._refresh_entitlements()
        except Exception as e:
            logger.warning("Failed to restore existing subscription", extra={"error": str(e)})

    async def _handle_purchase_error(self, event: PurchaseErrorEvent) -> None:
        code = IAPError.classify(event.code, event.message)

        if code == IAPErrorCode.USER_CANCELLED:
            await self._notify_cancellation()
            return

        if code == IAPErrorCode.SKU_NOT_FOUND or "sku 0" in event.message or "sku 1" in event.message:
            logger.debug("Ignoring local SKU error", extra={"code": event.code})
            return

        if code == IAPErrorCode.ALREADY_OWNED:
            await self._restore_already_owned()
            return

        logger.error("Purchase error", extra={
            "code": event.code,
            "error": event.message,
            "debug_message": event.debug_message,
        })

    # ------------------------------------------------------------------
    # Restore and status
    # ------------------------------------------------------------------

    async def restore_purchases(self) -> RestoreResult:
        """
        Restore configured purchases from the store. Never raises.

        Only the most recent purchase is validated server-side; every matched
        transaction is finished.
        """
        try:
            user_id = await self.session.get_user_id()
            if not user_id:
                return RestoreResult(success=False, error=IAPError(
                    IAPErrorCode.UNKNOWN, "No authenticated user"
                ))

            purchases = await self.platform.get_available_purchases()
            matched = [p for p in purchases if self._is_configured_product(p.product_id)]

            if matched:
                receipt = matched[-1].embedded_receipt
                if receipt:
                    await self.validator.validate(receipt, user_id)

            for purchase in matched:
                await self.platform.finish_transaction(purchase)

            if matched:
                self.cache.invalidate_user(user_id, reason="restore")

            logger.info("Restored purchases", extra={"user_id": user_id, "count": len(matched)})
            return RestoreResult(success=True, purchases=matched)

        except Exception as e:
            logger.error("Failed to restore purchases", extra={"error": str(e)})
            return RestoreResult(success=False, error=IAPError.from_exception(e))

    async def sync_subscription_status(self) -> bool:
        """Validate the current store purchase with the server."""
        try:
            user_id = await self.session.get_user_id()
            if not user_id:
                return False

            purchases = await self.platform.get_available_purchases()
            active = next(
                (p for p in purchases if self._is_configured_product(p.product_id)), None
            )
            if active is None:
                return False

            receipt = active.embedded_receipt
            if not receipt:
                logger.warning("No receipt data to sync", extra={"user_id": user_id})
                return False

            result = await self.validator.validate(receipt, user_id)
            if result.success:
                self.cache.invalidate_user(user_id, reason="sync")
            return result.success

        except Exception as e:
            logger.error("Subscription sync failed", extra={"error": str(e)})
            return False

    async def get_subscription_status(self) -> Optional[SubscriptionStatusInfo]:
        """Store-side subscription status; use sync_subscription_status() for server truth."""
        try:
            user_id = await self.session.get_user_id()
            key = CacheKeys.subscription_status(user_id) if user_id else None
            if key:
                cached = self.cache.get(key)
                if cached is not None:
                    return cached

            purchases = await self.platform.get_available_purchases()
            active = next(
                (p for p in purchases if self._is_configured_product(p.product_id)), None
            )
            if active is None:
                return None

            status = SubscriptionStatusInfo(
                original_transaction_id=active.original_transaction_id or active.transaction_id or "",
                transaction_id=active.transaction_id or "",
                product_id=active.product_id,
                start_date=active.transaction_date,
            )
            if key:
                self.cache.set(key, status, self.config.cache_ttl.short)
            return status

        except Exception as e:
            logger.error("Failed to get subscription status", extra={"error": str(e)})
            return None
