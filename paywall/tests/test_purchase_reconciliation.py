"""
Tests for PurchaseReconciliationEngine.

Uses FakeBillingPlatform (conftest) as the SDK, the SQLite-backed repository
for subscription state and a mocked ReceiptValidator.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from paywall.auth.session import StaticSessionProvider
from paywall.entitlements.cache import CacheKeys
from paywall.entitlements.errors import IAPError, IAPErrorCode
from paywall.entitlements.limits import LimitGate
from paywall.entitlements.models import ResourceKind
from paywall.entitlements.resolver import EntitlementResolver
from paywall.integrations.storekit.models import Purchase, PurchaseErrorEvent
from paywall.models import Profile, ProviderTransaction, UserSubscription
from paywall.repositories.entitlement_repository import SqlEntitlementRepository
from paywall.services.payment_service import PaymentService
from paywall.services.purchase_reconciliation import (
    ConnectionState,
    PurchaseReconciliationEngine,
    add_months,
    billing_cycle_for,
)
from paywall.services.receipt_validator import ReceiptValidator, ValidationResult


class SdkError(Exception):
    """Error shaped like the billing SDK's, with a string code."""

    def __init__(self, message: str, code=None):
        super().__init__(message)
        self.code = code


USER_ID = "user-1"
MONTHLY = "com.example.tracker.premium.monthly.v1"
YEARLY = "com.example.tracker.premium.yearly.v1"


@pytest.fixture
def validator():
    mock = AsyncMock(spec=ReceiptValidator)
    mock.validate.return_value = ValidationResult(success=False, error="validation unavailable")
    return mock


@pytest.fixture
def repository(db_session, billing_config):
    return SqlEntitlementRepository(db_session, config=billing_config)


@pytest.fixture
def engine(platform, session_provider, repository, validator, cache, billing_config):
    return PurchaseReconciliationEngine(
        platform, session_provider, repository, validator, cache, config=billing_config
    )


def _purchase(
    product_id: str = MONTHLY,
    transaction_id: str = "2000000123456789",
    receipt: str = "base64-receipt",
) -> Purchase:
    return Purchase(
        product_id=product_id,
        transaction_id=transaction_id,
        transaction_receipt=receipt,
        original_transaction_id=transaction_id,
        transaction_date=datetime.now(timezone.utc),
    )


def _subscription_row(db_session):
    return db_session.query(UserSubscription).filter_by(user_id=USER_ID).one_or_none()


class TestHelpers:
    def test_add_months_clamps_day(self):
        start = datetime(2026, 1, 31, 9, 30, tzinfo=timezone.utc)
        assert add_months(start, 1) == datetime(2026, 2, 28, 9, 30, tzinfo=timezone.utc)

    def test_add_twelve_months(self):
        start = datetime(2028, 2, 29, tzinfo=timezone.utc)
        assert add_months(start, 12) == datetime(2029, 2, 28, tzinfo=timezone.utc)

    def test_add_months_across_year(self):
        start = datetime(2026, 12, 15, tzinfo=timezone.utc)
        assert add_months(start, 1) == datetime(2027, 1, 15, tzinfo=timezone.utc)

    @pytest.mark.parametrize("product_id,cycle", [
        (MONTHLY, "monthly"),
        (YEARLY, "annual"),
        ("com.example.tracker.premium.v1", "monthly"),
    ])
    def test_billing_cycle_for(self, product_id, cycle):
        assert billing_cycle_for(product_id).value == cycle


class TestInitialize:
    @pytest.mark.asyncio
    async def test_registers_listeners_once(self, engine, platform):
        first = await engine.initialize()
        second = await engine.initialize()

        assert first is second
        assert engine.state == ConnectionState.CONNECTED
        assert platform.init_calls == 1
        assert len(platform.update_listeners) == 1
        assert len(platform.error_listeners) == 1

    @pytest.mark.asyncio
    async def test_unsupported_platform(self, engine, platform):
        platform.supported = False

        assert await engine.initialize() is None
        assert platform.init_calls == 0

    @pytest.mark.asyncio
    async def test_connection_failure(self, engine, platform):
        platform.connect_error = SdkError("store unavailable", code="init-connection")

        with pytest.raises(IAPError) as exc_info:
            await engine.initialize()

        assert exc_info.value.code == IAPErrorCode.INIT_FAILED
        assert engine.state == ConnectionState.DISCONNECTED
        assert platform.update_listeners == []

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, engine, platform):
        platform.connect_error = SdkError("store unavailable")
        with pytest.raises(IAPError):
            await engine.initialize()

        platform.connect_error = None
        assert await engine.initialize() is not None
        assert engine.is_initialized

    @pytest.mark.asyncio
    async def test_release_disconnects(self, engine, platform):
        handle = await engine.initialize()

        await handle.release()
        await handle.release()
        await engine.disconnect()

        assert handle.released
        assert platform.end_calls == 1
        assert platform.update_listeners == []
        assert platform.error_listeners == []
        assert engine.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_handle_as_context_manager(self, engine, platform):
        async with await engine.initialize():
            assert engine.is_initialized

        assert not engine.is_initialized
        assert platform.end_calls == 1


class TestProductsAndPurchase:
    @pytest.mark.asyncio
    async def test_get_products_normalizes(self, engine, platform):
        platform.products = [
            {"productId": MONTHLY, "title": "Premium Monthly", "price": "4.99",
             "currency": "USD", "localizedPrice": "$4.99"},
            {"id": YEARLY, "displayName": "Premium Yearly", "price": 39.99,
             "displayPrice": "$39.99"},
            {"title": "broken"},
        ]

        products = await engine.get_products()

        assert [p.id for p in products] == [MONTHLY, YEARLY]
        assert products[0].price == pytest.approx(4.99)
        assert products[0].period == "month"
        assert products[1].title == "Premium Yearly"
        assert products[1].period == "year"

    @pytest.mark.asyncio
    async def test_get_products_failure_is_empty(self, engine, platform):
        platform.fetch_error = SdkError("offline", code="E_NETWORK_ERROR")
        assert await engine.get_products() == []

    @pytest.mark.asyncio
    async def test_purchase_is_pending(self, engine, platform):
        result = await engine.purchase_subscription(MONTHLY)

        assert result.success is True
        assert result.pending is True
        assert platform.requested == [MONTHLY]
        assert platform.init_calls == 1

    @pytest.mark.asyncio
    async def test_invalid_product(self, engine, platform):
        result = await engine.purchase_subscription("com.other.app.coins")

        assert result.success is False
        assert result.error.code == IAPErrorCode.INVALID_PRODUCT
        assert platform.requested == []

    @pytest.mark.asyncio
    async def test_user_cancellation(self, engine, platform):
        platform.request_error = SdkError("User cancelled the request", code="E_USER_CANCELLED")

        result = await engine.purchase_subscription(MONTHLY)

        assert result.success is False
        assert result.cancelled is True
        assert result.error.code == IAPErrorCode.USER_CANCELLED

    @pytest.mark.asyncio
    async def test_other_request_error(self, engine, platform):
        platform.request_error = SdkError("offline", code="E_NETWORK_ERROR")

        result = await engine.purchase_subscription(MONTHLY)

        assert result.success is False
        assert result.cancelled is False
        assert result.error.code == IAPErrorCode.NETWORK_ERROR

    @pytest.mark.asyncio
    async def test_not_initialized_on_unsupported_platform(self, engine, platform):
        platform.supported = False

        result = await engine.purchase_subscription(MONTHLY)

        assert result.error.code == IAPErrorCode.NOT_INITIALIZED

    @pytest.mark.asyncio
    async def test_init_failure_is_reported(self, engine, platform):
        platform.connect_error = SdkError("store unavailable")

        result = await engine.purchase_subscription(MONTHLY)

        assert result.success is False
        assert result.error.code == IAPErrorCode.INIT_FAILED


class TestPurchaseUpdate:
    @pytest.mark.asyncio
    async def test_local_fallback_when_validation_fails(
        self, engine, platform, validator, cache, db_session, seeded_tiers
    ):
        cache.set(CacheKeys.tier(USER_ID), "stale-free", 300)
        await engine.initialize()
        purchase = _purchase()

        await platform.emit_purchase(purchase)

        validator.validate.assert_awaited_once_with("base64-receipt", USER_ID)
        row = _subscription_row(db_session)
        assert row.status == "active"
        assert row.tier_id == "premium"
        assert row.billing_cycle == "monthly"
        assert row.payment_provider == "apple"
        assert row.is_fallback_grant
        start = row.current_period_start.replace(tzinfo=None)
        end = row.current_period_end.replace(tzinfo=None)
        assert 28 <= (end - start).days <= 31
        assert platform.finished == [purchase]
        assert cache.get(CacheKeys.tier(USER_ID)) is None

    @pytest.mark.asyncio
    async def test_fallback_records_transaction_and_profile(
        self, engine, platform, db_session, seeded_tiers
    ):
        await engine.initialize()

        await platform.emit_purchase(_purchase())

        txn = db_session.query(ProviderTransaction).filter_by(user_id=USER_ID).one()
        assert txn.transaction_id == "2000000123456789"
        assert txn.notification_type == "PURCHASE"
        profile = db_session.query(Profile).filter_by(id=USER_ID).one()
        assert profile.payment_provider == "apple"
        assert profile.apple_original_transaction_id == "2000000123456789"

    @pytest.mark.asyncio
    async def test_yearly_fallback(self, engine, platform, db_session, seeded_tiers):
        await engine.initialize()

        await platform.emit_purchase(_purchase(product_id=YEARLY))

        row = _subscription_row(db_session)
        assert row.billing_cycle == "annual"
        days = (row.current_period_end - row.current_period_start).days
        assert 365 <= days <= 366

    @pytest.mark.asyncio
    async def test_validated_purchase_skips_fallback(
        self, engine, platform, validator, db_session, seeded_tiers
    ):
        validator.validate.return_value = ValidationResult(success=True)
        await engine.initialize()
        purchase = _purchase()

        await platform.emit_purchase(purchase)

        assert _subscription_row(db_session) is None
        assert platform.finished == [purchase]

    @pytest.mark.asyncio
    async def test_transaction_token_used_without_embedded_receipt(
        self, engine, platform, validator, seeded_tiers
    ):
        platform.transaction_tokens["2000000123456789"] = "signed-jws"
        platform.receipt = "legacy-receipt"
        await engine.initialize()

        await platform.emit_purchase(_purchase(receipt=None))

        validator.validate.assert_awaited_once_with("signed-jws", USER_ID)

    @pytest.mark.asyncio
    async def test_legacy_receipt_used_last(self, engine, platform, validator, seeded_tiers):
        platform.receipt = "legacy-receipt"
        await engine.initialize()

        await platform.emit_purchase(_purchase(receipt=None))

        validator.validate.assert_awaited_once_with("legacy-receipt", USER_ID)

    @pytest.mark.asyncio
    async def test_missing_receipt_falls_back(
        self, engine, platform, validator, db_session, seeded_tiers
    ):
        await engine.initialize()
        purchase = _purchase(receipt=None)

        await platform.emit_purchase(purchase)

        validator.validate.assert_not_awaited()
        assert _subscription_row(db_session).status == "active"
        assert platform.finished == [purchase]

    @pytest.mark.asyncio
    async def test_local_transaction_skips_validation(
        self, engine, platform, validator, db_session, seeded_tiers
    ):
        await engine.initialize()

        await platform.emit_purchase(_purchase(transaction_id="12"))

        validator.validate.assert_not_awaited()
        assert _subscription_row(db_session).tier_id == "premium"

    @pytest.mark.asyncio
    async def test_zero_transaction_id_not_recorded(
        self, engine, platform, db_session, seeded_tiers
    ):
        await engine.initialize()

        await platform.emit_purchase(_purchase(transaction_id="0"))

        assert _subscription_row(db_session) is not None
        assert db_session.query(ProviderTransaction).count() == 0

    @pytest.mark.asyncio
    async def test_no_user_still_finishes(
        self, platform, repository, validator, cache, billing_config, db_session
    ):
        engine = PurchaseReconciliationEngine(
            platform, StaticSessionProvider(None), repository, validator, cache,
            config=billing_config,
        )
        await engine.initialize()
        purchase = _purchase()

        await platform.emit_purchase(purchase)

        validator.validate.assert_not_awaited()
        assert db_session.query(UserSubscription).count() == 0
        assert platform.finished == [purchase]

    @pytest.mark.asyncio
    async def test_unexpected_error_still_finishes_once(
        self, engine, platform, validator, seeded_tiers
    ):
        validator.validate.side_effect = RuntimeError("boom")
        await engine.initialize()
        purchase = _purchase()

        await platform.emit_purchase(purchase)

        assert platform.finished == [purchase]

    @pytest.mark.asyncio
    async def test_canceled_in_paid_period_is_left_alone(
        self, engine, platform, db_session, make_subscription
    ):
        period_end = datetime.now(timezone.utc) + timedelta(days=10)
        make_subscription(
            status="canceled",
            cancel_at_period_end=True,
            current_period_end=period_end,
        )
        await engine.initialize()
        purchase = _purchase()

        await platform.emit_purchase(purchase)

        row = _subscription_row(db_session)
        assert row.status == "canceled"
        assert not row.is_fallback_grant
        assert platform.finished == [purchase]

    @pytest.mark.asyncio
    async def test_entitlements_refreshed_after_fallback(
        self, platform, session_provider, repository, validator, cache, billing_config,
        seeded_tiers, make_resources,
    ):
        make_resources(5)
        gate = LimitGate(
            ResourceKind.SUBSCRIPTION, session_provider, repository, cache, billing_config
        )
        resolver = EntitlementResolver(
            session_provider, repository, cache, AsyncMock(spec=PaymentService),
            config=billing_config, limit_gates=[gate],
        )
        engine = PurchaseReconciliationEngine(
            platform, session_provider, repository, validator, cache,
            resolver=resolver, limit_gates=[gate], config=billing_config,
        )
        assert (await gate.check_can_add()).can_add is False
        assert await resolver.is_premium_user() is False
        cache.set(CacheKeys.tier("someone-else"), "free", 300)
        await engine.initialize()

        await platform.emit_purchase(_purchase())

        assert cache.get(CacheKeys.tier("someone-else")) is None

        assert await resolver.is_premium_user() is True
        check = await gate.check_can_add()
        assert check.can_add is True
        assert check.limit is None


class TestPurchaseErrors:
    @pytest.mark.asyncio
    async def test_cancellation_invokes_callback(self, engine, platform):
        callback = MagicMock()
        engine.set_purchase_cancellation_callback(callback)
        await engine.initialize()

        await platform.emit_error(PurchaseErrorEvent(code="E_USER_CANCELLED", message="cancelled"))

        callback.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_async_cancellation_callback(self, engine, platform):
        callback = AsyncMock()
        engine.set_purchase_cancellation_callback(callback)
        await engine.initialize()

        await platform.emit_error(PurchaseErrorEvent(code=None, message="Purchase was cancelled"))

        callback.assert_awaited_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event", [
        PurchaseErrorEvent(code="sku-not-found", message="not found"),
        PurchaseErrorEvent(code="E_UNKNOWN", message="Invalid sku 0"),
    ])
    async def test_sku_errors_ignored(self, engine, platform, validator, event):
        callback = MagicMock()
        engine.set_purchase_cancellation_callback(callback)
        await engine.initialize()

        await platform.emit_error(event)

        callback.assert_not_called()
        validator.validate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_already_owned_restores(self, engine, platform, validator, cache):
        platform.available_purchases = [_purchase()]
        platform.receipt = "app-receipt"
        cache.set(CacheKeys.is_premium(USER_ID), False, 300)
        await engine.initialize()

        await platform.emit_error(PurchaseErrorEvent(code="E_ALREADY_OWNED", message="owned"))

        validator.validate.assert_awaited_once_with("app-receipt", USER_ID)
        assert cache.get(CacheKeys.is_premium(USER_ID)) is None

    @pytest.mark.asyncio
    async def test_already_owned_without_matching_purchase(self, engine, platform, validator):
        platform.available_purchases = [_purchase(product_id="com.other.app.coins")]
        platform.receipt = "app-receipt"
        await engine.initialize()

        await platform.emit_error(PurchaseErrorEvent(code="already-owned"))

        validator.validate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_other_errors_are_swallowed(self, engine, platform):
        await engine.initialize()
        await platform.emit_error(PurchaseErrorEvent(code="E_NETWORK_ERROR", message="offline"))


class TestRestoreAndStatus:
    @pytest.mark.asyncio
    async def test_restore_with_nothing_to_restore(self, engine, platform):
        result = await engine.restore_purchases()

        assert result.success is True
        assert result.purchases == []
        assert platform.finished == []

    @pytest.mark.asyncio
    async def test_restore_validates_latest_and_finishes_all(self, engine, platform, validator):
        older = _purchase(transaction_id="2000000000000001", receipt="older-receipt")
        newer = _purchase(product_id=YEARLY, transaction_id="2000000000000002",
                          receipt="newer-receipt")
        foreign = _purchase(product_id="com.other.app.coins", transaction_id="2000000000000003")
        platform.available_purchases = [older, foreign, newer]

        result = await engine.restore_purchases()

        assert result.success is True
        assert result.purchases == [older, newer]
        validator.validate.assert_awaited_once_with("newer-receipt", USER_ID)
        assert platform.finished == [older, newer]

    @pytest.mark.asyncio
    async def test_restore_without_user(
        self, platform, repository, validator, cache, billing_config
    ):
        engine = PurchaseReconciliationEngine(
            platform, StaticSessionProvider(None), repository, validator, cache,
            config=billing_config,
        )

        result = await engine.restore_purchases()

        assert result.success is False
        assert result.error is not None

    @pytest.mark.asyncio
    async def test_restore_failure_never_raises(self, engine, platform):
        platform.available_error = SdkError("offline", code="E_NETWORK_ERROR")

        result = await engine.restore_purchases()

        assert result.success is False
        assert result.error.code == IAPErrorCode.NETWORK_ERROR

    @pytest.mark.asyncio
    async def test_sync_subscription_status(self, engine, platform, validator, cache):
        platform.available_purchases = [_purchase()]
        validator.validate.return_value = ValidationResult(success=True)
        cache.set(CacheKeys.tier(USER_ID), "stale", 300)

        assert await engine.sync_subscription_status() is True
        assert cache.get(CacheKeys.tier(USER_ID)) is None

    @pytest.mark.asyncio
    async def test_sync_without_purchases(self, engine, validator):
        assert await engine.sync_subscription_status() is False
        validator.validate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_subscription_status_cached(self, engine, platform, cache):
        purchase = _purchase()
        platform.available_purchases = [purchase]

        status = await engine.get_subscription_status()

        assert status.product_id == MONTHLY
        assert status.transaction_id == "2000000123456789"
        assert cache.get(CacheKeys.subscription_status(USER_ID)) is status

        platform.available_purchases = []
        assert await engine.get_subscription_status() is status

    @pytest.mark.asyncio
    async def test_subscription_status_none(self, engine):
        assert await engine.get_subscription_status() is None
