"""
Root test configuration and fixtures.

Provides:
- db_engine / db_session: SQLite in-memory database with all paywall tables
- seeded_tiers: free (5 resources) and premium (unlimited) tiers
- billing_config: configuration with no settle delay or backoff
- FakeClock / cache: TTL cache driven by a manual clock
- FakeBillingPlatform: in-memory billing SDK that records calls
- make_yaml_config: factory for writing YAML configs to a temp dir
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Generator, List, Mapping, Optional, Sequence

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from paywall.auth.session import StaticSessionProvider
from paywall.config.billing_config import (
    BillingConfig,
    RefreshConfig,
    reset_billing_config,
)
from paywall.entitlements.cache import TTLCache, reset_entitlement_cache
from paywall.integrations.storekit.models import Purchase, PurchaseErrorEvent
from paywall.integrations.storekit.platform import BillingPlatform, ListenerSubscription
from paywall.models import (
    ProviderTransaction,
    SubscriptionTier,
    TrackedResource,
    UserSubscription,
)

# Set test environment
os.environ.setdefault("ENV", "test")

USER_ID = "user-1"
MONTHLY_PRODUCT = "com.example.tracker.premium.monthly.v1"


@pytest.fixture(scope="session")
def db_engine():
    """SQLite in-memory engine with every paywall table."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from paywall.db_base import Base
    import paywall.models  # noqa: F401 - registers all models

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Create database session with transaction rollback for test isolation.

    Each test gets a fresh session that rolls back after the test completes.
    """
    connection = db_engine.connect()
    transaction = connection.begin()

    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=connection,
    )
    session = SessionLocal()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture(autouse=True)
def _reset_singletons():
    reset_billing_config()
    reset_entitlement_cache()
    yield
    reset_billing_config()
    reset_entitlement_cache()


@pytest.fixture
def billing_config() -> BillingConfig:
    """Default configuration without settle delay or retry backoff."""
    return BillingConfig(
        refresh=RefreshConfig(
            settle_delay_seconds=0.0,
            max_attempts=3,
            initial_backoff_seconds=0.0,
            backoff_multiplier=2.0,
            max_backoff_seconds=0.0,
        ),
    )


@pytest.fixture
def seeded_tiers(db_session) -> Dict[str, SubscriptionTier]:
    free = SubscriptionTier(
        tier_id="free",
        name="free",
        description="Free plan",
        max_resources=5,
        monthly_price=0,
        annual_price=0,
        features=["cloud_sync", "renewal_reminders", "basic_stats"],
        display_order=0,
    )
    premium = SubscriptionTier(
        tier_id="premium",
        name="premium",
        description="Premium plan",
        max_resources=None,
        monthly_price=4.99,
        annual_price=39.99,
        features=["unlimited_tracking", "insights"],
        display_order=1,
    )
    db_session.add_all([free, premium])
    db_session.commit()
    return {"free": free, "premium": premium}


@pytest.fixture
def make_subscription(db_session, seeded_tiers):
    """Factory inserting a UserSubscription row."""
    def _make(user_id: str = USER_ID, **fields) -> UserSubscription:
        values = {
            "tier_id": "premium",
            "status": "active",
            "billing_cycle": "monthly",
            "payment_provider": "stripe",
            "cancel_at_period_end": False,
        }
        values.update(fields)
        row = UserSubscription(user_id=user_id, **values)
        db_session.add(row)
        db_session.commit()
        return row
    return _make


@pytest.fixture
def make_transaction(db_session):
    """Factory inserting a ProviderTransaction row."""
    def _make(user_id: str = USER_ID, **fields) -> ProviderTransaction:
        now = datetime.now(timezone.utc)
        values = {
            "transaction_id": "2000000123456789",
            "original_transaction_id": "2000000123456789",
            "product_id": MONTHLY_PRODUCT,
            "purchase_date": now - timedelta(days=30),
            "expiration_date": now,
            "notification_type": "DID_RENEW",
            "created_at": now,
        }
        values.update(fields)
        row = ProviderTransaction(user_id=user_id, **values)
        db_session.add(row)
        db_session.commit()
        return row
    return _make


@pytest.fixture
def make_resources(db_session):
    """Factory inserting TrackedResource rows."""
    def _make(count: int, user_id: str = USER_ID, kind: str = "subscription", deleted: int = 0):
        now = datetime.now(timezone.utc)
        for i in range(count):
            db_session.add(TrackedResource(user_id=user_id, kind=kind, name=f"item-{i}"))
        for i in range(deleted):
            db_session.add(TrackedResource(
                user_id=user_id, kind=kind, name=f"deleted-{i}", deleted_at=now
            ))
        db_session.commit()
    return _make


class FakeClock:
    """Manual monotonic clock in seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> TTLCache:
    return TTLCache(clock=clock)


@pytest.fixture
def session_provider() -> StaticSessionProvider:
    return StaticSessionProvider(USER_ID)


class FakeListenerSubscription(ListenerSubscription):
    def __init__(self, listeners: List[Any], listener: Any):
        self._listeners = listeners
        self._listener = listener
        self.removed = False

    def remove(self) -> None:
        if self._listener in self._listeners:
            self._listeners.remove(self._listener)
        self.removed = True


class FakeBillingPlatform(BillingPlatform):
    """In-memory billing SDK recording every call."""

    def __init__(self, supported: bool = True):
        self.supported = supported
        self.connect_error: Optional[Exception] = None
        self.products: List[Mapping[str, Any]] = []
        self.fetch_error: Optional[Exception] = None
        self.available_purchases: List[Purchase] = []
        self.available_error: Optional[Exception] = None
        self.receipt: Optional[str] = None
        self.transaction_tokens: Dict[str, str] = {}
        self.request_error: Optional[Exception] = None

        self.init_calls = 0
        self.end_calls = 0
        self.requested: List[str] = []
        self.finished: List[Purchase] = []
        self.update_listeners: List[Any] = []
        self.error_listeners: List[Any] = []

    @property
    def is_supported(self) -> bool:
        return self.supported

    async def init_connection(self) -> bool:
        self.init_calls += 1
        if self.connect_error:
            raise self.connect_error
        return True

    async def end_connection(self) -> None:
        self.end_calls += 1

    async def fetch_products(self, product_ids: Sequence[str]) -> List[Mapping[str, Any]]:
        if self.fetch_error:
            raise self.fetch_error
        return self.products

    async def request_purchase(self, product_id: str) -> None:
        if self.request_error:
            raise self.request_error
        self.requested.append(product_id)

    async def get_available_purchases(self) -> List[Purchase]:
        if self.available_error:
            raise self.available_error
        return list(self.available_purchases)

    async def finish_transaction(self, purchase: Purchase) -> None:
        self.finished.append(purchase)

    def add_purchase_updated_listener(self, listener) -> ListenerSubscription:
        self.update_listeners.append(listener)
        return FakeListenerSubscription(self.update_listeners, listener)

    def add_purchase_error_listener(self, listener) -> ListenerSubscription:
        self.error_listeners.append(listener)
        return FakeListenerSubscription(self.error_listeners, listener)

    async def get_receipt(self) -> Optional[str]:
        return self.receipt

    async def get_transaction_token(self, transaction_id: str) -> Optional[str]:
        return self.transaction_tokens.get(transaction_id)

    async def emit_purchase(self, purchase: Purchase) -> None:
        for listener in list(self.update_listeners):
            await listener(purchase)

    async def emit_error(self, event: PurchaseErrorEvent) -> None:
        for listener in list(self.error_listeners):
            await listener(event)


@pytest.fixture
def platform() -> FakeBillingPlatform:
    return FakeBillingPlatform()


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("billing.yml", {"limits": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
