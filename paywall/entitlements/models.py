"""
Domain types for entitlement resolution.

These are plain dataclasses shared by both repository adapters, so the
resolver and limit gate never see ORM rows or raw JSON payloads.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from paywall.models.base import ensure_utc, utcnow
from paywall.models.tier import UNLIMITED_SENTINEL
from paywall.models.user_subscription import (
    ENTITLED_STATUSES,
    PaymentProvider,
    SubscriptionStatus,
)

# Legacy rows may carry the older tier identifier
PREMIUM_TIER_IDS = frozenset({"premium", "premium_tier"})


class ResourceKind(str, Enum):
    """Resource kinds that count against the tier limit."""
    SUBSCRIPTION = "subscription"
    RECURRING_ITEM = "recurring_item"

    @property
    def rpc_name(self) -> str:
        """Name of the authorization procedure for this kind."""
        return f"can_user_add_{self.value}"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass through a datetime) as aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def normalize_limit(value: Any) -> Optional[int]:
    """Map the wire form of a limit to Optional[int]; None means unlimited."""
    if value is None:
        return None
    limit = int(value)
    if limit == UNLIMITED_SENTINEL:
        return None
    return limit


@dataclass
class Tier:
    """A subscription tier as seen by callers."""
    tier_id: str
    name: str
    max_resources: Optional[int] = None
    description: Optional[str] = None
    monthly_price: float = 0.0
    annual_price: float = 0.0
    features: List[str] = field(default_factory=list)
    is_active: bool = True
    display_order: int = 0

    @property
    def is_unlimited(self) -> bool:
        return self.max_resources is None

    @property
    def is_premium(self) -> bool:
        return self.tier_id in PREMIUM_TIER_IDS

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Tier":
        """Build from a PostgREST row (``id`` or ``tier_id`` key)."""
        return cls(
            tier_id=data.get("tier_id") or data.get("id"),
            name=data.get("name", ""),
            max_resources=normalize_limit(data.get("max_resources")),
            description=data.get("description"),
            monthly_price=float(data.get("monthly_price") or 0),
            annual_price=float(data.get("annual_price") or data.get("yearly_price") or 0),
            features=list(data.get("features") or []),
            is_active=bool(data.get("is_active", True)),
            display_order=int(data.get("display_order") or 0),
        )


@dataclass
class SubscriptionRecord:
    """The single subscription row of a user, optionally joined with its tier."""
    user_id: str
    tier_id: str
    status: str
    billing_cycle: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    resume_at: Optional[datetime] = None
    payment_provider: Optional[str] = None
    entitlement_source: Optional[str] = None
    fallback_granted_at: Optional[datetime] = None
    tier: Optional[Tier] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SubscriptionRecord":
        tier_data = data.get("subscription_tiers") or data.get("tier")
        return cls(
            user_id=data["user_id"],
            tier_id=data["tier_id"],
            status=data.get("status") or SubscriptionStatus.ACTIVE.value,
            billing_cycle=data.get("billing_cycle"),
            current_period_start=parse_datetime(data.get("current_period_start")),
            current_period_end=parse_datetime(data.get("current_period_end")),
            cancel_at_period_end=bool(data.get("cancel_at_period_end")),
            canceled_at=parse_datetime(data.get("canceled_at")),
            paused_at=parse_datetime(data.get("paused_at")),
            resume_at=parse_datetime(data.get("resume_at")),
            payment_provider=data.get("payment_provider"),
            entitlement_source=data.get("entitlement_source"),
            fallback_granted_at=parse_datetime(data.get("fallback_granted_at")),
            tier=Tier.from_mapping(tier_data) if tier_data else None,
        )


@dataclass
class ProviderTransactionRecord:
    """One row of the provider transaction audit trail."""
    user_id: str
    transaction_id: str
    original_transaction_id: Optional[str] = None
    product_id: Optional[str] = None
    purchase_date: Optional[datetime] = None
    expiration_date: Optional[datetime] = None
    notification_type: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ProviderTransactionRecord":
        return cls(
            user_id=data["user_id"],
            transaction_id=str(data.get("transaction_id", "")),
            original_transaction_id=data.get("original_transaction_id"),
            product_id=data.get("product_id"),
            purchase_date=parse_datetime(data.get("purchase_date")),
            expiration_date=parse_datetime(data.get("expiration_date")),
            notification_type=data.get("notification_type"),
            created_at=parse_datetime(data.get("created_at")),
        )


@dataclass
class AuthorizationResult:
    """Response of the ``can_user_add_<resource>`` procedure."""
    allowed: bool
    current_count: int
    limit_count: Optional[int]
    tier: str

    @classmethod
    def from_payload(cls, payload: Any) -> "AuthorizationResult":
        """
        Parse the RPC response.

        PostgREST returns either an object or a single-element list for
        set-returning functions.

        Raises:
            ValueError: If the payload is empty or not an object
        """
        if isinstance(payload, list):
            if not payload:
                raise ValueError("Empty authorization response")
            payload = payload[0]
        if not isinstance(payload, Mapping):
            raise ValueError(f"Unexpected authorization response: {payload!r}")
        return cls(
            allowed=bool(payload.get("allowed")),
            current_count=int(payload.get("current_count") or 0),
            limit_count=normalize_limit(payload.get("limit_count")),
            tier=payload.get("tier") or "free",
        )


@dataclass
class LimitCheck:
    """Outcome of a single "may the user add one more" check."""
    can_add: bool
    current_count: int
    limit: Optional[int]
    is_premium: bool
    tier_name: str
    reason: Optional[str] = None
    # Set when the authorization channel failed and the gate allowed anyway
    fail_open: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "can_add": self.can_add,
            "fail_open": self.fail_open,
            "reason": self.reason,
            "current_count": self.current_count,
            "limit": self.limit,
            "is_premium": self.is_premium,
            "tier_name": self.tier_name,
        }


@dataclass
class LimitStatus:
    current_count: int
    max_allowed: Optional[int]
    remaining_count: Optional[int]
    is_premium: bool
    can_add_more: bool
    tier_name: str


@dataclass
class TierSnapshot:
    """Tier and premium status observed together by a refresh."""
    tier: Tier
    is_premium: bool


@dataclass(frozen=True)
class StripeExpiry:
    """Card-processor grace period: paid through period_end when cancel_at_period_end."""
    period_end: Optional[datetime]
    cancel_at_period_end: bool

    def is_valid(self, now: datetime) -> bool:
        if not self.cancel_at_period_end or self.period_end is None:
            return False
        return ensure_utc(self.period_end) > now


@dataclass(frozen=True)
class AppleExpiry:
    """Platform grace period: paid through the latest transaction's expiration."""
    expiration_date: Optional[datetime]

    def is_valid(self, now: datetime) -> bool:
        if self.expiration_date is None:
            return False
        return ensure_utc(self.expiration_date) > now


ProviderExpiry = Union[StripeExpiry, AppleExpiry]


def build_provider_expiry(
    subscription: SubscriptionRecord,
    latest_transaction: Optional[ProviderTransactionRecord] = None,
) -> Optional[ProviderExpiry]:
    """
    Resolve the authoritative expiry source for a canceled subscription.

    Returns None when the provider is apple but no transaction is on record.
    """
    if subscription.payment_provider == PaymentProvider.APPLE.value:
        if latest_transaction is None:
            return None
        return AppleExpiry(expiration_date=latest_transaction.expiration_date)
    return StripeExpiry(
        period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
    )


def resolve_premium(
    subscription: Optional[SubscriptionRecord],
    latest_transaction: Optional[ProviderTransactionRecord] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Decide premium entitlement for a subscription row.

    Premium holds iff the tier is premium AND the status is entitled, or the
    status is canceled and the provider's paid-through date has not passed.
    """
    if subscription is None:
        return False
    if subscription.tier_id not in PREMIUM_TIER_IDS:
        return False
    if subscription.status in ENTITLED_STATUSES:
        return True
    if subscription.status != SubscriptionStatus.CANCELED.value:
        return False

    expiry = build_provider_expiry(subscription, latest_transaction)
    if expiry is None:
        return False
    return expiry.is_valid(ensure_utc(now) if now else utcnow())
