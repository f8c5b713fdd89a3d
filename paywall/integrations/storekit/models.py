"""
Payload types delivered by the platform billing SDK.

SDK bindings report camelCase dictionaries whose keys differ between SDK
versions; these helpers normalize them once at the boundary.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _parse_transaction_date(value: Any) -> Optional[datetime]:
    """SDKs report milliseconds since epoch; accept datetimes as-is."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)


@dataclass
class Purchase:
    """A transaction reported by the billing SDK. Lives only while it is handled."""
    product_id: str
    transaction_id: Optional[str] = None
    transaction_receipt: Optional[str] = None
    purchase_token: Optional[str] = None
    original_transaction_id: Optional[str] = None
    transaction_date: Optional[datetime] = None

    @property
    def embedded_receipt(self) -> Optional[str]:
        return self.transaction_receipt or self.purchase_token

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Purchase":
        return cls(
            product_id=_first(data, "productId", "product_id"),
            transaction_id=_first(data, "transactionId", "transaction_id", "id"),
            transaction_receipt=_first(data, "transactionReceipt", "transaction_receipt"),
            purchase_token=_first(data, "purchaseToken", "purchase_token", "jwsRepresentationIOS"),
            original_transaction_id=_first(
                data,
                "originalTransactionIdentifierIOS",
                "originalTransactionId",
                "original_transaction_id",
            ),
            transaction_date=_parse_transaction_date(
                _first(data, "transactionDate", "transaction_date")
            ),
        )


@dataclass
class Product:
    """A store product normalized for display."""
    id: str
    title: str
    description: str
    price: float
    currency: str
    localized_price: str
    period: Optional[str] = None


def normalize_product(data: Mapping[str, Any]) -> Product:
    """
    Normalize an SDK product into Product.

    Accepts both the ``id`` and the older ``productId`` shapes.
    """
    product_id = _first(data, "id", "productId")
    if not product_id:
        raise ValueError("Product without identifier")

    raw_price = _first(data, "price")
    try:
        price = float(raw_price) if raw_price is not None else 0.0
    except (TypeError, ValueError):
        price = 0.0

    currency = _first(data, "currency") or "USD"
    localized = _first(data, "displayPrice", "localizedPrice") or f"{price:.2f} {currency}"
    period = _first(data, "subscriptionPeriodUnitIOS", "subscriptionPeriod", "period")
    if period is None:
        if "yearly" in product_id or "annual" in product_id:
            period = "year"
        elif "monthly" in product_id:
            period = "month"

    return Product(
        id=product_id,
        title=_first(data, "title", "displayName") or product_id,
        description=_first(data, "description") or "",
        price=price,
        currency=currency,
        localized_price=localized,
        period=str(period).lower() if period else None,
    )


@dataclass
class PurchaseErrorEvent:
    """Error delivered through the purchase-error listener."""
    code: Optional[str]
    message: str = ""
    debug_message: Optional[str] = None
    product_id: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PurchaseErrorEvent":
        return cls(
            code=_first(data, "code"),
            message=_first(data, "message") or "",
            debug_message=_first(data, "debugMessage", "debug_message"),
            product_id=_first(data, "productId", "product_id"),
        )
