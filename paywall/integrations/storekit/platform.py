"""
Platform billing SDK surface.

Platform bindings subclass BillingPlatform; the purchase engine depends on
nothing else. Listener callbacks are coroutine functions.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Sequence

from paywall.integrations.storekit.models import Purchase, PurchaseErrorEvent

PurchaseListener = Callable[[Purchase], Awaitable[None]]
PurchaseErrorListener = Callable[[PurchaseErrorEvent], Awaitable[None]]


class ListenerSubscription(ABC):
    """Registration handle returned by the listener methods."""

    @abstractmethod
    def remove(self) -> None:
        pass


class BillingPlatform(ABC):
    """Connection, catalogue, purchase and receipt operations of a billing SDK."""

    @property
    def is_supported(self) -> bool:
        """False on platforms without in-app purchases."""
        return True

    @abstractmethod
    async def init_connection(self) -> bool:
        pass

    @abstractmethod
    async def end_connection(self) -> None:
        pass

    @abstractmethod
    async def fetch_products(self, product_ids: Sequence[str]) -> List[Mapping[str, Any]]:
        """Raw product dictionaries for the given identifiers."""

    @abstractmethod
    async def request_purchase(self, product_id: str) -> None:
        """Start a purchase; the outcome arrives through the listeners."""

    @abstractmethod
    async def get_available_purchases(self) -> List[Purchase]:
        pass

    @abstractmethod
    async def finish_transaction(self, purchase: Purchase) -> None:
        """Acknowledge a transaction so the SDK stops redelivering it."""

    @abstractmethod
    def add_purchase_updated_listener(self, listener: PurchaseListener) -> ListenerSubscription:
        pass

    @abstractmethod
    def add_purchase_error_listener(
        self, listener: PurchaseErrorListener
    ) -> ListenerSubscription:
        pass

    @abstractmethod
    async def get_receipt(self) -> Optional[str]:
        """Legacy app-wide receipt (base64), if available."""

    @abstractmethod
    async def get_transaction_token(self, transaction_id: str) -> Optional[str]:
        """Signed per-transaction token from the modern verification API."""
