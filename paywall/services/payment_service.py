"""
Card-processor purchase initiation.

Starts a subscription checkout through the create-subscription edge function.
Entitlement is NOT granted here: it flips when the processor's webhook
updates the subscription row.
"""

import logging
from typing import Any, Dict, Optional, Union

from paywall.config.billing_config import BillingConfig, get_billing_config
from paywall.entitlements.errors import PaywallError
from paywall.integrations.supabase.client import SupabaseAPIError, SupabaseClient
from paywall.models import BillingCycle

logger = logging.getLogger(__name__)

# Wire names used by the edge function and price table
_CYCLE_WIRE_NAMES = {
    BillingCycle.MONTHLY: "monthly",
    BillingCycle.ANNUAL: "yearly",
}


class PaymentInitiationError(PaywallError):
    """Checkout could not be started."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class PaymentService:
    def __init__(self, client: SupabaseClient, config: Optional[BillingConfig] = None):
        self.client = client
        self.config = config or get_billing_config()

    async def initiate_subscription(self, cycle: Union[BillingCycle, str]) -> Dict[str, Any]:
        """
        Start a subscription checkout.

        Args:
            cycle: Billing cycle (monthly or annual)

        Returns:
            Edge function payload (client secret / checkout data)

        Raises:
            PaymentInitiationError: If the function call fails
        """
        cycle = BillingCycle(cycle)
        wire_cycle = _CYCLE_WIRE_NAMES[cycle]
        price_id = self.config.stripe.price_ids.get(wire_cycle)

        try:
            payload = await self.client.invoke_function(
                self.config.stripe.create_subscription_function,
                {"billingCycle": wire_cycle, "priceId": price_id},
            )
        except SupabaseAPIError as e:
            logger.error("Failed to start subscription checkout", extra={
                "billing_cycle": wire_cycle,
                "status_code": e.status_code,
                "error": str(e),
            })
            raise PaymentInitiationError(
                f"Unable to start checkout: {e}", status_code=e.status_code
            ) from e

        logger.info("Subscription checkout started", extra={"billing_cycle": wire_cycle})
        return payload or {}
