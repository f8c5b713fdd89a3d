"""
Client for the remote receipt validation function.

The function verifies the receipt with the platform and writes the
subscription server-side. Its success flag is authoritative.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from paywall.config.billing_config import BillingConfig, get_billing_config
from paywall.integrations.supabase.client import SupabaseAPIError, SupabaseClient

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    success: bool
    error: Optional[str] = None


class ReceiptValidator:
    """Submits receipts to the validation edge function."""

    def __init__(self, client: SupabaseClient, config: Optional[BillingConfig] = None):
        self.client = client
        self.config = config or get_billing_config()

    async def validate(self, receipt_data: str, user_id: str) -> ValidationResult:
        """
        Validate a receipt for a user.

        Never raises: transport and API failures come back as an unsuccessful
        result so the caller can apply its fallback.

        Args:
            receipt_data: Base64 receipt or signed transaction token
            user_id: User the purchase belongs to

        Returns:
            ValidationResult
        """
        function = self.config.apple_iap.validation_function
        try:
            payload = await self.client.invoke_function(function, {
                "receiptData": receipt_data,
                "userId": user_id,
            })
        except SupabaseAPIError as e:
            logger.warning("Receipt validation request failed", extra={
                "user_id": user_id,
                "receipt_length": len(receipt_data),
                "status_code": e.status_code,
                "error": str(e),
            })
            return ValidationResult(success=False, error=str(e))

        payload = payload or {}
        result = ValidationResult(
            success=bool(payload.get("success")),
            error=payload.get("error"),
        )
        if result.success:
            logger.info("Receipt validated", extra={"user_id": user_id})
        else:
            logger.warning("Receipt rejected by validator", extra={
                "user_id": user_id,
                "receipt_length": len(receipt_data),
                "error": result.error,
            })
        return result
