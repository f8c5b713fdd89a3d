"""
Configuration loaders.
"""

from paywall.config.billing_config import (
    BillingConfig,
    get_billing_config,
    reset_billing_config,
)

__all__ = ["BillingConfig", "get_billing_config", "reset_billing_config"]
