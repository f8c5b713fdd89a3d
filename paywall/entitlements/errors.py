"""
Structured error classes for entitlement resolution and purchase handling.
"""

from enum import Enum
from typing import Optional

from fastapi import status


class PaywallError(Exception):
    """Base exception for paywall errors."""
    pass


class AuthenticationRequiredError(PaywallError):
    """Raised when no authenticated user is available. Never retried."""

    def __init__(self, message: str = "User not authenticated"):
        super().__init__(message)


class LimitExceededError(PaywallError):
    """
    Raised when a user tries to create a resource past their tier limit.

    Carries the counts so the caller can render a paywall.
    """

    def __init__(
        self,
        reason: str,
        current_count: int,
        limit: Optional[int],
        is_premium: bool,
        resource: Optional[str] = None,
        http_status: int = status.HTTP_402_PAYMENT_REQUIRED,
    ):
        """
        Initialize limit exceeded error.

        Args:
            reason: Human-readable reason
            current_count: Resources the user currently has
            limit: Tier limit (None when unknown)
            is_premium: Whether the user is on the premium tier
            resource: Resource kind that was blocked
            http_status: HTTP status code (default 402)
        """
        self.reason = reason
        self.current_count = current_count
        self.limit = limit
        self.is_premium = is_premium
        self.resource = resource
        self.http_status = http_status
        super().__init__(reason)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": "limit_exceeded",
            "reason": self.reason,
            "resource": self.resource,
            "current_count": self.current_count,
            "limit": self.limit,
            "is_premium": self.is_premium,
            "machine_readable": {
                "code": "upgrade_required" if not self.is_premium else "limit_reached",
                "resource": self.resource,
            },
        }

    def to_user_message(self) -> str:
        if self.is_premium:
            return self.reason
        return f"{self.reason} Upgrade to Premium for unlimited tracking."


class TierNotFoundError(PaywallError):
    """Raised when tier information cannot be resolved and no default applies."""

    def __init__(self, message: str, tier_id: Optional[str] = None):
        self.tier_id = tier_id
        super().__init__(message)


class AlreadyPremiumError(PaywallError):
    """Raised when an upgrade is requested for a user who already has premium."""

    def __init__(self, message: str = "User already has premium subscription"):
        super().__init__(message)


class AuthorizationUnavailableError(PaywallError):
    """
    Raised when the authorization channel fails and fail-open is disabled.
    """

    def __init__(self, message: str, resource: Optional[str] = None):
        self.resource = resource
        super().__init__(message)


class IAPErrorCode(str, Enum):
    """In-app purchase error codes."""
    USER_CANCELLED = "USER_CANCELLED"
    ALREADY_OWNED = "ALREADY_OWNED"
    INVALID_PRODUCT = "INVALID_PRODUCT"
    NOT_INITIALIZED = "NOT_INITIALIZED"
    INIT_FAILED = "INIT_FAILED"
    NETWORK_ERROR = "NETWORK_ERROR"
    SKU_NOT_FOUND = "SKU_NOT_FOUND"
    UNKNOWN = "UNKNOWN"


# Raw SDK codes mapped onto IAPErrorCode
_SDK_CODE_MAP = {
    "E_USER_CANCELLED": IAPErrorCode.USER_CANCELLED,
    "user-cancelled": IAPErrorCode.USER_CANCELLED,
    "E_ALREADY_OWNED": IAPErrorCode.ALREADY_OWNED,
    "already-owned": IAPErrorCode.ALREADY_OWNED,
    "sku-not-found": IAPErrorCode.SKU_NOT_FOUND,
    "E_ITEM_UNAVAILABLE": IAPErrorCode.SKU_NOT_FOUND,
    "E_NETWORK_ERROR": IAPErrorCode.NETWORK_ERROR,
    "network-error": IAPErrorCode.NETWORK_ERROR,
    "E_NOT_PREPARED": IAPErrorCode.NOT_INITIALIZED,
    "init-connection": IAPErrorCode.INIT_FAILED,
}


class IAPError(PaywallError):
    """In-app purchase failure with a normalized code."""

    def __init__(
        self,
        code: IAPErrorCode,
        message: str,
        debug_message: Optional[str] = None,
    ):
        self.code = code
        self.message = message
        self.debug_message = debug_message
        super().__init__(f"[{code.value}] {message}")

    @property
    def is_cancellation(self) -> bool:
        return self.code == IAPErrorCode.USER_CANCELLED

    @staticmethod
    def classify(code: Optional[str], message: Optional[str] = None) -> IAPErrorCode:
        """Map a raw SDK code (and message, for cancellations) to IAPErrorCode."""
        if code and code in _SDK_CODE_MAP:
            return _SDK_CODE_MAP[code]
        if message and "cancel" in message.lower():
            return IAPErrorCode.USER_CANCELLED
        return IAPErrorCode.UNKNOWN

    @classmethod
    def from_exception(cls, exc: BaseException) -> "IAPError":
        """Normalize any exception raised by the billing platform."""
        if isinstance(exc, IAPError):
            return exc
        raw_code = getattr(exc, "code", None)
        message = str(exc) or exc.__class__.__name__
        code = cls.classify(raw_code if isinstance(raw_code, str) else None, message)
        return cls(code, message, debug_message=getattr(exc, "debug_message", None))

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "message": self.message,
            "debug_message": self.debug_message,
        }
