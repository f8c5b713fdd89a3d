"""
Delayed receipt-validation outcome webhook.

The validation backend posts here once it conclusively knows whether a
purchase that was granted through the local fallback is real:
- confirmed: the grant becomes a server-verified entitlement
- rejected (or a REFUND / REVOKED / EXPIRED notification): the grant is revoked

SECURITY: Requests MUST carry a valid HMAC-SHA256 signature of the raw body
(base64) in X-Validation-Signature, keyed with VALIDATION_WEBHOOK_SECRET.
"""

import base64
import hashlib
import hmac
import json
import logging
from enum import Enum
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ValidationError

from paywall.config.billing_config import get_billing_config
from paywall.entitlements.cache import get_entitlement_cache
from paywall.jobs.reconcile_fallback_grants import FallbackGrantReconciler, get_database_session
from paywall.models import NotificationType
from paywall.repositories.entitlement_repository import SqlEntitlementRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "X-Validation-Signature"


class ValidationOutcome(str, Enum):
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class ValidationOutcomePayload(BaseModel):
    user_id: str
    outcome: ValidationOutcome
    notification_type: Optional[str] = None
    transaction_id: Optional[str] = None

    @property
    def revokes(self) -> bool:
        return (
            self.outcome == ValidationOutcome.REJECTED
            or self.notification_type in NotificationType.REVOKING
        )


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    action: str = "none"
    message: str = "Webhook processed"


def compute_signature(data: bytes, secret: str) -> str:
    """Base64 HMAC-SHA256 of the raw body."""
    digest = hmac.new(secret.encode("utf-8"), data, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_signature(data: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify the webhook signature.

    Args:
        data: Raw request body bytes
        signature: X-Validation-Signature header value
        secret: Shared webhook secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not secret:
        return False
    return hmac.compare_digest(compute_signature(data, secret), signature)


async def get_verified_payload(request: Request) -> ValidationOutcomePayload:
    """
    Read, verify and parse the webhook body.

    Raises:
        HTTPException: If the signature or body is invalid
    """
    secret = get_billing_config().validation_webhook_secret
    if not secret:
        logger.error("VALIDATION_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification not configured"
        )

    body = await request.body()
    if not verify_signature(body, request.headers.get(SIGNATURE_HEADER), secret):
        logger.warning("Invalid validation webhook signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature"
        )

    try:
        return ValidationOutcomePayload.model_validate(json.loads(body))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error("Invalid validation webhook body", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook body"
        )


def get_fallback_reconciler():
    """Reconciler bound to a request-scoped database session."""
    session = get_database_session()
    try:
        yield FallbackGrantReconciler(
            SqlEntitlementRepository(session),
            cache=get_entitlement_cache(),
        )
    finally:
        session.close()


@router.post("/receipt-validation", response_model=WebhookResponse)
async def handle_validation_outcome(
    payload: ValidationOutcomePayload = Depends(get_verified_payload),
    reconciler: FallbackGrantReconciler = Depends(get_fallback_reconciler),
):
    """
    Apply a delayed validation outcome to a local-fallback grant.

    SECURITY: Verifies the HMAC signature before processing.
    """
    logger.info("Validation outcome webhook received", extra={
        "user_id": payload.user_id,
        "outcome": payload.outcome.value,
        "notification_type": payload.notification_type,
    })

    if payload.revokes:
        reason = payload.notification_type or payload.outcome.value
        revoked = await reconciler.revoke_fallback_grant(payload.user_id, reason=reason)
        return WebhookResponse(
            action="revoked" if revoked else "none",
            message="Fallback grant revoked" if revoked else "No fallback grant to revoke",
        )

    confirmed = await reconciler.confirm_fallback_grant(payload.user_id)
    return WebhookResponse(
        action="confirmed" if confirmed else "none",
        message="Fallback grant confirmed" if confirmed else "No fallback grant pending",
    )
