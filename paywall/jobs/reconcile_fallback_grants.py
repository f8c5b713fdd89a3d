"""
Local-fallback grant correction job.

When receipt validation is unavailable the purchase engine grants premium
locally. This job closes that window: grants the server confirmed are
marked verified, grants that stay unconfirmed past
reconciliation.fallback_confirmation_hours are revoked.

The validation webhook (api/routes/webhooks_validation.py) uses the same
FallbackGrantReconciler to correct a single user as soon as the outcome is
known.

Usage:
    python -m paywall.jobs.reconcile_fallback_grants

Run as a cron job next to the subscription database.
"""

import asyncio
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from paywall.config.billing_config import BillingConfig, get_billing_config
from paywall.entitlements.cache import TTLCache
from paywall.models import ensure_utc, utcnow
from paywall.repositories.entitlement_repository import (
    EntitlementRepository,
    SqlEntitlementRepository,
)

logger = logging.getLogger(__name__)


class ReconciliationStats:
    """Track reconciliation run statistics."""

    def __init__(self):
        self.grants_checked = 0
        self.grants_confirmed = 0
        self.grants_revoked = 0
        self.errors = 0
        self.start_time = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "grants_checked": self.grants_checked,
            "grants_confirmed": self.grants_confirmed,
            "grants_revoked": self.grants_revoked,
            "errors": self.errors,
            "duration_seconds": duration,
        }


class FallbackGrantReconciler:
    """Confirms or revokes local-fallback entitlement grants."""

    def __init__(
        self,
        repository: EntitlementRepository,
        cache: Optional[TTLCache] = None,
        config: Optional[BillingConfig] = None,
    ):
        self.repository = repository
        self.cache = cache
        self.config = config or get_billing_config()

    def _invalidate(self, user_id: str, reason: str) -> None:
        if self.cache is not None:
            self.cache.invalidate_user(user_id, reason=reason)

    async def revoke_fallback_grant(
        self, user_id: str, reason: str, now: Optional[datetime] = None
    ) -> bool:
        """
        Revoke a still-unconfirmed local-fallback grant effective now.

        The subscription row is kept, canceled with no remaining paid period.

        Returns:
            True if a grant was revoked
        """
        now = ensure_utc(now) if now else utcnow()
        revoked = await self.repository.revoke_fallback_grant(user_id, now)
        if revoked:
            self._invalidate(user_id, reason=f"fallback_revoked:{reason}")
            logger.warning("Revoked local fallback grant", extra={
                "user_id": user_id,
                "reason": reason,
            })
        else:
            logger.info("No fallback grant to revoke", extra={"user_id": user_id, "reason": reason})
        return revoked

    async def confirm_fallback_grant(self, user_id: str) -> bool:
        """Mark a fallback grant as server verified. Returns True if one was pending."""
        confirmed = await self.repository.mark_server_verified(user_id)
        if confirmed:
            self._invalidate(user_id, reason="fallback_confirmed")
            logger.info("Local fallback grant confirmed by server", extra={"user_id": user_id})
        return confirmed

    async def sweep(self, now: Optional[datetime] = None) -> ReconciliationStats:
        """
        Process every fallback grant older than the confirmation window.

        Per-user failures are counted and logged; they never abort the sweep.
        """
        stats = ReconciliationStats()
        now = ensure_utc(now) if now else utcnow()
        window = timedelta(hours=self.config.reconciliation.fallback_confirmation_hours)
        cutoff = now - window

        grants = await self.repository.list_fallback_grants(
            granted_before=cutoff,
            limit=self.config.reconciliation.max_grants_per_run,
        )
        logger.info("Found fallback grants to reconcile", extra={
            "grant_count": len(grants),
            "cutoff": cutoff.isoformat(),
        })

        for grant in grants:
            stats.grants_checked += 1
            try:
                since = grant.fallback_granted_at or grant.current_period_start or cutoff
                if await self.repository.has_server_confirmation(grant.user_id, since):
                    if await self.confirm_fallback_grant(grant.user_id):
                        stats.grants_confirmed += 1
                elif await self.revoke_fallback_grant(
                    grant.user_id, reason="unconfirmed_after_window", now=now
                ):
                    stats.grants_revoked += 1
            except Exception as e:
                logger.error("Error reconciling fallback grant", extra={
                    "user_id": grant.user_id,
                    "error": str(e),
                })
                stats.errors += 1

        return stats


def get_database_session(config: Optional[BillingConfig] = None) -> Session:
    """Create database session for the reconciliation job."""
    config = config or get_billing_config()
    if not config.database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    engine = create_engine(config.database_url, pool_pre_ping=True)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return SessionLocal()


async def run_reconciliation(session: Optional[Session] = None) -> dict:
    """
    Run the fallback grant correction job.

    Returns:
        Statistics dictionary with job results
    """
    logger.info("Starting fallback grant reconciliation job")

    owns_session = session is None
    session = session or get_database_session()
    try:
        reconciler = FallbackGrantReconciler(SqlEntitlementRepository(session))
        stats = await reconciler.sweep()
        result = stats.to_dict()
        logger.info("Fallback grant reconciliation completed", extra=result)
        return result
    except Exception as e:
        logger.error("Fallback grant reconciliation failed", extra={"error": str(e)})
        raise
    finally:
        if owns_session:
            session.close()


def main():
    """Entry point for running the correction job from the command line."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        result = asyncio.run(run_reconciliation())
        print(f"Reconciliation completed: {result}")
        sys.exit(0)
    except Exception as e:
        print(f"Reconciliation failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
