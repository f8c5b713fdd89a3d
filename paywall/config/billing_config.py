"""
Billing configuration loader.

Loads cache TTLs, limit policy, refresh/retry timing, product catalogue and
remote endpoints from config/billing.yml.

Environment overrides (applied after the YAML is read):
    PAYWALL_CONFIG_PATH            explicit path to billing.yml
    PAYWALL_FAIL_OPEN              "true"/"false"
    PAYWALL_SETTLE_DELAY_SECONDS   float
    SUPABASE_URL, SUPABASE_ANON_KEY, SUPABASE_SERVICE_ROLE_KEY
    VALIDATION_WEBHOOK_SECRET
    DATABASE_URL

Usage:
    from paywall.config.billing_config import get_billing_config

    config = get_billing_config()
    if config.limits.fail_open:
        ...
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "billing.yml"


@dataclass(frozen=True)
class DefaultTierConfig:
    name: str = "free"
    description: str = "Free plan"
    max_resources: Optional[int] = 5
    monthly_price: float = 0.0
    annual_price: float = 0.0
    features: Tuple[str, ...] = ("cloud_sync", "renewal_reminders", "basic_stats")


@dataclass(frozen=True)
class TierConfig:
    free_tier_id: str = "free"
    premium_tier_id: str = "premium"
    default_free: DefaultTierConfig = field(default_factory=DefaultTierConfig)


@dataclass(frozen=True)
class CacheTTLConfig:
    """TTL tiers in seconds."""
    short: float = 60.0
    medium: float = 300.0
    long: float = 900.0
    very_long: float = 3600.0


@dataclass(frozen=True)
class LimitsConfig:
    fail_open: bool = True
    fail_open_default_limit: int = 5
    # Resource kinds whose refresh clears the whole cache, not just the user group
    full_clear_on_refresh: Tuple[str, ...] = ("recurring_item",)


@dataclass(frozen=True)
class RefreshConfig:
    settle_delay_seconds: float = 1.5
    max_attempts: int = 3
    initial_backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 8.0

    def backoff_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based), capped."""
        delay = self.initial_backoff_seconds * (self.backoff_multiplier ** attempt)
        return min(delay, self.max_backoff_seconds)


@dataclass(frozen=True)
class AppleIAPConfig:
    product_ids: Tuple[str, ...] = (
        "com.example.tracker.premium.monthly.v1",
        "com.example.tracker.premium.yearly.v1",
    )
    validation_function: str = "validate-apple-receipt"
    local_transaction_id_max_length: int = 6

    def is_valid_product_id(self, product_id: str) -> bool:
        return product_id in self.product_ids


@dataclass(frozen=True)
class StripeConfig:
    create_subscription_function: str = "create-subscription"
    price_ids: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ReconciliationConfig:
    fallback_confirmation_hours: float = 72.0
    max_grants_per_run: int = 500


@dataclass(frozen=True)
class SupabaseConfig:
    url: Optional[str] = None
    anon_key: Optional[str] = None
    service_role_key: Optional[str] = None
    timeout_seconds: float = 30.0
    connect_timeout_seconds: float = 10.0


@dataclass(frozen=True)
class BillingConfig:
    """Complete paywall configuration."""
    tiers: TierConfig = field(default_factory=TierConfig)
    cache_ttl: CacheTTLConfig = field(default_factory=CacheTTLConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    apple_iap: AppleIAPConfig = field(default_factory=AppleIAPConfig)
    stripe: StripeConfig = field(default_factory=StripeConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    supabase: SupabaseConfig = field(default_factory=SupabaseConfig)
    validation_webhook_secret: Optional[str] = None
    database_url: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "BillingConfig":
        """Build config from the parsed YAML document; missing keys keep defaults."""
        tiers_raw = raw.get("tiers") or {}
        free_raw = tiers_raw.get("default_free") or {}
        default_free = DefaultTierConfig(
            name=free_raw.get("name", "free"),
            description=free_raw.get("description", "Free plan"),
            max_resources=free_raw.get("max_resources", 5),
            monthly_price=float(free_raw.get("monthly_price", 0)),
            annual_price=float(free_raw.get("annual_price", 0)),
            features=tuple(free_raw.get("features") or DefaultTierConfig.features),
        )
        tiers = TierConfig(
            free_tier_id=tiers_raw.get("free_tier_id", "free"),
            premium_tier_id=tiers_raw.get("premium_tier_id", "premium"),
            default_free=default_free,
        )

        ttl_raw = raw.get("cache_ttl_seconds") or {}
        cache_ttl = CacheTTLConfig(**{
            key: float(value) for key, value in ttl_raw.items()
            if key in ("short", "medium", "long", "very_long")
        })

        limits_raw = raw.get("limits") or {}
        limits = LimitsConfig(
            fail_open=bool(limits_raw.get("fail_open", True)),
            fail_open_default_limit=int(limits_raw.get("fail_open_default_limit", 5)),
            full_clear_on_refresh=tuple(
                limits_raw.get("full_clear_on_refresh", LimitsConfig.full_clear_on_refresh) or ()
            ),
        )

        refresh_raw = raw.get("refresh") or {}
        refresh = RefreshConfig(**{
            key: (int(value) if key == "max_attempts" else float(value))
            for key, value in refresh_raw.items()
            if key in RefreshConfig.__dataclass_fields__
        })

        iap_raw = raw.get("apple_iap") or {}
        apple_iap = AppleIAPConfig(
            product_ids=tuple(iap_raw.get("product_ids") or AppleIAPConfig.product_ids),
            validation_function=iap_raw.get("validation_function", "validate-apple-receipt"),
            local_transaction_id_max_length=int(iap_raw.get("local_transaction_id_max_length", 6)),
        )

        stripe_raw = raw.get("stripe") or {}
        stripe = StripeConfig(
            create_subscription_function=stripe_raw.get(
                "create_subscription_function", "create-subscription"
            ),
            price_ids=dict(stripe_raw.get("price_ids") or {}),
        )

        recon_raw = raw.get("reconciliation") or {}
        reconciliation = ReconciliationConfig(
            fallback_confirmation_hours=float(recon_raw.get("fallback_confirmation_hours", 72)),
            max_grants_per_run=int(recon_raw.get("max_grants_per_run", 500)),
        )

        supabase_raw = raw.get("supabase") or {}
        supabase = SupabaseConfig(
            url=supabase_raw.get("url"),
            anon_key=supabase_raw.get("anon_key"),
            service_role_key=supabase_raw.get("service_role_key"),
            timeout_seconds=float(supabase_raw.get("timeout_seconds", 30.0)),
            connect_timeout_seconds=float(supabase_raw.get("connect_timeout_seconds", 10.0)),
        )

        return cls(
            tiers=tiers,
            cache_ttl=cache_ttl,
            limits=limits,
            refresh=refresh,
            apple_iap=apple_iap,
            stripe=stripe,
            reconciliation=reconciliation,
            supabase=supabase,
            validation_webhook_secret=raw.get("validation_webhook_secret"),
            database_url=raw.get("database_url"),
        )


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def apply_env_overrides(raw: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Overlay environment variables onto the raw YAML document."""
    env = os.environ if environ is None else environ
    raw = dict(raw)

    if "PAYWALL_FAIL_OPEN" in env:
        raw["limits"] = {**(raw.get("limits") or {}), "fail_open": _parse_bool(env["PAYWALL_FAIL_OPEN"])}
    if "PAYWALL_SETTLE_DELAY_SECONDS" in env:
        raw["refresh"] = {
            **(raw.get("refresh") or {}),
            "settle_delay_seconds": float(env["PAYWALL_SETTLE_DELAY_SECONDS"]),
        }

    supabase = dict(raw.get("supabase") or {})
    for env_key, config_key in (
        ("SUPABASE_URL", "url"),
        ("SUPABASE_ANON_KEY", "anon_key"),
        ("SUPABASE_SERVICE_ROLE_KEY", "service_role_key"),
    ):
        if env.get(env_key):
            supabase[config_key] = env[env_key]
    raw["supabase"] = supabase

    if env.get("VALIDATION_WEBHOOK_SECRET"):
        raw["validation_webhook_secret"] = env["VALIDATION_WEBHOOK_SECRET"]

    database_url = env.get("DATABASE_URL")
    if database_url:
        # Handle Render's postgres:// URL format
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        raw["database_url"] = database_url

    return raw


def _resolve_path(config_path: Optional[str]) -> Optional[Path]:
    explicit = config_path or os.getenv("PAYWALL_CONFIG_PATH")
    if explicit:
        return Path(explicit)

    candidates = [
        Path(__file__).parent.parent.parent / "config" / CONFIG_FILENAME,
        Path(os.getcwd()) / "config" / CONFIG_FILENAME,
    ]
    for candidate in candidates:
        resolved = candidate.resolve()
        if resolved.exists():
            return resolved
    return None


def load_billing_config(config_path: Optional[str] = None) -> BillingConfig:
    """
    Read billing.yml and apply environment overrides.

    A missing file is not fatal: built-in defaults are used and a warning is
    logged. A file that exists but cannot be parsed raises.
    """
    path = _resolve_path(config_path)
    raw: Dict[str, Any] = {}

    if path is None or not path.exists():
        logger.warning("billing.yml not found, using built-in defaults", extra={
            "config_path": str(path) if path else None
        })
    else:
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
        logger.info("Loaded billing configuration", extra={
            "config_path": str(path),
            "version": raw.get("version"),
        })

    return BillingConfig.from_dict(apply_env_overrides(raw))


_config_instance: Optional[BillingConfig] = None
_config_lock = Lock()


def get_billing_config(config_path: Optional[str] = None) -> BillingConfig:
    """Get the process-wide BillingConfig, loading it on first use."""
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = load_billing_config(config_path)
    return _config_instance


def reset_billing_config() -> None:
    """Reset singleton (for tests only)."""
    global _config_instance
    with _config_lock:
        _config_instance = None


def product_ids_from(config: BillingConfig) -> List[str]:
    return list(config.apple_iap.product_ids)
