"""Configuration system using pydantic-settings with environment variable loading."""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderKeySettings(BaseSettings):
    """Credentials for external data providers."""

    model_config = SettingsConfigDict(env_prefix="PROVIDER_")

    fred_api_key: SecretStr = SecretStr("")
    alpha_vantage_api_key: SecretStr = SecretStr("")
    coingecko_api_key: SecretStr = SecretStr("")
    exchange_id: str = "binance"  # ccxt exchange used for ticker/derivatives data
    required: list[str] = ["fred_api_key"]  # keys that must be set at startup


class FetcherSettings(BaseSettings):
    """Outbound call behaviour shared by every provider."""

    model_config = SettingsConfigDict(env_prefix="FETCHER_")

    rate_limit_backoff: float = 60.0  # fixed delay before the single 429 retry
    transient_retry_delay: float = 1.0
    default_timeout: float = 10.0


class CacheSettings(BaseSettings):
    """Response cache TTLs and sweep behaviour."""

    model_config = SettingsConfigDict(env_prefix="CACHE_")

    fast_ttl: float = 300.0  # prices, indices, sentiment
    slow_ttl: float = 900.0  # yields, inflation, on-chain
    sweep_interval: float = 60.0
    max_entries: int = 1000


class CollectionSettings(BaseSettings):
    """Collection cycle scheduling and derived-statistics parameters.

    All fields configurable via COLLECTION_ environment variable prefix.
    """

    model_config = SettingsConfigDict(env_prefix="COLLECTION_")

    enabled: bool = True
    core_interval: int = 3600  # seconds between core cycles
    extended_hour: int = 6  # UTC hour for the daily extended cycle
    maintenance_hour: int = 3  # UTC hour for the daily alert maintenance pass
    cycle_deadline: float = 600.0  # hard wall-clock limit per cycle
    fanout_deadline: float = 480.0  # part of cycle_deadline given to metric collection
    group_concurrency: int = 2  # concurrent metrics per provider group
    crypto_symbols: list[str] = ["BTC", "ETH", "SOL", "SUI", "XRP"]
    stablecoin_symbols: list[str] = ["USDT", "USDC", "DAI"]
    correlation_lookback: int = 30
    correlation_min_points: int = 3
    narrative_top_k: int = 8
    event_lookahead_days: int = 14


class AlertSettings(BaseSettings):
    """Alert dedup, retention and threshold configuration."""

    model_config = SettingsConfigDict(env_prefix="ALERT_")

    dedup_window: float = 3600.0  # 1h for metric alerts
    event_window: float = 86400.0  # 24h for upcoming-event alerts
    retention_days: int = 7
    event_horizon_days: int = 3
    webhook_url: str = ""

    # SSR bands
    ssr_very_bullish: Decimal = Decimal("2.0")
    ssr_bullish: Decimal = Decimal("4.0")
    ssr_bearish: Decimal = Decimal("6.0")
    ssr_very_bearish: Decimal = Decimal("8.0")

    # BTC dominance (% of total market cap)
    btc_dominance_high: Decimal = Decimal("55.0")
    btc_dominance_low: Decimal = Decimal("40.0")

    # Stablecoin market cap 24h change (%)
    stablecoin_rapid_growth: Decimal = Decimal("5.0")
    stablecoin_rapid_decline: Decimal = Decimal("-5.0")


class StoreSettings(BaseSettings):
    """Persistence location."""

    model_config = SettingsConfigDict(env_prefix="STORE_")

    db_path: str = "data/marketwatch.db"


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    providers: ProviderKeySettings = ProviderKeySettings()
    fetcher: FetcherSettings = FetcherSettings()
    cache: CacheSettings = CacheSettings()
    collection: CollectionSettings = CollectionSettings()
    alerts: AlertSettings = AlertSettings()
    store: StoreSettings = StoreSettings()


@dataclass
class StartupCheck:
    """Outcome of startup validation.

    ``ok`` is False when any required credential is missing; ``missing``
    lists the offending setting names.
    """

    ok: bool
    missing: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def validate_startup(settings: AppSettings) -> StartupCheck:
    """Check that every required provider credential is present.

    Returns a StartupCheck instead of exiting so tests and alternate entry
    points decide what a failure means. Optional keys that are empty are
    reported as warnings: their providers are simply skipped.
    """
    missing: list[str] = []
    warnings: list[str] = []
    keys = settings.providers

    for name in ("fred_api_key", "alpha_vantage_api_key", "coingecko_api_key"):
        secret = getattr(keys, name)
        if secret.get_secret_value():
            continue
        if name in keys.required:
            missing.append(name)
        else:
            warnings.append(name)

    for name in keys.required:
        if not hasattr(keys, name):
            missing.append(name)

    return StartupCheck(ok=not missing, missing=missing, warnings=warnings)
