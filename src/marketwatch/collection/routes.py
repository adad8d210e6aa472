"""Metric routes for the core and extended collection cycles.

Each route binds a logical metric to its provider chain. Providers whose
credential is empty are left out of the chain; a metric whose chain ends up
empty is not registered at all (and is logged once at startup).
"""

from marketwatch.collection.resolver import MetricRoute, ProviderBinding
from marketwatch.config import AppSettings
from marketwatch.logging import get_logger
from marketwatch.models import CycleKind, DataClass, LogicalMetric
from marketwatch.providers import (
    alphavantage,
    alternative_me,
    blockchain_info,
    coingecko,
    exchange,
    fred,
    yahoo,
)
from marketwatch.providers.catalog import (
    ALPHA_VANTAGE,
    ALTERNATIVE_ME,
    BLOCKCHAIN_INFO,
    COINGECKO,
    EXCHANGE,
    FRED,
    YAHOO,
)
from marketwatch.providers.validation import (
    FUNDING_RATE,
    INDEX_0_100,
    NON_NEGATIVE,
    PERCENTAGE,
    POSITIVE,
    YIELD,
    ValueDomain,
)

logger = get_logger(__name__)

# Logical data types
EQUITY_INDEX = "EQUITY_INDEX"
VOLATILITY_INDEX = "VOLATILITY_INDEX"
DXY = "DXY"
ENERGY_PRICE = "ENERGY_PRICE"
TREASURY_YIELD = "TREASURY_YIELD"
CRYPTO_PRICE = "CRYPTO_PRICE"
CRYPTO_MARKET_CAP = "CRYPTO_MARKET_CAP"
BTC_DOMINANCE = "BTC_DOMINANCE"
STABLECOIN_MARKET_CAP = "STABLECOIN_MARKET_CAP"
FEAR_GREED = "FEAR_GREED"
INFLATION = "INFLATION"
EMPLOYMENT = "EMPLOYMENT"
INTEREST_RATE = "INTEREST_RATE"
ONCHAIN = "ONCHAIN"
DERIVATIVES = "DERIVATIVES"

BTC_DOMINANCE_METRIC = LogicalMetric(BTC_DOMINANCE, "BTC")
FEAR_GREED_METRIC = LogicalMetric(FEAR_GREED, "INDEX")


def crypto_price(symbol: str) -> LogicalMetric:
    return LogicalMetric(CRYPTO_PRICE, symbol)


def crypto_market_cap(symbol: str) -> LogicalMetric:
    return LogicalMetric(CRYPTO_MARKET_CAP, symbol)


def stablecoin_market_cap(symbol: str) -> LogicalMetric:
    return LogicalMetric(STABLECOIN_MARKET_CAP, symbol)


class _RouteBuilder:
    """Collects routes, dropping bindings whose provider has no credential."""

    def __init__(self, settings: AppSettings) -> None:
        keys = settings.providers
        self.fred_key = keys.fred_api_key.get_secret_value()
        self.av_key = keys.alpha_vantage_api_key.get_secret_value()
        self.cg_key = keys.coingecko_api_key.get_secret_value()
        self.routes: list[MetricRoute] = []
        self.skipped: list[str] = []

    def add(
        self,
        metric: LogicalMetric,
        data_class: DataClass,
        cycle: CycleKind,
        *bindings: ProviderBinding | None,
    ) -> None:
        kept = [b for b in bindings if b is not None]
        if not kept:
            self.skipped.append(metric.key)
            return
        self.routes.append(MetricRoute(metric, data_class, cycle, kept))

    # Bindings that need a key return None when it is missing

    def fred(self, symbol: str, domain: ValueDomain = POSITIVE) -> ProviderBinding | None:
        if not self.fred_key:
            return None
        series_id = fred.SERIES[symbol]
        return ProviderBinding(
            FRED,
            lambda: fred.observations_request(self.fred_key, series_id),
            fred.parse_latest_observation,
            domain,
        )

    def av_daily(self, ticker: str) -> ProviderBinding | None:
        if not self.av_key:
            return None
        return ProviderBinding(
            ALPHA_VANTAGE,
            lambda: alphavantage.daily_series_request(self.av_key, ticker),
            alphavantage.parse_daily_close,
            POSITIVE,
        )

    def av_treasury(self, maturity: str) -> ProviderBinding | None:
        if not self.av_key:
            return None
        return ProviderBinding(
            ALPHA_VANTAGE,
            lambda: alphavantage.treasury_request(self.av_key, maturity),
            alphavantage.parse_data_series,
            YIELD,
        )

    def av_economic(
        self, function: str, domain: ValueDomain = POSITIVE, interval: str = "monthly"
    ) -> ProviderBinding | None:
        if not self.av_key:
            return None
        return ProviderBinding(
            ALPHA_VANTAGE,
            lambda: alphavantage.economic_request(self.av_key, function, interval),
            alphavantage.parse_data_series,
            domain,
        )


def _yahoo(ticker: str) -> ProviderBinding:
    return ProviderBinding(YAHOO, lambda: yahoo.chart_request(ticker), yahoo.parse_chart, POSITIVE)


def build_routes(settings: AppSettings) -> list[MetricRoute]:
    """Build every metric route for the configured symbols and credentials."""
    b = _RouteBuilder(settings)
    core, extended = CycleKind.CORE, CycleKind.EXTENDED
    cg_key = b.cg_key

    # Core: markets
    b.add(LogicalMetric(EQUITY_INDEX, "SP500"), DataClass.FAST, core, _yahoo("SPY"), b.av_daily("SPY"))
    b.add(LogicalMetric(EQUITY_INDEX, "NASDAQ"), DataClass.FAST, core, _yahoo("QQQ"), b.av_daily("QQQ"))
    b.add(LogicalMetric(VOLATILITY_INDEX, "VIX"), DataClass.FAST, core, _yahoo("^VIX"))
    b.add(LogicalMetric(DXY, "USD_INDEX"), DataClass.FAST, core, _yahoo("DX-Y.NYB"))
    b.add(
        LogicalMetric(ENERGY_PRICE, "OIL_WTI"),
        DataClass.FAST,
        core,
        _yahoo("CL=F"),
        b.av_economic("WTI", interval="daily"),
    )
    b.add(LogicalMetric(TREASURY_YIELD, "2Y"), DataClass.SLOW, core, b.fred("2Y", YIELD), b.av_treasury("2year"))
    b.add(LogicalMetric(TREASURY_YIELD, "10Y"), DataClass.SLOW, core, b.fred("10Y", YIELD), b.av_treasury("10year"))

    # Core: crypto
    for symbol in settings.collection.crypto_symbols:
        b.add(
            crypto_price(symbol),
            DataClass.FAST,
            core,
            ProviderBinding(
                COINGECKO,
                lambda s=symbol: coingecko.simple_price_request(s, cg_key),
                coingecko.parse_simple_price(symbol),
                POSITIVE,
            ),
            ProviderBinding(
                EXCHANGE,
                lambda s=symbol: exchange.ticker_request(s),
                exchange.parse_ticker_last,
                POSITIVE,
            ),
        )
        b.add(
            crypto_market_cap(symbol),
            DataClass.FAST,
            core,
            ProviderBinding(
                COINGECKO,
                lambda s=symbol: coingecko.simple_price_request(s, cg_key),
                coingecko.parse_simple_market_cap(symbol),
                POSITIVE,
            ),
        )
    b.add(
        BTC_DOMINANCE_METRIC,
        DataClass.FAST,
        core,
        ProviderBinding(
            COINGECKO, lambda: coingecko.global_request(cg_key), coingecko.parse_btc_dominance, PERCENTAGE
        ),
    )
    for symbol in settings.collection.stablecoin_symbols:
        b.add(
            stablecoin_market_cap(symbol),
            DataClass.FAST,
            core,
            ProviderBinding(
                COINGECKO,
                lambda s=symbol: coingecko.markets_request(s, cg_key),
                coingecko.parse_market_cap_with_change,
                POSITIVE,
            ),
        )
    b.add(
        FEAR_GREED_METRIC,
        DataClass.FAST,
        core,
        ProviderBinding(
            ALTERNATIVE_ME, alternative_me.fear_greed_request, alternative_me.parse_fear_greed, INDEX_0_100
        ),
    )

    # Extended: macro
    b.add(LogicalMetric(INFLATION, "CPI"), DataClass.SLOW, extended, b.fred("CPI"), b.av_economic("CPI"))
    b.add(LogicalMetric(INFLATION, "PCE"), DataClass.SLOW, extended, b.fred("PCE"))
    b.add(LogicalMetric(INFLATION, "PPI"), DataClass.SLOW, extended, b.fred("PPI"))
    b.add(
        LogicalMetric(EMPLOYMENT, "UNEMPLOYMENT_RATE"),
        DataClass.SLOW,
        extended,
        b.fred("UNEMPLOYMENT_RATE", PERCENTAGE),
        b.av_economic("UNEMPLOYMENT", PERCENTAGE),
    )
    b.add(
        LogicalMetric(INTEREST_RATE, "FED_FUNDS"),
        DataClass.SLOW,
        extended,
        b.fred("FED_FUNDS", NON_NEGATIVE),
        b.av_economic("FEDERAL_FUNDS_RATE", NON_NEGATIVE),
    )

    # Extended: on-chain and derivatives
    b.add(
        LogicalMetric(ONCHAIN, "BTC_HASH_RATE"),
        DataClass.SLOW,
        extended,
        ProviderBinding(
            BLOCKCHAIN_INFO, blockchain_info.stats_request, blockchain_info.parse_hash_rate, POSITIVE
        ),
    )
    b.add(
        LogicalMetric(DERIVATIVES, "BTC_FUNDING_RATE"),
        DataClass.SLOW,
        extended,
        ProviderBinding(
            EXCHANGE, lambda: exchange.funding_rate_request("BTC"), exchange.parse_funding_rate, FUNDING_RATE
        ),
    )
    b.add(
        LogicalMetric(DERIVATIVES, "BTC_OPEN_INTEREST"),
        DataClass.SLOW,
        extended,
        ProviderBinding(
            EXCHANGE, lambda: exchange.open_interest_request("BTC"), exchange.parse_open_interest, POSITIVE
        ),
    )

    if b.skipped:
        logger.warning("metrics_without_providers", metrics=b.skipped)
    logger.info(
        "metric_routes_built",
        core=sum(1 for r in b.routes if r.cycle == core),
        extended=sum(1 for r in b.routes if r.cycle == extended),
    )
    return b.routes
