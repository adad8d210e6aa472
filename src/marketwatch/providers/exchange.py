"""Exchange market data via ccxt unified calls (ticker, funding, open interest).

Uses ccxt unified symbols: "BTC/USDT" for spot, "BTC/USDT:USDT" for the
linear perpetual.
"""

from typing import Any

from marketwatch.models import ProviderRequest
from marketwatch.providers.validation import ParsedValue, extract


def spot_symbol(asset: str) -> str:
    return f"{asset.upper()}/USDT"


def perp_symbol(asset: str) -> str:
    return f"{asset.upper()}/USDT:USDT"


def ticker_request(asset: str) -> ProviderRequest:
    return ProviderRequest(exchange_call="fetch_ticker", exchange_args=(spot_symbol(asset),))


def parse_ticker_last(payload: Any) -> ParsedValue:
    last = extract(payload, lambda p: p["last"])
    return ParsedValue(
        raw=last,
        metadata={
            "symbol": payload.get("symbol"),
            "change_24h_pct": payload.get("percentage"),
        },
    )


def funding_rate_request(asset: str) -> ProviderRequest:
    return ProviderRequest(exchange_call="fetch_funding_rate", exchange_args=(perp_symbol(asset),))


def parse_funding_rate(payload: Any) -> ParsedValue:
    return ParsedValue(
        raw=extract(payload, lambda p: p["fundingRate"]),
        metadata={"next_funding_ms": payload.get("fundingTimestamp")},
    )


def open_interest_request(asset: str) -> ProviderRequest:
    return ProviderRequest(exchange_call="fetch_open_interest", exchange_args=(perp_symbol(asset),))


def parse_open_interest(payload: Any) -> ParsedValue:
    """Open interest in quote currency, falling back to contract amount."""
    value = payload.get("openInterestValue") if isinstance(payload, dict) else None
    if value is None:
        value = extract(payload, lambda p: p["openInterestAmount"])
        return ParsedValue(raw=value, metadata={"unit": "contracts"})
    return ParsedValue(raw=value, metadata={"unit": "USDT"})
