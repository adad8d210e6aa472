"""CoinGecko crypto aggregator: prices, market caps, dominance, trending.

``parse_trending`` turns the /search/trending batch into TrendingItems for
narrative classification. CoinGecko reports volume and market cap there as
preformatted strings ("$1,234,567"), so they are cleaned before conversion.
"""

from collections.abc import Callable
from decimal import Decimal
from typing import Any

from marketwatch.exceptions import PayloadValidationError
from marketwatch.models import ProviderRequest, TrendingItem
from marketwatch.providers.validation import ParsedValue, extract, to_decimal

BASE_URL = "https://api.coingecko.com/api/v3"

COIN_IDS = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "SUI": "sui",
    "XRP": "ripple",
    "USDT": "tether",
    "USDC": "usd-coin",
    "DAI": "dai",
}


def _headers(api_key: str) -> dict[str, str]:
    return {"x-cg-demo-api-key": api_key} if api_key else {}


def coin_id(symbol: str) -> str:
    return COIN_IDS.get(symbol.upper(), symbol.lower())


def simple_price_request(symbol: str, api_key: str = "") -> ProviderRequest:
    return ProviderRequest(
        url=f"{BASE_URL}/simple/price",
        params={
            "ids": coin_id(symbol),
            "vs_currencies": "usd",
            "include_market_cap": "true",
            "include_24hr_change": "true",
        },
        headers=_headers(api_key),
    )


def parse_simple_price(symbol: str) -> Callable[[Any], ParsedValue]:
    """Build a parser for the USD price of ``symbol``."""
    cid = coin_id(symbol)

    def parse(payload: Any) -> ParsedValue:
        entry = extract(payload, lambda p: p[cid])
        return ParsedValue(
            raw=extract(entry, lambda e: e["usd"]),
            metadata={"change_24h_pct": entry.get("usd_24h_change")},
        )

    return parse


def parse_simple_market_cap(symbol: str) -> Callable[[Any], ParsedValue]:
    """Build a parser for the USD market cap of ``symbol``."""
    cid = coin_id(symbol)

    def parse(payload: Any) -> ParsedValue:
        entry = extract(payload, lambda p: p[cid])
        return ParsedValue(raw=extract(entry, lambda e: e["usd_market_cap"]))

    return parse


def markets_request(symbol: str, api_key: str = "") -> ProviderRequest:
    return ProviderRequest(
        url=f"{BASE_URL}/coins/markets",
        params={"vs_currency": "usd", "ids": coin_id(symbol)},
        headers=_headers(api_key),
    )


def parse_market_cap_with_change(payload: Any) -> ParsedValue:
    """Market cap and its 24h change percent from a /coins/markets row."""
    row = extract(payload, lambda p: p[0])
    return ParsedValue(
        raw=extract(row, lambda r: r["market_cap"]),
        metadata={"change_24h_pct": row.get("market_cap_change_percentage_24h")},
    )


def global_request(api_key: str = "") -> ProviderRequest:
    return ProviderRequest(url=f"{BASE_URL}/global", headers=_headers(api_key))


def parse_btc_dominance(payload: Any) -> ParsedValue:
    return ParsedValue(
        raw=extract(payload, lambda p: p["data"]["market_cap_percentage"]["btc"]),
    )


def trending_request(api_key: str = "") -> ProviderRequest:
    return ProviderRequest(url=f"{BASE_URL}/search/trending", headers=_headers(api_key))


def _money(raw: Any) -> Decimal:
    if isinstance(raw, str):
        raw = raw.replace("$", "").replace(",", "").strip()
    try:
        return to_decimal(raw)
    except PayloadValidationError:
        return Decimal("0")


def parse_trending(payload: Any) -> list[TrendingItem]:
    """Convert a /search/trending payload into TrendingItems.

    Popularity is derived from the trending rank: the top coin scores 1 and
    the last scores 1/n. Items lacking a symbol are skipped.
    """
    coins = extract(payload, lambda p: p["coins"])
    total = len(coins)
    items: list[TrendingItem] = []
    for rank, wrapper in enumerate(coins):
        coin = wrapper.get("item", wrapper) if isinstance(wrapper, dict) else None
        if not isinstance(coin, dict) or not coin.get("symbol"):
            continue
        data = coin.get("data")
        if not isinstance(data, dict):
            data = {}
        change_by_ccy = data.get("price_change_percentage_24h")
        change = change_by_ccy.get("usd") if isinstance(change_by_ccy, dict) else None
        categories = data.get("categories") or coin.get("categories") or ()
        items.append(
            TrendingItem(
                symbol=str(coin["symbol"]).upper(),
                name=str(coin.get("name", coin["symbol"])),
                volume_24h=_money(data.get("total_volume")),
                market_cap=_money(data.get("market_cap")),
                price_change_24h=_money(change) if change is not None else Decimal("0"),
                popularity=(Decimal(total - rank) / Decimal(total)).quantize(Decimal("0.0001")),
                categories=tuple(str(c) for c in categories),
            )
        )
    return items
