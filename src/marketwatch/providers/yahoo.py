"""Yahoo Finance chart endpoint (keyless market index feed)."""

from typing import Any

from marketwatch.models import ProviderRequest
from marketwatch.providers.validation import ParsedValue, extract

CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/{ticker}"


def chart_request(ticker: str) -> ProviderRequest:
    return ProviderRequest(
        url=CHART_URL.format(ticker=ticker),
        params={"interval": "1d", "range": "5d"},
    )


def parse_chart(payload: Any) -> ParsedValue:
    """Extract ``regularMarketPrice`` and the day change from a chart payload."""
    meta = extract(payload, lambda p: p["chart"]["result"][0]["meta"])
    price = extract(meta, lambda m: m["regularMarketPrice"])
    metadata: dict[str, Any] = {"ticker": meta.get("symbol")}
    previous = meta.get("chartPreviousClose") or meta.get("previousClose")
    if isinstance(price, (int, float)) and isinstance(previous, (int, float)) and previous:
        metadata["change_pct"] = round((price - previous) / previous * 100, 4)
    return ParsedValue(raw=price, metadata=metadata)
