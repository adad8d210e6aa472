"""Alpha Vantage query endpoint (indices, treasury, commodities, macro).

The free tier answers over-budget calls with HTTP 200 and a "Note" or
"Information" message; the provider's rate_limit_markers catch those
bodies in the transport.
"""

from typing import Any

from marketwatch.models import ProviderRequest
from marketwatch.providers.validation import ParsedValue, extract

QUERY_URL = "https://www.alphavantage.co/query"


def _request(api_key: str, **params: str) -> ProviderRequest:
    return ProviderRequest(url=QUERY_URL, params={**params, "apikey": api_key})


def daily_series_request(api_key: str, ticker: str) -> ProviderRequest:
    return _request(api_key, function="TIME_SERIES_DAILY", symbol=ticker)


def treasury_request(api_key: str, maturity: str) -> ProviderRequest:
    """``maturity`` is Alpha Vantage's spelling, e.g. "2year" or "10year"."""
    return _request(api_key, function="TREASURY_YIELD", interval="daily", maturity=maturity)


def economic_request(api_key: str, function: str, interval: str = "monthly") -> ProviderRequest:
    """Macro series such as WTI, CPI, UNEMPLOYMENT or FEDERAL_FUNDS_RATE."""
    return _request(api_key, function=function, interval=interval)


def parse_daily_close(payload: Any) -> ParsedValue:
    """Latest close from a ``Time Series (Daily)`` payload."""
    series = extract(payload, lambda p: p["Time Series (Daily)"])
    latest_date = extract(series, lambda s: max(s))
    bar = series[latest_date]
    return ParsedValue(
        raw=extract(bar, lambda b: b["4. close"]),
        metadata={"date": latest_date},
    )


def parse_data_series(payload: Any) -> ParsedValue:
    """Latest point of a ``{"data": [{"date", "value"}, ...]}`` payload.

    Alpha Vantage marks missing observations with ".", so the newest
    observation with a real value is used.
    """
    points = extract(payload, lambda p: p["data"])
    for point in points:
        value = extract(point, lambda p: p.get("value"))
        if value not in (None, "", "."):
            return ParsedValue(raw=value, metadata={"date": point.get("date")})
    return ParsedValue(raw=None)
