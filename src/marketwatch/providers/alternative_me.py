"""alternative.me Crypto Fear & Greed index."""

from typing import Any

from marketwatch.models import ProviderRequest
from marketwatch.providers.validation import ParsedValue, extract

FNG_URL = "https://api.alternative.me/fng/"


def fear_greed_request() -> ProviderRequest:
    return ProviderRequest(url=FNG_URL, params={"limit": 1})


def parse_fear_greed(payload: Any) -> ParsedValue:
    latest = extract(payload, lambda p: p["data"][0])
    return ParsedValue(
        raw=extract(latest, lambda d: d["value"]),
        metadata={"classification": latest.get("value_classification", "")},
    )
