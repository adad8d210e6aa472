"""blockchain.info network statistics (on-chain BTC metrics)."""

from typing import Any

from marketwatch.models import ProviderRequest
from marketwatch.providers.validation import ParsedValue, extract

STATS_URL = "https://blockchain.info/stats"


def stats_request() -> ProviderRequest:
    return ProviderRequest(url=STATS_URL, params={"format": "json"})


def parse_hash_rate(payload: Any) -> ParsedValue:
    # blockchain.info reports hash_rate in GH/s
    return ParsedValue(
        raw=extract(payload, lambda p: p["hash_rate"]),
        metadata={"unit": "GH/s", "n_tx": payload.get("n_tx")},
    )
