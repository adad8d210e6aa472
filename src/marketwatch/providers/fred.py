"""FRED (St. Louis Fed) series observations and release calendar."""

from typing import Any

from marketwatch.models import ProviderRequest
from marketwatch.providers.validation import ParsedValue, extract

BASE_URL = "https://api.stlouisfed.org/fred"

# Series ids keyed by the logical symbol they supply
SERIES = {
    "2Y": "DGS2",
    "10Y": "DGS10",
    "CPI": "CPIAUCSL",
    "PCE": "PCEPI",
    "PPI": "PPIACO",
    "UNEMPLOYMENT_RATE": "UNRATE",
    "FED_FUNDS": "FEDFUNDS",
}


def observations_request(api_key: str, series_id: str, limit: int = 5) -> ProviderRequest:
    return ProviderRequest(
        url=f"{BASE_URL}/series/observations",
        params={
            "series_id": series_id,
            "api_key": api_key,
            "file_type": "json",
            "sort_order": "desc",
            "limit": limit,
        },
    )


def parse_latest_observation(payload: Any) -> ParsedValue:
    """Newest observation whose value is not FRED's "." missing marker."""
    observations = extract(payload, lambda p: p["observations"])
    for observation in observations:
        value = extract(observation, lambda o: o.get("value"))
        if value not in (None, "", "."):
            return ParsedValue(raw=value, metadata={"date": observation.get("date")})
    return ParsedValue(raw=None)


def release_dates_request(
    api_key: str, start_date: str, end_date: str, limit: int = 200
) -> ProviderRequest:
    """Scheduled release dates across all releases between two ISO dates."""
    return ProviderRequest(
        url=f"{BASE_URL}/releases/dates",
        params={
            "api_key": api_key,
            "file_type": "json",
            "realtime_start": start_date,
            "realtime_end": end_date,
            "include_release_dates_with_no_data": "true",
            "sort_order": "asc",
            "limit": limit,
        },
    )


def parse_release_dates(payload: Any) -> list[dict[str, Any]]:
    """Return ``[{"release_id", "release_name", "date"}, ...]`` entries."""
    entries = extract(payload, lambda p: p["release_dates"])
    return [
        {
            "release_id": entry.get("release_id"),
            "release_name": entry.get("release_name", ""),
            "date": entry.get("date", ""),
        }
        for entry in entries
        if isinstance(entry, dict) and entry.get("date")
    ]
