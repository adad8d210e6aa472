"""Derived metrics computed from one cycle's resolved values."""

from collections.abc import Iterable
from decimal import Decimal

_RATIO_PLACES = Decimal("0.0001")


def stablecoin_supply_ratio(
    btc_market_cap: Decimal | None, stablecoin_caps: Iterable[Decimal]
) -> Decimal | None:
    """SSR = BTC market cap / aggregate stablecoin market cap.

    Returns None when either side is missing or the denominator is not
    positive; a partial stablecoin set is still used.
    """
    if btc_market_cap is None or btc_market_cap <= 0:
        return None
    total = sum(stablecoin_caps, Decimal("0"))
    if total <= 0:
        return None
    return (btc_market_cap / total).quantize(_RATIO_PLACES)


def weighted_change(points: Iterable[tuple[Decimal, Decimal]]) -> Decimal | None:
    """Market-cap weighted 24h change of ``(market_cap, change_pct)`` points."""
    total_cap = Decimal("0")
    weighted = Decimal("0")
    for cap, change in points:
        total_cap += cap
        weighted += cap * change
    if total_cap <= 0:
        return None
    return (weighted / total_cap).quantize(_RATIO_PLACES)
