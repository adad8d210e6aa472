"""Tests for derived ratios computed from one cycle's values."""

from decimal import Decimal

from marketwatch.analytics.derived import stablecoin_supply_ratio, weighted_change


class TestStablecoinSupplyRatio:
    def test_ratio(self) -> None:
        ssr = stablecoin_supply_ratio(Decimal("1400000000000"), [Decimal("150000000000"), Decimal("50000000000")])
        assert ssr == Decimal("7.0000")

    def test_missing_btc_cap(self) -> None:
        assert stablecoin_supply_ratio(None, [Decimal("1")]) is None

    def test_no_stablecoins(self) -> None:
        assert stablecoin_supply_ratio(Decimal("1"), []) is None


class TestWeightedChange:
    def test_weights_by_cap(self) -> None:
        points = [(Decimal("300"), Decimal("2")), (Decimal("100"), Decimal("-2"))]
        assert weighted_change(points) == Decimal("1.0000")

    def test_empty(self) -> None:
        assert weighted_change([]) is None
