"""Pairwise return correlations over stored price history.

For each unordered symbol pair the engine loads the last ``lookback``
stored prices of both symbols, keeps only the timestamps both series share,
converts the aligned prices to simple returns and computes Pearson's r.

Every metric collected in one cycle is stored under the cycle's start
timestamp, so aligning on timestamps pairs observations from the same
cycle and a gap in one series drops that point instead of shifting the
whole series by one position.
"""

from collections.abc import Sequence
from decimal import Decimal, localcontext
from itertools import combinations

from marketwatch.clock import Clock
from marketwatch.logging import get_logger
from marketwatch.models import CorrelationPair, LogicalMetric, PricePoint
from marketwatch.storage.store import MarketDataStore

logger = get_logger(__name__)

METHOD = "pearson_simple_returns"
_ZERO = Decimal("0")
_ONE = Decimal("1")
_PLACES = Decimal("0.000001")
_MS_PER_DAY = 86_400_000


def simple_returns(prices: Sequence[Decimal]) -> list[Decimal]:
    """r[i] = (p[i] - p[i-1]) / p[i-1]; steps from a zero price are skipped."""
    returns: list[Decimal] = []
    for previous, current in zip(prices, prices[1:]):
        if previous == 0:
            continue
        returns.append((current - previous) / previous)
    return returns


def pearson(xs: Sequence[Decimal], ys: Sequence[Decimal]) -> Decimal:
    """Pearson correlation of two equal-length samples.

    Returns 0 when fewer than two pairs exist or either sample has zero
    variance, so callers never see NaN. The result is clamped to [-1, 1].
    """
    if len(xs) != len(ys):
        raise ValueError(f"sample lengths differ: {len(xs)} != {len(ys)}")
    n = len(xs)
    if n < 2:
        return _ZERO

    with localcontext() as ctx:
        ctx.prec = 28
        mean_x = sum(xs, _ZERO) / n
        mean_y = sum(ys, _ZERO) / n
        cov = sum(((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys)), _ZERO)
        var_x = sum(((x - mean_x) ** 2 for x in xs), _ZERO)
        var_y = sum(((y - mean_y) ** 2 for y in ys), _ZERO)
        if var_x == 0 or var_y == 0:
            return _ZERO
        r = cov / (var_x.sqrt() * var_y.sqrt())

    r = max(-_ONE, min(_ONE, r))
    return r.quantize(_PLACES)


def correlation(series1: Sequence[Decimal], series2: Sequence[Decimal]) -> Decimal:
    """Pearson correlation of two aligned series over their common trailing length."""
    n = min(len(series1), len(series2))
    return pearson(list(series1[len(series1) - n :]), list(series2[len(series2) - n :]))


def return_correlation(prices1: Sequence[Decimal], prices2: Sequence[Decimal]) -> Decimal:
    """Correlation of the simple returns of two aligned price series.

    Returns are computed pairwise so a zero price in either series drops the
    same step from both.
    """
    n = min(len(prices1), len(prices2))
    p1 = list(prices1[len(prices1) - n :])
    p2 = list(prices2[len(prices2) - n :])
    r1: list[Decimal] = []
    r2: list[Decimal] = []
    for i in range(1, n):
        if p1[i - 1] == 0 or p2[i - 1] == 0:
            continue
        r1.append((p1[i] - p1[i - 1]) / p1[i - 1])
        r2.append((p2[i] - p2[i - 1]) / p2[i - 1])
    return pearson(r1, r2)


def align_by_timestamp(
    first: Sequence[PricePoint], second: Sequence[PricePoint]
) -> tuple[list[int], list[Decimal], list[Decimal]]:
    """Keep only timestamps present in both series, in ascending order."""
    second_by_ts = {p.timestamp_ms: p.value for p in second}
    timestamps: list[int] = []
    values1: list[Decimal] = []
    values2: list[Decimal] = []
    for point in sorted(first, key=lambda p: p.timestamp_ms):
        other = second_by_ts.get(point.timestamp_ms)
        if other is None:
            continue
        timestamps.append(point.timestamp_ms)
        values1.append(point.value)
        values2.append(other)
    return timestamps, values1, values2


class CorrelationEngine:
    """Computes and persists return correlations for a set of symbols.

    Args:
        store: Source of price history and sink for correlation rows.
        lookback: Number of most recent observations loaded per symbol.
        min_points: Minimum shared observations needed to emit a pair.
        clock: Time source for ``computed_at``.
        data_type: Metric data type holding each symbol's price history.
    """

    def __init__(
        self,
        store: MarketDataStore,
        lookback: int = 30,
        min_points: int = 3,
        clock: Clock | None = None,
        data_type: str = "CRYPTO_PRICE",
    ) -> None:
        self._store = store
        self._lookback = lookback
        self._min_points = max(min_points, 2)
        self._clock = clock or Clock()
        self._data_type = data_type

    async def compute_all(
        self, symbols: Sequence[str], as_of_ms: int | None = None
    ) -> list[CorrelationPair]:
        """Correlate every unordered pair of ``symbols`` and upsert the results.

        Args:
            symbols: Crypto symbols with stored CRYPTO_PRICE history.
            as_of_ms: Timestamp the rows are keyed under (defaults to now).

        Returns:
            One CorrelationPair per pair with enough shared history.
        """
        computed_at = self._clock.now()
        key_ms = as_of_ms if as_of_ms is not None else int(computed_at * 1000)

        histories: dict[str, list[PricePoint]] = {}
        for symbol in sorted(set(symbols)):
            histories[symbol] = await self._store.get_metric_history(
                LogicalMetric(self._data_type, symbol), self._lookback
            )

        pairs: list[CorrelationPair] = []
        for symbol1, symbol2 in combinations(sorted(histories), 2):
            timestamps, prices1, prices2 = align_by_timestamp(
                histories[symbol1], histories[symbol2]
            )
            if len(timestamps) < self._min_points:
                logger.debug(
                    "correlation_skipped_insufficient_history",
                    symbol1=symbol1,
                    symbol2=symbol2,
                    shared_points=len(timestamps),
                )
                continue
            span_days = max(1, round((timestamps[-1] - timestamps[0]) / _MS_PER_DAY))
            pairs.append(
                CorrelationPair(
                    symbol1=symbol1,
                    symbol2=symbol2,
                    coefficient=return_correlation(prices1, prices2),
                    period_days=span_days,
                    method=METHOD,
                    computed_at=computed_at,
                )
            )

        if pairs:
            await self._store.upsert_correlations(pairs, key_ms)
        logger.info(
            "correlations_computed",
            symbols=len(histories),
            pairs=len(pairs),
        )
        return pairs
