"""Narrative classification of trending crypto assets.

Each trending item lands in exactly one narrative bucket: rules are checked
in priority order against the item's name, symbol and categories, and the
first match wins. Unmatched items fall into "Emerging Trends".

Buckets are ranked by money flow:

    money_flow = (total_volume / 1e6) * (1 if avg_change > 0 else damping)

and only the top K are kept. The pass is pure: no clock, no I/O, no
dependence on dict or set iteration order, so identical input always gives
identical output.
"""

import re
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from marketwatch.models import NarrativeGroup, TrendingItem

DEFAULT_BUCKET = "Emerging Trends"

SENTIMENT_TIERS: tuple[str, ...] = (
    "very_bearish",
    "bearish",
    "neutral",
    "bullish",
    "very_bullish",
)

_MILLION = Decimal("1000000")
_SCORE_PLACES = Decimal("0.0001")
_STRONG_MOVE = Decimal("10")
_TOKEN_RE = re.compile(r"[a-z0-9]+")


@dataclass(frozen=True)
class NarrativeRule:
    """Keyword matcher for one narrative bucket.

    ``keywords`` are matched as whole words (or whole phrases) against the
    item's name, symbol and categories; ``symbols`` match the ticker exactly.
    """

    label: str
    keywords: tuple[str, ...] = ()
    symbols: tuple[str, ...] = ()

    def matches(self, item: TrendingItem, text: str) -> bool:
        if item.symbol.upper() in self.symbols:
            return True
        return any(f" {kw} " in text for kw in self.keywords)


NARRATIVE_RULES: tuple[NarrativeRule, ...] = (
    NarrativeRule(
        "AI & Big Data",
        keywords=(
            "ai", "artificial intelligence", "ai agents", "agent", "agents",
            "gpt", "neural", "machine learning", "big data", "compute",
        ),
        symbols=("FET", "TAO", "RNDR", "RENDER", "AGIX", "OCEAN", "WLD", "VIRTUAL"),
    ),
    NarrativeRule(
        "Meme Coins",
        keywords=("meme", "memes", "doge", "shiba", "inu", "pepe", "bonk", "frog", "floki"),
        symbols=("DOGE", "SHIB", "PEPE", "BONK", "WIF", "FLOKI", "TRUMP", "POPCAT"),
    ),
    NarrativeRule(
        "Layer 2 Scaling",
        keywords=("layer 2", "l2", "rollup", "rollups", "zk", "zero knowledge", "optimistic"),
        symbols=("ARB", "OP", "MATIC", "POL", "STRK", "ZK", "MNT", "IMX"),
    ),
    NarrativeRule(
        "DeFi",
        keywords=(
            "defi", "decentralized finance", "dex", "decentralized exchange",
            "swap", "lending", "yield", "liquid staking", "perpetuals",
        ),
        symbols=("UNI", "AAVE", "CRV", "MKR", "LDO", "JUP", "PENDLE", "HYPE"),
    ),
    NarrativeRule(
        "Gaming & Metaverse",
        keywords=("gaming", "game", "games", "metaverse", "play to earn", "nft", "nfts"),
        symbols=("AXS", "SAND", "MANA", "GALA", "ENJ", "BEAM"),
    ),
    NarrativeRule(
        "Real World Assets",
        keywords=("rwa", "real world assets", "real world asset", "tokenized", "tokenization"),
        symbols=("ONDO", "PAXG", "XAUT", "CFG", "POLYX"),
    ),
    NarrativeRule(
        "Layer 1 Platforms",
        keywords=("layer 1", "l1", "smart contract platform", "blockchain"),
        symbols=("BTC", "ETH", "SOL", "SUI", "APT", "AVAX", "ADA", "NEAR", "TON", "SEI", "XRP"),
    ),
    NarrativeRule(
        "Stablecoins",
        keywords=("stablecoin", "stablecoins"),
        symbols=("USDT", "USDC", "DAI", "FDUSD", "USDE", "PYUSD"),
    ),
)


def _search_text(item: TrendingItem) -> str:
    parts = [item.name, item.symbol, *item.categories]
    tokens = _TOKEN_RE.findall(" ".join(parts).lower())
    return f" {' '.join(tokens)} "


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class NarrativeClassifier:
    """Buckets trending items into narratives and ranks the buckets.

    Args:
        top_k: Number of top groups to keep.
        momentum_damping: Money-flow multiplier for groups with non-positive
            mean change; must be below 1.
        rules: Priority-ordered bucket rules.
    """

    def __init__(
        self,
        top_k: int = 8,
        momentum_damping: Decimal = Decimal("0.5"),
        rules: Sequence[NarrativeRule] = NARRATIVE_RULES,
    ) -> None:
        if not Decimal("0") <= momentum_damping < Decimal("1"):
            raise ValueError("momentum_damping must be in [0, 1)")
        self._top_k = top_k
        self._damping = momentum_damping
        self._rules = tuple(rules)

    def assign(self, item: TrendingItem) -> str:
        """Label of the first rule matching ``item``, else the default bucket."""
        text = _search_text(item)
        for rule in self._rules:
            if rule.matches(item, text):
                return rule.label
        return DEFAULT_BUCKET

    @staticmethod
    def item_sentiment(item: TrendingItem) -> int:
        """Sentiment tier index (0..4) for one item.

        Base tier comes from popularity; a 24h move of 10% or more shifts it
        one tier in the direction of the move.
        """
        if item.popularity >= Decimal("0.75"):
            tier = 3
        elif item.popularity >= Decimal("0.4"):
            tier = 2
        else:
            tier = 1

        if item.price_change_24h >= _STRONG_MOVE:
            tier += 1
        elif item.price_change_24h <= -_STRONG_MOVE:
            tier -= 1
        return max(0, min(len(SENTIMENT_TIERS) - 1, tier))

    def classify(self, items: Sequence[TrendingItem]) -> list[NarrativeGroup]:
        """Group, score and rank ``items``; returns at most ``top_k`` groups."""
        buckets: dict[str, list[TrendingItem]] = {}
        for item in items:
            buckets.setdefault(self.assign(item), []).append(item)

        groups = [self._build_group(label, members) for label, members in buckets.items()]
        groups.sort(key=lambda g: (-g.money_flow_score, g.label))
        groups = groups[: self._top_k]

        top_flow = groups[0].money_flow_score if groups else Decimal("0")
        for group in groups:
            if top_flow > 0:
                group.relevance_score = (group.money_flow_score / top_flow).quantize(_SCORE_PLACES)
            else:
                group.relevance_score = Decimal("0")
        return groups

    def _build_group(self, label: str, members: list[TrendingItem]) -> NarrativeGroup:
        count = Decimal(len(members))
        total_volume = sum((m.volume_24h for m in members), Decimal("0"))
        total_market_cap = sum((m.market_cap for m in members), Decimal("0"))
        avg_change = (
            sum((m.price_change_24h for m in members), Decimal("0")) / count
        ).quantize(_SCORE_PLACES)

        multiplier = Decimal("1") if avg_change > 0 else self._damping
        money_flow = (total_volume / _MILLION * multiplier).quantize(_SCORE_PLACES)

        tiers = [self.item_sentiment(m) for m in members]
        group_tier = _round_half_up(Decimal(sum(tiers)) / count)

        return NarrativeGroup(
            label=label,
            members=[m.symbol for m in members],
            total_volume=total_volume,
            total_market_cap=total_market_cap,
            avg_change=avg_change,
            sentiment=SENTIMENT_TIERS[group_tier],
            money_flow_score=money_flow,
        )
