"""Analytics layer -- return correlations, narrative classification, and derived ratios."""

from marketwatch.analytics.correlation import CorrelationEngine, correlation, pearson, simple_returns
from marketwatch.analytics.narratives import NARRATIVE_RULES, NarrativeClassifier

__all__ = [
    "NARRATIVE_RULES",
    "CorrelationEngine",
    "NarrativeClassifier",
    "correlation",
    "pearson",
    "simple_returns",
]
