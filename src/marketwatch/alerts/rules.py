"""Alert candidate producers.

Threshold rules over one cycle's derived values (SSR, BTC dominance,
stablecoin market cap growth) and reminder candidates for upcoming
calendar events. Producers only build AlertCandidates; deduplication,
persistence and dispatch belong to DedupAlertEngine.
"""

from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal

from marketwatch.config import AlertSettings
from marketwatch.models import (
    EVENT_ALERT_TYPE,
    AlertCandidate,
    Severity,
    UpcomingEvent,
)

_TWO_PLACES = Decimal("0.01")
_SECONDS_PER_DAY = 86400


def normalize_value(value: Decimal) -> str:
    """Render an alert value to 2dp so equal readings share a dedup key."""
    return str(value.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP))


def severity_for_impact(impact: str) -> Severity:
    try:
        return Severity(impact.lower())
    except ValueError:
        return Severity.MEDIUM


class AlertRules:
    """Builds alert candidates from derived metrics and calendar events.

    Args:
        settings: Threshold bands and the event reminder horizon.
    """

    def __init__(self, settings: AlertSettings) -> None:
        self._settings = settings

    def ssr(self, ssr: Decimal, now: float) -> list[AlertCandidate]:
        """Stablecoin supply ratio bands: low SSR means high stablecoin buying power."""
        s = self._settings
        shown = normalize_value(ssr)
        if ssr < s.ssr_very_bullish:
            kind, severity, text = "SSR_VERY_BULLISH", Severity.HIGH, "Very bullish signal! High buying power available."
        elif ssr < s.ssr_bullish:
            kind, severity, text = "SSR_BULLISH", Severity.MEDIUM, "Bullish signal. Good buying power available."
        elif ssr > s.ssr_very_bearish:
            kind, severity, text = "SSR_VERY_BEARISH", Severity.HIGH, "Very bearish signal! Very low buying power."
        elif ssr > s.ssr_bearish:
            kind, severity, text = "SSR_BEARISH", Severity.MEDIUM, "Bearish signal. Low buying power."
        else:
            return []
        return [
            AlertCandidate(
                type=kind,
                metric="ssr",
                severity=severity,
                value=shown,
                message=f"SSR at {shown} - {text}",
                computed_at=now,
            )
        ]

    def btc_dominance(self, dominance: Decimal, now: float) -> list[AlertCandidate]:
        s = self._settings
        shown = normalize_value(dominance)
        if dominance > s.btc_dominance_high:
            kind, text = "BTC_DOMINANCE_HIGH", "BTC outperforming altcoins significantly."
        elif dominance < s.btc_dominance_low:
            kind, text = "BTC_DOMINANCE_LOW", "Altcoins outperforming BTC."
        else:
            return []
        return [
            AlertCandidate(
                type=kind,
                metric="btc_dominance",
                severity=Severity.MEDIUM,
                value=shown,
                message=f"Bitcoin dominance at {shown}% - {text}",
                computed_at=now,
            )
        ]

    def stablecoin_growth(self, change_24h: Decimal, now: float) -> list[AlertCandidate]:
        s = self._settings
        shown = normalize_value(change_24h)
        if change_24h > s.stablecoin_rapid_growth:
            return [
                AlertCandidate(
                    type="STABLECOIN_RAPID_GROWTH",
                    metric="stablecoin_growth",
                    severity=Severity.MEDIUM,
                    value=shown,
                    message=f"Stablecoin market cap growing rapidly: +{shown}% - Sidelined capital accumulating.",
                    computed_at=now,
                )
            ]
        if change_24h < s.stablecoin_rapid_decline:
            return [
                AlertCandidate(
                    type="STABLECOIN_RAPID_DECLINE",
                    metric="stablecoin_growth",
                    severity=Severity.HIGH,
                    value=shown,
                    message=f"Stablecoin market cap declining rapidly: {shown}% - Capital leaving crypto.",
                    computed_at=now,
                )
            ]
        return []

    def upcoming_events(
        self, events: Iterable[UpcomingEvent], now: float
    ) -> list[AlertCandidate]:
        """Reminder candidates for stored events due within the reminder horizon.

        Events without an id (not yet persisted) are skipped since the id is
        their dedup key.
        """
        horizon = now + self._settings.event_horizon_days * _SECONDS_PER_DAY
        candidates: list[AlertCandidate] = []
        for event in events:
            if event.id is None or not now <= event.scheduled_at <= horizon:
                continue
            message = f"{event.title} is likely to impact the market."
            if event.description:
                message = f"{message} {event.description}"
            candidates.append(
                AlertCandidate(
                    type=EVENT_ALERT_TYPE,
                    metric=f"event:{event.id}",
                    severity=severity_for_impact(event.impact),
                    value=event.impact,
                    message=message,
                    computed_at=now,
                    event_id=event.id,
                    event_date=event.scheduled_at,
                    event_title=event.title,
                    event_category=event.category,
                )
            )
        return candidates
