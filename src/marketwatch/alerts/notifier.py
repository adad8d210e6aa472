"""Notifier collaborators for accepted alerts.

A notifier reports success as a bool; it never raises for delivery
failures and the engine never retries a failed dispatch.
"""

from abc import ABC, abstractmethod
from typing import Any

import aiohttp

from marketwatch.logging import get_logger
from marketwatch.models import AlertRecord

logger = get_logger(__name__)


def record_payload(record: AlertRecord) -> dict[str, Any]:
    """JSON-serialisable view of an alert record."""
    payload: dict[str, Any] = {
        "id": record.id,
        "type": record.type,
        "metric": record.metric,
        "severity": record.severity.value,
        "value": record.value,
        "message": record.message,
        "computed_at": record.computed_at,
        "accepted_at": record.accepted_at,
    }
    if record.event_id is not None:
        payload["event"] = {
            "id": record.event_id,
            "date": record.event_date,
            "title": record.event_title,
            "category": record.event_category,
        }
    return payload


class Notifier(ABC):
    """Delivers accepted alerts somewhere outside the pipeline."""

    @abstractmethod
    async def dispatch(self, record: AlertRecord) -> bool:
        """Deliver one alert. Returns False if delivery failed."""
        ...

    async def close(self) -> None:
        """Release delivery resources."""


class LogNotifier(Notifier):
    """Writes accepted alerts to the structured log."""

    async def dispatch(self, record: AlertRecord) -> bool:
        logger.info(
            "alert_dispatched",
            alert_id=record.id,
            alert_type=record.type,
            metric=record.metric,
            severity=record.severity.value,
            value=record.value,
            message=record.message,
        )
        return True


class WebhookNotifier(Notifier):
    """POSTs each accepted alert as JSON to a webhook URL.

    Args:
        url: Webhook endpoint.
        timeout: Total request timeout in seconds.
        session: Optional shared aiohttp session (not closed here).
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def dispatch(self, record: AlertRecord) -> bool:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        try:
            async with self._session.post(self._url, json=record_payload(record)) as response:
                if 200 <= response.status < 300:
                    logger.info("alert_webhook_sent", alert_id=record.id, status=response.status)
                    return True
                body = await response.text()
                logger.warning(
                    "alert_webhook_rejected",
                    alert_id=record.id,
                    status=response.status,
                    body=body[:200],
                )
                return False
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.warning("alert_webhook_failed", alert_id=record.id, error=str(e))
            return False

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class CompositeNotifier(Notifier):
    """Fans one alert out to several notifiers; succeeds if any of them does."""

    def __init__(self, notifiers: list[Notifier]) -> None:
        self._notifiers = notifiers

    async def dispatch(self, record: AlertRecord) -> bool:
        delivered = False
        for notifier in self._notifiers:
            try:
                delivered = await notifier.dispatch(record) or delivered
            except Exception:
                logger.warning(
                    "notifier_dispatch_error",
                    notifier=type(notifier).__name__,
                    alert_id=record.id,
                    exc_info=True,
                )
        return delivered

    async def close(self) -> None:
        for notifier in self._notifiers:
            await notifier.close()
