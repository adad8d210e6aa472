"""Deduplicating alert engine.

A candidate is suppressed when an alert with the same dedup key was
accepted within the rolling window (1h for metric alerts, 24h for event
reminders). The existence check and the insert run under a per-key
asyncio.Lock, so two concurrent submissions of the same key can never both
pass the check. A key's lock lives only while a submission holds or
awaits it. Accepted alerts are persisted first, then dispatched once
to the notifier; a failed dispatch is logged and not retried.

The maintenance pass trims the alert table:
(a) drop alerts older than the retention period,
(b) keep only the newest alert per (type, metric),
(c) drop reminders for events that have already happened.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from marketwatch.alerts.notifier import Notifier
from marketwatch.clock import Clock
from marketwatch.config import AlertSettings
from marketwatch.logging import get_logger
from marketwatch.models import (
    AlertCandidate,
    AlertRecord,
    MaintenanceReport,
    SubmitOutcome,
)
from marketwatch.storage.store import MarketDataStore

logger = get_logger(__name__)

_SECONDS_PER_DAY = 86400


class DedupAlertEngine:
    """Suppresses duplicate alerts, persists and dispatches the rest.

    Args:
        store: Alert persistence and dedup queries.
        notifier: Delivery target for accepted alerts.
        settings: Windows and retention.
        clock: Time source for acceptance and window cutoffs.
    """

    def __init__(
        self,
        store: MarketDataStore,
        notifier: Notifier,
        settings: AlertSettings,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._settings = settings
        self._clock = clock or Clock()
        self._locks: dict[tuple, asyncio.Lock] = {}
        self._lock_users: dict[tuple, int] = {}
        self._accepted = 0
        self._suppressed = 0

    def window_for(self, candidate: AlertCandidate) -> float:
        if candidate.is_event:
            return self._settings.event_window
        return self._settings.dedup_window

    @asynccontextmanager
    async def _key_lock(self, key: tuple) -> AsyncIterator[None]:
        """Hold the lock for ``key``; the lock is dropped once nobody uses it."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    async def submit(self, candidate: AlertCandidate) -> SubmitOutcome:
        """Accept or suppress one candidate."""
        record = await self._submit(candidate)
        return SubmitOutcome.ACCEPTED if record is not None else SubmitOutcome.SUPPRESSED

    async def submit_many(self, candidates: list[AlertCandidate]) -> list[AlertRecord]:
        """Submit candidates in order; returns the records that were accepted."""
        accepted: list[AlertRecord] = []
        for candidate in candidates:
            record = await self._submit(candidate)
            if record is not None:
                accepted.append(record)
        return accepted

    async def _submit(self, candidate: AlertCandidate) -> AlertRecord | None:
        key = candidate.dedup_key
        async with self._key_lock(key):
            now = self._clock.now()
            since = now - self.window_for(candidate)
            if await self._store.alert_exists(candidate, since):
                self._suppressed += 1
                logger.debug(
                    "alert_suppressed",
                    alert_type=candidate.type,
                    metric=candidate.metric,
                    value=candidate.value,
                )
                return None
            record = await self._store.insert_alert(candidate, accepted_at=now)
        self._accepted += 1

        logger.info(
            "alert_accepted",
            alert_id=record.id,
            alert_type=record.type,
            metric=record.metric,
            severity=record.severity.value,
        )
        try:
            delivered = await self._notifier.dispatch(record)
        except Exception:
            logger.warning("alert_dispatch_error", alert_id=record.id, exc_info=True)
        else:
            if not delivered:
                logger.warning("alert_dispatch_failed", alert_id=record.id)
        return record

    async def run_maintenance(self, now: float | None = None) -> MaintenanceReport:
        """Run the three cleanup steps; a failing step does not stop the others."""
        now = self._clock.now() if now is None else now
        report = MaintenanceReport()
        cutoff = now - self._settings.retention_days * _SECONDS_PER_DAY

        try:
            report.expired = await self._store.delete_alerts_before(cutoff)
        except Exception:
            logger.warning("alert_retention_cleanup_failed", exc_info=True)
        try:
            report.duplicates = await self._store.delete_duplicate_alerts()
        except Exception:
            logger.warning("alert_duplicate_cleanup_failed", exc_info=True)
        try:
            report.past_events = await self._store.delete_past_event_alerts(now)
        except Exception:
            logger.warning("alert_past_event_cleanup_failed", exc_info=True)

        logger.info(
            "alert_maintenance_complete",
            expired=report.expired,
            duplicates=report.duplicates,
            past_events=report.past_events,
        )
        return report

    def stats(self) -> dict[str, int]:
        return {"accepted": self._accepted, "suppressed": self._suppressed}

    @property
    def active_keys(self) -> int:
        """Dedup keys currently locked or awaited."""
        return len(self._locks)
