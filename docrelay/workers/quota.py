from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Callable

from docrelay.core.workqueue import WorkQueueDirectory
from docrelay.exporters.status_report_csv import export_status_report
from docrelay.infrastructure.logstore import LogStore

logger = logging.getLogger(__name__)

CURRENT_DAY_MARKER = "current_day"
OVERLIMIT = "overlimit"


class QuotaAndCalendarManager:
    """Owns the per-day quota counters and the end-of-day maintenance.

    Counters live in memory and are only touched by the ingest worker; they
    are written back to the store by :meth:`persist` and reloaded for the
    marker day on start-up.
    """

    def __init__(
        self,
        store: LogStore,
        requests: WorkQueueDirectory,
        *,
        retention_days: int = 30,
        reports_dir: Path | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self._requests = requests
        self._retention = timedelta(days=retention_days)
        self._reports_dir = reports_dir
        self._clock = clock

        marker = store.get_marker(CURRENT_DAY_MARKER)
        if marker:
            self.current_day = date.fromisoformat(marker)
        else:
            self.current_day = clock().date()
            store.set_marker(CURRENT_DAY_MARKER, self.current_day.isoformat())
        self._counters: dict[str, int] = store.load_counters(self.current_day)

    # ------------------------------------------------------------------
    # counters
    # ------------------------------------------------------------------
    def next_sequence(self, document_type: str) -> int:
        value = self._counters.get(document_type, 0) + 1
        self._counters[document_type] = value
        return value

    def count(self, document_type: str) -> int:
        return self._counters.get(document_type, 0)

    def counters(self) -> dict[str, int]:
        return dict(self._counters)

    def persist(self) -> None:
        if self._counters:
            self._store.save_counters(self.current_day, self._counters)

    # ------------------------------------------------------------------
    # day rollover
    # ------------------------------------------------------------------
    def check_rollover(self) -> bool:
        """Run end-of-day maintenance once the wall-clock day has changed.

        Every step is safe to repeat, and the day marker is advanced last, so
        an interrupted rollover is simply redone on the next call.
        """

        now = self._clock()
        today = now.date()
        if today == self.current_day:
            return False

        previous = self.current_day
        logger.info("day rollover %s -> %s", previous, today)

        self._store.sweep_timeouts(today, now=now)
        self._store.archive_before(now - self._retention)
        self._store.refresh_views()
        if self._reports_dir is not None:
            export_status_report(
                self._reports_dir / f"status-{previous.isoformat()}.csv",
                self._store.status_summary(previous),
            )

        self.persist()
        self._counters = {}

        released = 0
        for item in self._requests.list(OVERLIMIT):
            self._requests.transition(item.name, OVERLIMIT, None)
            released += 1
        if released:
            logger.info("released %d overlimit requests", released)

        self._store.set_marker(CURRENT_DAY_MARKER, today.isoformat())
        self.current_day = today
        self._counters = self._store.load_counters(today)
        return True
