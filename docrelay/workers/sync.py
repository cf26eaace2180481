"""Watermark-driven catch-up of gateway-assigned identifiers and timestamps."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Mapping

from docrelay.core.schema import SyncRow
from docrelay.infrastructure.gateway_sources import GatewaySource, GatewaySourceError
from docrelay.infrastructure.logstore import MERGED_SOURCE, LogStore

logger = logging.getLogger(__name__)

REQUESTS = "requests"
RESPONSES = "responses"


def merge_watermark(
    previous: Mapping[str, datetime],
    observed: Mapping[str, datetime],
    *,
    floor: datetime,
    sources: Iterable[str],
) -> tuple[dict[str, datetime], datetime]:
    """Combine per-source progress into the stream watermark.

    Each source contributes the larger of its previous contribution and the
    newest timestamp it reported this cycle.  The stream watermark is the
    smallest contribution, so a lagging source never has rows skipped.
    """

    contributions: dict[str, datetime] = {}
    for name in sources:
        prior = previous.get(name, floor)
        seen = observed.get(name)
        contributions[name] = max(prior, seen) if seen is not None else prior
    merged = min(contributions.values()) if contributions else previous.get(MERGED_SOURCE, floor)
    return contributions, merged


@dataclass(slots=True)
class SyncReport:
    stream: str
    updated: int
    watermark: datetime
    failed_sources: list[str]


class SyncCatchupWorker:
    def __init__(
        self,
        stream: str,
        store: LogStore,
        sources: list[GatewaySource],
        *,
        floor: datetime,
    ) -> None:
        if stream not in (REQUESTS, RESPONSES):
            raise ValueError(f"unknown sync stream: {stream}")
        self.stream = stream
        self._store = store
        self._sources = sources
        self._floor = floor

    def _fetch(self, source: GatewaySource) -> Callable[[datetime], list[SyncRow]]:
        return source.fetch_requests if self.stream == REQUESTS else source.fetch_responses

    def _apply(self, rows: list[SyncRow]) -> int:
        if self.stream == REQUESTS:
            return self._store.record_request_sync(rows)
        return self._store.record_response_sync(rows)

    def run_once(self) -> SyncReport:
        previous = self._store.load_watermarks(self.stream)
        since = previous.pop(MERGED_SOURCE, None) or self._floor

        observed: dict[str, datetime] = {}
        failed: list[str] = []
        updated = 0
        for source in self._sources:
            try:
                rows = self._fetch(source)(since)
            except GatewaySourceError as exc:
                logger.warning("%s sync: skipping source %s: %s", self.stream, source.name, exc)
                failed.append(source.name)
                continue
            if not rows:
                continue
            updated += self._apply(rows)
            observed[source.name] = max(row.timestamp for row in rows)

        contributions, merged = merge_watermark(
            previous, observed, floor=self._floor, sources=[source.name for source in self._sources]
        )
        self._store.save_watermarks(self.stream, contributions, merged)
        if updated:
            logger.info("%s sync: updated %d records, watermark %s", self.stream, updated, merged.isoformat())
        return SyncReport(self.stream, updated, merged, failed)
