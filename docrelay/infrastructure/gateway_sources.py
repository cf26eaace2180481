"""Read access to the gateway's own message databases."""
from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Protocol

import duckdb

from docrelay.core.schema import SyncRow

logger = logging.getLogger(__name__)

REQUESTS_SQL = """
SELECT md.id, md.message_id, md.sending_date
FROM core.message_metadata md
WHERE md.message_type = 'REQUEST' AND md.sending_date IS NOT NULL AND md.sending_date >= ?
ORDER BY md.sending_date
"""

RESPONSES_SQL = """
SELECT md.reference_id, md.message_id, md.delivery_date
FROM core.message_metadata md
LEFT JOIN core.message_content mc ON mc.id = md.id
WHERE md.message_type = 'RESPONSE'
  AND COALESCE(mc.mode, '') <> 'STATUS'
  AND md.reference_id IS NOT NULL
  AND md.delivery_date IS NOT NULL AND md.delivery_date >= ?
ORDER BY md.delivery_date
"""


class GatewaySourceError(RuntimeError):
    """Raised when a gateway database cannot be queried."""


class GatewaySource(Protocol):
    name: str

    def fetch_requests(self, since: datetime) -> list[SyncRow]: ...

    def fetch_responses(self, since: datetime) -> list[SyncRow]: ...


class DuckDBGatewaySource:
    """Gateway database exposed as a DuckDB file, opened read-only per query."""

    def __init__(self, name: str, path: Path) -> None:
        self.name = name
        self._path = Path(path)

    def _query(self, sql: str, since: datetime) -> list[SyncRow]:
        try:
            conn = duckdb.connect(str(self._path), read_only=True)
        except (duckdb.Error, OSError) as exc:
            raise GatewaySourceError(f"cannot open gateway source {self.name}: {exc}") from exc
        try:
            rows = conn.execute(sql, [since]).fetchall()
        except duckdb.Error as exc:
            raise GatewaySourceError(f"query against gateway source {self.name} failed: {exc}") from exc
        finally:
            conn.close()
        return [
            SyncRow(correlation_id=str(correlation_id), message_id=message_id, timestamp=timestamp)
            for correlation_id, message_id, timestamp in rows
        ]

    def fetch_requests(self, since: datetime) -> list[SyncRow]:
        return self._query(REQUESTS_SQL, since)

    def fetch_responses(self, since: datetime) -> list[SyncRow]:
        return self._query(RESPONSES_SQL, since)


def build_sources(locations: dict[str, Path]) -> list[GatewaySource]:
    return [DuckDBGatewaySource(name, path) for name, path in locations.items()]
