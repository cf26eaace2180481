"""Central log persistence.

The log is the shared mutable state of every worker.  Status changes are
single ``UPDATE`` statements guarded by the current status so concurrent
workers can never regress a record.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Iterable, Iterator, Protocol

import duckdb
import pandas as pd

from docrelay.core.errors import RetryableIOError
from docrelay.core.schema import OPEN_STATUSES, LogRecord, Status, StatusUpdate, SyncRow
from docrelay.core.transitions import blocked_from

logger = logging.getLogger(__name__)

MERGED_SOURCE = "*"

_COLUMNS = (
    "log_id",
    "correlation_id",
    "file_name",
    "document_type",
    "keywords",
    "document_key",
    "sequence",
    "status",
    "external_message_id",
    "response_message_id",
    "receipt_timestamp",
    "send_timestamp",
    "response_timestamp",
    "processing_timestamp",
    "timeout_at",
    "err_source",
    "err_code",
    "err_description",
)

_SCHEMA = """
CREATE SEQUENCE IF NOT EXISTS log_id_seq START 1;
CREATE TABLE IF NOT EXISTS log (
    log_id BIGINT PRIMARY KEY DEFAULT nextval('log_id_seq'),
    correlation_id VARCHAR UNIQUE,
    file_name VARCHAR,
    document_type VARCHAR,
    keywords VARCHAR,
    document_key VARCHAR,
    sequence INTEGER,
    status VARCHAR NOT NULL,
    external_message_id VARCHAR,
    response_message_id VARCHAR,
    receipt_timestamp TIMESTAMP,
    send_timestamp TIMESTAMP,
    response_timestamp TIMESTAMP,
    processing_timestamp TIMESTAMP,
    timeout_at TIMESTAMP,
    err_source VARCHAR,
    err_code VARCHAR,
    err_description VARCHAR
);
CREATE TABLE IF NOT EXISTS log_archive AS SELECT * FROM log WHERE false;
CREATE TABLE IF NOT EXISTS quota_counter (
    session_date DATE NOT NULL,
    document_type VARCHAR NOT NULL,
    msg_count INTEGER NOT NULL,
    PRIMARY KEY (session_date, document_type)
);
CREATE TABLE IF NOT EXISTS watermarks (
    stream VARCHAR NOT NULL,
    source VARCHAR NOT NULL,
    ts TIMESTAMP NOT NULL,
    PRIMARY KEY (stream, source)
);
CREATE TABLE IF NOT EXISTS markers (
    key VARCHAR PRIMARY KEY,
    value VARCHAR
);
"""


class LogStore(Protocol):
    """Persistence contract for the central log."""

    def insert_record(self, record: LogRecord) -> LogRecord: ...

    def get_by_correlation(self, correlation_id: str) -> LogRecord | None: ...

    def get_by_log_id(self, log_id: int) -> LogRecord | None: ...

    def find_correlation_by_message_id(self, message_id: str) -> str | None: ...

    def find_by_document_key(self, document_key: str) -> LogRecord | None: ...

    def apply_status(self, correlation_id: str, update: StatusUpdate, *, now: datetime) -> bool: ...

    def record_request_sync(self, rows: Iterable[SyncRow]) -> int: ...

    def record_response_sync(self, rows: Iterable[SyncRow]) -> int: ...

    def load_counters(self, day: date) -> dict[str, int]: ...

    def save_counters(self, day: date, counters: dict[str, int]) -> None: ...

    def get_marker(self, key: str) -> str | None: ...

    def set_marker(self, key: str, value: str) -> None: ...

    def load_watermarks(self, stream: str) -> dict[str, datetime]: ...

    def save_watermarks(self, stream: str, contributions: dict[str, datetime], merged: datetime) -> None: ...

    def sweep_timeouts(self, today: date, *, now: datetime) -> int: ...

    def archive_before(self, cutoff: datetime) -> int: ...

    def refresh_views(self) -> None: ...

    def status_summary(self, day: date | None = None) -> pd.DataFrame: ...

    def list_records(self, *, status: Status | None = None, limit: int = 100) -> list[LogRecord]: ...


class DuckDBLogStore:
    """DuckDB-backed central log; ``:memory:`` is used by the tests."""

    def __init__(self, database: str = ":memory:") -> None:
        self._database = database
        self._conn = duckdb.connect(database)
        self._lock = threading.Lock()
        for statement in _SCHEMA.split(";"):
            if statement.strip():
                self._conn.execute(statement)
        self.refresh_views()

    # ------------------------------------------------------------------
    # internal helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _cursor(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Yield a private cursor; database failures surface as :class:`RetryableIOError`."""

        try:
            with self._lock:
                cursor = self._conn.cursor()
        except duckdb.Error as exc:
            raise RetryableIOError(f"log store unavailable: {exc}", source="logstore") from exc
        try:
            yield cursor
        except duckdb.Error as exc:
            raise RetryableIOError(f"log store statement failed: {exc}", source="logstore") from exc
        finally:
            cursor.close()

    @staticmethod
    def _fetch_dicts(cursor: duckdb.DuckDBPyConnection) -> list[dict[str, Any]]:
        names = [column[0] for column in cursor.description or []]
        return [dict(zip(names, row)) for row in cursor.fetchall()]

    def _select_records(self, where: str, params: list[Any], *, suffix: str = "") -> list[LogRecord]:
        sql = f"SELECT {', '.join(_COLUMNS)} FROM log WHERE {where} {suffix}"
        with self._cursor() as cursor:
            cursor.execute(sql, params)
            return [LogRecord(**row) for row in self._fetch_dicts(cursor)]

    def _execute(self, sql: str, params: list[Any] | None = None) -> list[tuple]:
        with self._cursor() as cursor:
            cursor.execute(sql, params or [])
            if cursor.description is None:
                return []
            return cursor.fetchall()

    # ------------------------------------------------------------------
    # log records
    # ------------------------------------------------------------------
    def insert_record(self, record: LogRecord) -> LogRecord:
        data = record.model_dump(exclude={"log_id"})
        data["status"] = record.status.value
        columns = list(data)
        placeholders = ", ".join("?" for _ in columns)
        sql = f"INSERT INTO log ({', '.join(columns)}) VALUES ({placeholders}) RETURNING log_id"
        rows = self._execute(sql, [data[column] for column in columns])
        return record.model_copy(update={"log_id": rows[0][0]})

    def get_by_correlation(self, correlation_id: str) -> LogRecord | None:
        records = self._select_records("correlation_id = ?", [correlation_id])
        return records[0] if records else None

    def get_by_log_id(self, log_id: int) -> LogRecord | None:
        records = self._select_records("log_id = ?", [log_id])
        return records[0] if records else None

    def find_correlation_by_message_id(self, message_id: str) -> str | None:
        rows = self._execute(
            "SELECT correlation_id FROM log WHERE external_message_id = ? AND correlation_id IS NOT NULL "
            "ORDER BY log_id DESC LIMIT 1",
            [message_id],
        )
        return rows[0][0] if rows else None

    def find_by_document_key(self, document_key: str) -> LogRecord | None:
        records = self._select_records(
            "document_key = ? AND correlation_id IS NOT NULL", [document_key], suffix="ORDER BY log_id DESC LIMIT 1"
        )
        return records[0] if records else None

    def apply_status(self, correlation_id: str, update: StatusUpdate, *, now: datetime) -> bool:
        """Apply ``update`` unless the stored status is guarded against it.

        Returns ``True`` when a row changed.
        """

        blocked = sorted(status.value for status in blocked_from(update.status))
        sql = (
            "UPDATE log SET status = ?, processing_timestamp = ?, "
            "response_timestamp = COALESCE(?, response_timestamp), "
            "err_source = COALESCE(?, err_source), "
            "err_code = COALESCE(?, err_code), "
            "err_description = CASE WHEN CAST(? AS BOOLEAN) AND err_description IS NOT NULL "
            "AND CAST(? AS VARCHAR) IS NOT NULL THEN err_description || '; ' || CAST(? AS VARCHAR) "
            "ELSE COALESCE(?, err_description) END "
            "WHERE correlation_id = ?"
        )
        params: list[Any] = [
            update.status.value,
            now,
            update.response_timestamp,
            update.err_source,
            update.err_code,
            update.append_description,
            update.err_description,
            update.err_description,
            update.err_description,
            correlation_id,
        ]
        if blocked:
            sql += f" AND status NOT IN ({', '.join('?' for _ in blocked)})"
            params.extend(blocked)
        sql += " RETURNING log_id"
        return bool(self._execute(sql, params))

    def list_records(self, *, status: Status | None = None, limit: int = 100) -> list[LogRecord]:
        if status is None:
            return self._select_records("true", [], suffix=f"ORDER BY log_id DESC LIMIT {int(limit)}")
        return self._select_records("status = ?", [status.value], suffix=f"ORDER BY log_id DESC LIMIT {int(limit)}")

    # ------------------------------------------------------------------
    # sync backfill
    # ------------------------------------------------------------------
    def record_request_sync(self, rows: Iterable[SyncRow]) -> int:
        sql = (
            "UPDATE log SET external_message_id = ?, send_timestamp = ?, "
            "status = CASE WHEN status IN ('PREPARED', 'QUEUED') THEN 'SENT' ELSE status END "
            "WHERE correlation_id = ? RETURNING log_id"
        )
        updated = 0
        for row in rows:
            updated += len(self._execute(sql, [row.message_id, row.timestamp, row.correlation_id]))
        return updated

    def record_response_sync(self, rows: Iterable[SyncRow]) -> int:
        sql = (
            "UPDATE log SET response_message_id = ?, response_timestamp = ? "
            "WHERE correlation_id = ? RETURNING log_id"
        )
        updated = 0
        for row in rows:
            updated += len(self._execute(sql, [row.message_id, row.timestamp, row.correlation_id]))
        return updated

    # ------------------------------------------------------------------
    # counters, markers and watermarks
    # ------------------------------------------------------------------
    def load_counters(self, day: date) -> dict[str, int]:
        rows = self._execute(
            "SELECT document_type, msg_count FROM quota_counter WHERE session_date = ?", [day]
        )
        return {name: int(count) for name, count in rows}

    def save_counters(self, day: date, counters: dict[str, int]) -> None:
        sql = (
            "INSERT INTO quota_counter (session_date, document_type, msg_count) VALUES (?, ?, ?) "
            "ON CONFLICT (session_date, document_type) DO UPDATE SET msg_count = excluded.msg_count"
        )
        for name, count in counters.items():
            self._execute(sql, [day, name, count])

    def get_marker(self, key: str) -> str | None:
        rows = self._execute("SELECT value FROM markers WHERE key = ?", [key])
        return rows[0][0] if rows else None

    def set_marker(self, key: str, value: str) -> None:
        self._execute(
            "INSERT INTO markers (key, value) VALUES (?, ?) ON CONFLICT (key) DO UPDATE SET value = excluded.value",
            [key, value],
        )

    def load_watermarks(self, stream: str) -> dict[str, datetime]:
        rows = self._execute("SELECT source, ts FROM watermarks WHERE stream = ?", [stream])
        return {source: ts for source, ts in rows}

    def save_watermarks(self, stream: str, contributions: dict[str, datetime], merged: datetime) -> None:
        sql = (
            "INSERT INTO watermarks (stream, source, ts) VALUES (?, ?, ?) "
            "ON CONFLICT (stream, source) DO UPDATE SET ts = excluded.ts"
        )
        for source, ts in {**contributions, MERGED_SOURCE: merged}.items():
            self._execute(sql, [stream, source, ts])

    # ------------------------------------------------------------------
    # maintenance
    # ------------------------------------------------------------------
    def sweep_timeouts(self, today: date, *, now: datetime) -> int:
        statuses = sorted(status.value for status in OPEN_STATUSES)
        sql = (
            "UPDATE log SET status = 'TIMEOUT', processing_timestamp = ? "
            "WHERE timeout_at IS NOT NULL AND CAST(timeout_at AS DATE) <= ? "
            f"AND status IN ({', '.join('?' for _ in statuses)}) RETURNING log_id"
        )
        swept = len(self._execute(sql, [now, today, *statuses]))
        if swept:
            logger.info("marked %d records as TIMEOUT", swept)
        return swept

    def archive_before(self, cutoff: datetime) -> int:
        with self._cursor() as cursor:
            cursor.begin()
            try:
                cursor.execute("INSERT INTO log_archive SELECT * FROM log WHERE receipt_timestamp < ?", [cutoff])
                cursor.execute("DELETE FROM log WHERE receipt_timestamp < ? RETURNING log_id", [cutoff])
                moved = len(cursor.fetchall())
                cursor.commit()
            except duckdb.Error:
                cursor.rollback()
                raise
        if moved:
            logger.info("archived %d records received before %s", moved, cutoff)
        return moved

    def refresh_views(self) -> None:
        self._execute("CREATE OR REPLACE TABLE full_log AS SELECT * FROM log UNION ALL SELECT * FROM log_archive")

    def status_summary(self, day: date | None = None) -> pd.DataFrame:
        where, params = "", []
        if day is not None:
            where, params = "WHERE CAST(receipt_timestamp AS DATE) = ?", [day]
        sql = (
            "SELECT document_type, status, count(*) AS total "
            "FROM (SELECT * FROM log UNION ALL SELECT * FROM log_archive) "
            f"{where} GROUP BY document_type, status ORDER BY document_type, status"
        )
        with self._cursor() as cursor:
            return cursor.execute(sql, params).df()

    def close(self) -> None:
        self._conn.close()
