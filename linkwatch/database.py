"""SQLite persistence for check observations and batch records."""

import json
import logging
import sqlite3
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .models import BatchRecord, BatchSummary, Observation, RequestMetadata, Statistics
from .validation import validate_date_range

logger = logging.getLogger(__name__)

# Oldest records beyond these counts are evicted on every append.
MAX_OBSERVATIONS = 10_000
MAX_BATCHES = 1_000


class StorageError(Exception):
    """Raised when a storage operation fails."""

    pass


# Single writer critical section. Every write and aggregate read holds it.
_db_lock = threading.Lock()


def init_db(db_path: str) -> sqlite3.Connection:
    """Initialize the database and create tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file.

    Returns:
        Database connection with WAL mode enabled.

    Raises:
        StorageError: If database initialization fails.
    """
    try:
        parent_dir = Path(db_path).parent
        if not parent_dir.exists():
            parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        # seq breaks timestamp ties for cap eviction; id is the public identifier
        conn.execute("""
            CREATE TABLE IF NOT EXISTS observations (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                url TEXT NOT NULL,
                is_broken INTEGER NOT NULL,
                status_code INTEGER,
                error TEXT,
                response_time_ms INTEGER,
                timestamp TEXT NOT NULL,
                metadata TEXT
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS batches (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                urls TEXT NOT NULL,
                results TEXT NOT NULL,
                total INTEGER NOT NULL,
                broken INTEGER NOT NULL,
                working INTEGER NOT NULL,
                timestamp TEXT NOT NULL,
                metadata TEXT
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_observations_timestamp
            ON observations(timestamp)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_batches_timestamp
            ON batches(timestamp)
        """)

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise StorageError(f"Failed to initialize database: {e}")
    except OSError as e:
        raise StorageError(f"Failed to create database directory: {e}")


def _as_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _format_timestamp(value: datetime) -> str:
    """Format a datetime as a fixed-width UTC ISO-8601 string.

    Fixed width (always with microseconds and offset) keeps text comparison in
    SQL equivalent to time comparison.
    """
    return _as_utc(value).isoformat(timespec="microseconds")


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def _dump_metadata(metadata: RequestMetadata | None) -> str | None:
    if metadata is None:
        return None
    return json.dumps(metadata.to_dict())


def _load_metadata(value: str | None) -> RequestMetadata | None:
    if not value:
        return None
    return RequestMetadata.from_dict(json.loads(value))


def _observation_to_json(obs: Observation) -> dict:
    """Convert an Observation to the dict embedded in a batch record."""
    return {
        "id": obs.id,
        "url": obs.url,
        "isBroken": obs.is_broken,
        "statusCode": obs.status_code,
        "error": obs.error,
        "responseTime": obs.response_time_ms,
        "timestamp": _format_timestamp(obs.timestamp),
        "metadata": obs.metadata.to_dict() if obs.metadata else None,
    }


def _observation_from_json(data: dict) -> Observation:
    return Observation(
        id=data["id"],
        url=data["url"],
        is_broken=bool(data["isBroken"]),
        status_code=data.get("statusCode"),
        error=data.get("error"),
        response_time_ms=data.get("responseTime"),
        timestamp=_parse_timestamp(data["timestamp"]),
        metadata=RequestMetadata.from_dict(data.get("metadata")),
    )


def _row_to_observation(row: sqlite3.Row) -> Observation:
    return Observation(
        id=row["id"],
        url=row["url"],
        is_broken=bool(row["is_broken"]),
        status_code=row["status_code"],
        error=row["error"],
        response_time_ms=row["response_time_ms"],
        timestamp=_parse_timestamp(row["timestamp"]),
        metadata=_load_metadata(row["metadata"]),
    )


def _row_to_batch(row: sqlite3.Row) -> BatchRecord:
    return BatchRecord(
        id=row["id"],
        urls=json.loads(row["urls"]),
        results=[_observation_from_json(item) for item in json.loads(row["results"])],
        summary=BatchSummary(total=row["total"], broken=row["broken"], working=row["working"]),
        timestamp=_parse_timestamp(row["timestamp"]),
        metadata=_load_metadata(row["metadata"]),
    )


def _evict_oldest(conn: sqlite3.Connection, table: str, max_records: int) -> int:
    """Delete the oldest rows of a table beyond max_records.

    Age is the record timestamp; rows with equal timestamps go in insertion
    order. Must be called with _db_lock held, inside the append's transaction.
    """
    cursor = conn.execute(
        f"""
        DELETE FROM {table}
        WHERE seq IN (
            SELECT seq FROM {table}
            ORDER BY timestamp DESC, seq DESC
            LIMIT -1 OFFSET ?
        )
        """,
        (max_records,),
    )
    return cursor.rowcount


def insert_observation(
    conn: sqlite3.Connection,
    obs: Observation,
    max_records: int = MAX_OBSERVATIONS,
) -> None:
    """Append an observation, evicting the oldest ones beyond max_records.

    Thread-safe: acquires global lock before database access.

    Args:
        conn: Database connection.
        obs: Observation to append.
        max_records: Maximum number of observations to keep.

    Raises:
        StorageError: If the insert fails. Nothing is committed in that case.
    """
    try:
        with _db_lock:
            try:
                conn.execute(
                    """
                    INSERT INTO observations
                    (id, url, is_broken, status_code, error, response_time_ms, timestamp, metadata)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        obs.id,
                        obs.url,
                        1 if obs.is_broken else 0,
                        obs.status_code,
                        obs.error,
                        obs.response_time_ms,
                        _format_timestamp(obs.timestamp),
                        _dump_metadata(obs.metadata),
                    ),
                )
                evicted = _evict_oldest(conn, "observations", max_records)
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
        if evicted > 0:
            logger.debug("Evicted %d observations over cap of %d", evicted, max_records)
    except sqlite3.Error as e:
        raise StorageError(f"Failed to insert observation: {e}")


def insert_batch(
    conn: sqlite3.Connection,
    record: BatchRecord,
    max_records: int = MAX_BATCHES,
) -> None:
    """Append a batch record, evicting the oldest ones beyond max_records.

    The batch's embedded results are stored inside the record only; they are
    not added to the observations table.

    Thread-safe: acquires global lock before database access.

    Raises:
        StorageError: If the insert fails. Nothing is committed in that case.
    """
    try:
        with _db_lock:
            try:
                conn.execute(
                    """
                    INSERT INTO batches
                    (id, urls, results, total, broken, working, timestamp, metadata)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        json.dumps(record.urls),
                        json.dumps([_observation_to_json(obs) for obs in record.results]),
                        record.summary.total,
                        record.summary.broken,
                        record.summary.working,
                        _format_timestamp(record.timestamp),
                        _dump_metadata(record.metadata),
                    ),
                )
                evicted = _evict_oldest(conn, "batches", max_records)
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
        if evicted > 0:
            logger.debug("Evicted %d batch records over cap of %d", evicted, max_records)
    except sqlite3.Error as e:
        raise StorageError(f"Failed to insert batch record: {e}")


def get_recent(conn: sqlite3.Connection, limit: int = 50) -> list[Observation]:
    """Get the most recent observations.

    Args:
        conn: Database connection.
        limit: Maximum number of observations to return.

    Returns:
        Up to limit observations, newest first.

    Raises:
        StorageError: If the query fails.
    """
    if limit < 1:
        return []

    try:
        with _db_lock:
            rows = conn.execute(
                """
                SELECT id, url, is_broken, status_code, error, response_time_ms, timestamp, metadata
                FROM observations
                ORDER BY timestamp DESC, seq DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [_row_to_observation(row) for row in rows]

    except sqlite3.Error as e:
        raise StorageError(f"Failed to get recent observations: {e}")


def get_by_date_range(conn: sqlite3.Connection, start: datetime, end: datetime) -> list[Observation]:
    """Get observations whose timestamp falls within [start, end].

    Both bounds are inclusive. Results come back in insertion order.

    Raises:
        ValidationError: If start is after end.
        StorageError: If the query fails.
    """
    start = _as_utc(start)
    end = _as_utc(end)
    validate_date_range(start, end)
    start_text = _format_timestamp(start)
    end_text = _format_timestamp(end)

    try:
        with _db_lock:
            rows = conn.execute(
                """
                SELECT id, url, is_broken, status_code, error, response_time_ms, timestamp, metadata
                FROM observations
                WHERE timestamp >= ? AND timestamp <= ?
                ORDER BY seq
                """,
                (start_text, end_text),
            ).fetchall()
        return [_row_to_observation(row) for row in rows]

    except sqlite3.Error as e:
        raise StorageError(f"Failed to get observations by date range: {e}")


def get_batches(conn: sqlite3.Connection, limit: int = 50) -> list[BatchRecord]:
    """Get the most recent batch records, newest first.

    Raises:
        StorageError: If the query fails.
    """
    if limit < 1:
        return []

    try:
        with _db_lock:
            rows = conn.execute(
                """
                SELECT id, urls, results, total, broken, working, timestamp, metadata
                FROM batches
                ORDER BY timestamp DESC, seq DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [_row_to_batch(row) for row in rows]

    except sqlite3.Error as e:
        raise StorageError(f"Failed to get batch records: {e}")


def get_statistics(conn: sqlite3.Connection, now: datetime | None = None) -> Statistics:
    """Compute aggregate statistics over the stored history.

    Computed from the tables on every call, so evictions and prunes are
    reflected immediately.

    Args:
        conn: Database connection.
        now: Reference time for the today/week/month windows (default: current UTC time).

    Raises:
        StorageError: If the query fails.
    """
    now = _as_utc(now or datetime.now(UTC))
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    this_week = now - timedelta(days=7)
    this_month = today.replace(day=1)

    try:
        with _db_lock:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_urls,
                    COALESCE(SUM(is_broken), 0) AS broken_urls,
                    AVG(response_time_ms) AS average_response_time,
                    MAX(timestamp) AS last_check,
                    COALESCE(SUM(CASE WHEN timestamp >= ? THEN 1 ELSE 0 END), 0) AS checks_today,
                    COALESCE(SUM(CASE WHEN timestamp >= ? THEN 1 ELSE 0 END), 0) AS checks_this_week,
                    COALESCE(SUM(CASE WHEN timestamp >= ? THEN 1 ELSE 0 END), 0) AS checks_this_month
                FROM observations
                """,
                (
                    _format_timestamp(today),
                    _format_timestamp(this_week),
                    _format_timestamp(this_month),
                ),
            ).fetchone()
            batch_count = conn.execute("SELECT COUNT(*) FROM batches").fetchone()[0]

    except sqlite3.Error as e:
        raise StorageError(f"Failed to compute statistics: {e}")

    average = row["average_response_time"]
    return Statistics(
        total_checks=batch_count + row["total_urls"],
        total_urls=row["total_urls"],
        broken_urls=row["broken_urls"],
        working_urls=row["total_urls"] - row["broken_urls"],
        # round half up
        average_response_time=int(average + 0.5) if average is not None else 0,
        last_check=_parse_timestamp(row["last_check"]) if row["last_check"] else None,
        checks_today=row["checks_today"],
        checks_this_week=row["checks_this_week"],
        checks_this_month=row["checks_this_month"],
    )


def prune(conn: sqlite3.Connection, older_than: datetime) -> tuple[int, int]:
    """Delete observations and batch records strictly older than a cutoff.

    Thread-safe: acquires global lock before database access.

    Args:
        conn: Database connection.
        older_than: Records with a timestamp before this are deleted.

    Returns:
        Tuple of (observations deleted, batch records deleted).

    Raises:
        StorageError: If the deletion fails. Nothing is committed in that case.
    """
    cutoff = _format_timestamp(older_than)

    try:
        with _db_lock:
            try:
                observations = conn.execute(
                    "DELETE FROM observations WHERE timestamp < ?",
                    (cutoff,),
                ).rowcount
                batches = conn.execute(
                    "DELETE FROM batches WHERE timestamp < ?",
                    (cutoff,),
                ).rowcount
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise

        return observations, batches

    except sqlite3.Error as e:
        raise StorageError(f"Failed to prune old records: {e}")


def cleanup_old_records(
    conn: sqlite3.Connection,
    retention_days: int,
    now: datetime | None = None,
) -> tuple[int, int]:
    """Delete records older than the retention period.

    Args:
        conn: Database connection.
        retention_days: Delete records older than this many days.
        now: Reference time (default: current UTC time).

    Returns:
        Tuple of (observations deleted, batch records deleted).

    Raises:
        StorageError: If the cleanup fails.
    """
    cutoff = (now or datetime.now(UTC)) - timedelta(days=retention_days)
    return prune(conn, cutoff)


def delete_all_records(conn: sqlite3.Connection) -> tuple[int, int]:
    """Delete every observation and batch record.

    Thread-safe: acquires global lock before database access.

    Returns:
        Tuple of (observations deleted, batch records deleted).

    Raises:
        StorageError: If the deletion fails.
    """
    try:
        with _db_lock:
            observations = conn.execute("DELETE FROM observations").rowcount
            batches = conn.execute("DELETE FROM batches").rowcount
            conn.commit()
        return observations, batches

    except sqlite3.Error as e:
        raise StorageError(f"Failed to delete records: {e}")
