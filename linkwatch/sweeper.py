"""Periodic retention cleanup of stored observations and batch records."""

import logging
import sqlite3
import threading
from datetime import UTC, datetime

from .database import cleanup_old_records

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_HOURS = 24
DEFAULT_RETENTION_DAYS = 30


class RetentionSweeper:
    """Deletes records older than the retention period on a fixed interval.

    The first sweep runs as soon as the sweeper starts; later sweeps follow
    every interval_hours. A failed sweep is logged and the schedule continues.
    """

    def __init__(
        self,
        db_conn: sqlite3.Connection,
        interval_hours: float = DEFAULT_INTERVAL_HOURS,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ) -> None:
        """Initialize the sweeper.

        Args:
            db_conn: Database connection to prune.
            interval_hours: Hours between sweeps.
            retention_days: Records older than this many days are deleted.
        """
        self._db_conn = db_conn
        self.interval_hours = interval_hours
        self.retention_days = retention_days
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def interval_seconds(self) -> float:
        return self.interval_hours * 3600

    def start(self) -> None:
        """Start the sweeper thread."""
        if self._thread and self._thread.is_alive():
            logger.warning("Retention sweeper already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="retention-sweeper", daemon=True)
        self._thread.start()
        logger.info(
            "Retention sweeper started (interval: %sh, retention: %d days)",
            self.interval_hours,
            self.retention_days,
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the sweeper thread.

        A sweep already in progress is allowed to finish; no further sweeps run.

        Args:
            timeout: Maximum seconds to wait for the thread to exit.
        """
        if not self._thread or not self._thread.is_alive():
            return

        logger.info("Stopping retention sweeper...")
        self._stop_event.set()
        self._thread.join(timeout=timeout)

        if self._thread.is_alive():
            logger.warning("Retention sweeper did not stop within timeout")
        else:
            logger.info("Retention sweeper stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self, now: datetime | None = None) -> tuple[int, int]:
        """Run one sweep.

        Returns:
            Tuple of (observations deleted, batch records deleted).

        Raises:
            StorageError: If the prune fails.
        """
        logger.debug("Running retention sweep...")
        deleted = cleanup_old_records(self._db_conn, self.retention_days, now=now or datetime.now(UTC))
        observations, batches = deleted
        logger.info(
            "Retention sweep completed: removed %d observations and %d batch records",
            observations,
            batches,
        )
        return deleted

    def _run(self) -> None:
        """Sweeper loop - runs in background thread."""
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error("Retention sweep failed: %s", e)
            # Wait for interval or until stop signal
            self._stop_event.wait(self.interval_seconds)
