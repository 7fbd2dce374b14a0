"""URL reachability checks, single and batched."""

import logging
import sqlite3
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

import requests
from urllib3.exceptions import LocationValueError

from .config import CheckerConfig, DatabaseConfig
from .database import insert_batch, insert_observation
from .models import BatchRecord, BatchResult, BatchSummary, CheckOutcome, Observation, RequestMetadata, new_id
from .validation import INVALID_URL_FORMAT, is_valid_url

logger = logging.getLogger(__name__)

FAILED_REQUEST = "Failed to check URL"


def _is_success_status(status_code: int) -> bool:
    """Any final status below 400 counts as working."""
    return status_code < 400


def _elapsed_ms(start: float) -> int:
    return max(0, int((time.monotonic() - start) * 1000))


def build_session(config: CheckerConfig) -> requests.Session:
    """Create an HTTP session with the configured redirect limit and User-Agent."""
    session = requests.Session()
    session.max_redirects = config.max_redirects
    session.headers["User-Agent"] = config.user_agent
    return session


def invalid_url_outcome(url: str) -> CheckOutcome:
    """Outcome for a URL rejected before any request is made."""
    return CheckOutcome(url=url, is_broken=True, error=INVALID_URL_FORMAT)


def _timeout_outcome(url: str, timeout_ms: int, elapsed_ms: int) -> CheckOutcome:
    return CheckOutcome(
        url=url,
        is_broken=True,
        error=f"Request timed out after {timeout_ms}ms",
        response_time_ms=elapsed_ms,
    )


def check_url(session: requests.Session, url: str, timeout_ms: int) -> CheckOutcome:
    """Perform a single HTTP GET against a URL and classify the result.

    Does not validate or persist; see Checker.check_single for that.

    timeout_ms bounds the whole check, redirects included. requests applies
    its timeout per connect and per read on every hop, so a chain of slow
    hops can finish late without raising; such a check is reported as timed
    out whatever its final status.

    Args:
        session: HTTP session carrying the redirect limit.
        url: Well-formed http(s) URL.
        timeout_ms: Request timeout in milliseconds.

    Returns:
        CheckOutcome with status, response time and any error details.
    """
    start = time.monotonic()

    try:
        # stream=True: headers only, the body is never read
        with session.get(url, timeout=timeout_ms / 1000, allow_redirects=True, stream=True) as response:
            elapsed_ms = _elapsed_ms(start)
            if elapsed_ms > timeout_ms:
                return _timeout_outcome(url, timeout_ms, elapsed_ms)

            status_code = response.status_code

            if _is_success_status(status_code):
                return CheckOutcome(
                    url=url,
                    is_broken=False,
                    status_code=status_code,
                    response_time_ms=elapsed_ms,
                )

            reason = response.reason or "Error"
            return CheckOutcome(
                url=url,
                is_broken=True,
                status_code=status_code,
                error=f"HTTP {status_code}: {reason}",
                response_time_ms=elapsed_ms,
            )

    except requests.Timeout:
        return _timeout_outcome(url, timeout_ms, _elapsed_ms(start))

    except requests.TooManyRedirects as e:
        status_code = e.response.status_code if e.response is not None else None
        return CheckOutcome(
            url=url,
            is_broken=True,
            status_code=status_code,
            error=f"Exceeded {session.max_redirects} redirects",
            response_time_ms=_elapsed_ms(start),
        )

    except requests.ConnectionError as e:
        reason = str(e) or "Connection failed"
        return CheckOutcome(
            url=url,
            is_broken=True,
            error=f"Connection failed: {reason}",
            response_time_ms=_elapsed_ms(start),
        )

    except (requests.RequestException, LocationValueError) as e:
        # urllib3 rejects some hosts (empty or over-long labels) with a
        # ValueError that requests does not wrap
        return CheckOutcome(
            url=url,
            is_broken=True,
            error=str(e) or FAILED_REQUEST,
            response_time_ms=_elapsed_ms(start),
        )


class Checker:
    """Checks URLs on demand and records every check.

    Each check appends exactly one Observation; each batch additionally
    appends one BatchRecord. Storage failures propagate to the caller as
    StorageError so that no check goes unrecorded silently.

    Example:
        checker = Checker(db_conn)
        outcome = checker.check_single("https://example.com")
        batch = checker.check_batch(["https://example.com", "https://example.org"])
    """

    def __init__(
        self,
        db_conn: sqlite3.Connection,
        config: CheckerConfig | None = None,
        db_config: DatabaseConfig | None = None,
        session: requests.Session | None = None,
    ) -> None:
        """Initialize the checker.

        Args:
            db_conn: Database connection for storing observations.
            config: Timeout, redirect and concurrency settings.
            db_config: Record caps for the observation and batch tables.
            session: HTTP session to use (default: one built from config).
        """
        self._db_conn = db_conn
        self._config = config or CheckerConfig()
        self._db_config = db_config or DatabaseConfig()
        self._session = session or build_session(self._config)

    @property
    def config(self) -> CheckerConfig:
        return self._config

    def _observe(self, url: str, metadata: RequestMetadata | None) -> Observation:
        """Check one URL without storing it, stamped at completion time."""
        if is_valid_url(url):
            outcome = check_url(self._session, url, self._config.timeout_ms)
        else:
            outcome = invalid_url_outcome(url)

        if outcome.is_broken:
            logger.debug("%s: BROKEN (%s)", url, outcome.error)
        else:
            logger.debug("%s: OK %d (%dms)", url, outcome.status_code, outcome.response_time_ms)

        return Observation.from_outcome(outcome, metadata)

    def _store(self, obs: Observation) -> None:
        insert_observation(self._db_conn, obs, max_records=self._db_config.max_observations)

    def check_single(self, url: str, metadata: RequestMetadata | None = None) -> CheckOutcome:
        """Check one URL and append its observation.

        Invalid URLs never reach the network; they are recorded as broken with
        no response time.

        Raises:
            StorageError: If the observation cannot be stored.
        """
        obs = self._observe(url, metadata)
        self._store(obs)
        return obs.to_outcome()

    def check_batch(self, urls: list[str], metadata: RequestMetadata | None = None) -> BatchResult:
        """Check several URLs concurrently and append their observations and a batch record.

        Results keep the order of urls regardless of completion order, and the
        observations are appended in that same order once every check has
        finished. At most config.max_workers requests are in flight at once.

        Raises:
            StorageError: If any observation or the batch record cannot be stored.
        """
        workers = min(self._config.max_workers, max(len(urls), 1))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="check") as executor:
            observations = list(executor.map(lambda url: self._observe(url, metadata), urls))

        for obs in observations:
            self._store(obs)

        outcomes = [obs.to_outcome() for obs in observations]
        summary = BatchSummary.from_outcomes(outcomes)
        completed_at = datetime.now(UTC)
        # Embedded results get their own ids and the batch timestamp
        record = BatchRecord(
            id=new_id(),
            urls=list(urls),
            results=[Observation.from_outcome(outcome, metadata, timestamp=completed_at) for outcome in outcomes],
            summary=summary,
            timestamp=completed_at,
            metadata=metadata,
        )
        insert_batch(self._db_conn, record, max_records=self._db_config.max_batches)

        logger.info(
            "Batch check completed - %d working, %d broken",
            summary.working,
            summary.broken,
        )
        return BatchResult(results=outcomes, summary=summary)

    def close(self) -> None:
        """Release pooled HTTP connections."""
        self._session.close()
