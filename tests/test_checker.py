"""Tests for the checker module."""

import logging
import sqlite3
import threading
import time
from datetime import UTC, datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests
from urllib3.exceptions import LocationParseError

from linkwatch.checker import Checker, _is_success_status, build_session, check_url
from linkwatch.config import CheckerConfig, DatabaseConfig
from linkwatch.database import (
    StorageError,
    get_batches,
    get_by_date_range,
    get_recent,
    get_statistics,
    init_db,
)
from linkwatch.models import BatchSummary, CheckOutcome, RequestMetadata


def make_response(status_code: int = 200, reason: str | None = "OK") -> MagicMock:
    """Build a mock response usable as a context manager."""
    response = MagicMock()
    response.status_code = status_code
    response.reason = reason
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


def routed_get(routes: dict) -> callable:
    """Return a session.get side effect that answers per URL.

    Values are either a status code or an exception instance to raise.
    """

    def get(url: str, **kwargs) -> MagicMock:
        answer = routes[url]
        if isinstance(answer, Exception):
            raise answer
        return make_response(answer, "Not Found" if answer == 404 else "OK")

    return get


@pytest.fixture
def session() -> MagicMock:
    """Mock HTTP session answering 200 for everything."""
    session = MagicMock()
    session.max_redirects = 5
    session.get.return_value = make_response(200)
    return session


@pytest.fixture
def db_conn(tmp_path: Path) -> sqlite3.Connection:
    """Create a database connection with initialized tables."""
    conn = init_db(str(tmp_path / "test.db"))
    yield conn
    conn.close()


@pytest.fixture
def checker(db_conn: sqlite3.Connection, session: MagicMock) -> Checker:
    """Checker wired to the mock session and a temporary database."""
    return Checker(db_conn, CheckerConfig(), DatabaseConfig(), session=session)


class TestIsSuccessStatus:
    """Tests for _is_success_status function."""

    @pytest.mark.parametrize("status", [200, 201, 204, 301, 302, 304, 399])
    def test_below_400_is_success(self, status: int) -> None:
        assert _is_success_status(status) is True

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 429, 500, 503])
    def test_400_and_above_is_failure(self, status: int) -> None:
        assert _is_success_status(status) is False


class TestBuildSession:
    """Tests for build_session function."""

    def test_applies_redirect_limit_and_user_agent(self) -> None:
        """Session carries the configured redirect cap and User-Agent."""
        session = build_session(CheckerConfig(max_redirects=2, user_agent="linkcheck/2.0"))
        try:
            assert session.max_redirects == 2
            assert session.headers["User-Agent"] == "linkcheck/2.0"
        finally:
            session.close()


class TestCheckUrl:
    """Tests for check_url function."""

    def test_success_is_working(self, session: MagicMock) -> None:
        """2xx responses are working with no error."""
        outcome = check_url(session, "https://example.com", 10_000)

        assert outcome == CheckOutcome(
            url="https://example.com",
            is_broken=False,
            status_code=200,
            response_time_ms=outcome.response_time_ms,
        )
        assert outcome.error is None
        assert outcome.response_time_ms >= 0

    def test_final_redirect_status_is_working(self, session: MagicMock) -> None:
        """A final 3xx status below 400 is working."""
        session.get.return_value = make_response(304, "Not Modified")

        outcome = check_url(session, "https://example.com", 10_000)

        assert outcome.is_broken is False
        assert outcome.status_code == 304

    def test_client_error_is_broken(self, session: MagicMock) -> None:
        """4xx responses are broken with the status in the error."""
        session.get.return_value = make_response(404, "Not Found")

        outcome = check_url(session, "https://example.com/missing", 10_000)

        assert outcome.is_broken is True
        assert outcome.status_code == 404
        assert outcome.error == "HTTP 404: Not Found"
        assert outcome.response_time_ms is not None

    def test_server_error_without_reason(self, session: MagicMock) -> None:
        """A missing reason phrase still yields an error description."""
        session.get.return_value = make_response(503, None)

        outcome = check_url(session, "https://example.com", 10_000)

        assert outcome.is_broken is True
        assert outcome.error == "HTTP 503: Error"

    def test_follows_redirects_with_timeout(self, session: MagicMock) -> None:
        """GET is issued with redirects enabled and the timeout in seconds."""
        check_url(session, "https://example.com", 2500)

        session.get.assert_called_once_with(
            "https://example.com",
            timeout=2.5,
            allow_redirects=True,
            stream=True,
        )

    def test_timeout_is_broken(self, session: MagicMock) -> None:
        """Timeouts are broken with no status code."""
        session.get.side_effect = requests.Timeout()

        outcome = check_url(session, "https://slow.example", 10_000)

        assert outcome.is_broken is True
        assert outcome.status_code is None
        assert outcome.error == "Request timed out after 10000ms"
        assert outcome.response_time_ms is not None

    def test_connect_timeout_is_reported_as_timeout(self, session: MagicMock) -> None:
        """Connect timeouts are reported as timeouts, not connection failures."""
        session.get.side_effect = requests.ConnectTimeout()

        outcome = check_url(session, "https://slow.example", 3000)

        assert outcome.error == "Request timed out after 3000ms"

    def test_too_many_redirects_is_broken(self, session: MagicMock) -> None:
        """Redirect chains over the limit are broken."""
        session.get.side_effect = requests.TooManyRedirects("Exceeded 5 redirects.")

        outcome = check_url(session, "https://loop.example", 10_000)

        assert outcome.is_broken is True
        assert outcome.status_code is None
        assert outcome.error == "Exceeded 5 redirects"

    def test_too_many_redirects_keeps_last_status(self, session: MagicMock) -> None:
        """The last redirect status is reported when available."""
        last = make_response(302, "Found")
        session.get.side_effect = requests.TooManyRedirects("Exceeded 5 redirects.", response=last)

        outcome = check_url(session, "https://loop.example", 10_000)

        assert outcome.status_code == 302
        assert outcome.is_broken is True

    def test_connection_error_is_broken(self, session: MagicMock) -> None:
        """DNS and connection failures are broken with no status code."""
        session.get.side_effect = requests.ConnectionError("Name or service not known")

        outcome = check_url(session, "https://nonexistent.invalid", 10_000)

        assert outcome.is_broken is True
        assert outcome.status_code is None
        assert outcome.error == "Connection failed: Name or service not known"

    def test_other_request_errors_are_broken(self, session: MagicMock) -> None:
        """Any other request failure is broken with its message."""
        session.get.side_effect = requests.exceptions.InvalidHeader("bad header")

        outcome = check_url(session, "https://example.com", 10_000)

        assert outcome.is_broken is True
        assert outcome.error == "bad header"

    def test_measures_response_time(self, session: MagicMock) -> None:
        """Response time is the elapsed wall time in milliseconds."""
        with patch("linkwatch.checker.time.monotonic", side_effect=[100.0, 100.25]):
            outcome = check_url(session, "https://example.com", 10_000)

        assert outcome.response_time_ms == 250

    def test_response_after_deadline_is_timeout(self, session: MagicMock) -> None:
        """A response arriving after timeout_ms is a timeout, whatever its status."""
        with patch("linkwatch.checker.time.monotonic", side_effect=[100.0, 101.5]):
            outcome = check_url(session, "https://example.com", 1000)

        assert outcome.is_broken is True
        assert outcome.status_code is None
        assert outcome.error == "Request timed out after 1000ms"
        assert outcome.response_time_ms == 1500

    def test_unparseable_host_is_broken(self, session: MagicMock) -> None:
        """Host parse failures raised below requests become broken outcomes."""
        session.get.side_effect = LocationParseError("a..b")

        outcome = check_url(session, "http://a..b/", 10_000)

        assert outcome.is_broken is True
        assert outcome.status_code is None
        assert "a..b" in outcome.error


class SlowRedirectHandler(BaseHTTPRequestHandler):
    """Serves /hop/N: redirects to /hop/N-1 until N is 0, sleeping before each reply."""

    def do_GET(self) -> None:
        hops = int(self.path.rsplit("/", 1)[-1])
        time.sleep(self.server.delay)
        if hops > 0:
            self.send_response(302)
            self.send_header("Location", f"/hop/{hops - 1}")
            self.send_header("Content-Length", "0")
            self.end_headers()
            return
        self.send_response(200)
        self.send_header("Content-Length", "2")
        self.end_headers()
        self.wfile.write(b"ok")

    def log_message(self, format: str, *args: object) -> None:
        pass


@pytest.fixture
def redirect_server() -> ThreadingHTTPServer:
    """Local HTTP server with a configurable per-reply delay."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), SlowRedirectHandler)
    server.delay = 0.0
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()
    thread.join(timeout=5)


class TestCheckUrlLive:
    """Tests for check_url against a local server."""

    def _session(self) -> requests.Session:
        session = build_session(CheckerConfig(max_redirects=5))
        # Ignore any proxy settings from the environment
        session.trust_env = False
        return session

    def test_fast_redirect_chain_is_working(self, redirect_server: ThreadingHTTPServer) -> None:
        """A redirect chain within the timeout reports the final status."""
        port = redirect_server.server_address[1]
        session = self._session()
        try:
            outcome = check_url(session, f"http://127.0.0.1:{port}/hop/3", 5000)
        finally:
            session.close()

        assert outcome.is_broken is False
        assert outcome.status_code == 200

    def test_slow_redirect_chain_times_out(self, redirect_server: ThreadingHTTPServer) -> None:
        """The timeout bounds the whole redirect chain, not each hop."""
        redirect_server.delay = 0.4
        port = redirect_server.server_address[1]
        session = self._session()
        try:
            # four replies at 0.4s each: every hop is within 1s, the chain is not
            outcome = check_url(session, f"http://127.0.0.1:{port}/hop/3", 1000)
        finally:
            session.close()

        assert outcome.is_broken is True
        assert outcome.status_code is None
        assert outcome.error == "Request timed out after 1000ms"
        assert outcome.response_time_ms > 1000


class TestCheckSingle:
    """Tests for Checker.check_single."""

    def test_records_one_observation(self, checker: Checker, db_conn: sqlite3.Connection) -> None:
        """Every check appends exactly one observation."""
        outcome = checker.check_single("https://example.com")

        [stored] = get_recent(db_conn, 10)
        assert stored.to_outcome() == outcome
        assert get_batches(db_conn, 10) == []

    def test_invalid_url_skips_network(
        self, checker: Checker, session: MagicMock, db_conn: sqlite3.Connection
    ) -> None:
        """Malformed URLs are broken without any request and are still recorded."""
        outcome = checker.check_single("not-a-url")

        session.get.assert_not_called()
        assert outcome == CheckOutcome(url="not-a-url", is_broken=True, error="Invalid URL format")
        assert outcome.response_time_ms is None
        [stored] = get_recent(db_conn, 10)
        assert stored.error == "Invalid URL format"
        assert stored.response_time_ms is None

    def test_unsupported_scheme_is_invalid(self, checker: Checker, session: MagicMock) -> None:
        """Non-http(s) URLs never reach the network."""
        outcome = checker.check_single("ftp://example.com/file")

        session.get.assert_not_called()
        assert outcome.is_broken is True
        assert outcome.error == "Invalid URL format"

    def test_stores_metadata(self, checker: Checker, db_conn: sqlite3.Connection) -> None:
        """Caller metadata is stored with the observation."""
        metadata = RequestMetadata(user_agent="pytest", ip="127.0.0.1")

        checker.check_single("https://example.com", metadata)

        assert get_recent(db_conn, 1)[0].metadata == metadata

    def test_uses_configured_timeout(self, db_conn: sqlite3.Connection, session: MagicMock) -> None:
        """The configured timeout is passed to the request."""
        checker = Checker(db_conn, CheckerConfig(timeout_ms=1500), session=session)

        checker.check_single("https://example.com")

        assert session.get.call_args.kwargs["timeout"] == 1.5

    def test_respects_observation_cap(self, db_conn: sqlite3.Connection, session: MagicMock) -> None:
        """The configured observation cap bounds the store."""
        checker = Checker(db_conn, db_config=DatabaseConfig(max_observations=2), session=session)

        for i in range(4):
            checker.check_single(f"https://example.com/{i}")

        urls = {obs.url for obs in get_recent(db_conn, 10)}
        assert urls == {"https://example.com/2", "https://example.com/3"}

    def test_storage_failure_propagates(self, tmp_path: Path, session: MagicMock) -> None:
        """A failed append is reported to the caller."""
        conn = init_db(str(tmp_path / "closed.db"))
        conn.close()
        checker = Checker(conn, session=session)

        with pytest.raises(StorageError):
            checker.check_single("https://example.com")

    def test_concurrent_checks_are_all_recorded(
        self, checker: Checker, db_conn: sqlite3.Connection
    ) -> None:
        """Checks finishing at the same time don't lose observations."""
        errors: list[Exception] = []

        def worker(n: int) -> None:
            try:
                for i in range(10):
                    checker.check_single(f"https://example.com/{n}/{i}")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert get_statistics(db_conn).total_urls == 80


class TestCheckBatch:
    """Tests for Checker.check_batch."""

    def test_mixed_batch(
        self, checker: Checker, session: MagicMock, db_conn: sqlite3.Connection
    ) -> None:
        """Working, broken and malformed URLs are tallied and recorded."""
        session.get.side_effect = routed_get({"https://ok.example": 200, "https://missing.example": 404})
        urls = ["https://ok.example", "https://missing.example", "not-a-url"]

        result = checker.check_batch(urls)

        assert [outcome.url for outcome in result.results] == urls
        assert [outcome.is_broken for outcome in result.results] == [False, True, True]
        assert result.results[1].error == "HTTP 404: Not Found"
        assert result.results[2].error == "Invalid URL format"
        assert result.summary == BatchSummary(total=3, broken=2, working=1)

        stored = get_by_date_range(db_conn, datetime(2000, 1, 1, tzinfo=UTC), datetime(2100, 1, 1, tzinfo=UTC))
        assert [obs.url for obs in stored] == urls
        [record] = get_batches(db_conn, 10)
        assert record.urls == urls
        assert record.summary == result.summary
        assert [obs.to_outcome() for obs in record.results] == result.results
        assert {obs.id for obs in record.results}.isdisjoint(obs.id for obs in stored)
        assert all(obs.timestamp == record.timestamp for obs in record.results)

    def test_unparseable_host_does_not_fail_batch(
        self, checker: Checker, session: MagicMock, db_conn: sqlite3.Connection
    ) -> None:
        """Hosts rejected by validation or by urllib3 are recorded as broken alongside the rest."""
        session.get.side_effect = routed_get(
            {"https://ok.example": 200, "https://late-reject.example": LocationParseError("late-reject.example")}
        )
        urls = ["https://ok.example", "http://a..b/", "https://late-reject.example"]

        result = checker.check_batch(urls)

        assert result.summary == BatchSummary(total=3, broken=2, working=1)
        assert result.results[1].error == "Invalid URL format"
        assert result.results[2].is_broken is True
        assert get_statistics(db_conn).total_urls == 3
        assert len(get_batches(db_conn, 10)) == 1

    def test_preserves_input_order(self, checker: Checker, session: MagicMock) -> None:
        """Results follow the submitted order even when completion order differs."""
        urls = [f"https://example.com/{i}" for i in range(5)]
        delays = {url: 0.05 * (len(urls) - i) for i, url in enumerate(urls)}

        def slow_get(url: str, **kwargs) -> MagicMock:
            time.sleep(delays[url])
            return make_response(200)

        session.get.side_effect = slow_get

        result = checker.check_batch(urls)

        assert [outcome.url for outcome in result.results] == urls

    def test_duplicate_urls_checked_independently(self, checker: Checker, session: MagicMock) -> None:
        """Duplicates are neither merged nor cached."""
        urls = ["https://example.com", "https://example.com"]

        result = checker.check_batch(urls)

        assert len(result.results) == 2
        assert session.get.call_count == 2

    def test_limits_concurrency(self, db_conn: sqlite3.Connection, session: MagicMock) -> None:
        """No more than max_workers requests are in flight at once."""
        lock = threading.Lock()
        in_flight = 0
        peak = 0

        def counting_get(url: str, **kwargs) -> MagicMock:
            nonlocal in_flight, peak
            with lock:
                in_flight += 1
                peak = max(peak, in_flight)
            time.sleep(0.05)
            with lock:
                in_flight -= 1
            return make_response(200)

        session.get.side_effect = counting_get
        checker = Checker(db_conn, CheckerConfig(max_workers=2), session=session)

        result = checker.check_batch([f"https://example.com/{i}" for i in range(6)])

        assert result.summary.total == 6
        assert 1 <= peak <= 2

    def test_metadata_shared_across_batch(
        self, checker: Checker, db_conn: sqlite3.Connection
    ) -> None:
        """Batch metadata is stored on each observation and on the batch record."""
        metadata = RequestMetadata(origin="https://app.example")

        checker.check_batch(["https://a.example", "https://b.example"], metadata)

        assert all(obs.metadata == metadata for obs in get_recent(db_conn, 10))
        [record] = get_batches(db_conn, 10)
        assert record.metadata == metadata
        assert all(obs.metadata == metadata for obs in record.results)

    def test_counts_as_one_check_plus_observations(
        self, checker: Checker, db_conn: sqlite3.Connection
    ) -> None:
        """A batch of N adds N observations and one batch record."""
        checker.check_batch(["https://a.example", "https://b.example"])

        stats = get_statistics(db_conn)
        assert stats.total_urls == 2
        assert stats.total_checks == 3

    def test_logs_summary(self, checker: Checker, session: MagicMock, caplog: pytest.LogCaptureFixture) -> None:
        """Batch completion is logged with the tally."""
        session.get.side_effect = routed_get({"https://ok.example": 200, "https://missing.example": 404})
        caplog.set_level(logging.INFO, logger="linkwatch.checker")

        checker.check_batch(["https://ok.example", "https://missing.example"])

        assert "Batch check completed - 1 working, 1 broken" in caplog.text

    def test_storage_failure_propagates(self, tmp_path: Path, session: MagicMock) -> None:
        """A failed append aborts the batch with StorageError."""
        conn = init_db(str(tmp_path / "closed.db"))
        conn.close()
        checker = Checker(conn, session=session)

        with pytest.raises(StorageError):
            checker.check_batch(["https://a.example"])


class TestClose:
    """Tests for Checker.close."""

    def test_closes_session(self, checker: Checker, session: MagicMock) -> None:
        checker.close()
        session.close.assert_called_once()
