"""HTTP API server exposing URL checks and check history."""

import json
import logging
import sqlite3
import threading
from datetime import UTC, datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from . import __version__
from .checker import Checker
from .config import ApiConfig
from .database import StorageError, get_by_date_range, get_recent, get_statistics
from .models import BatchSummary, CheckOutcome, Observation, RequestMetadata, Statistics
from .validation import ValidationError, parse_timestamp, validate_url_list

logger = logging.getLogger(__name__)

# Reject request bodies larger than this before reading them.
MAX_BODY_BYTES = 1024 * 1024

DEFAULT_RECENT_LIMIT = 50

ENDPOINTS = {
    "POST /api/check-url": "Check if a single URL is broken",
    "POST /api/check-urls": "Check multiple URLs at once",
    "GET /api/health": "Health check endpoint",
    "GET /api/statistics": "Get comprehensive statistics about URL checks",
    "GET /api/recent-checks": "Get recent URL checks with optional limit",
    "GET /api/checks-by-date": "Get URL checks within a date range",
}


class ApiError(Exception):
    """Raised when an API operation fails."""
    pass


def _format_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _outcome_to_dict(outcome: CheckOutcome) -> Dict[str, Any]:
    """Convert a CheckOutcome to a JSON-serializable dictionary.

    Optional fields are omitted rather than sent as null.
    """
    data: Dict[str, Any] = {"url": outcome.url, "isBroken": outcome.is_broken}
    if outcome.status_code is not None:
        data["statusCode"] = outcome.status_code
    if outcome.error is not None:
        data["error"] = outcome.error
    if outcome.response_time_ms is not None:
        data["responseTime"] = outcome.response_time_ms
    return data


def _observation_to_dict(obs: Observation) -> Dict[str, Any]:
    data = {"id": obs.id, **_outcome_to_dict(obs.to_outcome()), "timestamp": _format_time(obs.timestamp)}
    if obs.metadata is not None:
        data["metadata"] = obs.metadata.to_dict()
    return data


def _summary_to_dict(summary: BatchSummary) -> Dict[str, int]:
    return {"total": summary.total, "broken": summary.broken, "working": summary.working}


def _statistics_to_dict(stats: Statistics) -> Dict[str, Any]:
    return {
        "totalChecks": stats.total_checks,
        "totalUrls": stats.total_urls,
        "brokenUrls": stats.broken_urls,
        "workingUrls": stats.working_urls,
        "averageResponseTime": stats.average_response_time,
        "lastCheck": _format_time(stats.last_check),
        "checksToday": stats.checks_today,
        "checksThisWeek": stats.checks_this_week,
        "checksThisMonth": stats.checks_this_month,
    }


def _parse_limit(values: List[str], max_limit: int) -> int:
    """Parse the recent-checks limit, clamping it to max_limit.

    Raises:
        ValidationError: If the limit is not a positive integer.
    """
    if not values:
        return min(DEFAULT_RECENT_LIMIT, max_limit)
    try:
        limit = int(values[0])
    except ValueError:
        raise ValidationError("Limit must be a positive integer")
    if limit < 1:
        raise ValidationError("Limit must be a positive integer")
    return min(limit, max_limit)


class ApiHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the check API endpoints."""

    # Class-level references set by factory
    checker: Optional[Checker] = None
    db_conn: Optional[sqlite3.Connection] = None
    api_config: ApiConfig = ApiConfig()

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("API %s - %s", self.address_string(), format % args)

    def _send_json(self, code: int, data: Dict[str, Any]) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"success": False, "error": message})

    def _send_success(self, data: Any, message: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"success": True, "data": data}
        if message is not None:
            payload["message"] = message
        self._send_json(200, payload)

    def _request_metadata(self) -> RequestMetadata:
        """Collect client details to store with each check."""
        forwarded = self.headers.get("X-Forwarded-For")
        ip = forwarded.split(",")[0].strip() if forwarded else self.client_address[0]
        return RequestMetadata(
            user_agent=self.headers.get("User-Agent"),
            ip=ip,
            origin=self.headers.get("Origin"),
        )

    def _read_json_body(self) -> Dict[str, Any]:
        """Read and decode the JSON request body.

        Raises:
            ValidationError: If the body is too large or not a JSON object.
        """
        try:
            length = int(self.headers.get("Content-Length", 0))
        except ValueError:
            raise ValidationError("Invalid Content-Length header")
        if length > MAX_BODY_BYTES:
            raise ValidationError("Request body too large")

        raw = self.rfile.read(length) if length > 0 else b""
        if not raw:
            return {}
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValidationError("Invalid JSON body")
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        return data

    def _dispatch(self, routes: Dict[str, Any]) -> None:
        """Route a request and map errors to status codes."""
        parsed = urlparse(self.path)
        handler = routes.get(parsed.path.rstrip("/") or "/")
        if handler is None:
            self._send_error_json(404, "Endpoint not found")
            return

        try:
            handler(parse_qs(parsed.query))
        except ValidationError as e:
            self._send_error_json(400, str(e))
        except StorageError as e:
            logger.error("Storage error in %s: %s", parsed.path, e)
            self._send_error_json(500, "Internal server error")
        except Exception as e:
            logger.exception("Error handling request: %s", e)
            self._send_error_json(500, "Internal server error")

    def do_GET(self) -> None:
        """Handle GET requests."""
        self._dispatch(
            {
                "/": self._handle_index,
                "/api/health": self._handle_health,
                "/api/statistics": self._handle_statistics,
                "/api/recent-checks": self._handle_recent_checks,
                "/api/checks-by-date": self._handle_checks_by_date,
            }
        )

    def do_POST(self) -> None:
        """Handle POST requests."""
        self._dispatch(
            {
                "/api/check-url": self._handle_check_url,
                "/api/check-urls": self._handle_check_urls,
            }
        )

    def _handle_index(self, query: Dict[str, List[str]]) -> None:
        """Handle GET / endpoint - describe the service."""
        self._send_json(
            200,
            {"message": "linkwatch API", "version": __version__, "endpoints": ENDPOINTS},
        )

    def _handle_health(self, query: Dict[str, List[str]]) -> None:
        """Handle GET /api/health endpoint."""
        self._send_json(
            200,
            {
                "success": True,
                "message": "API is healthy",
                "timestamp": _format_time(datetime.now(UTC)),
            },
        )

    def _handle_check_url(self, query: Dict[str, List[str]]) -> None:
        """Handle POST /api/check-url endpoint."""
        url = self._read_json_body().get("url")
        if not url or not isinstance(url, str):
            raise ValidationError("URL is required")

        outcome = self.checker.check_single(url, self._request_metadata())
        message = "URL is broken" if outcome.is_broken else "URL is working"
        self._send_success(_outcome_to_dict(outcome), message)

    def _handle_check_urls(self, query: Dict[str, List[str]]) -> None:
        """Handle POST /api/check-urls endpoint."""
        urls = validate_url_list(
            self._read_json_body().get("urls"),
            self.api_config.max_urls_per_request,
        )

        result = self.checker.check_batch(urls, self._request_metadata())
        summary = result.summary
        self._send_success(
            {
                "results": [_outcome_to_dict(outcome) for outcome in result.results],
                "summary": _summary_to_dict(summary),
            },
            f"URL check completed - {summary.working} working, {summary.broken} broken",
        )

    def _handle_statistics(self, query: Dict[str, List[str]]) -> None:
        """Handle GET /api/statistics endpoint."""
        stats = get_statistics(self.db_conn)
        self._send_success(_statistics_to_dict(stats))

    def _handle_recent_checks(self, query: Dict[str, List[str]]) -> None:
        """Handle GET /api/recent-checks endpoint."""
        limit = _parse_limit(query.get("limit", []), self.api_config.max_recent_limit)
        checks = get_recent(self.db_conn, limit)
        self._send_success(
            {"checks": [_observation_to_dict(obs) for obs in checks], "count": len(checks)}
        )

    def _handle_checks_by_date(self, query: Dict[str, List[str]]) -> None:
        """Handle GET /api/checks-by-date endpoint."""
        start_values = query.get("startDate")
        end_values = query.get("endDate")
        if not start_values or not end_values:
            raise ValidationError("Both startDate and endDate are required")

        start = parse_timestamp(start_values[0])
        end = parse_timestamp(end_values[0])
        checks = get_by_date_range(self.db_conn, start, end)
        self._send_success(
            {
                "checks": [_observation_to_dict(obs) for obs in checks],
                "count": len(checks),
                "startDate": _format_time(start),
                "endDate": _format_time(end),
            }
        )


def _create_handler_class(
    checker: Checker,
    db_conn: sqlite3.Connection,
    api_config: ApiConfig,
) -> type:
    """Create a handler class with the checker, database and config bound."""

    class BoundApiHandler(ApiHandler):
        pass

    BoundApiHandler.checker = checker
    BoundApiHandler.db_conn = db_conn
    BoundApiHandler.api_config = api_config
    return BoundApiHandler


class ApiServer:
    """Threaded HTTP API server for URL checks."""

    def __init__(
        self,
        config: ApiConfig,
        checker: Checker,
        db_conn: sqlite3.Connection,
    ) -> None:
        """Initialize the API server.

        Args:
            config: API configuration.
            checker: Checker that performs and records URL checks.
            db_conn: Database connection for history and statistics queries.
        """
        self.config = config
        self.checker = checker
        self.db_conn = db_conn
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()

    def start(self) -> None:
        """Start the API server in a background thread.

        Raises:
            ApiError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("API server is already running")
            return

        try:
            handler_class = _create_handler_class(self.checker, self.db_conn, self.config)
            self._server = ThreadingHTTPServer(("", self.config.port), handler_class)
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="api-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("API server started on port %d", self.config.port)

        except OSError as e:
            if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
                raise ApiError(
                    f"Port {self.config.port} is already in use. "
                    f"Another process may be using this port, or linkwatch is already running."
                )
            elif e.errno == 13:  # EACCES
                raise ApiError(
                    f"Permission denied for port {self.config.port}. "
                    f"Ports below 1024 require root privileges."
                )
            else:
                raise ApiError(f"Failed to start API server on port {self.config.port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def stop(self) -> None:
        """Stop the API server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping API server...")
        self._shutdown_event.set()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        if self._server:
            self._server.server_close()

        self._server = None
        self._thread = None
        logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
