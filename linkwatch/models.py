"""Data models for URL check outcomes, stored records and statistics."""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime


def new_id() -> str:
    """Return a new unique record identifier."""
    return uuid.uuid4().hex


@dataclass(frozen=True)
class RequestMetadata:
    """Details about the client that triggered a check.

    Stored alongside each record and never interpreted by the checker.

    Attributes:
        user_agent: Client User-Agent header, if provided.
        ip: Client address, if known.
        origin: Client Origin header, if provided.
    """

    user_agent: str | None = None
    ip: str | None = None
    origin: str | None = None

    def to_dict(self) -> dict[str, str]:
        """Return the non-empty fields as a JSON-serializable dict."""
        data = {"userAgent": self.user_agent, "ip": self.ip, "origin": self.origin}
        return {key: value for key, value in data.items() if value is not None}

    @classmethod
    def from_dict(cls, data: dict | None) -> "RequestMetadata | None":
        if not data:
            return None
        return cls(
            user_agent=data.get("userAgent"),
            ip=data.get("ip"),
            origin=data.get("origin"),
        )


@dataclass(frozen=True)
class CheckOutcome:
    """Result of checking a single URL.

    Attributes:
        url: URL exactly as submitted.
        is_broken: Whether the URL is unreachable or returned status >= 400.
        status_code: Final HTTP status code, or None if no response was received.
        error: Error description for broken URLs, None for working ones.
        response_time_ms: Elapsed request time in milliseconds, or None when the
            URL was rejected before any request was sent.
    """

    url: str
    is_broken: bool
    status_code: int | None = None
    error: str | None = None
    response_time_ms: int | None = None


@dataclass(frozen=True)
class Observation:
    """A persisted check outcome.

    Attributes:
        id: Unique record identifier.
        url: URL exactly as submitted.
        is_broken: Whether the URL was classified as broken.
        status_code: Final HTTP status code, or None.
        error: Error description, or None.
        response_time_ms: Elapsed request time in milliseconds, or None.
        timestamp: When the check completed (UTC).
        metadata: Client details passed through from the caller, or None.
    """

    id: str
    url: str
    is_broken: bool
    status_code: int | None
    error: str | None
    response_time_ms: int | None
    timestamp: datetime
    metadata: RequestMetadata | None = None

    @classmethod
    def from_outcome(
        cls,
        outcome: CheckOutcome,
        metadata: RequestMetadata | None = None,
        timestamp: datetime | None = None,
    ) -> "Observation":
        """Stamp a check outcome with a fresh id and timestamp."""
        return cls(
            id=new_id(),
            url=outcome.url,
            is_broken=outcome.is_broken,
            status_code=outcome.status_code,
            error=outcome.error,
            response_time_ms=outcome.response_time_ms,
            timestamp=timestamp or datetime.now(UTC),
            metadata=metadata,
        )

    def to_outcome(self) -> CheckOutcome:
        return CheckOutcome(
            url=self.url,
            is_broken=self.is_broken,
            status_code=self.status_code,
            error=self.error,
            response_time_ms=self.response_time_ms,
        )


@dataclass(frozen=True)
class BatchSummary:
    """Pass/fail tally of a batch check."""

    total: int
    broken: int
    working: int

    @classmethod
    def from_outcomes(cls, outcomes: list[CheckOutcome]) -> "BatchSummary":
        broken = sum(1 for outcome in outcomes if outcome.is_broken)
        return cls(total=len(outcomes), broken=broken, working=len(outcomes) - broken)


@dataclass(frozen=True)
class BatchRecord:
    """A persisted batch check invocation.

    Attributes:
        id: Unique record identifier.
        urls: URLs in the order they were submitted.
        results: One Observation per URL, in the same order as ``urls``.
        summary: Pass/fail tally over ``results``.
        timestamp: When the batch completed (UTC).
        metadata: Client details passed through from the caller, or None.
    """

    id: str
    urls: list[str]
    results: list[Observation]
    summary: BatchSummary
    timestamp: datetime
    metadata: RequestMetadata | None = None


@dataclass(frozen=True)
class BatchResult:
    """What a batch check returns to its caller."""

    results: list[CheckOutcome] = field(default_factory=list)
    summary: BatchSummary = field(default_factory=lambda: BatchSummary(total=0, broken=0, working=0))


@dataclass(frozen=True)
class Statistics:
    """Aggregate view over the stored check history.

    Attributes:
        total_checks: Stored single observations plus stored batch records.
        total_urls: Stored observations.
        broken_urls: Stored observations classified as broken.
        working_urls: Stored observations classified as working.
        average_response_time: Mean response time (ms, rounded) over observations
            that recorded one, 0 if none did.
        last_check: Timestamp of the newest observation, or None if empty.
        checks_today: Observations since midnight UTC today.
        checks_this_week: Observations in the trailing 7 days.
        checks_this_month: Observations since the first day of the current month (UTC).
    """

    total_checks: int
    total_urls: int
    broken_urls: int
    working_urls: int
    average_response_time: int
    last_check: datetime | None
    checks_today: int
    checks_this_week: int
    checks_this_month: int
