"""Input validation for URLs, batch requests and date ranges."""

import logging
from datetime import UTC, datetime
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# Schemes the checker knows how to request
ALLOWED_SCHEMES = ("http", "https")

INVALID_URL_FORMAT = "Invalid URL format"


class ValidationError(Exception):
    """Raised when caller input is malformed and no I/O was attempted."""

    pass


def is_valid_url(url: str) -> bool:
    """Check whether a string is an absolute http(s) URL with a host.

    No network access happens here.

    Args:
        url: Candidate URL string.

    Returns:
        True if the URL is well formed, False otherwise.
    """
    if not url or not isinstance(url, str):
        return False

    # Reject whitespace and control characters anywhere in the URL
    if any(c.isspace() or ord(c) < 32 for c in url):
        return False

    try:
        parsed = urlparse(url)
        # Accessing .port raises ValueError for non-numeric or out-of-range ports
        parsed.port
    except ValueError:
        return False

    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        return False

    if not parsed.netloc or not parsed.hostname:
        return False

    # Every host label must be 1..63 characters
    try:
        parsed.hostname.encode("idna")
    except UnicodeError:
        return False

    return True


def validate_url_list(urls: object, max_urls: int) -> list[str]:
    """Validate the URL list of a batch request.

    Args:
        urls: Value supplied by the caller.
        max_urls: Maximum number of URLs allowed in one batch.

    Returns:
        The URL list, unchanged.

    Raises:
        ValidationError: If urls is not a list of strings or its size is out of bounds.
    """
    if not isinstance(urls, list):
        raise ValidationError("URLs array is required")
    if len(urls) == 0:
        raise ValidationError("At least one URL is required")
    if len(urls) > max_urls:
        raise ValidationError(f"Maximum {max_urls} URLs allowed per request")
    for index, url in enumerate(urls):
        if not isinstance(url, str):
            raise ValidationError(f"URL at index {index} must be a string")
    return urls


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive timestamps are taken to be UTC. A trailing 'Z' is accepted.

    Raises:
        ValidationError: If the value is missing or not a valid timestamp.
    """
    if not value or not isinstance(value, str):
        raise ValidationError("Timestamp is required")

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"Invalid date format: {value}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def validate_date_range(start: datetime, end: datetime) -> None:
    """Ensure a date range is ordered.

    Raises:
        ValidationError: If start is after end.
    """
    if start > end:
        logger.debug("Rejected date range %s > %s", start, end)
        raise ValidationError("Start date must be before or equal to end date")
