"""Timestamp helpers. Node timestamps are integer epoch milliseconds."""

from datetime import UTC, datetime


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(datetime.now(UTC).timestamp() * 1000)
