#!/usr/bin/env python3
"""
Utility classes and functions shared by the source adapters.

Contains retry/backoff handling for upstream requests and date conversion
helpers used when normalizing items.
"""

from asyncio import sleep
from calendar import timegm
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

from config import get_logger

logger = get_logger("utils")


class RetryHelper:
    """Helper class for implementing retry logic with exponential backoff."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
        """Initialize the retry helper.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between retries
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given retry attempt (0-based)."""
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        """Sleep for the calculated delay for the given attempt."""
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)


def struct_time_to_ms(value: Any) -> Optional[int]:
    """Convert a UTC time.struct_time (as produced by feedparser) to epoch milliseconds."""
    if not value:
        return None
    try:
        return timegm(value) * 1000
    except (TypeError, ValueError, OverflowError):
        return None


def date_string_to_ms(value: Optional[str]) -> Optional[int]:
    """Parse an ISO 8601 or RFC 2822 date string to epoch milliseconds."""
    if not value:
        return None
    value = value.strip()
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        try:
            dt = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            logger.debug(f"Unparseable date '{value}'")
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)
