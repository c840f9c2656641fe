"""
Gov Voter Utilities - Retry logic, timestamp parsing and text helpers.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from bots.gov_voter.errors import TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLite CURRENT_TIMESTAMP layout; fixed width so string comparison orders correctly
DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_FRACTION_RE = re.compile(r"\.(\d+)")


# === RETRY WITH LINEAR BACKOFF ===

@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0
    retry_on: Tuple[Type[BaseException], ...] = (TransientNetworkError,)


def linear_backoff_delay(attempt: int, base_delay: float = 1.0) -> float:
    """Delay to wait after a failed attempt (1-based): attempt x base_delay."""
    return attempt * base_delay


async def retry_linear(
    operation: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "operation",
) -> T:
    """
    Run an async operation, retrying retryable failures with linear backoff.

    Exceptions outside ``config.retry_on`` propagate immediately. After the
    last attempt the final retryable exception is re-raised.

    Usage:
        voted = await retry_linear(lambda: client._query_vote(pid), RetryConfig(max_attempts=5))
    """
    if config is None:
        config = RetryConfig()
    attempts = max(1, config.max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except config.retry_on as e:
            if attempt >= attempts:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                raise
            delay = linear_backoff_delay(attempt, config.base_delay)
            logger.warning(
                f"{description} attempt {attempt}/{attempts} failed: {e}. "
                f"Retrying in {delay:.1f}s..."
            )
            await sleep(delay)

    raise RuntimeError("unreachable: retry loop exited without result")


# === TIME HELPERS ===

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_chain_timestamp(value: str) -> datetime:
    """
    Parse an RFC3339 timestamp from a Cosmos REST API.

    Chains report nanosecond precision ("2024-05-01T12:00:00.123456789Z"),
    which datetime cannot hold, so the fraction is cut to microseconds.
    """
    if not value:
        raise ValueError("empty timestamp")
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_db_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(DB_TIME_FORMAT)


def from_db_time(value: str) -> datetime:
    return datetime.strptime(value, DB_TIME_FORMAT).replace(tzinfo=timezone.utc)


def format_utc(value: datetime) -> str:
    """Human readable UTC time for chat messages."""
    return value.astimezone(timezone.utc).strftime("%a, %d %b %Y %H:%M:%S UTC")


# === TEXT HELPERS ===

def capitalize(text: str) -> str:
    """Upper-case the first letter of every word ("cosmoshub" -> "Cosmoshub")."""
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), text)


def sanitize_actor(name: str, max_length: int = 64) -> str:
    """Strip control characters and markup from a Telegram display name before storing it."""
    cleaned = "".join(ch for ch in (name or "") if ch.isprintable() and ch not in "<>&`")
    return cleaned.strip().lstrip("@")[:max_length]


def join_url(base: str, *parts: str) -> str:
    """Join explorer/API URL parts without doubling or dropping slashes."""
    url = base.strip().rstrip("/")
    for part in parts:
        url = f"{url}/{str(part).strip().strip('/')}"
    return url
