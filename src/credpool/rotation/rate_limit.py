"""Rate-limit tracking for pooled accounts.

An account is rate limited while its reset instant lies in the future. Failure
signals from the host pipeline set that instant; selection consults it.
"""

import re
from collections.abc import Iterable, Mapping
from datetime import UTC

from dateutil import parser as dateutil_parser
from structlog import get_logger

from credpool.core.time import ms_to_iso
from credpool.rotation.accounts import Account
from credpool.rotation.constants import DEFAULT_RATE_LIMIT_MILLISECONDS


logger = get_logger(__name__)


# Rate limit detection markers (matched case-insensitively)
RATE_LIMIT_MARKERS: tuple[str, ...] = (
    "429",
    "rate",
    "quota",
    "resource exhausted",
    "resourceexhausted",
    "resource_exhausted",
)

# Retry delay patterns, most specific first
_HOURS_MINUTES_SECONDS = re.compile(r"(\d+)h(\d+)m(\d+)s", re.IGNORECASE)
_MINUTES_SECONDS = re.compile(r"(\d+)m(\d+)s", re.IGNORECASE)
_SECONDS = re.compile(r"(\d+)\s*s", re.IGNORECASE)


def is_rate_limit_error(error_text: str | None) -> bool:
    """Check if failure text indicates provider-side rate limiting."""
    if not error_text:
        return False
    lowered = error_text.lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)


def parse_reset_delay_ms(
    error_text: str | None,
    default_ms: int = DEFAULT_RATE_LIMIT_MILLISECONDS,
) -> int:
    """Extract the retry delay from a provider error message.

    Recognizes `1h2m3s`, `2m30s`, `45s` and `45 seconds`; anything else
    yields `default_ms`.
    """
    if not error_text:
        return default_ms

    if match := _HOURS_MINUTES_SECONDS.search(error_text):
        hours, minutes, seconds = (int(g) for g in match.groups())
        return (hours * 3600 + minutes * 60 + seconds) * 1000

    if match := _MINUTES_SECONDS.search(error_text):
        minutes, seconds = (int(g) for g in match.groups())
        return (minutes * 60 + seconds) * 1000

    if match := _SECONDS.search(error_text):
        return int(match.group(1)) * 1000

    return default_ms


def parse_retry_after(headers: Mapping[str, str] | None, now: int) -> int | None:
    """Parse a retry delay (ms from `now`) from response headers.

    Checks headers in order of preference:
    1. retry-after (seconds or HTTP date)
    2. x-ratelimit-reset (Unix timestamp in seconds)

    Returns:
        Delay in milliseconds, or None when no header carries one
    """
    if not headers:
        return None

    headers_lower = {k.lower(): v for k, v in headers.items()}

    retry_after = headers_lower.get("retry-after")
    if retry_after is not None:
        try:
            return max(0, int(retry_after) * 1000)
        except ValueError:
            pass

        try:
            dt = dateutil_parser.parse(retry_after)
            # Ensure timezone-aware datetime (assume UTC if naive)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=UTC)
            return max(0, int(dt.timestamp() * 1000) - now)
        except (ValueError, OverflowError, dateutil_parser.ParserError):
            logger.debug("retry_after_unparseable", value=retry_after)

    if reset_value := headers_lower.get("x-ratelimit-reset"):
        try:
            return max(0, int(float(reset_value) * 1000) - now)
        except ValueError:
            logger.debug("ratelimit_reset_unparseable", value=reset_value)

    return None


def mark_rate_limited(account: Account, reset_delay_ms: int, now: int) -> int:
    """Mark an account as rate limited until `now + reset_delay_ms`.

    Returns:
        The reset instant (Unix ms)
    """
    reset_time = now + reset_delay_ms
    account.rate_limit_reset_time = reset_time
    account.last_error = f"Rate limited until {ms_to_iso(reset_time)}"
    logger.info(
        "account_rate_limited",
        account=account.display_name,
        delay_seconds=reset_delay_ms // 1000,
        reset_time=ms_to_iso(reset_time),
    )
    return reset_time


def clear_rate_limit(account: Account) -> bool:
    """Forget the reset instant and last error; True if anything was set."""
    had_state = account.rate_limit_reset_time is not None or account.last_error is not None
    account.rate_limit_reset_time = None
    account.last_error = None
    return had_state


def is_available(account: Account, now: int) -> bool:
    """True iff no reset instant is set or it has already passed."""
    return account.rate_limit_reset_time is None or account.rate_limit_reset_time <= now


def available_accounts(accounts: Iterable[Account], now: int) -> list[Account]:
    """Filter to available accounts, preserving order."""
    return [account for account in accounts if is_available(account, now)]


def seconds_until_reset(account: Account, now: int) -> int:
    """Remaining rate-limit seconds, rounded up; 0 when available."""
    if is_available(account, now):
        return 0
    if account.rate_limit_reset_time is None:
        return 0
    return -(-(account.rate_limit_reset_time - now) // 1000)
