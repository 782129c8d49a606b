from typing import Any, Callable, Optional
import math
import re
import time

from taskloop.domain.common.errors import ApiRequestError

MAX_EXPONENTIAL_BACKOFF_SECONDS = 600


class RequestRateLimiter:
    """Process-wide spacing between model requests.

    One instance is owned by the orchestrator and shared by every task and
    sub-task it creates, so they all observe the same last request time.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.last_request_time: Optional[float] = None

    def delay_seconds(self, rate_limit_seconds: float) -> int:
        """Whole seconds still owed before the next request may start"""
        if self.last_request_time is None or rate_limit_seconds <= 0:
            return 0
        elapsed_ms = (self.clock() - self.last_request_time) * 1000
        owed_ms = max(0.0, rate_limit_seconds * 1000 - elapsed_ms)
        return math.ceil(owed_ms / 1000)

    def mark_request(self) -> None:
        self.last_request_time = self.clock()


def compute_backoff_seconds(
    base_delay: float,
    retry_attempt: int,
    retry_after: Optional[float] = None,
    cap: int = MAX_EXPONENTIAL_BACKOFF_SECONDS,
) -> int:
    """Exponential backoff, overridden by an explicit provider retry hint"""
    if retry_after is not None:
        return math.ceil(retry_after) + 1
    return min(math.ceil(base_delay * 2 ** retry_attempt), cap)


_RETRY_DELAY = re.compile(r"^(\d+(?:\.\d+)?)s$")


def extract_retry_after(error: BaseException) -> Optional[float]:
    """Machine-readable retry hint carried by a rate-limited failure"""

    if isinstance(error, ApiRequestError):
        if error.retry_after_seconds is not None:
            return error.retry_after_seconds
        if error.is_rate_limited:
            return _retry_delay_from_details(error.details)
        return None

    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if status != 429:
        return None

    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None and headers.get("retry-after"):
        try:
            return float(headers.get("retry-after"))
        except (TypeError, ValueError):
            return None

    return _retry_delay_from_details({"details": getattr(error, "error_details", None)})


def _retry_delay_from_details(details: Any) -> Optional[float]:
    entries = details.get("details") if isinstance(details, dict) else None
    if not isinstance(entries, list):
        return None
    for entry in entries:
        if not isinstance(entry, dict) or not str(entry.get("@type", "")).endswith("RetryInfo"):
            continue
        match = _RETRY_DELAY.match(str(entry.get("retryDelay", "")))
        if match:
            return float(match.group(1))
    return None
