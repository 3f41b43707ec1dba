"""Custom exceptions for the upstream tracking and sending clients."""
from typing import Optional


class UpstreamClientError(Exception):
    """Base exception for all upstream client errors."""


class UpstreamError(UpstreamClientError):
    """Raised for upstream API errors (HTTP 4xx/5xx, network, malformed payload)."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        retryable: bool = False,
    ):
        self.status = status
        self.retryable = retryable
        super().__init__(message)


class RateLimitError(UpstreamError):
    """Raised when the upstream keeps answering HTTP 429 after all retries."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message, status=429, retryable=True)


class ExportJobLockedError(UpstreamClientError):
    """Raised when Redis lock cannot be acquired (export for window in progress)."""

    def __init__(self, window_key: str, lock_key: str):
        self.window_key = window_key
        self.lock_key = lock_key
        super().__init__(
            f"Contact activity export lock already held for window={window_key}, key={lock_key}"
        )


class ExportJobError(UpstreamClientError):
    """Raised when a contact activity export fails, times out or is cancelled."""

    def __init__(self, report_id: Optional[str], reason: str):
        self.report_id = report_id
        self.reason = reason
        super().__init__(f"Contact activity export failed: id={report_id}, reason={reason}")


class IncompleteFetchError(UpstreamClientError):
    """Raised when some days of a day-by-day fetch still failed after retrying."""

    def __init__(self, what: str, failed_days: list):
        self.failed_days = list(failed_days)
        days = ", ".join(str(day) for day in self.failed_days)
        super().__init__(f"Incomplete {what} fetch, failed days: {days}")
