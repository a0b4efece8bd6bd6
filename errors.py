from __future__ import annotations

from typing import Optional


class ScreenerError(Exception):
    pass


class TransientNetworkError(ScreenerError):
    """Connection reset, timeout, 5xx. Retried with backoff."""


class RateLimitError(ScreenerError):
    """HTTP 429 or MEXC futures code 510. Retried with a longer backoff."""

    def __init__(self, msg: str, retry_after: Optional[float] = None):
        super().__init__(msg)
        self.retry_after = retry_after


class InvalidDataError(ScreenerError):
    """Malformed candle/ticker payload. Never retried; the symbol is skipped for the cycle."""


class InvariantViolation(ScreenerError):
    """Engine state broke one of its own invariants (programming error)."""
