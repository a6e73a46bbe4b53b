from __future__ import annotations


class PlatformError(Exception):
    """Base class for classified YouTube Data API failures."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


class InvalidCredentialError(PlatformError):
    pass


class QuotaExceededError(PlatformError):
    pass


class RateLimitedError(PlatformError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        reason: str | None = None,
        retry_after_seconds: int | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code, reason=reason)
        self.retry_after_seconds = retry_after_seconds


class UpstreamUnavailableError(PlatformError):
    pass


class BadRequestError(PlatformError):
    pass


class NoCredentialError(PlatformError):
    pass


class SearchCancelledError(Exception):
    pass


class KeywordExpansionError(Exception):
    pass


# Failures that a fresh credential can plausibly fix.
ROTATABLE_ERRORS: tuple[type[PlatformError], ...] = (QuotaExceededError, InvalidCredentialError)
