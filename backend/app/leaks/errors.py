from __future__ import annotations


class LeakEngineError(Exception):
    """Base error; status_code is what the HTTP layer answers with."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationError(LeakEngineError):
    """Bad or missing webhook signature. Fatal, no side effects."""

    status_code = 400


class AccountNotFoundError(LeakEngineError):
    status_code = 404


class ConfigurationError(LeakEngineError):
    """The account is missing something it needs, e.g. a webhook secret."""

    status_code = 412


class RateLimitedError(LeakEngineError):
    status_code = 429

    def __init__(self, message: str, retry_after_seconds: int):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class TransientStorageError(LeakEngineError):
    """Cache/store read or write failed. Safe to retry."""

    status_code = 500


class ValidationError(LeakEngineError):
    """
    Malformed event payload. The webhook processor catches it and acknowledges
    the delivery as a no-op, so it never reaches the HTTP layer.
    """

    status_code = 422
