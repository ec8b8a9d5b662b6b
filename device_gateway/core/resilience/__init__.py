"""Resiliencia - retry con backoff."""

from .retry import RetryConfig, RetryExecutor, TRANSIENT_DB_ERRORS

__all__ = ["RetryConfig", "RetryExecutor", "TRANSIENT_DB_ERRORS"]
