"""Retry policy."""

from reqwire.retry.policy import IDEMPOTENT_METHODS, RetryPolicy

__all__ = ["IDEMPOTENT_METHODS", "RetryPolicy"]
