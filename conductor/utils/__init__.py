"""Utility modules shared across the orchestration core."""

from .logging_factory import LoggingFactory, get_logger
from .retry import BackoffStrategy, RateLimiter, RetryConfig, calculate_backoff

__all__ = [
    "BackoffStrategy",
    "LoggingFactory",
    "RateLimiter",
    "RetryConfig",
    "calculate_backoff",
    "get_logger",
]
