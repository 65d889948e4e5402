from .retry import (
    BackoffPolicy,
    RetryDelay,
    compute_backoff,
    compute_retry_delay,
    parse_duration,
)

__all__ = [
    "BackoffPolicy",
    "RetryDelay",
    "compute_backoff",
    "compute_retry_delay",
    "parse_duration",
]
