from __future__ import annotations

from kv_discovery.resilience.retry_policy import BackoffPolicy, RetryStrategy

__all__ = [
    "BackoffPolicy",
    "RetryStrategy",
]
