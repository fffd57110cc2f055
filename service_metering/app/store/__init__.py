"""
Counter store package.

Holds the namespaced key/record store used for rate windows and usage
records, with Redis and in-process backends.
"""

from .counter_store import (
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
    RATE_NAMESPACE,
    USAGE_NAMESPACE,
    create_counter_store,
)

__all__ = [
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "RATE_NAMESPACE",
    "USAGE_NAMESPACE",
    "create_counter_store",
]
