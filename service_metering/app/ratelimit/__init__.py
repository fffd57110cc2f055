"""
Rate limiting package for the metering gateway.

Holds the fixed-window limiter that caps per-caller request frequency
before any quota is consumed.
"""

from .fixed_window import FixedWindowRateLimiter, RateDecision, RateWindowRecord

__all__ = [
    "FixedWindowRateLimiter",
    "RateDecision",
    "RateWindowRecord",
]
