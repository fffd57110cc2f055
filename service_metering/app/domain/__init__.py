"""
Domain utilities for the metering gateway.

Holds the admission pipeline that ties token verification, rate limiting,
tier resolution and usage metering together for each metered request.
"""

from .dispatcher import Admission, RequestDispatcher, Stage

__all__ = [
    "Admission",
    "RequestDispatcher",
    "Stage",
]
