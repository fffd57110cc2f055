"""
Usage metering package: monthly quota records, period rollover and the meter.
"""

from .meter import UsageDecision, UsageMeter
from .periods import billing_period
from .records import UsageRecord

__all__ = [
    "UsageDecision",
    "UsageMeter",
    "UsageRecord",
    "billing_period",
]
