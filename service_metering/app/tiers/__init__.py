"""
Tier models, quota policy and effective-tier resolution.
"""

from .models import Tier, TierPolicy
from .resolver import TierResolution, TierResolver

__all__ = [
    "Tier",
    "TierPolicy",
    "TierResolution",
    "TierResolver",
]
