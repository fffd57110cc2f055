"""
Subscription tiers and the quota policy attached to them.
"""

from enum import Enum
from typing import Any, Dict, Optional


class Tier(str, Enum):
    """Subscription tiers."""
    FREE = "free"
    PRO = "pro"

    @classmethod
    def parse(cls, value: Any, default: Optional["Tier"] = None) -> Optional["Tier"]:
        """Map a claim or metadata value to a Tier, or ``default`` if unrecognised."""
        if isinstance(value, Tier):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                return default
        return default


class TierPolicy:
    """Monthly quota per tier. ``None`` means unlimited."""

    def __init__(self, quotas: Dict[Tier, Optional[int]]):
        for tier in Tier:
            if tier not in quotas:
                raise ValueError(f"no quota configured for tier '{tier.value}'")
        for tier, quota in quotas.items():
            if quota is not None and quota < 0:
                raise ValueError(f"quota for tier '{tier.value}' must be >= 0")
        self._quotas = dict(quotas)

    @classmethod
    def from_config(cls, config) -> "TierPolicy":
        return cls({Tier.FREE: config.free_monthly_quota, Tier.PRO: None})

    def limit(self, tier: Tier) -> Optional[int]:
        return self._quotas[tier]

    def is_unlimited(self, tier: Tier) -> bool:
        return self._quotas[tier] is None
