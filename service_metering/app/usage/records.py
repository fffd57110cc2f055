"""
Usage record model and its stored representation.
"""

from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Any, Dict, Optional

from ..tiers.models import Tier
from .periods import billing_period, in_period


class RecordFormatError(ValueError):
    """Stored usage record is missing fields or holds invalid values."""


@dataclass(frozen=True)
class UsageRecord:
    """Per-caller counter for one billing period."""

    usage_count: int
    tier: Tier
    period_start: date
    period_end: date
    last_updated: datetime

    @classmethod
    def fresh(cls, tier: Tier, now: datetime) -> "UsageRecord":
        """A zeroed record for the billing period containing ``now``."""
        start, end = billing_period(now)
        return cls(usage_count=0, tier=tier, period_start=start, period_end=end, last_updated=now)

    def is_current(self, now: datetime) -> bool:
        return in_period(now, self.period_start, self.period_end)

    def incremented(self, now: datetime) -> "UsageRecord":
        return replace(self, usage_count=self.usage_count + 1, last_updated=now)

    def with_tier(self, tier: Tier, now: datetime) -> "UsageRecord":
        return replace(self, tier=tier, last_updated=now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "usageCount": self.usage_count,
            "tier": self.tier.value,
            "periodStart": self.period_start.isoformat(),
            "periodEnd": self.period_end.isoformat(),
            "lastUpdated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageRecord":
        try:
            usage_count = data["usageCount"]
            tier = Tier.parse(data["tier"])
            period_start = date.fromisoformat(data["periodStart"])
            period_end = date.fromisoformat(data["periodEnd"])
            last_updated = datetime.fromisoformat(data["lastUpdated"])
        except (KeyError, TypeError, ValueError) as exc:
            raise RecordFormatError(str(exc)) from exc

        if not isinstance(usage_count, int) or isinstance(usage_count, bool) or usage_count < 0:
            raise RecordFormatError("usageCount must be a non-negative integer")
        if tier is None:
            raise RecordFormatError("unknown tier")
        if period_start >= period_end:
            raise RecordFormatError("empty billing period")

        return cls(
            usage_count=usage_count,
            tier=tier,
            period_start=period_start,
            period_end=period_end,
            last_updated=last_updated,
        )

    @classmethod
    def from_store(cls, data: Optional[Dict[str, Any]]) -> Optional["UsageRecord"]:
        """Decode a stored record; None when absent. Raises RecordFormatError when corrupt."""
        if data is None:
            return None
        return cls.from_dict(data)
