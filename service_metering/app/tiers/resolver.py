"""
Effective tier resolution.

The tier claim in a token reflects the caller's subscription when the token
was issued. A billing event may have changed it since, and records the new
tier in the caller's usage record. A stored record therefore wins over the
token claim, including last period's record: its tier carries into the new
period on rollover. Only when no record exists does the token's tier apply,
and it then seeds the caller's first record.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Optional

from shared.logging import get_logger

from ..usage.periods import utc_now
from .models import Tier

if TYPE_CHECKING:
    from ..usage.meter import UsageMeter
    from ..usage.records import UsageRecord


@dataclass(frozen=True)
class TierResolution:
    """Effective tier plus the usage record it was read from, if any."""

    tier: Tier
    declared_tier: Tier
    record: Optional["UsageRecord"]

    @property
    def overridden(self) -> bool:
        return self.tier != self.declared_tier


class TierResolver:
    """Combines the token's declared tier with the store-held tier."""

    def __init__(self, meter: "UsageMeter", *, clock: Callable[[], datetime] = utc_now) -> None:
        self.meter = meter
        self.clock = clock
        self.logger = get_logger("metering.tiers")

    async def resolve(self, declared_tier: Tier, identity: str) -> Tier:
        """Return the caller's effective tier."""
        resolution = await self.resolve_with_record(declared_tier, identity)
        return resolution.tier

    async def resolve_with_record(self, declared_tier: Tier, identity: str) -> TierResolution:
        """Resolve the tier and hand back the loaded record for the usage meter."""
        record = await self.meter.load(identity)
        tier = record.tier if record is not None else declared_tier

        if tier != declared_tier:
            self.logger.info(
                "Store tier overrides token tier",
                declared_tier=declared_tier.value,
                effective_tier=tier.value,
                carried_over=not record.is_current(self.clock()),
            )
        return TierResolution(tier=tier, declared_tier=declared_tier, record=record)
