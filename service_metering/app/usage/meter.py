"""
Monthly usage meter.

Each caller has one usage record covering the current calendar month (UTC).
A record whose period does not contain "now" is stale and is replaced by a
zeroed record for the current month before use (rollover). Only the count
resets: the tier resolver hands back the stale record's tier, and that tier
seeds the new record. Rollover is idempotent: concurrent requests that both
see the stale record both write the same fresh shape, so no compare-and-swap
is needed.

Increments are read-modify-write against an eventually-consistent store.
Requests racing on the same caller may read the same count and both be
admitted, so the quota can be overshot by up to the number of concurrently
in-flight requests for that caller. This is an accepted limitation.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional

from shared.logging import get_logger

from ..store.counter_store import CounterStore, USAGE_NAMESPACE
from ..tiers.models import Tier, TierPolicy
from .periods import seconds_until, utc_now
from .records import RecordFormatError, UsageRecord

# Usage records outlive their period by this much so /usage can still show
# last month's record shape, and its tier, until the next request rolls it
# over. Past that a caller falls back to the tier claim in their token.
RECORD_RETENTION_SECONDS = 31 * 24 * 3600

_NOT_LOADED: Any = object()


@dataclass(frozen=True)
class UsageDecision:
    """Outcome of a usage check."""

    allowed: bool
    usage_count: int
    limit: Optional[int]
    tier: Tier
    period_start: date
    period_end: date
    rolled_over: bool = False

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(0, self.limit - self.usage_count)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "usageCount": self.usage_count,
            "limit": self.limit,
            "remaining": self.remaining,
            "tier": self.tier.value,
            "periodStart": self.period_start.isoformat(),
            "periodEnd": self.period_end.isoformat(),
        }


class UsageMeter:
    """Caps cumulative requests per caller over a calendar-month billing period."""

    def __init__(
        self,
        store: CounterStore,
        policy: TierPolicy,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.policy = policy
        self.clock = clock
        self.logger = get_logger("metering.usage")

    async def load(self, identity: str) -> Optional[UsageRecord]:
        """Read the caller's usage record. Corrupt records read as absent."""
        data = await self.store.get(USAGE_NAMESPACE, identity)
        try:
            return UsageRecord.from_store(data)
        except RecordFormatError as exc:
            self.logger.warning("Discarding corrupt usage record", error=str(exc))
            return None

    async def check_and_increment(
        self,
        identity: str,
        tier: Tier,
        record: Optional[UsageRecord] = _NOT_LOADED,
    ) -> UsageDecision:
        """Count one request against the caller's quota for ``tier``.

        ``record`` may carry the record the tier resolver already read for
        this request; pass nothing to have the meter read it.
        """
        now = self.clock()
        if record is _NOT_LOADED:
            record = await self.load(identity)

        rolled_over = record is None or not record.is_current(now)
        if rolled_over:
            record = UsageRecord.fresh(tier, now)
            self.logger.info(
                "Usage period rollover",
                tier=tier.value,
                period_start=record.period_start.isoformat(),
            )

        limit = self.policy.limit(tier)
        if limit is not None and record.usage_count >= limit:
            if rolled_over:
                await self._save(identity, record, now)
            return UsageDecision(
                allowed=False,
                usage_count=record.usage_count,
                limit=limit,
                tier=tier,
                period_start=record.period_start,
                period_end=record.period_end,
                rolled_over=rolled_over,
            )

        # Unlimited tiers are still counted, they just never block.
        updated = record.incremented(now)
        await self._save(identity, updated, now)
        return UsageDecision(
            allowed=True,
            usage_count=updated.usage_count,
            limit=limit,
            tier=tier,
            period_start=updated.period_start,
            period_end=updated.period_end,
            rolled_over=rolled_over,
        )

    async def snapshot(self, identity: str, declared_tier: Tier) -> UsageDecision:
        """Current usage view without counting a request or writing anything."""
        now = self.clock()
        record = await self.load(identity)
        if record is None:
            record = UsageRecord.fresh(declared_tier, now)
        elif not record.is_current(now):
            # Last period's tier carries over; only the count resets.
            record = UsageRecord.fresh(record.tier, now)
        limit = self.policy.limit(record.tier)
        return UsageDecision(
            allowed=limit is None or record.usage_count < limit,
            usage_count=record.usage_count,
            limit=limit,
            tier=record.tier,
            period_start=record.period_start,
            period_end=record.period_end,
        )

    async def apply_tier(self, identity: str, tier: Tier) -> UsageRecord:
        """Set the caller's tier of record, keeping this period's count.

        Writes an absolute tier value, so replaying it is harmless.
        """
        now = self.clock()
        record = await self.load(identity)
        if record is None or not record.is_current(now):
            updated = UsageRecord.fresh(tier, now)
        else:
            updated = record.with_tier(tier, now)
        await self._save(identity, updated, now)
        return updated

    async def _save(self, identity: str, record: UsageRecord, now: datetime) -> None:
        ttl = seconds_until(now, record.period_end) + RECORD_RETENTION_SECONDS
        await self.store.put(USAGE_NAMESPACE, identity, record.to_dict(), ttl_seconds=ttl)
