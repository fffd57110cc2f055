"""
Unit tests for billing periods, usage records and the usage meter.
"""

import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest

from shared.errors import StoreUnavailableError
from service_metering.app.store.counter_store import InMemoryCounterStore, USAGE_NAMESPACE
from service_metering.app.tiers.models import Tier, TierPolicy
from service_metering.app.tiers.resolver import TierResolver
from service_metering.app.usage.meter import RECORD_RETENTION_SECONDS, UsageMeter
from service_metering.app.usage.periods import billing_period, in_period, seconds_until
from service_metering.app.usage.records import RecordFormatError, UsageRecord


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class YieldingStore(InMemoryCounterStore):
    """Store that yields to the event loop inside every operation.

    Lets concurrent read-modify-write sequences interleave the way they do
    against a networked store.
    """

    async def _get_raw(self, key):
        await asyncio.sleep(0)
        return await super()._get_raw(key)

    async def _put_raw(self, key, value, ttl_seconds):
        await asyncio.sleep(0)
        await super()._put_raw(key, value, ttl_seconds)


class BrokenStore(InMemoryCounterStore):
    """Store whose backend is down."""

    async def _get_raw(self, key):
        raise ConnectionError("store down")

    async def _put_raw(self, key, value, ttl_seconds):
        raise ConnectionError("store down")


class TestBillingPeriods:
    """Test calendar-month period arithmetic."""

    def test_mid_month(self):
        assert billing_period(utc(2026, 3, 14, 12)) == (date(2026, 3, 1), date(2026, 4, 1))

    def test_december_rolls_into_next_year(self):
        assert billing_period(utc(2026, 12, 31, 23, 59, 59)) == (date(2026, 12, 1), date(2027, 1, 1))

    def test_non_utc_moment_uses_utc_date(self):
        # 2026-04-01 01:00 at +03:00 is still March 31st in UTC.
        moment = datetime(2026, 4, 1, 1, 0, tzinfo=timezone(timedelta(hours=3)))
        assert billing_period(moment) == (date(2026, 3, 1), date(2026, 4, 1))

    def test_period_is_half_open(self):
        start, end = date(2026, 3, 1), date(2026, 4, 1)
        assert in_period(utc(2026, 3, 1, 0, 0), start, end)
        assert in_period(utc(2026, 3, 31, 23, 59, 59), start, end)
        assert not in_period(utc(2026, 4, 1, 0, 0), start, end)

    def test_seconds_until_boundary(self):
        assert seconds_until(utc(2026, 3, 31, 23, 0), date(2026, 4, 1)) == 3600
        assert seconds_until(utc(2026, 4, 2), date(2026, 4, 1)) == 0


class TestUsageRecord:
    """Test usage record encoding."""

    def test_stored_shape(self):
        record = UsageRecord.fresh(Tier.FREE, utc(2026, 3, 14, 12))
        assert record.to_dict() == {
            "usageCount": 0,
            "tier": "free",
            "periodStart": "2026-03-01",
            "periodEnd": "2026-04-01",
            "lastUpdated": "2026-03-14T12:00:00+00:00",
        }

    def test_from_store_none_is_absent(self):
        assert UsageRecord.from_store(None) is None

    @pytest.mark.parametrize("mutation", [
        {"usageCount": -1},
        {"usageCount": "3"},
        {"tier": "platinum"},
        {"periodStart": "not-a-date"},
        {"periodEnd": "2026-03-01"},
    ])
    def test_invalid_fields_rejected(self, mutation):
        data = UsageRecord.fresh(Tier.FREE, utc(2026, 3, 14)).to_dict()
        data.update(mutation)
        with pytest.raises(RecordFormatError):
            UsageRecord.from_dict(data)

    def test_missing_field_rejected(self):
        data = UsageRecord.fresh(Tier.FREE, utc(2026, 3, 14)).to_dict()
        del data["tier"]
        with pytest.raises(RecordFormatError):
            UsageRecord.from_dict(data)


class TestUsageMeter:
    """Test cases for UsageMeter."""

    @pytest.mark.asyncio
    async def test_free_quota_boundary(self, meter):
        remaining = []
        for _ in range(5):
            decision = await meter.check_and_increment("alice", Tier.FREE)
            assert decision.allowed is True
            remaining.append(decision.remaining)
        assert remaining == [4, 3, 2, 1, 0]

        denied = await meter.check_and_increment("alice", Tier.FREE)
        assert denied.allowed is False
        assert denied.usage_count == 5
        assert denied.limit == 5
        assert denied.period_end == date(2026, 4, 1)

    @pytest.mark.asyncio
    async def test_denied_request_is_not_counted(self, meter, store):
        for _ in range(8):
            await meter.check_and_increment("alice", Tier.FREE)

        stored = await store.get(USAGE_NAMESPACE, "alice")
        assert stored["usageCount"] == 5

    @pytest.mark.asyncio
    async def test_first_request_creates_record(self, meter, store):
        decision = await meter.check_and_increment("alice", Tier.FREE)

        assert decision.rolled_over is True
        assert decision.usage_count == 1
        assert await store.get(USAGE_NAMESPACE, "alice") == {
            "usageCount": 1,
            "tier": "free",
            "periodStart": "2026-03-01",
            "periodEnd": "2026-04-01",
            "lastUpdated": "2026-03-14T12:00:00+00:00",
        }

    @pytest.mark.asyncio
    async def test_record_ttl_covers_rest_of_period_plus_retention(self, meter, store, clock):
        await meter.check_and_increment("alice", Tier.FREE)

        expected = seconds_until(clock.now(), date(2026, 4, 1)) + RECORD_RETENTION_SECONDS
        assert store.ttl(USAGE_NAMESPACE, "alice") == expected

    @pytest.mark.asyncio
    async def test_pro_tier_is_unlimited_but_counted(self, meter):
        for _ in range(20):
            decision = await meter.check_and_increment("alice", Tier.PRO)
            assert decision.allowed is True

        assert decision.usage_count == 20
        assert decision.limit is None
        assert decision.remaining is None

    @pytest.mark.asyncio
    async def test_rollover_on_first_of_month(self, meter, store, clock):
        for _ in range(5):
            await meter.check_and_increment("alice", Tier.FREE)
        assert (await meter.check_and_increment("alice", Tier.FREE)).allowed is False

        clock.set(utc(2026, 4, 1, 0, 0, 1))
        decision = await meter.check_and_increment("alice", Tier.FREE)

        assert decision.allowed is True
        assert decision.rolled_over is True
        assert decision.usage_count == 1
        assert decision.period_start == date(2026, 4, 1)
        assert decision.period_end == date(2026, 5, 1)
        assert (await store.get(USAGE_NAMESPACE, "alice"))["periodStart"] == "2026-04-01"

    @pytest.mark.asyncio
    async def test_rollover_across_year_end(self, meter, clock):
        clock.set(utc(2026, 12, 31, 23, 59))
        await meter.check_and_increment("alice", Tier.FREE)

        clock.set(utc(2027, 1, 1, 0, 1))
        decision = await meter.check_and_increment("alice", Tier.FREE)

        assert decision.usage_count == 1
        assert decision.period_start == date(2027, 1, 1)
        assert decision.period_end == date(2027, 2, 1)

    @pytest.mark.asyncio
    async def test_concurrent_rollover_is_idempotent(self, policy, clock):
        store = YieldingStore(clock=clock.epoch, retry_backoff_seconds=0)
        meter = UsageMeter(store, policy, clock=clock.now)
        stale = UsageRecord.fresh(Tier.FREE, utc(2026, 2, 10)).incremented(utc(2026, 2, 10))
        await store.put(USAGE_NAMESPACE, "alice", stale.to_dict())

        decisions = await asyncio.gather(*[
            meter.check_and_increment("alice", Tier.FREE) for _ in range(3)
        ])

        assert all(d.rolled_over for d in decisions)
        assert all(d.period_start == date(2026, 3, 1) for d in decisions)
        stored = await meter.load("alice")
        assert stored.period_start == date(2026, 3, 1)
        # Racing requests may each have counted from zero, never more than in flight.
        assert 1 <= stored.usage_count <= 3

    @pytest.mark.asyncio
    async def test_quota_zero_denies_but_records_period(self, store, clock):
        meter = UsageMeter(store, TierPolicy({Tier.FREE: 0, Tier.PRO: None}), clock=clock.now)

        decision = await meter.check_and_increment("alice", Tier.FREE)

        assert decision.allowed is False
        assert decision.usage_count == 0
        assert (await store.get(USAGE_NAMESPACE, "alice"))["periodStart"] == "2026-03-01"

    @pytest.mark.asyncio
    async def test_corrupt_record_treated_as_missing(self, meter, store):
        await store.put(USAGE_NAMESPACE, "alice", {"usageCount": "many", "tier": "free"})

        decision = await meter.check_and_increment("alice", Tier.FREE)

        assert decision.allowed is True
        assert decision.usage_count == 1

    @pytest.mark.asyncio
    async def test_uses_record_passed_in(self, meter, store):
        record = UsageRecord.fresh(Tier.FREE, utc(2026, 3, 2))
        record = record.incremented(utc(2026, 3, 2)).incremented(utc(2026, 3, 3))

        decision = await meter.check_and_increment("alice", Tier.FREE, record)

        assert decision.usage_count == 3
        assert decision.rolled_over is False

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, policy, clock):
        meter = UsageMeter(BrokenStore(retry_backoff_seconds=0), policy, clock=clock.now)
        with pytest.raises(StoreUnavailableError):
            await meter.check_and_increment("alice", Tier.FREE)

    @pytest.mark.asyncio
    async def test_snapshot_does_not_write(self, meter, store):
        snapshot = await meter.snapshot("alice", Tier.FREE)

        assert snapshot.usage_count == 0
        assert snapshot.remaining == 5
        assert snapshot.to_dict() == {
            "usageCount": 0,
            "limit": 5,
            "remaining": 5,
            "tier": "free",
            "periodStart": "2026-03-01",
            "periodEnd": "2026-04-01",
        }
        assert await store.get(USAGE_NAMESPACE, "alice") is None

    @pytest.mark.asyncio
    async def test_snapshot_reports_stored_tier(self, meter):
        await meter.apply_tier("alice", Tier.PRO)

        snapshot = await meter.snapshot("alice", Tier.FREE)

        assert snapshot.tier == Tier.PRO
        assert snapshot.limit is None

    @pytest.mark.asyncio
    async def test_snapshot_after_rollover_keeps_stored_tier(self, meter, clock):
        await meter.check_and_increment("alice", Tier.FREE)
        await meter.apply_tier("alice", Tier.PRO)
        clock.set(utc(2026, 4, 3))

        snapshot = await meter.snapshot("alice", Tier.FREE)

        assert snapshot.tier == Tier.PRO
        assert snapshot.usage_count == 0
        assert snapshot.period_start == date(2026, 4, 1)

    @pytest.mark.asyncio
    async def test_apply_tier_keeps_current_count(self, meter):
        for _ in range(5):
            await meter.check_and_increment("alice", Tier.FREE)

        updated = await meter.apply_tier("alice", Tier.PRO)

        assert updated.tier == Tier.PRO
        assert updated.usage_count == 5

    @pytest.mark.asyncio
    async def test_apply_tier_on_stale_record_starts_new_period(self, meter, store, clock):
        await meter.check_and_increment("alice", Tier.FREE)
        clock.set(utc(2026, 4, 3))

        updated = await meter.apply_tier("alice", Tier.PRO)

        assert updated.usage_count == 0
        assert updated.period_start == date(2026, 4, 1)

    @pytest.mark.asyncio
    async def test_apply_tier_replay_is_harmless(self, meter, store):
        await meter.check_and_increment("alice", Tier.FREE)
        await meter.apply_tier("alice", Tier.PRO)
        first = await store.get(USAGE_NAMESPACE, "alice")
        await meter.apply_tier("alice", Tier.PRO)

        assert await store.get(USAGE_NAMESPACE, "alice") == first


class TestTierResolver:
    """Test effective tier resolution."""

    @pytest.fixture
    def resolver(self, meter, clock):
        return TierResolver(meter, clock=clock.now)

    @pytest.mark.asyncio
    async def test_no_record_uses_declared_tier(self, resolver):
        assert await resolver.resolve(Tier.FREE, "alice") == Tier.FREE
        assert await resolver.resolve(Tier.PRO, "bob") == Tier.PRO

    @pytest.mark.asyncio
    async def test_store_tier_wins_over_token(self, resolver, meter):
        await meter.apply_tier("alice", Tier.PRO)

        resolution = await resolver.resolve_with_record(Tier.FREE, "alice")

        assert resolution.tier == Tier.PRO
        assert resolution.overridden is True
        assert resolution.record.tier == Tier.PRO

    @pytest.mark.asyncio
    async def test_downgrade_recorded_in_store_wins(self, resolver, meter):
        await meter.apply_tier("alice", Tier.FREE)
        assert await resolver.resolve(Tier.PRO, "alice") == Tier.FREE

    @pytest.mark.asyncio
    async def test_stale_record_tier_carries_over(self, resolver, meter, clock):
        await meter.apply_tier("alice", Tier.PRO)
        clock.set(utc(2026, 4, 2))

        resolution = await resolver.resolve_with_record(Tier.FREE, "alice")

        assert resolution.tier == Tier.PRO
        assert resolution.overridden is True

    @pytest.mark.asyncio
    async def test_upgraded_caller_keeps_pro_after_rollover(self, resolver, meter, clock):
        await meter.apply_tier("alice", Tier.PRO)
        clock.set(utc(2026, 4, 1, 0, 0, 1))

        for _ in range(7):
            resolution = await resolver.resolve_with_record(Tier.FREE, "alice")
            decision = await meter.check_and_increment("alice", resolution.tier, resolution.record)
            assert decision.allowed is True

        stored = await meter.load("alice")
        assert stored.tier == Tier.PRO
        assert stored.period_start == date(2026, 4, 1)
        assert stored.usage_count == 7

    @pytest.mark.asyncio
    async def test_upgraded_caller_passes_free_quota(self, resolver, meter):
        for _ in range(5):
            await meter.check_and_increment("alice", Tier.FREE)
        await meter.apply_tier("alice", Tier.PRO)

        resolution = await resolver.resolve_with_record(Tier.FREE, "alice")
        decision = await meter.check_and_increment("alice", resolution.tier, resolution.record)

        assert decision.allowed is True
        assert decision.usage_count == 6


class TestTierPolicy:
    """Test tier policy validation."""

    def test_missing_tier_rejected(self):
        with pytest.raises(ValueError):
            TierPolicy({Tier.FREE: 5})

    def test_negative_quota_rejected(self):
        with pytest.raises(ValueError):
            TierPolicy({Tier.FREE: -1, Tier.PRO: None})

    def test_limits(self, policy):
        assert policy.limit(Tier.FREE) == 5
        assert policy.is_unlimited(Tier.PRO) is True
        assert policy.is_unlimited(Tier.FREE) is False

    @pytest.mark.parametrize("value,expected", [
        ("pro", Tier.PRO),
        (" PRO ", Tier.PRO),
        ("free", Tier.FREE),
        ("enterprise", None),
        (None, None),
        (3, None),
    ])
    def test_parse(self, value, expected):
        assert Tier.parse(value) == expected
