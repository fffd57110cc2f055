"""
Request admission pipeline.

A metered request moves through::

    Unauthenticated -> RateChecked -> TierResolved -> UsageChecked -> Admitted | Denied

and stops at the first stage that denies it. Token failures never touch the
store, and a rate-limited request never reaches the usage meter, so retry
storms cannot burn through a caller's monthly quota.

When the counter store is unavailable the pipeline fails closed by default
(``StoreUnavailableError``, surfaced as 503). With ``fail_open`` set the
request is admitted unmetered instead; that trades quota enforcement for
availability and is a deployment decision.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from shared.errors import (
    AuthenticationError,
    InvalidTokenError,
    QuotaExceededError,
    RateLimitError,
    StoreUnavailableError,
)
from shared.logging import get_logger, set_user_context
from shared.metrics import MetricsCollector

from ..auth.jwks import JWKSTokenVerifier, VerifiedToken
from ..ratelimit.fixed_window import FixedWindowRateLimiter, RateDecision
from ..tiers.models import Tier
from ..tiers.resolver import TierResolver
from ..usage.meter import UsageDecision, UsageMeter


class Stage(str, Enum):
    """Pipeline stages, in order."""
    UNAUTHENTICATED = "unauthenticated"
    RATE_CHECKED = "rate_checked"
    TIER_RESOLVED = "tier_resolved"
    USAGE_CHECKED = "usage_checked"
    ADMITTED = "admitted"
    DENIED = "denied"


@dataclass(frozen=True)
class Admission:
    """An admitted request and the counters it updated."""

    identity: str
    tier: Tier
    declared_tier: Tier
    rate: Optional[RateDecision]
    usage: Optional[UsageDecision]
    metered: bool = True

    def usage_dict(self) -> Optional[Dict[str, Any]]:
        return self.usage.to_dict() if self.usage else None


class RequestDispatcher:
    """Runs token, rate, tier and usage checks for one metered request."""

    def __init__(
        self,
        verifier: JWKSTokenVerifier,
        rate_limiter: FixedWindowRateLimiter,
        resolver: TierResolver,
        meter: UsageMeter,
        *,
        fail_open: bool = False,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.verifier = verifier
        self.rate_limiter = rate_limiter
        self.resolver = resolver
        self.meter = meter
        self.fail_open = fail_open
        self.metrics = metrics
        self.logger = get_logger("metering.dispatcher")

    async def admit(self, authorization: Optional[str]) -> Admission:
        """Admit the request or raise the error of the stage that denied it."""
        token = await self._authenticate(authorization)

        try:
            rate = await self.rate_limiter.check_and_increment(token.identity)
        except StoreUnavailableError as exc:
            return self._store_failure(token, Stage.RATE_CHECKED, exc)
        if not rate.allowed:
            self._denied(Stage.RATE_CHECKED, "rate_limited")
            raise RateLimitError(
                retry_after_seconds=rate.retry_after_seconds,
                limit=rate.limit,
                window_seconds=self.rate_limiter.window_seconds,
            )

        try:
            resolution = await self.resolver.resolve_with_record(token.declared_tier, token.identity)
        except StoreUnavailableError as exc:
            return self._store_failure(token, Stage.TIER_RESOLVED, exc)

        try:
            usage = await self.meter.check_and_increment(token.identity, resolution.tier, resolution.record)
        except StoreUnavailableError as exc:
            return self._store_failure(token, Stage.USAGE_CHECKED, exc)
        if not usage.allowed:
            self._denied(Stage.USAGE_CHECKED, "quota_exceeded")
            raise QuotaExceededError(
                usage_count=usage.usage_count,
                limit=usage.limit,
                tier=usage.tier.value,
                period_end=usage.period_end.isoformat(),
            )

        self.logger.debug("Request admitted", stage=Stage.ADMITTED.value, tier=resolution.tier.value)
        self._record("admitted")
        return Admission(
            identity=token.identity,
            tier=resolution.tier,
            declared_tier=token.declared_tier,
            rate=rate,
            usage=usage,
        )

    async def describe_usage(self, authorization: Optional[str]) -> UsageDecision:
        """Current usage for the caller, without counting a request."""
        token = await self._authenticate(authorization)
        return await self.meter.snapshot(token.identity, token.declared_tier)

    async def _authenticate(self, authorization: Optional[str]) -> VerifiedToken:
        try:
            token = await self.verifier.verify(authorization)
        except (AuthenticationError, InvalidTokenError):
            self._denied(Stage.UNAUTHENTICATED, "unauthenticated")
            raise
        set_user_context(token.identity)
        return token

    def _store_failure(self, token: VerifiedToken, stage: Stage, exc: StoreUnavailableError) -> Admission:
        if not self.fail_open:
            self._denied(stage, "store_unavailable")
            raise exc
        self.logger.warning("Counter store unavailable, admitting unmetered", stage=stage.value)
        self._record("admitted_unmetered")
        return Admission(
            identity=token.identity,
            tier=token.declared_tier,
            declared_tier=token.declared_tier,
            rate=None,
            usage=None,
            metered=False,
        )

    def _denied(self, stage: Stage, outcome: str) -> None:
        self.logger.debug("Request denied", stage=stage.value, next_stage=Stage.DENIED.value, outcome=outcome)
        self._record(outcome)

    def _record(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.record_admission(outcome)
