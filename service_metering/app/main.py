"""
Metering gateway service.

Fronts the metered resource: verifies bearer tokens, enforces the per-caller
rate window and monthly quota, and applies billing webhooks to callers' tiers.
"""

import time
from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import MeteringConfig
from shared.errors import WebhookSignatureError
from shared.logging import get_request_id

from .auth.jwks import JWKSTokenVerifier
from .billing.identity_client import IdentityProviderClient
from .billing.webhook import BillingEventHandler
from .domain.dispatcher import Admission, RequestDispatcher
from .ratelimit.fixed_window import FixedWindowRateLimiter
from .store.counter_store import CounterStore, create_counter_store
from .tiers.models import TierPolicy
from .tiers.resolver import TierResolver
from .usage.meter import UsageMeter
from .usage.periods import utc_now


class MeteringService(BaseService):
    """Metering gateway service implementation.

    Collaborators can be injected for tests; anything not injected is built
    from configuration.
    """

    def __init__(
        self,
        config: Optional[MeteringConfig] = None,
        *,
        store: Optional[CounterStore] = None,
        verifier: Optional[JWKSTokenVerifier] = None,
        identity_client: Optional[IdentityProviderClient] = None,
        clock: Callable[[], datetime] = utc_now,
        rate_clock: Callable[[], float] = time.time,
    ):
        super().__init__("metering", config)
        cfg = self.config

        self.store = store or create_counter_store(
            cfg.store_url,
            timeout_seconds=cfg.store_timeout_seconds,
            retry_backoff_seconds=cfg.store_retry_backoff_seconds,
            metrics=self.metrics,
        )
        self.verifier = verifier or JWKSTokenVerifier(
            cfg.jwks_url,
            issuer=cfg.jwt_issuer,
            audience=cfg.jwt_audience,
            tier_claim=cfg.tier_claim,
            refresh_interval=cfg.jwks_refresh_seconds,
            min_refresh_interval=cfg.jwks_min_refresh_seconds,
            http_timeout=cfg.jwks_http_timeout,
            metrics=self.metrics,
        )
        self.identity_client = identity_client or IdentityProviderClient(
            cfg.idp_admin_url,
            token_url=cfg.idp_token_url,
            client_id=cfg.idp_client_id,
            client_secret=cfg.idp_client_secret,
            tier_attribute=cfg.tier_claim,
            http_timeout=cfg.idp_http_timeout,
        )

        self.policy = TierPolicy.from_config(cfg)
        self.rate_limiter = FixedWindowRateLimiter(
            self.store,
            window_seconds=cfg.rate_limit_window_seconds,
            ceiling=cfg.rate_limit_ceiling,
            ttl_slack_seconds=cfg.rate_limit_ttl_slack_seconds,
            clock=rate_clock,
        )
        self.meter = UsageMeter(self.store, self.policy, clock=clock)
        self.resolver = TierResolver(self.meter, clock=clock)
        self.dispatcher = RequestDispatcher(
            self.verifier,
            self.rate_limiter,
            self.resolver,
            self.meter,
            fail_open=cfg.store_fail_open,
            metrics=self.metrics,
        )
        self.billing_handler = BillingEventHandler(
            self.meter,
            self.identity_client,
            cfg.webhook_secrets,
            tolerance_seconds=cfg.webhook_tolerance_seconds,
            metrics=self.metrics,
        )

        if cfg.store_fail_open:
            self.logger.warning("Counter store configured to fail open; quotas are unenforced while it is down")

        self._setup_metering_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.metering_service = self

    async def startup(self) -> None:
        await self.verifier.warmup()
        self.logger.info(
            "Metering service started",
            rate_limit_window_seconds=self.rate_limiter.window_seconds,
            rate_limit_ceiling=self.rate_limiter.ceiling,
            free_monthly_quota=self.config.free_monthly_quota,
            idp_updates=self.identity_client.enabled,
        )

    async def shutdown(self) -> None:
        await self.verifier.close()
        await self.identity_client.close()
        await self.store.close()

    def _setup_metering_routes(self):
        """Set up metered, usage and billing routes."""

        @self.app.get("/")
        async def root():
            return {"service": self.service_name, "message": "Metered access gateway"}

        @self.app.get("/usage")
        async def get_usage(authorization: Optional[str] = Header(None)):
            """Current billing-period usage for the caller."""
            usage = await self.dispatcher.describe_usage(authorization)
            return usage.to_dict()

        @self.app.post("/data")
        async def get_data(authorization: Optional[str] = Header(None)):
            """The metered action: runs the full admission pipeline."""
            admission = await self.dispatcher.admit(authorization)
            headers = admission.rate.headers() if admission.rate else {}
            return JSONResponse(
                content={
                    "data": self._build_payload(admission),
                    "usage": admission.usage_dict(),
                    "metered": admission.metered,
                },
                headers=headers,
            )

        @self.app.post("/billing-webhook")
        async def billing_webhook(request: Request):
            """Payment provider webhook; authenticated by signature, not bearer token."""
            raw_body = await request.body()
            outcome = await self.billing_handler.handle(raw_body, request.headers.get("Stripe-Signature"))
            if not outcome.accepted:
                raise WebhookSignatureError(outcome.reason or "rejected")
            return outcome.to_dict()

    def _build_payload(self, admission: Admission) -> dict:
        return {
            "message": "Access granted",
            "tier": admission.tier.value,
            "requestId": get_request_id(),
            "generatedAt": utc_now().isoformat(),
        }


def create_app() -> FastAPI:
    """Create the FastAPI app from environment configuration."""
    return MeteringService().app


if __name__ == "__main__":
    MeteringService().run()
