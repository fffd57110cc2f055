"""
Metering gateway service package.

The gateway admits or denies calls to a metered resource:
- Authentication: JWT bearer tokens verified against the issuer's JWKS
- Rate limiting: fixed per-caller window held in the counter store
- Quota: monthly per-caller usage records with calendar-month rollover
- Billing: signed payment-provider webhooks that set a caller's tier

Structure:
- app.main: FastAPI app, routes and wiring.
- app.auth: Token verification.
- app.store: Counter store (Redis, in-memory).
- app.ratelimit: Fixed-window limiter.
- app.usage: Usage records, billing periods and the meter.
- app.tiers: Tier policy and effective-tier resolution.
- app.billing: Webhook handling and identity-provider updates.
- app.domain: The admission pipeline.
"""
