"""
Shared utilities for the metered access gateway.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry helpers for store and identity-provider calls
- base_service: FastAPI app skeleton with health, metrics and error handlers

Do not import from service_* packages into shared/.
"""
