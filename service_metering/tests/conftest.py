"""
Shared fixtures for metering service tests.
"""

from datetime import datetime, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from shared.config import load_config
from shared.test_helpers import (
    TEST_ISSUER,
    TEST_JWKS_URL,
    FrozenClock,
    MockTokenGenerator,
    TestEnvironment,
    TestUser,
    WebhookSigner,
)
from service_metering.app.auth.jwks import JWKSTokenVerifier
from service_metering.app.billing.identity_client import IdentityProviderClient
from service_metering.app.main import MeteringService
from service_metering.app.store.counter_store import InMemoryCounterStore
from service_metering.app.tiers.models import Tier, TierPolicy
from service_metering.app.usage.meter import UsageMeter

class JWKSEndpoint:
    """Mock JWKS endpoint that counts fetches."""

    def __init__(self, generator: MockTokenGenerator):
        self.generator = generator
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        return httpx.Response(200, json=self.generator.jwks())


@pytest.fixture(scope="session")
def token_generator():
    """RSA key pair and token minting; generated once per session."""
    return MockTokenGenerator(issuer=TEST_ISSUER)


@pytest.fixture
def jwks_endpoint(token_generator):
    return JWKSEndpoint(token_generator)


@pytest.fixture
def verifier(jwks_endpoint):
    """Token verifier wired to the mock JWKS endpoint."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(jwks_endpoint))
    return JWKSTokenVerifier(TEST_JWKS_URL, issuer=TEST_ISSUER, http_client=client)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 14, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock):
    return InMemoryCounterStore(clock=clock.epoch, timeout_seconds=0.2, retry_backoff_seconds=0)


@pytest.fixture
def policy():
    return TierPolicy({Tier.FREE: 5, Tier.PRO: None})


@pytest.fixture
def meter(store, policy, clock):
    return UsageMeter(store, policy, clock=clock.now)


@pytest.fixture
def free_user():
    return TestUser(user_id="user-free-1", tier="free")


@pytest.fixture
def pro_user():
    return TestUser(user_id="user-pro-1", tier="pro")


@pytest.fixture
def webhook_signer():
    return WebhookSigner("whsec_test_secret")


@pytest.fixture
def config():
    return load_config(**TestEnvironment.get_mock_config())


@pytest.fixture
def service(config, store, verifier, clock):
    """Metering service on the in-memory store and a frozen clock."""
    return MeteringService(
        config,
        store=store,
        verifier=verifier,
        identity_client=IdentityProviderClient(None),
        clock=clock.now,
        rate_clock=clock.epoch,
    )


@pytest.fixture
def client(service):
    with TestClient(service.app) as test_client:
        yield test_client
