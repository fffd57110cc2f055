"""
Identity provider admin client.

Writes a caller's tier attribute back to the identity provider so tokens
issued after a billing change carry the new tier. Speaks the Keycloak admin
REST API: a client-credentials token from ``token_url``, then
``PUT {admin_url}/users/{id}``.
"""

import time
from typing import Any, Dict, Optional

import httpx

from shared.errors import ExternalServiceError
from shared.logging import get_logger
from shared.retry import RetryConfig, retry_on_exception

from ..tiers.models import Tier

_RETRYABLE = (httpx.TransportError,)


class IdentityProviderClient:
    """Sets the tier attribute on a user record in the identity provider."""

    def __init__(
        self,
        admin_url: Optional[str],
        *,
        token_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        tier_attribute: str = "tier",
        http_timeout: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.admin_url = admin_url.rstrip("/") if admin_url else None
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.tier_attribute = tier_attribute
        self.logger = get_logger("metering.billing.idp")
        self._client = http_client or httpx.AsyncClient(timeout=http_timeout)
        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0

    @property
    def enabled(self) -> bool:
        return self.admin_url is not None

    async def close(self) -> None:
        await self._client.aclose()

    async def set_user_tier(self, identity: str, tier: Tier) -> bool:
        """Record ``tier`` on the user. Returns False when the client is disabled."""
        if not self.enabled:
            self.logger.debug("Identity provider updates disabled, skipping")
            return False

        try:
            await self._put_tier(identity, tier)
        except httpx.HTTPError as exc:
            self.logger.error("Identity provider tier update failed", tier=tier.value, error=str(exc))
            raise ExternalServiceError("identity_provider", "tier update failed") from exc

        self.logger.info("Identity provider tier updated", tier=tier.value)
        return True

    @retry_on_exception(_RETRYABLE, config=RetryConfig(max_attempts=3, base_delay=0.2, max_delay=1.0))
    async def _put_tier(self, identity: str, tier: Tier) -> None:
        response = await self._send_tier(identity, tier)
        if response.status_code == 401:
            # Token revoked or expired early; fetch a new one and try once more.
            self.logger.warning("Identity provider rejected admin token, refreshing")
            self._access_token = None
            response = await self._send_tier(identity, tier)
            if response.status_code == 401:
                self._access_token = None
        response.raise_for_status()

    async def _send_tier(self, identity: str, tier: Tier) -> httpx.Response:
        token = await self._get_access_token()
        return await self._client.put(
            f"{self.admin_url}/users/{identity}",
            json={"attributes": {self.tier_attribute: [tier.value]}},
            headers={"Authorization": f"Bearer {token}"},
        )

    async def _get_access_token(self) -> str:
        if self._access_token and time.time() < self._token_expires_at:
            return self._access_token

        response = await self._client.post(
            self.token_url,
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        response.raise_for_status()
        try:
            payload: Dict[str, Any] = response.json()
        except ValueError as exc:
            raise httpx.HTTPError("token response is not JSON") from exc
        if not isinstance(payload, dict):
            raise httpx.HTTPError("token response is not a JSON object")
        token = payload.get("access_token")
        if not isinstance(token, str) or not token:
            raise httpx.HTTPError("token response missing access_token")
        try:
            expires_in = int(payload.get("expires_in", 60))
        except (TypeError, ValueError, OverflowError) as exc:
            raise httpx.HTTPError("token response has invalid expires_in") from exc

        # Refresh a little before the advertised expiry.
        self._access_token = token
        self._token_expires_at = time.time() + max(0, expires_in - 10)
        return token
