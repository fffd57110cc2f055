"""
JSON Web Key Set (JWKS) token verification for the metering gateway.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from jose import ExpiredSignatureError, JWTError, jwt

from shared.errors import AuthenticationError, InvalidTokenError, TokenExpiredError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..tiers.models import Tier

SUPPORTED_ALGORITHMS = ("RS256", "RS384", "RS512", "ES256", "ES384", "ES512")


@dataclass(frozen=True)
class VerifiedToken:
    """Caller identity and declared tier taken from a verified JWT."""

    identity: str
    declared_tier: Tier
    expiry: int
    issuer: Optional[str]
    claims: Dict[str, Any] = field(repr=False)


class JWKSTokenVerifier:
    """Validates bearer JWTs against the issuer's published JWKS.

    The key set is the only process-wide state: it is cached for
    ``refresh_interval`` seconds and refetched once on an unknown ``kid`` so
    key rotation does not need a restart. Those unknown-``kid`` refetches are
    spaced at least ``min_refresh_interval`` seconds apart, so tokens with
    made-up key ids cannot turn every request into a JWKS fetch.
    """

    def __init__(
        self,
        jwks_url: str,
        *,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        tier_claim: str = "tier",
        refresh_interval: int = 300,
        min_refresh_interval: float = 30.0,
        http_timeout: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        if not jwks_url:
            raise ValueError("jwks_url is required")
        self.jwks_url = jwks_url
        self.issuer = issuer
        self.audience = audience
        self.tier_claim = tier_claim
        self.refresh_interval = refresh_interval
        self.min_refresh_interval = min_refresh_interval
        self.metrics = metrics
        self.logger = get_logger("metering.auth.jwks")

        self._keys: Optional[List[Dict[str, Any]]] = None
        self._last_refresh: float = 0.0
        self._last_forced_refresh: float = 0.0
        self._lock = asyncio.Lock()
        self._client = http_client or httpx.AsyncClient(timeout=http_timeout)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def warmup(self) -> None:
        """Eagerly load JWKS metadata so the first request does not pay the cost."""
        try:
            await self._refresh_keys(force=True)
        except (httpx.HTTPError, ValueError) as exc:
            self.logger.warning("JWKS warmup failed", error=str(exc))

    async def check_health(self) -> str:
        """Return 'ok' if the JWKS endpoint responds correctly, otherwise 'error'."""
        try:
            await self._refresh_keys(force=False)
            return "ok"
        except (httpx.HTTPError, ValueError) as exc:
            self.logger.error("JWKS health check failed", error=str(exc))
            return "error"

    async def verify(self, authorization: Optional[str]) -> VerifiedToken:
        """Verify the ``Authorization`` header value and return the caller's identity."""
        token = self._extract_bearer(authorization)
        try:
            claims = await self._validate_token(token)
        except InvalidTokenError as exc:
            if self.metrics:
                self.metrics.record_token_validation(exc.log_code.lower())
            raise

        if self.metrics:
            self.metrics.record_token_validation("valid")

        declared = claims.get(self.tier_claim)
        declared_tier = Tier.parse(declared, default=Tier.FREE)
        if declared is not None and Tier.parse(declared) is None:
            self.logger.warning("Unrecognised tier claim, treating as free", tier_claim=self.tier_claim)

        return VerifiedToken(
            identity=claims["sub"],
            declared_tier=declared_tier,
            expiry=int(claims["exp"]),
            issuer=claims.get("iss"),
            claims=claims,
        )

    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> str:
        if not authorization:
            raise AuthenticationError("Missing Authorization header")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer":
            raise AuthenticationError("Authorization header must use the Bearer scheme")
        token = token.strip()
        if not token:
            raise AuthenticationError("Authorization header contained empty bearer token")
        return token

    async def _validate_token(self, token: str) -> Dict[str, Any]:
        """Validate the JWT and return its claims."""
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise InvalidTokenError(f"malformed token header: {exc}") from exc

        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            raise InvalidTokenError("token header missing key id")

        try:
            key_data = await self._get_key(kid)
        except (httpx.HTTPError, ValueError) as exc:
            # No key set to verify against; the token cannot be trusted.
            self.logger.error("JWKS fetch failed during verification", error=str(exc))
            raise InvalidTokenError("signing keys unavailable") from exc
        if not key_data:
            raise InvalidTokenError(f"signing key '{kid}' not found")

        algorithm = key_data.get("alg") or header.get("alg")
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise InvalidTokenError(f"unsupported algorithm '{algorithm}'")

        options: Dict[str, Any] = {
            "verify_aud": self.audience is not None,
            "require_exp": True,
            "require_sub": True,
            "leeway": 0,
        }
        try:
            claims = jwt.decode(
                token,
                key_data,
                algorithms=[algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options=options,
            )
        except ExpiredSignatureError as exc:
            raise TokenExpiredError() from exc
        except JWTError as exc:
            raise InvalidTokenError(f"validation failed: {exc}") from exc

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError("token missing subject claim")
        return claims

    async def _get_key(self, kid: str) -> Optional[Dict[str, Any]]:
        """Return the cached key for ``kid``, refetching once if it is unknown."""
        await self._refresh_keys(force=False)
        key = self._find_key(kid)
        if key is not None:
            return key

        # Key might be rotated; refresh once more eagerly.
        if not await self._claim_forced_refresh():
            self.logger.debug("Unknown key id, forced JWKS refresh throttled", kid=kid)
            return None
        await self._refresh_keys(force=True)
        return self._find_key(kid)

    async def _claim_forced_refresh(self) -> bool:
        """Reserve the next forced refresh unless one ran too recently."""
        async with self._lock:
            now = time.time()
            if now - self._last_forced_refresh < self.min_refresh_interval:
                return False
            self._last_forced_refresh = now
            return True

    def _find_key(self, kid: str) -> Optional[Dict[str, Any]]:
        for key in self._keys or []:
            if key.get("kid") == kid:
                return key
        return None

    async def _refresh_keys(self, *, force: bool) -> None:
        """Refresh the JWKS if the cache is stale."""
        if not force and self._is_fresh():
            return

        async with self._lock:
            if not force and self._is_fresh():
                return

            response = await self._client.get(self.jwks_url)
            response.raise_for_status()
            payload = response.json()
            keys = payload.get("keys") if isinstance(payload, dict) else None
            if not isinstance(keys, list):
                raise ValueError("JWKS response missing 'keys' array")

            self._keys = [key for key in keys if isinstance(key, dict)]
            self._last_refresh = time.time()
            self.logger.info("JWKS refreshed", keys_count=len(self._keys))

    def _is_fresh(self) -> bool:
        return self._keys is not None and (time.time() - self._last_refresh) < self.refresh_interval
