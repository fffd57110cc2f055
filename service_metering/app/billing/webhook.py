"""
Billing webhook handling.

Events from the payment provider are untrusted until their signature checks
out against one of the configured signing secrets; nothing in the body is
parsed before that. Verified subscription events are reduced to "set this
caller's tier to X", which is safe to apply any number of times, so duplicate
deliveries need no bookkeeping.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import stripe

from shared.errors import ExternalServiceError, StoreUnavailableError, TierUpdateError
from shared.logging import get_logger, set_user_context
from shared.metrics import MetricsCollector

from ..tiers.models import Tier
from ..usage.meter import UsageMeter
from .identity_client import IdentityProviderClient

SUBSCRIBED_STATUSES = frozenset({"active", "trialing", "past_due"})

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


@dataclass(frozen=True)
class BillingOutcome:
    """Result of handling one webhook delivery."""

    accepted: bool
    reason: Optional[str] = None
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    identity: Optional[str] = None
    tier: Optional[Tier] = None
    applied: bool = False

    @classmethod
    def rejected(cls, reason: str) -> "BillingOutcome":
        return cls(accepted=False, reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        """Response body for the sender. Never includes the caller identity."""
        return {
            "received": self.accepted,
            "id": self.event_id,
            "type": self.event_type,
            "applied": self.applied,
        }


class BillingEventHandler:
    """Verifies billing webhooks and records the resulting tier changes."""

    def __init__(
        self,
        meter: UsageMeter,
        identity_client: IdentityProviderClient,
        signing_secrets: List[str],
        *,
        tolerance_seconds: int = 300,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        if not signing_secrets:
            raise ValueError("at least one webhook signing secret is required")
        self.meter = meter
        self.identity_client = identity_client
        self.signing_secrets = list(signing_secrets)
        self.tolerance_seconds = tolerance_seconds
        self.metrics = metrics
        self.logger = get_logger("metering.billing.webhook")

    async def handle(self, raw_body: bytes, signature_header: Optional[str]) -> BillingOutcome:
        """Verify and apply one webhook delivery.

        Returns a rejected outcome for anything that fails verification. Raises
        ``TierUpdateError`` when a verified change could not be recorded, so the
        sender redelivers it.
        """
        event = self._verify(raw_body, signature_header)
        if event is None:
            self._record("unknown", "rejected")
            return BillingOutcome.rejected("signature verification failed")

        event_id = event.get("id")
        event_type = event.get("type")
        if not isinstance(event_type, str):
            self._record("unknown", "rejected")
            return BillingOutcome.rejected("malformed event")

        target = self._tier_change(event_type, event)
        if target is None:
            self.logger.info("Ignoring billing event", event_id=event_id, event_type=event_type)
            self._record(event_type, "ignored")
            return BillingOutcome(accepted=True, event_id=event_id, event_type=event_type)

        identity, tier = target
        if not identity:
            self.logger.warning("Billing event has no caller reference", event_id=event_id, event_type=event_type)
            self._record(event_type, "unresolved")
            return BillingOutcome(accepted=True, event_id=event_id, event_type=event_type)

        set_user_context(identity)
        await self._apply(identity, tier)
        self.logger.info("Billing event applied", event_id=event_id, event_type=event_type, tier=tier.value)
        self._record(event_type, "applied")
        return BillingOutcome(
            accepted=True,
            event_id=event_id,
            event_type=event_type,
            identity=identity,
            tier=tier,
            applied=True,
        )

    def _verify(self, raw_body: bytes, signature_header: Optional[str]) -> Optional[Dict[str, Any]]:
        """Return the parsed event if any trusted secret verifies it, else None."""
        if not signature_header:
            self.logger.warning("Webhook rejected", reason="missing signature header")
            return None
        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            self.logger.warning("Webhook rejected", reason="body is not utf-8")
            return None

        for secret in self.signing_secrets:
            try:
                stripe.WebhookSignature.verify_header(payload, signature_header, secret, self.tolerance_seconds)
            except stripe.SignatureVerificationError:
                continue
            break
        else:
            self.logger.warning("Webhook rejected", reason="signature mismatch")
            return None

        try:
            event = json.loads(payload)
        except ValueError:
            self.logger.warning("Webhook rejected", reason="verified body is not JSON")
            return None
        if not isinstance(event, dict):
            self.logger.warning("Webhook rejected", reason="verified body is not an object")
            return None
        return event

    def _tier_change(self, event_type: str, event: Dict[str, Any]) -> Optional[Tuple[Optional[str], Tier]]:
        """Map an event to ``(identity, tier)``, or None if it carries no tier change."""
        data = event.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            return None
        metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}

        if event_type == CHECKOUT_COMPLETED:
            if obj.get("mode") != "subscription":
                return None
            identity = obj.get("client_reference_id") or metadata.get("user_id")
            return _clean_identity(identity), Tier.parse(metadata.get("tier"), default=Tier.PRO)

        if event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
            identity = _clean_identity(metadata.get("user_id"))
            if obj.get("status") in SUBSCRIBED_STATUSES:
                return identity, Tier.parse(metadata.get("tier"), default=Tier.PRO)
            return identity, Tier.FREE

        if event_type == SUBSCRIPTION_DELETED:
            return _clean_identity(metadata.get("user_id")), Tier.FREE

        return None

    async def _apply(self, identity: str, tier: Tier) -> None:
        try:
            await self.meter.apply_tier(identity, tier)
        except StoreUnavailableError as exc:
            self._record("tier_update", "store_failed")
            raise TierUpdateError("store") from exc

        try:
            await self.identity_client.set_user_tier(identity, tier)
        except ExternalServiceError as exc:
            self._record("tier_update", "idp_failed")
            raise TierUpdateError("identity_provider") from exc

    def _record(self, event_type: str, result: str) -> None:
        if self.metrics:
            self.metrics.record_billing_event(event_type, result)


def _clean_identity(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
